from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from flask import current_app

from admin.errors import Forbidden
from admin.services.catalog import CatalogResolver, ProductInfo
from admin.services.tax import invoice_net, split_gross_net, tax_rate_for, to_major
from admin.services.time_ranges import month_key, month_keys
from billing.models import SubscriptionStatus
from billing.services.access import cancel_scheduled, from_unix, period_end_of
from billing.services.stripe_client import object_id

FEED_LIMIT = 200
UNKNOWN_COUNTRY = "unknown"


def _iso(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


@dataclass
class CountryBreakdown:
    country: str
    active_or_trialing: int = 0
    paying: int = 0
    monthly_gross: float = 0.0
    monthly_net: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "country": self.country,
            "activeOrTrialing": self.active_or_trialing,
            "paying": self.paying,
            "expectedMonthlyGross": to_major(self.monthly_gross),
            "expectedMonthlyNet": to_major(self.monthly_net),
        }


@dataclass
class ProductAggregate:
    product_id: str
    product_name: str
    product_active: Optional[bool] = None
    active_or_trialing: int = 0
    paying: int = 0
    trialing: int = 0
    cancel_scheduled: int = 0
    churned: int = 0
    monthly_gross: float = 0.0
    monthly_net: float = 0.0
    period_gross: int = 0
    period_net: int = 0
    countries: Dict[str, CountryBreakdown] = field(default_factory=dict)

    @property
    def is_stale(self) -> bool:
        # archived upstream and nothing current left to show
        return (
            self.product_active is False
            and self.active_or_trialing == 0
            and self.period_gross == 0
            and self.cancel_scheduled == 0
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "productId": self.product_id,
            "productName": self.product_name,
            "isActive": self.product_active,
            "activeOrTrialing": self.active_or_trialing,
            "paying": self.paying,
            "trialing": self.trialing,
            "cancelScheduled": self.cancel_scheduled,
            "churned": self.churned,
            "expectedMonthlyGross": to_major(self.monthly_gross),
            "expectedMonthlyNet": to_major(self.monthly_net),
            "expectedYearlyGross": to_major(self.monthly_gross * 12),
            "expectedYearlyNet": to_major(self.monthly_net * 12),
            "periodGross": to_major(self.period_gross),
            "periodNet": to_major(self.period_net),
            "countryBreakdown": [c.to_dict() for _, c in sorted(self.countries.items())],
        }


@dataclass
class MonthlyPoint:
    month: str
    signups: int = 0
    churns: int = 0
    gross: int = 0
    net: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "month": self.month,
            "signups": self.signups,
            "churns": self.churns,
            "gross": to_major(self.gross),
            "net": to_major(self.net),
        }


@dataclass
class MentorshipEvent:
    at: datetime
    kind: str  # signup | churn | cancel_scheduled
    product_id: str
    product_name: str
    customer_id: Optional[str]
    email: Optional[str]
    country: Optional[str]
    subscription_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "at": _iso(self.at),
            "type": self.kind,
            "productId": self.product_id,
            "productName": self.product_name,
            "customerId": self.customer_id,
            "email": self.email,
            "country": self.country,
            "subscriptionId": self.subscription_id,
        }


@dataclass
class UpcomingCancellation:
    at: datetime
    product_id: str
    product_name: str
    email: Optional[str]
    country: Optional[str]
    subscription_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "at": _iso(self.at),
            "productId": self.product_id,
            "productName": self.product_name,
            "email": self.email,
            "country": self.country,
            "subscriptionId": self.subscription_id,
        }


def _customer_field(customer: Any, *path: str) -> Optional[str]:
    if not isinstance(customer, dict) or customer.get("deleted"):
        return None
    value: Any = customer
    for key in path:
        value = (value or {}).get(key)
    return value or None


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    sub_id = object_id(invoice.get("subscription"))
    if sub_id:
        return sub_id
    details = ((invoice.get("parent") or {}).get("subscription_details")) or {}
    return object_id(details.get("subscription"))


def _line_price_ref(line: Dict[str, Any]) -> Any:
    if line.get("price"):
        return line["price"]
    details = ((line.get("pricing") or {}).get("price_details")) or {}
    return details.get("price")


class MetricsService:
    """
    Per-product, per-month rollup over the provider's full subscription list
    and the paid invoices of a date range.

    Amounts stay in minor units until to_dict(); forecasts are floats because
    tax-inclusive prices divide.
    """

    def __init__(self, gateway, *, clock: Optional[Callable[[], datetime]] = None):
        self.gateway = gateway
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # ---------- public ----------
    def aggregate(self, start: datetime, end: datetime, *, is_admin: bool) -> Dict[str, Any]:
        if not is_admin:
            raise Forbidden("Admin role required")

        run = _MetricsRun(self.gateway, start, end, self.clock())
        for sub in self.gateway.iter_subscriptions():
            run.add_subscription(sub)
        for invoice in self.gateway.iter_paid_invoices(int(start.timestamp()), int(end.timestamp())):
            run.add_invoice(invoice)

        current_app.logger.info(
            "[admin.metrics] %s..%s: %s subscriptions, %s invoices, %s products",
            start.date(), end.date(), run.subscription_count, run.invoice_count, len(run.products),
        )
        return run.result()


class _MetricsRun:
    """State of a single aggregation; never shared across requests."""

    def __init__(self, gateway, start: datetime, end: datetime, now: datetime):
        self.gateway = gateway
        self.start = start
        self.end = end
        self.now = now
        self.months = month_keys(start, end)
        self.catalog = CatalogResolver(gateway)
        self.products: Dict[str, ProductAggregate] = {}
        self.timelines: Dict[str, Dict[str, MonthlyPoint]] = {}
        self.sub_products: Dict[str, ProductInfo] = {}
        self.events: List[MentorshipEvent] = []
        self.upcoming: List[UpcomingCancellation] = []
        self.subscription_count = 0
        self.invoice_count = 0

    def _in_range(self, dt: Optional[datetime]) -> bool:
        return dt is not None and self.start <= dt <= self.end

    def _aggregate_for(self, info: ProductInfo) -> ProductAggregate:
        agg = self.products.get(info.id)
        if agg is None:
            agg = ProductAggregate(product_id=info.id, product_name=info.name, product_active=info.active)
            self.products[info.id] = agg
        else:
            if agg.product_name == agg.product_id and info.name != info.id:
                agg.product_name = info.name
            if agg.product_active is None and info.active is not None:
                agg.product_active = info.active
        return agg

    def _timeline_for(self, product_id: str) -> Dict[str, MonthlyPoint]:
        points = self.timelines.get(product_id)
        if points is None:
            points = {m: MonthlyPoint(month=m) for m in self.months}
            self.timelines[product_id] = points
        return points

    # ---------- subscriptions ----------
    def add_subscription(self, sub: Dict[str, Any]) -> None:
        self.subscription_count += 1
        items = ((sub.get("items") or {}).get("data")) or []
        if not items:
            return
        price, info = self.catalog.resolve(items[0].get("price"))
        if info is None:
            return

        self.sub_products[sub.get("id")] = info
        agg = self._aggregate_for(info)

        status = sub.get("status")
        is_trialing = status == SubscriptionStatus.TRIALING
        is_paying = status == SubscriptionStatus.ACTIVE
        period_end = from_unix(period_end_of(sub))
        is_current = (is_trialing or is_paying) and (period_end is None or period_end > self.now)
        scheduled = cancel_scheduled(sub)

        ended_at = from_unix(sub.get("ended_at"))
        if ended_at is None and status == SubscriptionStatus.CANCELED:
            ended_at = from_unix(sub.get("canceled_at"))
        is_churned = status == SubscriptionStatus.CANCELED or ended_at is not None

        customer = sub.get("customer")
        customer_id = object_id(customer)
        email = _customer_field(customer, "email")
        country = _customer_field(customer, "address", "country")

        def event(at: datetime, kind: str) -> MentorshipEvent:
            return MentorshipEvent(
                at=at, kind=kind, product_id=info.id, product_name=info.name,
                customer_id=customer_id, email=email, country=country, subscription_id=sub.get("id"),
            )

        if is_current:
            agg.active_or_trialing += 1
            if is_paying:
                agg.paying += 1
            if is_trialing:
                agg.trialing += 1
            if scheduled:
                agg.cancel_scheduled += 1

            if price and price.get("unit_amount") is not None:
                gross, net = split_gross_net(
                    price["unit_amount"], tax_rate_for(country), price.get("tax_behavior"), price.get("currency")
                )
                agg.monthly_gross += gross
                agg.monthly_net += net

                key = (country or UNKNOWN_COUNTRY).upper()
                bucket = agg.countries.setdefault(key, CountryBreakdown(country=key))
                bucket.active_or_trialing += 1
                if is_paying:
                    bucket.paying += 1
                bucket.monthly_gross += gross
                bucket.monthly_net += net

        if is_churned:
            agg.churned += 1

        created = from_unix(sub.get("created"))
        if self._in_range(created):
            self._timeline_for(info.id)[month_key(created)].signups += 1
            self.events.append(event(created, "signup"))

        if self._in_range(ended_at):
            self._timeline_for(info.id)[month_key(ended_at)].churns += 1
            self.events.append(event(ended_at, "churn"))
        elif scheduled and not is_churned:
            requested = from_unix(sub.get("canceled_at"))
            if self._in_range(requested):
                self.events.append(event(requested, "cancel_scheduled"))

        if is_current and scheduled:
            effective = from_unix(sub.get("cancel_at")) or period_end
            if effective is not None and effective >= self.now:
                self.upcoming.append(UpcomingCancellation(
                    at=effective, product_id=info.id, product_name=info.name,
                    email=email, country=country, subscription_id=sub.get("id"),
                ))

    # ---------- invoices ----------
    def _invoice_product(self, invoice: Dict[str, Any]) -> Optional[ProductInfo]:
        sub_id = _invoice_subscription_id(invoice)
        if sub_id:
            info = self.sub_products.get(sub_id)
            if info is None:
                current_app.logger.warning(
                    "[admin.metrics] invoice %s references unknown subscription %s", invoice.get("id"), sub_id
                )
            return info

        for line in self.gateway.list_invoice_lines(invoice.get("id")):
            ref = _line_price_ref(line)
            if not ref:
                continue
            _, info = self.catalog.resolve(ref)
            if info is not None:
                return info
        return None

    def add_invoice(self, invoice: Dict[str, Any]) -> None:
        self.invoice_count += 1
        info = self._invoice_product(invoice)
        if info is None:
            current_app.logger.warning("[admin.metrics] no product for invoice %s; skipped", invoice.get("id"))
            return

        agg = self._aggregate_for(info)
        gross = invoice.get("total") or 0
        net = invoice_net(invoice)
        agg.period_gross += gross
        agg.period_net += net

        created = from_unix(invoice.get("created"))
        if created is not None and month_key(created) in self.months:
            point = self._timeline_for(info.id)[month_key(created)]
            point.gross += gross
            point.net += net

    # ---------- output ----------
    def result(self) -> Dict[str, Any]:
        products = sorted(
            (p for p in self.products.values() if not p.is_stale),
            key=lambda p: p.active_or_trialing,
            reverse=True,
        )
        timeline = sorted(
            (
                {
                    "productId": pid,
                    "productName": self.products[pid].product_name,
                    "points": [points[m].to_dict() for m in self.months],
                }
                for pid, points in self.timelines.items()
            ),
            key=lambda t: t["productName"],
        )
        events = sorted(self.events, key=lambda e: e.at, reverse=True)[:FEED_LIMIT]
        upcoming = sorted(self.upcoming, key=lambda c: c.at)[:FEED_LIMIT]
        return {
            "period": {"from": self.start.date().isoformat(), "to": self.end.date().isoformat()},
            "products": [p.to_dict() for p in products],
            "timeline": timeline,
            "recentEvents": [e.to_dict() for e in events],
            "upcomingCancellations": [c.to_dict() for c in upcoming],
        }
