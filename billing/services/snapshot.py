from __future__ import annotations
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple
import stripe
from flask import current_app

from billing.models import ACCESS_STATUSES, SubscriptionStatus, UserSubscription, as_aware
from billing.repository import SubscriptionRepo
from billing.services.access import from_unix, period_end_of, price_ids_of

DEFAULT_RETRY_COUNT = 3
POST_CHECKOUT_RETRY_COUNT = 5


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


@dataclass
class SubscriptionDetails:
    status: str
    is_active: bool
    cancel_at_period_end: bool = False
    cancel_at: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    price_ids: List[str] = field(default_factory=list)
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None

    @property
    def is_canceled(self) -> bool:
        return self.cancel_at_period_end or self.status == SubscriptionStatus.CANCELED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "isActive": self.is_active,
            "isPending": self.status == SubscriptionStatus.INCOMPLETE,
            "isCanceled": self.is_canceled,
            "cancelAtPeriodEnd": self.cancel_at_period_end,
            "cancelAt": _iso(self.cancel_at),
            "currentPeriodEnd": _iso(self.current_period_end),
            "priceIds": list(self.price_ids),
            "customerId": self.customer_id,
            "subscriptionId": self.subscription_id,
        }


@dataclass
class AccessResult:
    has_access: bool
    details: Optional[SubscriptionDetails] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hasAccess": self.has_access,
            "details": self.details.to_dict() if self.details else None,
        }


NEGATIVE = AccessResult(has_access=False, details=None)


class SnapshotCache:
    """
    Read-through cache of a user's access state.

    Local rows answer every read except the first one and explicit
    post-checkout refreshes; those pull from the provider and write back.
    """

    def __init__(
        self,
        gateway,
        *,
        required_price_id: Optional[str] = None,
        retry_delay: float = 1.0,
        repo: Optional[SubscriptionRepo] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.gateway = gateway
        self.required_price_id = required_price_id
        self.retry_delay = retry_delay
        self.repo = repo or SubscriptionRepo()
        self.sleep = sleep

    # ---------- public ----------
    def resolve(self, user_id: str, *, retry_count: int = DEFAULT_RETRY_COUNT, is_post_checkout: bool = False) -> AccessResult:
        record = self.repo.get(user_id)

        if record is not None and not is_post_checkout:
            if record.status == SubscriptionStatus.NONE:
                return NEGATIVE
            return self._from_record(record)

        attempts = max(0, retry_count) + 1 if is_post_checkout else 1
        for attempt in range(attempts):
            last = attempt == attempts - 1
            try:
                customer_id, sub = self._pull(user_id, record)
            except stripe.StripeError:
                current_app.logger.exception(
                    "[billing.snapshot] provider pull failed for user=%s (attempt %s/%s)", user_id, attempt + 1, attempts
                )
                if not last:
                    self.sleep(self.retry_delay)
                    continue
                return self._fallback(record)

            if sub is None and not last:
                # checkout redirect can outrun the provider's own propagation
                self.sleep(self.retry_delay)
                continue
            return self._write_through(user_id, customer_id, sub)

        return self._fallback(record)

    def has_access(self, user_id: str, **kwargs) -> bool:
        return self.resolve(user_id, **kwargs).has_access

    # ---------- helpers ----------
    def _is_active(self, status: str, cancel_at_period_end: bool, price_ids: List[str]) -> bool:
        if cancel_at_period_end or status not in ACCESS_STATUSES:
            return False
        if self.required_price_id and self.required_price_id not in price_ids:
            return False
        return True

    def _from_record(self, record: UserSubscription) -> AccessResult:
        price_ids = list(record.price_ids or [])
        is_active = self._is_active(record.status, bool(record.cancel_at_period_end), price_ids)
        details = SubscriptionDetails(
            status=record.status,
            is_active=is_active,
            cancel_at_period_end=bool(record.cancel_at_period_end),
            cancel_at=as_aware(record.cancel_at),
            current_period_end=as_aware(record.current_period_end),
            price_ids=price_ids,
            customer_id=record.stripe_customer_id,
            subscription_id=record.stripe_subscription_id,
        )
        return AccessResult(has_access=is_active, details=details)

    def _fallback(self, record: Optional[UserSubscription]) -> AccessResult:
        if record is None or record.status == SubscriptionStatus.NONE:
            return NEGATIVE
        return self._from_record(record)

    def _pick(self, subs: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not subs:
            return None
        for sub in subs:
            eligible = self._is_active(sub.get("status"), bool(sub.get("cancel_at_period_end")), price_ids_of(sub))
            if eligible:
                return sub
        return subs[0]

    def _pull(self, user_id: str, record: Optional[UserSubscription]) -> Tuple[Optional[str], Optional[Dict[str, Any]]]:
        customer_id = record.stripe_customer_id if record is not None else None
        if not customer_id:
            customer_id = self.gateway.find_customer_id(user_id)
        if not customer_id:
            return None, None
        return customer_id, self._pick(self.gateway.list_customer_subscriptions(customer_id))

    def _write_through(self, user_id: str, customer_id: Optional[str], sub: Optional[Dict[str, Any]]) -> AccessResult:
        if sub is None:
            fields: Dict[str, Any] = {"status": SubscriptionStatus.NONE}
            if customer_id:
                fields["stripe_customer_id"] = customer_id
            self.repo.upsert(user_id, **fields)
            return NEGATIVE

        price_ids = price_ids_of(sub)
        details = SubscriptionDetails(
            status=sub.get("status") or SubscriptionStatus.NONE,
            is_active=False,
            cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
            cancel_at=from_unix(sub.get("cancel_at")),
            current_period_end=from_unix(period_end_of(sub)),
            price_ids=price_ids,
            customer_id=customer_id,
            subscription_id=sub.get("id"),
        )
        details.is_active = self._is_active(details.status, details.cancel_at_period_end, price_ids)

        self.repo.upsert(
            user_id,
            stripe_customer_id=customer_id,
            stripe_subscription_id=details.subscription_id,
            status=details.status,
            cancel_at_period_end=details.cancel_at_period_end,
            cancel_at=details.cancel_at,
            current_period_end=details.current_period_end,
            price_ids=price_ids,
        )
        return AccessResult(has_access=details.is_active, details=details)
