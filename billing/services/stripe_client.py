from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional
import stripe

PAGE_SIZE = 100

LEGACY_FOOTER_MARKERS = (
    "§ 19 UStG",
    "Kleinunternehmer",
    "Zahlungsbedingungen: Zahlbar sofort ohne Abzug",
)
PLACEHOLDER_TAX_ID = "DE 123456789"


def to_plain(obj: Any) -> Any:
    """Turn StripeObjects (and anything nested in them) into plain dicts/lists."""
    if isinstance(obj, stripe.StripeObject):
        obj = obj.to_dict()
    if isinstance(obj, dict):
        return {k: to_plain(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [to_plain(v) for v in obj]
    return obj


def object_id(ref: Any) -> Optional[str]:
    """Stripe fields are either an id string or an expanded object."""
    if not ref:
        return None
    if isinstance(ref, str):
        return ref
    if isinstance(ref, dict):
        return ref.get("id")
    return None


class StripeGateway:
    """
    Thin, explicit wrapper around the stripe library. One instance is built at
    start-up and handed to every component; nothing below reaches for
    module-level stripe state except through here.
    """

    def __init__(self, api_key: Optional[str], *, max_network_retries: int = 2, page_size: int = PAGE_SIZE):
        self.api_key = api_key
        self.page_size = page_size
        stripe.max_network_retries = max_network_retries

    # ---------- pagination ----------
    def _paginate(self, list_fn: Callable[..., Any], *args, **params) -> Iterator[Dict[str, Any]]:
        starting_after = None
        while True:
            query = dict(params, limit=self.page_size, api_key=self.api_key)
            if starting_after:
                query["starting_after"] = starting_after
            page = to_plain(list_fn(*args, **query))
            data = page.get("data") or []
            for item in data:
                yield item
            if not page.get("has_more") or not data:
                break
            starting_after = data[-1].get("id")
            if not starting_after:
                break

    # ---------- customers ----------
    def find_customer_id(self, user_id: str) -> Optional[str]:
        quoted = user_id.replace("\\", "\\\\").replace("'", "\\'")
        res = to_plain(stripe.Customer.search(
            query=f"metadata['userId']:'{quoted}'",
            limit=1,
            api_key=self.api_key,
        ))
        data = res.get("data") or []
        return data[0].get("id") if data else None

    def retrieve_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        """Returns None for deleted customers."""
        customer = to_plain(stripe.Customer.retrieve(customer_id, api_key=self.api_key))
        if customer.get("deleted"):
            return None
        return customer

    def iter_customers(self) -> Iterator[Dict[str, Any]]:
        return self._paginate(stripe.Customer.list)

    def ensure_customer_tax_info(self, customer_id: str) -> bool:
        """
        Mark the customer as tax-configured and strip legacy invoice footers /
        placeholder tax ids that earlier setups wrote onto the customer.
        """
        customer = self.retrieve_customer(customer_id)
        if customer is None:
            return False

        settings = customer.get("invoice_settings") or {}
        footer = settings.get("footer")
        custom_fields = settings.get("custom_fields") or []

        has_legacy_footer = isinstance(footer, str) and any(m in footer for m in LEGACY_FOOTER_MARKERS)
        has_placeholder_tax_id = any(
            any(k in (f.get("name") or "") for k in ("USt-ID", "USt", "Steuer"))
            and PLACEHOLDER_TAX_ID in (f.get("value") or "")
            for f in custom_fields
        )

        update: Dict[str, Any] = {
            "metadata": {
                "tax_info_configured": "true",
                "last_updated": datetime.now(timezone.utc).isoformat(),
            },
        }
        if has_legacy_footer or has_placeholder_tax_id:
            update["invoice_settings"] = {"footer": "", "custom_fields": ""}

        stripe.Customer.modify(customer_id, api_key=self.api_key, **update)
        return True

    # ---------- subscriptions ----------
    def list_customer_subscriptions(self, customer_id: str) -> List[Dict[str, Any]]:
        return list(self._paginate(stripe.Subscription.list, customer=customer_id, status="all"))

    def iter_subscriptions(self) -> Iterator[Dict[str, Any]]:
        # expand is capped at four levels, so the product stays an id here
        return self._paginate(
            stripe.Subscription.list,
            status="all",
            expand=["data.customer", "data.items.data.price"],
        )

    # ---------- invoices ----------
    def iter_paid_invoices(self, gte: int, lte: int) -> Iterator[Dict[str, Any]]:
        return self._paginate(stripe.Invoice.list, status="paid", created={"gte": gte, "lte": lte})

    def list_invoice_lines(self, invoice_id: str) -> List[Dict[str, Any]]:
        return list(self._paginate(stripe.Invoice.list_lines, invoice_id))

    # ---------- catalog ----------
    def retrieve_price(self, price_id: str) -> Dict[str, Any]:
        return to_plain(stripe.Price.retrieve(price_id, expand=["product"], api_key=self.api_key))

    def retrieve_product(self, product_id: str) -> Dict[str, Any]:
        return to_plain(stripe.Product.retrieve(product_id, api_key=self.api_key))

    # ---------- portal & webhooks ----------
    def create_portal_session(self, customer_id: str, return_url: str, locale: str = "auto") -> Dict[str, Any]:
        return to_plain(stripe.billing_portal.Session.create(
            customer=customer_id,
            return_url=return_url,
            locale=locale,
            api_key=self.api_key,
        ))

    def construct_event(self, payload: bytes, sig_header: str, secret: Optional[str]) -> Dict[str, Any]:
        return to_plain(stripe.Webhook.construct_event(payload, sig_header, secret))
