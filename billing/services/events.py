from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from flask import current_app

from billing.models import SubscriptionStatus
from billing.repository import EventLedger, SubscriptionRepo
from billing.services.access import (
    cancel_state_of,
    from_unix,
    notification_for,
    period_end_of,
    previous_view,
    price_ids_of,
    should_grant_access,
)
from billing.services.stripe_client import object_id
from community.notify import send_notification

USER_ID_KEY = "userId"
DISCORD_ID_KEY = "discordUserId"
TAX_CONFIGURED_KEY = "tax_info_configured"


class WebhookSynchronizer:
    """
    Applies provider events to the local snapshot and fans out side effects.

    The state write comes first and is safe to repeat. Role sync, tax metadata
    repair and ops notifications each run in their own try/except so one
    failing never blocks another or the write.
    """

    def __init__(self, gateway, discord, *, repo=None, ledger=None, clock: Optional[Callable[[], datetime]] = None):
        self.gateway = gateway
        self.discord = discord
        self.repo = repo or SubscriptionRepo()
        self.ledger = ledger or EventLedger()
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.handlers = {
            "customer.created": self.on_customer_created,
            "customer.subscription.created": self.on_subscription_created,
            "customer.subscription.updated": self.on_subscription_updated,
            "customer.subscription.deleted": self.on_subscription_deleted,
            "invoice.finalized": self.on_invoice_finalized,
            "checkout.session.completed": self.on_checkout_completed,
        }

    def handle(self, event: Dict[str, Any]) -> str:
        etype = event.get("type")
        handler = self.handlers.get(etype)
        if not handler:
            return f"ignored:{etype}"
        data = event.get("data") or {}
        handler(event.get("id"), data.get("object") or {}, data.get("previous_attributes") or {})
        return etype

    # ---------- handlers ----------
    def on_customer_created(self, event_id: str, customer: Dict[str, Any], previous: Dict[str, Any]):
        current_app.logger.info("[billing.events] customer created %s", customer.get("id"))
        self.gateway.ensure_customer_tax_info(customer.get("id"))

    def on_subscription_created(self, event_id, sub, previous):
        self._sync_subscription("created", event_id, sub, previous)

    def on_subscription_updated(self, event_id, sub, previous):
        self._sync_subscription("updated", event_id, sub, previous)

    def on_subscription_deleted(self, event_id, sub, previous):
        self._sync_subscription("deleted", event_id, sub, previous)

    def on_invoice_finalized(self, event_id: str, invoice: Dict[str, Any], previous: Dict[str, Any]):
        customer_id = object_id(invoice.get("customer"))
        if not customer_id:
            return
        try:
            customer = self.gateway.retrieve_customer(customer_id)
            if customer is None:
                return
            if (customer.get("metadata") or {}).get(TAX_CONFIGURED_KEY) == "true":
                return
            current_app.logger.warning(
                "[billing.events] invoice %s finalized without tax metadata on %s; re-applying", invoice.get("id"), customer_id
            )
            self.gateway.ensure_customer_tax_info(customer_id)
        except Exception:
            current_app.logger.exception("[billing.events] tax metadata check failed for invoice=%s", invoice.get("id"))

    def on_checkout_completed(self, event_id: str, session: Dict[str, Any], previous: Dict[str, Any]):
        current_app.logger.info("[billing.events] checkout %s completed; subscription events will follow", session.get("id"))

    # ---------- subscription sync ----------
    def _customer_for(self, sub: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        ref = sub.get("customer")
        if isinstance(ref, dict):
            return None if ref.get("deleted") else ref
        if not ref:
            return None
        return self.gateway.retrieve_customer(ref)

    def _user_id_for(self, customer_id: Optional[str], customer: Optional[Dict[str, Any]]) -> Optional[str]:
        user_id = ((customer or {}).get("metadata") or {}).get(USER_ID_KEY)
        if user_id:
            return user_id
        if customer_id:
            row = self.repo.get_by_customer(customer_id)
            if row is not None:
                return row.user_id
        return None

    def _sync_subscription(self, kind: str, event_id: Optional[str], sub: Dict[str, Any], previous: Dict[str, Any]):
        customer_id = object_id(sub.get("customer"))
        customer = self._customer_for(sub)
        user_id = self._user_id_for(customer_id, customer)

        if user_id:
            self.repo.upsert(
                user_id,
                stripe_customer_id=customer_id,
                stripe_subscription_id=sub.get("id"),
                status=sub.get("status") or SubscriptionStatus.NONE,
                cancel_at_period_end=bool(sub.get("cancel_at_period_end")),
                cancel_at=from_unix(sub.get("cancel_at")),
                current_period_end=from_unix(period_end_of(sub)),
                price_ids=price_ids_of(sub),
            )
        else:
            current_app.logger.warning(
                "[billing.events] no identity for customer=%s (subscription %s); snapshot not written", customer_id, sub.get("id")
            )

        grant = should_grant_access(sub, self.clock())
        self._sync_role(customer, grant)

        if kind == "created" and customer_id:
            try:
                self.gateway.ensure_customer_tax_info(customer_id)
            except Exception:
                current_app.logger.exception("[billing.events] tax metadata safety net failed for %s", customer_id)

        old_state = cancel_state_of(previous_view(sub, previous))
        variant = notification_for(kind, old_state, cancel_state_of(sub))
        if variant and self.ledger.mark(event_id):
            send_notification(self.discord, variant, sub, customer)

    def _sync_role(self, customer: Optional[Dict[str, Any]], grant: bool) -> None:
        member_id = ((customer or {}).get("metadata") or {}).get(DISCORD_ID_KEY)
        if not member_id:
            return
        try:
            if grant:
                self.discord.add_member_role(member_id)
            else:
                self.discord.remove_member_role(member_id)
        except Exception:
            current_app.logger.exception(
                "[billing.events] role %s failed for discord member=%s", "grant" if grant else "revoke", member_id
            )
