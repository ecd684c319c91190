from __future__ import annotations
from datetime import datetime
from typing import Any, Dict, Optional
from flask import current_app

from billing.services.access import Notification, from_unix, period_end_of
from billing.services.stripe_client import object_id


def _fmt_date(dt: Optional[datetime]) -> str:
    return dt.strftime("%d.%m.%Y") if dt else "unknown date"


def _who(customer: Optional[Dict[str, Any]], sub: Dict[str, Any]) -> str:
    if customer:
        return customer.get("email") or customer.get("name") or customer.get("id") or "unknown customer"
    return object_id(sub.get("customer")) or "unknown customer"


def _plan(sub: Dict[str, Any]) -> str:
    items = ((sub.get("items") or {}).get("data")) or []
    price = items[0].get("price") if items else None
    if isinstance(price, dict):
        return price.get("nickname") or object_id(price.get("product")) or price.get("id") or "?"
    return object_id(price) or "?"


def _post(discord, content: str) -> bool:
    try:
        return discord.post_message(content)
    except Exception as e:
        current_app.logger.exception("[community.notify] post failed → %s | %r", content, e)
        return False

# ─────────────────────────────────────────────────────────────────────────────
# Notification composers
# ─────────────────────────────────────────────────────────────────────────────

def notify_new_subscription(discord, sub, customer=None):
    status = sub.get("status")
    trial_end = from_unix(sub.get("trial_end"))
    extra = f" (trial until {_fmt_date(trial_end)})" if status == "trialing" and trial_end else ""
    return _post(discord, f"🎉 New subscription: **{_who(customer, sub)}** on `{_plan(sub)}`{extra}")


def notify_cancel_scheduled(discord, sub, customer=None):
    effective = from_unix(sub.get("cancel_at") or period_end_of(sub))
    return _post(discord, f"⚠️ Cancellation scheduled: **{_who(customer, sub)}** ends on {_fmt_date(effective)}")


def notify_cancel_reversed(discord, sub, customer=None):
    return _post(discord, f"✅ Cancellation withdrawn: **{_who(customer, sub)}** stays subscribed")


def notify_terminated(discord, sub, customer=None):
    ended = from_unix(sub.get("ended_at") or sub.get("canceled_at"))
    return _post(discord, f"👋 Subscription ended: **{_who(customer, sub)}** ({_fmt_date(ended)})")


COMPOSERS = {
    Notification.NEW_SUBSCRIPTION: notify_new_subscription,
    Notification.CANCEL_SCHEDULED: notify_cancel_scheduled,
    Notification.CANCEL_REVERSED: notify_cancel_reversed,
    Notification.TERMINATED: notify_terminated,
}


def send_notification(discord, variant: str, sub, customer=None) -> bool:
    composer = COMPOSERS.get(variant)
    if composer is None:
        return False
    return composer(discord, sub, customer)
