"""
Pure rules over provider subscription payloads: field extraction, the access
rule that drives community roles, and the notification transition table.
Nothing in here performs I/O.
"""
from __future__ import annotations
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from billing.models import ACCESS_STATUSES, SubscriptionStatus
from billing.services.stripe_client import object_id


def from_unix(ts: Optional[int]) -> Optional[datetime]:
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


def _items(sub: Dict[str, Any]) -> List[Dict[str, Any]]:
    return ((sub.get("items") or {}).get("data")) or []


def period_end_of(sub: Dict[str, Any]) -> Optional[int]:
    # newer API versions moved the period onto the subscription items
    end = sub.get("current_period_end")
    if end is not None:
        return end
    ends = [i.get("current_period_end") for i in _items(sub) if i.get("current_period_end") is not None]
    return max(ends) if ends else None


def price_ids_of(sub: Dict[str, Any]) -> List[str]:
    """Deduplicated price ids from the current line items, in item order."""
    out: List[str] = []
    for item in _items(sub):
        pid = object_id(item.get("price"))
        if pid and pid not in out:
            out.append(pid)
    return out


def cancel_scheduled(sub: Dict[str, Any]) -> bool:
    return bool(sub.get("cancel_at_period_end")) or sub.get("cancel_at") is not None


def should_grant_access(sub: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    """
    Trials lose access as soon as a cancellation is scheduled; paid
    subscriptions keep it through the end of the paid period.
    """
    now = now or datetime.now(timezone.utc)
    status = sub.get("status")
    if status not in ACCESS_STATUSES:
        return False

    period_end = from_unix(period_end_of(sub))
    if period_end is not None and period_end <= now:
        return False

    if status == SubscriptionStatus.TRIALING:
        return not cancel_scheduled(sub)
    return True


# ---------- notification transitions ----------

class CancelState(str):
    NONE = "none"
    SCHEDULED = "scheduled"
    ENDED = "ended"


class Notification(str):
    NEW_SUBSCRIPTION = "new_subscription"
    CANCEL_SCHEDULED = "cancel_scheduled"
    CANCEL_REVERSED = "cancel_reversed"
    TERMINATED = "terminated"


def cancel_state_of(sub: Dict[str, Any]) -> str:
    if sub.get("status") == SubscriptionStatus.CANCELED or sub.get("ended_at") is not None:
        return CancelState.ENDED
    if cancel_scheduled(sub):
        return CancelState.SCHEDULED
    return CancelState.NONE


def previous_view(sub: Dict[str, Any], previous_attributes: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """The subscription as it looked before this event: current values overlaid with the changed ones."""
    return {**sub, **(previous_attributes or {})}


UPDATE_TRANSITIONS = {
    (CancelState.NONE, CancelState.SCHEDULED): Notification.CANCEL_SCHEDULED,
    (CancelState.SCHEDULED, CancelState.NONE): Notification.CANCEL_REVERSED,
    (CancelState.NONE, CancelState.ENDED): Notification.TERMINATED,
    (CancelState.SCHEDULED, CancelState.ENDED): Notification.TERMINATED,
}


def notification_for(kind: str, old_state: str, new_state: str) -> Optional[str]:
    """
    kind is the subscription event suffix: "created", "updated" or "deleted".
    Returns the notification variant to post, or None.
    """
    if kind == "created":
        return Notification.NEW_SUBSCRIPTION
    if kind == "deleted":
        return Notification.TERMINATED
    if kind == "updated":
        return UPDATE_TRANSITIONS.get((old_state, new_state))
    return None
