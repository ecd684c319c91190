from datetime import datetime, timezone


def ts(year, month, day, hour=0, minute=0):
    return int(datetime(year, month, day, hour, minute, tzinfo=timezone.utc).timestamp())


def make_customer(cid="cus_1", user_id="user_1", *, discord_id=None, email="ada@example.com", country="DE", **extra):
    metadata = {}
    if user_id:
        metadata["userId"] = user_id
    if discord_id:
        metadata["discordUserId"] = discord_id
    customer = {
        "id": cid,
        "object": "customer",
        "email": email,
        "address": {"country": country} if country else None,
        "metadata": metadata,
    }
    customer.update(extra)
    return customer


def make_subscription(
    sid="sub_1",
    customer="cus_1",
    *,
    status="active",
    price="price_pro",
    created=None,
    period_end=None,
    cancel_at_period_end=False,
    cancel_at=None,
    canceled_at=None,
    ended_at=None,
    **extra,
):
    sub = {
        "id": sid,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "created": created if created is not None else ts(2026, 1, 15),
        "current_period_end": period_end if period_end is not None else ts(2030, 1, 1),
        "cancel_at_period_end": cancel_at_period_end,
        "cancel_at": cancel_at,
        "canceled_at": canceled_at,
        "ended_at": ended_at,
        "items": {"data": [{"id": f"si_{sid}", "price": price}]},
    }
    sub.update(extra)
    return sub


def make_event(etype, obj, previous=None, eid="evt_1"):
    data = {"object": obj}
    if previous is not None:
        data["previous_attributes"] = previous
    return {"id": eid, "type": etype, "data": data}
