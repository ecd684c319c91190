from __future__ import annotations
from flask import request, jsonify, current_app
from flask_jwt_extended import jwt_required, get_jwt_identity
import stripe
from admin.errors import NotFound
from .repository import SubscriptionRepo
from .services.snapshot import DEFAULT_RETRY_COUNT, NEGATIVE, POST_CHECKOUT_RETRY_COUNT
from . import billing_bp, billing_services, snapshot_cache


@billing_bp.get("/access")
@jwt_required()
def get_access():
    user_id = str(get_jwt_identity())
    post_checkout = request.args.get("checkout") == "success"
    try:
        result = snapshot_cache().resolve(
            user_id,
            retry_count=POST_CHECKOUT_RETRY_COUNT if post_checkout else DEFAULT_RETRY_COUNT,
            is_post_checkout=post_checkout,
        )
    except Exception:
        current_app.logger.exception("[billing.access] resolve failed for user=%s", user_id)
        result = NEGATIVE
    resp = jsonify(result.to_dict())
    resp.headers["Cache-Control"] = "no-store"
    return resp


@billing_bp.post("/portal")
@jwt_required()
def open_portal():
    user_id = str(get_jwt_identity())
    data = request.get_json(silent=True) or {}
    cfg = current_app.config
    return_url = data.get("return_url") or cfg.get("BILLING_PORTAL_RETURN_URL")
    gateway = billing_services().gateway

    record = SubscriptionRepo().get(user_id)
    customer_id = record.stripe_customer_id if record else None
    try:
        if not customer_id:
            customer_id = gateway.find_customer_id(user_id)
        if not customer_id:
            raise NotFound("No billing customer for this account")
        portal = gateway.create_portal_session(customer_id, return_url, cfg.get("BILLING_PORTAL_LOCALE", "auto"))
        return jsonify({"ok": True, "portal_url": portal.get("url")})
    except stripe.StripeError as e:
        current_app.logger.exception("[billing.portal] provider error for user=%s", user_id)
        return jsonify({
            "ok": False,
            "error": "stripe_error",
            "type": getattr(e, "user_message", None) or e.__class__.__name__,
            "message": str(e)
        }), 400
