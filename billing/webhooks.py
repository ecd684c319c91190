from __future__ import annotations
from flask import request, jsonify, current_app
from .services.events import WebhookSynchronizer
from . import billing_webhooks_bp, billing_services


@billing_webhooks_bp.post("")
def stripe_webhook():
    payload = request.get_data()
    sig = request.headers.get("Stripe-Signature", "")
    services = billing_services()

    try:
        event = services.gateway.construct_event(payload, sig, current_app.config.get("STRIPE_WEBHOOK_SECRET"))
    except Exception as e:
        current_app.logger.exception("[billing.webhook] signature/parse failed")
        return jsonify({"ok": False, "error": "bad_signature", "detail": str(e)}), 400

    etype = event.get("type")
    evid = event.get("id")
    current_app.logger.info("[billing.webhook] %s %s", etype, evid)

    try:
        handled = WebhookSynchronizer(services.gateway, services.discord).handle(event)
    except Exception as e:
        # non-2xx makes the provider redeliver; handlers are safe to repeat
        current_app.logger.exception("[billing.webhook] handler failed for %s %s", etype, evid)
        return jsonify({"ok": False, "handled": etype, "error": str(e)}), 500

    if handled.startswith("ignored:"):
        return jsonify({"ok": True, "note": handled}), 200
    return jsonify({"ok": True, "handled": handled}), 200
