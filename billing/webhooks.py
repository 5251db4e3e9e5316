from __future__ import annotations
from flask import request, jsonify, current_app
from extensions import db
from .services.stripe_client import construct_event_from_request
from .services import events as ev
from . import billing_webhooks_bp

@billing_webhooks_bp.post("")
def stripe_webhook():
    payload = request.get_data()
    sig = request.headers.get("Stripe-Signature", "")
    if not sig:
        return jsonify({"ok": False, "error": "missing_signature"}), 400

    try:
        event = construct_event_from_request(payload, sig, current_app.config.get("STRIPE_WEBHOOK_SECRET"))
    except Exception as e:
        current_app.logger.warning("[billing.webhook] signature/parse failed: %s", e)
        return jsonify({"ok": False, "error": "bad_signature"}), 400

    etype = event.get("type")
    evid = event.get("id")
    if not etype or not evid:
        return jsonify({"ok": False, "error": "malformed_event"}), 400

    current_app.logger.info("[billing.webhook] %s %s", etype, evid)

    if etype not in ev.HANDLERS:
        return jsonify({"ok": True, "note": f"ignored:{etype}"}), 200

    try:
        ev.apply_event(event)
        db.session.commit()
    except Exception:
        # roll back the processed-event marker too, so Stripe's redelivery is applied
        db.session.rollback()
        current_app.logger.exception("[billing.webhook] handler failed for %s %s", etype, evid)
        return jsonify({"ok": False, "handled": etype, "error": "processing_failed"}), 500
    return jsonify({"ok": True, "handled": etype}), 200
