from __future__ import annotations
import hmac
from flask import request, jsonify, current_app
from extensions import db
from common.errors import BadRequest, Unauthorized
from usage.tasks import enqueue_settlement
from .services import events as ev
from . import voice_webhooks_bp


def _check_secret() -> None:
    secret = current_app.config.get("VAPI_WEBHOOK_SECRET")
    if not secret:
        return
    supplied = request.headers.get("X-Vapi-Secret", "")
    if not hmac.compare_digest(supplied.encode("utf-8"), secret.encode("utf-8")):
        current_app.logger.warning("[calls.webhook] rejected request with bad secret from %s", request.remote_addr)
        raise Unauthorized("Invalid webhook secret")


@voice_webhooks_bp.post("")
def vapi_webhook():
    _check_secret()
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict) or not isinstance(payload.get("message"), dict):
        raise BadRequest("Invalid webhook payload")
    message = payload["message"]

    try:
        call = ev.apply_call_event(message)
        if call is None:
            return jsonify({"success": True, "message": "Event ignored"}), 200
        settle = ev.needs_settlement(call)
        user_id = call.user_id
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    if settle:
        enqueue_settlement(user_id)
    return jsonify({"success": True, "message": "Call updated successfully"}), 200
