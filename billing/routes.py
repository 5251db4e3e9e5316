from __future__ import annotations
from flask import request, jsonify, current_app
from flask_jwt_extended import jwt_required
import stripe
from extensions import db
from auth import current_user_id
from auth.models import User
from common.errors import ApiError, NotFound
from usage.services.ledger import unbilled_total
from usage.services.settlement import settle_usage, SettlementError
from .services.stripe_client import (
    create_checkout_session_subscription,
    create_billing_portal_session,
    create_customer,
)
from .services.dashboard import billing_dashboard, open_usage_invoice
from . import billing_bp


def _base_url() -> str:
    return (current_app.config.get("APP_BASE_URL") or request.host_url).rstrip("/")


def _stripe_error(e: stripe.StripeError):
    current_app.logger.warning("[billing] Stripe error: %s", e)
    return ApiError(
        getattr(e, "user_message", None) or "Payment provider error",
        status_code=502,
        code="stripe_error",
        details={"type": e.__class__.__name__},
    )


def _get_user(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFound("User not found")
    return user


def _ensure_customer_for_user(user: User) -> str:
    if user.stripe_customer_id:
        return user.stripe_customer_id
    cust = create_customer(user_id=user.id, email=user.email, name=user.name)
    user.stripe_customer_id = cust["id"]
    db.session.commit()
    return user.stripe_customer_id


def _subscription_checkout(user: User, payment_type=None):
    data = request.get_json(silent=True) or {}
    base = _base_url()
    customer_id = _ensure_customer_for_user(user)
    return create_checkout_session_subscription(
        customer_id,
        user.id,
        data.get("success_url") or f"{base}/billing?success=true",
        data.get("cancel_url") or f"{base}/billing?canceled=true",
        payment_type=payment_type,
    )


@billing_bp.post("/subscribe")
@jwt_required()
def subscribe():
    user = _get_user(current_user_id())
    try:
        session = _subscription_checkout(user)
    except stripe.StripeError as e:
        raise _stripe_error(e)
    return jsonify({"ok": True, "checkout_url": session["url"], "session_id": session["id"]})


@billing_bp.post("/manage")
@jwt_required()
def manage():
    user = _get_user(current_user_id())
    if not user.stripe_customer_id:
        raise NotFound("No billing account found")
    data = request.get_json(silent=True) or {}
    try:
        portal = create_billing_portal_session(user.stripe_customer_id, data.get("return_url") or f"{_base_url()}/billing")
    except stripe.StripeError as e:
        raise _stripe_error(e)
    return jsonify({"ok": True, "portal_url": portal["url"]})


@billing_bp.post("/retry")
@jwt_required()
def retry_payment():
    """
    Point the user at whatever settles their account: an open usage invoice,
    a fresh invoice for outstanding usage, or a new subscription checkout.
    """
    user = _get_user(current_user_id())

    pending = open_usage_invoice(user.id)
    if pending and pending.hosted_invoice_url:
        return jsonify({"ok": True, "kind": "usage_invoice", "invoice_id": pending.id,
                        "payment_url": pending.hosted_invoice_url})

    try:
        if user.stripe_customer_id and unbilled_total(user.id) > 0:
            invoice = settle_usage(user.id, min_amount=1, require_active=False)
            if invoice is not None:
                return jsonify({"ok": True, "kind": "usage_invoice", "invoice_id": invoice.id,
                                "payment_url": invoice.hosted_invoice_url})
        session = _subscription_checkout(user, payment_type="retry_subscription")
    except SettlementError as e:
        raise ApiError("Could not create usage invoice", status_code=502, code="stripe_error",
                       details={"reason": str(e)})
    except stripe.StripeError as e:
        raise _stripe_error(e)
    return jsonify({"ok": True, "kind": "subscription_checkout", "payment_url": session["url"]})


@billing_bp.get("/dashboard")
@jwt_required()
def dashboard():
    data = billing_dashboard(current_user_id())
    if data is None:
        raise NotFound("User not found")
    return jsonify({"ok": True, "data": data})
