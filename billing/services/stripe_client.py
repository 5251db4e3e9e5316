from __future__ import annotations
import os
from typing import List, Optional
import stripe
from flask import current_app
from plans.catalog import CURRENCY, format_usd

stripe.api_key = os.getenv("STRIPE_SECRET_KEY")

STRIPE_PRICE_ID = os.getenv("STRIPE_PRICE_ID")


def create_customer(user_id: int, email: Optional[str] = None, name: Optional[str] = None):
    """
    Create a Stripe Customer for this user.
    We always tag user_id in metadata for support/debug.
    """
    return stripe.Customer.create(
        email=email,
        name=name,
        metadata={"user_id": str(user_id)},
    )

def create_checkout_session_subscription(customer_id: str, user_id: int, success_url: str, cancel_url: str,
                                         payment_type: Optional[str] = None):
    metadata = {"user_id": str(user_id)}
    if payment_type:
        metadata["payment_type"] = payment_type
    return stripe.checkout.Session.create(
        mode="subscription",
        customer=customer_id,
        payment_method_types=["card"],
        line_items=[{"price": current_app.config.get("STRIPE_PRICE_ID") or STRIPE_PRICE_ID, "quantity": 1}],
        success_url=success_url,
        cancel_url=cancel_url,
        metadata=metadata,
    )

def create_billing_portal_session(customer_id: str, return_url: str):
    return stripe.billing_portal.Session.create(customer=customer_id, return_url=return_url)

def construct_event_from_request(payload: bytes, sig_header: str, secret: Optional[str] = None):
    secret = secret or os.getenv("STRIPE_WEBHOOK_SECRET")
    event = stripe.Webhook.construct_event(payload, sig_header, secret)
    # recent SDKs no longer subclass dict; handlers read plain dicts
    to_dict = getattr(event, "to_dict", None)
    return to_dict() if callable(to_dict) else event


def create_usage_invoice(customer_id: str, user_id: int, amount_cents: int, call_ids: List[str], idempotency_key: str):
    """
    Create, itemise and finalize a usage invoice for `amount_cents`.
    `idempotency_key` is derived from the billed call set, so a retried
    settlement of the same snapshot reuses the same Stripe objects.
    """
    invoice = stripe.Invoice.create(
        customer=customer_id,
        description=f"Usage charges for calls totaling {format_usd(amount_cents)}",
        auto_advance=True,
        metadata={
            "user_id": str(user_id),
            "billing_type": "usage",
            "amount_cents": str(amount_cents),
            "call_count": str(len(call_ids)),
        },
        idempotency_key=f"{idempotency_key}:invoice",
    )
    stripe.InvoiceItem.create(
        customer=customer_id,
        invoice=invoice["id"],
        amount=amount_cents,
        currency=CURRENCY,
        description="Usage charges for voice calls",
        idempotency_key=f"{idempotency_key}:item",
    )
    return stripe.Invoice.finalize_invoice(invoice["id"])


def void_invoice(invoice_id: str):
    """Cancel a finalized invoice that must not be collected."""
    return stripe.Invoice.void_invoice(invoice_id)
