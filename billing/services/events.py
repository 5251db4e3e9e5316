"""
Stripe event handlers. Each one runs inside the webhook's transaction and
mutates the local billing projection (User flags, Subscription, Invoice).

Every handler:
  - records the event id first, so a redelivered event is a no-op;
  - resolves the user through `User.stripe_customer_id` and drops the event
    (warning, no retry) when no user matches.
"""
from datetime import datetime, timezone
from typing import Optional
from flask import current_app
from extensions import db
from auth.models import User
from ..models import Subscription, Invoice, ProcessedStripeEvent, InvoiceType, InvoiceStatus


def _mark_event(event_id: str) -> bool:
    if db.session.query(ProcessedStripeEvent).filter_by(event_id=event_id).first():
        current_app.logger.info("[billing.events] duplicate event %s ignored", event_id)
        return False
    db.session.add(ProcessedStripeEvent(event_id=event_id))
    return True

def _user_by_customer(customer_id: Optional[str], event_id: str) -> Optional[User]:
    user = db.session.query(User).filter_by(stripe_customer_id=customer_id).first() if customer_id else None
    if user is None:
        current_app.logger.warning("[billing.events] no user for customer %s (event %s); dropped", customer_id, event_id)
    return user

def _ts(value) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value else None

def _as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt

def _is_stale(row, created: Optional[datetime]) -> bool:
    """True when `row` (Subscription or Invoice) already reflects a newer event."""
    if row is None or created is None or row.last_event_at is None:
        return False
    return created < _as_utc(row.last_event_at)

def _invoice_period_end(invoice: dict) -> Optional[datetime]:
    lines = (invoice.get("lines") or {}).get("data") or []
    period = (lines[0].get("period") if lines else None) or {}
    return _ts(period.get("end") or invoice.get("period_end"))

def _invoice_subscription(invoice: dict) -> Optional[str]:
    # newer API versions moved the subscription under parent.subscription_details
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return invoice.get("subscription") or details.get("subscription")

def _invoice_type(invoice: dict) -> str:
    meta = invoice.get("metadata") or {}
    if meta.get("billing_type") == "usage" or not _invoice_subscription(invoice):
        return InvoiceType.USAGE
    return InvoiceType.SUBSCRIPTION

def _upsert_invoice(user: User, invoice: dict, status: str, amount: int,
                    created: Optional[datetime] = None) -> Invoice:
    row = db.session.get(Invoice, invoice.get("id"))
    if row is None:
        row = Invoice(id=invoice.get("id"), user_id=user.id, invoice_type=_invoice_type(invoice))
        db.session.add(row)
    row.status = status
    row.amount = int(amount or 0)
    row.hosted_invoice_url = invoice.get("hosted_invoice_url") or row.hosted_invoice_url
    if created and not _is_stale(row, created):
        row.last_event_at = created
    return row

def _upsert_subscription(user: User, sub_id: str, status: str, period_end: Optional[datetime],
                         created: Optional[datetime]) -> Subscription:
    sub = db.session.get(Subscription, sub_id)
    if sub is None:
        sub = Subscription(id=sub_id, user_id=user.id)
        db.session.add(sub)
    sub.status = status
    if period_end:
        sub.current_period_end = period_end
    if created:
        sub.last_event_at = created
    return sub


def on_checkout_completed(event_id: str, session: dict, created: Optional[datetime] = None):
    if not _mark_event(event_id): return
    if session.get("mode") != "subscription":
        return
    user = _user_by_customer(session.get("customer"), event_id)
    if not user: return
    user.set_billing_state("active", True)
    current_app.logger.info("[billing.events] subscription activated for user %s", user.id)

def on_invoice_payment_succeeded(event_id: str, invoice: dict, created: Optional[datetime] = None):
    if not _mark_event(event_id): return
    user = _user_by_customer(invoice.get("customer"), event_id)
    if not user: return

    sub_id = _invoice_subscription(invoice)
    if sub_id:
        _upsert_subscription(user, sub_id, "active", _invoice_period_end(invoice), created)
    _upsert_invoice(user, invoice, InvoiceStatus.PAID, invoice.get("amount_paid"), created)
    user.set_billing_state("active", True)
    current_app.logger.info("[billing.events] payment succeeded for user %s, invoice %s", user.id, invoice.get("id"))

def on_invoice_payment_failed(event_id: str, invoice: dict, created: Optional[datetime] = None):
    if not _mark_event(event_id): return
    user = _user_by_customer(invoice.get("customer"), event_id)
    if not user: return

    row = db.session.get(Invoice, invoice.get("id"))
    # paid is terminal; a failure that predates what we hold is history
    if row is not None and (row.status == InvoiceStatus.PAID or _is_stale(row, created)):
        current_app.logger.info("[billing.events] late payment_failed %s for invoice %s (%s) ignored",
                                event_id, row.id, row.status)
        return
    _upsert_invoice(user, invoice, InvoiceStatus.OPEN, invoice.get("amount_due"), created)
    user.set_billing_state("past_due", False)
    current_app.logger.warning("[billing.events] payment failed for user %s, invoice %s; calls blocked",
                               user.id, invoice.get("id"))

def on_subscription_updated(event_id: str, subscription: dict, created: Optional[datetime] = None):
    if not _mark_event(event_id): return
    user = _user_by_customer(subscription.get("customer"), event_id)
    if not user: return

    sub = db.session.get(Subscription, subscription.get("id"))
    if _is_stale(sub, created):
        current_app.logger.info("[billing.events] stale subscription event %s for %s ignored", event_id, sub.id)
        return
    status = subscription.get("status")
    _upsert_subscription(user, subscription.get("id"), status, _ts(subscription.get("current_period_end")), created)
    user.set_billing_state(status, status == "active")
    current_app.logger.info("[billing.events] subscription %s for user %s is %s", subscription.get("id"), user.id, status)

def on_subscription_deleted(event_id: str, subscription: dict, created: Optional[datetime] = None):
    if not _mark_event(event_id): return
    user = _user_by_customer(subscription.get("customer"), event_id)
    if not user: return

    _upsert_subscription(user, subscription.get("id"), "canceled", None, created)
    user.set_billing_state("canceled", False)
    current_app.logger.info("[billing.events] subscription canceled for user %s", user.id)


HANDLERS = {
    "checkout.session.completed": on_checkout_completed,
    "invoice.payment_succeeded": on_invoice_payment_succeeded,
    "invoice.paid": on_invoice_payment_succeeded,
    "invoice.payment_failed": on_invoice_payment_failed,
    "customer.subscription.created": on_subscription_updated,  # treat as update
    "customer.subscription.updated": on_subscription_updated,
    "customer.subscription.deleted": on_subscription_deleted,
}

def apply_event(event) -> Optional[str]:
    """
    Dispatch one verified Stripe event. Returns the handled type,
    or None when the type is not one we act on.
    """
    etype = event.get("type")
    handler = HANDLERS.get(etype)
    if handler is None:
        return None
    data_obj = (event.get("data") or {}).get("object") or {}
    handler(event.get("id"), data_obj, _ts(event.get("created")))
    return etype
