from __future__ import annotations
from typing import Optional
from extensions import db
from auth.models import User
from billing.models import Subscription, Invoice, InvoiceStatus, InvoiceType
from calls.models import Call
from plans.catalog import USAGE_THRESHOLD_CENTS, percentage_to_threshold, remaining_usage
from usage.services.ledger import unbilled_total, billed_total, unbilled_call_stats, total_call_count


def active_subscription(user_id: int) -> Optional[Subscription]:
    return (db.session.query(Subscription)
            .filter(Subscription.user_id == user_id, Subscription.status == "active")
            .order_by(Subscription.updated_at.desc())
            .first())


def open_usage_invoice(user_id: int) -> Optional[Invoice]:
    return (db.session.query(Invoice)
            .filter(Invoice.user_id == user_id,
                    Invoice.invoice_type == InvoiceType.USAGE,
                    Invoice.status.in_([InvoiceStatus.OPEN, InvoiceStatus.PAST_DUE]))
            .order_by(Invoice.created_at.desc())
            .first())


def billing_dashboard(user_id: int) -> Optional[dict]:
    """Everything the billing page shows, in one read. None if the user is gone."""
    user = db.session.get(User, user_id)
    if user is None:
        return None

    unbilled = unbilled_total(user_id)
    stats = unbilled_call_stats(user_id)
    over_limit = unbilled >= USAGE_THRESHOLD_CENTS

    unpaid = (db.session.query(Invoice.id)
              .filter(Invoice.user_id == user_id,
                      Invoice.status.in_([InvoiceStatus.OPEN, InvoiceStatus.PAST_DUE]))
              .first()) is not None

    recent_calls = (db.session.query(Call)
                    .filter(Call.user_id == user_id)
                    .order_by(Call.created_at.desc())
                    .limit(10).all())
    invoices = (db.session.query(Invoice)
                .filter(Invoice.user_id == user_id)
                .order_by(Invoice.created_at.desc())
                .limit(5).all())
    sub = active_subscription(user_id)

    return {
        "subscriptionStatus": user.subscription_status,
        "canMakeCalls": user.can_make_calls,
        "usage": {
            "unbilledAmount": unbilled,
            "billedAmount": billed_total(user_id),
            "unbilledCallCount": stats.count,
            "totalCallCount": total_call_count(user_id),
            "usageLimit": USAGE_THRESHOLD_CENTS,
            "percentageToThreshold": round(percentage_to_threshold(unbilled), 1),
            "remainingUsage": remaining_usage(unbilled),
            "unbilledMinutes": round(stats.total_duration_seconds / 60, 1),
            "successfulCalls": stats.successful_count,
            "failedCalls": stats.failed_count,
        },
        "hasExceededUsageLimit": over_limit,
        "hasUnpaidInvoices": unpaid,
        "needsPaymentRetry": unpaid or user.subscription_status in ("past_due", "unpaid"),
        "recentCalls": [c.to_dict() for c in recent_calls],
        "subscription": {
            "id": sub.id,
            "status": sub.status,
            "current_period_end": sub.current_period_end.isoformat() if sub.current_period_end else None,
        } if sub else None,
        "invoices": [i.to_dict() for i in invoices],
    }
