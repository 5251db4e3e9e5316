from __future__ import annotations
import hashlib
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Tuple
import stripe
from flask import current_app
from sqlalchemy import select, update
from extensions import db
from auth.models import User
from billing.models import Invoice, InvoiceType, InvoiceStatus
from billing.services.stripe_client import create_usage_invoice, void_invoice
from calls.models import Call, BillingStatus
from plans.catalog import USAGE_THRESHOLD_CENTS, format_usd
from usage.services.ledger import unbilled_call_snapshot, billable_filter


class SettlementError(Exception):
    """Stripe refused the usage invoice; no call was marked billed."""


def _field(obj, name: str):
    try:
        return obj[name]
    except KeyError:
        return None


def _snapshot_key(user_id: int, call_ids) -> str:
    digest = hashlib.sha256(",".join(sorted(call_ids)).encode("utf-8")).hexdigest()[:32]
    return f"usage_{user_id}_{digest}"


def _claim(user_id: int, call_ids: List[str]) -> Tuple[str, List[str], int]:
    """
    Stamp this run's claim on the snapshot rows nobody else holds and commit,
    so a concurrent run skips them. Returns (claim, claimed ids, claimed amount).
    """
    claim = uuid.uuid4().hex
    now = datetime.now(timezone.utc)
    db.session.execute(
        update(Call)
        .where(Call.id.in_(call_ids), *billable_filter(user_id, now))
        .values(settlement_claim=claim, claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    rows = db.session.execute(select(Call.id, Call.cost).where(Call.settlement_claim == claim)).all()
    return claim, [r.id for r in rows], sum(int(r.cost) for r in rows)


def _release(claim: str) -> None:
    db.session.execute(
        update(Call)
        .where(Call.settlement_claim == claim, Call.billing_status == BillingStatus.UNBILLED)
        .values(settlement_claim=None, claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    db.session.commit()


def settle_usage(user_id: int, *, min_amount: int = USAGE_THRESHOLD_CENTS, require_active: bool = True) -> Optional[Invoice]:
    """
    Invoice the user's unbilled usage once it reaches `min_amount`.

    The billable calls are claimed (committed) before Stripe is called, and
    only the claimed rows are invoiced and then flipped to billed. A run that
    starts while another is waiting on Stripe sees those rows as taken, so
    each call's cost lands on exactly one invoice. Calls that arrive during
    the run stay unbilled for the next one. If Stripe fails the claim is
    released and nothing else changes.

    Returns the local Invoice row, or None when there was nothing to bill.
    """
    user = db.session.get(User, user_id)
    if not user or not user.stripe_customer_id:
        current_app.logger.warning("[usage.settle] user %s missing or has no Stripe customer; skipped", user_id)
        return None
    if require_active and (user.subscription_status != "active" or not user.can_make_calls):
        current_app.logger.info("[usage.settle] user %s is %s; usage billing skipped", user_id, user.subscription_status)
        return None
    customer_id = user.stripe_customer_id

    call_ids, amount = unbilled_call_snapshot(user_id)
    if not call_ids or amount <= 0 or amount < min_amount:
        return None

    claim, call_ids, amount = _claim(user_id, call_ids)
    if not call_ids or amount <= 0 or amount < min_amount:
        # lost some or all rows to a concurrent run
        _release(claim)
        return None

    current_app.logger.info("[usage.settle] invoicing %s over %d calls for user %s",
                            format_usd(amount), len(call_ids), user_id)
    try:
        stripe_invoice = create_usage_invoice(
            customer_id=customer_id,
            user_id=user_id,
            amount_cents=amount,
            call_ids=call_ids,
            idempotency_key=_snapshot_key(user_id, call_ids),
        )
    except stripe.StripeError as e:
        db.session.rollback()
        current_app.logger.exception("[usage.settle] Stripe invoice failed for user %s", user_id)
        _release(claim)
        raise SettlementError(str(e)) from e

    invoice_id = stripe_invoice["id"]
    result = db.session.execute(
        update(Call)
        .where(Call.settlement_claim == claim, Call.billing_status == BillingStatus.UNBILLED)
        .values(billing_status=BillingStatus.BILLED, invoice_id=invoice_id, settlement_claim=None, claimed_at=None)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != len(call_ids):
        # the claim expired and another run took rows; this invoice would double-charge them
        db.session.rollback()
        current_app.logger.error("[usage.settle] invoice %s: claimed %d calls, still held %d; voiding",
                                 invoice_id, len(call_ids), result.rowcount)
        try:
            void_invoice(invoice_id)
        except stripe.StripeError:
            current_app.logger.exception("[usage.settle] could not void invoice %s", invoice_id)
        _release(claim)
        raise SettlementError(f"settlement claim lost for invoice {invoice_id}")

    row = db.session.get(Invoice, invoice_id)
    if row is None:
        # the payment webhook may already have recorded it; keep its status then
        row = Invoice(id=invoice_id, user_id=user_id, status=InvoiceStatus.OPEN)
        db.session.add(row)
    row.invoice_type = InvoiceType.USAGE
    row.amount = amount
    row.hosted_invoice_url = _field(stripe_invoice, "hosted_invoice_url") or row.hosted_invoice_url
    db.session.commit()
    current_app.logger.info("[usage.settle] usage invoice %s created for user %s", invoice_id, user_id)
    return row
