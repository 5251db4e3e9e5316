from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple
from sqlalchemy import select, func, case, or_
from extensions import db
from calls.models import Call, BillingStatus, CallStatus
from plans.catalog import SETTLEMENT_CLAIM_TTL_SECONDS


@dataclass(frozen=True)
class UnbilledStats:
    count: int
    total_duration_seconds: int
    successful_count: int
    failed_count: int


def _sum_cost(user_id: int, billing_status: str) -> int:
    q = select(func.coalesce(func.sum(Call.cost), 0)).where(
        Call.user_id == user_id,
        Call.billing_status == billing_status,
    )
    return int(db.session.execute(q).scalar_one() or 0)


def unbilled_total(user_id: int) -> int:
    """Cents of call cost not yet attached to a usage invoice. Calls without a reported cost count as 0."""
    return _sum_cost(user_id, BillingStatus.UNBILLED)


def billed_total(user_id: int) -> int:
    return _sum_cost(user_id, BillingStatus.BILLED)


def unbilled_call_stats(user_id: int) -> UnbilledStats:
    q = select(
        func.count(Call.id),
        func.coalesce(func.sum(Call.duration), 0),
        func.coalesce(func.sum(case((Call.status == CallStatus.COMPLETED, 1), else_=0)), 0),
        func.coalesce(func.sum(case(
            (Call.status.notin_([CallStatus.COMPLETED, CallStatus.IN_PROGRESS]), 1), else_=0
        )), 0),
    ).where(
        Call.user_id == user_id,
        Call.billing_status == BillingStatus.UNBILLED,
    )
    count, duration, ok_count, failed = db.session.execute(q).one()
    return UnbilledStats(
        count=int(count or 0),
        total_duration_seconds=int(duration or 0),
        successful_count=int(ok_count or 0),
        failed_count=int(failed or 0),
    )


def total_call_count(user_id: int) -> int:
    q = select(func.count(Call.id)).where(Call.user_id == user_id)
    return int(db.session.execute(q).scalar_one() or 0)


def claim_expiry(now: Optional[datetime] = None) -> datetime:
    return (now or datetime.now(timezone.utc)) - timedelta(seconds=SETTLEMENT_CLAIM_TTL_SECONDS)


def billable_filter(user_id: int, now: Optional[datetime] = None):
    """Unbilled, costed, and not held by a live settlement claim."""
    return (
        Call.user_id == user_id,
        Call.billing_status == BillingStatus.UNBILLED,
        Call.cost.isnot(None),
        or_(Call.settlement_claim.is_(None), Call.claimed_at < claim_expiry(now)),
    )


def unbilled_call_snapshot(user_id: int) -> Tuple[List[str], int]:
    """
    Ids and summed cost of the unbilled calls that already carry a cost.
    Calls still waiting for their end-of-call report stay out of the snapshot,
    so their cost lands on a later invoice instead of being lost. Calls another
    settlement run has claimed are skipped too.
    """
    rows = db.session.execute(select(Call.id, Call.cost).where(*billable_filter(user_id))).all()
    ids = [r.id for r in rows]
    amount = sum(int(r.cost) for r in rows)
    return ids, amount


def users_over_threshold(threshold_cents: int) -> List[int]:
    q = (select(Call.user_id)
         .where(Call.billing_status == BillingStatus.UNBILLED, Call.cost.isnot(None))
         .group_by(Call.user_id)
         .having(func.sum(Call.cost) >= threshold_cents))
    return [int(uid) for uid in db.session.execute(q).scalars().all()]
