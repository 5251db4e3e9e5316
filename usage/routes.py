from __future__ import annotations
from flask_jwt_extended import jwt_required
from auth import current_user_id
from common.api import ok
from plans.catalog import USAGE_THRESHOLD_CENTS, format_usd, percentage_to_threshold, remaining_usage
from .services.guards import check_eligibility
from .services.ledger import unbilled_total, billed_total, unbilled_call_stats, total_call_count
from . import usage_bp


@usage_bp.get("/eligibility")
@jwt_required()
def eligibility():
    return ok(check_eligibility(current_user_id()).to_dict())


@usage_bp.get("/stats")
@jwt_required()
def stats():
    user_id = current_user_id()
    unbilled = unbilled_total(user_id)
    s = unbilled_call_stats(user_id)
    return ok({
        "unbilledUsage": unbilled,
        "unbilledUsageFormatted": format_usd(unbilled),
        "billedUsage": billed_total(user_id),
        "usageLimit": USAGE_THRESHOLD_CENTS,
        "remainingUsage": remaining_usage(unbilled),
        "percentageToThreshold": round(percentage_to_threshold(unbilled), 1),
        "unbilledCalls": s.count,
        "unbilledMinutes": round(s.total_duration_seconds / 60, 1),
        "successfulCalls": s.successful_count,
        "failedCalls": s.failed_count,
        "totalCalls": total_call_count(user_id),
    })
