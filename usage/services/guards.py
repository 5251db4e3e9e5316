from __future__ import annotations
from dataclasses import dataclass
from functools import wraps
from typing import Optional
from extensions import db
from auth import current_user_id
from auth.models import User
from common.errors import CallsNotAllowed
from plans.catalog import USAGE_THRESHOLD_CENTS, format_usd, remaining_usage
from usage.services.ledger import unbilled_total


@dataclass(frozen=True)
class Eligibility:
    can_make_call: bool
    current_usage: int
    threshold_amount: int
    subscription_status: str
    reason: Optional[str] = None

    @property
    def remaining_usage(self) -> int:
        return remaining_usage(self.current_usage)

    def to_dict(self) -> dict:
        return {
            "canMakeCall": self.can_make_call,
            "reason": self.reason,
            "currentUsage": self.current_usage,
            "usageLimit": self.threshold_amount,
            "remainingUsage": self.remaining_usage,
            "subscriptionStatus": self.subscription_status,
        }


def check_eligibility(user_id: int) -> Eligibility:
    """
    Decide whether `user_id` may place a call right now. First failing check wins:
    account exists, subscription active and calling enabled, unbilled usage under
    the threshold. Read-only; storage errors propagate to the caller.
    """
    user = db.session.get(User, user_id)
    if user is None:
        return Eligibility(
            can_make_call=False,
            reason="User not found",
            current_usage=0,
            threshold_amount=USAGE_THRESHOLD_CENTS,
            subscription_status="unknown",
        )

    status = user.subscription_status
    usage = unbilled_total(user_id)
    # an over-limit account is told about its balance even when the subscription check fails first
    over_limit = f" Current unbilled usage: {format_usd(usage)}." if usage >= USAGE_THRESHOLD_CENTS else ""

    if status != "active":
        return Eligibility(
            can_make_call=False,
            reason=f"Subscription is {status}. Please update your billing information.{over_limit}",
            current_usage=usage,
            threshold_amount=USAGE_THRESHOLD_CENTS,
            subscription_status=status,
        )
    if not user.can_make_calls:
        return Eligibility(
            can_make_call=False,
            reason=f"Calling is disabled for this account. Please update your billing information.{over_limit}",
            current_usage=usage,
            threshold_amount=USAGE_THRESHOLD_CENTS,
            subscription_status=status,
        )

    if usage >= USAGE_THRESHOLD_CENTS:
        return Eligibility(
            can_make_call=False,
            reason=(
                f"Usage limit exceeded. Current unbilled usage: {format_usd(usage)}. "
                "Please pay your outstanding balance to continue making calls."
            ),
            current_usage=usage,
            threshold_amount=USAGE_THRESHOLD_CENTS,
            subscription_status=status,
        )

    return Eligibility(
        can_make_call=True,
        current_usage=usage,
        threshold_amount=USAGE_THRESHOLD_CENTS,
        subscription_status=status,
    )


def require_eligibility(user_id: int) -> Eligibility:
    elig = check_eligibility(user_id)
    if not elig.can_make_call:
        raise CallsNotAllowed(elig)
    return elig


def eligibility_required(fn):
    """
    Decorator: run the call-eligibility gate for the current user.
    Use together with @jwt_required() on the route.
    Returns 403 JSON carrying the reason and usage figures when denied.
    """
    @wraps(fn)
    def _wrapped(*args, **kwargs):
        require_eligibility(current_user_id())
        return fn(*args, **kwargs)
    return _wrapped
