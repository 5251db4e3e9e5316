from __future__ import annotations


CENTS = 100 # 1 USD == 100 cents
CURRENCY = "usd"


# Usage gate: calls are blocked once this much unbilled usage has accrued,
# and the settlement job invoices it.
USAGE_THRESHOLD_CENTS = 25 * CENTS


# Batch dispatch limits
BATCH_MAX_CONTACTS = 100
BATCH_CHUNK_SIZE = 10 # also the max concurrent Vapi requests per batch


# A settlement claim older than this is treated as abandoned (crashed worker)
# and its calls become billable again.
SETTLEMENT_CLAIM_TTL_SECONDS = 15 * 60


SUBSCRIPTION_STATUSES = (
    "active",
    "trialing",
    "past_due",
    "canceled",
    "unpaid",
    "incomplete",
    "incomplete_expired",
    "paused",
    )


def format_usd(cents: int) -> str:
    """2550 -> '$25.50'"""
    return f"${(cents or 0) / CENTS:.2f}"


def percentage_to_threshold(usage_cents: int) -> float:
    return min((usage_cents / USAGE_THRESHOLD_CENTS) * 100, 100.0)


def remaining_usage(usage_cents: int) -> int:
    return max(USAGE_THRESHOLD_CENTS - usage_cents, 0)
