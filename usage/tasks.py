# usage/tasks.py
from __future__ import annotations
from flask import current_app
from celery_app import celery
from extensions import db
from plans.catalog import USAGE_THRESHOLD_CENTS
from usage.services.ledger import users_over_threshold
from usage.services.settlement import settle_usage, SettlementError


@celery.task(name="usage.settle_user", acks_late=True)
def settle_user(user_id: int):
    try:
        invoice = settle_usage(int(user_id))
    except SettlementError as e:
        # usage stays unbilled; the periodic sweep picks it up again
        return {"ok": False, "user_id": user_id, "error": str(e)}
    return {"ok": True, "user_id": user_id, "invoice_id": invoice.id if invoice else None}


@celery.task(name="usage.settle_all_over_threshold")
def settle_all_over_threshold():
    """
    Sweep every user whose unbilled usage reached the threshold.
    Catches users whose webhook-triggered settlement failed or never ran.
    """
    settled = failed = 0
    for user_id in users_over_threshold(USAGE_THRESHOLD_CENTS):
        try:
            if settle_usage(user_id):
                settled += 1
        except SettlementError:
            failed += 1
        except Exception:
            db.session.rollback()
            failed += 1
            current_app.logger.exception("[usage.tasks] settlement sweep failed for user=%s", user_id)
    return {"ok": True, "settled": settled, "failed": failed}


def enqueue_settlement(user_id: int) -> None:
    """Queue a settlement run; a broker outage must not fail the webhook that triggered it."""
    try:
        settle_user.delay(user_id)
    except Exception:
        current_app.logger.exception("[usage.tasks] could not enqueue settlement for user=%s", user_id)
