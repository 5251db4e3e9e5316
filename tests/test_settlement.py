import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
import stripe
from sqlalchemy import update

from extensions import db
from billing.models import Invoice, InvoiceStatus, InvoiceType
from calls.models import Call, BillingStatus, CallStatus
from plans.catalog import SETTLEMENT_CLAIM_TTL_SECONDS
from usage.services.settlement import settle_usage, SettlementError
from usage.tasks import settle_all_over_threshold, settle_user


STRIPE_INVOICE = {"id": "in_usage_1", "hosted_invoice_url": "https://pay.stripe.test/in_usage_1"}


@pytest.fixture
def over_limit(make_user, make_agent, make_call):
    user = make_user()
    agent = make_agent(user)
    calls = [make_call(user, agent, cost=c) for c in (1000, 900, 700)]
    return user, agent, calls


def test_settles_exactly_the_snapshot(over_limit):
    user, _, calls = over_limit
    with patch("usage.services.settlement.create_usage_invoice", return_value=STRIPE_INVOICE) as create:
        invoice = settle_usage(user.id)

    create.assert_called_once()
    kwargs = create.call_args.kwargs
    assert kwargs["amount_cents"] == 2600
    assert kwargs["customer_id"] == user.stripe_customer_id
    assert sorted(kwargs["call_ids"]) == sorted(c.id for c in calls)

    assert invoice.id == "in_usage_1"
    assert invoice.amount == 2600
    assert invoice.invoice_type == InvoiceType.USAGE
    assert invoice.status == InvoiceStatus.OPEN
    assert invoice.hosted_invoice_url == STRIPE_INVOICE["hosted_invoice_url"]

    db.session.expire_all()
    for c in calls:
        row = db.session.get(Call, c.id)
        assert row.billing_status == BillingStatus.BILLED
        assert row.invoice_id == "in_usage_1"


def test_call_landing_during_settlement_stays_unbilled(over_limit, make_call):
    user, agent, calls = over_limit
    late = {}

    def _create_invoice(**kwargs):
        late["call"] = make_call(user, agent, cost=400, call_id="late_call")
        return STRIPE_INVOICE

    with patch("usage.services.settlement.create_usage_invoice", side_effect=_create_invoice):
        invoice = settle_usage(user.id)

    assert invoice.amount == 2600
    db.session.expire_all()
    assert db.session.get(Call, "late_call").billing_status == BillingStatus.UNBILLED
    assert db.session.query(Call).filter_by(billing_status=BillingStatus.BILLED).count() == 3


def test_stripe_failure_leaves_everything_unbilled(over_limit):
    user, _, calls = over_limit
    with patch("usage.services.settlement.create_usage_invoice",
               side_effect=stripe.APIConnectionError("network down")):
        with pytest.raises(SettlementError):
            settle_usage(user.id)

    db.session.expire_all()
    assert all(db.session.get(Call, c.id).billing_status == BillingStatus.UNBILLED for c in calls)
    assert db.session.query(Invoice).count() == 0


def test_below_threshold_is_not_billed(make_user, make_agent, make_call):
    user = make_user()
    make_call(user, make_agent(user), cost=2499)
    with patch("usage.services.settlement.create_usage_invoice") as create:
        assert settle_usage(user.id) is None
    create.assert_not_called()


def test_costless_calls_are_left_for_later(make_user, make_agent, make_call):
    user = make_user()
    agent = make_agent(user)
    make_call(user, agent, cost=2600)
    pending = make_call(user, agent, cost=None, status=CallStatus.IN_PROGRESS)

    with patch("usage.services.settlement.create_usage_invoice", return_value=STRIPE_INVOICE):
        settle_usage(user.id)

    db.session.expire_all()
    assert db.session.get(Call, pending.id).billing_status == BillingStatus.UNBILLED


def test_inactive_or_customerless_users_are_skipped(make_user, make_agent, make_call):
    inactive = make_user(status="past_due", can_make_calls=False)
    make_call(inactive, make_agent(inactive, agent_id="asst_i"), cost=5000)
    no_customer = make_user(customer=None)
    make_call(no_customer, make_agent(no_customer, agent_id="asst_n"), cost=5000)

    with patch("usage.services.settlement.create_usage_invoice") as create:
        assert settle_usage(inactive.id) is None
        assert settle_usage(no_customer.id) is None
    create.assert_not_called()


def test_idempotency_key_is_stable_for_the_same_snapshot(over_limit):
    user, _, _ = over_limit
    with patch("usage.services.settlement.create_usage_invoice",
               side_effect=stripe.APIConnectionError("flaky")) as create:
        with pytest.raises(SettlementError):
            settle_usage(user.id)
        with pytest.raises(SettlementError):
            settle_usage(user.id)

    first, second = (c.kwargs["idempotency_key"] for c in create.call_args_list)
    assert first == second


def test_settle_user_task_reports_failure(over_limit):
    user, _, _ = over_limit
    with patch("usage.services.settlement.create_usage_invoice",
               side_effect=stripe.APIConnectionError("down")):
        result = settle_user.run(user.id)
    assert result["ok"] is False


def test_sweep_settles_every_user_over_threshold(over_limit, make_user, make_agent, make_call):
    user, _, _ = over_limit
    light = make_user()
    make_call(light, make_agent(light, agent_id="asst_light"), cost=100)

    with patch("usage.services.settlement.create_usage_invoice", return_value=STRIPE_INVOICE) as create:
        result = settle_all_over_threshold.run()

    assert result == {"ok": True, "settled": 1, "failed": 0}
    assert create.call_args.kwargs["user_id"] == user.id


def _invoices(*ids):
    return iter({"id": i, "hosted_invoice_url": f"https://pay.stripe.test/{i}"} for i in ids)


def test_concurrent_settlement_never_bills_a_call_twice(app, over_limit, make_call):
    user, agent, calls = over_limit
    user_id = user.id
    issued = _invoices("in_first", "in_second")
    inner = {}

    def _create_invoice(**kwargs):
        invoice = next(issued)
        if invoice["id"] == "in_first":
            make_call(user, agent, cost=3000, call_id="late_call")

            def _other_worker():
                with app.app_context():
                    inner["invoice_id"] = settle_usage(user_id).id

            worker = threading.Thread(target=_other_worker)
            worker.start()
            worker.join()
        return invoice

    with patch("usage.services.settlement.create_usage_invoice", side_effect=_create_invoice) as create:
        invoice = settle_usage(user.id)

    amounts = sorted(c.kwargs["amount_cents"] for c in create.call_args_list)
    assert amounts == [2600, 3000]
    assert "late_call" not in create.call_args_list[0].kwargs["call_ids"]
    assert create.call_args_list[1].kwargs["call_ids"] == ["late_call"]
    assert invoice.id == "in_first" and inner["invoice_id"] == "in_second"

    db.session.expire_all()
    assert {c.id: c.invoice_id for c in db.session.query(Call)} == {
        calls[0].id: "in_first", calls[1].id: "in_first", calls[2].id: "in_first", "late_call": "in_second",
    }
    billed = sum(c.cost for c in db.session.query(Call).filter_by(billing_status=BillingStatus.BILLED))
    assert sum(i.amount for i in db.session.query(Invoice)) == billed == 5600


def test_small_late_call_does_not_trigger_a_second_invoice(app, over_limit, make_call):
    user, agent, _ = over_limit
    user_id = user.id
    inner = {}

    def _create_invoice(**kwargs):
        make_call(user, agent, cost=300, call_id="late_call")

        def _other_worker():
            with app.app_context():
                inner["result"] = settle_usage(user_id)

        worker = threading.Thread(target=_other_worker)
        worker.start()
        worker.join()
        return STRIPE_INVOICE

    with patch("usage.services.settlement.create_usage_invoice", side_effect=_create_invoice) as create:
        invoice = settle_usage(user.id)

    create.assert_called_once()
    assert inner["result"] is None
    assert invoice.amount == 2600


def test_stripe_failure_releases_the_claim(over_limit):
    user, _, calls = over_limit
    with patch("usage.services.settlement.create_usage_invoice",
               side_effect=stripe.APIConnectionError("network down")):
        with pytest.raises(SettlementError):
            settle_usage(user.id)

    db.session.expire_all()
    for c in calls:
        row = db.session.get(Call, c.id)
        assert row.settlement_claim is None and row.claimed_at is None


def test_live_claim_blocks_and_stale_claim_is_billable_again(over_limit):
    user, _, calls = over_limit
    now = datetime.now(timezone.utc)
    for c in calls:
        c.settlement_claim, c.claimed_at = "other_worker", now
    db.session.commit()

    with patch("usage.services.settlement.create_usage_invoice", return_value=STRIPE_INVOICE) as create:
        assert settle_usage(user.id) is None
        create.assert_not_called()

        for c in calls:
            c.claimed_at = now - timedelta(seconds=SETTLEMENT_CLAIM_TTL_SECONDS + 60)
        db.session.commit()
        invoice = settle_usage(user.id)

    assert invoice.amount == 2600
    db.session.expire_all()
    assert all(db.session.get(Call, c.id).settlement_claim is None for c in calls)


def test_lost_claim_voids_the_stripe_invoice(over_limit):
    user, _, calls = over_limit

    def _create_invoice(**kwargs):
        # claim expired mid-flight and another run took one of the rows
        db.session.execute(update(Call).where(Call.id == calls[0].id)
                           .values(settlement_claim="other_worker"))
        db.session.commit()
        return STRIPE_INVOICE

    with patch("usage.services.settlement.create_usage_invoice", side_effect=_create_invoice), \
         patch("usage.services.settlement.void_invoice") as void:
        with pytest.raises(SettlementError):
            settle_usage(user.id)

    void.assert_called_once_with("in_usage_1")
    db.session.expire_all()
    assert db.session.query(Invoice).count() == 0
    assert all(db.session.get(Call, c.id).billing_status == BillingStatus.UNBILLED for c in calls)
    assert db.session.get(Call, calls[1].id).settlement_claim is None
