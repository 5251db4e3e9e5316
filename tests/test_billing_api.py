from unittest.mock import patch

import stripe

from extensions import db
from auth.models import User
from billing.models import Invoice, InvoiceStatus, InvoiceType
from calls.models import Call, BillingStatus


def test_subscribe_creates_customer_once(client, make_user, auth_headers):
    user = make_user(status="incomplete", can_make_calls=False, customer=None)
    with patch("billing.routes.create_customer", return_value={"id": "cus_new"}) as create_customer, \
         patch("billing.routes.create_checkout_session_subscription",
               return_value={"id": "cs_1", "url": "https://checkout.stripe.test/cs_1"}) as checkout:
        resp = client.post("/billing/subscribe", headers=auth_headers(user))
        client.post("/billing/subscribe", headers=auth_headers(user))

    assert resp.status_code == 200
    assert resp.get_json()["checkout_url"] == "https://checkout.stripe.test/cs_1"
    create_customer.assert_called_once()
    assert db.session.get(User, user.id).stripe_customer_id == "cus_new"
    success_url = checkout.call_args.args[2]
    assert success_url.startswith("https://app.test/billing")


def test_subscribe_stripe_error_is_502(client, make_user, auth_headers):
    user = make_user()
    with patch("billing.routes.create_checkout_session_subscription",
               side_effect=stripe.APIConnectionError("down")):
        resp = client.post("/billing/subscribe", headers=auth_headers(user))
    assert resp.status_code == 502
    assert resp.get_json()["error"]["code"] == "stripe_error"


def test_manage_without_customer_is_404(client, make_user, auth_headers):
    user = make_user(customer=None)
    resp = client.post("/billing/manage", headers=auth_headers(user))
    assert resp.status_code == 404


def test_manage_returns_portal_url(client, make_user, auth_headers):
    user = make_user()
    with patch("billing.routes.create_billing_portal_session",
               return_value={"url": "https://billing.stripe.test/p"}) as portal:
        resp = client.post("/billing/manage", headers=auth_headers(user))
    assert resp.get_json()["portal_url"] == "https://billing.stripe.test/p"
    assert portal.call_args.args[0] == user.stripe_customer_id


def test_retry_points_at_open_usage_invoice(client, make_user, auth_headers):
    user = make_user(status="past_due", can_make_calls=False)
    db.session.add(Invoice(id="in_open", user_id=user.id, invoice_type=InvoiceType.USAGE,
                           amount=2600, status=InvoiceStatus.OPEN, hosted_invoice_url="https://pay.test/in_open"))
    db.session.commit()

    resp = client.post("/billing/retry", headers=auth_headers(user))
    body = resp.get_json()
    assert body["kind"] == "usage_invoice"
    assert body["payment_url"] == "https://pay.test/in_open"


def test_retry_invoices_outstanding_usage_below_threshold(client, make_user, make_agent, make_call, auth_headers):
    user = make_user(status="past_due", can_make_calls=False)
    call = make_call(user, make_agent(user), cost=800)

    with patch("usage.services.settlement.create_usage_invoice",
               return_value={"id": "in_retry", "hosted_invoice_url": "https://pay.test/in_retry"}) as create:
        resp = client.post("/billing/retry", headers=auth_headers(user))

    body = resp.get_json()
    assert body["kind"] == "usage_invoice"
    assert body["payment_url"] == "https://pay.test/in_retry"
    assert create.call_args.kwargs["amount_cents"] == 800
    db.session.expire_all()
    assert db.session.get(Call, call.id).billing_status == BillingStatus.BILLED


def test_retry_without_usage_falls_back_to_subscription_checkout(client, make_user, auth_headers):
    user = make_user(status="canceled", can_make_calls=False)
    with patch("billing.routes.create_checkout_session_subscription",
               return_value={"id": "cs_r", "url": "https://checkout.stripe.test/cs_r"}) as checkout:
        resp = client.post("/billing/retry", headers=auth_headers(user))

    body = resp.get_json()
    assert body["kind"] == "subscription_checkout"
    assert body["payment_url"] == "https://checkout.stripe.test/cs_r"
    assert checkout.call_args.kwargs["payment_type"] == "retry_subscription"


def test_dashboard_summarises_usage(client, make_user, make_agent, make_call, auth_headers):
    user = make_user()
    agent = make_agent(user)
    make_call(user, agent, cost=2000, duration=300)
    make_call(user, agent, cost=700, duration=60, status="customer-busy")
    make_call(user, agent, cost=400, billing_status=BillingStatus.BILLED)

    resp = client.get("/billing/dashboard", headers=auth_headers(user))
    data = resp.get_json()["data"]
    assert data["subscriptionStatus"] == "active"
    assert data["usage"]["unbilledAmount"] == 2700
    assert data["usage"]["billedAmount"] == 400
    assert data["usage"]["remainingUsage"] == 0
    assert data["usage"]["percentageToThreshold"] == 100.0
    assert data["usage"]["successfulCalls"] == 1
    assert data["usage"]["failedCalls"] == 1
    assert data["hasExceededUsageLimit"] is True
    assert data["hasUnpaidInvoices"] is False
    assert len(data["recentCalls"]) == 3
