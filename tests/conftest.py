"""
Shared fixtures: one Flask app per test on a throwaway SQLite file.
A file (not :memory:) so batch worker threads get their own connections.
"""
import os

os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")

import pytest
from flask_jwt_extended import create_access_token

from app import create_app
from extensions import db
from auth.models import User
from calls.models import Agent, Call, BillingStatus, CallStatus


@pytest.fixture
def app(tmp_path):
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'test.db'}",
        "RATELIMIT_ENABLED": False,
        "WTF_CSRF_ENABLED": False,
        "JWT_SECRET_KEY": "test-jwt-secret",
        "STRIPE_WEBHOOK_SECRET": "whsec_test",
        "VAPI_PRIVATE_KEY": "vapi-test-key",
        "VAPI_WEBHOOK_SECRET": None,
        "APP_BASE_URL": "https://app.test",
    })
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    counter = {"n": 0}

    def _make(status="active", can_make_calls=True, customer="auto", **kw):
        counter["n"] += 1
        n = counter["n"]
        user = User(
            email=kw.pop("email", f"user{n}@example.com"),
            name=kw.pop("name", f"User {n}"),
            stripe_customer_id=f"cus_test_{n}" if customer == "auto" else customer,
            subscription_status=status,
            can_make_calls=can_make_calls,
            **kw,
        )
        db.session.add(user)
        db.session.commit()
        return user
    return _make


@pytest.fixture
def make_agent(app):
    def _make(user, agent_id="asst_1", name="Sales Bot"):
        agent = Agent(id=agent_id, user_id=user.id, name=name)
        db.session.add(agent)
        db.session.commit()
        return agent
    return _make


@pytest.fixture
def make_call(app):
    counter = {"n": 0}

    def _make(user, agent, cost=None, billing_status=BillingStatus.UNBILLED,
              status=CallStatus.COMPLETED, call_id=None, **kw):
        counter["n"] += 1
        call = Call(
            id=call_id or f"call_{counter['n']}",
            user_id=user.id,
            agent_id=agent.id,
            call_name=kw.pop("call_name", f"+1555000{counter['n']:04d} - {agent.name} - 2025-01-01"),
            status=status,
            cost=cost,
            billing_status=billing_status,
            **kw,
        )
        db.session.add(call)
        db.session.commit()
        return call
    return _make


@pytest.fixture
def auth_headers(app):
    def _headers(user):
        token = create_access_token(identity=str(user.id))
        return {"Authorization": f"Bearer {token}"}
    return _headers
