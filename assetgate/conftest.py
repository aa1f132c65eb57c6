# assetgate/conftest.py
import json
import os
from datetime import timedelta

import pytest

os.environ.setdefault("ENV", "test")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")

from assetgate.core import database  # noqa: E402
from assetgate.core.config import settings  # noqa: E402
from assetgate.models.plan import BillingCycle  # noqa: E402
from assetgate.models.user import Role  # noqa: E402
from assetgate.tests.factories import (  # noqa: E402
    FIXED_NOW,
    TEST_JWT_SECRET,
    TEST_WEBHOOK_SECRET,
    sign_payload,
)


@pytest.fixture(autouse=True)
def test_settings(monkeypatch):
    monkeypatch.setattr(settings, "ENV", "test")
    monkeypatch.setattr(settings, "JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "QUOTA_TIMEZONE", "UTC")
    monkeypatch.setattr(settings, "PAST_DUE_GRANTS_ACCESS", False)
    monkeypatch.setattr(settings, "JWT_AUDIENCE", None)
    monkeypatch.setattr(settings, "JWT_ISSUER", None)
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    monkeypatch.setattr(settings, "ASSET_BASE_URL", "http://localhost:8000/files")
    yield settings


@pytest.fixture(autouse=True)
def db(tmp_path):
    """
    Fresh file-backed SQLite database per test.

    File-backed (not :memory:) so that threads in the concurrency tests
    share one database through separate connections.
    """
    database.dispose_engine()
    database.init_engine(f"sqlite:///{tmp_path / 'assetgate.db'}")
    database.create_all_tables()
    yield
    database.dispose_engine()


@pytest.fixture
def plans(db):
    from assetgate.features.plans.service import upsert_plan

    return {
        "basic": upsert_plan("basic", "Basic", 5, provider_price_id="price_basic"),
        "premium": upsert_plan("premium", "Premium", 10, provider_price_id="price_premium"),
        "yearly": upsert_plan(
            "yearly", "Yearly", 7, provider_price_id="price_yearly", billing_cycle=BillingCycle.YEARLY
        ),
    }


@pytest.fixture
def user(db):
    from assetgate.features.users.service import upsert_user

    return upsert_user("user_1", email="user1@example.com", display_name="User One")


@pytest.fixture
def other_user(db):
    from assetgate.features.users.service import upsert_user

    return upsert_user("user_2", email="user2@example.com")


@pytest.fixture
def admin(db):
    from assetgate.features.users.service import upsert_user

    return upsert_user("admin_1", role=Role.ADMIN, email="admin@example.com")


@pytest.fixture
def assets(db):
    with database.get_db_session() as session:
        session.execute(
            database.assets.insert(),
            [
                {"asset_id": "asset_1", "name": "Mountain Pack", "file_key": "packs/mountain.zip",
                 "thumbnail": "thumbs/mountain.png", "is_active": True, "download_count": 0},
                {"asset_id": "asset_2", "name": "Ocean Pack", "file_key": "https://cdn.example.com/ocean.zip",
                 "thumbnail": None, "is_active": True, "download_count": 0},
                {"asset_id": "asset_retired", "name": "Retired Pack", "file_key": "packs/retired.zip",
                 "thumbnail": None, "is_active": False, "download_count": 0},
            ],
        )
    return ["asset_1", "asset_2", "asset_retired"]


@pytest.fixture
def grant_manual():
    """Give a user an active manual subscription on a plan (starting a day before `now`)."""
    from assetgate.features.plans.service import require_plan
    from assetgate.features.subscriptions import store

    def _grant(user_id, plan_id="basic", start=None, now=FIXED_NOW):
        with database.get_db_session() as session:
            plan = require_plan(plan_id, session)
            return store.create_manual(session, user_id, plan, start=start or now - timedelta(days=1), now=now)

    return _grant


@pytest.fixture
def auth_headers():
    from assetgate.core.auth import issue_access_token

    def _headers(user, **kwargs):
        return {"Authorization": f"Bearer {issue_access_token(user, **kwargs)}"}

    return _headers


@pytest.fixture
def client(db):
    from fastapi.testclient import TestClient
    from assetgate.main import app

    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def post_webhook(client):
    """POST a signed event to /billing/webhook."""

    def _post(event, secret=TEST_WEBHOOK_SECRET, signature=None):
        body = json.dumps(event).encode("utf-8")
        header = signature if signature is not None else sign_payload(body, secret)
        return client.post(
            "/billing/webhook",
            content=body,
            headers={"stripe-signature": header, "content-type": "application/json"},
        )

    return _post


@pytest.fixture
def deliver():
    """Run an event through the reconciler directly (no HTTP)."""
    from assetgate.features.billing.service import process_webhook_event
    from assetgate.features.billing.stripe_provider import StripeProvider

    provider = StripeProvider(webhook_secret=TEST_WEBHOOK_SECRET)

    def _deliver(event, now=FIXED_NOW):
        body = json.dumps(event).encode("utf-8")
        return process_webhook_event({"stripe-signature": sign_payload(body)}, body, provider, now=now)

    return _deliver


@pytest.fixture
def link_customer(db):
    from assetgate.features.billing.service import link_customer as _link

    def _link_customer(user_id, customer_id="cus_123"):
        with database.get_db_session() as session:
            _link(session, user_id, customer_id)

    return _link_customer
