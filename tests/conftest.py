import os
# Ensure the app factory picks the Testing config & SQLite memory DB
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("TEST_DATABASE_URL", "sqlite:///:memory:")

from datetime import datetime, timedelta, timezone

import pytest
from carousel_billing import create_app
from carousel_billing.billing.errors import ProviderUnavailable
from carousel_billing.billing.plans import DEFAULT_PLANS, PLAN_ORDER
from carousel_billing.extensions import db, limiter
from carousel_billing.models import Plan, Subscription, User, UserRole, ROLE_ADMIN
from carousel_billing.services import tokens
from carousel_billing.services.billing import StripeGateway

WEBHOOK_SECRET = "whsec_test_secret"

PRICE_IDS = {
    "starter": {"brl": "price_starter_brl", "usd": "price_starter_usd"},
    "creator": {"brl": "price_creator_brl", "usd": "price_creator_usd"},
    "agency": {"brl": "price_agency_brl", "usd": "price_agency_usd"},
}


class FakeGateway(StripeGateway):
    """In-memory Stripe: real webhook verification, canned API reads."""

    def __init__(self):
        super().__init__("sk_test_fake", WEBHOOK_SECRET)
        self.customers = {}
        self.subscriptions = {}
        self.fail = False
        self.calls = []

    def _check(self, name):
        self.calls.append(name)
        if self.fail:
            raise ProviderUnavailable(f"{name} failed: APIConnectionError")

    def find_customer_by_email(self, email):
        self._check("find_customer_by_email")
        return self.customers.get(email)

    def list_active_subscriptions(self, customer_id):
        self._check("list_active_subscriptions")
        subs = [
            s for s in self.subscriptions.values()
            if s.get("customer") == customer_id and s.get("status") == "active"
        ]
        return subs[:1]

    def retrieve_subscription(self, subscription_id):
        self._check("retrieve_subscription")
        return self.subscriptions[subscription_id]


def ts(dt: datetime) -> int:
    return int(dt.timestamp())


def stripe_subscription(sub_id="sub_1", customer="cus_1", price_id="price_creator_brl",
                        status="active", period_end=None, cancel_at_period_end=False):
    now = datetime.now(timezone.utc)
    period_end = period_end or now + timedelta(days=30)
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "cancel_at_period_end": cancel_at_period_end,
        "current_period_start": ts(period_end - timedelta(days=30)),
        "current_period_end": ts(period_end),
        "items": {"data": [{"price": {"id": price_id}}]},
    }


@pytest.fixture(scope="session")
def app():
    app = create_app()
    app.config.update(
        TESTING=True,
        WTF_CSRF_ENABLED=False,
        STRIPE_WEBHOOK_SECRET=WEBHOOK_SECRET,
        USAGE_TIMEZONE="UTC",
    )
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()

@pytest.fixture()
def client(app):
    return app.test_client()

@pytest.fixture(autouse=True)
def gateway(app):
    fake = FakeGateway()
    app.extensions["stripe_gateway"] = fake
    yield fake
    app.extensions.pop("stripe_gateway", None)
    app.extensions.pop("notification_sink", None)

@pytest.fixture(autouse=True)
def _db_clean(app):
    # Clean BEFORE each test
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()
        limiter.reset()
    yield
    # And AFTER each test (keeps state hermetic even if a test fails mid-transaction)
    with app.app_context():
        db.session.rollback()
        for tbl in reversed(db.metadata.sorted_tables):
            db.session.execute(tbl.delete())
        db.session.commit()

@pytest.fixture()
def make_user(app):
    def _make(email="user@example.com", admin=False):
        with app.app_context():
            user = User(email=email, is_active=True)
            db.session.add(user)
            db.session.flush()
            if admin:
                db.session.add(UserRole(user_id=user.id, role=ROLE_ADMIN))
            db.session.commit()
            return user.id
    return _make

@pytest.fixture()
def auth_headers(app):
    def _headers(user_id):
        with app.app_context():
            return {"Authorization": f"Bearer {tokens.generate(user_id)}", "Accept": "application/json"}
    return _headers

@pytest.fixture()
def plans(app):
    with app.app_context():
        for order, tier in enumerate(PLAN_ORDER):
            d = DEFAULT_PLANS[tier]
            db.session.add(Plan(
                tier=tier,
                name=d.name,
                daily_limit=d.daily_limit,
                limit_period=d.limit_period,
                has_watermark=d.has_watermark,
                has_editor=d.has_editor,
                has_history=d.has_history,
                external_price_ids=PRICE_IDS.get(tier, {}),
                is_active=True,
                display_order=order,
            ))
        db.session.commit()

@pytest.fixture()
def make_subscription(app):
    def _make(user_id, tier="creator", price_id="price_creator_brl", status="active",
              period_end=None, cancel_at_period_end=False, sub_id="sub_1", failed_payment_count=0):
        if period_end is None:
            period_end = datetime.now(timezone.utc) + timedelta(days=30)
        with app.app_context():
            db.session.add(Subscription(
                user_id=user_id,
                tier=tier,
                external_subscription_id=sub_id,
                external_customer_id="cus_1",
                external_price_id=price_id,
                status=status,
                current_period_start=period_end - timedelta(days=30),
                current_period_end=period_end,
                cancel_at_period_end=cancel_at_period_end,
                failed_payment_count=failed_payment_count,
            ))
            db.session.commit()
    return _make
