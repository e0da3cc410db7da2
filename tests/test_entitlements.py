from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from carousel_billing.billing.entitlements import (
    EntitlementResolver, build_resolver, resolve_entitlement,
    SOURCE_ADMIN, SOURCE_DEFAULT, SOURCE_GRANT, SOURCE_PROVIDER, SOURCE_SUBSCRIPTION,
)
from carousel_billing.billing.errors import ConfigurationError, EntitlementUnavailable
from carousel_billing.billing.plans import StaticPlanCatalog
from carousel_billing.billing.usage import UsageLedger
from carousel_billing.extensions import db
from carousel_billing.models import ManualGrant, Subscription
from carousel_billing.services.billing import StripeGateway
from carousel_billing.services.identity import RoleDirectory
from conftest import stripe_subscription


def _grant(app, user_id, tier="agency", custom_daily_limit=None, expires_at=None, is_active=True):
    with app.app_context():
        db.session.add(ManualGrant(
            user_id=user_id,
            tier=tier,
            custom_daily_limit=custom_daily_limit,
            expires_at=expires_at,
            is_active=is_active,
            granted_by="ops@example.com",
        ))
        db.session.commit()


def test_no_authority_resolves_free(app, plans, make_user):
    uid = make_user()
    with app.app_context():
        ent = resolve_entitlement(uid)
    assert ent.tier == "free" and ent.daily_limit == 1 and ent.has_watermark
    assert ent.source == SOURCE_DEFAULT and not ent.subscribed

def test_admin_outranks_everything(app, plans, make_user, make_subscription):
    uid = make_user(admin=True)
    make_subscription(uid)
    _grant(app, uid, tier="starter")
    with app.app_context():
        ent = resolve_entitlement(uid)
    assert ent.is_admin and ent.source == SOURCE_ADMIN
    assert ent.tier == "creator" and ent.daily_limit == 9999 and not ent.has_watermark

def test_manual_grant_outranks_subscription(app, plans, make_user, make_subscription):
    uid = make_user()
    make_subscription(uid, tier="creator")
    _grant(app, uid, tier="agency", custom_daily_limit=50)
    with app.app_context():
        ent = resolve_entitlement(uid)
    assert ent.source == SOURCE_GRANT and ent.is_manual
    assert ent.tier == "agency" and ent.daily_limit == 50

def test_expired_grant_is_ignored(app, plans, make_user, make_subscription):
    uid = make_user()
    make_subscription(uid, tier="creator")
    _grant(app, uid, tier="agency", expires_at=datetime.now(timezone.utc) - timedelta(hours=1))
    with app.app_context():
        ent = resolve_entitlement(uid)
    assert ent.source == SOURCE_SUBSCRIPTION and ent.tier == "creator"

def test_inactive_grant_is_ignored(app, plans, make_user):
    uid = make_user()
    _grant(app, uid, is_active=False)
    with app.app_context():
        assert resolve_entitlement(uid).tier == "free"

def test_active_subscription_resolves_by_price(app, plans, make_user, make_subscription):
    uid = make_user()
    # tier column disagrees with price; price wins
    make_subscription(uid, tier="starter", price_id="price_agency_usd")
    with app.app_context():
        ent = resolve_entitlement(uid)
    assert ent.tier == "agency" and ent.daily_limit == 20 and ent.subscribed
    assert ent.subscription_end is not None

def test_cancelled_subscription_keeps_access_until_period_end(app, plans, make_user, make_subscription):
    uid = make_user()
    make_subscription(uid, status="cancelled", cancel_at_period_end=True,
                      period_end=datetime.now(timezone.utc) + timedelta(days=3))
    with app.app_context():
        ent = resolve_entitlement(uid)
    assert ent.tier == "creator" and ent.cancel_at_period_end
    assert ent.source == SOURCE_SUBSCRIPTION

def test_cancelled_subscription_after_period_end_is_free(app, plans, make_user, make_subscription):
    uid = make_user()
    make_subscription(uid, status="cancelled", cancel_at_period_end=True,
                      period_end=datetime.now(timezone.utc) - timedelta(minutes=5))
    with app.app_context():
        assert resolve_entitlement(uid).tier == "free"

def test_active_subscription_past_period_end_is_not_trusted(app, plans, make_user, make_subscription):
    uid = make_user()
    make_subscription(uid, period_end=datetime.now(timezone.utc) - timedelta(days=1))
    with app.app_context():
        assert resolve_entitlement(uid).source == SOURCE_DEFAULT

def test_provider_fallback_is_read_only(app, plans, make_user, gateway):
    uid = make_user(email="payer@example.com")
    gateway.customers["payer@example.com"] = {"id": "cus_9"}
    gateway.subscriptions["sub_9"] = stripe_subscription(sub_id="sub_9", customer="cus_9", price_id="price_starter_brl")
    with app.app_context():
        ent = resolve_entitlement(uid)
        assert db.session.query(Subscription).count() == 0
    assert ent.source == SOURCE_PROVIDER and ent.tier == "starter" and ent.limit_period == "weekly"

def test_past_due_mirror_consults_provider(app, plans, make_user, make_subscription, gateway):
    uid = make_user(email="late@example.com")
    make_subscription(uid, status="past_due", failed_payment_count=1)
    with app.app_context():
        ent = resolve_entitlement(uid)
    assert "find_customer_by_email" in gateway.calls
    assert ent.tier == "free"

def test_provider_outage_falls_through_to_free(app, plans, make_user, gateway):
    uid = make_user()
    gateway.fail = True
    with app.app_context():
        ent = resolve_entitlement(uid)
    assert ent.tier == "free" and ent.source == SOURCE_DEFAULT

def test_missing_provider_key_is_not_swallowed(app, plans, make_user, monkeypatch):
    uid = make_user()
    monkeypatch.setitem(app.extensions, "stripe_gateway", StripeGateway(None, None))
    with app.app_context():
        with pytest.raises(ConfigurationError):
            resolve_entitlement(uid)

def test_period_used_follows_resolved_plan(app, plans, make_user, make_subscription):
    uid = make_user()
    make_subscription(uid, price_id="price_starter_brl", tier="starter")
    with app.app_context():
        UsageLedger(db.session).record_usage(uid, units=2)
        db.session.commit()
    with app.app_context():
        ent = resolve_entitlement(uid)
    assert ent.limit_period == "weekly" and ent.period_used == 2
    assert ent.remaining == 1 and ent.can_consume(1) and not ent.can_consume(2)

def test_to_dict_shape(app, plans, make_user):
    uid = make_user()
    with app.app_context():
        data = resolve_entitlement(uid).to_dict()
    for key in ("tier", "daily_limit", "limit_period", "period_used", "remaining", "subscribed",
                "has_watermark", "has_editor", "has_history", "is_admin", "cancel_at_period_end",
                "subscription_end", "status", "failed_payment_count", "source", "is_manual"):
        assert key in data


class BrokenSession:
    def query(self, *args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))

    def get(self, *args, **kwargs):
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))


def test_store_failure_raises_unavailable_instead_of_free(app):
    broken = BrokenSession()
    resolver = EntitlementResolver(
        session=broken,
        catalog=StaticPlanCatalog(),
        ledger=UsageLedger(broken),
        roles=RoleDirectory(broken),
    )
    with app.app_context():
        with pytest.raises(EntitlementUnavailable):
            resolver.resolve(1)

def test_grant_lookup_failure_is_not_skipped(app):
    class AdminlessRoles:
        def has_role(self, user_id, role):
            return False

    broken = BrokenSession()
    resolver = EntitlementResolver(
        session=broken,
        catalog=StaticPlanCatalog(),
        ledger=UsageLedger(broken),
        roles=AdminlessRoles(),
    )
    with app.app_context():
        with pytest.raises(EntitlementUnavailable):
            resolver.resolve(1)

def test_grant_not_yet_started_is_ignored(app, plans, make_user):
    uid = make_user()
    _grant(app, uid, tier="agency")
    later = datetime.now(timezone.utc) - timedelta(days=1)
    with app.app_context():
        ent = build_resolver(clock=lambda: later).resolve(uid)
    assert ent.tier == "free"

def test_usage_window_follows_resolver_clock(app, plans, make_user):
    uid = make_user()
    yesterday = datetime.now(timezone.utc) - timedelta(days=1)
    with app.app_context():
        UsageLedger(db.session).record_usage(uid, today=yesterday.date())
        db.session.commit()
    with app.app_context():
        assert build_resolver(clock=lambda: yesterday).resolve(uid).period_used == 1
        assert build_resolver().resolve(uid).period_used == 0
