"""
Entitlement resolution: what plan, limits and features apply to a user right now.

Authority sources are tried in strict priority order, first match wins:

    1. administrator role      -> unlimited
    2. active manual grant     -> grant tier (optionally custom limit)
    3. mirror, status=active   -> plan by price id, then tier
    4. mirror, cancel pending  -> same as 3 until the period ends
    5. live Stripe lookup      -> plan by price id (read only, never written back)
    6. free plan

Each step is a method returning a Resolution or None. Local store failures in
steps 1-4 raise EntitlementUnavailable; Stripe failures in step 5 fall through.
"""
import json
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from carousel_billing.billing.errors import EntitlementUnavailable, ProviderUnavailable
from carousel_billing.billing.plans import PlanCatalog, PlanDefinition, TIER_CREATOR
from carousel_billing.billing.usage import UsageLedger
from carousel_billing.models import ManualGrant, ROLE_ADMIN, Subscription
from carousel_billing.models.subscription import STATUS_ACTIVE
from carousel_billing.services.billing import first_price, period_bounds
from carousel_billing.utils.helpers import as_utc, from_timestamp, isoformat, utcnow

ADMIN_DAILY_LIMIT = 9999

SOURCE_ADMIN = "admin"
SOURCE_GRANT = "manual_grant"
SOURCE_SUBSCRIPTION = "subscription"
SOURCE_PROVIDER = "provider"
SOURCE_DEFAULT = "default"


@dataclass(frozen=True)
class Entitlement:
    tier: str
    daily_limit: int
    limit_period: str
    period_used: int
    has_watermark: bool
    has_editor: bool
    has_history: bool
    is_admin: bool = False
    cancel_at_period_end: bool = False
    subscription_end: Optional[datetime] = None
    status: str = STATUS_ACTIVE
    failed_payment_count: int = 0
    source: str = SOURCE_DEFAULT
    is_manual: bool = False

    @property
    def subscribed(self) -> bool:
        return self.source in (SOURCE_GRANT, SOURCE_SUBSCRIPTION, SOURCE_PROVIDER) or self.is_admin

    @property
    def remaining(self) -> int:
        return max(self.daily_limit - self.period_used, 0)

    def can_consume(self, units: int = 1) -> bool:
        return self.period_used + units <= self.daily_limit

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["subscription_end"] = isoformat(self.subscription_end)
        data["subscribed"] = self.subscribed
        data["remaining"] = self.remaining
        return data


@dataclass(frozen=True)
class Resolution:
    """A resolved plan before usage is attached."""
    plan: PlanDefinition
    source: str
    is_admin: bool = False
    cancel_at_period_end: bool = False
    subscription_end: Optional[datetime] = None
    status: str = STATUS_ACTIVE
    failed_payment_count: int = 0


class EntitlementResolver:
    def __init__(
        self,
        session,
        catalog: PlanCatalog,
        ledger: UsageLedger,
        roles,
        provider=None,
        clock: Callable[[], datetime] = utcnow,
        admin_daily_limit: int = ADMIN_DAILY_LIMIT,
    ):
        self._session = session
        self._catalog = catalog
        self._ledger = ledger
        self._roles = roles
        self._provider = provider
        self._clock = clock
        self._admin_daily_limit = admin_daily_limit

    @property
    def steps(self) -> List[Callable[[int, datetime], Optional[Resolution]]]:
        return [
            self._from_admin_role,
            self._from_manual_grant,
            self._from_active_subscription,
            self._from_cancelled_unexpired,
            self._from_provider,
        ]

    def resolve(self, user_id: int) -> Entitlement:
        now = self._clock()
        resolution = None
        for step in self.steps:
            resolution = step(user_id, now)
            if resolution is not None:
                break
        if resolution is None:
            resolution = Resolution(plan=self._catalog.free_plan(), source=SOURCE_DEFAULT)

        # usage window depends on the resolved plan
        period_used = self._ledger.usage_for_period(
            user_id, resolution.plan.limit_period, today=self._ledger.today(now)
        )
        plan = resolution.plan
        entitlement = Entitlement(
            tier=plan.tier,
            daily_limit=plan.daily_limit,
            limit_period=plan.limit_period,
            period_used=period_used,
            has_watermark=plan.has_watermark,
            has_editor=plan.has_editor,
            has_history=plan.has_history,
            is_admin=resolution.is_admin,
            cancel_at_period_end=resolution.cancel_at_period_end,
            subscription_end=resolution.subscription_end,
            status=resolution.status,
            failed_payment_count=resolution.failed_payment_count,
            source=resolution.source,
            is_manual=resolution.source == SOURCE_GRANT,
        )
        current_app.logger.debug(json.dumps({
            "event": "entitlement_resolved",
            "user_id": user_id,
            "source": entitlement.source,
            "tier": entitlement.tier,
            "period_used": period_used,
        }))
        return entitlement

    # --- cascade steps ---

    def _from_admin_role(self, user_id: int, now: datetime) -> Optional[Resolution]:
        if not self._roles.has_role(user_id, ROLE_ADMIN):
            return None
        plan = PlanDefinition(
            tier=TIER_CREATOR,
            daily_limit=self._admin_daily_limit,
            limit_period="daily",
            has_watermark=False,
            has_editor=True,
            has_history=True,
        )
        return Resolution(plan=plan, source=SOURCE_ADMIN, is_admin=True)

    def _from_manual_grant(self, user_id: int, now: datetime) -> Optional[Resolution]:
        try:
            grant = (
                self._session.query(ManualGrant)
                .filter_by(user_id=user_id, is_active=True)
                .one_or_none()
            )
        except SQLAlchemyError as exc:
            raise EntitlementUnavailable("manual grant lookup failed") from exc
        if grant is None:
            return None
        expires_at = as_utc(grant.expires_at)
        if expires_at is not None and expires_at <= now:
            current_app.logger.info(json.dumps({
                "event": "manual_grant_expired",
                "user_id": user_id,
                "expires_at": isoformat(expires_at),
            }))
            return None
        starts_at = as_utc(grant.starts_at)
        if starts_at is not None and starts_at > now:
            return None
        plan = self._catalog.resolve_plan(tier=grant.tier).with_limit(grant.custom_daily_limit)
        return Resolution(plan=plan, source=SOURCE_GRANT, subscription_end=expires_at)

    def _mirror(self, user_id: int) -> Optional[Subscription]:
        try:
            return self._session.query(Subscription).filter_by(user_id=user_id).one_or_none()
        except SQLAlchemyError as exc:
            raise EntitlementUnavailable("subscription lookup failed") from exc

    def _from_mirror(self, sub: Subscription) -> Resolution:
        plan = self._catalog.resolve_plan(price_id=sub.external_price_id, tier=sub.tier)
        return Resolution(
            plan=plan,
            source=SOURCE_SUBSCRIPTION,
            cancel_at_period_end=bool(sub.cancel_at_period_end),
            subscription_end=as_utc(sub.current_period_end),
            status=sub.status,
            failed_payment_count=sub.failed_payment_count or 0,
        )

    def _from_active_subscription(self, user_id: int, now: datetime) -> Optional[Resolution]:
        sub = self._mirror(user_id)
        if sub is None or sub.status != STATUS_ACTIVE:
            return None
        period_end = as_utc(sub.current_period_end)
        if period_end is None or period_end <= now:
            return None
        return self._from_mirror(sub)

    def _from_cancelled_unexpired(self, user_id: int, now: datetime) -> Optional[Resolution]:
        sub = self._mirror(user_id)
        if sub is None or not sub.cancel_at_period_end:
            return None
        period_end = as_utc(sub.current_period_end)
        if period_end is None or period_end <= now:
            return None
        return self._from_mirror(sub)

    def _from_provider(self, user_id: int, now: datetime) -> Optional[Resolution]:
        if self._provider is None:
            return None
        email = self._roles.email_for(user_id)
        if not email:
            return None
        try:
            customer = self._provider.find_customer_by_email(email)
            if not customer:
                return None
            subs = self._provider.list_active_subscriptions(customer["id"])
        except ProviderUnavailable as exc:
            current_app.logger.warning(json.dumps({
                "event": "entitlement_provider_unavailable",
                "user_id": user_id,
                "error": str(exc),
            }))
            return None
        if not subs:
            return None

        sub_obj = subs[0]
        price = first_price(sub_obj)
        _, period_end = period_bounds(sub_obj)
        plan = self._catalog.resolve_plan(price_id=price.get("id"))
        current_app.logger.info(json.dumps({
            "event": "entitlement_provider_fallback",
            "user_id": user_id,
            "subscription_id": sub_obj.get("id"),
            "tier": plan.tier,
        }))
        return Resolution(
            plan=plan,
            source=SOURCE_PROVIDER,
            cancel_at_period_end=bool(sub_obj.get("cancel_at_period_end")),
            subscription_end=from_timestamp(period_end),
        )


def build_resolver(clock: Callable[[], datetime] = utcnow) -> EntitlementResolver:
    """Resolver wired to the app's database session and Stripe credentials."""
    from carousel_billing.extensions import db
    from carousel_billing.billing.plans import SqlPlanCatalog
    from carousel_billing.services.billing import get_gateway
    from carousel_billing.services.identity import RoleDirectory

    cfg = current_app.config
    return EntitlementResolver(
        session=db.session,
        catalog=SqlPlanCatalog(db.session),
        ledger=UsageLedger(db.session, cfg.get("USAGE_TIMEZONE", "UTC")),
        roles=RoleDirectory(db.session),
        provider=get_gateway(),
        clock=clock,
        admin_daily_limit=cfg.get("ADMIN_DAILY_LIMIT", ADMIN_DAILY_LIMIT),
    )


def resolve_entitlement(user_id: int) -> Entitlement:
    return build_resolver().resolve(user_id)
