from dataclasses import dataclass, field, replace
from typing import Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from carousel_billing.billing.errors import EntitlementUnavailable

TIER_FREE = "free"
TIER_STARTER = "starter"
TIER_CREATOR = "creator"
TIER_AGENCY = "agency"
PLAN_ORDER = (TIER_FREE, TIER_STARTER, TIER_CREATOR, TIER_AGENCY)


@dataclass(frozen=True)
class PlanDefinition:
    tier: str
    daily_limit: int
    limit_period: str = "daily"
    has_watermark: bool = True
    has_editor: bool = False
    has_history: bool = False
    external_price_ids: Dict[str, str] = field(default_factory=dict)
    name: Optional[str] = None

    def matches_price(self, price_id: Optional[str]) -> bool:
        if not price_id:
            return False
        return price_id in {p for p in (self.external_price_ids or {}).values() if p}

    def with_limit(self, daily_limit: Optional[int]) -> "PlanDefinition":
        if daily_limit is None:
            return self
        return replace(self, daily_limit=daily_limit)

    @classmethod
    def from_model(cls, plan) -> "PlanDefinition":
        return cls(
            tier=plan.tier,
            daily_limit=plan.daily_limit,
            limit_period=plan.limit_period or "daily",
            has_watermark=bool(plan.has_watermark),
            has_editor=bool(plan.has_editor),
            has_history=bool(plan.has_history),
            external_price_ids=dict(plan.external_price_ids or {}),
            name=plan.name,
        )


# Hard-coded fallbacks; the plans table is the source of truth once seeded (`flask plans seed`).
DEFAULT_PLANS: Dict[str, PlanDefinition] = {
    TIER_FREE: PlanDefinition(
        tier=TIER_FREE, name="Free", daily_limit=1, limit_period="daily",
        has_watermark=True, has_editor=False, has_history=False,
    ),
    TIER_STARTER: PlanDefinition(
        tier=TIER_STARTER, name="Starter", daily_limit=3, limit_period="weekly",
        has_watermark=False, has_editor=True, has_history=True,
    ),
    TIER_CREATOR: PlanDefinition(
        tier=TIER_CREATOR, name="Creator", daily_limit=8, limit_period="daily",
        has_watermark=False, has_editor=True, has_history=True,
    ),
    TIER_AGENCY: PlanDefinition(
        tier=TIER_AGENCY, name="Agency", daily_limit=20, limit_period="daily",
        has_watermark=False, has_editor=True, has_history=True,
    ),
}


class PlanCatalog:
    """
    Read-only view over plan definitions.
    Subclasses supply active_plans(); lookups never raise for unknown ids/tiers,
    they fall back to the low-privilege starter default instead.
    """

    def active_plans(self) -> List[PlanDefinition]:
        raise NotImplementedError

    def resolve_plan(self, price_id: Optional[str] = None, tier: Optional[str] = None) -> PlanDefinition:
        plans = self.active_plans()
        if price_id:
            for plan in plans:
                if plan.matches_price(price_id):
                    return plan
        if tier:
            for plan in plans:
                if plan.tier == tier:
                    return plan
        return DEFAULT_PLANS[TIER_STARTER]

    def free_plan(self) -> PlanDefinition:
        for plan in self.active_plans():
            if plan.tier == TIER_FREE:
                return plan
        return DEFAULT_PLANS[TIER_FREE]


class StaticPlanCatalog(PlanCatalog):
    """Fixed, in-memory definitions (tests, or deployments without a seeded plans table)."""

    def __init__(self, plans: Optional[Iterable[PlanDefinition]] = None):
        self._plans = list(plans if plans is not None else DEFAULT_PLANS.values())

    def active_plans(self) -> List[PlanDefinition]:
        return list(self._plans)


class SqlPlanCatalog(PlanCatalog):
    def __init__(self, session):
        self._session = session

    def active_plans(self) -> List[PlanDefinition]:
        from carousel_billing.models import Plan
        try:
            rows = (
                self._session.query(Plan)
                .filter(Plan.is_active.is_(True))
                .order_by(Plan.display_order, Plan.id)
                .all()
            )
        except SQLAlchemyError as exc:
            raise EntitlementUnavailable("plan catalog unavailable") from exc
        return [PlanDefinition.from_model(p) for p in rows]
