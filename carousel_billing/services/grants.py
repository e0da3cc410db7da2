from datetime import datetime, timedelta
from typing import Optional
from carousel_billing.billing.plans import DEFAULT_PLANS, SqlPlanCatalog
from carousel_billing.extensions import db
from carousel_billing.models import ManualGrant
from carousel_billing.utils.helpers import utcnow


class GrantError(ValueError):
    pass


def known_tiers() -> set:
    tiers = {p.tier for p in SqlPlanCatalog(db.session).active_plans()}
    return tiers or set(DEFAULT_PLANS)


def grant_plan(
    *,
    user_id: int,
    tier: str,
    granted_by: str,
    custom_daily_limit: Optional[int] = None,
    expires_at: Optional[datetime] = None,
    days: Optional[int] = None,
    reason: Optional[str] = None,
) -> ManualGrant:
    """Create or replace the user's manual grant. One grant per user; caller commits."""
    if tier not in known_tiers():
        raise GrantError(f"Unknown tier: {tier}")
    if custom_daily_limit is not None and custom_daily_limit < 0:
        raise GrantError("custom_daily_limit must be >= 0")
    if days is not None:
        if days <= 0:
            raise GrantError("days must be positive")
        expires_at = utcnow() + timedelta(days=days)

    grant = db.session.query(ManualGrant).filter_by(user_id=user_id).one_or_none()
    if grant is None:
        grant = ManualGrant(user_id=user_id)
        db.session.add(grant)
    grant.tier = tier
    grant.custom_daily_limit = custom_daily_limit
    grant.starts_at = utcnow()
    grant.expires_at = expires_at
    grant.is_active = True
    grant.granted_by = granted_by
    grant.reason = reason
    db.session.flush()
    return grant


def revoke_grant(user_id: int) -> bool:
    """Deactivate (never delete) the user's grant. Caller commits."""
    grant = db.session.query(ManualGrant).filter_by(user_id=user_id, is_active=True).one_or_none()
    if grant is None:
        return False
    grant.is_active = False
    db.session.flush()
    return True
