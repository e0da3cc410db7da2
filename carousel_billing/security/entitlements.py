from functools import wraps
from typing import Callable
from flask import current_app, g, jsonify
from flask_login import current_user
from carousel_billing.billing.entitlements import Entitlement, resolve_entitlement, SOURCE_DEFAULT
from carousel_billing.billing.errors import EntitlementUnavailable
from carousel_billing.billing.plans import SqlPlanCatalog
from carousel_billing.extensions import db


def unavailable_response():
    retry_after = int(current_app.config.get("ENTITLEMENT_RETRY_AFTER", 5))
    resp = jsonify({"error": "entitlement_unavailable", "code": 503, "retryable": True})
    resp.status_code = 503
    resp.headers["Retry-After"] = str(retry_after)
    return resp


def limit_reached_response(ent: Entitlement):
    return jsonify({
        "error": "limit_reached",
        "code": 429,
        "limit": ent.daily_limit,
        "limit_period": ent.limit_period,
        "period_used": ent.period_used,
    }), 429


def entitlement_for_display(user_id: int):
    """
    Read-only surfaces (banners, usage meters) must never break: on a store
    failure show the free plan and flag it as degraded.
    Returns (entitlement, degraded).
    """
    try:
        return resolve_entitlement(user_id), False
    except EntitlementUnavailable:
        current_app.logger.warning("entitlement degraded to free for display", extra={"user_id": user_id})
    try:
        free = SqlPlanCatalog(db.session).free_plan()
    except EntitlementUnavailable:
        from carousel_billing.billing.plans import DEFAULT_PLANS, TIER_FREE
        free = DEFAULT_PLANS[TIER_FREE]
    return Entitlement(
        tier=free.tier,
        daily_limit=free.daily_limit,
        limit_period=free.limit_period,
        period_used=0,
        has_watermark=free.has_watermark,
        has_editor=free.has_editor,
        has_history=free.has_history,
        source=SOURCE_DEFAULT,
    ), True


def require_quota(units: int = 1) -> Callable:
    """
    Server-side guard for gated write actions.
    - Hard-blocks (503) until the entitlement resolves; never assumes a tier.
    - 429 when the plan's period quota cannot cover `units`.
    The resolved entitlement is exposed as g.entitlement.
    """
    def decorator(fn: Callable) -> Callable:
        @wraps(fn)
        def wrapper(*args, **kwargs):
            try:
                ent = resolve_entitlement(current_user.id)
            except EntitlementUnavailable:
                current_app.logger.exception("gated_action_blocked", extra={"user_id": current_user.id})
                return unavailable_response()
            if not ent.can_consume(units):
                return limit_reached_response(ent)
            g.entitlement = ent
            return fn(*args, **kwargs)
        return wrapper
    return decorator

