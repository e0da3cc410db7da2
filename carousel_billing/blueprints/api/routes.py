import json
from dataclasses import replace
from flask import current_app, g, jsonify, request
from flask_login import current_user
from sqlalchemy.exc import SQLAlchemyError
from . import bp
from carousel_billing.billing.entitlements import resolve_entitlement
from carousel_billing.billing.errors import EntitlementUnavailable
from carousel_billing.billing.usage import UsageLedger
from carousel_billing.extensions import csrf, db, limiter
from carousel_billing.security.entitlements import (
    entitlement_for_display, limit_reached_response, require_quota, unavailable_response,
)
from carousel_billing.services.policy import require_user


@bp.get("/entitlement")
@limiter.limit("120/minute")
@require_user
def entitlement():
    """
    The caller's current plan, limits and usage.
    ?display=1 never fails: a store outage answers with the free plan and degraded=true.
    """
    if request.args.get("display") in ("1", "true"):
        ent, degraded = entitlement_for_display(current_user.id)
        return jsonify({**ent.to_dict(), "degraded": degraded})

    try:
        ent = resolve_entitlement(current_user.id)
    except EntitlementUnavailable:
        current_app.logger.exception("GET /api/entitlement failed", extra={"user_id": current_user.id})
        return unavailable_response()
    return jsonify(ent.to_dict())


@csrf.exempt
@bp.post("/usage")
@limiter.limit("30/minute")
@require_user
@require_quota(units=1)
def record_usage():
    """Consume one unit (one carousel) against the caller's period quota."""
    ledger = UsageLedger(db.session, current_app.config.get("USAGE_TIMEZONE", "UTC"))
    quota = g.entitlement
    try:
        consumed = ledger.consume_within_limit(
            current_user.id, 1, limit=quota.daily_limit, period=quota.limit_period,
        )
        if not consumed:
            # a concurrent request used the last unit after the quota check
            db.session.rollback()
            return limit_reached_response(replace(quota, period_used=quota.daily_limit))
        db.session.commit()
    except (SQLAlchemyError, EntitlementUnavailable):
        db.session.rollback()
        current_app.logger.exception("POST /api/usage failed", extra={"user_id": current_user.id})
        return unavailable_response()

    ent = replace(g.entitlement, period_used=g.entitlement.period_used + 1)
    current_app.logger.info(json.dumps({
        "event": "usage_recorded",
        "user_id": current_user.id,
        "tier": ent.tier,
        "period_used": ent.period_used,
        "limit": ent.daily_limit,
    }))
    return jsonify(ent.to_dict()), 201
