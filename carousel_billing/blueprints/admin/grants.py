import json
from datetime import datetime
from flask import current_app, jsonify, request
from flask_login import current_user
from . import bp
from carousel_billing.billing.entitlements import resolve_entitlement
from carousel_billing.billing.errors import EntitlementUnavailable
from carousel_billing.billing.plans import SqlPlanCatalog
from carousel_billing.extensions import csrf, db
from carousel_billing.models import BillingEvent, User
from carousel_billing.security.entitlements import unavailable_response
from carousel_billing.services.grants import GrantError, grant_plan, revoke_grant
from carousel_billing.utils.helpers import as_utc, isoformat, safe_int
from carousel_billing.utils.validators import clean_str, normalize_email


def _grant_dict(grant):
    return {
        "user_id": grant.user_id,
        "tier": grant.tier,
        "custom_daily_limit": grant.custom_daily_limit,
        "expires_at": isoformat(grant.expires_at),
        "is_active": bool(grant.is_active),
        "granted_by": grant.granted_by,
        "reason": grant.reason,
    }


def _parse_expires_at(raw):
    if not raw:
        return None
    try:
        return as_utc(datetime.fromisoformat(str(raw)))
    except ValueError:
        raise GrantError("expires_at must be an ISO-8601 timestamp")


def _parse_count(raw, field):
    if raw is None or raw == "":
        return None
    value = safe_int(raw)
    if value is None:
        raise GrantError(f"{field} must be an integer")
    return value


@bp.get("/users/<int:user_id>/entitlement")
def user_entitlement(user_id: int):
    if not db.session.get(User, user_id):
        return jsonify({"error": "not_found", "code": 404}), 404
    try:
        ent = resolve_entitlement(user_id)
    except EntitlementUnavailable:
        return unavailable_response()
    return jsonify(ent.to_dict())


@csrf.exempt
@bp.post("/grants")
def create_grant():
    data = request.get_json(silent=True) or {}
    user = None
    if data.get("user_id") is not None:
        user = db.session.get(User, safe_int(data.get("user_id"), 0))
    elif data.get("email"):
        email = normalize_email(data.get("email"))
        user = db.session.query(User).filter_by(email=email).one_or_none() if email else None
    if user is None:
        return jsonify({"error": "user_not_found", "code": 404}), 404

    try:
        grant = grant_plan(
            user_id=user.id,
            tier=(data.get("tier") or "").strip().lower(),
            granted_by=current_user.email,
            custom_daily_limit=_parse_count(data.get("custom_daily_limit"), "custom_daily_limit"),
            expires_at=_parse_expires_at(data.get("expires_at")),
            days=_parse_count(data.get("days"), "days"),
            reason=clean_str(data.get("reason")),
        )
    except GrantError as e:
        db.session.rollback()
        return jsonify({"error": "invalid_grant", "message": str(e), "code": 400}), 400
    except EntitlementUnavailable:
        db.session.rollback()
        return unavailable_response()
    db.session.commit()

    current_app.logger.info(json.dumps({
        "event": "manual_grant_created",
        "user_id": user.id,
        "tier": grant.tier,
        "granted_by": current_user.email,
    }))
    return jsonify(_grant_dict(grant)), 201


@csrf.exempt
@bp.delete("/grants/<int:user_id>")
def delete_grant(user_id: int):
    if not revoke_grant(user_id):
        return jsonify({"error": "not_found", "code": 404}), 404
    db.session.commit()
    current_app.logger.info(json.dumps({
        "event": "manual_grant_revoked",
        "user_id": user_id,
        "revoked_by": current_user.email,
    }))
    return jsonify({"ok": True})


@bp.get("/plans")
def list_plans():
    try:
        plans = SqlPlanCatalog(db.session).active_plans()
    except EntitlementUnavailable:
        return unavailable_response()
    return jsonify([
        {
            "tier": p.tier,
            "name": p.name,
            "daily_limit": p.daily_limit,
            "limit_period": p.limit_period,
            "has_watermark": p.has_watermark,
            "has_editor": p.has_editor,
            "has_history": p.has_history,
            "external_price_ids": p.external_price_ids,
        }
        for p in plans
    ])


@bp.get("/billing-events")
def list_billing_events():
    limit = min(max(safe_int(request.args.get("limit"), 50), 1), 500)
    q = db.session.query(BillingEvent).order_by(BillingEvent.id.desc())
    if request.args.get("unprocessed") in ("1", "true"):
        q = q.filter(BillingEvent.processed.is_(False))
    return jsonify([
        {
            "event_id": ev.external_event_id,
            "type": ev.event_type,
            "processed": bool(ev.processed),
            "signature_valid": bool(ev.signature_valid),
            "retries": ev.retries,
            "notes": ev.notes,
            "received_at": isoformat(ev.received_at),
            "processed_at": isoformat(ev.processed_at),
        }
        for ev in q.limit(limit).all()
    ])
