from functools import wraps
from flask import abort, request, jsonify
from flask_login import current_user
from carousel_billing.billing.errors import EntitlementUnavailable
from carousel_billing.extensions import db
from carousel_billing.models import ROLE_ADMIN
from carousel_billing.services.identity import RoleDirectory

def require_user(fn):
    @wraps(fn)
    def _wrap(*args, **kwargs):
        if not current_user.is_authenticated:
            return _abort_smart(401)
        return fn(*args, **kwargs)
    return _wrap

def role_required(*roles):
    def deco(fn):
        @wraps(fn)
        def _wrap(*args, **kwargs):
            if not current_user.is_authenticated:
                return _abort_smart(401)
            directory = RoleDirectory(db.session)
            try:
                allowed = any(directory.has_role(current_user.id, role) for role in roles)
            except EntitlementUnavailable:
                return _abort_smart(503)
            if not allowed:
                return _abort_smart(403)
            return fn(*args, **kwargs)
        return _wrap
    return deco

admin_required = role_required(ROLE_ADMIN)

_ERRORS = {401: "unauthorized", 403: "forbidden", 404: "not_found", 503: "unavailable"}

def _abort_smart(code: int):
    # API clients get a JSON-shaped error; everything else the standard page
    accept = (request.headers.get("Accept") or "").lower()
    if "application/json" in accept or request.path.startswith(("/api", "/admin")):
        return jsonify({"error": _ERRORS[code], "code": code}), code
    abort(code)
