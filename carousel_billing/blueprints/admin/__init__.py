from flask import Blueprint
from carousel_billing.services.policy import admin_required

bp = Blueprint("admin", __name__)

@bp.before_request
@admin_required
def _require_admin():
    return None


# Import submodules so their routes register on the same bp
from . import grants  # noqa: E402,F401
