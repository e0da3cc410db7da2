from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_wtf import CSRFProtect
from flask_login import LoginManager
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

db = SQLAlchemy()
migrate = Migrate()
csrf = CSRFProtect()

login_manager = LoginManager()
# Bearer tokens only; there is no cookie session to protect
login_manager.session_protection = None


def rate_limit_key() -> str:
    """Per-user buckets for authenticated callers, per-IP otherwise."""
    from flask_login import current_user
    user_id = getattr(current_user, "id", None) if getattr(current_user, "is_authenticated", False) else None
    if user_id:
        return f"user:{user_id}"
    return get_remote_address()


# Storage is configured in create_app() via RATELIMIT_STORAGE_URI.
limiter = Limiter(key_func=rate_limit_key)
