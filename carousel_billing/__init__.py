import os
import time
from flask import Flask, request, jsonify

# Load .env only for local/dev. In prod, env vars come from the platform.
if os.getenv("APP_ENV", "development") != "production":
    from dotenv import load_dotenv
    load_dotenv(".env", override=False)


from .config import get_config
from .extensions import db, migrate, csrf, login_manager, limiter
from .billing.errors import ConfigurationError
from .security.headers import init_security
from .observability import init_logging, init_sentry

PROD_LIKE = ("staging", "production")
REQUIRED_IN_PROD = ("SECRET_KEY", "DATABASE_URL", "STRIPE_SECRET_KEY", "STRIPE_WEBHOOK_SECRET")


def _app_env() -> str:
    return (os.getenv("APP_ENV", "development") or "development").lower()


def _rate_limit_storage(app_env: str) -> str:
    if app_env not in PROD_LIKE:
        return "memory://"
    uri = os.environ.get("REDIS_URL")
    if not uri:
        # Counters must be shared across workers
        raise ConfigurationError("REDIS_URL is required in staging/production for rate limiting")
    return uri


def _require_settings(app) -> None:
    missing = [name for name in REQUIRED_IN_PROD if not (os.getenv(name) or app.config.get(name))]
    if missing:
        raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}")


def _wants_json() -> bool:
    return (
        "application/json" in (request.headers.get("Accept") or "").lower()
        or request.is_json
        or request.path.startswith(("/api", "/admin", "/webhooks"))
    )


def _register_error_handlers(app) -> None:
    from flask_wtf.csrf import CSRFError

    @app.errorhandler(404)
    def not_found(e):
        return {"error": "not_found", "code": 404}, 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return {"error": "method_not_allowed", "code": 405}, 405

    @app.errorhandler(500)
    def server_error(e):
        return {"error": "internal_error", "code": 500}, 500

    @app.errorhandler(CSRFError)
    def handle_csrf_error(e):
        return {"error": "csrf_failed", "message": e.description, "code": 400}, 400

    @app.errorhandler(429)
    def too_many_requests(e):
        window = limiter.current_limit
        retry_after = max(1, int(window.reset_at - time.time())) if window is not None else None
        headers = {}
        payload = {"error": "rate_limited", "code": 429}
        if retry_after is not None:
            headers["Retry-After"] = str(int(retry_after))
            payload["retry_after"] = int(retry_after)
        if _wants_json():
            return (payload, 429, headers)
        return ("Too Many Requests", 429, headers)


def create_app():
    app = Flask(__name__)
    app_env = _app_env()

    app.config["RATELIMIT_STORAGE_URI"] = _rate_limit_storage(app_env)
    app.config.setdefault("RATELIMIT_DEFAULTS", ["1000 per hour"])
    app.config.setdefault("RATELIMIT_HEADERS_ENABLED", True)
    # Retry-After is set by the 429 and 503 handlers; the limiter reports its window separately
    app.config.setdefault("RATELIMIT_HEADER_RETRY_AFTER", "X-RateLimit-Retry-After")
    app.config.from_object(get_config())

    if app_env in PROD_LIKE:
        _require_settings(app)

    init_logging(app)
    init_sentry(app)
    if app_env in PROD_LIKE:
        init_security(app)

    db.init_app(app)
    migrate.init_app(app, db, directory="migrations")
    csrf.init_app(app)
    login_manager.init_app(app)
    limiter.init_app(app)

    # Registers the bearer-token request loader
    from .services import identity  # noqa: F401

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "unauthorized", "code": 401}), 401

    from .blueprints.api import bp as api_bp
    from .blueprints.admin import bp as admin_bp
    from .blueprints.webhooks import bp as webhooks_bp

    app.register_blueprint(api_bp, url_prefix="/api")
    app.register_blueprint(admin_bp, url_prefix="/admin")
    app.register_blueprint(webhooks_bp, url_prefix="/webhooks")

    # Provider retries must never be throttled
    limiter.exempt(webhooks_bp)

    @limiter.exempt
    @app.get("/healthz")
    def healthz():
        return {"status": "ok"}, 200

    _register_error_handlers(app)

    from .cli import register_cli
    register_cli(app)

    if not app.config.get("STRIPE_SECRET_KEY"):
        app.logger.warning(
            "Stripe secret key missing; provider fallback and checkout sync will not work"
        )

    return app
