import os

class BaseConfig:
    # Secrets (env in prod; dev/test may use defaults)
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-not-secure")
    WTF_CSRF_SECRET_KEY = SECRET_KEY
    WTF_CSRF_TIME_LIMIT = None

    # Database (env in prod; dev/test may use default)
    try:
        from dotenv import dotenv_values
        _ENV_FALLBACK = dotenv_values(".env")
    except Exception:
        _ENV_FALLBACK = {}
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL") or _ENV_FALLBACK.get("DATABASE_URL") or "sqlite:///:memory:"
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    APP_ENV = os.environ.get("APP_ENV", "development")
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Flask-Limiter default: off globally; prefer per-route limits
    RATELIMIT_DEFAULT = None

    # --- Stripe (Billing) ---
    STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")

    # --- Bearer tokens issued to the UI ---
    AUTH_TOKEN_SALT = os.getenv("AUTH_TOKEN_SALT", "auth-token-v1")
    AUTH_TOKEN_MAX_AGE = int(os.getenv("AUTH_TOKEN_MAX_AGE", str(60 * 60 * 24 * 7)))

    # --- Entitlements ---
    # Usage days roll over in the payment provider's local timezone
    USAGE_TIMEZONE = os.getenv("USAGE_TIMEZONE", "UTC")
    ADMIN_DAILY_LIMIT = int(os.getenv("ADMIN_DAILY_LIMIT", "9999"))
    ENTITLEMENT_RETRY_AFTER = int(os.getenv("ENTITLEMENT_RETRY_AFTER", "5"))

    # --- Billing notifications ---
    FAILED_PAYMENT_FINAL_THRESHOLD = int(os.getenv("FAILED_PAYMENT_FINAL_THRESHOLD", "3"))
    NOTIFICATION_ACTION_URL = os.getenv("NOTIFICATION_ACTION_URL", "/dashboard")

class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "DEBUG")

class ProductionConfig(BaseConfig):
    DEBUG = False
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "WARNING")

    def __init__(self):
        # No dev defaults in production; create_app() refuses to boot when these are unset
        self.SECRET_KEY = os.environ.get("SECRET_KEY")
        self.WTF_CSRF_SECRET_KEY = self.SECRET_KEY
        self.SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL")
        self.SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True}

class TestingConfig(BaseConfig):
    TESTING = True
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = os.environ.get("TEST_DATABASE_URL", "sqlite:///:memory:")
    WTF_CSRF_ENABLED = False

_ENV_MAP = {
    "development": DevelopmentConfig,
    "production": ProductionConfig,
    "testing": TestingConfig,
}

def get_config():
    env = os.environ.get("APP_ENV", "development").lower()
    config_cls = _ENV_MAP.get(env, DevelopmentConfig)
    return config_cls()
