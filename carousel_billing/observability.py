import os
from logging.config import dictConfig

SERVICE_NAME = "carousel-billing"


def init_logging(app):
    """
    JSON lines on stdout in staging/prod so webhook and resolver events are
    queryable by field; plain console logging in dev/tests.
    """
    app_env = (app.config.get("APP_ENV") or os.getenv("APP_ENV", "development")).lower()
    level = (app.config.get("LOG_LEVEL") or "INFO").upper()
    if app_env not in ("staging", "production"):
        app.logger.setLevel(level)
        return

    dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
                "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
                "rename_fields": {"levelname": "level", "asctime": "ts"},
                "static_fields": {"service": SERVICE_NAME, "env": app_env},
            },
        },
        "handlers": {
            "stdout": {"class": "logging.StreamHandler", "formatter": "json", "stream": "ext://sys.stdout"},
        },
        "root": {"level": level, "handlers": ["stdout"]},
        "loggers": {"sqlalchemy.engine": {"level": "WARNING"}},
    })


def init_sentry(app):
    """Wire Sentry if DSN present; no-op otherwise."""
    dsn = os.getenv("SENTRY_DSN")
    if not dsn:
        return
    import sentry_sdk
    from sentry_sdk.integrations.flask import FlaskIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    sentry_sdk.init(
        dsn=dsn,
        integrations=[FlaskIntegration(), SqlalchemyIntegration()],
        traces_sample_rate=float(os.getenv("SENTRY_TRACES", "0.0")),
        environment=app.config.get("APP_ENV", "development"),
        release=os.getenv("RELEASE_SHA") or None,
        # billing payloads carry customer emails
        send_default_pii=False,
    )
