import pytest
from carousel_billing import create_app
from carousel_billing.billing.errors import ConfigurationError


def test_production_requires_rate_limit_storage(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.delenv("REDIS_URL", raising=False)
    with pytest.raises(ConfigurationError, match="REDIS_URL"):
        create_app()

def test_production_refuses_to_boot_without_stripe_secrets(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/0")
    monkeypatch.setenv("SECRET_KEY", "s3cret")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
    with pytest.raises(ConfigurationError) as exc:
        create_app()
    assert "STRIPE_SECRET_KEY" in str(exc.value) and "STRIPE_WEBHOOK_SECRET" in str(exc.value)
