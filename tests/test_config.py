import pytest
from pydantic import ValidationError

from backoffice.core.config import Settings, get_settings


def make(**kw) -> Settings:
    return Settings(_env_file=None, **kw)


def test_settings_singleton():
    assert get_settings() is get_settings()


def test_testing_defaults():
    settings = get_settings()
    assert settings.is_testing is True
    assert settings.sqlalchemy_driver == "sqlite"
    assert settings.LOW_STOCK_THRESHOLD == 10
    assert settings.INVOICE_DUE_DAYS == 30


def test_postgres_dsn_is_normalized():
    s = make(DATABASE_URL="postgres://bo:pw@db:5432/backoffice", POSTGRES_STATEMENT_TIMEOUT_MS=5000)
    assert s.sqlalchemy_driver == "postgresql"
    assert s.sqlalchemy_url.startswith("postgresql+psycopg2://bo:pw@db:5432/backoffice?")
    assert "statement_timeout%3D5000" in s.sqlalchemy_url
    assert "pool_size" in s.sqlalchemy_engine_options


def test_production_requires_tls_and_postgres():
    prod = make(ENVIRONMENT="production", DATABASE_URL="postgresql://bo@db/backoffice")
    assert "sslmode=require" in prod.sqlalchemy_url

    with pytest.raises(ValueError):
        make(ENVIRONMENT="production", DATABASE_URL="sqlite:///bo.db").sqlalchemy_url


def test_validators():
    assert make(DEFAULT_CURRENCY=" kzt ").DEFAULT_CURRENCY == "KZT"
    assert make(CORS_ORIGINS='["https://a.kz", "https://b.kz"]').CORS_ORIGINS == ["https://a.kz", "https://b.kz"]
    with pytest.raises(ValidationError):
        make(DEFAULT_CURRENCY="tenge")
    with pytest.raises(ValidationError):
        make(STOCK_EFFECT_MAX_ATTEMPTS=-1)


def test_dump_masks_secrets():
    dump = make(NOTIFICATION_WEBHOOK_TOKEN="super-secret-token").dump_settings_safe()
    assert dump["NOTIFICATION_WEBHOOK_TOKEN"] == "sup***ken"
    assert dump["LOW_STOCK_THRESHOLD"] == 10
