import pytest

from config import get_settings
from database import normalize_url


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("DATABASE_URL", "STORAGE_BACKEND", "DATA_DIR", "SESSION_SECRET", "CORS_ORIGIN", "APP_ENV"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults_to_json_storage(clean_env):
    settings = get_settings()
    assert settings.storage_backend == "json"
    assert settings.data_dir == "./data"
    assert settings.cors_origins == ["*"]
    assert settings.production is False
    assert settings.cookie_samesite == "lax"


def test_database_url_selects_sql(clean_env):
    clean_env.setenv("DATABASE_URL", "postgres://u:p@db/shop")
    assert get_settings().storage_backend == "sql"
    clean_env.setenv("STORAGE_BACKEND", "json")
    assert get_settings().storage_backend == "json"


def test_cors_and_production(clean_env):
    clean_env.setenv("CORS_ORIGIN", "https://a.example, https://b.example")
    clean_env.setenv("APP_ENV", "production")
    settings = get_settings()
    assert settings.cors_origins == ["https://a.example", "https://b.example"]
    assert settings.production is True
    assert settings.cookie_samesite == "none"


def test_postgres_url_uses_asyncpg():
    url, connect_args = normalize_url("postgresql://u:p@db:5432/shop?sslmode=require")
    assert url.drivername == "postgresql+asyncpg"
    assert "sslmode" not in url.query
    assert connect_args == {"ssl": "require"}


def test_sqlite_url_is_untouched():
    url, connect_args = normalize_url("sqlite+aiosqlite:///store.db")
    assert url.drivername == "sqlite+aiosqlite"
    assert connect_args == {}
