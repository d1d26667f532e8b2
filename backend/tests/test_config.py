from __future__ import annotations

import pytest

from app.core.config import Settings, merge_unique, parse_csv, str_to_bool

_PROD_ENV = {
    "ENV": "prod",
    "DATABASE_URL": "postgresql+psycopg2://app:pw@db:5432/accounts",
    "FRONTEND_BASE_URL": "https://app.example.com",
    "CORS_ORIGINS": "https://app.example.com",
}


@pytest.fixture()
def prod_env(monkeypatch):
    for key in ("CREDENTIAL_STORE_BACKEND", "VERIFICATION_CODE_LENGTH", "DB_HOST"):
        monkeypatch.delenv(key, raising=False)
    for key, value in _PROD_ENV.items():
        monkeypatch.setenv(key, value)
    return monkeypatch


def test_helpers():
    assert str_to_bool(None, default=True) is True
    assert str_to_bool(" Yes ") is True
    assert str_to_bool("off") is False
    assert parse_csv(" a, ,b ,") == ["a", "b"]
    assert merge_unique(["a", "b", "a"]) == ["a", "b"]


def test_prod_settings_accept_complete_config(prod_env):
    s = Settings()
    assert s.is_prod
    assert s.database_url == _PROD_ENV["DATABASE_URL"]
    assert s.CORS_ORIGINS == ["https://app.example.com"]


def test_prod_rejects_memory_store(prod_env):
    prod_env.setenv("CREDENTIAL_STORE_BACKEND", "memory")
    with pytest.raises(RuntimeError, match="memory"):
        Settings()


def test_prod_rejects_short_codes(prod_env):
    prod_env.setenv("VERIFICATION_CODE_LENGTH", "4")
    with pytest.raises(RuntimeError, match="VERIFICATION_CODE_LENGTH"):
        Settings()


def test_prod_requires_https_frontend(prod_env):
    prod_env.setenv("FRONTEND_BASE_URL", "http://app.example.com")
    with pytest.raises(RuntimeError, match="https"):
        Settings()


def test_prod_requires_db_parts_without_database_url(prod_env):
    prod_env.delenv("DATABASE_URL")
    with pytest.raises(RuntimeError, match="DB_HOST"):
        Settings()


def test_dev_falls_back_to_sqlite(monkeypatch):
    monkeypatch.setenv("ENV", "dev")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("DB_HOST", raising=False)
    monkeypatch.delenv("FRONTEND_BASE_URL", raising=False)
    s = Settings()
    assert s.database_url.startswith("sqlite")
    assert s.FRONTEND_BASE_URL == "http://localhost:3000"
