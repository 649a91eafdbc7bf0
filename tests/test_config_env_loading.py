"""
Test environment file loading precedence and settings validation.

Tests that .env is discovered from the working directory or its parents,
that already-set environment variables take precedence, and that invalid
values are rejected.
"""

import pytest
from pydantic import ValidationError

from clinicinsights.core.config import (
    AuditSettings,
    AzureOpenAISettings,
    CacheSettings,
    DatabaseSettings,
    LoggingSettings,
    Settings,
    _load_env_file_if_available,
    get_settings,
    reset_settings,
)

ENV_NAMES = ("MONGO_DB_NAME", "MONGO_URI", "LOG_FORMAT", "CACHE_DEFAULT_TTL")


def clear_env(monkeypatch):
    # set-then-delete so monkeypatch also removes values load_dotenv adds
    for name in ENV_NAMES:
        monkeypatch.setenv(name, "placeholder")
        monkeypatch.delenv(name)


@pytest.fixture(autouse=True)
def fresh_settings():
    reset_settings()
    yield
    reset_settings()


def test_env_file_search_in_parent_directories(monkeypatch, tmp_path):
    """A .env above the working directory is found and loaded."""
    clear_env(monkeypatch)
    (tmp_path / ".env").write_text(
        "MONGO_URI=mongodb://from-env-file:27017/test\n"
        "MONGO_DB_NAME=from_env\n"
        "LOG_FORMAT=text\n"
        "CACHE_DEFAULT_TTL=120\n"
    )
    workdir = tmp_path / "service" / "app"
    workdir.mkdir(parents=True)
    monkeypatch.chdir(workdir)

    settings = get_settings()

    assert settings.database.uri == "mongodb://from-env-file:27017/test"
    assert settings.database.db_name == "from_env"
    assert settings.logging.format == "text"
    assert settings.cache.default_ttl == 120


def test_already_set_env_vars_take_precedence(monkeypatch, tmp_path):
    """Test that already-set environment variables are not overridden."""
    clear_env(monkeypatch)
    monkeypatch.setenv("MONGO_DB_NAME", "already_set")
    (tmp_path / ".env").write_text("MONGO_DB_NAME=from_env_file\n")
    monkeypatch.chdir(tmp_path)

    assert get_settings().database.db_name == "already_set"


def test_no_env_files_no_crash(monkeypatch, tmp_path):
    """Missing env files leave the defaults in place."""
    clear_env(monkeypatch)
    monkeypatch.chdir(tmp_path)

    _load_env_file_if_available()
    settings = get_settings()

    assert settings.cache.default_ttl == 600
    assert settings.logging.format == "json"


def test_settings_are_cached_until_reset():
    first = get_settings()
    assert get_settings() is first

    reset_settings()
    assert get_settings() is not first


# -----------------------------------------------------------------------------
# Validation
# -----------------------------------------------------------------------------


def test_mongo_uri_scheme():
    assert DatabaseSettings(uri="mongodb+srv://cluster.example.net").uri.startswith("mongodb+srv://")
    assert DatabaseSettings(uri="").uri == ""
    with pytest.raises(ValidationError):
        DatabaseSettings(uri="postgres://localhost/db")


def test_backends_are_validated():
    assert CacheSettings(backend="REDIS").backend == "redis"
    assert AuditSettings(backend="Mongo").backend == "mongo"
    with pytest.raises(ValidationError):
        CacheSettings(backend="memcached")
    with pytest.raises(ValidationError):
        AuditSettings(backend="postgres")
    with pytest.raises(ValidationError):
        AuditSettings(retention_days=0)


def test_logging_settings():
    assert LoggingSettings(level="debug").level == "DEBUG"
    assert LoggingSettings(format="TEXT").format == "text"
    with pytest.raises(ValidationError):
        LoggingSettings(level="verbose")
    with pytest.raises(ValidationError):
        LoggingSettings(format="xml")


def test_azure_endpoint_format():
    assert AzureOpenAISettings(endpoint="https://clinic.openai.azure.com/").endpoint
    with pytest.raises(ValidationError):
        AzureOpenAISettings(endpoint="https://example.com/")


def test_app_env():
    assert Settings(app_env="Testing").is_testing
    assert Settings(app_env="production").is_production
    with pytest.raises(ValidationError):
        Settings(app_env="qa")


def test_ttl_table():
    table = CacheSettings(ttl_billing=900).ttl_table()
    assert table["billing_cpt"] == 900
    assert table["billing_icd10"] == 900
    assert table["safety_check"] == 300
    assert "clinical_note" not in table
