import logging

import pytest

from passport_sync.core.settings import Settings, validate_settings


def _settings(monkeypatch, **env):
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return Settings()


def test_empty_int_env_falls_back_to_default(monkeypatch):
    config = _settings(monkeypatch, OPENMRS_SYNC_INTERVAL_SECONDS="", OPENMRS_SYNC_BATCH_SIZE="")
    assert config.sync_interval_seconds == 10
    assert config.sync_batch_size == 500


def test_env_overrides(monkeypatch):
    config = _settings(
        monkeypatch,
        OPENMRS_SYNC_INTERVAL_SECONDS="30",
        OPENMRS_SYNC_BACKGROUND_ENABLED="true",
        SYNC_SOURCE_SYSTEM="openmrs-site-2",
    )
    assert config.sync_interval_seconds == 30
    assert config.sync_background_enabled is True
    assert config.sync_source_system == "openmrs-site-2"


def test_validate_rejects_non_positive_values(monkeypatch):
    config = _settings(monkeypatch, OPENMRS_SYNC_MAX_RUN_SECONDS="0")
    with pytest.raises(RuntimeError, match="OPENMRS_SYNC_MAX_RUN_SECONDS must be positive"):
        validate_settings(config)


def test_validate_default_password_fails_only_in_production(monkeypatch, caplog):
    url = "postgresql+psycopg://passport:change-me@db:5432/patient_passport"
    dev = _settings(monkeypatch, APP_ENV="development", DATABASE_URL=url)
    with caplog.at_level(logging.WARNING, logger="passport_sync.config"):
        validate_settings(dev)
    assert "default password" in caplog.text

    prod = _settings(monkeypatch, APP_ENV="production", DATABASE_URL=url)
    with pytest.raises(RuntimeError, match="default password"):
        validate_settings(prod)
