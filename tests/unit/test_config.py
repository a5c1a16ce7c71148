"""Unit tests for configuration"""

import pytest
from pydantic import ValidationError

from freshwatch.config import AppConfig


def test_config_defaults(monkeypatch):
    """Test that configuration uses correct defaults"""
    monkeypatch.delenv("DB_PATH", raising=False)

    config = AppConfig(_env_file=None)

    assert config.db_path == "./data/freshness.db"
    assert config.freshness_settings_path == "freshness.yaml"
    assert config.tick_interval_minutes == 15
    assert config.lease_timeout_seconds == 900
    assert config.retry_base_delay_seconds == 60
    assert config.retry_max_delay_seconds == 6 * 3600
    assert config.reclaim_alert_threshold == 3
    assert config.reclaim_fail_threshold == 5
    assert config.otel_logging_enabled is False
    assert config.otel_service_name == "freshwatch"


def test_environment_variable_precedence(monkeypatch):
    """Test that environment variables take precedence over defaults"""
    monkeypatch.setenv("DB_PATH", "./test_data/test.db")
    monkeypatch.setenv("LEASE_TIMEOUT_SECONDS", "120")
    monkeypatch.setenv("SCHEDULER_ENABLED", "false")

    config = AppConfig(_env_file=None)

    assert config.db_path == "./test_data/test.db"
    assert config.lease_timeout_seconds == 120
    assert config.scheduler_enabled is False
    # Non-overridden values keep their defaults
    assert config.drain_interval_seconds == 30


def test_config_rejects_out_of_range_values(monkeypatch):
    """Test that numeric bounds are enforced"""
    monkeypatch.setenv("LEASE_TIMEOUT_SECONDS", "1")

    with pytest.raises(ValidationError):
        AppConfig(_env_file=None)
