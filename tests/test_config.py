"""Tests for orchestrator/config.py configuration module.

This module tests:
- Environment variable loading functions
- Default value handling and clamping
- Error cases for missing required configuration

Priority: P1 - Configuration is critical for all services.
"""

import os
from unittest.mock import MagicMock

import pytest

from orchestrator import config
from orchestrator.config import (
    get_auto_trigger,
    get_database_url,
    get_default_style,
    get_default_target_duration,
    get_max_attempts,
    get_max_concurrent_generations,
    get_notification_webhook_url,
    get_processing_timeout_seconds,
    get_retry_backoff,
    get_retry_delay_seconds,
    get_script_generator_url,
    get_upstream_rate_limit_per_minute,
    get_worker_id,
)
from orchestrator.services.pipeline_controller import PipelineSettings


class TestGetDatabaseUrl:
    """Tests for get_database_url function."""

    def test_p0_raises_when_not_set(self):
        """[P0] Should raise ValueError when DATABASE_URL is missing."""
        with pytest.raises(ValueError, match="DATABASE_URL"):
            get_database_url()

    def test_p0_converts_postgresql_to_asyncpg(self, monkeypatch: pytest.MonkeyPatch):
        """[P0] Should rewrite postgresql:// to the asyncpg driver."""
        # GIVEN: A plain PostgreSQL URL
        monkeypatch.setenv("DATABASE_URL", "postgresql://user:pass@db:5432/orchestrator")

        # WHEN: Reading the URL
        result = get_database_url()

        # THEN: The asyncpg driver is selected
        assert result == "postgresql+asyncpg://user:pass@db:5432/orchestrator"

    def test_p1_keeps_sqlite_url(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///orchestrator.db")
        assert get_database_url() == "sqlite+aiosqlite:///orchestrator.db"


class TestQueueSettingsFromEnv:
    """Tests for queue tuning getters."""

    def test_p1_defaults(self):
        """[P1] Unset variables fall back to documented defaults."""
        assert get_max_concurrent_generations() == 3
        assert get_max_attempts() == 3
        assert get_retry_delay_seconds() == 5.0
        assert get_retry_backoff() == 1.0
        assert get_processing_timeout_seconds() == 300.0
        assert get_upstream_rate_limit_per_minute() == 60

    def test_p1_reads_values(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("MAX_CONCURRENT_GENERATIONS", "5")
        monkeypatch.setenv("GENERATION_RETRY_DELAY_SECONDS", "0.5")

        assert get_max_concurrent_generations() == 5
        assert get_retry_delay_seconds() == 0.5

    def test_p2_clamps_out_of_range_values(self, monkeypatch: pytest.MonkeyPatch):
        """[P2] Values outside the allowed range are clamped."""
        monkeypatch.setenv("MAX_CONCURRENT_GENERATIONS", "500")
        monkeypatch.setenv("GENERATION_MAX_ATTEMPTS", "0")

        assert get_max_concurrent_generations() == 20
        assert get_max_attempts() == 1

    def test_p2_invalid_value_falls_back_to_default(self, monkeypatch: pytest.MonkeyPatch):
        """[P2] Non-numeric values log a warning and use the default."""
        monkeypatch.setenv("MAX_CONCURRENT_GENERATIONS", "lots")

        mock_log = MagicMock()
        monkeypatch.setattr(config, "log", mock_log)

        assert get_max_concurrent_generations() == 3
        mock_log.warning.assert_called_once()
        assert mock_log.warning.call_args.args[0] == "invalid_config_value"


class TestPipelineSettingsFromEnv:
    @pytest.mark.parametrize(
        "raw,expected",
        [("true", True), ("1", True), ("YES", True), ("false", False), ("0", False), ("off", False)],
    )
    def test_p1_auto_trigger_parsing(self, monkeypatch: pytest.MonkeyPatch, raw, expected):
        monkeypatch.setenv("PIPELINE_AUTO_TRIGGER", raw)
        assert get_auto_trigger() is expected

    def test_p1_auto_trigger_default_on(self):
        assert get_auto_trigger() is True

    def test_p2_generation_defaults(self):
        assert get_default_style() == "motivational"
        assert get_default_target_duration() == 60

    def test_p1_default_style_read_from_env(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("PIPELINE_DEFAULT_STYLE", " Educational ")
        assert get_default_style() == "educational"

    def test_p1_unknown_default_style_falls_back(self, monkeypatch: pytest.MonkeyPatch):
        """[P1] An unknown style logs a warning instead of breaking every trigger."""
        monkeypatch.setenv("PIPELINE_DEFAULT_STYLE", "funny")
        mock_log = MagicMock()
        monkeypatch.setattr(config, "log", mock_log)

        settings = PipelineSettings.from_env()

        assert settings.default_style == "motivational"
        assert mock_log.warning.call_args.args[0] == "invalid_config_value"
        assert mock_log.warning.call_args.kwargs["name"] == "PIPELINE_DEFAULT_STYLE"


class TestOptionalUrls:
    def test_p1_urls_none_when_unset(self):
        assert get_script_generator_url() is None
        assert get_notification_webhook_url() is None

    def test_p1_urls_read_from_env(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("SCRIPT_GENERATOR_URL", "http://scripts:8080")
        monkeypatch.setenv("NOTIFICATION_WEBHOOK_URL", "https://hooks.example.com/pipeline")

        assert get_script_generator_url() == "http://scripts:8080"
        assert get_notification_webhook_url() == "https://hooks.example.com/pipeline"


class TestGetWorkerId:
    def test_p2_defaults_to_pid(self):
        assert get_worker_id() == f"worker-{os.getpid()}"

    def test_p2_reads_worker_id(self, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("WORKER_ID", "orchestrator-1")
        assert get_worker_id() == "orchestrator-1"
