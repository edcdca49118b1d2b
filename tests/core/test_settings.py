"""Tests for etlspine.core.settings: defaults, env overrides and validation."""

from __future__ import annotations

import pytest
from pydantic import ValidationError as PydanticValidationError

from etlspine.core.settings import EtlSettings, RetrySettings, clear_settings_cache, get_settings
from etlspine.orchestration.retry import RetryPolicy


class TestDefaults:
    def test_orchestration_defaults(self):
        settings = EtlSettings()
        assert settings.checkpoint_every_batches == 10
        assert settings.cleanup_every_batches == 100
        assert settings.error_attention_threshold == 3
        assert settings.cadence.minute == 60
        assert settings.cadence.daily == 86400

    def test_retry_defaults_per_workflow(self):
        settings = EtlSettings()
        assert RetryPolicy.from_settings(settings.sync_retry) == RetryPolicy(
            initial_interval=10, backoff_coefficient=1.5, maximum_interval=60, maximum_attempts=5
        )
        assert settings.transform_retry.maximum_attempts == 2
        assert settings.transform_retry.initial_interval_seconds == 60


class TestEnvironment:
    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("ETLSPINE_CHECKPOINT_EVERY_BATCHES", "25")
        monkeypatch.setenv("ETLSPINE_SYNC_RETRY__MAXIMUM_ATTEMPTS", "2")
        settings = EtlSettings()
        assert settings.checkpoint_every_batches == 25
        assert settings.sync_retry.maximum_attempts == 2

    def test_get_settings_is_cached(self, monkeypatch):
        first = get_settings()
        monkeypatch.setenv("ETLSPINE_ERROR_ATTENTION_THRESHOLD", "9")
        assert get_settings() is first
        clear_settings_cache()
        assert get_settings().error_attention_threshold == 9


class TestValidation:
    def test_rejects_unknown_log_format(self):
        with pytest.raises(PydanticValidationError):
            EtlSettings(log_format="xml")

    def test_rejects_zero_checkpoint_cadence(self):
        with pytest.raises(PydanticValidationError):
            EtlSettings(checkpoint_every_batches=0)

    def test_retry_interval_bounds(self):
        with pytest.raises(PydanticValidationError):
            RetrySettings(initial_interval_seconds=30, maximum_interval_seconds=10)
