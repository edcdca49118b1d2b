"""
Centralized settings for etl-spine.

One validated, cached settings object holds every tunable of the two
orchestrators: checkpoint cadence, error bookkeeping, inter-cycle sleep
durations and the activity retry policies.  Values resolve from
``ETLSPINE_*`` environment variables and ``.env`` files, e.g.::

    ETLSPINE_CHECKPOINT_EVERY_BATCHES=20
    ETLSPINE_SYNC_RETRY__MAXIMUM_ATTEMPTS=3

Tags:
    etl-spine, configuration, settings, pydantic
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RetrySettings(BaseModel):
    """Activity retry policy (exponential backoff)."""

    initial_interval_seconds: float = Field(default=10.0, ge=0)
    backoff_coefficient: float = Field(default=1.5, ge=1.0)
    maximum_interval_seconds: float = Field(default=60.0, ge=0)
    maximum_attempts: int = Field(default=5, ge=1)

    @model_validator(mode="after")
    def _check_bounds(self) -> RetrySettings:
        if self.maximum_interval_seconds < self.initial_interval_seconds:
            raise ValueError("maximum_interval_seconds must be >= initial_interval_seconds")
        return self


class CadenceSettings(BaseModel):
    """Inter-cycle sleep durations (seconds) per fastest table cadence."""

    realtime_active: float = Field(default=1.0, ge=0)
    realtime_idle: float = Field(default=5.0, ge=0)
    minute: float = Field(default=60.0, ge=0)
    hourly: float = Field(default=3600.0, ge=0)
    daily: float = Field(default=86400.0, ge=0)


class EtlSettings(BaseSettings):
    """etl-spine configuration.

    All fields can be set via ``ETLSPINE_*`` environment variables or
    through a ``.env`` file.  Nested models use ``__`` as delimiter.
    """

    model_config = SettingsConfigDict(
        env_prefix="ETLSPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json", description="json or console")
    service_name: str = Field(default="etl-spine")

    # ── Incremental sync ─────────────────────────────────────────
    checkpoint_every_batches: int = Field(default=10, ge=1)
    cleanup_every_batches: int = Field(default=100, ge=1)
    error_attention_threshold: int = Field(default=3, ge=1)
    max_recorded_errors: int = Field(default=100, ge=1)
    cadence: CadenceSettings = Field(default_factory=CadenceSettings)

    # ── Control surface ──────────────────────────────────────────
    control_poll_interval_seconds: float = Field(default=0.5, gt=0)

    # ── Activity retry policies ──────────────────────────────────
    sync_retry: RetrySettings = Field(default_factory=RetrySettings)
    transform_retry: RetrySettings = Field(
        default_factory=lambda: RetrySettings(
            initial_interval_seconds=60.0,
            backoff_coefficient=2.0,
            maximum_interval_seconds=300.0,
            maximum_attempts=2,
        )
    )

    @model_validator(mode="after")
    def _check_log_format(self) -> EtlSettings:
        if self.log_format not in ("json", "console"):
            raise ValueError(f"log_format must be 'json' or 'console', got {self.log_format!r}")
        return self


@lru_cache(maxsize=1)
def get_settings() -> EtlSettings:
    """Return the cached process-wide settings."""
    return EtlSettings()


def clear_settings_cache() -> None:
    """Drop the cached settings (tests, config reload)."""
    get_settings.cache_clear()
