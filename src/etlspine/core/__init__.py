"""Core primitives: errors, logging, settings, watermarks and checkpoints."""

from etlspine.core.checkpoints import (
    CheckpointStore,
    SqlCheckpointStore,
    SyncCheckpoint,
    TransformationCheckpoint,
)
from etlspine.core.errors import (
    ConfigError,
    ConnectorError,
    EtlError,
    ErrorCategory,
    ErrorContext,
    TransientError,
    ValidationError,
    is_retryable,
)
from etlspine.core.logging import LogContext, configure_logging, get_logger
from etlspine.core.settings import EtlSettings, get_settings
from etlspine.core.watermarks import (
    SqlWatermarkStore,
    WatermarkKind,
    WatermarkStore,
    WatermarkValue,
)

__all__ = [
    "CheckpointStore",
    "ConfigError",
    "ConnectorError",
    "ErrorCategory",
    "ErrorContext",
    "EtlError",
    "EtlSettings",
    "LogContext",
    "SqlCheckpointStore",
    "SqlWatermarkStore",
    "SyncCheckpoint",
    "TransformationCheckpoint",
    "TransientError",
    "ValidationError",
    "WatermarkKind",
    "WatermarkStore",
    "WatermarkValue",
    "configure_logging",
    "get_logger",
    "get_settings",
    "is_retryable",
]
