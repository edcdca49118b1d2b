"""
Structured error types for etl-spine.

Every error raised by the orchestration layer or by a collaborator adapter
should extend :class:`EtlError`.  Instead of bare exceptions that lose
context, an ``EtlError`` carries:

- **Category:** What kind of error (network, source, validation, ...)
- **Retryable:** Whether the activity runner may retry the call
- **Context:** Connection, table, pipeline and step identifiers
- **Cause:** Chained underlying exception for root cause analysis

Manifesto:
    Long-running sync loops and multi-step pipelines survive individual
    failures by classifying them.  A transient network blip must be retried
    by the activity runner; a failed schema check must not be.  The error
    hierarchy makes that decision explicit instead of guessed from messages.

Architecture:
    ::

        EtlError  (category, retryable, context, cause)
          ├── TransientError        (retryable=True)
          │     └── NetworkError
          ├── SourceError           (SOURCE)
          │     └── ConnectorError
          ├── ValidationError       (VALIDATION, never retryable)
          ├── ConfigError           (CONFIG, never retryable)
          ├── OrchestrationError    (ORCHESTRATION)
          │     └── WorkflowError
          └── StorageError          (STORAGE)
                └── CheckpointError

Usage:
    from etlspine.core.errors import ConnectorError, TransientError

    try:
        cursor.execute(query)
    except socket.timeout as e:
        raise TransientError("change query timed out", cause=e)

Tags:
    error-handling, exception-hierarchy, retry-logic, etl-spine
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorCategory(str, Enum):
    """Standard error categories for classification and retry decisions."""

    NETWORK = "NETWORK"
    STORAGE = "STORAGE"
    SOURCE = "SOURCE"
    VALIDATION = "VALIDATION"
    CONFIG = "CONFIG"
    ORCHESTRATION = "ORCHESTRATION"
    INTERNAL = "INTERNAL"
    UNKNOWN = "UNKNOWN"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Attributes:
        connection_id: Source connection the error relates to
        table: Qualified table name (sync workflow)
        pipeline_id: Transformation pipeline identifier
        step_id: Transformation step identifier
        execution_id: Orchestration instance identifier
        metadata: Additional key-value pairs
    """

    connection_id: str | None = None
    table: str | None = None
    pipeline_id: str | None = None
    step_id: str | None = None
    execution_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["connection_id", "table", "pipeline_id", "step_id", "execution_id"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class EtlError(Exception):
    """
    Base exception for all etl-spine errors.

    Subclasses set ``default_category`` and ``default_retryable`` so callers
    rarely have to pass them explicitly.
    """

    default_category: ErrorCategory = ErrorCategory.INTERNAL
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        category: ErrorCategory | None = None,
        retryable: bool | None = None,
        context: ErrorContext | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.category = category or self.default_category
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> EtlError:
        """
        Add context to this error (fluent API).

        Usage:
            raise ConnectorError("apply failed").with_context(table="public.orders")
        """
        for key, value in kwargs.items():
            if hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result = {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.value,
            "retryable": self.retryable,
        }
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, category={self.category.value})"


# =============================================================================
# TRANSIENT ERRORS (Retryable)
# =============================================================================


class TransientError(EtlError):
    """Temporary error that may succeed on retry."""

    default_category = ErrorCategory.NETWORK
    default_retryable = True


class NetworkError(TransientError):
    """Network-related transient error."""


# =============================================================================
# SOURCE ERRORS
# =============================================================================


class SourceError(EtlError):
    """Error reported by a source system.  Not retryable unless flagged."""

    default_category = ErrorCategory.SOURCE
    default_retryable = False


class ConnectorError(SourceError):
    """Connector failed to connect, query, or apply a change batch."""


# =============================================================================
# VALIDATION / CONFIGURATION ERRORS
# =============================================================================


class ValidationError(EtlError):
    """
    Validation error.

    Never retryable - the definition or data must be fixed.
    """

    default_category = ErrorCategory.VALIDATION
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        if self.value is not None:
            result["value"] = repr(self.value)
        return result


class ConfigError(EtlError):
    """Configuration error.  Never retryable."""

    default_category = ErrorCategory.CONFIG
    default_retryable = False


# =============================================================================
# ORCHESTRATION / STORAGE ERRORS
# =============================================================================


class OrchestrationError(EtlError):
    """Workflow orchestration error."""

    default_category = ErrorCategory.ORCHESTRATION
    default_retryable = False


class WorkflowError(OrchestrationError):
    """Workflow execution error."""


class StorageError(EtlError):
    """Watermark or checkpoint storage error."""

    default_category = ErrorCategory.STORAGE
    default_retryable = False


class CheckpointError(StorageError):
    """Checkpoint could not be written or cleaned up."""


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: Exception) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, EtlError):
        return error.retryable

    retryable_types = (
        ConnectionError,
        BrokenPipeError,
        OSError,
    )
    return isinstance(error, retryable_types)


def categorize_error(error: Exception) -> ErrorCategory:
    """Get the category of an error."""
    if isinstance(error, EtlError):
        return error.category
    if isinstance(error, (ConnectionError, OSError)):
        return ErrorCategory.NETWORK
    if isinstance(error, (ValueError, TypeError)):
        return ErrorCategory.VALIDATION
    return ErrorCategory.UNKNOWN


def error_message(error: BaseException) -> str:
    """Return a non-empty, human-readable message for *error*."""
    if isinstance(error, EtlError):
        return error.message
    text = str(error)
    return text or error.__class__.__name__
