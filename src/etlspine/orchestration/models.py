"""
Input descriptors for the two orchestrators.

An external scheduler starts an orchestrator instance with one of these
descriptors.  They are frozen dataclasses: once a run accepted its input,
nothing in the run may change it.  YAML/JSON parsing and field validation
live in :mod:`etlspine.orchestration.specs`; this module only holds the
in-memory shapes and the invariants that every construction path must
respect (``__post_init__``).

Sync side::

    IncrementalSyncInput
      ├── connection_id, connector_type, auth
      ├── tables: TableSyncConfig(table: TableRef, incremental: IncrementalConfig)
      ├── sync: SyncConfig(max_batch_size, retention_days)
      └── notifications: NotificationConfig

Transformation side::

    TransformationInput
      ├── connection_id, connector_type, auth
      ├── pipeline: PipelineDefinition(id, name, steps[TransformationStep])
      ├── execution: ExecutionConfig(mode, dry_run, parallelism, ...)
      └── notifications: NotificationConfig
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from etlspine.core.watermarks import WatermarkKind
from etlspine.orchestration.exceptions import InvalidPipelineError


# =============================================================================
# Shared
# =============================================================================


@dataclass(frozen=True)
class AuthConfig:
    """Credentials handed to the connector's ``connect``."""

    type: str
    credentials: dict[str, Any] = field(default_factory=dict)

    def __repr__(self) -> str:
        return f"AuthConfig(type={self.type!r}, credentials=<{len(self.credentials)} keys>)"


@dataclass(frozen=True)
class NotificationConfig:
    """Who to notify and on which terminal outcomes."""

    emails: tuple[str, ...] = ()
    webhook: str | None = None
    on_success: bool = False
    on_failure: bool = True


# =============================================================================
# Incremental sync
# =============================================================================


class IncrementalStrategy(str, Enum):
    """How a table exposes its changes."""

    TIMESTAMP = "timestamp"
    AUTO_INCREMENT = "auto_increment"
    CHANGE_LOG = "change_log"
    BINARY_LOG = "binary_log"

    @property
    def watermark_kind(self) -> WatermarkKind:
        return _STRATEGY_KINDS[self]


_STRATEGY_KINDS = {
    IncrementalStrategy.TIMESTAMP: WatermarkKind.TIMESTAMP,
    IncrementalStrategy.AUTO_INCREMENT: WatermarkKind.INTEGER,
    IncrementalStrategy.CHANGE_LOG: WatermarkKind.INTEGER,
    IncrementalStrategy.BINARY_LOG: WatermarkKind.LOG_POSITION,
}


class SyncFrequency(str, Enum):
    """Table cadence, ordered fastest first."""

    REALTIME = "realtime"
    MINUTE = "minute"
    HOURLY = "hourly"
    DAILY = "daily"

    @property
    def rank(self) -> int:
        return list(SyncFrequency).index(self)


@dataclass(frozen=True)
class TableRef:
    """A source table."""

    name: str
    schema: str | None = None
    database: str | None = None

    @property
    def qualified_name(self) -> str:
        """``schema.name`` (or just ``name`` without a schema)."""
        if self.schema:
            return f"{self.schema}.{self.name}"
        return self.name


@dataclass(frozen=True)
class IncrementalConfig:
    """Change-capture configuration of one table."""

    column: str
    strategy: IncrementalStrategy = IncrementalStrategy.TIMESTAMP
    batch_size: int = 1000
    frequency: SyncFrequency = SyncFrequency.MINUTE

    def __post_init__(self):
        if self.batch_size < 1:
            raise InvalidPipelineError("batch_size must be at least 1", field="batch_size")


@dataclass(frozen=True)
class TableSyncConfig:
    table: TableRef
    incremental: IncrementalConfig


@dataclass(frozen=True)
class SyncConfig:
    """Global limits of a sync instance."""

    max_batch_size: int = 10000
    retention_days: int = 7

    def __post_init__(self):
        if self.max_batch_size < 1:
            raise InvalidPipelineError("max_batch_size must be at least 1", field="max_batch_size")
        if self.retention_days < 0:
            raise InvalidPipelineError("retention_days cannot be negative", field="retention_days")


@dataclass(frozen=True)
class IncrementalSyncInput:
    """Immutable input of an incremental sync instance."""

    connection_id: str
    connector_type: str
    tables: tuple[TableSyncConfig, ...]
    auth: AuthConfig
    sync: SyncConfig = field(default_factory=SyncConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)

    def __post_init__(self):
        names = [t.table.qualified_name for t in self.tables]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise InvalidPipelineError(f"Duplicate tables: {duplicates}", field="tables")

    def table_names(self) -> list[str]:
        return [t.table.qualified_name for t in self.tables]


# =============================================================================
# Transformation
# =============================================================================


class StepKind(str, Enum):
    SQL = "sql"
    PYTHON = "python"
    JAVASCRIPT = "javascript"
    DBT = "dbt"
    SPARK = "spark"


class RuleSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class ExecutionMode(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    TEST = "test"


@dataclass(frozen=True)
class TransformationBody:
    """What the transformation engine runs: a query, a script, or both."""

    query: str | None = None
    script: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class BusinessRule:
    name: str
    rule: str
    severity: RuleSeverity = RuleSeverity.ERROR


@dataclass(frozen=True)
class StepValidation:
    """Post-execution checks declared on a step."""

    row_count_check: bool = False
    data_type_check: bool = False
    business_rules: tuple[BusinessRule, ...] = ()

    def error_rule_names(self) -> set[str]:
        return {r.name for r in self.business_rules if r.severity is RuleSeverity.ERROR}


@dataclass(frozen=True)
class TransformationStep:
    """Declarative unit of work of a transformation pipeline."""

    id: str
    name: str
    kind: StepKind
    output_table: str
    body: TransformationBody = field(default_factory=TransformationBody)
    input_tables: tuple[str, ...] = ()
    dependencies: tuple[str, ...] = ()
    description: str = ""
    validation: StepValidation | None = None

    def __post_init__(self):
        if not self.id:
            raise InvalidPipelineError("Step id cannot be empty", field="id")


@dataclass(frozen=True)
class PipelineSchedule:
    expression: str
    timezone: str = "UTC"


@dataclass(frozen=True)
class PipelineDefinition:
    id: str
    name: str
    steps: tuple[TransformationStep, ...]
    description: str = ""
    schedule: PipelineSchedule | None = None

    def __post_init__(self):
        ids = [s.id for s in self.steps]
        if len(ids) != len(set(ids)):
            duplicates = sorted({i for i in ids if ids.count(i) > 1})
            raise InvalidPipelineError(f"Duplicate step ids: {duplicates}", field="steps")

    def get_step(self, step_id: str) -> TransformationStep:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)


@dataclass(frozen=True)
class ExecutionConfig:
    """Run-time policy of a transformation pipeline."""

    mode: ExecutionMode = ExecutionMode.FULL
    dry_run: bool = False
    parallelism: int = 4
    retry_failed_steps: bool = False
    rollback_on_failure: bool = True

    def __post_init__(self):
        if self.parallelism < 1:
            raise InvalidPipelineError("parallelism must be at least 1", field="parallelism")


@dataclass(frozen=True)
class TransformationInput:
    """Immutable input of a transformation pipeline run."""

    connection_id: str
    connector_type: str
    pipeline: PipelineDefinition
    auth: AuthConfig
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
