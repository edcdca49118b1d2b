"""Pydantic models for pipeline and sync descriptor files.

Descriptors arrive as YAML (or JSON, which YAML parses too) from a
scheduler, a repository of pipeline definitions, or the CLI.  These models
validate the document and convert it into the frozen input dataclasses of
:mod:`etlspine.orchestration.models`.

Usage::

    from etlspine.orchestration.specs import TransformationSpec

    spec = TransformationSpec.from_file("pipelines/daily_revenue.yaml")
    orchestrator = TransformationOrchestrator(spec.to_input(), ...)

Example YAML::

    apiVersion: etlspine.io/v1
    kind: TransformationPipeline
    connection_id: warehouse
    connector_type: postgres
    pipeline:
      id: daily_revenue
      name: Daily revenue
      steps:
        - id: orders
          type: sql
          query: SELECT * FROM raw.orders
          output_table: stage.orders
        - id: revenue
          type: sql
          query: SELECT day, sum(total) FROM stage.orders GROUP BY day
          output_table: mart.revenue
          dependencies: [orders]
    execution:
      parallelism: 2
      rollback_on_failure: true

Tags:
    etl-spine, orchestration, yaml, declarative, pydantic
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

from etlspine.core.errors import ConfigError
from etlspine.orchestration.models import (
    AuthConfig,
    BusinessRule,
    ExecutionConfig,
    ExecutionMode,
    IncrementalConfig,
    IncrementalStrategy,
    IncrementalSyncInput,
    NotificationConfig,
    PipelineDefinition,
    PipelineSchedule,
    RuleSeverity,
    StepKind,
    StepValidation,
    SyncConfig,
    SyncFrequency,
    TableRef,
    TableSyncConfig,
    TransformationBody,
    TransformationInput,
    TransformationStep,
)

API_VERSION = "etlspine.io/v1"


def _load_mapping(content: str) -> dict[str, Any]:
    try:
        data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML: {e}", cause=e) from e
    if not isinstance(data, dict):
        raise ConfigError("Descriptor must be a mapping at the top level")
    return data


# =============================================================================
# Shared sections
# =============================================================================


class AuthSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: str = Field(default="none", min_length=1)
    credentials: dict[str, Any] = Field(default_factory=dict)

    def to_config(self) -> AuthConfig:
        return AuthConfig(type=self.type, credentials=dict(self.credentials))


class NotificationSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    emails: list[str] = Field(default_factory=list)
    webhook: str | None = None
    on_success: bool = False
    on_failure: bool = True

    def to_config(self) -> NotificationConfig:
        return NotificationConfig(
            emails=tuple(self.emails),
            webhook=self.webhook,
            on_success=self.on_success,
            on_failure=self.on_failure,
        )


# =============================================================================
# Transformation pipeline
# =============================================================================


class BusinessRuleSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1)
    rule: str = Field(..., min_length=1)
    severity: RuleSeverity = RuleSeverity.ERROR


class StepValidationSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    row_count_check: bool = False
    data_type_check: bool = False
    business_rules: list[BusinessRuleSpec] = Field(default_factory=list)

    def to_validation(self) -> StepValidation:
        return StepValidation(
            row_count_check=self.row_count_check,
            data_type_check=self.data_type_check,
            business_rules=tuple(
                BusinessRule(name=r.name, rule=r.rule, severity=r.severity)
                for r in self.business_rules
            ),
        )


class StepSpec(BaseModel):
    """One transformation step.  ``name`` defaults to ``id``."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1)
    name: str | None = None
    type: StepKind = StepKind.SQL
    query: str | None = None
    script: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    input_tables: list[str] = Field(default_factory=list)
    output_table: str = Field(..., min_length=1)
    dependencies: list[str] = Field(default_factory=list)
    description: str = ""
    validation: StepValidationSpec | None = None

    @model_validator(mode="after")
    def _require_body(self) -> StepSpec:
        if self.query is None and self.script is None:
            raise ValueError(f"Step '{self.id}' needs a query or a script")
        return self

    def to_step(self) -> TransformationStep:
        return TransformationStep(
            id=self.id,
            name=self.name or self.id,
            kind=self.type,
            output_table=self.output_table,
            body=TransformationBody(
                query=self.query,
                script=self.script,
                parameters=dict(self.parameters),
            ),
            input_tables=tuple(self.input_tables),
            dependencies=tuple(self.dependencies),
            description=self.description,
            validation=self.validation.to_validation() if self.validation else None,
        )


class ScheduleSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    expression: str = Field(..., min_length=1)
    timezone: str = "UTC"


class PipelineSection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: str = ""
    steps: list[StepSpec] = Field(..., min_length=1)
    schedule: ScheduleSpec | None = None


class ExecutionSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mode: ExecutionMode = ExecutionMode.FULL
    dry_run: bool = False
    parallelism: int = Field(default=4, ge=1)
    retry_failed_steps: bool = False
    rollback_on_failure: bool = True

    def to_config(self) -> ExecutionConfig:
        return ExecutionConfig(
            mode=self.mode,
            dry_run=self.dry_run,
            parallelism=self.parallelism,
            retry_failed_steps=self.retry_failed_steps,
            rollback_on_failure=self.rollback_on_failure,
        )


class TransformationSpec(BaseModel):
    """Root model of a transformation pipeline descriptor."""

    model_config = ConfigDict(extra="forbid")

    apiVersion: Literal["etlspine.io/v1"] = API_VERSION
    kind: Literal["TransformationPipeline"] = "TransformationPipeline"
    connection_id: str = Field(..., min_length=1)
    connector_type: str = Field(..., min_length=1)
    auth: AuthSpec = Field(default_factory=AuthSpec)
    pipeline: PipelineSection
    execution: ExecutionSpec = Field(default_factory=ExecutionSpec)
    notifications: NotificationSpec = Field(default_factory=NotificationSpec)

    def to_steps(self) -> list[TransformationStep]:
        """Steps without building a pipeline (no duplicate-id check)."""
        return [s.to_step() for s in self.pipeline.steps]

    def to_input(self) -> TransformationInput:
        """
        Raises:
            InvalidPipelineError: If step ids are duplicated
        """
        section = self.pipeline
        schedule = (
            PipelineSchedule(expression=section.schedule.expression, timezone=section.schedule.timezone)
            if section.schedule
            else None
        )
        return TransformationInput(
            connection_id=self.connection_id,
            connector_type=self.connector_type,
            pipeline=PipelineDefinition(
                id=section.id,
                name=section.name,
                steps=tuple(self.to_steps()),
                description=section.description,
                schedule=schedule,
            ),
            auth=self.auth.to_config(),
            execution=self.execution.to_config(),
            notifications=self.notifications.to_config(),
        )

    @classmethod
    def from_yaml(cls, content: str) -> TransformationSpec:
        """Parse and validate YAML (or JSON) content.

        Raises:
            ConfigError: If the content is not a YAML mapping
            pydantic.ValidationError: If it does not match the schema
        """
        return cls.model_validate(_load_mapping(content))

    @classmethod
    def from_file(cls, path: str | Path) -> TransformationSpec:
        return cls.from_yaml(Path(path).read_text(encoding="utf-8"))


# =============================================================================
# Incremental sync
# =============================================================================


class TableSpec(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str = Field(..., min_length=1)
    schema_name: str | None = Field(default=None, alias="schema")
    database: str | None = None
    column: str = Field(..., min_length=1)
    strategy: IncrementalStrategy = IncrementalStrategy.TIMESTAMP
    batch_size: int = Field(default=1000, ge=1)
    frequency: SyncFrequency = SyncFrequency.MINUTE

    def to_config(self) -> TableSyncConfig:
        return TableSyncConfig(
            table=TableRef(name=self.name, schema=self.schema_name, database=self.database),
            incremental=IncrementalConfig(
                column=self.column,
                strategy=self.strategy,
                batch_size=self.batch_size,
                frequency=self.frequency,
            ),
        )


class SyncSpec(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_batch_size: int = Field(default=10000, ge=1)
    retention_days: int = Field(default=7, ge=0)


class IncrementalSyncSpec(BaseModel):
    """Root model of an incremental sync descriptor."""

    model_config = ConfigDict(extra="forbid")

    apiVersion: Literal["etlspine.io/v1"] = API_VERSION
    kind: Literal["IncrementalSync"] = "IncrementalSync"
    connection_id: str = Field(..., min_length=1)
    connector_type: str = Field(..., min_length=1)
    auth: AuthSpec = Field(default_factory=AuthSpec)
    tables: list[TableSpec] = Field(..., min_length=1)
    sync: SyncSpec = Field(default_factory=SyncSpec)
    notifications: NotificationSpec = Field(default_factory=NotificationSpec)

    def to_input(self) -> IncrementalSyncInput:
        """
        Raises:
            InvalidPipelineError: If a table is listed twice
        """
        return IncrementalSyncInput(
            connection_id=self.connection_id,
            connector_type=self.connector_type,
            tables=tuple(t.to_config() for t in self.tables),
            auth=self.auth.to_config(),
            sync=SyncConfig(
                max_batch_size=self.sync.max_batch_size,
                retention_days=self.sync.retention_days,
            ),
            notifications=self.notifications.to_config(),
        )

    @classmethod
    def from_yaml(cls, content: str) -> IncrementalSyncSpec:
        return cls.model_validate(_load_mapping(content))

    @classmethod
    def from_file(cls, path: str | Path) -> IncrementalSyncSpec:
        return cls.from_yaml(Path(path).read_text(encoding="utf-8"))


def load_descriptor(path: str | Path) -> TransformationSpec | IncrementalSyncSpec:
    """Load a descriptor file, choosing the model from its ``kind``.

    Raises:
        ConfigError: Unknown kind or unreadable YAML
    """
    data = _load_mapping(Path(path).read_text(encoding="utf-8"))
    kind = data.get("kind", "TransformationPipeline")
    if kind == "TransformationPipeline":
        return TransformationSpec.model_validate(data)
    if kind == "IncrementalSync":
        return IncrementalSyncSpec.model_validate(data)
    raise ConfigError(f"Unknown descriptor kind: {kind!r}")
