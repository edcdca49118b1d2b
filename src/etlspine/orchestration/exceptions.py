"""Orchestration exceptions: structured error hierarchy.

All orchestration exceptions inherit from ``etlspine.core.errors.OrchestrationError``
so that callers can catch the entire family with a single ``except`` clause.

Hierarchy::

    OrchestrationError  (from etlspine.core.errors)
      └── PipelineError                 ── base for pipeline definition errors
            ├── InvalidPipelineError      ── descriptor is malformed
            ├── CycleDetectedError        ── dependency graph has a cycle
            ├── DependencyError           ── step depends on unknown steps
            └── PipelineValidationError   ── a step failed pre-execution validation
"""

from etlspine.core.errors import OrchestrationError


class PipelineError(OrchestrationError):
    """Base exception for pipeline definition errors."""

    pass


class InvalidPipelineError(PipelineError):
    """Raised when a pipeline or sync descriptor is malformed."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class CycleDetectedError(PipelineError):
    """Raised when the dependency graph contains a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        cycle_str = " -> ".join(cycle)
        super().__init__(f"Cycle detected in dependency graph: {cycle_str}")


class DependencyError(PipelineError):
    """Raised when step dependencies reference unknown steps."""

    def __init__(self, step_id: str, missing_deps: list[str]):
        self.step_id = step_id
        self.missing_deps = missing_deps
        deps_str = ", ".join(missing_deps)
        super().__init__(f"Step '{step_id}' depends on unknown steps: {deps_str}")


class PipelineValidationError(PipelineError):
    """Raised when a step fails validation outside dry-run mode."""

    def __init__(self, step_id: str, step_name: str, reason: str):
        self.step_id = step_id
        self.step_name = step_name
        self.reason = reason
        super().__init__(f"Transformation validation failed for step {step_name}: {reason}")
