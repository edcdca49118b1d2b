"""
etl-spine: orchestration core for incremental sync and transformation pipelines.

Two long-running workflow state machines driven against injected
collaborators:

- :class:`IncrementalSyncOrchestrator` replays source changes table by
  table, advancing per-table watermarks only after each sub-batch applied.
- :class:`TransformationOrchestrator` runs dependency-ordered pipeline steps
  level by level, with validation, rollback and notifications.

Both accept pause / resume / cancel commands and answer status queries
through :func:`start_workflow` handles.
"""

from etlspine.orchestration.incremental_sync import IncrementalSyncOrchestrator, sleep_duration
from etlspine.orchestration.planner import DependencyResolver, ExecutionPlan, build_execution_plan
from etlspine.orchestration.runtime import SystemClock, WorkflowHandle, start_workflow
from etlspine.orchestration.signals import ControlCommand
from etlspine.orchestration.transformation import TransformationOrchestrator

__version__ = "0.1.0"

__all__ = [
    "ControlCommand",
    "DependencyResolver",
    "ExecutionPlan",
    "IncrementalSyncOrchestrator",
    "SystemClock",
    "TransformationOrchestrator",
    "WorkflowHandle",
    "__version__",
    "build_execution_plan",
    "sleep_duration",
    "start_workflow",
]
