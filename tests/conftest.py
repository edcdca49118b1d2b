"""
Shared pytest fixtures for etl-spine tests.

This module provides:
- Fast settings (short control poll interval, small checkpoint cadence)
- A ManualClock so sync loops never really sleep
- In-memory collaborators from :mod:`etlspine.testing`

Usage:
    def test_something(sync_factory, connector):
        orchestrator = sync_factory(make_table("orders"), max_cycles=1)
        orchestrator.run()
"""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from etlspine.core.checkpoints import SqlCheckpointStore
from etlspine.core.settings import EtlSettings, clear_settings_cache
from etlspine.orchestration.incremental_sync import IncrementalSyncOrchestrator
from etlspine.orchestration.retry import RetryPolicy
from etlspine.orchestration.transformation import TransformationOrchestrator
from etlspine.testing import (
    FakeConnector,
    FakeTransforms,
    ManualClock,
    RecordingNotificationSink,
    RecordingStatusPublisher,
    RecordingWatermarkStore,
    make_sync_input,
    make_transformation_input,
)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-mark tests based on their location."""
    for item in items:
        parts = Path(str(item.fspath)).relative_to(Path(__file__).parent).parts
        if len(parts) > 1:
            item.add_marker(getattr(pytest.mark, parts[0]))


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    """Keep ETLSPINE_* variables of the developer shell out of tests."""
    for key in list(os.environ):
        if key.startswith("ETLSPINE_"):
            monkeypatch.delenv(key)
    clear_settings_cache()
    yield
    clear_settings_cache()


@pytest.fixture
def settings() -> EtlSettings:
    return EtlSettings(control_poll_interval_seconds=0.01)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def watermarks() -> RecordingWatermarkStore:
    return RecordingWatermarkStore()


@pytest.fixture
def checkpoints() -> SqlCheckpointStore:
    return SqlCheckpointStore()


@pytest.fixture
def transforms() -> FakeTransforms:
    return FakeTransforms()


@pytest.fixture
def sink() -> RecordingNotificationSink:
    return RecordingNotificationSink()


@pytest.fixture
def publisher() -> RecordingStatusPublisher:
    return RecordingStatusPublisher()


@pytest.fixture
def sync_factory(connector, watermarks, checkpoints, sink, settings, clock):
    """Build an IncrementalSyncOrchestrator over the shared fakes."""

    def build(*tables, max_cycles=1, retry_policy=None, settings_override=None, **input_kwargs):
        return IncrementalSyncOrchestrator(
            make_sync_input(*tables, **input_kwargs),
            connector,
            watermarks,
            checkpoints,
            sink,
            settings=settings_override or settings,
            clock=clock,
            execution_id="sync-test",
            max_cycles=max_cycles,
            retry_policy=retry_policy or RetryPolicy.no_retry(),
        )

    return build


@pytest.fixture
def transformation_factory(connector, transforms, checkpoints, sink, publisher, settings, clock):
    """Build a TransformationOrchestrator over the shared fakes."""

    def build(steps, retry_policy=None, **input_kwargs):
        return TransformationOrchestrator(
            make_transformation_input(steps, **input_kwargs),
            connector,
            transforms,
            checkpoints,
            sink,
            publisher,
            settings=settings,
            clock=clock,
            execution_id="tx-test",
            retry_policy=retry_policy or RetryPolicy.no_retry(),
        )

    return build
