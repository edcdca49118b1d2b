"""Tests for etlspine.notifications: routing, best-effort delivery, webhook sink."""

from __future__ import annotations

import json
import urllib.error
from unittest.mock import MagicMock, patch

import pytest
from structlog.testing import capture_logs

from etlspine.core.errors import ConfigError, TransientError
from etlspine.notifications import (
    LogNotificationSink,
    NotificationEvent,
    NotificationType,
    WebhookNotificationSink,
    notify,
    should_notify,
)
from etlspine.orchestration.models import NotificationConfig
from etlspine.testing import RecordingNotificationSink


def event(config=None, status="failed"):
    return NotificationEvent(
        type=NotificationType.TRANSFORMATION,
        connection_id="conn",
        status=status,
        config=config or NotificationConfig(emails=("ops@example.com",)),
        pipeline_id="pipe",
        execution_id="tx-1",
        summary={"phase": status},
    )


class TestShouldNotify:
    def test_defaults_failure_only(self):
        config = NotificationConfig()
        assert should_notify(config, succeeded=False)
        assert not should_notify(config, succeeded=True)

    def test_success_opt_in(self):
        config = NotificationConfig(on_success=True, on_failure=False)
        assert should_notify(config, succeeded=True)
        assert not should_notify(config, succeeded=False)


class TestNotify:
    def test_delivers(self):
        sink = RecordingNotificationSink()
        assert notify(sink, event()) is True
        assert sink.events[0].pipeline_id == "pipe"

    def test_without_sink(self):
        assert notify(None, event()) is False

    def test_failure_is_logged_not_raised(self):
        sink = RecordingNotificationSink(error=RuntimeError("smtp down"))
        with capture_logs() as logs:
            assert notify(sink, event()) is False
        failed = [e for e in logs if e["event"] == "notification.failed"]
        assert failed[0]["error"] == "smtp down"

    def test_log_sink(self):
        with capture_logs() as logs:
            LogNotificationSink().send_notification(event())
        assert logs[0]["event"] == "notification.event"
        assert logs[0]["emails"] == ["ops@example.com"]


class TestWebhookSink:
    def test_posts_event_json(self):
        response = MagicMock(status=200)
        response.__enter__.return_value = response
        config = NotificationConfig(webhook="https://hooks.example.com/etl")

        with patch("urllib.request.urlopen", return_value=response) as urlopen:
            WebhookNotificationSink(headers={"X-Token": "t"}).send_notification(event(config))

        request = urlopen.call_args[0][0]
        assert request.full_url == "https://hooks.example.com/etl"
        assert request.get_header("X-token") == "t"
        body = json.loads(request.data)
        assert body["type"] == "transformation"
        assert body["status"] == "failed"

    def test_default_url_used_when_event_has_none(self):
        response = MagicMock(status=204)
        response.__enter__.return_value = response
        with patch("urllib.request.urlopen", return_value=response) as urlopen:
            WebhookNotificationSink("https://fallback.example.com").send_notification(event())
        assert urlopen.call_args[0][0].full_url == "https://fallback.example.com"

    def test_missing_url(self):
        with pytest.raises(ConfigError):
            WebhookNotificationSink().send_notification(event())

    def test_network_error_is_transient(self):
        config = NotificationConfig(webhook="https://hooks.example.com/etl")
        with patch("urllib.request.urlopen", side_effect=urllib.error.URLError("refused")):
            with pytest.raises(TransientError, match="Webhook delivery failed"):
                WebhookNotificationSink().send_notification(event(config))
