"""Terminal-outcome notifications.

Manifesto:
    Operators want to hear when a pipeline fails or a sync stops, but a
    notification outage must never change the outcome of a run.  Delivery
    is fire-and-forget: :func:`notify` logs failures and returns.

Sinks:
    LogNotificationSink      structured log line (default)
    WebhookNotificationSink  JSON POST to ``NotificationConfig.webhook``

Tags:
    etl-spine, notifications, webhook, fire-and-forget
"""

from __future__ import annotations

import json
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from etlspine.core.errors import ConfigError, TransientError, error_message
from etlspine.core.logging import get_logger
from etlspine.orchestration.models import NotificationConfig

logger = get_logger(__name__)


class NotificationType(str, Enum):
    INCREMENTAL_SYNC = "incremental_sync"
    TRANSFORMATION = "transformation"


@dataclass(frozen=True)
class NotificationEvent:
    """One terminal outcome of an orchestrator instance."""

    type: NotificationType
    connection_id: str
    status: str
    config: NotificationConfig
    pipeline_id: str | None = None
    execution_id: str | None = None
    summary: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "connection_id": self.connection_id,
            "pipeline_id": self.pipeline_id,
            "execution_id": self.execution_id,
            "status": self.status,
            "emails": list(self.config.emails),
            "summary": self.summary,
        }


@runtime_checkable
class NotificationSink(Protocol):
    """Delivers notification events."""

    def send_notification(self, event: NotificationEvent) -> None: ...


def should_notify(config: NotificationConfig, succeeded: bool) -> bool:
    """Whether *config* asks for a notification on this outcome."""
    return config.on_success if succeeded else config.on_failure


def notify(sink: NotificationSink | None, event: NotificationEvent) -> bool:
    """Send *event* through *sink*, best effort.  Returns True if delivered."""
    if sink is None:
        return False
    try:
        sink.send_notification(event)
    except Exception as e:
        logger.warning(
            "notification.failed",
            type=event.type.value,
            connection_id=event.connection_id,
            status=event.status,
            error=error_message(e),
        )
        return False
    logger.debug("notification.sent", type=event.type.value, status=event.status)
    return True


class LogNotificationSink:
    """Writes each event as a structured log line."""

    def send_notification(self, event: NotificationEvent) -> None:
        logger.info(
            "notification.event",
            type=event.type.value,
            connection_id=event.connection_id,
            pipeline_id=event.pipeline_id,
            execution_id=event.execution_id,
            status=event.status,
            emails=list(event.config.emails),
        )


class WebhookNotificationSink:
    """
    Generic webhook sink.

    POSTs the event as JSON to the event's configured webhook, or to
    *default_url* when the event has none.
    """

    def __init__(
        self,
        default_url: str | None = None,
        *,
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
    ):
        self._default_url = default_url
        self._headers = headers or {}
        self._timeout = timeout

    def send_notification(self, event: NotificationEvent) -> None:
        url = event.config.webhook or self._default_url
        if not url:
            raise ConfigError("No webhook URL configured for notification")

        headers = {"Content-Type": "application/json"}
        headers.update(self._headers)

        req = urllib.request.Request(
            url,
            data=json.dumps(event.to_dict(), default=str).encode("utf-8"),
            headers=headers,
        )
        try:
            with urllib.request.urlopen(req, timeout=self._timeout) as response:
                logger.debug("notification.webhook_delivered", url=url, status=response.status)
        except urllib.error.URLError as e:
            raise TransientError(f"Webhook delivery failed: {e}", cause=e) from e
