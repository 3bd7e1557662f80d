"""Notification sinks for development and tests."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any

from dues_engine.notifications.base import NotificationResult

logger = logging.getLogger(__name__)


class LoggingNotificationSink:
    """Sink that logs messages instead of delivering them."""

    def send(
        self,
        template_type: str,
        recipient: str,
        variables: dict[str, Any],
        language: str = "en",
    ) -> NotificationResult:
        message_id = f"log-{uuid.uuid4().hex[:12]}"
        logger.info(
            "Notification queued",
            extra={
                "template": template_type,
                "recipient": recipient,
                "language": language,
                "message_id": message_id,
            },
        )
        return NotificationResult(success=True, provider_message_id=message_id)


@dataclass
class SentNotification:
    template_type: str
    recipient: str
    variables: dict[str, Any]
    language: str


@dataclass
class RecordingNotificationSink:
    """In-memory sink that records every message.

    Set ``fail_with`` to make every send raise, to exercise best-effort paths.
    """

    sent: list[SentNotification] = field(default_factory=list)
    fail_with: Exception | None = None

    def send(
        self,
        template_type: str,
        recipient: str,
        variables: dict[str, Any],
        language: str = "en",
    ) -> NotificationResult:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append(SentNotification(template_type, recipient, dict(variables), language))
        return NotificationResult(success=True, provider_message_id=f"rec-{len(self.sent)}")

    def templates(self) -> list[str]:
        return [n.template_type for n in self.sent]
