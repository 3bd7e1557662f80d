"""Outbound notification sinks."""

from dues_engine.notifications.base import (
    NotificationResult,
    NotificationSink,
    TemplateType,
    safe_send,
    send_after_commit,
)
from dues_engine.notifications.stub import LoggingNotificationSink, RecordingNotificationSink

__all__ = [
    "NotificationResult",
    "NotificationSink",
    "TemplateType",
    "safe_send",
    "send_after_commit",
    "LoggingNotificationSink",
    "RecordingNotificationSink",
]
