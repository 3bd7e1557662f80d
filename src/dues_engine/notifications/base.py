"""Notification sink protocol and helpers.

Outbound email is an external collaborator. Billing and settlement call it
through ``safe_send`` so that a failing sink is logged and never affects
financial state.

Notifications about a financial change are queued on the session with
``send_after_commit``: they go out once the transaction commits and are
dropped if it rolls back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from sqlalchemy import event
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


class TemplateType(str, Enum):
    """Notification templates used by the billing engine."""

    PAYMENT_RECEIPT = "payment_receipt"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_REMINDER = "payment_reminder"
    ELIGIBILITY_REACHED = "eligibility_reached"


@dataclass(frozen=True)
class NotificationResult:
    """Result of a send attempt."""

    success: bool
    provider_message_id: str | None = None
    error: str | None = None


class NotificationSink(Protocol):
    """Protocol for notification delivery adapters."""

    def send(
        self,
        template_type: str,
        recipient: str,
        variables: dict[str, Any],
        language: str = "en",
    ) -> NotificationResult:
        """Send a templated notification.

        Args:
            template_type: One of TemplateType values
            recipient: Email address
            variables: Template variables
            language: "en" or "fa"

        Returns:
            NotificationResult; failures are reported, not raised.
        """
        ...


def safe_send(
    sink: NotificationSink | None,
    template_type: str | TemplateType,
    recipient: str | None,
    variables: dict[str, Any],
    language: str = "en",
) -> NotificationResult:
    """Send through ``sink``, logging failures instead of raising."""
    template = template_type.value if isinstance(template_type, TemplateType) else template_type

    if sink is None:
        return NotificationResult(success=False, error="No notification sink configured")
    if not recipient:
        logger.warning("Notification skipped: no recipient", extra={"template": template})
        return NotificationResult(success=False, error="No recipient")

    try:
        result = sink.send(template, recipient, variables, language)
    except Exception as exc:
        logger.exception("Notification sink raised", extra={"template": template})
        return NotificationResult(success=False, error=str(exc))

    if not result.success:
        logger.warning(
            "Notification failed",
            extra={"template": template, "error": result.error},
        )
    return result


_PENDING_KEY = "dues_engine.pending_notifications"


def send_after_commit(
    session: Session,
    sink: NotificationSink | None,
    template_type: str | TemplateType,
    recipient: str | None,
    variables: dict[str, Any],
    language: str = "en",
) -> None:
    """Queue a notification until ``session`` commits."""
    if sink is None:
        return
    session.info.setdefault(_PENDING_KEY, []).append(
        (sink, template_type, recipient, variables, language)
    )


@event.listens_for(Session, "after_begin")
def _reset_pending_notifications(session: Session, transaction: Any, connection: Any) -> None:
    if transaction.parent is None:
        session.info.pop(_PENDING_KEY, None)


@event.listens_for(Session, "after_commit")
def _flush_pending_notifications(session: Session) -> None:
    # Savepoint releases also fire after_commit
    if session.get_nested_transaction() is not None:
        return
    for sink, template_type, recipient, variables, language in session.info.pop(_PENDING_KEY, []):
        safe_send(sink, template_type, recipient, variables, language)


@event.listens_for(Session, "after_rollback")
def _discard_pending_notifications(session: Session) -> None:
    if session.get_nested_transaction() is not None:
        return
    dropped = session.info.pop(_PENDING_KEY, [])
    if dropped:
        logger.info(
            "Discarded notifications of a rolled back transaction",
            extra={"count": len(dropped)},
        )
