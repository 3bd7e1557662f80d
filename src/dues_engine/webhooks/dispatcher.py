"""Webhook event processing.

Flow for one verified event:
    1. ignored types are acknowledged without touching the ledger
    2. the event id is claimed in the ledger inside the handler's
       transaction; an id that is already claimed is a duplicate
    3. the handler runs and its work commits together with the claim
    4. on failure everything rolls back and the outcome (failed or held) is
       written to the ledger in a second transaction

Unknown event types are recorded as processed with no side effects.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from dues_engine.database import session_scope
from dues_engine.errors import CurrencyMismatchError
from dues_engine.notifications.base import NotificationSink
from dues_engine.providers.base import PaymentGateway
from dues_engine.webhooks.handlers import (
    EVENT_HANDLERS,
    IGNORED_EVENTS,
    EventHandler,
    HandlerContext,
    HandlerOutcome,
)
from dues_engine.webhooks.ledger import LedgerStatus, WebhookLedger

logger = logging.getLogger(__name__)


class WebhookStatus(str, Enum):
    """Acknowledgement returned to the gateway."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    ERROR = "error"
    HELD = "held"


@dataclass(frozen=True)
class WebhookResult:
    """Result of processing one webhook delivery."""

    status: WebhookStatus
    event_id: str | None
    event_type: str | None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "message": self.message,
        }


class WebhookProcessor:
    """Verifies, deduplicates and dispatches gateway events."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        gateway: PaymentGateway,
        notifier: NotificationSink | None = None,
        handlers: dict[str, EventHandler] | None = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.notifier = notifier
        self.handlers = EVENT_HANDLERS if handlers is None else handlers

    def handle_request(self, payload: bytes, signature_header: str | None) -> WebhookResult:
        """Verify a raw delivery and process it.

        Raises:
            InvalidSignatureError: before any processing, for a bad signature
            ValidationError: if the verified payload is not an event
        """
        event = self.gateway.construct_event(payload, signature_header)
        return self.process_event(event)

    def process_event(self, event: dict[str, Any]) -> WebhookResult:
        """Process an already-verified event."""
        event_id = event.get("id")
        event_type = event.get("type")

        if event_type in IGNORED_EVENTS:
            return WebhookResult(WebhookStatus.IGNORED, event_id, event_type, "Event type ignored")

        data_object = (event.get("data") or {}).get("object") or {}
        handler = self.handlers.get(event_type)

        try:
            with session_scope(self.session_factory) as db:
                ledger = WebhookLedger(db)
                if not ledger.claim(event_id=event_id, event_type=event_type or "", payload=event):
                    logger.info(
                        "Duplicate webhook event",
                        extra={"event_id": event_id, "event_type": event_type},
                    )
                    return WebhookResult(
                        WebhookStatus.DUPLICATE, event_id, event_type, "Event already processed"
                    )

                if handler is None:
                    logger.info("Unhandled webhook event type", extra={"event_type": event_type})
                    outcome = HandlerOutcome(message="Event type not handled")
                else:
                    outcome = handler(data_object, HandlerContext(db, event_id, self.notifier))
                ledger.complete(
                    event_id,
                    organization_id=outcome.organization_id,
                    membership_id=outcome.membership_id,
                )
            return WebhookResult(WebhookStatus.PROCESSED, event_id, event_type, outcome.message)
        except CurrencyMismatchError as exc:
            ledger_status, error = LedgerStatus.HELD, str(exc)
            logger.warning(
                "Webhook event held for review",
                extra={"event_id": event_id, "event_type": event_type, "error": error},
            )
        except Exception as exc:
            ledger_status, error = LedgerStatus.FAILED, str(exc)
            logger.exception(
                "Webhook handler failed",
                extra={"event_id": event_id, "event_type": event_type},
            )

        self._record(event, ledger_status, data_object, error)
        if ledger_status == LedgerStatus.HELD:
            return WebhookResult(WebhookStatus.HELD, event_id, event_type, error)
        return WebhookResult(WebhookStatus.ERROR, event_id, event_type, error)

    def _record(
        self,
        event: dict[str, Any],
        status: LedgerStatus,
        data_object: dict[str, Any],
        error: str | None,
    ) -> None:
        metadata = data_object.get("metadata") or {}
        with session_scope(self.session_factory) as db:
            WebhookLedger(db).record(
                event_id=event["id"],
                event_type=event.get("type") or "",
                status=status,
                organization_id=_maybe_uuid(metadata.get("organization_id")),
                membership_id=_maybe_uuid(metadata.get("membership_id")),
                payload=event,
                error_message=error,
            )


def _maybe_uuid(value: Any) -> UUID | None:
    try:
        return UUID(str(value)) if value else None
    except ValueError:
        return None
