"""Webhook idempotency ledger.

Every delivered event id is recorded once. A handler runs only after its
event id has been claimed by an insert on the unique event_id column in the
handler's own transaction, so overlapping deliveries are serialized by the
store. Failures are written afterwards in a separate transaction. A second
delivery of a recorded id is acknowledged as a duplicate.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import insert as generic_insert
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from dues_engine.models import WebhookEvent

logger = logging.getLogger(__name__)


class LedgerStatus(str, Enum):
    """Stored outcome of an event."""

    PROCESSED = "processed"
    FAILED = "failed"
    HELD = "held"  # needs operator review (e.g. currency mismatch)


class WebhookLedger:
    """Reads and writes WebhookEvent rows."""

    def __init__(self, db: Session):
        self.db = db

    def find(self, event_id: str) -> WebhookEvent | None:
        return self.db.execute(
            select(WebhookEvent).where(WebhookEvent.event_id == event_id)
        ).scalar_one_or_none()

    def is_recorded(self, event_id: str) -> bool:
        return self.find(event_id) is not None

    def claim(self, *, event_id: str, event_type: str, payload: dict[str, Any] | None = None) -> bool:
        """Atomically take ownership of ``event_id`` in the current transaction.

        The row is written as processed; ``complete`` fills in the outcome
        before the same transaction commits. A concurrent delivery of the same
        id blocks on the unique key until this transaction ends, then gets
        False. If this transaction rolls back the claim disappears with it.
        """
        return self._insert_ignoring_conflict(
            {
                "event_id": event_id,
                "event_type": event_type,
                "status": LedgerStatus.PROCESSED.value,
                "payload": payload,
                "processed_at": datetime.now(timezone.utc),
            }
        )

    def complete(
        self,
        event_id: str,
        *,
        organization_id: UUID | None = None,
        membership_id: UUID | None = None,
    ) -> None:
        """Attach correlation ids to a claimed event."""
        self.db.execute(
            update(WebhookEvent)
            .where(WebhookEvent.event_id == event_id)
            .values(organization_id=organization_id, membership_id=membership_id)
            .execution_options(synchronize_session=False)
        )

    def record(
        self,
        *,
        event_id: str,
        event_type: str,
        status: LedgerStatus | str,
        organization_id: UUID | None = None,
        membership_id: UUID | None = None,
        payload: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Insert the ledger row unless the event id is already present.

        Returns True if this call inserted the row.
        """
        return self._insert_ignoring_conflict(
            {
                "event_id": event_id,
                "event_type": event_type,
                "status": LedgerStatus(status).value,
                "organization_id": organization_id,
                "membership_id": membership_id,
                "payload": payload,
                "error_message": error_message,
                "processed_at": datetime.now(timezone.utc),
            }
        )

    def _insert_ignoring_conflict(self, values: dict[str, Any]) -> bool:
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert

            stmt = insert(WebhookEvent).values(**values).on_conflict_do_nothing(
                index_elements=[WebhookEvent.event_id]
            )
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert

            stmt = insert(WebhookEvent).values(**values).on_conflict_do_nothing(
                index_elements=[WebhookEvent.event_id]
            )
        else:
            if self.is_recorded(values["event_id"]):
                return False
            stmt = generic_insert(WebhookEvent).values(**values)

        inserted = self.db.execute(stmt).rowcount > 0
        if not inserted:
            logger.info("Webhook event already recorded", extra={"event_id": values["event_id"]})
        return inserted
