"""Webhook idempotency ledger model."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from dues_engine.models.base import Base, TimestampMixin


class WebhookEvent(Base, TimestampMixin):
    """Append-only record of a provider event, keyed by the provider event id."""

    __tablename__ = "webhook_event"

    webhook_event_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    event_id: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String, nullable=False, index=True)
    organization_id: Mapped[UUID | None] = mapped_column(nullable=True, index=True)
    membership_id: Mapped[UUID | None] = mapped_column(nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False)
    payload: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('processed', 'failed', 'held')",
            name="webhook_event_status_check",
        ),
    )
