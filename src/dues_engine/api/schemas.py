"""Pydantic schemas for API request/response models."""

from datetime import date, datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Billing run schemas
# ============================================================================


class BillingRunRequest(BaseModel):
    """Schema for triggering a billing run."""

    dry_run: bool = False
    billing_date: date | None = Field(
        default=None,
        description="Local billing date (YYYY-MM-DD); defaults to today in the organization's timezone",
    )


class BillingRunError(BaseModel):
    membership_id: str | None = None
    error: str


class BillingRunResponse(BaseModel):
    """Schema for one organization's billing run result."""

    organization_id: UUID | None
    success: bool
    dry_run: bool
    billing_date: date | None = None
    payments_created: int
    payment_ids: list[UUID]
    skipped: int
    status_updates: dict[str, int]
    errors: list[BillingRunError]
    timestamp: datetime


class BillingRunAllResponse(BaseModel):
    """Schema for a platform-wide billing run."""

    success: bool
    results: list[BillingRunResponse]


# ============================================================================
# Reminder schemas
# ============================================================================


class ReminderRunRequest(BaseModel):
    today: date | None = None


class ReminderRunResponse(BaseModel):
    """Schema for a reminder run result."""

    success: bool
    reminders_queued: int
    payments_marked_for_review: int
    errors: list[str] = Field(default_factory=list)


# ============================================================================
# Settlement schemas
# ============================================================================


class SettleRequest(BaseModel):
    """Schema for manually settling a payment (cash, check, zelle)."""

    method: Literal["card", "ach", "cash", "check", "zelle"]
    paid_at: datetime | None = None
    external_reference: str | None = Field(default=None, max_length=255)


class SettlementResponse(BaseModel):
    """Schema for a settlement result."""

    model_config = ConfigDict(from_attributes=True)

    success: bool
    payment_id: UUID | None = None
    new_paid_months: int | None = None
    new_status: str | None = None
    became_eligible: bool = False
    already_settled: bool = False
    eligible_date: date | None = None
    next_payment_due: date | None = None
    error: str | None = None
    error_code: str | None = None


# ============================================================================
# Webhook schemas
# ============================================================================


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to the gateway."""

    status: Literal["processed", "duplicate", "ignored", "error", "held"]
    event_id: str | None = None
    event_type: str | None = None
    message: str = ""


# ============================================================================
# Error schemas
# ============================================================================


class ErrorResponse(BaseModel):
    """Schema for error response."""

    detail: str
    code: str | None = None
    context: dict[str, Any] | None = None
