"""Membership, payment and invoice-sequence models."""

from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dues_engine.models.base import Base, UpdatedAtMixin

if TYPE_CHECKING:
    from dues_engine.models.organization import Member, Organization, Plan

_RECORDED_INVOICE_PREDICATE = (
    "type = 'dues' AND status <> 'failed' AND external_invoice_id IS NOT NULL"
)


class Membership(Base, UpdatedAtMixin):
    """A member's enrollment in a plan, with the paid-months counter."""

    __tablename__ = "membership"

    membership_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organization.organization_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    member_id: Mapped[UUID] = mapped_column(
        ForeignKey("member.member_id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    plan_id: Mapped[UUID | None] = mapped_column(
        ForeignKey("plan.plan_id"),
        nullable=True,
    )
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")
    billing_frequency: Mapped[str] = mapped_column(String, nullable=False, default="monthly")
    billing_anniversary_day: Mapped[int | None] = mapped_column(Integer, nullable=True)
    paid_months: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    enrollment_fee_paid: Mapped[bool] = mapped_column(nullable=False, default=False)

    join_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    last_payment_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    next_payment_due: Mapped[date | None] = mapped_column(Date, nullable=True, index=True)
    eligible_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    cancelled_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    agreement_signed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Provider-managed billing
    auto_pay_enabled: Mapped[bool] = mapped_column(nullable=False, default=False)
    subscription_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    subscription_status: Mapped[str | None] = mapped_column(String, nullable=True)
    customer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    # {type, brand, last4, exp_month, exp_year}; never raw card data
    payment_method: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'current', 'lapsed', 'cancelled')",
            name="membership_status_check",
        ),
        CheckConstraint(
            "billing_frequency IN ('monthly', 'biannual', 'annual')",
            name="membership_frequency_check",
        ),
        CheckConstraint(
            "billing_anniversary_day IS NULL OR billing_anniversary_day BETWEEN 1 AND 28",
            name="membership_anniversary_day_check",
        ),
        CheckConstraint("paid_months >= 0", name="membership_paid_months_check"),
    )

    # Relationships
    organization: Mapped[Organization] = relationship()
    member: Mapped[Member] = relationship(back_populates="membership")
    plan: Mapped[Plan | None] = relationship()
    payments: Mapped[list[Payment]] = relationship(back_populates="membership")

    @property
    def agreement_signed(self) -> bool:
        return self.agreement_signed_at is not None

    @property
    def on_provider_billing(self) -> bool:
        """True when the gateway owns the billing cadence."""
        return self.subscription_status in ("active", "trialing")


class Payment(Base, UpdatedAtMixin):
    """One billing event attempt. Amounts are integer cents."""

    __tablename__ = "payment"

    payment_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organization.organization_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    membership_id: Mapped[UUID] = mapped_column(
        ForeignKey("membership.membership_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    member_id: Mapped[UUID] = mapped_column(
        ForeignKey("member.member_id", ondelete="CASCADE"),
        nullable=False,
    )
    type: Mapped[str] = mapped_column(String, nullable=False)
    method: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, nullable=False, default="pending")

    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    processor_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    platform_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_charged_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    net_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    months_credited: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Invoice metadata
    invoice_number: Mapped[str | None] = mapped_column(String, nullable=True)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    period_start: Mapped[date | None] = mapped_column(Date, nullable=True)
    period_end: Mapped[date | None] = mapped_column(Date, nullable=True)
    period_label: Mapped[str | None] = mapped_column(String, nullable=True)

    # Provider references
    external_reference: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    external_invoice_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    recorded_by: Mapped[str | None] = mapped_column(String, nullable=True)

    # Reminders
    reminder_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reminder_sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    reminders_paused: Mapped[bool] = mapped_column(nullable=False, default=False)
    requires_review: Mapped[bool] = mapped_column(nullable=False, default=False)

    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    refunded_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        UniqueConstraint("organization_id", "invoice_number", name="payment_invoice_number_unique"),
        CheckConstraint(
            "type IN ('enrollment_fee', 'dues', 'back_dues')",
            name="payment_type_check",
        ),
        CheckConstraint(
            "method IS NULL OR method IN ('card', 'ach', 'cash', 'check', 'zelle')",
            name="payment_method_check",
        ),
        CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'refunded')",
            name="payment_status_check",
        ),
        CheckConstraint("amount_cents >= 0", name="payment_amount_check"),
        CheckConstraint("months_credited >= 0", name="payment_months_credited_check"),
        Index("ix_payment_membership_due", "membership_id", "due_date"),
        # One recorded dues payment per provider invoice; failed attempts may repeat.
        Index(
            "payment_external_invoice_unique",
            "organization_id",
            "external_invoice_id",
            unique=True,
            postgresql_where=text(_RECORDED_INVOICE_PREDICATE),
            sqlite_where=text(_RECORDED_INVOICE_PREDICATE),
        ),
    )

    # Relationships
    membership: Mapped[Membership] = relationship(back_populates="payments")


class InvoiceSequence(Base):
    """Per-organization, per-month invoice counter."""

    __tablename__ = "invoice_sequence"

    invoice_sequence_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organization.organization_id", ondelete="CASCADE"),
        nullable=False,
    )
    year_month: Mapped[str] = mapped_column(String(6), nullable=False)
    last_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("organization_id", "year_month", name="invoice_sequence_org_month_unique"),
    )
