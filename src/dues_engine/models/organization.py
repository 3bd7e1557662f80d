"""Organization (tenant), plan and member models."""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING, Any
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dues_engine.config import DEFAULT_TIMEZONE, BillingConfig
from dues_engine.models.base import Base, UpdatedAtMixin

if TYPE_CHECKING:
    from dues_engine.models.billing import Membership

BILLING_FREQUENCIES = ("monthly", "biannual", "annual")


class Organization(Base, UpdatedAtMixin):
    """Tenant that runs a burial-benefit program and owns its fee policy."""

    __tablename__ = "organization"

    organization_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False)
    slug: Mapped[str] = mapped_column(String, nullable=False, unique=True)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    timezone: Mapped[str] = mapped_column(String, nullable=False, default=DEFAULT_TIMEZONE)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")

    # Fee policy
    platform_fee: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, default=Decimal("0")
    )
    pass_fees_to_member: Mapped[bool] = mapped_column(nullable=False, default=False)

    # Connected merchant account
    connect_account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    connect_onboarded: Mapped[bool] = mapped_column(nullable=False, default=False)

    # Overrides for BillingConfig, stored as JSON
    billing_settings: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)

    __table_args__ = (
        CheckConstraint("platform_fee >= 0", name="organization_platform_fee_check"),
    )

    # Relationships
    plans: Mapped[list[Plan]] = relationship(back_populates="organization")
    members: Mapped[list[Member]] = relationship(back_populates="organization")

    @property
    def billing_config(self) -> BillingConfig:
        """Effective billing policy (stored overrides merged over defaults)."""
        return BillingConfig.from_mapping(self.billing_settings)


class Plan(Base, UpdatedAtMixin):
    """Membership plan with dues per billing frequency.

    ``pricing`` maps frequency to integer cents, e.g.
    ``{"monthly": 2000, "biannual": 12000, "annual": 24000}``.
    """

    __tablename__ = "plan"

    plan_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organization.organization_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type: Mapped[str] = mapped_column(String, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    pricing: Mapped[dict[str, Any]] = mapped_column(nullable=False, default=dict)
    enrollment_fee_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(nullable=False, default=True)

    __table_args__ = (
        CheckConstraint("type IN ('single', 'married', 'widow')", name="plan_type_check"),
        CheckConstraint("enrollment_fee_cents >= 0", name="plan_enrollment_fee_check"),
    )

    # Relationships
    organization: Mapped[Organization] = relationship(back_populates="plans")

    def price_cents(self, frequency: str) -> int:
        """Dues in cents for a billing frequency (0 when not configured)."""
        return int((self.pricing or {}).get(frequency) or 0)


class Member(Base, UpdatedAtMixin):
    """Member contact details needed for billing and notifications."""

    __tablename__ = "member"

    member_id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    organization_id: Mapped[UUID] = mapped_column(
        ForeignKey("organization.organization_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    first_name: Mapped[str] = mapped_column(String, nullable=False)
    last_name: Mapped[str] = mapped_column(String, nullable=False)
    email: Mapped[str] = mapped_column(String, nullable=False)
    phone: Mapped[str | None] = mapped_column(String, nullable=True)
    preferred_language: Mapped[str] = mapped_column(String(2), nullable=False, default="en")

    __table_args__ = (
        UniqueConstraint("organization_id", "email", name="member_org_email_unique"),
        CheckConstraint("preferred_language IN ('en', 'fa')", name="member_language_check"),
    )

    # Relationships
    organization: Mapped[Organization] = relationship(back_populates="members")
    membership: Mapped[Membership | None] = relationship(back_populates="member")

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"
