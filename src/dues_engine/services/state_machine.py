"""Membership and payment state machines with transition validation."""

from __future__ import annotations

from datetime import date, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from dues_engine.calculators.periods import add_months
from dues_engine.errors import InvalidTransitionError

if TYPE_CHECKING:
    from dues_engine.config import BillingConfig
    from dues_engine.models import Membership


class MembershipStatus(str, Enum):
    """Membership status values."""

    PENDING = "pending"
    CURRENT = "current"
    LAPSED = "lapsed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    """Payment status values."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentType(str, Enum):
    """Payment type values."""

    ENROLLMENT_FEE = "enrollment_fee"
    DUES = "dues"
    BACK_DUES = "back_dues"


class MembershipStateMachine:
    """State machine for membership status transitions.

    Allowed transitions:
    - pending → current (first settlement with a signed agreement)
    - current → lapsed (unpaid past the grace period)
    - lapsed → current (settlement brings payments current)
    - lapsed → cancelled (unpaid past the cancellation threshold)
    - pending/current → cancelled (operator action)

    cancelled is terminal here; reactivation is a manual operator flow.
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        MembershipStatus.PENDING: [MembershipStatus.CURRENT, MembershipStatus.CANCELLED],
        MembershipStatus.CURRENT: [MembershipStatus.LAPSED, MembershipStatus.CANCELLED],
        MembershipStatus.LAPSED: [MembershipStatus.CURRENT, MembershipStatus.CANCELLED],
        MembershipStatus.CANCELLED: [],  # Terminal state
    }

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_status, [])
        return to_status in allowed

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)

    @classmethod
    def status_after_settlement(cls, membership: Membership) -> str:
        """Status a membership should have after one of its payments settles.

        pending becomes current only once the agreement is signed; lapsed
        becomes current. current and cancelled are unchanged.
        """
        status = membership.status
        if status == MembershipStatus.PENDING and membership.agreement_signed:
            return MembershipStatus.CURRENT.value
        if status == MembershipStatus.LAPSED:
            return MembershipStatus.CURRENT.value
        return status

    @classmethod
    def overdue_status(
        cls,
        membership: Membership,
        today: date,
        config: BillingConfig,
    ) -> str | None:
        """Status an overdue membership should move to, or None to leave it.

        - current, due on or before today - lapse_days       -> lapsed
        - lapsed,  due on or before today - cancel_months    -> cancelled
        """
        due = membership.next_payment_due
        if due is None:
            return None

        if membership.status == MembershipStatus.CURRENT:
            if due <= today - timedelta(days=config.lapse_days):
                return MembershipStatus.LAPSED.value
        elif membership.status == MembershipStatus.LAPSED:
            if due <= add_months(today, -config.cancel_months):
                return MembershipStatus.CANCELLED.value
        return None


class PaymentStateMachine:
    """State machine for payment status transitions.

    Allowed transitions:
    - pending → completed | failed
    - failed → completed (late success after a failed attempt)
    - completed → refunded
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        PaymentStatus.PENDING: [PaymentStatus.COMPLETED, PaymentStatus.FAILED],
        PaymentStatus.FAILED: [PaymentStatus.COMPLETED],
        PaymentStatus.COMPLETED: [PaymentStatus.REFUNDED],
        PaymentStatus.REFUNDED: [],  # Terminal state
    }

    SETTLEABLE = {PaymentStatus.PENDING.value, PaymentStatus.FAILED.value}

    @classmethod
    def can_transition(cls, from_status: str, to_status: str) -> bool:
        """Check if a transition is valid."""
        return to_status in cls.VALID_TRANSITIONS.get(from_status, [])

    @classmethod
    def validate_transition(cls, from_status: str, to_status: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_status, to_status):
            raise InvalidTransitionError(from_status, to_status)
