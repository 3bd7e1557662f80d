"""Payment settlement: the single place paid months and status change.

Settling a payment, in one transaction:
    1. flip the payment to completed with a conditional update
       (WHERE status IN ('pending', 'failed')); a zero rowcount means another
       caller settled it first
    2. lock the membership row and add the payment's months_credited
    3. recompute status, next due date and eligibility

The service does not commit. The caller's unit of work commits, and on any
failure the session is rolled back so no partial credit survives. Receipt
and eligibility notifications are sent only once that commit succeeds.

Usage:
    service = SettlementService(session, notifier=sink)
    result = service.settle_payment(payment_id=pid, method="card",
                                    external_reference="pi_123")
    if result.became_eligible:
        ...
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dues_engine.calculators.fees import cents_to_dollars
from dues_engine.calculators.periods import add_months, local_date
from dues_engine.errors import (
    AlreadyRefundedError,
    DuesEngineError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from dues_engine.models import Member, Membership, Organization, Payment
from dues_engine.notifications.base import NotificationSink, TemplateType, send_after_commit
from dues_engine.services.state_machine import (
    MembershipStateMachine,
    MembershipStatus,
    PaymentStateMachine,
    PaymentStatus,
    PaymentType,
)

logger = logging.getLogger(__name__)

PAYMENT_METHODS = {"card", "ach", "cash", "check", "zelle"}


@dataclass(frozen=True)
class SettlementResult:
    """Result of settling a payment.

    ``already_settled`` is True when the payment was completed before this
    call; counters are then reported as stored and ``became_eligible`` is
    always False.
    """

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

    @classmethod
    def failure(cls, payment_id: UUID | None, exc: DuesEngineError) -> SettlementResult:
        return cls(success=False, payment_id=payment_id, error=str(exc), error_code=exc.code)


class SettlementService:
    """Applies settled payments to memberships."""

    def __init__(self, db: Session, notifier: NotificationSink | None = None):
        self.db = db
        self.notifier = notifier

    def settle_payment(
        self,
        *,
        payment_id: str | UUID,
        method: str | None = None,
        paid_at: datetime | None = None,
        external_reference: str | None = None,
    ) -> SettlementResult:
        """Mark a payment completed and apply it to its membership.

        Idempotent: settling a completed payment returns the stored counters.

        Args:
            payment_id: Payment to settle
            method: card/ach/cash/check/zelle (kept as stored when None)
            paid_at: When the money was received (defaults to now, UTC)
            external_reference: Provider payment-intent id, check number, etc.

        Returns:
            SettlementResult. Failures carry ``error`` and ``error_code``
            (NOT_FOUND, ALREADY_REFUNDED, VALIDATION_ERROR, PERSISTENCE_ERROR).
        """
        pid = UUID(str(payment_id))
        try:
            return self._settle(
                payment_id=pid,
                method=method,
                paid_at=paid_at or datetime.now(timezone.utc),
                external_reference=external_reference,
            )
        except DuesEngineError as exc:
            self.db.rollback()
            logger.warning(
                "Settlement rejected",
                extra={"payment_id": str(pid), "error": str(exc)},
            )
            return SettlementResult.failure(pid, exc)
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.exception("Settlement failed", extra={"payment_id": str(pid)})
            return SettlementResult.failure(pid, PersistenceError(str(exc)))

    def _settle(
        self,
        *,
        payment_id: UUID,
        method: str | None,
        paid_at: datetime,
        external_reference: str | None,
    ) -> SettlementResult:
        if method is not None and method not in PAYMENT_METHODS:
            raise ValidationError(f"Unsupported payment method: {method}")

        payment = self.db.get(Payment, payment_id, populate_existing=True)
        if payment is None:
            raise NotFoundError("Payment", payment_id)

        if payment.status == PaymentStatus.COMPLETED:
            return self._already_settled(payment)
        if payment.status == PaymentStatus.REFUNDED:
            raise AlreadyRefundedError(payment_id)

        # Settle-once guard
        values: dict = {
            "status": PaymentStatus.COMPLETED.value,
            "paid_at": paid_at,
        }
        if method is not None:
            values["method"] = method
        if external_reference is not None:
            values["external_reference"] = external_reference

        guarded = self.db.execute(
            update(Payment)
            .where(
                Payment.payment_id == payment_id,
                Payment.status.in_(PaymentStateMachine.SETTLEABLE),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if guarded.rowcount == 0:
            # Lost the race; report whatever the winner left behind
            self.db.refresh(payment)
            if payment.status == PaymentStatus.REFUNDED:
                raise AlreadyRefundedError(payment_id)
            return self._already_settled(payment)
        self.db.refresh(payment)

        membership = self.db.execute(
            select(Membership)
            .where(Membership.membership_id == payment.membership_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if membership is None:
            raise NotFoundError("Membership", payment.membership_id)

        org = self.db.get(Organization, membership.organization_id)
        if org is None:
            raise NotFoundError("Organization", membership.organization_id)
        config = org.billing_config
        paid_date = local_date(paid_at, org.timezone)

        old_paid_months = membership.paid_months or 0
        new_paid_months = old_paid_months + payment.months_credited
        membership.paid_months = new_paid_months

        if payment.type == PaymentType.ENROLLMENT_FEE:
            membership.enrollment_fee_paid = True

        if payment.months_credited > 0:
            anchor = membership.next_payment_due or paid_date
            membership.next_payment_due = add_months(anchor, payment.months_credited)
        membership.last_payment_date = paid_date

        old_status = membership.status
        new_status = MembershipStateMachine.status_after_settlement(membership)
        if new_status != old_status:
            MembershipStateMachine.validate_transition(old_status, new_status)
            membership.status = new_status
            if old_status == MembershipStatus.PENDING and membership.join_date is None:
                membership.join_date = paid_date

        threshold = config.eligibility_months
        became_eligible = (
            old_paid_months < threshold <= new_paid_months
            and membership.eligible_date is None
            and membership.status != MembershipStatus.CANCELLED
        )
        if became_eligible:
            membership.eligible_date = paid_date

        self.db.flush()

        logger.info(
            "Payment settled",
            extra={
                "payment_id": str(payment_id),
                "membership_id": str(membership.membership_id),
                "months_credited": payment.months_credited,
                "paid_months": new_paid_months,
                "membership_status": membership.status,
                "became_eligible": became_eligible,
            },
        )

        self._notify_settled(payment, membership, became_eligible)

        return SettlementResult(
            success=True,
            payment_id=payment_id,
            new_paid_months=new_paid_months,
            new_status=membership.status,
            became_eligible=became_eligible,
            eligible_date=membership.eligible_date,
            next_payment_due=membership.next_payment_due,
        )

    def _already_settled(self, payment: Payment) -> SettlementResult:
        membership = self.db.get(Membership, payment.membership_id, populate_existing=True)
        logger.info("Payment already settled", extra={"payment_id": str(payment.payment_id)})
        return SettlementResult(
            success=True,
            payment_id=payment.payment_id,
            new_paid_months=membership.paid_months if membership else None,
            new_status=membership.status if membership else None,
            became_eligible=False,
            already_settled=True,
            eligible_date=membership.eligible_date if membership else None,
            next_payment_due=membership.next_payment_due if membership else None,
        )

    def fail_payment(
        self,
        *,
        payment_id: str | UUID,
        reason: str | None = None,
    ) -> bool:
        """Mark a pending payment failed. Paid months are never touched.

        Returns True if the payment moved to failed, False if it was not pending.
        """
        pid = UUID(str(payment_id))
        result = self.db.execute(
            update(Payment)
            .where(Payment.payment_id == pid, Payment.status == PaymentStatus.PENDING.value)
            .values(status=PaymentStatus.FAILED.value, notes=reason)
            .execution_options(synchronize_session=False)
        )
        changed = result.rowcount > 0
        if changed:
            logger.info("Payment failed", extra={"payment_id": str(pid), "reason": reason})
        return changed

    def _notify_settled(
        self,
        payment: Payment,
        membership: Membership,
        became_eligible: bool,
    ) -> None:
        if self.notifier is None:
            return
        member = self.db.get(Member, membership.member_id)
        if member is None:
            return

        variables = {
            "member_name": member.full_name,
            "amount": str(cents_to_dollars(payment.total_charged_cents)),
            "invoice_number": payment.invoice_number,
            "period_label": payment.period_label,
            "paid_months": membership.paid_months,
        }
        send_after_commit(
            self.db,
            self.notifier,
            TemplateType.PAYMENT_RECEIPT,
            member.email,
            variables,
            member.preferred_language,
        )
        if became_eligible:
            send_after_commit(
                self.db,
                self.notifier,
                TemplateType.ELIGIBILITY_REACHED,
                member.email,
                {"member_name": member.full_name, "eligible_date": str(membership.eligible_date)},
                member.preferred_language,
            )
