"""Payment reminders for unpaid invoices.

Reminders go out on a per-organization schedule of days past the due date
(default 3, 7 and 14). Each payment records how many reminders it has
received; once ``max_reminders`` is reached the payment is flagged
``requires_review`` and drops out of the automatic schedule.

Sending is best-effort: a failing notification sink is logged and the
reminder counter is still advanced so a broken mailbox is not retried
daily forever.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from dues_engine.calculators.fees import cents_to_dollars
from dues_engine.calculators.periods import days_between, local_date, local_today
from dues_engine.config import BillingConfig
from dues_engine.errors import ConflictError, DuesEngineError, NotFoundError
from dues_engine.models import Member, Organization, Payment
from dues_engine.notifications.base import NotificationSink, TemplateType, safe_send
from dues_engine.services.state_machine import PaymentStatus

logger = logging.getLogger(__name__)

_REMINDABLE = [PaymentStatus.PENDING.value, PaymentStatus.FAILED.value]


@dataclass(frozen=True)
class ReminderRunResult:
    """Outcome of a reminder pass for one organization."""

    success: bool
    reminders_queued: int = 0
    payments_marked_for_review: int = 0
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "reminders_queued": self.reminders_queued,
            "payments_marked_for_review": self.payments_marked_for_review,
            "errors": list(self.errors),
        }


def reminder_due(
    payment: Payment,
    today: date,
    config: BillingConfig,
    *,
    last_sent: date | None = None,
) -> bool:
    """Whether ``payment`` should receive its next reminder today."""
    if payment.due_date is None or payment.reminder_count >= config.max_reminders:
        return False
    schedule = config.reminder_schedule
    if payment.reminder_count >= len(schedule):
        return False

    days_since_due = days_between(payment.due_date, today)
    if days_since_due < schedule[payment.reminder_count]:
        return False
    if payment.reminder_count > 0 and last_sent is not None:
        return days_between(last_sent, today) >= 1
    return True


class ReminderService:
    """Sends scheduled and manual payment reminders."""

    def __init__(self, db: Session, notifier: NotificationSink | None = None):
        self.db = db
        self.notifier = notifier

    def process_organization(
        self,
        *,
        organization_id: str | UUID,
        today: date | None = None,
    ) -> ReminderRunResult:
        """Send every reminder that is due for one organization.

        Does not commit; the caller's unit of work does.
        """
        org = self.db.get(Organization, UUID(str(organization_id)))
        if org is None:
            return ReminderRunResult(
                success=False,
                errors=[str(NotFoundError("Organization", organization_id))],
            )

        config = org.billing_config
        if not config.send_invoice_reminders:
            logger.info(
                "Invoice reminders disabled",
                extra={"organization_id": str(org.organization_id)},
            )
            return ReminderRunResult(success=True)

        today = today or local_today(org.timezone)
        cutoff = today - timedelta(days=config.reminder_schedule[0])

        stmt = (
            select(Payment)
            .where(
                Payment.organization_id == org.organization_id,
                Payment.status.in_(_REMINDABLE),
                Payment.reminders_paused.is_(False),
                Payment.requires_review.is_(False),
                Payment.reminder_count < config.max_reminders,
                Payment.due_date.is_not(None),
                Payment.due_date <= cutoff,
            )
            .order_by(Payment.due_date)
        )

        queued = 0
        flagged = 0
        errors: list[str] = []
        for payment in self.db.execute(stmt).scalars():
            last_sent = (
                local_date(payment.reminder_sent_at, org.timezone)
                if payment.reminder_sent_at
                else None
            )
            if not reminder_due(payment, today, config, last_sent=last_sent):
                continue
            try:
                if self._send(org, payment, config):
                    flagged += 1
                queued += 1
            except DuesEngineError as exc:
                logger.warning(
                    "Reminder failed",
                    extra={"payment_id": str(payment.payment_id), "error": str(exc)},
                )
                errors.append(f"{payment.payment_id}: {exc}")

        self.db.flush()
        logger.info(
            "Reminder run finished",
            extra={
                "organization_id": str(org.organization_id),
                "reminders_queued": queued,
                "payments_marked_for_review": flagged,
            },
        )
        return ReminderRunResult(
            success=not errors,
            reminders_queued=queued,
            payments_marked_for_review=flagged,
            errors=errors,
        )

    def send_reminder(self, *, payment_id: str | UUID) -> ReminderRunResult:
        """Send a reminder now, outside the schedule.

        Raises:
            NotFoundError: if the payment does not exist
            ConflictError: if the payment is not pending or failed
        """
        payment = self.db.get(Payment, UUID(str(payment_id)))
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        if payment.status not in _REMINDABLE:
            raise ConflictError(f"Cannot send a reminder for a {payment.status} payment")

        org = self.db.get(Organization, payment.organization_id)
        if org is None:
            raise NotFoundError("Organization", payment.organization_id)

        flagged = self._send(org, payment, org.billing_config)
        self.db.flush()
        return ReminderRunResult(
            success=True,
            reminders_queued=1,
            payments_marked_for_review=1 if flagged else 0,
        )

    def _send(self, org: Organization, payment: Payment, config: BillingConfig) -> bool:
        """Send one reminder and advance the counters.

        Returns True if the payment was flagged for review.
        """
        member = self.db.get(Member, payment.member_id)
        if member is None:
            raise NotFoundError("Member", payment.member_id)

        safe_send(
            self.notifier,
            TemplateType.PAYMENT_REMINDER,
            member.email,
            {
                "member_name": member.full_name,
                "organization_name": org.name,
                "amount": str(cents_to_dollars(payment.total_charged_cents)),
                "invoice_number": payment.invoice_number,
                "due_date": payment.due_date.isoformat() if payment.due_date else None,
                "reminder_number": payment.reminder_count + 1,
            },
            member.preferred_language,
        )

        payment.reminder_count += 1
        payment.reminder_sent_at = datetime.now(timezone.utc)
        flagged = payment.reminder_count >= config.max_reminders
        if flagged:
            payment.requires_review = True

        logger.info(
            "Payment reminder sent",
            extra={
                "payment_id": str(payment.payment_id),
                "reminder_count": payment.reminder_count,
                "requires_review": flagged,
            },
        )
        return flagged
