"""Tests for payment reminders."""

from datetime import date, datetime, timezone
from types import SimpleNamespace
from uuid import uuid4

import pytest

from dues_engine.config import BillingConfig
from dues_engine.errors import ConflictError, NotFoundError
from dues_engine.services.reminder_service import ReminderService, reminder_due


def _payment(count=0, due=date(2025, 3, 1)):
    return SimpleNamespace(due_date=due, reminder_count=count)


class TestReminderDue:
    """Schedule evaluation."""

    config = BillingConfig(reminder_schedule=(3, 7, 14), max_reminders=3)

    def test_first_reminder_on_schedule(self):
        assert reminder_due(_payment(), date(2025, 3, 3), self.config) is False
        assert reminder_due(_payment(), date(2025, 3, 4), self.config) is True

    def test_second_reminder_waits_for_next_step(self):
        assert reminder_due(_payment(count=1), date(2025, 3, 7), self.config) is False
        assert reminder_due(_payment(count=1), date(2025, 3, 8), self.config) is True

    def test_not_twice_on_same_day(self):
        payment = _payment(count=1)
        today = date(2025, 3, 20)
        assert reminder_due(payment, today, self.config, last_sent=today) is False
        assert reminder_due(payment, today, self.config, last_sent=date(2025, 3, 19)) is True

    def test_max_reminders_reached(self):
        assert reminder_due(_payment(count=3), date(2025, 6, 1), self.config) is False

    def test_schedule_shorter_than_max(self):
        config = BillingConfig(reminder_schedule=(3,), max_reminders=5)
        assert reminder_due(_payment(count=1), date(2025, 6, 1), config) is False

    def test_no_due_date(self):
        assert reminder_due(_payment(due=None), date(2025, 6, 1), self.config) is False


class TestProcessOrganization:
    """Scheduled reminder runs."""

    def test_sends_first_reminder(
        self, session, test_org, make_membership, make_payment, notifier
    ):
        payment = make_payment(make_membership(), invoice_number="INV-OF-202503-0001")

        result = ReminderService(session, notifier).process_organization(
            organization_id=test_org.organization_id,
            today=date(2025, 3, 4),
        )

        assert result.success is True
        assert result.reminders_queued == 1
        assert result.payments_marked_for_review == 0
        assert payment.reminder_count == 1
        assert payment.reminder_sent_at is not None

        [sent] = notifier.sent
        assert sent.template_type == "payment_reminder"
        assert sent.variables["reminder_number"] == 1
        assert sent.variables["amount"] == "20.00"
        assert sent.variables["due_date"] == "2025-03-01"
        assert sent.variables["organization_name"] == "Islamic Center of Fremont"

    def test_too_early(self, session, test_org, make_membership, make_payment, notifier):
        make_payment(make_membership())

        result = ReminderService(session, notifier).process_organization(
            organization_id=test_org.organization_id,
            today=date(2025, 3, 3),
        )

        assert result.reminders_queued == 0
        assert notifier.sent == []

    def test_final_reminder_flags_review(
        self, session, test_org, make_membership, make_payment, notifier
    ):
        payment = make_payment(
            make_membership(),
            reminder_count=2,
            reminder_sent_at=datetime(2025, 3, 8, 17, 0, tzinfo=timezone.utc),
        )

        result = ReminderService(session, notifier).process_organization(
            organization_id=test_org.organization_id,
            today=date(2025, 3, 15),
        )

        assert result.reminders_queued == 1
        assert result.payments_marked_for_review == 1
        assert payment.reminder_count == 3
        assert payment.requires_review is True

    def test_excluded_payments(self, session, test_org, make_membership, make_payment, notifier):
        """Completed, paused and review-flagged payments get no reminders."""
        make_payment(make_membership(), status="completed")
        make_payment(make_membership(), reminders_paused=True)
        make_payment(make_membership(), requires_review=True)

        result = ReminderService(session, notifier).process_organization(
            organization_id=test_org.organization_id,
            today=date(2025, 4, 1),
        )

        assert result.reminders_queued == 0

    def test_failed_payments_get_reminders(
        self, session, test_org, make_membership, make_payment, notifier
    ):
        make_payment(make_membership(), status="failed")

        result = ReminderService(session, notifier).process_organization(
            organization_id=test_org.organization_id,
            today=date(2025, 3, 4),
        )

        assert result.reminders_queued == 1

    def test_reminders_disabled(
        self, session, make_organization, make_membership, make_payment, notifier
    ):
        org = make_organization(
            name="Masjid Al-Noor", billing_settings={"sendInvoiceReminders": False}
        )
        make_payment(make_membership(organization=org))

        result = ReminderService(session, notifier).process_organization(
            organization_id=org.organization_id,
            today=date(2025, 4, 1),
        )

        assert result.success is True
        assert result.reminders_queued == 0
        assert notifier.sent == []

    def test_missing_organization(self, session, notifier):
        result = ReminderService(session, notifier).process_organization(organization_id=uuid4())

        assert result.success is False
        assert "Organization not found" in result.errors[0]

    def test_failing_sink_still_advances(
        self, session, test_org, make_membership, make_payment, notifier
    ):
        notifier.fail_with = RuntimeError("smtp down")
        payment = make_payment(make_membership())

        result = ReminderService(session, notifier).process_organization(
            organization_id=test_org.organization_id,
            today=date(2025, 3, 4),
        )

        assert result.success is True
        assert payment.reminder_count == 1


class TestSendReminder:
    """Manual reminders."""

    def test_sends_outside_schedule(self, session, make_membership, make_payment, notifier):
        payment = make_payment(make_membership())

        result = ReminderService(session, notifier).send_reminder(payment_id=payment.payment_id)

        assert result.reminders_queued == 1
        assert payment.reminder_count == 1
        assert notifier.templates() == ["payment_reminder"]

    def test_completed_payment_rejected(self, session, make_membership, make_payment, notifier):
        payment = make_payment(make_membership(), status="completed")

        with pytest.raises(ConflictError):
            ReminderService(session, notifier).send_reminder(payment_id=payment.payment_id)

    def test_missing_payment(self, session, notifier):
        with pytest.raises(NotFoundError):
            ReminderService(session, notifier).send_reminder(payment_id=uuid4())
