"""Tests for payment settlement."""

from datetime import date, datetime, timezone
from uuid import uuid4

from dues_engine.models import Membership, Payment
from dues_engine.services.settlement_service import SettlementService

# 18:00 UTC on March 2 is still March 2 in Los Angeles
PAID_AT = datetime(2025, 3, 2, 18, 0, tzinfo=timezone.utc)


class TestSettlePayment:
    """Settling a payment credits its months exactly once."""

    def test_settles_pending_dues(self, session, make_membership, make_payment):
        membership = make_membership(paid_months=10)
        payment = make_payment(membership)
        service = SettlementService(session)

        result = service.settle_payment(
            payment_id=payment.payment_id,
            method="card",
            paid_at=PAID_AT,
            external_reference="pi_123",
        )

        assert result.success is True
        assert result.already_settled is False
        assert result.new_paid_months == 11
        assert result.new_status == "current"
        assert result.next_payment_due == date(2025, 4, 1)

        session.refresh(payment)
        assert payment.status == "completed"
        assert payment.method == "card"
        assert payment.external_reference == "pi_123"

        stored = session.get(Membership, membership.membership_id)
        assert stored.paid_months == 11
        assert stored.last_payment_date == date(2025, 3, 2)
        assert stored.next_payment_due == date(2025, 4, 1)

    def test_settle_is_idempotent(self, session, make_membership, make_payment):
        """A second settle returns the stored counters and credits nothing."""
        membership = make_membership(paid_months=10)
        payment = make_payment(membership)
        service = SettlementService(session)

        first = service.settle_payment(payment_id=payment.payment_id, paid_at=PAID_AT)
        second = service.settle_payment(payment_id=str(payment.payment_id), paid_at=PAID_AT)

        assert first.new_paid_months == 11
        assert second.success is True
        assert second.already_settled is True
        assert second.became_eligible is False
        assert second.new_paid_months == 11
        assert session.get(Membership, membership.membership_id).paid_months == 11

    def test_multi_month_payment_advances_due_date(self, session, make_membership, make_payment):
        membership = make_membership(billing_frequency="annual", paid_months=0)
        payment = make_payment(
            membership, amount_cents=24000, total_charged_cents=24000, months_credited=12
        )

        result = SettlementService(session).settle_payment(
            payment_id=payment.payment_id, paid_at=PAID_AT
        )

        assert result.new_paid_months == 12
        assert result.next_payment_due == date(2026, 3, 1)

    def test_failed_payment_can_settle(self, session, make_membership, make_payment):
        """A late success after a failed attempt completes the payment."""
        membership = make_membership()
        payment = make_payment(membership, status="failed")

        result = SettlementService(session).settle_payment(
            payment_id=payment.payment_id, paid_at=PAID_AT
        )

        assert result.success is True
        assert result.new_paid_months == 1
        session.refresh(payment)
        assert payment.status == "completed"

    def test_method_kept_when_not_given(self, session, make_membership, make_payment):
        membership = make_membership()
        payment = make_payment(membership, method="check")

        SettlementService(session).settle_payment(payment_id=payment.payment_id, paid_at=PAID_AT)

        session.refresh(payment)
        assert payment.method == "check"


class TestSettlementStatus:
    """Membership status after settlement."""

    def test_pending_becomes_current_and_gets_join_date(
        self, session, make_membership, make_payment
    ):
        membership = make_membership(status="pending", join_date=None)
        payment = make_payment(membership)

        result = SettlementService(session).settle_payment(
            payment_id=payment.payment_id, paid_at=PAID_AT
        )

        assert result.new_status == "current"
        stored = session.get(Membership, membership.membership_id)
        assert stored.join_date == date(2025, 3, 2)

    def test_pending_keeps_existing_join_date(self, session, make_membership, make_payment):
        membership = make_membership(status="pending", join_date=date(2025, 1, 1))
        payment = make_payment(membership)

        SettlementService(session).settle_payment(payment_id=payment.payment_id, paid_at=PAID_AT)

        assert session.get(Membership, membership.membership_id).join_date == date(2025, 1, 1)

    def test_pending_without_agreement_stays_pending(self, session, make_membership, make_payment):
        membership = make_membership(status="pending", agreement_signed_at=None)
        payment = make_payment(membership)

        result = SettlementService(session).settle_payment(
            payment_id=payment.payment_id, paid_at=PAID_AT
        )

        assert result.success is True
        assert result.new_status == "pending"
        assert result.new_paid_months == 1

    def test_lapsed_becomes_current(self, session, make_membership, make_payment):
        membership = make_membership(status="lapsed")
        payment = make_payment(membership)

        result = SettlementService(session).settle_payment(
            payment_id=payment.payment_id, paid_at=PAID_AT
        )

        assert result.new_status == "current"

    def test_enrollment_fee_marks_fee_paid(self, session, make_membership, make_payment):
        """Enrollment fees credit no months and leave the due date alone."""
        membership = make_membership(status="pending", enrollment_fee_paid=False)
        payment = make_payment(
            membership,
            type="enrollment_fee",
            amount_cents=50000,
            total_charged_cents=50000,
            months_credited=0,
        )

        result = SettlementService(session).settle_payment(
            payment_id=payment.payment_id, paid_at=PAID_AT
        )

        assert result.new_paid_months == 0
        assert result.next_payment_due == date(2025, 3, 1)
        stored = session.get(Membership, membership.membership_id)
        assert stored.enrollment_fee_paid is True

    def test_missing_due_date_anchors_on_paid_date(self, session, make_membership, make_payment):
        membership = make_membership(next_payment_due=None)
        payment = make_payment(membership, due_date=None)

        result = SettlementService(session).settle_payment(
            payment_id=payment.payment_id, paid_at=PAID_AT
        )

        assert result.next_payment_due == date(2025, 4, 2)


class TestEligibility:
    """Benefit eligibility at the paid-months threshold."""

    def test_reaching_sixty_months(self, session, make_membership, make_payment, notifier):
        membership = make_membership(paid_months=59)
        payment = make_payment(membership)

        result = SettlementService(session, notifier).settle_payment(
            payment_id=payment.payment_id, paid_at=PAID_AT
        )

        assert result.became_eligible is True
        assert result.eligible_date == date(2025, 3, 2)
        assert notifier.sent == []

        session.commit()

        assert notifier.templates() == ["payment_receipt", "eligibility_reached"]

    def test_crossing_threshold_with_multi_month_payment(
        self, session, make_membership, make_payment
    ):
        membership = make_membership(paid_months=55)
        payment = make_payment(membership, months_credited=12)

        result = SettlementService(session).settle_payment(
            payment_id=payment.payment_id, paid_at=PAID_AT
        )

        assert result.new_paid_months == 67
        assert result.became_eligible is True

    def test_already_eligible_not_reported_again(self, session, make_membership, make_payment):
        membership = make_membership(paid_months=60, eligible_date=date(2024, 1, 1))
        payment = make_payment(membership)

        result = SettlementService(session).settle_payment(
            payment_id=payment.payment_id, paid_at=PAID_AT
        )

        assert result.became_eligible is False
        assert result.eligible_date == date(2024, 1, 1)

    def test_below_threshold(self, session, make_membership, make_payment):
        membership = make_membership(paid_months=57)
        payment = make_payment(membership)

        result = SettlementService(session).settle_payment(
            payment_id=payment.payment_id, paid_at=PAID_AT
        )

        assert result.became_eligible is False
        assert result.eligible_date is None

    def test_organization_threshold_override(
        self, session, make_organization, make_membership, make_payment
    ):
        org = make_organization(name="Masjid Al-Noor", billing_settings={"eligibilityMonths": 12})
        membership = make_membership(organization=org, paid_months=11)
        payment = make_payment(membership)

        result = SettlementService(session).settle_payment(
            payment_id=payment.payment_id, paid_at=PAID_AT
        )

        assert result.became_eligible is True


class TestSettlementFailures:
    """Rejected settlements return structured failures."""

    def test_missing_payment(self, session):
        result = SettlementService(session).settle_payment(payment_id=uuid4())

        assert result.success is False
        assert result.error_code == "NOT_FOUND"

    def test_refunded_payment(self, session, make_membership, make_payment):
        membership = make_membership()
        payment = make_payment(membership, status="refunded")

        result = SettlementService(session).settle_payment(payment_id=payment.payment_id)

        assert result.success is False
        assert result.error_code == "ALREADY_REFUNDED"

    def test_unsupported_method(self, session, make_membership, make_payment):
        membership = make_membership()
        payment = make_payment(membership)

        result = SettlementService(session).settle_payment(
            payment_id=payment.payment_id, method="bitcoin"
        )

        assert result.success is False
        assert result.error_code == "VALIDATION_ERROR"

    def test_failed_settlement_rolls_back(
        self, session, session_factory, make_membership, make_payment
    ):
        """Nothing from a rejected settlement survives in the session."""
        membership = make_membership()
        payment = make_payment(membership, status="refunded")
        session.commit()

        SettlementService(session).settle_payment(payment_id=payment.payment_id, method="card")

        with session_factory() as fresh:
            stored = fresh.get(Payment, payment.payment_id)
            assert stored.status == "refunded"
            assert fresh.get(Membership, membership.membership_id).paid_months == 0


class TestNotifications:
    """Notifications never affect financial state."""

    def test_receipt_variables(self, session, make_membership, make_payment, notifier):
        membership = make_membership()
        payment = make_payment(membership, invoice_number="INV-OF-202503-0001")

        SettlementService(session, notifier).settle_payment(
            payment_id=payment.payment_id, paid_at=PAID_AT
        )
        session.commit()

        [receipt] = notifier.sent
        assert receipt.template_type == "payment_receipt"
        assert receipt.variables["amount"] == "20.00"
        assert receipt.variables["invoice_number"] == "INV-OF-202503-0001"
        assert receipt.variables["member_name"] == "Amina Rahimi"

    def test_failing_sink_does_not_block_settlement(
        self, session, make_membership, make_payment, notifier
    ):
        notifier.fail_with = RuntimeError("smtp down")
        membership = make_membership(paid_months=59)
        payment = make_payment(membership)

        result = SettlementService(session, notifier).settle_payment(
            payment_id=payment.payment_id, paid_at=PAID_AT
        )
        session.commit()

        assert result.success is True
        assert result.became_eligible is True
        assert notifier.sent == []

    def test_no_receipt_when_transaction_rolls_back(
        self, session, make_membership, make_payment, notifier
    ):
        membership = make_membership()
        payment = make_payment(membership)
        session.commit()

        result = SettlementService(session, notifier).settle_payment(
            payment_id=payment.payment_id, paid_at=PAID_AT
        )
        session.rollback()

        assert result.success is True
        assert notifier.sent == []
        assert session.get(Payment, payment.payment_id).status == "pending"

        session.commit()
        assert notifier.sent == []

    def test_failed_settlement_sends_nothing(
        self, session, make_membership, make_payment, notifier
    ):
        payment = make_payment(make_membership(), status="refunded")
        session.commit()

        result = SettlementService(session, notifier).settle_payment(
            payment_id=payment.payment_id, paid_at=PAID_AT
        )
        session.commit()

        assert result.error_code == "ALREADY_REFUNDED"
        assert notifier.sent == []


class TestFailPayment:
    """Marking payments failed."""

    def test_pending_to_failed(self, session, make_membership, make_payment):
        membership = make_membership(paid_months=5)
        payment = make_payment(membership)

        changed = SettlementService(session).fail_payment(
            payment_id=payment.payment_id, reason="card_declined"
        )

        assert changed is True
        session.refresh(payment)
        assert payment.status == "failed"
        assert payment.notes == "card_declined"
        assert session.get(Membership, membership.membership_id).paid_months == 5

    def test_completed_payment_not_failed(self, session, make_membership, make_payment):
        membership = make_membership()
        payment = make_payment(membership, status="completed")

        changed = SettlementService(session).fail_payment(payment_id=payment.payment_id)

        assert changed is False
        session.refresh(payment)
        assert payment.status == "completed"
