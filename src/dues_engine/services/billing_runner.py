"""Recurring billing runner.

Invoked on a schedule (daily) for one organization or for all of them. Per
organization, in one transaction:

    1. bill: for every current, fully-onboarded membership on manual billing
       whose next_payment_due has arrived, create a pending dues payment
       with a fresh invoice number, unless one already exists for that due
       date
    2. apply overdue policy: current -> lapsed after lapse_days,
       lapsed -> cancelled after cancel_months

Memberships whose billing is owned by the gateway (active/trialing
subscription) are skipped; their payments arrive through webhooks.

Dry runs take the same decisions but write nothing and allocate no invoice
numbers.

Usage:
    runner = BillingRunner(session)
    result = runner.run_organization(organization_id=org_id, dry_run=True)
    results = runner.run_all_organizations()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from dues_engine.calculators.fees import calculate_fees
from dues_engine.calculators.periods import local_today, parse_date_in_tz
from dues_engine.database import acquire_advisory_lock
from dues_engine.errors import DuesEngineError, NotFoundError, ValidationError
from dues_engine.models import Membership, Organization, Payment
from dues_engine.services.invoice_service import InvoiceService
from dues_engine.services.state_machine import (
    MembershipStateMachine,
    MembershipStatus,
    PaymentStatus,
    PaymentType,
)

logger = logging.getLogger(__name__)


@dataclass
class BillingRunResult:
    """Result of a billing run for a single organization."""

    organization_id: UUID | None
    billing_date: date | None = None
    dry_run: bool = False
    payments_created: int = 0
    payment_ids: list[UUID] = field(default_factory=list)
    skipped: int = 0
    status_updates: dict[str, int] = field(
        default_factory=lambda: {MembershipStatus.LAPSED.value: 0, MembershipStatus.CANCELLED.value: 0}
    )
    errors: list[dict[str, str | None]] = field(default_factory=list)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def success(self) -> bool:
        """True if the run completed without errors."""
        return not self.errors

    @property
    def total_status_updates(self) -> int:
        return sum(self.status_updates.values())

    def add_error(self, membership_id: UUID | str | None, error: str) -> None:
        self.errors.append(
            {"membership_id": str(membership_id) if membership_id else None, "error": error}
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "organization_id": str(self.organization_id) if self.organization_id else None,
            "success": self.success,
            "dry_run": self.dry_run,
            "billing_date": self.billing_date.isoformat() if self.billing_date else None,
            "payments_created": self.payments_created,
            "payment_ids": [str(p) for p in self.payment_ids],
            "skipped": self.skipped,
            "status_updates": dict(self.status_updates),
            "errors": list(self.errors),
            "timestamp": self.timestamp.isoformat(),
        }


class BillingRunner:
    """Generates due invoices and applies lapse/cancellation policy.

    The runner owns its transactions: each organization is committed (or
    rolled back) on its own, so one failing organization never aborts the
    others.
    """

    def __init__(self, db: Session):
        self.db = db

    def run_organization(
        self,
        *,
        organization_id: str | UUID,
        dry_run: bool = False,
        billing_date: date | str | None = None,
    ) -> BillingRunResult:
        """Run billing for one organization and commit the outcome."""
        org_id = UUID(str(organization_id))
        try:
            result = self._run(org_id, dry_run=dry_run, billing_date=billing_date)
        except Exception:
            self.db.rollback()
            raise

        if dry_run:
            self.db.rollback()
        else:
            self.db.commit()
        return result

    def run_all_organizations(
        self,
        *,
        dry_run: bool = False,
        billing_date: date | str | None = None,
    ) -> dict[UUID, BillingRunResult]:
        """Run billing for every organization, isolating failures per organization."""
        org_ids = list(self.db.execute(select(Organization.organization_id)).scalars())
        results: dict[UUID, BillingRunResult] = {}

        for org_id in org_ids:
            try:
                results[org_id] = self.run_organization(
                    organization_id=org_id,
                    dry_run=dry_run,
                    billing_date=billing_date,
                )
            except Exception as exc:
                logger.exception("Billing run failed", extra={"organization_id": str(org_id)})
                failed = BillingRunResult(organization_id=org_id, dry_run=dry_run)
                failed.add_error(None, f"Billing run failed: {exc}")
                results[org_id] = failed

        logger.info(
            "Billing run complete for all organizations",
            extra={
                "organizations": len(results),
                "failed": sum(1 for r in results.values() if not r.success),
                "dry_run": dry_run,
            },
        )
        return results

    # ------------------------------------------------------------------

    def _run(
        self,
        org_id: UUID,
        *,
        dry_run: bool,
        billing_date: date | str | None,
    ) -> BillingRunResult:
        org = self.db.get(Organization, org_id)
        if org is None:
            result = BillingRunResult(organization_id=org_id, dry_run=dry_run)
            result.add_error("N/A", str(NotFoundError("Organization", org_id)))
            return result

        today = (
            parse_date_in_tz(billing_date, org.timezone)
            if billing_date is not None
            else local_today(org.timezone)
        )
        result = BillingRunResult(organization_id=org_id, billing_date=today, dry_run=dry_run)

        if not dry_run and not acquire_advisory_lock(self.db, f"billing:{org_id}"):
            logger.warning("Billing run already in progress", extra={"organization_id": str(org_id)})
            result.add_error(None, "Billing run already in progress")
            return result

        logger.info(
            "Billing run started",
            extra={"organization_id": str(org_id), "billing_date": today.isoformat(), "dry_run": dry_run},
        )

        invoices = InvoiceService(self.db)
        for membership in self._due_memberships(org_id, today):
            if membership.on_provider_billing or self._has_open_payment(membership):
                result.skipped += 1
                continue
            try:
                # A failed membership rolls back to here; the rest of the run continues.
                with self.db.begin_nested():
                    payment_id = self._bill_membership(org, membership, invoices, dry_run=dry_run)
            except DuesEngineError as exc:
                logger.warning(
                    "Could not bill membership",
                    extra={"membership_id": str(membership.membership_id), "error": str(exc)},
                )
                result.add_error(membership.membership_id, str(exc))
                continue

            result.payments_created += 1
            if payment_id is not None:
                result.payment_ids.append(payment_id)

        self._apply_overdue_policy(org, today, result, dry_run=dry_run)

        if not dry_run:
            self.db.flush()

        logger.info(
            "Billing run finished",
            extra={
                "organization_id": str(org_id),
                "payments_created": result.payments_created,
                "skipped": result.skipped,
                "status_updates": result.total_status_updates,
                "errors": len(result.errors),
            },
        )
        return result

    def _due_memberships(self, org_id: UUID, today: date) -> list[Membership]:
        stmt = (
            select(Membership)
            .options(selectinload(Membership.plan))
            .where(
                Membership.organization_id == org_id,
                Membership.status == MembershipStatus.CURRENT.value,
                Membership.enrollment_fee_paid.is_(True),
                Membership.agreement_signed_at.is_not(None),
                Membership.next_payment_due.is_not(None),
                Membership.next_payment_due <= today,
            )
            .order_by(Membership.next_payment_due)
        )
        return list(self.db.execute(stmt).scalars())

    def _has_open_payment(self, membership: Membership) -> bool:
        """True if a pending or completed payment exists for the current due date."""
        stmt = select(Payment.payment_id).where(
            Payment.membership_id == membership.membership_id,
            Payment.due_date == membership.next_payment_due,
            Payment.type.in_([PaymentType.DUES.value, PaymentType.BACK_DUES.value]),
            Payment.status.in_([PaymentStatus.PENDING.value, PaymentStatus.COMPLETED.value]),
        )
        return self.db.execute(stmt.limit(1)).first() is not None

    def _bill_membership(
        self,
        org: Organization,
        membership: Membership,
        invoices: InvoiceService,
        *,
        dry_run: bool,
    ) -> UUID | None:
        """Create the pending dues payment for a due membership.

        Returns the new payment id, or None on a dry run.
        """
        plan = membership.plan
        if plan is None:
            raise ValidationError(f"Membership {membership.membership_id} has no plan")
        amount_cents = plan.price_cents(membership.billing_frequency)
        if amount_cents <= 0:
            raise ValidationError(
                f"Plan {plan.plan_id} has no {membership.billing_frequency} pricing"
            )

        if dry_run:
            return None

        metadata = invoices.generate_invoice_metadata(
            organization_id=org.organization_id,
            billing_date=membership.next_payment_due,
            frequency=membership.billing_frequency,
            timezone=org.timezone,
        )
        fees = calculate_fees(amount_cents, org.platform_fee, org.pass_fees_to_member)

        payment = Payment(
            organization_id=org.organization_id,
            membership_id=membership.membership_id,
            member_id=membership.member_id,
            type=PaymentType.DUES.value,
            status=PaymentStatus.PENDING.value,
            amount_cents=amount_cents,
            processor_fee_cents=fees.processor_fee_cents,
            platform_fee_cents=fees.platform_fee_cents,
            total_charged_cents=fees.charge_amount_cents,
            net_amount_cents=fees.net_amount_cents,
            months_credited=metadata.months_credited,
            invoice_number=metadata.invoice_number,
            due_date=metadata.due_date,
            period_start=metadata.period_start,
            period_end=metadata.period_end,
            period_label=metadata.period_label,
        )
        self.db.add(payment)
        self.db.flush()

        logger.info(
            "Dues payment created",
            extra={
                "payment_id": str(payment.payment_id),
                "membership_id": str(membership.membership_id),
                "invoice_number": payment.invoice_number,
                "amount_cents": amount_cents,
            },
        )
        return payment.payment_id

    def _apply_overdue_policy(
        self,
        org: Organization,
        today: date,
        result: BillingRunResult,
        *,
        dry_run: bool,
    ) -> None:
        config = org.billing_config
        stmt = select(Membership).where(
            Membership.organization_id == org.organization_id,
            Membership.status.in_([MembershipStatus.CURRENT.value, MembershipStatus.LAPSED.value]),
            Membership.next_payment_due.is_not(None),
        )

        for membership in self.db.execute(stmt).scalars():
            view: Any = membership
            # A long-overdue current membership can lapse and cancel in one run
            while True:
                target = MembershipStateMachine.overdue_status(view, today, config)
                if target is None:
                    break
                MembershipStateMachine.validate_transition(view.status, target)
                logger.info(
                    "Membership status transition",
                    extra={
                        "membership_id": str(membership.membership_id),
                        "old_status": view.status,
                        "new_status": target,
                        "next_payment_due": membership.next_payment_due.isoformat(),
                        "dry_run": dry_run,
                    },
                )
                result.status_updates[target] += 1
                if dry_run:
                    view = _StatusView(membership, target)
                    continue
                membership.status = target
                if target == MembershipStatus.CANCELLED:
                    membership.cancelled_date = today


class _StatusView:
    """Read-only stand-in used to evaluate status cascades during dry runs."""

    def __init__(self, membership: Membership, status: str):
        self._membership = membership
        self.status = status

    def __getattr__(self, name: str) -> Any:
        return getattr(self._membership, name)
