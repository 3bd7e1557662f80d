"""Webhook event handlers.

One function per gateway event type, each taking the event's data object
and a HandlerContext. Handlers work inside the session they are given and
never commit; the dispatcher owns the transaction and the ledger write.

Handlers raise DuesEngineError subclasses for failures that should be
recorded as failed (or held, for CurrencyMismatchError). Events that cannot
be correlated to a local organization or membership are logged and skipped;
ids are never guessed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from dues_engine.calculators.fees import calculate_fees, reverse_calculate_base_amount
from dues_engine.calculators.periods import (
    BillingFrequency,
    local_date,
    local_today,
    months_for_frequency,
)
from dues_engine.errors import CurrencyMismatchError, PersistenceError
from dues_engine.models import Member, Membership, Organization, Payment
from dues_engine.notifications.base import NotificationSink, TemplateType, send_after_commit
from dues_engine.services.invoice_service import InvoiceService
from dues_engine.services.settlement_service import SettlementResult, SettlementService
from dues_engine.services.state_machine import (
    MembershipStateMachine,
    MembershipStatus,
    PaymentStatus,
    PaymentType,
)

logger = logging.getLogger(__name__)

# Gateway subscription status -> stored subscription_status
SUBSCRIPTION_STATUS_MAP = {
    "active": "active",
    "trialing": "trialing",
    "past_due": "past_due",
    "canceled": "canceled",
    "unpaid": "unpaid",
    "incomplete": "incomplete",
    "incomplete_expired": "incomplete_expired",
    "paused": "paused",
}

PROVIDER_BILLED_STATUSES = {"active", "trialing"}

# Paid base amounts within this many cents of a plan price count as that tier
PRICE_MATCH_TOLERANCE_CENTS = 100


@dataclass
class HandlerContext:
    """What a handler may use while processing one event."""

    db: Session
    event_id: str
    notifier: NotificationSink | None = None


@dataclass(frozen=True)
class HandlerOutcome:
    """Correlation ids and a short description of what a handler did."""

    message: str
    organization_id: UUID | None = None
    membership_id: UUID | None = None


EventHandler = Callable[[dict[str, Any], HandlerContext], HandlerOutcome]


# ----------------------------------------------------------------------
# Correlation helpers
# ----------------------------------------------------------------------


def _parse_uuid(value: Any) -> UUID | None:
    if not value:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        logger.warning("Ignoring malformed id in event metadata", extra={"value": str(value)})
        return None


def _metadata(obj: dict[str, Any]) -> dict[str, Any]:
    return obj.get("metadata") or {}


def _object_id(value: Any) -> str | None:
    """Gateway references arrive either as an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _find_membership_by_subscription(db: Session, subscription_id: str | None) -> Membership | None:
    if not subscription_id:
        return None
    return db.execute(
        select(Membership).where(Membership.subscription_id == subscription_id)
    ).scalar_one_or_none()


def _resolve_membership(
    db: Session,
    obj: dict[str, Any],
    *,
    subscription_id: str | None = None,
) -> Membership | None:
    """Membership named by metadata, else the one linked to the subscription.

    The metadata organization, when present, must own the membership.
    """
    meta = _metadata(obj)
    membership_id = _parse_uuid(meta.get("membership_id"))
    membership = db.get(Membership, membership_id) if membership_id else None
    if membership is None:
        membership = _find_membership_by_subscription(db, subscription_id)
    if membership is None:
        return None

    org_id = _parse_uuid(meta.get("organization_id"))
    if org_id is not None and org_id != membership.organization_id:
        logger.warning(
            "Event organization does not own membership",
            extra={
                "organization_id": str(org_id),
                "membership_id": str(membership.membership_id),
            },
        )
        return None
    return membership


def _skip(reason: str, obj: dict[str, Any], ctx: HandlerContext) -> HandlerOutcome:
    logger.warning(reason, extra={"event_id": ctx.event_id, "object_id": obj.get("id")})
    return HandlerOutcome(message=reason)


def _settle_or_raise(result: SettlementResult) -> SettlementResult:
    if not result.success:
        raise PersistenceError(f"Settlement failed ({result.error_code}): {result.error}")
    return result


def _timestamp_date(value: Any, tz: str) -> date | None:
    if not value:
        return None
    return local_date(datetime.fromtimestamp(int(value), tz=timezone.utc), tz)


# ----------------------------------------------------------------------
# Checkout and subscriptions
# ----------------------------------------------------------------------


def handle_checkout_completed(session: dict[str, Any], ctx: HandlerContext) -> HandlerOutcome:
    """Link a subscription created through hosted checkout."""
    if session.get("mode") != "subscription":
        return HandlerOutcome(message=f"Checkout mode '{session.get('mode')}' needs no action")

    subscription_id = _object_id(session.get("subscription"))
    if not subscription_id:
        return _skip("Checkout session has no subscription", session, ctx)

    membership = _resolve_membership(ctx.db, session)
    if membership is None:
        return _skip("Checkout session has no resolvable membership", session, ctx)

    membership.subscription_id = subscription_id
    membership.subscription_status = "active"
    membership.auto_pay_enabled = True
    customer_id = _object_id(session.get("customer"))
    if customer_id:
        membership.customer_id = customer_id
    # The gateway owns the cadence from here on
    membership.next_payment_due = None

    logger.info(
        "Subscription linked from checkout",
        extra={"membership_id": str(membership.membership_id), "subscription_id": subscription_id},
    )
    return HandlerOutcome(
        message="Subscription linked",
        organization_id=membership.organization_id,
        membership_id=membership.membership_id,
    )


def handle_subscription_updated(subscription: dict[str, Any], ctx: HandlerContext) -> HandlerOutcome:
    """Sync subscription status for customer.subscription.created/updated."""
    subscription_id = subscription.get("id")
    membership = _resolve_membership(ctx.db, subscription, subscription_id=subscription_id)
    if membership is None:
        return _skip("Subscription has no resolvable membership", subscription, ctx)

    gateway_status = subscription.get("status") or ""
    local_status = SUBSCRIPTION_STATUS_MAP.get(gateway_status, gateway_status)

    membership.subscription_id = subscription_id
    membership.subscription_status = local_status
    membership.auto_pay_enabled = gateway_status in PROVIDER_BILLED_STATUSES
    customer_id = _object_id(subscription.get("customer"))
    if customer_id:
        membership.customer_id = customer_id
    if gateway_status in PROVIDER_BILLED_STATUSES:
        membership.next_payment_due = None

    logger.info(
        "Subscription status synced",
        extra={
            "membership_id": str(membership.membership_id),
            "subscription_id": subscription_id,
            "subscription_status": local_status,
        },
    )
    return HandlerOutcome(
        message=f"Subscription status set to {local_status}",
        organization_id=membership.organization_id,
        membership_id=membership.membership_id,
    )


def handle_subscription_deleted(subscription: dict[str, Any], ctx: HandlerContext) -> HandlerOutcome:
    """Return the membership to manual billing and lapse it."""
    subscription_id = subscription.get("id")
    membership = _resolve_membership(ctx.db, subscription, subscription_id=subscription_id)
    if membership is None:
        return _skip("Subscription has no resolvable membership", subscription, ctx)

    # An operator who already unlinked the subscription moved the member to manual billing
    converted_to_manual = membership.subscription_id != subscription_id

    if not converted_to_manual:
        membership.subscription_id = None
    membership.subscription_status = "canceled"
    membership.auto_pay_enabled = False

    lapsed = False
    if not converted_to_manual and MembershipStateMachine.can_transition(
        membership.status, MembershipStatus.LAPSED
    ):
        membership.status = MembershipStatus.LAPSED.value
        lapsed = True

    logger.info(
        "Subscription deleted",
        extra={
            "membership_id": str(membership.membership_id),
            "subscription_id": subscription_id,
            "lapsed": lapsed,
        },
    )
    return HandlerOutcome(
        message="Subscription removed" + (", membership lapsed" if lapsed else ""),
        organization_id=membership.organization_id,
        membership_id=membership.membership_id,
    )


# ----------------------------------------------------------------------
# Subscription invoices
# ----------------------------------------------------------------------


def months_for_paid_amount(base_amount_cents: int, membership: Membership) -> int:
    """Months covered by a paid base amount.

    Matches the amount against the plan's monthly, biannual and annual
    prices (within one dollar); otherwise uses the membership's frequency.
    """
    plan = membership.plan
    if plan is not None:
        for frequency in BillingFrequency:
            price = plan.price_cents(frequency.value)
            if price > 0 and abs(base_amount_cents - price) <= PRICE_MATCH_TOLERANCE_CENTS:
                return months_for_frequency(frequency)
    return months_for_frequency(membership.billing_frequency)


def _enrollment_fee_charged(invoice: dict[str, Any]) -> int:
    """Cents of the invoice that pay the one-time enrollment fee."""
    lines = (invoice.get("lines") or {}).get("data") or []
    total = 0
    for line in lines:
        if (line.get("metadata") or {}).get("type") == PaymentType.ENROLLMENT_FEE.value:
            total += int(line.get("amount") or 0)
    if total:
        return total
    return int(_metadata(invoice).get("enrollment_fee_cents") or 0)


def _create_payment(
    ctx: HandlerContext,
    org: Organization,
    membership: Membership,
    *,
    payment_type: PaymentType,
    base_amount_cents: int,
    months_credited: int,
    billing_date: date,
    external_invoice_id: str | None,
    external_reference: str | None,
) -> Payment:
    invoices = InvoiceService(ctx.db)
    period_start = period_end = period_label = None
    if months_credited == 0:
        invoice_number = invoices.generate_invoice_number(
            organization_id=org.organization_id, billing_date=billing_date
        )
    else:
        if months_credited == months_for_frequency(membership.billing_frequency):
            metadata = invoices.generate_invoice_metadata(
                organization_id=org.organization_id,
                billing_date=billing_date,
                frequency=membership.billing_frequency,
                timezone=org.timezone,
            )
        else:
            metadata = invoices.generate_adhoc_invoice_metadata(
                organization_id=org.organization_id,
                billing_date=billing_date,
                months_credited=months_credited,
                timezone=org.timezone,
            )
        invoice_number = metadata.invoice_number
        period_start, period_end = metadata.period_start, metadata.period_end
        period_label = metadata.period_label

    fees = calculate_fees(base_amount_cents, org.platform_fee, org.pass_fees_to_member)
    payment = Payment(
        organization_id=org.organization_id,
        membership_id=membership.membership_id,
        member_id=membership.member_id,
        type=payment_type.value,
        method="card",
        status=PaymentStatus.PENDING.value,
        amount_cents=base_amount_cents,
        processor_fee_cents=fees.processor_fee_cents,
        platform_fee_cents=fees.platform_fee_cents,
        total_charged_cents=fees.charge_amount_cents,
        net_amount_cents=fees.net_amount_cents,
        months_credited=months_credited,
        invoice_number=invoice_number,
        due_date=billing_date,
        period_start=period_start,
        period_end=period_end,
        period_label=period_label,
        external_invoice_id=external_invoice_id,
        external_reference=external_reference,
        recorded_by="webhook",
    )
    ctx.db.add(payment)
    ctx.db.flush()
    return payment


def handle_invoice_paid(invoice: dict[str, Any], ctx: HandlerContext) -> HandlerOutcome:
    """Record and settle a paid subscription invoice."""
    invoice_id = invoice.get("id")
    subscription_id = _object_id(invoice.get("subscription"))
    membership = _resolve_membership(ctx.db, invoice, subscription_id=subscription_id)
    if membership is None:
        return _skip("Paid invoice has no resolvable membership", invoice, ctx)

    ids = {"organization_id": membership.organization_id, "membership_id": membership.membership_id}

    amount_paid = int(invoice.get("amount_paid") or 0)
    if amount_paid <= 0:
        logger.info("Skipping zero-amount invoice", extra={"invoice_id": invoice_id})
        return HandlerOutcome(message="Zero-amount invoice skipped", **ids)

    existing = ctx.db.execute(
        select(Payment.payment_id)
        .where(
            Payment.organization_id == membership.organization_id,
            Payment.external_invoice_id == invoice_id,
            Payment.type == PaymentType.DUES.value,
            Payment.status != PaymentStatus.FAILED.value,
        )
        .limit(1)
    ).first()
    if existing is not None:
        logger.info("Invoice already recorded", extra={"invoice_id": invoice_id})
        return HandlerOutcome(message="Invoice already recorded", **ids)

    org = ctx.db.get(Organization, membership.organization_id)
    paid_at = (
        datetime.fromtimestamp(int(invoice["status_transitions"]["paid_at"]), tz=timezone.utc)
        if (invoice.get("status_transitions") or {}).get("paid_at")
        else datetime.now(timezone.utc)
    )
    billing_date = (
        _timestamp_date(invoice.get("period_start"), org.timezone)
        or local_today(org.timezone)
    )
    payment_intent_id = _object_id(invoice.get("payment_intent"))
    settlement = SettlementService(ctx.db, ctx.notifier)

    enrollment_charged = min(_enrollment_fee_charged(invoice), amount_paid)
    if enrollment_charged > 0 and not membership.enrollment_fee_paid:
        enrollment = _create_payment(
            ctx,
            org,
            membership,
            payment_type=PaymentType.ENROLLMENT_FEE,
            base_amount_cents=reverse_calculate_base_amount(
                enrollment_charged, org.platform_fee, org.pass_fees_to_member
            ),
            months_credited=0,
            billing_date=billing_date,
            external_invoice_id=None,
            external_reference=payment_intent_id,
        )
        _settle_or_raise(
            settlement.settle_payment(payment_id=enrollment.payment_id, method="card", paid_at=paid_at)
        )

    dues_charged = amount_paid - enrollment_charged
    if dues_charged <= 0:
        return HandlerOutcome(message="Enrollment fee recorded", **ids)

    base_amount = reverse_calculate_base_amount(dues_charged, org.platform_fee, org.pass_fees_to_member)
    months = months_for_paid_amount(base_amount, membership)
    payment = _create_payment(
        ctx,
        org,
        membership,
        payment_type=PaymentType.DUES,
        base_amount_cents=base_amount,
        months_credited=months,
        billing_date=billing_date,
        external_invoice_id=invoice_id,
        external_reference=payment_intent_id,
    )
    result = _settle_or_raise(
        settlement.settle_payment(payment_id=payment.payment_id, method="card", paid_at=paid_at)
    )

    logger.info(
        "Subscription invoice settled",
        extra={
            "invoice_id": invoice_id,
            "payment_id": str(payment.payment_id),
            "months_credited": months,
            "paid_months": result.new_paid_months,
        },
    )
    return HandlerOutcome(message=f"Invoice settled for {months} month(s)", **ids)


def handle_invoice_payment_failed(invoice: dict[str, Any], ctx: HandlerContext) -> HandlerOutcome:
    """Mark the subscription past due and keep a failed payment for audit."""
    subscription_id = _object_id(invoice.get("subscription"))
    membership = _resolve_membership(ctx.db, invoice, subscription_id=subscription_id)
    if membership is None:
        return _skip("Failed invoice has no resolvable membership", invoice, ctx)

    org = ctx.db.get(Organization, membership.organization_id)
    membership.subscription_status = "past_due"

    amount_due = int(invoice.get("amount_due") or 0)
    error = (invoice.get("last_finalization_error") or {}).get("message")
    payment = Payment(
        organization_id=membership.organization_id,
        membership_id=membership.membership_id,
        member_id=membership.member_id,
        type=PaymentType.DUES.value,
        method="card",
        status=PaymentStatus.FAILED.value,
        amount_cents=amount_due,
        total_charged_cents=amount_due,
        net_amount_cents=0,
        months_credited=0,
        due_date=_timestamp_date(invoice.get("period_start"), org.timezone),
        external_invoice_id=invoice.get("id"),
        external_reference=_object_id(invoice.get("payment_intent")),
        notes=error,
        recorded_by="webhook",
    )
    ctx.db.add(payment)
    ctx.db.flush()

    logger.info(
        "Subscription invoice failed",
        extra={"membership_id": str(membership.membership_id), "invoice_id": invoice.get("id")},
    )
    return HandlerOutcome(
        message="Subscription marked past due",
        organization_id=membership.organization_id,
        membership_id=membership.membership_id,
    )


# ----------------------------------------------------------------------
# One-off payment intents
# ----------------------------------------------------------------------


def _intent_org_and_membership(
    intent: dict[str, Any], ctx: HandlerContext
) -> tuple[Organization | None, UUID | None]:
    meta = _metadata(intent)
    org_id = _parse_uuid(meta.get("organization_id"))
    membership_id = _parse_uuid(meta.get("membership_id"))
    if org_id is None or membership_id is None:
        return None, None
    return ctx.db.get(Organization, org_id), membership_id


def _find_intent_payment(
    ctx: HandlerContext,
    intent: dict[str, Any],
    org: Organization,
    membership_id: UUID,
) -> Payment | None:
    """Local payment for an intent: by payment_id metadata, then by intent reference.

    Charges matching neither are never attached to some other open payment.
    """
    base = select(Payment).where(
        Payment.organization_id == org.organization_id,
        Payment.membership_id == membership_id,
    )

    payment_id = _parse_uuid(_metadata(intent).get("payment_id"))
    if payment_id is not None:
        payment = ctx.db.execute(base.where(Payment.payment_id == payment_id)).scalar_one_or_none()
        if payment is not None:
            return payment

    return ctx.db.execute(
        base.where(Payment.external_reference == intent.get("id")).limit(1)
    ).scalar_one_or_none()


def handle_payment_intent_succeeded(intent: dict[str, Any], ctx: HandlerContext) -> HandlerOutcome:
    """Settle the local payment a one-off charge was made for."""
    org, membership_id = _intent_org_and_membership(intent, ctx)
    if org is None or membership_id is None:
        return _skip("Payment intent has no organization or membership metadata", intent, ctx)

    ids = {"organization_id": org.organization_id, "membership_id": membership_id}
    currency = (intent.get("currency") or "").lower()
    if currency != org.currency.lower():
        raise CurrencyMismatchError(org.currency, intent.get("currency"))

    payment = _find_intent_payment(ctx, intent, org, membership_id)
    if payment is None:
        logger.warning(
            "No local payment for succeeded payment intent",
            extra={"payment_intent_id": intent.get("id"), "membership_id": str(membership_id)},
        )
        return HandlerOutcome(message="No matching payment; nothing recorded", **ids)

    result = _settle_or_raise(
        SettlementService(ctx.db, ctx.notifier).settle_payment(
            payment_id=payment.payment_id,
            method="card",
            external_reference=intent.get("id"),
        )
    )
    if result.already_settled:
        return HandlerOutcome(message="Payment already settled", **ids)
    return HandlerOutcome(message=f"Payment {payment.payment_id} settled", **ids)


def handle_payment_intent_failed(intent: dict[str, Any], ctx: HandlerContext) -> HandlerOutcome:
    """Mark the matching pending payment failed and tell the member."""
    org, membership_id = _intent_org_and_membership(intent, ctx)
    if org is None or membership_id is None:
        return _skip("Payment intent has no organization or membership metadata", intent, ctx)

    ids = {"organization_id": org.organization_id, "membership_id": membership_id}
    payment = _find_intent_payment(ctx, intent, org, membership_id)
    if payment is None or payment.status != PaymentStatus.PENDING:
        logger.warning(
            "No pending payment for failed payment intent",
            extra={"payment_intent_id": intent.get("id")},
        )
        return HandlerOutcome(message="No pending payment to fail", **ids)

    reason = (intent.get("last_payment_error") or {}).get("message")
    SettlementService(ctx.db).fail_payment(payment_id=payment.payment_id, reason=reason)

    member = ctx.db.get(Member, payment.member_id)
    if member is not None:
        send_after_commit(
            ctx.db,
            ctx.notifier,
            TemplateType.PAYMENT_FAILED,
            member.email,
            {
                "member_name": member.full_name,
                "organization_name": org.name,
                "invoice_number": payment.invoice_number,
                "reason": reason,
            },
            member.preferred_language,
        )
    return HandlerOutcome(message=f"Payment {payment.payment_id} marked failed", **ids)


EVENT_HANDLERS: dict[str, EventHandler] = {
    "checkout.session.completed": handle_checkout_completed,
    "customer.subscription.created": handle_subscription_updated,
    "customer.subscription.updated": handle_subscription_updated,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.paid": handle_invoice_paid,
    "invoice.payment_failed": handle_invoice_payment_failed,
    "payment_intent.succeeded": handle_payment_intent_succeeded,
    "payment_intent.payment_failed": handle_payment_intent_failed,
}

IGNORED_EVENTS = frozenset(
    {
        "billing_portal.configuration.created",
        "billing_portal.configuration.updated",
        "billing_portal.session.created",
        "invoice.payment_succeeded",
    }
)

__all__ = [
    "EVENT_HANDLERS",
    "EventHandler",
    "HandlerContext",
    "HandlerOutcome",
    "IGNORED_EVENTS",
    "months_for_paid_amount",
]
