"""Dues engine services."""

from dues_engine.services.billing_runner import BillingRunner, BillingRunResult
from dues_engine.services.invoice_service import InvoiceMetadata, InvoiceService, extract_org_code
from dues_engine.services.reminder_service import ReminderRunResult, ReminderService
from dues_engine.services.settlement_service import SettlementResult, SettlementService
from dues_engine.services.state_machine import (
    MembershipStateMachine,
    MembershipStatus,
    PaymentStateMachine,
    PaymentStatus,
    PaymentType,
)

__all__ = [
    "BillingRunner",
    "BillingRunResult",
    "InvoiceMetadata",
    "InvoiceService",
    "extract_org_code",
    "ReminderRunResult",
    "ReminderService",
    "SettlementResult",
    "SettlementService",
    "MembershipStateMachine",
    "MembershipStatus",
    "PaymentStateMachine",
    "PaymentStatus",
    "PaymentType",
]
