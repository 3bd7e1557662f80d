"""ORM models."""

from dues_engine.models.base import Base, TimestampMixin, UpdatedAtMixin
from dues_engine.models.billing import InvoiceSequence, Membership, Payment
from dues_engine.models.organization import BILLING_FREQUENCIES, Member, Organization, Plan
from dues_engine.models.webhooks import WebhookEvent

__all__ = [
    "Base",
    "TimestampMixin",
    "UpdatedAtMixin",
    "BILLING_FREQUENCIES",
    "Organization",
    "Plan",
    "Member",
    "Membership",
    "Payment",
    "InvoiceSequence",
    "WebhookEvent",
]
