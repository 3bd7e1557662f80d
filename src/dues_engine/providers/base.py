"""Base protocol and types for payment gateway adapters.

All gateway adapters must implement the PaymentGateway protocol. Charges
are created on the organization's connected account; the platform keeps
``application_fee_cents`` of each charge.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class SubscriptionResult:
    """Result of creating or changing a recurring subscription."""

    subscription_id: str
    status: str  # active/trialing/past_due/canceled/unpaid/incomplete/...
    customer_id: str | None = None
    current_period_end: int | None = None  # unix seconds


@dataclass(frozen=True)
class PaymentIntentResult:
    """A one-off charge as seen by the gateway."""

    payment_intent_id: str
    status: str  # requires_payment_method/processing/succeeded/canceled
    amount_cents: int
    currency: str
    application_fee_cents: int = 0
    client_secret: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentMethodDetails:
    """Display details of a stored payment method."""

    payment_method_id: str
    type: str  # card/us_bank_account
    brand: str | None = None
    last4: str | None = None
    exp_month: int | None = None
    exp_year: int | None = None
    bank_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass(frozen=True)
class PriceResult:
    """A recurring price created on a connected account."""

    price_id: str
    amount_cents: int
    interval: str  # month/year
    interval_count: int


class PaymentGateway(Protocol):
    """Protocol for payment gateway adapters.

    The billing engine never talks to a gateway SDK directly; it uses these
    methods so that tests and local development can run on the stub.
    """

    provider_name: str

    def create_subscription(
        self,
        *,
        customer_id: str,
        price_id: str,
        connected_account_id: str,
        application_fee_percent: float | None = None,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> SubscriptionResult:
        """Start a recurring subscription for a member."""
        ...

    def update_subscription(
        self,
        subscription_id: str,
        *,
        connected_account_id: str,
        price_id: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> SubscriptionResult:
        """Change the price or metadata of a subscription."""
        ...

    def cancel_subscription(
        self,
        subscription_id: str,
        *,
        connected_account_id: str,
    ) -> SubscriptionResult:
        """Cancel a subscription immediately."""
        ...

    def create_payment_intent(
        self,
        *,
        amount_cents: int,
        currency: str,
        connected_account_id: str,
        application_fee_cents: int,
        customer_id: str | None = None,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> PaymentIntentResult:
        """Create a one-off charge on the connected account.

        Args:
            amount_cents: Total charged to the member
            currency: ISO currency code, lowercase
            connected_account_id: The organization's connected account
            application_fee_cents: Withheld for the platform
            customer_id: Gateway customer, when the member has one
            metadata: Correlation ids (organization_id, membership_id, payment_id)
            idempotency_key: Repeated calls with the same key return the same intent

        Raises:
            GatewayError: on provider failure (``retryable`` for transient ones)
        """
        ...

    def retrieve_payment_intent(
        self,
        payment_intent_id: str,
        *,
        connected_account_id: str,
    ) -> PaymentIntentResult:
        """Fetch a payment intent."""
        ...

    def retrieve_payment_method(
        self,
        payment_method_id: str,
        *,
        connected_account_id: str,
    ) -> PaymentMethodDetails:
        """Fetch display details of a payment method."""
        ...

    def create_price(
        self,
        *,
        amount_cents: int,
        interval: str,
        interval_count: int,
        connected_account_id: str,
        product_name: str,
    ) -> PriceResult:
        """Create a recurring price for a plan and billing frequency."""
        ...

    def construct_event(self, payload: bytes, signature_header: str | None) -> dict[str, Any]:
        """Verify a webhook signature and parse the event.

        Raises:
            InvalidSignatureError: if the signature is missing or wrong
        """
        ...


FREQUENCY_INTERVALS: dict[str, tuple[str, int]] = {
    "monthly": ("month", 1),
    "biannual": ("month", 6),
    "annual": ("year", 1),
}


def price_interval(frequency: str) -> tuple[str, int]:
    """Gateway (interval, interval_count) for a billing frequency."""
    return FREQUENCY_INTERVALS.get(frequency, FREQUENCY_INTERVALS["monthly"])
