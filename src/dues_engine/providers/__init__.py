"""Payment gateway adapters."""

from dues_engine.providers.base import (
    PaymentGateway,
    PaymentIntentResult,
    PaymentMethodDetails,
    PriceResult,
    SubscriptionResult,
    price_interval,
)
from dues_engine.providers.signature import construct_event, sign_payload, verify_signature
from dues_engine.providers.stripe_gateway import StripeGateway
from dues_engine.providers.stub import StubGateway

__all__ = [
    "PaymentGateway",
    "PaymentIntentResult",
    "PaymentMethodDetails",
    "PriceResult",
    "SubscriptionResult",
    "price_interval",
    "sign_payload",
    "construct_event",
    "verify_signature",
    "StripeGateway",
    "StubGateway",
]
