"""Stub payment gateway for tests.

Everything is kept in memory. Webhook events are signed with the same
scheme the real gateway uses, so verification goes through the stripe
library exactly as in production.
"""

from __future__ import annotations

import json
import time
import uuid
from typing import Any

from dues_engine.errors import GatewayError, ValidationError
from dues_engine.providers.base import (
    PaymentIntentResult,
    PaymentMethodDetails,
    PriceResult,
    SubscriptionResult,
)
from dues_engine.providers.signature import (
    DEFAULT_TOLERANCE_SECONDS,
    construct_event,
    sign_payload,
)


def _stub_id(prefix: str) -> str:
    return f"{prefix}_stub{uuid.uuid4().hex[:16]}"


class StubGateway:
    """In-memory gateway.

    Set ``fail_next`` to a GatewayError to make the next call raise it.
    """

    provider_name = "stub"

    def __init__(self, webhook_secret: str = "whsec_test", tolerance: int = DEFAULT_TOLERANCE_SECONDS):
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance
        self.fail_next: GatewayError | None = None
        self._subscriptions: dict[str, dict[str, Any]] = {}
        self._intents: dict[str, dict[str, Any]] = {}
        self._idempotency: dict[str, str] = {}
        self._payment_methods: dict[str, PaymentMethodDetails] = {}
        self._prices: dict[str, PriceResult] = {}

    def _check_failure(self) -> None:
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error

    # Subscriptions

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
        self._check_failure()
        if idempotency_key and idempotency_key in self._idempotency:
            return self._subscription_result(self._idempotency[idempotency_key])

        subscription_id = _stub_id("sub")
        self._subscriptions[subscription_id] = {
            "customer_id": customer_id,
            "price_id": price_id,
            "account": connected_account_id,
            "application_fee_percent": application_fee_percent,
            "metadata": dict(metadata or {}),
            "status": "active",
            "current_period_end": int(time.time()) + 30 * 86400,
        }
        if idempotency_key:
            self._idempotency[idempotency_key] = subscription_id
        return self._subscription_result(subscription_id)

    def update_subscription(
        self,
        subscription_id: str,
        *,
        connected_account_id: str,
        price_id: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> SubscriptionResult:
        self._check_failure()
        record = self._get_subscription(subscription_id)
        if price_id is not None:
            record["price_id"] = price_id
        if metadata:
            record["metadata"].update(metadata)
        return self._subscription_result(subscription_id)

    def cancel_subscription(
        self,
        subscription_id: str,
        *,
        connected_account_id: str,
    ) -> SubscriptionResult:
        self._check_failure()
        self._get_subscription(subscription_id)["status"] = "canceled"
        return self._subscription_result(subscription_id)

    def _get_subscription(self, subscription_id: str) -> dict[str, Any]:
        if subscription_id not in self._subscriptions:
            raise GatewayError(f"No such subscription: {subscription_id}")
        return self._subscriptions[subscription_id]

    def _subscription_result(self, subscription_id: str) -> SubscriptionResult:
        record = self._subscriptions[subscription_id]
        return SubscriptionResult(
            subscription_id=subscription_id,
            status=record["status"],
            customer_id=record["customer_id"],
            current_period_end=record["current_period_end"],
        )

    # Payment intents

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
        self._check_failure()
        if amount_cents <= 0:
            raise ValidationError("Charge amount must be positive")
        if application_fee_cents > amount_cents:
            raise ValidationError("Application fee cannot exceed the charge")
        if idempotency_key and idempotency_key in self._idempotency:
            return self._intent_result(self._idempotency[idempotency_key])

        intent_id = _stub_id("pi")
        self._intents[intent_id] = {
            "amount_cents": amount_cents,
            "currency": currency.lower(),
            "account": connected_account_id,
            "application_fee_cents": application_fee_cents,
            "customer_id": customer_id,
            "metadata": dict(metadata or {}),
            "status": "requires_payment_method",
        }
        if idempotency_key:
            self._idempotency[idempotency_key] = intent_id
        return self._intent_result(intent_id)

    def retrieve_payment_intent(
        self,
        payment_intent_id: str,
        *,
        connected_account_id: str,
    ) -> PaymentIntentResult:
        self._check_failure()
        if payment_intent_id not in self._intents:
            raise GatewayError(f"No such payment intent: {payment_intent_id}")
        return self._intent_result(payment_intent_id)

    def _intent_result(self, intent_id: str) -> PaymentIntentResult:
        record = self._intents[intent_id]
        return PaymentIntentResult(
            payment_intent_id=intent_id,
            status=record["status"],
            amount_cents=record["amount_cents"],
            currency=record["currency"],
            application_fee_cents=record["application_fee_cents"],
            client_secret=f"{intent_id}_secret",
            metadata=dict(record["metadata"]),
        )

    # Payment methods and prices

    def add_payment_method(self, details: PaymentMethodDetails) -> None:
        """Register a payment method the stub can return (testing)."""
        self._payment_methods[details.payment_method_id] = details

    def retrieve_payment_method(
        self,
        payment_method_id: str,
        *,
        connected_account_id: str,
    ) -> PaymentMethodDetails:
        self._check_failure()
        if payment_method_id not in self._payment_methods:
            raise GatewayError(f"No such payment method: {payment_method_id}")
        return self._payment_methods[payment_method_id]

    def create_price(
        self,
        *,
        amount_cents: int,
        interval: str,
        interval_count: int,
        connected_account_id: str,
        product_name: str,
    ) -> PriceResult:
        self._check_failure()
        if interval not in ("month", "year"):
            raise ValidationError(f"Unsupported price interval: {interval}")
        price = PriceResult(
            price_id=_stub_id("price"),
            amount_cents=amount_cents,
            interval=interval,
            interval_count=interval_count,
        )
        self._prices[price.price_id] = price
        return price

    # Webhooks

    def construct_event(self, payload: bytes, signature_header: str | None) -> dict[str, Any]:
        return construct_event(payload, signature_header, self.webhook_secret, self.tolerance)

    def build_event(
        self,
        event_type: str,
        data_object: dict[str, Any],
        *,
        event_id: str | None = None,
        timestamp: int | None = None,
    ) -> tuple[bytes, str]:
        """Serialize and sign an event (testing).

        Returns:
            (raw payload, signature header)
        """
        event = {
            "id": event_id or _stub_id("evt"),
            "type": event_type,
            "created": int(time.time()),
            "data": {"object": data_object},
        }
        payload = json.dumps(event).encode()
        return payload, sign_payload(payload, self.webhook_secret, timestamp)

    def simulate_payment_succeeded(self, payment_intent_id: str) -> dict[str, Any]:
        """Mark an intent succeeded and return its event object (testing)."""
        record = self._intents[payment_intent_id]
        record["status"] = "succeeded"
        return {
            "id": payment_intent_id,
            "object": "payment_intent",
            "amount": record["amount_cents"],
            "amount_received": record["amount_cents"],
            "currency": record["currency"],
            "metadata": dict(record["metadata"]),
        }

    def simulate_payment_failed(
        self,
        payment_intent_id: str,
        message: str = "Your card was declined.",
    ) -> dict[str, Any]:
        """Mark an intent failed and return its event object (testing)."""
        record = self._intents[payment_intent_id]
        record["status"] = "requires_payment_method"
        return {
            "id": payment_intent_id,
            "object": "payment_intent",
            "amount": record["amount_cents"],
            "currency": record["currency"],
            "metadata": dict(record["metadata"]),
            "last_payment_error": {"message": message},
        }
