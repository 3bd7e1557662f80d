"""Stripe Connect gateway adapter.

Charges, subscriptions and prices are created on the organization's
connected account (``stripe_account`` request option). Every API call is
bounded by the configured HTTP timeout.
"""

from __future__ import annotations

import logging
from typing import Any

import stripe

from dues_engine.errors import GatewayError, InvalidSignatureError, ValidationError
from dues_engine.providers.base import (
    PaymentIntentResult,
    PaymentMethodDetails,
    PriceResult,
    SubscriptionResult,
)
from dues_engine.providers.signature import DEFAULT_TOLERANCE_SECONDS, parse_event

logger = logging.getLogger(__name__)

_RETRYABLE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError)


def _gateway_error(exc: stripe.StripeError) -> GatewayError:
    status = exc.http_status or 0
    retryable = isinstance(exc, _RETRYABLE_ERRORS) or status >= 500
    return GatewayError(exc.user_message or str(exc), retryable=retryable)


def _options(connected_account_id: str, idempotency_key: str | None = None) -> dict[str, Any]:
    options: dict[str, Any] = {"stripe_account": connected_account_id}
    if idempotency_key:
        options["idempotency_key"] = idempotency_key
    return options


def _subscription_result(sub: Any) -> SubscriptionResult:
    customer = sub.get("customer")
    return SubscriptionResult(
        subscription_id=sub["id"],
        status=sub["status"],
        customer_id=customer if isinstance(customer, str) else getattr(customer, "id", None),
        current_period_end=sub.get("current_period_end"),
    )


def _intent_result(intent: Any) -> PaymentIntentResult:
    return PaymentIntentResult(
        payment_intent_id=intent["id"],
        status=intent["status"],
        amount_cents=intent["amount"],
        currency=intent["currency"],
        application_fee_cents=intent.get("application_fee_amount") or 0,
        client_secret=intent.get("client_secret"),
        metadata=dict(intent.get("metadata") or {}),
    )


class StripeGateway:
    """PaymentGateway backed by the Stripe API."""

    provider_name = "stripe"

    def __init__(
        self,
        api_key: str,
        webhook_secret: str,
        *,
        timeout_seconds: float = 10.0,
        tolerance: int = DEFAULT_TOLERANCE_SECONDS,
        max_network_retries: int = 2,
    ):
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance
        self.client = stripe.StripeClient(
            api_key,
            http_client=stripe.RequestsClient(timeout=timeout_seconds),
            max_network_retries=max_network_retries,
        )

    def _call(self, operation: str, fn, *args, **kwargs) -> Any:
        try:
            return fn(*args, **kwargs)
        except stripe.StripeError as exc:
            logger.warning(
                "Stripe request failed",
                extra={"operation": operation, "error": str(exc), "code": exc.code},
            )
            raise _gateway_error(exc) from exc

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
        params: dict[str, Any] = {
            "customer": customer_id,
            "items": [{"price": price_id}],
            "metadata": metadata or {},
        }
        if application_fee_percent is not None:
            params["application_fee_percent"] = application_fee_percent
        sub = self._call(
            "create_subscription",
            self.client.subscriptions.create,
            params=params,
            options=_options(connected_account_id, idempotency_key),
        )
        return _subscription_result(sub)

    def update_subscription(
        self,
        subscription_id: str,
        *,
        connected_account_id: str,
        price_id: str | None = None,
        metadata: dict[str, str] | None = None,
    ) -> SubscriptionResult:
        options = _options(connected_account_id)
        params: dict[str, Any] = {}
        if metadata:
            params["metadata"] = metadata
        if price_id is not None:
            current = self._call(
                "retrieve_subscription",
                self.client.subscriptions.retrieve,
                subscription_id,
                options=options,
            )
            item_id = current["items"]["data"][0]["id"]
            params["items"] = [{"id": item_id, "price": price_id}]
            params["proration_behavior"] = "none"
        sub = self._call(
            "update_subscription",
            self.client.subscriptions.update,
            subscription_id,
            params=params,
            options=options,
        )
        return _subscription_result(sub)

    def cancel_subscription(
        self,
        subscription_id: str,
        *,
        connected_account_id: str,
    ) -> SubscriptionResult:
        sub = self._call(
            "cancel_subscription",
            self.client.subscriptions.cancel,
            subscription_id,
            options=_options(connected_account_id),
        )
        return _subscription_result(sub)

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
        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "application_fee_amount": application_fee_cents,
            "automatic_payment_methods": {"enabled": True},
            "metadata": metadata or {},
        }
        if customer_id:
            params["customer"] = customer_id
        intent = self._call(
            "create_payment_intent",
            self.client.payment_intents.create,
            params=params,
            options=_options(connected_account_id, idempotency_key),
        )
        return _intent_result(intent)

    def retrieve_payment_intent(
        self,
        payment_intent_id: str,
        *,
        connected_account_id: str,
    ) -> PaymentIntentResult:
        intent = self._call(
            "retrieve_payment_intent",
            self.client.payment_intents.retrieve,
            payment_intent_id,
            options=_options(connected_account_id),
        )
        return _intent_result(intent)

    def retrieve_payment_method(
        self,
        payment_method_id: str,
        *,
        connected_account_id: str,
    ) -> PaymentMethodDetails:
        method = self._call(
            "retrieve_payment_method",
            self.client.payment_methods.retrieve,
            payment_method_id,
            options=_options(connected_account_id),
        )
        card = method.get("card") or {}
        bank = method.get("us_bank_account") or {}
        return PaymentMethodDetails(
            payment_method_id=method["id"],
            type=method["type"],
            brand=card.get("brand"),
            last4=card.get("last4") or bank.get("last4"),
            exp_month=card.get("exp_month"),
            exp_year=card.get("exp_year"),
            bank_name=bank.get("bank_name"),
        )

    def create_price(
        self,
        *,
        amount_cents: int,
        interval: str,
        interval_count: int,
        connected_account_id: str,
        product_name: str,
    ) -> PriceResult:
        price = self._call(
            "create_price",
            self.client.prices.create,
            params={
                "unit_amount": amount_cents,
                "currency": "usd",
                "recurring": {"interval": interval, "interval_count": interval_count},
                "product_data": {"name": product_name},
            },
            options=_options(connected_account_id),
        )
        return PriceResult(
            price_id=price["id"],
            amount_cents=price["unit_amount"],
            interval=interval,
            interval_count=interval_count,
        )

    # Webhooks

    def construct_event(self, payload: bytes, signature_header: str | None) -> dict[str, Any]:
        if not signature_header:
            raise InvalidSignatureError("Missing signature header")
        try:
            stripe.Webhook.construct_event(
                payload, signature_header, self.webhook_secret, self.tolerance or None
            )
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignatureError(str(exc)) from exc
        except ValueError as exc:
            raise ValidationError("Webhook payload is not valid JSON") from exc
        return parse_event(payload)
