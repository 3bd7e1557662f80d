"""Tests for webhook signatures and the payment gateway adapters.

Tests verify:
1. Signature headers verify, and tampered or stale ones are rejected
2. Idempotent charge and subscription creation on the stub
3. Signed events round-trip through construct_event
4. Stripe errors map onto GatewayError
"""

import json
import time

import pytest
import stripe

from dues_engine.api.dependencies import get_gateway
from dues_engine.config import get_settings
from dues_engine.errors import GatewayError, InvalidSignatureError, ValidationError
from dues_engine.providers import (
    PaymentMethodDetails,
    StripeGateway,
    StubGateway,
    price_interval,
    sign_payload,
    verify_signature,
)

SECRET = "whsec_test"
PAYLOAD = b'{"id": "evt_1", "type": "invoice.paid"}'


def _now():
    return int(time.time())


class TestSignature:
    """Signature verification through the stripe library."""

    def test_valid_signature(self):
        header = sign_payload(PAYLOAD, SECRET)

        verify_signature(PAYLOAD, header, SECRET)

    def test_str_payload_matches_bytes(self):
        header = sign_payload(PAYLOAD.decode(), SECRET)
        verify_signature(PAYLOAD, header, SECRET)

    def test_tampered_payload(self):
        header = sign_payload(PAYLOAD, SECRET)

        with pytest.raises(InvalidSignatureError):
            verify_signature(PAYLOAD + b" ", header, SECRET)

    def test_wrong_secret(self):
        header = sign_payload(PAYLOAD, "whsec_other")

        with pytest.raises(InvalidSignatureError):
            verify_signature(PAYLOAD, header, SECRET)

    def test_stale_timestamp(self):
        header = sign_payload(PAYLOAD, SECRET, timestamp=_now() - 301)

        with pytest.raises(InvalidSignatureError, match="tolerance"):
            verify_signature(PAYLOAD, header, SECRET)

    def test_zero_tolerance_disables_age_check(self):
        header = sign_payload(PAYLOAD, SECRET, timestamp=_now() - 86400)
        verify_signature(PAYLOAD, header, SECRET, tolerance=0)

    @pytest.mark.parametrize("header", [None, "", "garbage", "t=abc,v1=00", "t=1740000000"])
    def test_malformed_headers(self, header):
        with pytest.raises(InvalidSignatureError):
            verify_signature(PAYLOAD, header, SECRET)

    def test_rotated_secret_any_signature_matches(self):
        """Any of several v1 entries may match."""
        good = sign_payload(PAYLOAD, SECRET)
        timestamp, signature = good.split(",")
        header = f"{timestamp},v1={'0' * 64},{signature}"

        verify_signature(PAYLOAD, header, SECRET)

    def test_signature_error_is_validation_error(self):
        assert issubclass(InvalidSignatureError, ValidationError)


class TestStubGateway:
    """Test the in-memory gateway."""

    def test_create_payment_intent(self):
        gateway = StubGateway()

        intent = gateway.create_payment_intent(
            amount_cents=2194,
            currency="USD",
            connected_account_id="acct_1",
            application_fee_cents=194,
            metadata={"payment_id": "p1"},
        )

        assert intent.payment_intent_id.startswith("pi_stub")
        assert intent.currency == "usd"
        assert intent.status == "requires_payment_method"
        assert intent.metadata == {"payment_id": "p1"}

    def test_idempotency_key_reuses_intent(self):
        gateway = StubGateway()
        kwargs = dict(
            amount_cents=2000,
            currency="usd",
            connected_account_id="acct_1",
            application_fee_cents=188,
            idempotency_key="dues-p1",
        )

        first = gateway.create_payment_intent(**kwargs)
        second = gateway.create_payment_intent(**kwargs)

        assert first.payment_intent_id == second.payment_intent_id

    def test_invalid_amounts(self):
        gateway = StubGateway()

        with pytest.raises(ValidationError):
            gateway.create_payment_intent(
                amount_cents=0, currency="usd", connected_account_id="a", application_fee_cents=0
            )
        with pytest.raises(ValidationError):
            gateway.create_payment_intent(
                amount_cents=100, currency="usd", connected_account_id="a", application_fee_cents=101
            )

    def test_fail_next(self):
        """fail_next raises once, then clears."""
        gateway = StubGateway()
        gateway.fail_next = GatewayError("rate limited", retryable=True)

        with pytest.raises(GatewayError) as exc_info:
            gateway.create_price(
                amount_cents=2000,
                interval="month",
                interval_count=1,
                connected_account_id="acct_1",
                product_name="Single",
            )
        assert exc_info.value.retryable is True

        price = gateway.create_price(
            amount_cents=2000,
            interval="month",
            interval_count=1,
            connected_account_id="acct_1",
            product_name="Single",
        )
        assert price.amount_cents == 2000

    def test_subscription_lifecycle(self):
        gateway = StubGateway()

        sub = gateway.create_subscription(
            customer_id="cus_1",
            price_id="price_1",
            connected_account_id="acct_1",
            idempotency_key="sub-m1",
        )
        again = gateway.create_subscription(
            customer_id="cus_1",
            price_id="price_1",
            connected_account_id="acct_1",
            idempotency_key="sub-m1",
        )
        cancelled = gateway.cancel_subscription(sub.subscription_id, connected_account_id="acct_1")

        assert sub.status == "active"
        assert again.subscription_id == sub.subscription_id
        assert cancelled.status == "canceled"

    def test_unknown_subscription(self):
        with pytest.raises(GatewayError):
            StubGateway().cancel_subscription("sub_missing", connected_account_id="acct_1")

    def test_payment_method_details(self):
        gateway = StubGateway()
        gateway.add_payment_method(
            PaymentMethodDetails(
                payment_method_id="pm_1", type="card", brand="visa", last4="4242"
            )
        )

        details = gateway.retrieve_payment_method("pm_1", connected_account_id="acct_1")

        assert details.to_dict() == {
            "payment_method_id": "pm_1",
            "type": "card",
            "brand": "visa",
            "last4": "4242",
        }

    def test_price_intervals(self):
        assert price_interval("monthly") == ("month", 1)
        assert price_interval("biannual") == ("month", 6)
        assert price_interval("annual") == ("year", 1)
        assert price_interval("weekly") == ("month", 1)


class TestConstructEvent:
    """Signed webhook events."""

    def test_round_trip(self):
        gateway = StubGateway()
        payload, header = gateway.build_event("invoice.paid", {"id": "in_1"}, event_id="evt_1")

        event = gateway.construct_event(payload, header)

        assert event["id"] == "evt_1"
        assert event["type"] == "invoice.paid"
        assert event["data"]["object"] == {"id": "in_1"}

    def test_bad_signature(self):
        gateway = StubGateway()
        payload, _ = gateway.build_event("invoice.paid", {"id": "in_1"})

        with pytest.raises(InvalidSignatureError):
            gateway.construct_event(payload, "t=1,v1=deadbeef")

    def test_signed_non_event_rejected(self):
        gateway = StubGateway()
        payload = json.dumps({"hello": "world"}).encode()

        with pytest.raises(ValidationError):
            gateway.construct_event(payload, sign_payload(payload, gateway.webhook_secret))

    def test_simulated_intent_events(self):
        gateway = StubGateway()
        intent = gateway.create_payment_intent(
            amount_cents=2000,
            currency="usd",
            connected_account_id="acct_1",
            application_fee_cents=188,
            metadata={"payment_id": "p1"},
        )

        succeeded = gateway.simulate_payment_succeeded(intent.payment_intent_id)
        status = gateway.retrieve_payment_intent(
            intent.payment_intent_id, connected_account_id="acct_1"
        ).status

        assert succeeded["amount_received"] == 2000
        assert succeeded["metadata"] == {"payment_id": "p1"}
        assert status == "succeeded"


class TestStripeGateway:
    """The Stripe adapter, with the API client stubbed out."""

    @pytest.fixture
    def gateway(self):
        return StripeGateway("sk_test_dummy", SECRET, timeout_seconds=5)

    def test_http_timeout_is_configured(self, monkeypatch):
        captured = {}
        real_client = stripe.RequestsClient

        def recording_client(timeout, **kwargs):
            captured["timeout"] = timeout
            return real_client(timeout=timeout, **kwargs)

        monkeypatch.setattr(stripe, "RequestsClient", recording_client)

        StripeGateway("sk_test_dummy", SECRET, timeout_seconds=7.5)

        assert captured["timeout"] == 7.5

    def test_api_uses_stripe_gateway(self, monkeypatch):
        monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_api")
        monkeypatch.setenv("WEBHOOK_SECRET", "whsec_api")
        monkeypatch.setenv("WEBHOOK_TOLERANCE_SECONDS", "120")
        get_settings.cache_clear()
        get_gateway.cache_clear()
        try:
            gateway = get_gateway()
        finally:
            get_settings.cache_clear()
            get_gateway.cache_clear()

        assert isinstance(gateway, StripeGateway)
        assert gateway.webhook_secret == "whsec_api"
        assert gateway.tolerance == 120

    def test_construct_event(self, gateway):
        payload = json.dumps({"id": "evt_9", "type": "invoice.paid", "data": {"object": {}}})
        header = sign_payload(payload, SECRET)

        event = gateway.construct_event(payload.encode(), header)

        assert event == {"id": "evt_9", "type": "invoice.paid", "data": {"object": {}}}

    def test_construct_event_bad_signature(self, gateway):
        with pytest.raises(InvalidSignatureError):
            gateway.construct_event(PAYLOAD, sign_payload(PAYLOAD, "whsec_other"))

    def test_construct_event_missing_signature(self, gateway):
        with pytest.raises(InvalidSignatureError):
            gateway.construct_event(PAYLOAD, None)

    def test_create_payment_intent_on_connected_account(self, gateway, monkeypatch):
        calls = []

        def create(service, params=None, options=None):
            calls.append((params, options))
            return {
                "id": "pi_1",
                "status": "requires_payment_method",
                "amount": params["amount"],
                "currency": params["currency"],
                "application_fee_amount": params["application_fee_amount"],
                "client_secret": "pi_1_secret",
                "metadata": params["metadata"],
            }

        monkeypatch.setattr(stripe.PaymentIntentService, "create", create)

        intent = gateway.create_payment_intent(
            amount_cents=2194,
            currency="USD",
            connected_account_id="acct_1",
            application_fee_cents=194,
            metadata={"payment_id": "p1"},
            idempotency_key="dues-p1",
        )

        [(params, options)] = calls
        assert params["currency"] == "usd"
        assert options == {"stripe_account": "acct_1", "idempotency_key": "dues-p1"}
        assert intent.payment_intent_id == "pi_1"
        assert intent.application_fee_cents == 194
        assert intent.metadata == {"payment_id": "p1"}

    @pytest.mark.parametrize(
        "error, retryable",
        [
            (stripe.RateLimitError("slow down"), True),
            (stripe.APIConnectionError("connection reset"), True),
            (stripe.CardError("declined", None, "card_declined"), False),
        ],
    )
    def test_stripe_errors_become_gateway_errors(self, gateway, monkeypatch, error, retryable):
        def fail(*args, **kwargs):
            raise error

        monkeypatch.setattr(stripe.SubscriptionService, "cancel", fail)

        with pytest.raises(GatewayError) as exc_info:
            gateway.cancel_subscription("sub_1", connected_account_id="acct_1")

        assert exc_info.value.retryable is retryable
