"""Webhook payload signing and verification.

Header format: ``t=<unix seconds>,v1=<hex digest>`` where the digest is
HMAC-SHA256 over ``"{t}.{raw body}"`` keyed with the endpoint secret.
Verification is done by the stripe library; ``sign_payload`` builds headers
for the stub gateway and tests.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import time
from typing import Any

import stripe

from dues_engine.errors import InvalidSignatureError, ValidationError

DEFAULT_TOLERANCE_SECONDS = 300


def sign_payload(payload: bytes | str, secret: str, timestamp: int | None = None) -> str:
    """Build a signature header for ``payload`` (used by tests and the stub gateway)."""
    body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
    ts = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode(), f"{ts}.{body}".encode(), hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def verify_signature(
    payload: bytes | str,
    header: str | None,
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> None:
    """Verify a signature header against the raw payload.

    A ``tolerance`` of 0 disables the timestamp age check.

    Raises:
        InvalidSignatureError: on a missing, malformed, mismatched or stale header
    """
    if not header:
        raise InvalidSignatureError("Missing signature header")
    if not secret:
        raise InvalidSignatureError("Webhook secret is not configured")

    body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
    try:
        stripe.WebhookSignature.verify_header(body, header, secret, tolerance or None)
    except stripe.SignatureVerificationError as exc:
        raise InvalidSignatureError(str(exc)) from exc


def parse_event(payload: bytes | str) -> dict[str, Any]:
    """Parse a verified payload into a plain event dict."""
    try:
        event = json.loads(payload)
    except ValueError as exc:
        raise ValidationError("Webhook payload is not valid JSON") from exc
    if not isinstance(event, dict) or "id" not in event or "type" not in event:
        raise ValidationError("Webhook payload is not an event")
    return event


def construct_event(
    payload: bytes | str,
    header: str | None,
    secret: str,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> dict[str, Any]:
    """Verify ``header`` and return the event as a plain dict."""
    verify_signature(payload, header, secret, tolerance)
    return parse_event(payload)
