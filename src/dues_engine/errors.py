"""Error taxonomy for the dues engine.

Services translate low-level failures into these types at their boundary.
Callers that need a structured outcome (settlement, billing runs, webhook
processing) receive result objects whose ``error`` field carries the message.
"""

from __future__ import annotations


class DuesEngineError(Exception):
    """Base class for all dues engine errors."""

    code = "DUES_ENGINE_ERROR"


class ValidationError(DuesEngineError):
    """Bad caller input. Not retried."""

    code = "VALIDATION_ERROR"


class NotFoundError(DuesEngineError, LookupError):
    """A referenced entity does not exist."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: object):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class ConflictError(DuesEngineError):
    """The entity is in a state that forbids the operation."""

    code = "CONFLICT"


class AlreadyRefundedError(ConflictError):
    """Attempt to settle a payment that was refunded."""

    code = "ALREADY_REFUNDED"

    def __init__(self, payment_id: object):
        self.payment_id = payment_id
        super().__init__(f"Payment {payment_id} has been refunded and cannot be settled")


class InvalidTransitionError(ConflictError):
    """Raised when an invalid membership status transition is attempted."""

    code = "INVALID_TRANSITION"

    def __init__(self, from_status: str, to_status: str, reason: str | None = None):
        self.from_status = from_status
        self.to_status = to_status
        self.reason = reason
        msg = f"Invalid transition from '{from_status}' to '{to_status}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class GatewayError(DuesEngineError):
    """Payment provider failure."""

    code = "GATEWAY_ERROR"

    def __init__(self, message: str, *, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


class PersistenceError(DuesEngineError):
    """Store unavailable or a write failed. Retryable."""

    code = "PERSISTENCE_ERROR"


class SequenceError(PersistenceError):
    """The atomic invoice counter could not be advanced."""

    code = "SEQUENCE_ERROR"


class ConfigurationError(DuesEngineError):
    """Missing credentials or required settings."""

    code = "CONFIGURATION_ERROR"


class InvalidSignatureError(ValidationError):
    """Webhook payload failed signature verification."""

    code = "INVALID_SIGNATURE"


class CurrencyMismatchError(ValidationError):
    """Provider reported an amount in an unexpected currency."""

    code = "CURRENCY_MISMATCH"

    def __init__(self, expected: str, actual: str | None):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Expected currency '{expected}', got '{actual}'")
