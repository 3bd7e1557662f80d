"""Gateway webhook processing."""

from dues_engine.webhooks.dispatcher import WebhookProcessor, WebhookResult, WebhookStatus
from dues_engine.webhooks.handlers import EVENT_HANDLERS, IGNORED_EVENTS, HandlerContext, HandlerOutcome
from dues_engine.webhooks.ledger import LedgerStatus, WebhookLedger

__all__ = [
    "WebhookProcessor",
    "WebhookResult",
    "WebhookStatus",
    "EVENT_HANDLERS",
    "IGNORED_EVENTS",
    "HandlerContext",
    "HandlerOutcome",
    "LedgerStatus",
    "WebhookLedger",
]
