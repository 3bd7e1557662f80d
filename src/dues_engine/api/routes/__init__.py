"""API routes."""

from dues_engine.api.routes.billing import router as billing_router
from dues_engine.api.routes.health import router as health_router
from dues_engine.api.routes.payments import router as payments_router
from dues_engine.api.routes.webhooks import router as webhooks_router

__all__ = ["billing_router", "health_router", "payments_router", "webhooks_router"]
