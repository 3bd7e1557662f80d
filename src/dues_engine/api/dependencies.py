"""FastAPI dependencies for dependency injection."""

from collections.abc import Iterator
from functools import lru_cache
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session, sessionmaker

from dues_engine.config import get_settings
from dues_engine.database import init_db
from dues_engine.notifications import LoggingNotificationSink, NotificationSink
from dues_engine.providers import PaymentGateway, StripeGateway
from dues_engine.webhooks import WebhookProcessor


def get_session_factory() -> sessionmaker[Session]:
    """Session factory for the configured database."""
    return init_db()[1]


def get_db_session(
    factory: Annotated[sessionmaker[Session], Depends(get_session_factory)],
) -> Iterator[Session]:
    """Get database session dependency. Routes commit their own work."""
    session = factory()
    try:
        yield session
    finally:
        session.close()


def get_tenant_id(x_tenant_id: Annotated[str | None, Header()] = None) -> UUID:
    """Extract tenant (organization) ID from header."""
    if not x_tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Tenant-ID header is required",
        )
    try:
        return UUID(x_tenant_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid X-Tenant-ID format",
        )


def get_optional_tenant_id(x_tenant_id: Annotated[str | None, Header()] = None) -> UUID | None:
    """Tenant ID when supplied; None for platform-wide operations."""
    if not x_tenant_id:
        return None
    return get_tenant_id(x_tenant_id)


@lru_cache
def get_gateway() -> PaymentGateway:
    """Stripe adapter, verifying webhooks with the configured secret."""
    settings = get_settings()
    return StripeGateway(
        settings.require_stripe_secret_key(),
        settings.require_webhook_secret(),
        timeout_seconds=settings.gateway_timeout_seconds,
        tolerance=settings.webhook_tolerance_seconds,
    )


@lru_cache
def get_notifier() -> NotificationSink:
    return LoggingNotificationSink()


def get_webhook_processor(
    factory: Annotated[sessionmaker[Session], Depends(get_session_factory)],
    gateway: Annotated[PaymentGateway, Depends(get_gateway)],
    notifier: Annotated[NotificationSink, Depends(get_notifier)],
) -> WebhookProcessor:
    return WebhookProcessor(factory, gateway, notifier)


# Type aliases for cleaner dependency injection
DbSession = Annotated[Session, Depends(get_db_session)]
TenantId = Annotated[UUID, Depends(get_tenant_id)]
OptionalTenantId = Annotated[UUID | None, Depends(get_optional_tenant_id)]
Notifier = Annotated[NotificationSink, Depends(get_notifier)]
Processor = Annotated[WebhookProcessor, Depends(get_webhook_processor)]
