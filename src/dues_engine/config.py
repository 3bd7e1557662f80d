"""Configuration management for the dues engine.

Two layers:
    Settings       process-wide, loaded from the environment (and .env)
    BillingConfig  per-organization billing policy, passed into services

Usage:
    settings = get_settings()
    config = BillingConfig.from_mapping(org.billing_settings)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from functools import lru_cache
from typing import Any, Mapping

from dotenv import load_dotenv

from dues_engine.errors import ConfigurationError

DEFAULT_TIMEZONE = "America/Los_Angeles"


@dataclass(frozen=True)
class Settings:
    """Application settings loaded from environment."""

    database_url: str
    stripe_secret_key: str | None
    webhook_secret: str | None
    webhook_tolerance_seconds: int
    default_timezone: str
    gateway_timeout_seconds: float
    host: str
    port: int
    debug: bool
    log_level: str

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment variables."""
        load_dotenv()

        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///./dues_engine.db"),
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY") or None,
            webhook_secret=os.getenv("WEBHOOK_SECRET") or None,
            webhook_tolerance_seconds=int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300")),
            default_timezone=os.getenv("DEFAULT_TIMEZONE", DEFAULT_TIMEZONE),
            gateway_timeout_seconds=float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "10")),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
            debug=os.getenv("DEBUG", "false").lower() == "true",
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    def require_webhook_secret(self) -> str:
        """Return the webhook secret or fail loudly."""
        if not self.webhook_secret:
            raise ConfigurationError("WEBHOOK_SECRET is not configured")
        return self.webhook_secret

    def require_stripe_secret_key(self) -> str:
        """Return the Stripe API key or fail loudly."""
        if not self.stripe_secret_key:
            raise ConfigurationError("STRIPE_SECRET_KEY is not configured")
        return self.stripe_secret_key


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings.from_env()


def configure_logging(level: str | int = "INFO") -> None:
    """Configure root logging for the CLI and API entry points."""
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Tenant overrides may be stored with the keys the admin UI uses.
_CAMEL_CASE_KEYS = {
    "lapseDays": "lapse_days",
    "cancelMonths": "cancel_months",
    "eligibilityMonths": "eligibility_months",
    "reminderSchedule": "reminder_schedule",
    "maxReminders": "max_reminders",
    "sendInvoiceReminders": "send_invoice_reminders",
}


@dataclass(frozen=True)
class BillingConfig:
    """
    Per-organization billing policy.

    Attributes:
        lapse_days: Days past the due date before a current membership
            becomes lapsed. Default 7.
        cancel_months: Months past the due date before a lapsed membership
            is cancelled. Default 24.
        eligibility_months: Paid months required for benefit eligibility.
            Default 60.
        reminder_schedule: Days after the due date at which the 1st, 2nd,
            3rd... reminder is sent. Default (3, 7, 14).
        max_reminders: Reminders sent before a payment is flagged for review.
        send_invoice_reminders: Master switch for reminder emails.
    """

    lapse_days: int = 7
    cancel_months: int = 24
    eligibility_months: int = 60
    reminder_schedule: tuple[int, ...] = (3, 7, 14)
    max_reminders: int = 3
    send_invoice_reminders: bool = True

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.lapse_days < 0:
            raise ConfigurationError("lapse_days cannot be negative")
        if self.cancel_months < 1:
            raise ConfigurationError("cancel_months must be at least 1")
        if self.eligibility_months < 1:
            raise ConfigurationError("eligibility_months must be at least 1")
        if self.max_reminders < 0:
            raise ConfigurationError("max_reminders cannot be negative")
        if not self.reminder_schedule:
            raise ConfigurationError("reminder_schedule cannot be empty")
        if any(day < 0 for day in self.reminder_schedule):
            raise ConfigurationError("reminder_schedule entries cannot be negative")
        if list(self.reminder_schedule) != sorted(self.reminder_schedule):
            raise ConfigurationError("reminder_schedule must be ascending")

    @classmethod
    def from_mapping(cls, overrides: Mapping[str, Any] | None) -> BillingConfig:
        """Merge stored overrides over the defaults.

        Unknown keys are ignored so older rows keep loading.
        """
        if not overrides:
            return cls()

        known = {f.name for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, value in overrides.items():
            name = _CAMEL_CASE_KEYS.get(key, key)
            if name in known and value is not None:
                values[name] = value

        if "reminder_schedule" in values:
            values["reminder_schedule"] = tuple(int(d) for d in values["reminder_schedule"])
        return cls(**values)
