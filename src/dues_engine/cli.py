"""Dues engine command line interface.

Provides operational tools for:
- Recurring billing runs (one organization or all)
- Payment reminder runs
- Schema creation for development databases

Usage:
    python -m dues_engine.cli run-billing --organization-id X --dry-run
    python -m dues_engine.cli run-billing --billing-date 2025-03-01
    python -m dues_engine.cli send-reminders --organization-id X
    python -m dues_engine.cli init-db
"""

from __future__ import annotations

import argparse
import json
import sys
from datetime import date
from typing import Any, Callable
from uuid import UUID

from sqlalchemy.orm import Session, sessionmaker

from dues_engine.config import configure_logging, get_settings
from dues_engine.database import create_schema, init_db, session_scope
from dues_engine.notifications import LoggingNotificationSink
from dues_engine.services.billing_runner import BillingRunner
from dues_engine.services.reminder_service import ReminderService


def parse_date(s: str) -> date:
    """Parse YYYY-MM-DD date string."""
    return date.fromisoformat(s)


def parse_uuid(s: str) -> UUID:
    """Parse UUID string."""
    return UUID(s)


class DuesCli:
    """Dues engine command line interface."""

    def __init__(self, session_factory: sessionmaker[Session] | None = None) -> None:
        self.parser = self._build_parser()
        self._session_factory = session_factory

    @property
    def session_factory(self) -> sessionmaker[Session]:
        if self._session_factory is None:
            self._session_factory = init_db()[1]
        return self._session_factory

    def _build_parser(self) -> argparse.ArgumentParser:
        """Build argument parser."""
        parser = argparse.ArgumentParser(
            prog="python -m dues_engine.cli",
            description="Dues engine operational tools",
        )
        parser.add_argument(
            "--log-level",
            type=str,
            default=None,
            help="Logging level (default: LOG_LEVEL setting)",
        )
        subparsers = parser.add_subparsers(dest="command", help="Commands")

        # run-billing command
        billing = subparsers.add_parser(
            "run-billing",
            help="Create due dues payments and apply lapse/cancel policy",
        )
        billing.add_argument(
            "--organization-id",
            type=parse_uuid,
            help="Organization to bill (default: all organizations)",
        )
        billing.add_argument(
            "--billing-date",
            type=parse_date,
            help="Bill as of this local date (YYYY-MM-DD, default: today)",
        )
        billing.add_argument(
            "--dry-run",
            action="store_true",
            help="Show what would happen without writing anything",
        )

        # send-reminders command
        reminders = subparsers.add_parser(
            "send-reminders",
            help="Send due payment reminders for an organization",
        )
        reminders.add_argument(
            "--organization-id",
            type=parse_uuid,
            required=True,
            help="Organization to send reminders for",
        )
        reminders.add_argument(
            "--today",
            type=parse_date,
            help="Treat this local date as today (YYYY-MM-DD)",
        )

        # init-db command
        subparsers.add_parser(
            "init-db",
            help="Create all tables (development databases only)",
        )

        return parser

    def run(self, args: list[str] | None = None) -> int:
        """Run the CLI with given arguments."""
        parsed = self.parser.parse_args(args)
        configure_logging(parsed.log_level or get_settings().log_level)

        if not parsed.command:
            self.parser.print_help()
            return 1

        # Dispatch to command handler
        handlers: dict[str, Callable[..., int]] = {
            "run-billing": self._cmd_run_billing,
            "send-reminders": self._cmd_send_reminders,
            "init-db": self._cmd_init_db,
        }

        handler = handlers.get(parsed.command)
        if handler:
            return handler(parsed)

        print(f"Unknown command: {parsed.command}", file=sys.stderr)
        return 1

    def _cmd_run_billing(self, args: argparse.Namespace) -> int:
        """Run recurring billing."""
        session = self.session_factory()
        try:
            runner = BillingRunner(session)
            if args.organization_id:
                results = [
                    runner.run_organization(
                        organization_id=args.organization_id,
                        dry_run=args.dry_run,
                        billing_date=args.billing_date,
                    )
                ]
            else:
                results = list(
                    runner.run_all_organizations(
                        dry_run=args.dry_run,
                        billing_date=args.billing_date,
                    ).values()
                )
        finally:
            session.close()

        for result in results:
            self._print_json(result.to_dict())
        return 0 if all(r.success for r in results) else 2

    def _cmd_send_reminders(self, args: argparse.Namespace) -> int:
        """Send due payment reminders."""
        with session_scope(self.session_factory) as session:
            service = ReminderService(session, LoggingNotificationSink())
            result = service.process_organization(
                organization_id=args.organization_id,
                today=args.today,
            )
        self._print_json(result.to_dict())
        return 0 if result.success else 2

    def _cmd_init_db(self, args: argparse.Namespace) -> int:
        """Create tables."""
        engine, _ = init_db()
        create_schema(engine)
        print(f"Schema created on {engine.url.render_as_string(hide_password=True)}")
        return 0

    @staticmethod
    def _print_json(data: dict[str, Any]) -> None:
        print(json.dumps(data, indent=2, default=str))


def main() -> int:
    """CLI entry point."""
    cli = DuesCli()
    return cli.run()


if __name__ == "__main__":
    sys.exit(main())
