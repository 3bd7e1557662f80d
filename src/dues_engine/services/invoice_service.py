"""Invoice numbering and invoice metadata.

Invoice numbers look like ``INV-{CODE}-{YYYYMM}-{SEQ}``:
    CODE  two letters derived from the organization name
    SEQ   per organization, per month counter, zero-padded to 4 digits
          (wider once it passes 9999)

The counter is advanced with a single atomic upsert statement, so concurrent
callers on any number of instances never receive the same value.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from dues_engine.calculators.periods import (
    months_for_frequency,
    parse_date_in_tz,
    period_end,
    period_end_for_months,
    period_label,
    span_label,
)
from dues_engine.errors import NotFoundError, SequenceError, ValidationError
from dues_engine.models import InvoiceSequence, Organization

logger = logging.getLogger(__name__)

_ORG_PREFIX = re.compile(r"^(organization|islamic\s+cent(?:er|re)|ic)\s+", re.IGNORECASE)
_WORD_SPLIT = re.compile(r"[\s-]+")


def extract_org_code(name: str) -> str:
    """Two-letter invoice code for an organization name.

    "Islamic Center of Fremont" -> "OF", "Al-Nur Masjid" -> "AN",
    "Masjid" -> "MA".
    """
    cleaned = _ORG_PREFIX.sub("", name.strip())
    words = [w for w in _WORD_SPLIT.split(cleaned) if w]
    if len(words) >= 2:
        code = words[0][0] + words[1][0]
    elif words:
        code = words[0][:2]
    else:
        code = "XX"
    return code.upper()


def format_invoice_number(code: str, billing_date: date, sequence: int) -> str:
    return f"INV-{code}-{billing_date:%Y%m}-{sequence:04d}"


@dataclass(frozen=True)
class InvoiceMetadata:
    """Invoice fields stamped onto a payment record."""

    invoice_number: str
    due_date: date
    period_start: date
    period_end: date
    period_label: str
    months_credited: int


class InvoiceService:
    """Allocates invoice numbers and builds invoice metadata."""

    def __init__(self, db: Session):
        self.db = db

    def next_sequence(self, *, organization_id: str | UUID, year_month: str) -> int:
        """Atomically increment (or start at 1) the counter for an org and month.

        Raises:
            SequenceError: if the counter statement fails
        """
        org_id = UUID(str(organization_id))
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise SequenceError(f"Invoice sequences are not supported on dialect '{dialect}'")

        stmt = insert(InvoiceSequence).values(
            organization_id=org_id,
            year_month=year_month,
            last_sequence=1,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[InvoiceSequence.organization_id, InvoiceSequence.year_month],
            set_={"last_sequence": InvoiceSequence.last_sequence + 1},
        ).returning(InvoiceSequence.last_sequence)

        try:
            sequence = self.db.execute(stmt).scalar_one()
        except SQLAlchemyError as exc:
            logger.exception(
                "Failed to reserve invoice number",
                extra={"organization_id": str(org_id), "year_month": year_month},
            )
            raise SequenceError(f"Failed to reserve invoice number: {exc}") from exc

        return int(sequence)

    def generate_invoice_number(
        self,
        *,
        organization_id: str | UUID,
        billing_date: date,
    ) -> str:
        """Allocate the next invoice number for the billing date's month.

        Raises:
            NotFoundError: (a LookupError) if the organization does not exist
            SequenceError: if the counter cannot be advanced
        """
        org = self.db.get(Organization, UUID(str(organization_id)))
        if org is None:
            raise NotFoundError("Organization", organization_id)

        sequence = self.next_sequence(
            organization_id=org.organization_id,
            year_month=f"{billing_date:%Y%m}",
        )
        return format_invoice_number(extract_org_code(org.name), billing_date, sequence)

    def generate_invoice_metadata(
        self,
        *,
        organization_id: str | UUID,
        billing_date: date | str,
        frequency: str,
        timezone: str | None = None,
    ) -> InvoiceMetadata:
        """Invoice metadata for one regular billing cycle starting at billing_date."""
        start = parse_date_in_tz(billing_date, timezone)
        invoice_number = self.generate_invoice_number(
            organization_id=organization_id,
            billing_date=start,
        )
        return InvoiceMetadata(
            invoice_number=invoice_number,
            due_date=start,
            period_start=start,
            period_end=period_end(start, frequency),
            period_label=period_label(start, frequency),
            months_credited=months_for_frequency(frequency),
        )

    def generate_adhoc_invoice_metadata(
        self,
        *,
        organization_id: str | UUID,
        billing_date: date | str,
        months_credited: int,
        timezone: str | None = None,
    ) -> InvoiceMetadata:
        """Invoice metadata for back dues or custom spans of months."""
        if months_credited < 1:
            raise ValidationError("months_credited must be at least 1")
        start = parse_date_in_tz(billing_date, timezone)
        invoice_number = self.generate_invoice_number(
            organization_id=organization_id,
            billing_date=start,
        )
        return InvoiceMetadata(
            invoice_number=invoice_number,
            due_date=start,
            period_start=start,
            period_end=period_end_for_months(start, months_credited),
            period_label=span_label(start, months_credited),
            months_credited=months_credited,
        )
