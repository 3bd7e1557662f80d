"""Billing periods: due dates, period bounds and labels.

Pure date math over ``datetime.date``. All functions are deterministic and
independent of the host timezone; the organization timezone only matters
when deciding what "today" is.

Month arithmetic follows two rules:
    - a day that does not exist in the target month clamps to its last day
      (Jan 31 + 1 month -> Feb 28, or Feb 29 in a leap year)
    - a date on the last day of its month lands on the last day of the
      target month (Feb 28 2025 + 1 month -> Mar 31 2025), so month-end
      anniversaries do not drift

Usage:
    start = parse_date_in_tz("2025-01-15", "America/Los_Angeles")
    end = period_end(start, "monthly")        # 2025-02-14
    label = period_label(start, "monthly")    # "January 2025"
"""

from __future__ import annotations

import calendar
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dues_engine.errors import ValidationError


class BillingFrequency(str, Enum):
    """Billing frequency values."""

    MONTHLY = "monthly"
    BIANNUAL = "biannual"
    ANNUAL = "annual"


MONTHS_PER_FREQUENCY: dict[str, int] = {
    BillingFrequency.MONTHLY.value: 1,
    BillingFrequency.BIANNUAL.value: 6,
    BillingFrequency.ANNUAL.value: 12,
}

MONTH_NAMES = [calendar.month_name[i] for i in range(1, 13)]
MONTH_ABBREVIATIONS = [calendar.month_abbr[i] for i in range(1, 13)]


def _frequency_value(frequency: str | BillingFrequency) -> str:
    if isinstance(frequency, BillingFrequency):
        return frequency.value
    return frequency


def months_for_frequency(frequency: str | BillingFrequency) -> int:
    """Months covered by one billing cycle; 1 for unrecognized values."""
    return MONTHS_PER_FREQUENCY.get(_frequency_value(frequency), 1)


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def is_last_day_of_month(value: date) -> bool:
    return value.day == last_day_of_month(value.year, value.month)


def add_months(value: date, months: int) -> date:
    """Add calendar months with month-end clamping and preservation."""
    total = value.month - 1 + months
    year = value.year + total // 12
    month = total % 12 + 1
    last_day = last_day_of_month(year, month)

    if is_last_day_of_month(value):
        return date(year, month, last_day)
    return date(year, month, min(value.day, last_day))


def parse_date_in_tz(value: str | date, tz: str | None = None) -> date:
    """Parse a YYYY-MM-DD string as a local calendar date.

    The result's year/month/day are exactly the input's; no UTC conversion
    is applied. The timezone is validated so that callers passing a bad
    organization timezone fail here rather than later.
    """
    if tz is not None:
        _zone(tz)
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError as exc:
        raise ValidationError(f"Invalid date '{value}': expected YYYY-MM-DD") from exc


def _zone(tz: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Unknown timezone: {tz}") from exc


def today_in_tz(tz: str, now: datetime | None = None) -> str:
    """Today's date in ``tz`` as YYYY-MM-DD."""
    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.replace(tzinfo=timezone.utc)
    return current.astimezone(_zone(tz)).date().isoformat()


def local_today(tz: str, now: datetime | None = None) -> date:
    """Today's date in ``tz`` as a ``date``."""
    return date.fromisoformat(today_in_tz(tz, now))


def next_billing_date(
    current: date | str,
    frequency: str | BillingFrequency,
    tz: str | None = None,
) -> date:
    """Start of the next billing cycle after ``current``."""
    start = parse_date_in_tz(current, tz)
    return add_months(start, months_for_frequency(frequency))


def period_end(start: date | str, frequency: str | BillingFrequency) -> date:
    """Last day covered by the period starting at ``start``.

    Always ``next_billing_date(start, frequency) - 1 day``.
    """
    return next_billing_date(start, frequency) - timedelta(days=1)


def period_end_for_months(start: date, months: int) -> date:
    """Last day covered by an arbitrary span of ``months`` months."""
    return add_months(start, months) - timedelta(days=1)


def period_label(start: date | str, frequency: str | BillingFrequency) -> str:
    """Human-readable period label for invoices.

    monthly  -> "January 2025"
    biannual -> "Jan 2025 - Jul 2025"
    annual   -> "2025-2026"

    Unknown frequencies are labelled like monthly.
    """
    start = parse_date_in_tz(start)
    freq = _frequency_value(frequency)

    if freq == BillingFrequency.BIANNUAL.value:
        end_month = add_months(start.replace(day=1), 6)
        return (
            f"{MONTH_ABBREVIATIONS[start.month - 1]} {start.year} - "
            f"{MONTH_ABBREVIATIONS[end_month.month - 1]} {end_month.year}"
        )
    if freq == BillingFrequency.ANNUAL.value:
        return f"{start.year}-{start.year + 1}"
    return f"{MONTH_NAMES[start.month - 1]} {start.year}"


def span_label(start: date, months: int) -> str:
    """Label for an ad-hoc span of months.

    Spans matching a standard frequency reuse its label. Other spans read
    "Mar - May 2025" inside one year, "Oct 2025 - May 2026" across years.
    """
    for frequency, count in MONTHS_PER_FREQUENCY.items():
        if months == count:
            return period_label(start, frequency)

    end = period_end_for_months(start, months)
    start_month = MONTH_ABBREVIATIONS[start.month - 1]
    end_month = MONTH_ABBREVIATIONS[end.month - 1]
    if start.year == end.year:
        return f"{start_month} - {end_month} {start.year}"
    return f"{start_month} {start.year} - {end_month} {end.year}"


def days_between(start: date, end: date) -> int:
    """Whole days from ``start`` to ``end`` (negative if ``end`` is earlier)."""
    return (end - start).days


def local_date(moment: datetime, tz: str) -> date:
    """Calendar date of ``moment`` in ``tz``; naive datetimes are taken as UTC."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(_zone(tz)).date()
