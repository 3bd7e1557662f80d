"""Tests for billing period calculations."""

from datetime import date, datetime, timedelta, timezone

import pytest
from hypothesis import given
from hypothesis import strategies as st

from dues_engine.calculators.periods import (
    add_months,
    is_last_day_of_month,
    local_date,
    local_today,
    months_for_frequency,
    next_billing_date,
    parse_date_in_tz,
    period_end,
    period_label,
    span_label,
    today_in_tz,
)
from dues_engine.errors import ValidationError

FREQUENCIES = ["monthly", "biannual", "annual"]
dates = st.dates(min_value=date(2000, 1, 1), max_value=date(2099, 12, 31))


class TestMonthsForFrequency:
    """Frequency to month-count mapping."""

    def test_known_frequencies(self):
        """monthly=1, biannual=6, annual=12."""
        assert months_for_frequency("monthly") == 1
        assert months_for_frequency("biannual") == 6
        assert months_for_frequency("annual") == 12

    def test_unknown_frequency_defaults_to_one(self):
        """Unknown frequencies are treated as monthly."""
        assert months_for_frequency("weekly") == 1


class TestAddMonths:
    """Calendar month arithmetic."""

    def test_clamps_to_shorter_month(self):
        """Jan 31 + 1 month lands on the last day of February."""
        assert add_months(date(2025, 1, 31), 1) == date(2025, 2, 28)
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)

    def test_mid_month_day_preserved(self):
        """A mid-month day keeps its day number."""
        assert add_months(date(2025, 1, 15), 1) == date(2025, 2, 15)
        assert add_months(date(2025, 11, 15), 3) == date(2026, 2, 15)

    def test_month_end_is_preserved(self):
        """A due date on the last day of a month stays on the last day."""
        assert add_months(date(2025, 2, 28), 1) == date(2025, 3, 31)
        assert add_months(date(2025, 4, 30), 2) == date(2025, 6, 30)

    def test_negative_months(self):
        """Subtracting months crosses year boundaries."""
        assert add_months(date(2025, 3, 1), -24) == date(2023, 3, 1)
        assert add_months(date(2025, 1, 15), -1) == date(2024, 12, 15)

    @given(start=dates, months=st.integers(min_value=-240, max_value=240))
    def test_lands_in_expected_month(self, start, months):
        """The result is always in the month ``months`` away."""
        result = add_months(start, months)
        assert (result.year * 12 + result.month) - (start.year * 12 + start.month) == months

    @given(start=dates, months=st.integers(min_value=0, max_value=240))
    def test_month_end_maps_to_month_end(self, start, months):
        """Last-day-of-month inputs always produce last-day-of-month outputs."""
        if is_last_day_of_month(start):
            assert is_last_day_of_month(add_months(start, months))


class TestPeriodEnd:
    """Period end dates."""

    @pytest.mark.parametrize(
        "start,frequency,expected",
        [
            (date(2025, 1, 1), "monthly", date(2025, 1, 31)),
            (date(2025, 1, 15), "monthly", date(2025, 2, 14)),
            (date(2025, 1, 1), "biannual", date(2025, 6, 30)),
            (date(2025, 1, 1), "annual", date(2025, 12, 31)),
            (date(2024, 2, 29), "annual", date(2025, 2, 27)),
        ],
    )
    def test_examples(self, start, frequency, expected):
        """Known period ends."""
        assert period_end(start, frequency) == expected

    @given(start=dates, frequency=st.sampled_from(FREQUENCIES))
    def test_end_is_day_before_next_start(self, start, frequency):
        """period_end is always next_billing_date minus one day."""
        assert period_end(start, frequency) == next_billing_date(start, frequency) - timedelta(days=1)


class TestPeriodLabel:
    """Invoice period labels."""

    def test_monthly(self):
        assert period_label(date(2025, 1, 1), "monthly") == "January 2025"

    def test_biannual(self):
        """Biannual labels show the month six months on."""
        assert period_label(date(2025, 1, 1), "biannual") == "Jan 2025 - Jul 2025"
        assert period_label(date(2025, 9, 1), "biannual") == "Sep 2025 - Mar 2026"

    def test_annual(self):
        assert period_label(date(2025, 1, 1), "annual") == "2025-2026"

    def test_unknown_frequency_labels_like_monthly(self):
        assert period_label("2025-05-10", "weekly") == "May 2025"

    def test_span_inside_one_year(self):
        """Custom spans within a year show the year once."""
        assert span_label(date(2025, 3, 1), 3) == "Mar - May 2025"

    def test_span_across_years(self):
        """Custom spans across years show both years."""
        assert span_label(date(2025, 10, 1), 8) == "Oct 2025 - May 2026"

    def test_span_matching_frequency_reuses_label(self):
        assert span_label(date(2025, 1, 1), 12) == "2025-2026"


class TestTimezones:
    """Local-date handling."""

    def test_parse_keeps_calendar_date(self):
        """A YYYY-MM-DD string is never shifted by timezone conversion."""
        assert parse_date_in_tz("2025-01-01", "Pacific/Kiritimati") == date(2025, 1, 1)
        assert parse_date_in_tz("2025-01-01", "Pacific/Pago_Pago") == date(2025, 1, 1)

    def test_parse_invalid_date(self):
        with pytest.raises(ValidationError):
            parse_date_in_tz("2025-13-01")

    def test_unknown_timezone(self):
        with pytest.raises(ValidationError):
            parse_date_in_tz("2025-01-01", "Mars/Olympus_Mons")

    def test_today_in_tz_uses_local_calendar(self):
        """At 02:00 UTC it is still the previous day in Los Angeles."""
        now = datetime(2025, 3, 1, 2, 0, tzinfo=timezone.utc)
        assert today_in_tz("America/Los_Angeles", now) == "2025-02-28"
        assert today_in_tz("Asia/Tehran", now) == "2025-03-01"
        assert local_today("America/Los_Angeles", now) == date(2025, 2, 28)

    def test_local_date_treats_naive_as_utc(self):
        naive = datetime(2025, 3, 1, 2, 0)
        assert local_date(naive, "America/Los_Angeles") == date(2025, 2, 28)
