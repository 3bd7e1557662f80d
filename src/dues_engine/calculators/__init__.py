"""Pure calculators: billing periods and fees."""

from dues_engine.calculators.fees import (
    FeeBreakdown,
    FeeCalculation,
    calculate_fees,
    cents_to_dollars,
    dollars_to_cents,
    reverse_calculate_base_amount,
)
from dues_engine.calculators.periods import (
    BillingFrequency,
    add_months,
    local_date,
    local_today,
    months_for_frequency,
    next_billing_date,
    parse_date_in_tz,
    period_end,
    period_end_for_months,
    period_label,
    span_label,
    today_in_tz,
)

__all__ = [
    "BillingFrequency",
    "FeeBreakdown",
    "FeeCalculation",
    "add_months",
    "calculate_fees",
    "cents_to_dollars",
    "dollars_to_cents",
    "local_date",
    "local_today",
    "months_for_frequency",
    "next_billing_date",
    "parse_date_in_tz",
    "period_end",
    "period_end_for_months",
    "period_label",
    "reverse_calculate_base_amount",
    "span_label",
    "today_in_tz",
]
