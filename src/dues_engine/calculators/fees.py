"""Fee calculator for connected-account charges.

All amounts are integer cents; Decimal is used for the percentage math so
that gross-up and reverse calculation are exact inverses. Dollar values
appear only in the display breakdown and in the tenant's platform fee
setting.

Fee policy:
    absorbed      member pays the base; processor and platform fees come
                  out of the organization's share
    pass-through  member pays a grossed-up amount so that, after the
                  processor fee, the organization nets the base amount and
                  the platform still receives its flat fee

The application fee is what the gateway withholds from the transfer to the
connected account: the platform fee plus the processor fee, which the
gateway charges to the platform account.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, ROUND_HALF_UP, Decimal

from dues_engine.errors import ValidationError

PROCESSOR_PERCENT = Decimal("0.029")
PROCESSOR_FIXED_CENTS = 30

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class FeeBreakdown:
    """Display breakdown in dollars."""

    base_amount: Decimal
    stripe_fee: Decimal
    platform_fee: Decimal
    total_fees: Decimal
    charge_amount: Decimal


@dataclass(frozen=True)
class FeeCalculation:
    """Result of a fee calculation. All ``*_cents`` fields are integers."""

    base_amount_cents: int
    charge_amount_cents: int
    processor_fee_cents: int
    platform_fee_cents: int
    application_fee_cents: int
    net_amount_cents: int
    pass_fees_to_member: bool
    breakdown: FeeBreakdown


def cents_to_dollars(cents: int) -> Decimal:
    """Convert integer cents to a two-place Decimal dollar amount."""
    return (Decimal(cents) / 100).quantize(_CENT)


def dollars_to_cents(dollars: Decimal | int | float | str) -> int:
    """Convert a dollar amount to integer cents (half-up)."""
    value = Decimal(str(dollars))
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def processor_fee_cents(charge_amount_cents: int) -> int:
    """Processor fee on a charge: percentage (half-up) plus fixed fee."""
    percent = (Decimal(charge_amount_cents) * PROCESSOR_PERCENT).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return int(percent) + PROCESSOR_FIXED_CENTS


def _validate(amount_cents: int, platform_fee_dollars: Decimal | int | float | str) -> int:
    if amount_cents < 0:
        raise ValidationError("Amount cannot be negative")
    platform_cents = dollars_to_cents(platform_fee_dollars)
    if platform_cents < 0:
        raise ValidationError("Platform fee cannot be negative")
    return platform_cents


def calculate_fees(
    base_amount_cents: int,
    platform_fee_dollars: Decimal | int | float | str = 0,
    pass_fees_to_member: bool = False,
) -> FeeCalculation:
    """Calculate the charge, fees and net amount for a base amount.

    Args:
        base_amount_cents: Dues or fee owed, in cents
        platform_fee_dollars: Tenant's flat platform fee per transaction
        pass_fees_to_member: True to gross up the charge

    Returns:
        FeeCalculation with cents fields and a dollar breakdown
    """
    platform_cents = _validate(base_amount_cents, platform_fee_dollars)

    if pass_fees_to_member:
        gross = (
            Decimal(base_amount_cents + platform_cents + PROCESSOR_FIXED_CENTS)
            / (Decimal(1) - PROCESSOR_PERCENT)
        )
        charge_cents = int(gross.to_integral_value(rounding=ROUND_CEILING))
        stripe_cents = processor_fee_cents(charge_cents)
        net_cents = base_amount_cents
    else:
        charge_cents = base_amount_cents
        stripe_cents = processor_fee_cents(charge_cents)
        net_cents = base_amount_cents - stripe_cents - platform_cents

    breakdown = FeeBreakdown(
        base_amount=cents_to_dollars(base_amount_cents),
        stripe_fee=cents_to_dollars(stripe_cents),
        platform_fee=cents_to_dollars(platform_cents),
        total_fees=cents_to_dollars(stripe_cents + platform_cents),
        charge_amount=cents_to_dollars(charge_cents),
    )

    return FeeCalculation(
        base_amount_cents=base_amount_cents,
        charge_amount_cents=charge_cents,
        processor_fee_cents=stripe_cents,
        platform_fee_cents=platform_cents,
        application_fee_cents=platform_cents + stripe_cents,
        net_amount_cents=net_cents,
        pass_fees_to_member=pass_fees_to_member,
        breakdown=breakdown,
    )


def reverse_calculate_base_amount(
    charge_amount_cents: int,
    platform_fee_dollars: Decimal | int | float | str = 0,
    pass_fees_to_member: bool = True,
) -> int:
    """Recover the base amount from a known charge total.

    Exact inverse of ``calculate_fees``: for any base B,
    ``reverse_calculate_base_amount(calculate_fees(B, p, f).charge_amount_cents, p, f) == B``.
    """
    platform_cents = _validate(charge_amount_cents, platform_fee_dollars)

    if not pass_fees_to_member:
        return charge_amount_cents

    base = (
        Decimal(charge_amount_cents) * (Decimal(1) - PROCESSOR_PERCENT)
        - platform_cents
        - PROCESSOR_FIXED_CENTS
    )
    return max(0, int(base.to_integral_value(rounding=ROUND_FLOOR)))
