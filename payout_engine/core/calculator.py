"""
Payout calculator.

Pure functions, no I/O:
- CPM payout with the campaign view cap applied
- Fee breakdown per rail (platform fee + processing fee)

FeeSchedule is the only place fee percentages live.
"""
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, Union

from payout_engine.core.exceptions import ValidationError
from payout_engine.database.models import Rail

CENT = Decimal("0.01")
THOUSAND = Decimal(1000)

Number = Union[Decimal, int, float, str]


def to_money(value: Number) -> Decimal:
    """Quantize a value to cents using round-half-up."""
    return _to_decimal(value, "amount").quantize(CENT, rounding=ROUND_HALF_UP)


def _to_decimal(value: Number, field_name: str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        # str() first so floats keep their printed value (0.1 not 0.1000000000000000055)
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"{field_name} must be numeric", field=field_name) from e


def calculate_payout(views: int, cpm_rate: Number, max_views: int) -> Decimal:
    """
    Convert tracked views into a payout amount under a CPM contract.

    Args:
        views: Tracked views (current total)
        cpm_rate: Currency amount per 1,000 views
        max_views: Campaign view cap

    Returns:
        Decimal: min(views, max_views) / 1000 * cpm_rate, rounded half-up to cents

    Raises:
        ValidationError: On negative inputs
    """
    rate = _to_decimal(cpm_rate, "cpm_rate")
    if views < 0:
        raise ValidationError("views cannot be negative", field="views")
    if max_views < 0:
        raise ValidationError("max_views cannot be negative", field="max_views")
    if rate < 0:
        raise ValidationError("cpm_rate cannot be negative", field="cpm_rate")

    effective_views = min(views, max_views)
    return to_money(Decimal(effective_views) / THOUSAND * rate)


def campaign_budget(cpm_rate: Number, max_views: int) -> Decimal:
    """Largest payout a campaign can produce."""
    return calculate_payout(max_views, cpm_rate, max_views)


@dataclass(frozen=True)
class FeeBreakdown:
    """Fee split for one gross amount. Always exactly additive."""

    gross: Decimal
    platform_fee: Decimal
    processing_fee: Decimal
    total_fees: Decimal
    net_amount: Decimal

    def as_dict(self) -> Dict[str, str]:
        return {
            "gross": str(self.gross),
            "platform_fee": str(self.platform_fee),
            "processing_fee": str(self.processing_fee),
            "total_fees": str(self.total_fees),
            "net_amount": str(self.net_amount),
        }


def _default_processing_rates() -> Dict[Rail, Decimal]:
    return {
        Rail.ACH: Decimal("0.01"),
        Rail.PAYPAL: Decimal("0.029"),
        Rail.CRYPTO: Decimal("0.015"),
    }


@dataclass(frozen=True)
class FeeSchedule:
    """
    Platform and per-rail processing fee rates.

    The default instance carries the production rates: 10% platform fee on
    every rail, processing 1% ACH, 2.9% PayPal, 1.5% crypto.
    """

    platform_rate: Decimal = Decimal("0.10")
    processing_rates: Dict[Rail, Decimal] = field(default_factory=_default_processing_rates)

    def processing_rate(self, rail: Union[Rail, str]) -> Decimal:
        try:
            return self.processing_rates[Rail(rail)]
        except (KeyError, ValueError) as e:
            raise ValidationError(f"Unsupported payment rail: {rail}", field="rail") from e

    def compute_fees(self, gross: Number, rail: Union[Rail, str]) -> FeeBreakdown:
        """
        Split a gross amount into platform fee, processing fee and net.

        Each fee is rounded half-up to cents and net is derived by
        subtraction, so platform_fee + processing_fee + net_amount == gross.

        Raises:
            ValidationError: On non-positive gross or unknown rail
        """
        gross_amount = to_money(gross)
        if gross_amount <= 0:
            raise ValidationError("Amount must be positive", field="amount")

        platform_fee = to_money(gross_amount * self.platform_rate)
        processing_fee = to_money(gross_amount * self.processing_rate(rail))
        total_fees = platform_fee + processing_fee

        return FeeBreakdown(
            gross=gross_amount,
            platform_fee=platform_fee,
            processing_fee=processing_fee,
            total_fees=total_fees,
            net_amount=gross_amount - total_fees,
        )


DEFAULT_FEE_SCHEDULE = FeeSchedule()


def compute_fees(gross: Number, rail: Union[Rail, str]) -> FeeBreakdown:
    """Fee breakdown under the default schedule."""
    return DEFAULT_FEE_SCHEDULE.compute_fees(gross, rail)
