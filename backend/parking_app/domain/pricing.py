from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal

from ..models import PriceType
from .time_range import TimeRange

_BILLING_UNITS: dict[PriceType, timedelta] = {
    PriceType.HOUR: timedelta(hours=1),
    PriceType.DAY: timedelta(days=1),
    PriceType.MONTH: timedelta(days=30),
}

_CENTS = Decimal("0.01")


def billable_units(time_range: TimeRange, price_type: PriceType) -> int:
    """Number of started billing units covered by the range (partial units round up)."""
    unit = _BILLING_UNITS[PriceType(price_type)]
    whole, rest = divmod(time_range.duration, unit)
    return whole + (1 if rest else 0)


def compute_total_cost(time_range: TimeRange, *, price: Decimal, price_type: PriceType) -> Decimal:
    return (Decimal(billable_units(time_range, price_type)) * Decimal(price)).quantize(_CENTS, rounding=ROUND_HALF_UP)
