"""
Usage Cost Calculator

Maps call duration to a monetary cost:
    cost = round4(usage_seconds * rate_per_unit / unit_seconds)

Pure and deterministic: Decimal arithmetic, ROUND_HALF_UP at 4 places.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Union

from ..errors import ValidationError

Number = Union[int, float, str, Decimal]


class CostCalculator:
    """
    Prices metered usage.

    Default pricing is $2.00 per 600 seconds (10 minutes) of call time.
    """

    PRECISION = Decimal("0.0001")
    ZERO = Decimal("0.0000")

    def __init__(self, unit_seconds: int = 600, rate_per_unit: Number = Decimal("2.00")):
        if int(unit_seconds) <= 0:
            raise ValidationError("unit_seconds must be positive")
        self.unit_seconds = int(unit_seconds)
        self.rate_per_unit = _to_decimal(rate_per_unit, "rate_per_unit")
        if self.rate_per_unit < 0:
            raise ValidationError("rate_per_unit must not be negative")

    @staticmethod
    def normalize_seconds(usage_seconds: Number) -> int:
        """Round a duration to whole seconds (half up)."""
        seconds = _to_decimal(usage_seconds, "usage_seconds")
        return int(seconds.quantize(Decimal("1"), rounding=ROUND_HALF_UP))

    def cost(self, usage_seconds: Number) -> Decimal:
        """Cost of a usage duration. Zero or negative durations cost nothing."""
        seconds = _to_decimal(usage_seconds, "usage_seconds")
        if seconds <= 0:
            return self.ZERO

        # Multiply before dividing so exact halves stay exact
        raw = seconds * self.rate_per_unit / Decimal(self.unit_seconds)
        return raw.quantize(self.PRECISION, rounding=ROUND_HALF_UP)


def _to_decimal(value: Number, name: str) -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a number")
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError(f"{name} must be a number, got {value!r}")
    if not result.is_finite():
        raise ValidationError(f"{name} must be finite")
    return result
