"""
Required-holding calculation and deviation evaluation.

Both functions are pure and use exact Decimal arithmetic so that repeated
calls with identical inputs give identical results.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional, Union

from .errors import ConfigError
from .utils import round_to_precision

Number = Union[Decimal, int, str]

ZERO = Decimal("0")
HUNDRED = Decimal("100")
DEFAULT_TOLERANCE_PERCENT = Decimal("5")


class Direction(Enum):
    """Direction of a corrective action."""
    NONE = "none"
    BUY = "buy"     # transfer into the treasury
    SELL = "sell"   # withdraw out of the treasury


@dataclass(frozen=True)
class Deviation:
    direction: Direction
    magnitude: Decimal
    deviation_percent: Decimal

    @property
    def needs_action(self) -> bool:
        return self.direction is not Direction.NONE


def _to_decimal(value: Number, name: str) -> Decimal:
    if isinstance(value, float):
        # floats would leak binary rounding into every requirement
        raise ConfigError(f"{name} must be Decimal, int or str, not float")
    return value if isinstance(value, Decimal) else Decimal(value)


def required_amount(total_supply: Number, weight: int, divisor: int,
                    decimals: Optional[int] = None) -> Decimal:
    """
    Compute the holding of an asset the treasury should carry.

    required = total_supply * weight / divisor

    Args:
        total_supply: Governance asset supply, human scale
        weight: Governance weight of the asset
        divisor: Shared normalisation constant (> 0)
        decimals: If given, round the result down to this precision

    Returns:
        Required amount in human-scale units
    """
    if isinstance(divisor, bool) or not isinstance(divisor, int) or divisor <= 0:
        raise ConfigError(f"divisor must be a positive integer, got {divisor!r}")
    if isinstance(weight, bool) or not isinstance(weight, int) or weight < 0:
        raise ConfigError(f"weight must be a non-negative integer, got {weight!r}")
    supply = _to_decimal(total_supply, "total_supply")
    if supply < 0:
        raise ConfigError(f"total supply must not be negative, got {supply}")

    required = supply * weight / divisor
    if decimals is not None:
        required = round_to_precision(required, decimals)
    return required


def evaluate_deviation(actual: Number, required: Number,
                       tolerance_percent: Number = DEFAULT_TOLERANCE_PERCENT) -> Deviation:
    """
    Compare an actual holding against its requirement.

    Holdings exactly on the tolerance edge count as balanced. A zero
    requirement never produces an action.
    """
    actual = _to_decimal(actual, "actual")
    required = _to_decimal(required, "required")
    tolerance = _to_decimal(tolerance_percent, "tolerance_percent")
    if tolerance < 0:
        raise ConfigError(f"tolerance must not be negative, got {tolerance}")

    if required <= 0:
        return Deviation(Direction.NONE, ZERO, ZERO)

    difference = actual - required
    deviation_percent = abs(difference) / required * HUNDRED
    band = required * tolerance / HUNDRED

    if actual > required + band:
        return Deviation(Direction.SELL, difference, deviation_percent)
    if actual < required - band:
        return Deviation(Direction.BUY, -difference, deviation_percent)
    return Deviation(Direction.NONE, ZERO, deviation_percent)
