"""
Risk-based position sizing.

Pure computation, no I/O. Size is derived from the amount of the portfolio
the trader is willing to lose if the stop-loss is hit; leverage and margin
usage are then capped independently, so a very tight stop cannot produce an
arbitrarily large leverage.

Examples:
    >>> from decimal import Decimal
    >>> calculate_position_size(
    ...     portfolio_value=Decimal("1000"),
    ...     risk_percentage=Decimal("1"),
    ...     entry_price=Decimal("0.300"),
    ...     stop_loss_price=Decimal("0.297"),
    ... )
    PositionSize(size=Decimal('3333.333333'), leverage=20)
"""

from dataclasses import dataclass
from decimal import ROUND_FLOOR, ROUND_HALF_UP, Decimal
from typing import Union

MAX_LEVERAGE = 20
MARGIN_CAP_RATIO = Decimal("0.8")
SIZE_PRECISION = Decimal("0.000001")

Number = Union[Decimal, int, float, str]


class InvalidRiskDistance(ValueError):
    """Raised when entry and stop-loss are equal (zero risk per unit)."""
    pass


@dataclass(frozen=True)
class PositionSize:
    size: Decimal
    leverage: int


def _dec(value: Number) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def calculate_position_size(
    portfolio_value: Number,
    risk_percentage: Number,
    entry_price: Number,
    stop_loss_price: Number,
    max_leverage: int = MAX_LEVERAGE,
    margin_cap_ratio: Number = MARGIN_CAP_RATIO,
) -> PositionSize:
    """Compute order size and leverage for a trade.

    Args:
        portfolio_value: Account value available for the trade
        risk_percentage: Percent of portfolio_value lost if the stop is hit
        entry_price: Expected fill price
        stop_loss_price: Initial stop-loss price
        max_leverage: Leverage cap (integer >= 1)
        margin_cap_ratio: Max fraction of portfolio_value used as margin

    Returns:
        PositionSize with size rounded to 6 decimals and integer leverage >= 1

    Raises:
        InvalidRiskDistance: If entry_price == stop_loss_price
        ValueError: If portfolio value, risk or entry price are not positive
    """
    portfolio_value = _dec(portfolio_value)
    risk_percentage = _dec(risk_percentage)
    entry_price = _dec(entry_price)
    stop_loss_price = _dec(stop_loss_price)
    margin_cap_ratio = _dec(margin_cap_ratio)

    if portfolio_value <= 0:
        raise ValueError(f"Portfolio value must be positive, got {portfolio_value}")
    if risk_percentage <= 0:
        raise ValueError(f"Risk percentage must be positive, got {risk_percentage}")
    if entry_price <= 0:
        raise ValueError(f"Entry price must be positive, got {entry_price}")
    if max_leverage < 1:
        raise ValueError(f"Max leverage must be >= 1, got {max_leverage}")

    risk_amount = portfolio_value * risk_percentage / Decimal(100)

    risk_per_unit = abs(entry_price - stop_loss_price)
    if risk_per_unit == 0:
        raise InvalidRiskDistance(
            f"Entry ({entry_price}) equals stop loss ({stop_loss_price}); risk per unit is zero"
        )

    raw_units = risk_amount / risk_per_unit
    position_value = raw_units * entry_price

    cap = Decimal(max_leverage)
    required_margin = position_value / cap
    margin_cap = portfolio_value * margin_cap_ratio
    if required_margin <= margin_cap:
        actual_margin = required_margin
        # position_value / required_margin is exactly the cap; dividing would
        # reintroduce rounding error and floor 19.999... down to 19
        raw_leverage = cap
    else:
        actual_margin = margin_cap
        raw_leverage = position_value / actual_margin

    leverage = min(cap, max(Decimal(1), raw_leverage))
    leverage = leverage.to_integral_value(rounding=ROUND_FLOOR)

    final_size = (actual_margin * leverage) / entry_price
    final_size = final_size.quantize(SIZE_PRECISION, rounding=ROUND_HALF_UP)

    return PositionSize(size=final_size, leverage=int(leverage))
