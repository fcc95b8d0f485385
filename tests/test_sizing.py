from decimal import Decimal

import pytest

from signal_engine.sizing import InvalidRiskDistance, PositionSize, calculate_position_size


def test_reference_example():
    result = calculate_position_size(
        portfolio_value=Decimal("1000"),
        risk_percentage=Decimal("1"),
        entry_price=Decimal("0.300"),
        stop_loss_price=Decimal("0.297"),
    )
    assert result == PositionSize(size=Decimal("3333.333333"), leverage=20)


def test_short_uses_absolute_risk_distance():
    long = calculate_position_size(Decimal("1000"), Decimal("1"), Decimal("100"), Decimal("98"))
    short = calculate_position_size(Decimal("1000"), Decimal("1"), Decimal("100"), Decimal("102"))
    assert long == short
    assert long.size == Decimal("5.000000")


def test_equal_entry_and_stop_raises():
    with pytest.raises(InvalidRiskDistance):
        calculate_position_size(Decimal("1000"), Decimal("1"), Decimal("100"), Decimal("100"))


def test_margin_cap_limits_size():
    # risk 10% with a 0.1% stop wants 100x the portfolio; margin is capped at 80%
    result = calculate_position_size(Decimal("1000"), Decimal("10"), Decimal("100"), Decimal("99.9"))
    assert result.leverage == 20
    assert result.size == Decimal("160.000000")
    assert result.size * Decimal("100") / result.leverage <= Decimal("800")


def test_custom_leverage_cap():
    result = calculate_position_size(Decimal("1000"), Decimal("1"), Decimal("100"), Decimal("98"), max_leverage=5)
    assert result.leverage == 5
    assert result.size == Decimal("5.000000")


@pytest.mark.parametrize("entry,stop,risk", [
    ("0.300", "0.297", "1"),
    ("100", "50", "1"),
    ("100", "99.99", "10"),
    ("2500", "2400", "0.5"),
    ("1", "2", "50"),
])
def test_leverage_and_margin_within_bounds(entry, stop, risk):
    pv = Decimal("1000")
    result = calculate_position_size(pv, Decimal(risk), Decimal(entry), Decimal(stop))
    assert 1 <= result.leverage <= 20
    margin = result.size * Decimal(entry) / result.leverage
    assert margin <= pv * Decimal("0.8") + Decimal("0.01")


def test_size_rounded_to_six_decimals():
    result = calculate_position_size(Decimal("1000"), Decimal("1"), Decimal("3"), Decimal("2.9"))
    assert result.size == result.size.quantize(Decimal("0.000001"))


@pytest.mark.parametrize("kwargs", [
    {"portfolio_value": Decimal("0")},
    {"risk_percentage": Decimal("-1")},
    {"entry_price": Decimal("0")},
])
def test_non_positive_inputs_rejected(kwargs):
    args = {
        "portfolio_value": Decimal("1000"),
        "risk_percentage": Decimal("1"),
        "entry_price": Decimal("100"),
        "stop_loss_price": Decimal("98"),
    }
    args.update(kwargs)
    with pytest.raises(ValueError):
        calculate_position_size(**args)
