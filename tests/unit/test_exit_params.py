"""
Unit tests for ExitParameterCalculator (ATR-based SL/TP with percentage clamps).
"""
from decimal import Decimal

import pytest

from spot_engine.config.config import ExitConfig
from spot_engine.domain.models import Direction
from spot_engine.exceptions import MissingATR, ValidationError
from spot_engine.risk.exit_params import ExitParameterCalculator


@pytest.fixture
def calc():
    return ExitParameterCalculator(ExitConfig())


def test_unclamped_distance(calc):
    # 2 * 1.5 = 3 -> 3% of 100, inside [1.5%, 8%]
    p = calc.derive(Direction.LONG, Decimal("100"), Decimal("1.5"), 2, 3)
    assert p.stop_loss == Decimal("97.0")
    assert p.take_profit == Decimal("104.5")
    assert p.clamped is None


def test_distance_clamped_to_minimum(calc):
    p = calc.derive(Direction.LONG, Decimal("100"), Decimal("0.2"), 2, 4)
    assert p.stop_distance == Decimal("1.5")
    assert p.stop_loss == Decimal("98.5")
    # reward keeps the 4:2 ratio on the clamped distance
    assert p.take_profit == Decimal("103.0")
    assert p.clamped == "min"


def test_distance_clamped_to_maximum(calc):
    p = calc.derive(Direction.LONG, Decimal("100"), Decimal("5"), 3, 3)
    assert p.stop_distance == Decimal("8")
    assert p.stop_loss == Decimal("92")
    assert p.take_profit == Decimal("108")
    assert p.clamped == "max"


def test_default_multipliers_when_missing(calc):
    p = calc.derive(Direction.LONG, Decimal("100"), Decimal("1"), None, 0)
    assert p.sl_multiplier == Decimal("2.5")
    assert p.tp_multiplier == Decimal("3.0")
    assert p.stop_loss == Decimal("97.5")
    assert p.take_profit == Decimal("103.0")


@pytest.mark.parametrize("atr", [None, 0, "-1", "abc"])
def test_missing_atr(calc, atr):
    with pytest.raises(MissingATR):
        calc.derive(Direction.LONG, Decimal("100"), atr, 2, 3, symbol="SOL/USDT")


def test_atr_above_ten_percent_of_price(calc):
    with pytest.raises(MissingATR):
        calc.derive(Direction.LONG, Decimal("100"), Decimal("10.5"), 2, 3)


def test_invalid_entry_price(calc):
    with pytest.raises(ValidationError):
        calc.derive(Direction.LONG, Decimal("0"), Decimal("1"), 2, 3)


def test_take_profit_pct(calc):
    p = calc.derive(Direction.LONG, Decimal("100"), Decimal("1.5"), 2, 3)
    assert p.take_profit_pct == Decimal("4.5")


@pytest.mark.parametrize(
    "minutes,expected",
    [(None, 1.5), (0, 1.5), ("junk", 1.5), (30, 1.5), (240, 4.0)],
)
def test_time_exit_floor(calc, minutes, expected):
    assert calc.time_exit_hours(minutes) == expected


def test_bad_stop_bounds_rejected():
    with pytest.raises(ValueError):
        ExitConfig(min_stop_distance_pct=9.0, max_stop_distance_pct=8.0)
