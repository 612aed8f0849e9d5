"""
Unit tests for QuantityQuantizer: step flooring, precision, min/max checks.
"""
from decimal import Decimal

import pytest

from spot_engine.domain.models import ExchangeFilter
from spot_engine.exceptions import BelowMinNotional, BelowMinQty, QuantizationError, UnknownSymbol
from spot_engine.execution.exchange_filters import ExchangeFilterCache
from spot_engine.execution.quantizer import (
    QuantityQuantizer,
    floor_to_step,
    format_quantity,
    step_decimal_places,
)


def _quantizer(step="0.001", min_qty="0.01", min_notional="10", max_qty=None, symbol="SOL/USDT"):
    cache = ExchangeFilterCache(None)
    cache.load([
        ExchangeFilter(
            symbol=symbol,
            step_size=Decimal(step),
            min_qty=Decimal(min_qty),
            max_qty=Decimal(max_qty) if max_qty is not None else None,
            min_notional=Decimal(min_notional),
        )
    ])
    return QuantityQuantizer(cache)


def test_quantize_floors_to_step():
    q = _quantizer()
    assert q.quantize("SOL/USDT", Decimal("1.234567"), Decimal("50")) == "1.234"


def test_quantize_accepts_exchange_symbol_format():
    q = _quantizer()
    assert q.quantize("SOLUSDT", "2.0009", "50") == "2"


def test_quantize_never_returns_scientific_notation():
    q = _quantizer(step="1e-05", min_qty="0.00001", min_notional="0", symbol="BTC/USDT")
    out = q.quantize("BTC/USDT", Decimal("0.0000987654"))
    assert out == "0.00009"
    assert "e" not in out.lower()


def test_step_places_from_scientific_step():
    assert step_decimal_places(Decimal("1e-05")) == 5
    assert step_decimal_places(Decimal("0.00100000")) == 3
    assert step_decimal_places(Decimal("1.00000000")) == 0
    assert step_decimal_places(Decimal("10")) == 0


@pytest.mark.parametrize(
    "qty,step",
    [
        ("1.234567", "0.001"),
        ("0.123456789", "0.00001"),
        ("99.99", "0.1"),
        ("7", "2"),
        ("0.30000000000000004", "0.1"),
    ],
)
def test_floored_quantity_is_a_step_multiple_not_above_input(qty, step):
    qty, step = Decimal(qty), Decimal(step)
    out = floor_to_step(qty, step)
    assert out <= qty
    assert out % step == 0


def test_format_quantity_strips_trailing_zeros():
    assert format_quantity(Decimal("1.2000"), 4) == "1.2"
    assert format_quantity(Decimal("5"), 0) == "5"


def test_below_min_qty_raises():
    q = _quantizer()
    with pytest.raises(BelowMinQty):
        q.quantize("SOL/USDT", Decimal("0.005"), Decimal("50"))


def test_below_min_qty_after_flooring_raises():
    q = _quantizer(step="0.01", min_qty="0.015", min_notional="0")
    with pytest.raises(BelowMinQty):
        q.quantize("SOL/USDT", Decimal("0.019"))


def test_below_min_notional_raises():
    q = _quantizer()
    with pytest.raises(BelowMinNotional):
        q.quantize("SOL/USDT", Decimal("0.1"), Decimal("50"))


def test_min_notional_skipped_without_price():
    q = _quantizer()
    assert q.quantize("SOL/USDT", Decimal("0.1")) == "0.1"


def test_above_max_qty_is_clamped():
    q = _quantizer(max_qty="100")
    assert q.quantize("SOL/USDT", Decimal("250.5"), Decimal("50")) == "100"


@pytest.mark.parametrize("raw", [None, "abc", "-1", "0", "NaN"])
def test_invalid_quantity_raises(raw):
    q = _quantizer()
    with pytest.raises(QuantizationError):
        q.quantize("SOL/USDT", raw, Decimal("50"))


def test_unknown_symbol_raises():
    q = _quantizer()
    with pytest.raises(UnknownSymbol):
        q.quantize("DOGE/USDT", Decimal("10"))


def test_meets_minimums_uses_tolerance():
    q = _quantizer()
    assert q.meets_minimums("SOL/USDT", Decimal("0.2"), Decimal("50"))
    assert q.meets_minimums("SOL/USDT", Decimal("0.2") - Decimal("1e-13"), Decimal("50"))
    assert not q.meets_minimums("SOL/USDT", Decimal("0.19"), Decimal("50"))
    assert not q.meets_minimums("DOGE/USDT", Decimal("1"), Decimal("1"))
