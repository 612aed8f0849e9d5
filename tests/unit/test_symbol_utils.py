"""
Tests for spot_engine.data.symbol_utils.
"""
import pytest

from spot_engine.data.symbol_utils import base_asset, exchange_symbol_id, normalize_symbol


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("BTCUSDT", "BTC/USDT"),
        ("btc/usdt", "BTC/USDT"),
        ("BTC-USDT", "BTC/USDT"),
        ("SOL_USDT", "SOL/USDT"),
        ("ETH/USDT:USDT", "ETH/USDT"),
        ("XRP", "XRP/USDT"),
        ("", ""),
    ],
)
def test_normalize_symbol(raw, expected):
    assert normalize_symbol(raw) == expected


def test_exchange_symbol_id():
    assert exchange_symbol_id("btc/usdt") == "BTCUSDT"
    assert exchange_symbol_id("ETHUSDT") == "ETHUSDT"


def test_base_asset():
    assert base_asset("SOL/USDT") == "SOL"
    assert base_asset("SOLUSDT") == "SOL"
    assert base_asset("") == ""
