"""
Shared symbol helpers for spot USDT markets.

- BTCUSDT / BTC-USDT / btc/usdt -> BTC/USDT (ccxt unified)
- BTC/USDT -> BTCUSDT (exchange id form)
- base_asset: BTC/USDT -> BTC

This module is the single source of truth for symbol normalization. Compare symbols
across formats through these helpers rather than with ad-hoc string slicing.
"""
from __future__ import annotations

from spot_engine.constants import QUOTE_ASSET


def normalize_symbol(symbol: str, quote: str = QUOTE_ASSET) -> str:
    """
    Canonical unified form ``BASE/QUOTE``.

    BTCUSDT, BTC-USDT, btc/usdt, BTC_USDT -> BTC/USDT.
    Returns "" for empty input.
    """
    if not symbol:
        return ""
    s = str(symbol).strip().upper().replace("-", "/").replace("_", "/")
    if "/" in s:
        base, _, q = s.partition("/")
        q = q.split(":")[0]
        return f"{base}/{q or quote}"
    if s.endswith(quote) and len(s) > len(quote):
        return f"{s[:-len(quote)]}/{quote}"
    return f"{s}/{quote}"


def exchange_symbol_id(symbol: str, quote: str = QUOTE_ASSET) -> str:
    """BTC/USDT -> BTCUSDT."""
    return normalize_symbol(symbol, quote).replace("/", "")


def base_asset(symbol: str, quote: str = QUOTE_ASSET) -> str:
    """
    Extract the base asset from any symbol format.

    BTC/USDT, BTCUSDT -> BTC.
    """
    unified = normalize_symbol(symbol, quote)
    return unified.split("/")[0] if unified else ""
