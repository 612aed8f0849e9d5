"""
Exchange filter cache: per-symbol lot size and notional constraints.

Loaded from ccxt markets (raw Binance ``info.filters`` first, unified
``limits``/``precision`` as fallback), optionally mirrored to disk, refreshed
on TTL expiry and whenever the trading mode changes.
"""
from __future__ import annotations

import json
import time
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

from spot_engine.constants import QUOTE_ASSET
from spot_engine.data.symbol_utils import normalize_symbol
from spot_engine.domain.models import ExchangeFilter, to_decimal
from spot_engine.exceptions import APIError, UnknownSymbol
from spot_engine.monitoring.logger import get_logger

logger = get_logger(__name__)

CACHE_TTL_SECONDS = 12 * 3600


def _precision_amount_to_step(precision_amount: Any) -> Optional[Decimal]:
    """
    Convert ccxt precision.amount to a step size.
    - Value < 1 (TICK_SIZE precision mode) -> the step itself
    - Whole number (DECIMAL_PLACES mode) -> 10**(-n)
    """
    if precision_amount is None:
        return None
    prec = to_decimal(precision_amount)
    if prec is None or prec <= 0:
        return None
    if prec < 1:
        return prec
    return Decimal("10") ** (-int(prec))


def parse_market_filter(market: Dict[str, Any]) -> Optional[ExchangeFilter]:
    """Build an ExchangeFilter from one ccxt market dict, or None if unusable."""
    symbol = market.get("symbol")
    if not symbol:
        return None

    step = min_qty = max_qty = min_notional = None
    info = market.get("info") or {}
    for f in info.get("filters") or []:
        ftype = f.get("filterType")
        if ftype == "LOT_SIZE":
            step = to_decimal(f.get("stepSize"))
            min_qty = to_decimal(f.get("minQty"))
            max_qty = to_decimal(f.get("maxQty"))
        elif ftype in ("MIN_NOTIONAL", "NOTIONAL"):
            # NOTIONAL superseded MIN_NOTIONAL on Binance spot; take whichever is present
            value = to_decimal(f.get("minNotional"))
            if value is not None and (min_notional is None or ftype == "NOTIONAL"):
                min_notional = value

    limits = market.get("limits") or {}
    if step is None:
        step = _precision_amount_to_step((market.get("precision") or {}).get("amount"))
    if min_qty is None:
        min_qty = to_decimal((limits.get("amount") or {}).get("min"))
    if max_qty is None:
        max_qty = to_decimal((limits.get("amount") or {}).get("max"))
    if min_notional is None:
        min_notional = to_decimal((limits.get("cost") or {}).get("min"))

    if max_qty is not None and max_qty <= 0:
        max_qty = None
    try:
        return ExchangeFilter(
            symbol=normalize_symbol(symbol),
            step_size=step or Decimal("0"),
            min_qty=min_qty or Decimal("0"),
            max_qty=max_qty,
            min_notional=min_notional or Decimal("0"),
        )
    except ValueError as e:
        logger.warning("EXCHANGE_FILTER_INVALID", symbol=symbol, error=str(e))
        return None


class ExchangeFilterCache:
    """
    Symbol -> ExchangeFilter lookup for one trading mode.

    ``get`` never touches the network; call ``refresh`` (or ``ensure_loaded``)
    from the async side first.
    """

    def __init__(
        self,
        client=None,
        trading_mode: str = "testnet",
        cache_ttl_seconds: int = CACHE_TTL_SECONDS,
        cache_path: Optional[Path] = None,
        quote_asset: str = QUOTE_ASSET,
    ):
        self._client = client
        self.trading_mode = trading_mode
        self._cache_ttl = cache_ttl_seconds
        self._cache_path = cache_path
        self._quote = quote_asset
        self._filters: Dict[str, ExchangeFilter] = {}
        self._loaded_at: float = 0

    def __len__(self) -> int:
        return len(self._filters)

    def is_stale(self) -> bool:
        if not self._filters or self._loaded_at == 0:
            return True
        return (time.time() - self._loaded_at) > self._cache_ttl

    def load(self, filters: List[ExchangeFilter]) -> None:
        """Replace the whole snapshot."""
        self._filters = {f.symbol: f for f in filters}
        self._loaded_at = time.time()

    def get(self, symbol: str) -> ExchangeFilter:
        key = normalize_symbol(symbol, self._quote)
        f = self._filters.get(key)
        if f is None:
            raise UnknownSymbol(f"No exchange filter for {key} ({self.trading_mode})")
        return f

    def find(self, symbol: str) -> Optional[ExchangeFilter]:
        return self._filters.get(normalize_symbol(symbol, self._quote))

    def _disk_path(self) -> Optional[Path]:
        if self._cache_path is None:
            return None
        return self._cache_path.with_name(f"{self._cache_path.stem}_{self.trading_mode}{self._cache_path.suffix}")

    def _load_from_disk(self) -> bool:
        path = self._disk_path()
        if path is None or not path.exists():
            return False
        try:
            with open(path) as f:
                data = json.load(f)
            self._filters = {}
            for d in data.get("filters", []):
                ef = ExchangeFilter.from_dict(d)
                self._filters[ef.symbol] = ef
            self._loaded_at = data.get("loaded_at", time.time())
        except (OSError, ValueError, KeyError) as e:
            logger.warning("EXCHANGE_FILTER_CACHE_READ_FAILED", path=str(path), error=str(e))
            return False
        logger.debug("EXCHANGE_FILTERS_LOADED_FROM_DISK", count=len(self._filters), path=str(path))
        return True

    def _save_to_disk(self) -> None:
        path = self._disk_path()
        if path is None:
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w") as f:
                json.dump(
                    {"loaded_at": self._loaded_at, "filters": [x.to_dict() for x in self._filters.values()]},
                    f,
                    indent=2,
                )
        except OSError as e:
            logger.warning("EXCHANGE_FILTER_CACHE_WRITE_FAILED", path=str(path), error=str(e))

    async def refresh(self, force: bool = False) -> int:
        """
        Reload filters from the exchange when stale (or forced).

        Falls back to the disk mirror when the exchange call fails and nothing is
        loaded yet. Raises APIError if neither source yields filters.
        """
        if not force and not self.is_stale():
            return len(self._filters)
        if self._client is None:
            if not self._filters and not self._load_from_disk():
                raise APIError("No exchange client and no cached filters")
            return len(self._filters)

        resp = await self._client.load_markets(reload=force)
        if not resp.ok:
            logger.warning("EXCHANGE_FILTER_REFRESH_FAILED", code=resp.code, error=resp.message)
            if self._filters or self._load_from_disk():
                return len(self._filters)
            raise APIError(f"Failed to load exchange filters: {resp.message}")

        parsed: List[ExchangeFilter] = []
        for market in (resp.payload or {}).values():
            if market.get("spot") is False or market.get("quote") != self._quote:
                continue
            ef = parse_market_filter(market)
            if ef is not None:
                parsed.append(ef)
        self.load(parsed)
        self._save_to_disk()
        logger.info("EXCHANGE_FILTERS_REFRESHED", count=len(parsed), mode=self.trading_mode)
        return len(parsed)

    async def ensure_loaded(self) -> None:
        if self.is_stale():
            await self.refresh()

    async def on_mode_change(self, mode: str) -> int:
        """Drop every filter and reload for ``mode``."""
        self.trading_mode = mode
        self._filters = {}
        self._loaded_at = 0
        logger.info("EXCHANGE_FILTERS_CLEARED", mode=mode)
        return await self.refresh(force=True)
