"""
Pytest configuration and shared fixtures.
"""
import os

# In-memory SQLite for every test (must be set before spot_engine imports).
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, List, Optional

import pytest

from spot_engine.config.config import Config
from spot_engine.domain.models import Balance, ExchangeResponse, Position
from spot_engine.execution.exchange_filters import ExchangeFilterCache, parse_market_filter
from spot_engine.execution.quantizer import QuantityQuantizer
from spot_engine.storage.db import init_db, reset_db


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


def spot_market(symbol: str, step: str, min_qty: str, min_notional: str, max_qty: str = "9000000.00000000") -> dict:
    """ccxt market dict shaped like Binance spot ``load_markets`` output."""
    base, quote = symbol.split("/")
    return {
        "symbol": symbol,
        "base": base,
        "quote": quote,
        "spot": True,
        "info": {
            "symbol": f"{base}{quote}",
            "filters": [
                {"filterType": "LOT_SIZE", "stepSize": step, "minQty": min_qty, "maxQty": max_qty},
                {"filterType": "NOTIONAL", "minNotional": min_notional},
            ],
        },
    }


DEFAULT_MARKETS = {
    "BTC/USDT": spot_market("BTC/USDT", "0.00001000", "0.00001000", "5.00000000"),
    "ETH/USDT": spot_market("ETH/USDT", "0.00010000", "0.00010000", "5.00000000"),
    "SOL/USDT": spot_market("SOL/USDT", "0.00100000", "0.01000000", "10.00000000"),
    "XRP/USDT": spot_market("XRP/USDT", "1.00000000", "1.00000000", "5.00000000"),
}


class FakeExchangeClient:
    """
    In-memory stand-in for ExchangeClient.

    Market orders fill at ``prices`` and move balances unless a scripted
    response is queued in ``order_responses`` (``None`` entries mean "fill").
    """

    def __init__(self, balances=None, prices=None, markets=None, trading_mode: str = "testnet"):
        self.trading_mode = trading_mode
        self.balances: Dict[str, Decimal] = {
            k.upper(): Decimal(str(v)) for k, v in (balances if balances is not None else {"USDT": "1000"}).items()
        }
        self.locked: Dict[str, Decimal] = {}
        self.prices: Dict[str, Decimal] = {k: Decimal(str(v)) for k, v in (prices or {}).items()}
        self.markets = markets if markets is not None else dict(DEFAULT_MARKETS)
        self.order_responses: List[Optional[ExchangeResponse]] = []
        self.order_status: Dict[str, ExchangeResponse] = {}
        self.history: Dict[str, List[dict]] = {}
        self.submitted: List[tuple] = []
        self.fail_balances = False
        self.balance_reads = 0
        self.initialized = False
        self.closed = False
        self._seq = 0

    async def initialize(self):
        self.initialized = True

    async def close(self):
        self.closed = True

    async def load_markets(self, reload: bool = False) -> ExchangeResponse:
        return ExchangeResponse.success(self.markets)

    async def fetch_balances(self, fresh: bool = False) -> ExchangeResponse:
        self.balance_reads += 1
        if self.fail_balances:
            return ExchangeResponse.failure("NETWORK", "fetch_balance timed out", transient=True)
        out = {}
        for asset in set(self.balances) | set(self.locked):
            b = Balance(
                asset=asset,
                free=self.balances.get(asset, Decimal("0")),
                locked=self.locked.get(asset, Decimal("0")),
            )
            if b.total > 0:
                out[asset] = b
        return ExchangeResponse.success(out)

    async def fetch_free_balance(self, asset: str, fresh: bool = True) -> ExchangeResponse:
        resp = await self.fetch_balances(fresh=fresh)
        if not resp.ok:
            return resp
        b = resp.payload.get(asset.upper())
        return ExchangeResponse.success(b.free if b else Decimal("0"))

    async def fetch_ticker_price(self, symbol: str) -> ExchangeResponse:
        px = self.prices.get(symbol)
        if px is None:
            return ExchangeResponse.failure("UNKNOWN", f"No price in ticker for {symbol}")
        return ExchangeResponse.success(px)

    async def fetch_order(self, order_id: str, symbol: str) -> ExchangeResponse:
        resp = self.order_status.get(order_id)
        if resp is None:
            return ExchangeResponse.failure("-2013", "Order does not exist.", status=404)
        return resp

    async def fetch_recent_orders(self, symbol: str, since_ms=None, limit: int = 50) -> ExchangeResponse:
        return ExchangeResponse.success(list(self.history.get(symbol, [])))

    def fill(self, symbol: str, side: str, qty: Decimal, price: Optional[Decimal] = None) -> dict:
        self._seq += 1
        px = price if price is not None else self.prices[symbol]
        base, quote = symbol.split("/")
        cost = qty * px
        if side == "buy":
            self.balances[base] = self.balances.get(base, Decimal("0")) + qty
            self.balances[quote] = self.balances.get(quote, Decimal("0")) - cost
        else:
            self.balances[base] = self.balances.get(base, Decimal("0")) - qty
            self.balances[quote] = self.balances.get(quote, Decimal("0")) + cost
        order = {
            "id": str(1000 + self._seq),
            "symbol": symbol,
            "side": side,
            "status": "FILLED",
            "executed_qty": qty,
            "avg_price": px,
            "quote_amount": cost,
            "timestamp": int(time.time() * 1000),
        }
        self.history.setdefault(symbol, []).append(order)
        return order

    async def create_market_order(self, symbol: str, side: str, amount: str) -> ExchangeResponse:
        self.submitted.append((symbol, side, amount))
        if self.order_responses:
            scripted = self.order_responses.pop(0)
            if scripted is not None:
                return scripted
        qty = Decimal(amount)
        base, quote = symbol.split("/")
        if side == "sell" and qty > self.balances.get(base, Decimal("0")):
            return ExchangeResponse.failure("-2010", "Account has insufficient balance for requested action.", status=400)
        if side == "buy" and qty * self.prices[symbol] > self.balances.get(quote, Decimal("0")):
            return ExchangeResponse.failure("-2010", "Account has insufficient balance for requested action.", status=400)
        return ExchangeResponse.success(self.fill(symbol, side, qty))

    async def convert_dust(self, assets) -> ExchangeResponse:
        return ExchangeResponse.success({"assets": list(assets)})


@pytest.fixture(autouse=True)
def _sqlite_db():
    """Fresh in-memory database per test."""
    db = init_db("sqlite:///:memory:")
    yield db
    reset_db()


@pytest.fixture
def config():
    cfg = Config()
    cfg.exchange.trading_mode = "testnet"
    cfg.execution.buy_confirmation_delay_seconds = 0.0
    cfg.execution.retry_policy.transient_backoff_seconds = 0.0
    return cfg


@pytest.fixture
def exchange():
    return FakeExchangeClient(
        balances={"USDT": "1000"},
        prices={"BTC/USDT": "50000", "ETH/USDT": "2000", "SOL/USDT": "50", "XRP/USDT": "0.5"},
    )


@pytest.fixture
def make_exchange():
    return FakeExchangeClient


@pytest.fixture
def filters(exchange):
    cache = ExchangeFilterCache(exchange, trading_mode="testnet")
    cache.load([parse_market_filter(m) for m in DEFAULT_MARKETS.values()])
    return cache


@pytest.fixture
def quantizer(filters):
    return QuantityQuantizer(filters)


@pytest.fixture
def make_position():
    def _make(
        symbol: str = "BTC/USDT",
        entry_price="50000",
        quantity="0.002",
        entry_timestamp: Optional[datetime] = None,
        **kwargs,
    ) -> Position:
        entry = Decimal(str(entry_price))
        qty = Decimal(str(quantity))
        kwargs.setdefault("entry_notional", entry * qty)
        return Position(
            symbol=symbol,
            entry_price=entry,
            quantity=qty,
            entry_timestamp=entry_timestamp or datetime.now(timezone.utc),
            **kwargs,
        )

    return _make
