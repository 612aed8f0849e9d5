"""
Binance spot client over ccxt.

Handles:
- Lazy ccxt initialization (sandbox mode for testnet)
- Rate limiting (token bucket, public and private groups)
- Per-call timeouts (orders, balance reads, queries)
- Short-lived balance cache, invalidated on every order
- Decoding of every call into an ExchangeResponse
"""
import asyncio
import json
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import ccxt.async_support as ccxt_async
from ccxt.base import errors as ccxt_errors

from spot_engine.constants import (
    BALANCE_TIMEOUT_SECONDS,
    ERR_INSUFFICIENT_BALANCE,
    ORDER_TIMEOUT_SECONDS,
    PRIVATE_API_CAPACITY,
    PRIVATE_API_REFILL_RATE,
    PUBLIC_API_CAPACITY,
    PUBLIC_API_REFILL_RATE,
    QUERY_TIMEOUT_SECONDS,
)
from spot_engine.data.symbol_utils import normalize_symbol
from spot_engine.domain.models import Balance, ExchangeResponse, to_decimal
from spot_engine.monitoring.logger import get_logger

logger = get_logger(__name__)

CODE_NETWORK = "NETWORK"
CODE_TIMEOUT = "TIMEOUT"
CODE_RATE_LIMIT = "RATE_LIMIT"
CODE_UNKNOWN = "UNKNOWN"

# ccxt unified order status -> exchange-native status
_CCXT_STATUS_MAP = {
    "closed": "FILLED",
    "canceled": "CANCELED",
    "cancelled": "CANCELED",
    "expired": "EXPIRED",
    "rejected": "REJECTED",
}


def _extract_venue_error(exc: Exception) -> Tuple[str, str]:
    """
    Extract venue error code and message from a ccxt exception.

    ccxt's binance driver raises messages like
    ``binance {"code":-2010,"msg":"Account has insufficient balance..."}``.
    Returns (code, message).
    """
    code, msg = CODE_UNKNOWN, str(exc)
    s = str(exc)
    start, end = s.find("{"), s.rfind("}") + 1
    if start >= 0 and end > start:
        try:
            data = json.loads(s[start:end])
        except ValueError:
            data = None
        if isinstance(data, dict):
            if "code" in data:
                code = str(data["code"])
            msg = str(data.get("msg") or data.get("message") or msg)
            return code, msg
    if isinstance(exc, ccxt_errors.InsufficientFunds):
        code = ERR_INSUFFICIENT_BALANCE
    return code, msg


def _status_for(exc: Exception) -> Optional[int]:
    """Best-effort HTTP status class for ccxt error types."""
    if isinstance(exc, ccxt_errors.PermissionDenied):
        return 403
    if isinstance(exc, ccxt_errors.AuthenticationError):
        return 401
    if isinstance(exc, ccxt_errors.OrderNotFound):
        return 404
    if isinstance(exc, (ccxt_errors.BadRequest, ccxt_errors.InvalidOrder, ccxt_errors.InsufficientFunds,
                        ccxt_errors.BadSymbol)):
        return 400
    return None


def decode_order(raw: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize a ccxt order dict.

    Keys: id, symbol, side, status (FILLED/NEW/PARTIALLY_FILLED/CANCELED/EXPIRED/REJECTED),
    executed_qty, avg_price, quote_amount, timestamp (ms).
    """
    info = raw.get("info") or {}
    native = str(info.get("status") or "").upper()
    filled = to_decimal(raw.get("filled"), Decimal("0"))
    if not native:
        unified = str(raw.get("status") or "").lower()
        if unified == "open":
            native = "PARTIALLY_FILLED" if filled > 0 else "NEW"
        else:
            native = _CCXT_STATUS_MAP.get(unified, "NEW")

    avg = to_decimal(raw.get("average")) or to_decimal(raw.get("price"))
    cost = to_decimal(raw.get("cost")) or to_decimal(info.get("cummulativeQuoteQty"))
    if (avg is None or avg <= 0) and cost and filled > 0:
        avg = cost / filled
    if cost is None and avg is not None:
        cost = avg * filled

    return {
        "id": str(raw.get("id")) if raw.get("id") is not None else None,
        "symbol": normalize_symbol(raw.get("symbol") or info.get("symbol") or ""),
        "side": str(raw.get("side") or info.get("side") or "").lower(),
        "status": native,
        "executed_qty": filled,
        "avg_price": avg,
        "quote_amount": cost,
        "timestamp": raw.get("timestamp"),
    }


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""
    capacity: int
    refill_rate: float  # tokens per second
    tokens: float
    last_refill: float

    def __init__(self, capacity: int, refill_rate: float):
        self.capacity = capacity
        self.refill_rate = refill_rate
        self.tokens = float(capacity)
        self.last_refill = time.monotonic()

    def consume(self, tokens: int = 1) -> bool:
        """Try to consume tokens. False if the bucket is short."""
        self._refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def _refill(self):
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    async def wait_for_token(self):
        while not self.consume(1):
            await asyncio.sleep(0.1)


class ExchangeClient:
    """
    Binance spot REST client.

    Every public method returns an ExchangeResponse and never raises for
    venue or transport failures; callers branch on ``ok`` / ``code``.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        trading_mode: str = "testnet",
        *,
        exchange_name: str = "binance",
        rate_limit_capacity: int = PRIVATE_API_CAPACITY,
        rate_limit_refill_per_second: float = PRIVATE_API_REFILL_RATE,
        order_timeout_seconds: float = ORDER_TIMEOUT_SECONDS,
        balance_timeout_seconds: float = BALANCE_TIMEOUT_SECONDS,
        query_timeout_seconds: float = QUERY_TIMEOUT_SECONDS,
        balance_cache_seconds: float = 3.0,
        exchange: Any = None,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.trading_mode = trading_mode
        self.exchange_name = exchange_name
        self.order_timeout = order_timeout_seconds
        self.balance_timeout = balance_timeout_seconds
        self.query_timeout = query_timeout_seconds
        self.balance_cache_seconds = balance_cache_seconds

        self.exchange = exchange
        self.public_limiter = RateLimiter(capacity=PUBLIC_API_CAPACITY, refill_rate=PUBLIC_API_REFILL_RATE)
        self.private_limiter = RateLimiter(capacity=rate_limit_capacity, refill_rate=rate_limit_refill_per_second)

        self._balance_cache: Optional[Tuple[float, Dict[str, Balance]]] = None
        self._balance_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config) -> "ExchangeClient":
        ex = config.exchange
        return cls(
            api_key=ex.api_key,
            api_secret=ex.api_secret,
            trading_mode=ex.trading_mode,
            exchange_name=ex.name,
            rate_limit_capacity=ex.rate_limit_capacity,
            rate_limit_refill_per_second=ex.rate_limit_refill_per_second,
            order_timeout_seconds=ex.order_timeout_seconds,
            balance_timeout_seconds=ex.balance_timeout_seconds,
            query_timeout_seconds=ex.query_timeout_seconds,
            balance_cache_seconds=ex.balance_cache_seconds,
        )

    def has_valid_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret and not self.api_key.startswith("${"))

    async def initialize(self):
        """
        Lazy initialization of the ccxt exchange.
        Must be called inside the running event loop.
        """
        if self.exchange is not None:
            return
        exchange_cls = getattr(ccxt_async, self.exchange_name)
        self.exchange = exchange_cls({
            "apiKey": self.api_key,
            "secret": self.api_secret,
            "enableRateLimit": True,
            "timeout": int(self.order_timeout * 1000),
            "options": {"defaultType": "spot"},
        })
        if self.trading_mode == "testnet":
            self.exchange.set_sandbox_mode(True)
        logger.info("EXCHANGE_CLIENT_INITIALIZED", exchange=self.exchange_name, mode=self.trading_mode)

    async def close(self):
        if self.exchange is not None and hasattr(self.exchange, "close"):
            await self.exchange.close()

    async def set_trading_mode(self, mode: str) -> None:
        """Switch testnet/live. Drops the ccxt instance and all caches."""
        if mode == self.trading_mode:
            return
        await self.close()
        self.exchange = None
        self.trading_mode = mode
        self.invalidate_balance_cache()
        logger.info("EXCHANGE_MODE_CHANGED", mode=mode)

    def invalidate_balance_cache(self) -> None:
        self._balance_cache = None

    async def _call(
        self,
        op: str,
        factory: Callable[[], Awaitable[Any]],
        timeout: float,
        *,
        private: bool = True,
    ) -> ExchangeResponse:
        """Rate-limited, timed call. All failures become ExchangeResponse.failure."""
        if self.exchange is None:
            await self.initialize()
        limiter = self.private_limiter if private else self.public_limiter
        await limiter.wait_for_token()
        try:
            payload = await asyncio.wait_for(factory(), timeout=timeout)
            return ExchangeResponse.success(payload)
        except asyncio.TimeoutError:
            logger.warning("EXCHANGE_CALL_TIMEOUT", op=op, timeout=timeout)
            return ExchangeResponse.failure(CODE_TIMEOUT, f"{op} timed out after {timeout}s", transient=True)
        except ccxt_errors.RateLimitExceeded as e:
            logger.warning("EXCHANGE_RATE_LIMITED", op=op, error=str(e))
            return ExchangeResponse.failure(CODE_RATE_LIMIT, str(e), status=429, transient=True)
        except ccxt_errors.NetworkError as e:
            # RequestTimeout, ExchangeNotAvailable, DDoSProtection
            logger.warning("EXCHANGE_NETWORK_ERROR", op=op, error=str(e), error_type=type(e).__name__)
            return ExchangeResponse.failure(CODE_NETWORK, str(e), transient=True)
        except ccxt_errors.BaseError as e:
            code, msg = _extract_venue_error(e)
            logger.warning(
                "EXCHANGE_CALL_REJECTED",
                op=op,
                venue_error_code=code,
                venue_error_message=msg,
                error_type=type(e).__name__,
            )
            return ExchangeResponse.failure(code, msg, status=_status_for(e))

    # ---- reads ----

    async def load_markets(self, reload: bool = False) -> ExchangeResponse:
        """Returns ccxt markets keyed by unified symbol."""
        return await self._call(
            "load_markets",
            lambda: self.exchange.load_markets(reload),
            self.query_timeout * 3,
            private=False,
        )

    async def fetch_balances(self, fresh: bool = False) -> ExchangeResponse:
        """
        Spot balances as {asset: Balance}. Served from a short cache unless ``fresh``.
        """
        async with self._balance_lock:
            now = time.monotonic()
            if not fresh and self._balance_cache is not None:
                ts, cached = self._balance_cache
                if now - ts < self.balance_cache_seconds:
                    return ExchangeResponse.success(cached)

            resp = await self._call("fetch_balance", lambda: self.exchange.fetch_balance(), self.balance_timeout)
            if not resp.ok:
                return resp

            raw = resp.payload or {}
            free = raw.get("free") or {}
            used = raw.get("used") or {}
            balances: Dict[str, Balance] = {}
            for asset in set(free) | set(used):
                b = Balance(
                    asset=asset.upper(),
                    free=to_decimal(free.get(asset), Decimal("0")),
                    locked=to_decimal(used.get(asset), Decimal("0")),
                )
                if b.total > 0:
                    balances[b.asset] = b
            self._balance_cache = (now, balances)
            return ExchangeResponse.success(balances)

    async def fetch_free_balance(self, asset: str, fresh: bool = True) -> ExchangeResponse:
        resp = await self.fetch_balances(fresh=fresh)
        if not resp.ok:
            return resp
        bal = resp.payload.get(asset.upper())
        return ExchangeResponse.success(bal.free if bal else Decimal("0"))

    async def fetch_ticker_price(self, symbol: str) -> ExchangeResponse:
        symbol = normalize_symbol(symbol)
        resp = await self._call(
            "fetch_ticker", lambda: self.exchange.fetch_ticker(symbol), self.query_timeout, private=False
        )
        if not resp.ok:
            return resp
        ticker = resp.payload or {}
        price = to_decimal(ticker.get("last")) or to_decimal(ticker.get("close"))
        if price is None or price <= 0:
            return ExchangeResponse.failure(CODE_UNKNOWN, f"No price in ticker for {symbol}")
        return ExchangeResponse.success(price)

    async def fetch_order(self, order_id: str, symbol: str) -> ExchangeResponse:
        symbol = normalize_symbol(symbol)
        resp = await self._call(
            "fetch_order", lambda: self.exchange.fetch_order(order_id, symbol), self.query_timeout
        )
        if not resp.ok:
            return resp
        return ExchangeResponse.success(decode_order(resp.payload or {}))

    async def fetch_recent_orders(self, symbol: str, since_ms: Optional[int] = None, limit: int = 50) -> ExchangeResponse:
        """Order history for one symbol, newest last, normalized via decode_order."""
        symbol = normalize_symbol(symbol)
        resp = await self._call(
            "fetch_orders",
            lambda: self.exchange.fetch_orders(symbol, since_ms, limit),
            self.query_timeout,
        )
        if not resp.ok:
            return resp
        orders: List[Dict[str, Any]] = [decode_order(o) for o in (resp.payload or [])]
        return ExchangeResponse.success(orders)

    # ---- writes ----

    async def create_market_order(self, symbol: str, side: str, amount: str) -> ExchangeResponse:
        """
        Submit a market order. ``amount`` is the already-quantized base quantity string.
        """
        symbol = normalize_symbol(symbol)
        logger.info("ORDER_SUBMITTING", symbol=symbol, side=side, amount=amount, mode=self.trading_mode)
        resp = await self._call(
            "create_order",
            lambda: self.exchange.create_order(symbol, "market", side, float(Decimal(amount))),
            self.order_timeout,
        )
        self.invalidate_balance_cache()
        if not resp.ok:
            return resp
        order = decode_order(resp.payload or {})
        logger.info(
            "ORDER_SUBMITTED",
            symbol=symbol,
            side=side,
            order_id=order["id"],
            status=order["status"],
            executed_qty=str(order["executed_qty"]),
        )
        return ExchangeResponse.success(order)

    async def convert_dust(self, assets: List[str]) -> ExchangeResponse:
        """Convert small balances to BNB (Binance ``sapi/v1/asset/dust``). Live accounts only."""
        if self.trading_mode != "live":
            return ExchangeResponse.failure(CODE_UNKNOWN, "Dust conversion is unavailable on testnet")
        resp = await self._call(
            "convert_dust",
            lambda: self.exchange.sapi_post_asset_dust({"asset": [a.upper() for a in assets]}),
            self.order_timeout,
        )
        self.invalidate_balance_cache()
        return resp
