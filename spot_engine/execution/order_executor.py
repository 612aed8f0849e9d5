"""
Order executor: market buys and the close (sell) state machine.

Per attempt: Quantizing -> Submitting -> AwaitingConfirmation ->
Filled | Retrying | VirtualClosed | Dust | Failed.

A close never leaves a position in limbo: every call ends in exactly one
OrderDisposition. Venue rejections are classified by error code; rejections
that survive the retry policy become a virtual close so the ledger converges
with the exchange, and reconciliation is requested in the background.
"""
import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable, Optional

from spot_engine.config.config import ExecutionConfig, RetryPolicyConfig
from spot_engine.constants import (
    ERR_FILTER_FAILURE,
    ERR_INSUFFICIENT_BALANCE,
    ERR_INVALID_QUANTITY,
    VIRTUAL_CLOSE_PREFIX,
)
from spot_engine.domain.models import (
    ExchangeResponse,
    OrderDisposition,
    OrderResult,
    OrderSide,
    Position,
    to_decimal,
)
from spot_engine.exceptions import (
    APIError,
    ExchangeRejected,
    FilterViolation,
    InsufficientBalance,
)
from spot_engine.execution.dust_registry import DustRegistry
from spot_engine.execution.exchange_filters import ExchangeFilterCache
from spot_engine.execution.pending_orders import PendingOrderMonitor, TrackedOrder
from spot_engine.execution.quantizer import QuantityQuantizer, floor_to_step, format_quantity, step_decimal_places
from spot_engine.monitoring.logger import get_logger

logger = get_logger(__name__)

_FILTER_MARKERS = ("LOT_SIZE", "MIN_NOTIONAL", "NOTIONAL", "FILTER FAILURE")
_FAILED_STATUSES = ("CANCELED", "REJECTED", "EXPIRED")


@dataclass(frozen=True)
class RetryPolicy:
    """How many times a close is re-attempted after each failure class."""
    max_attempts: int = 1
    backoff_seconds: float = 0.0
    transient_max_attempts: int = 1
    transient_backoff_seconds: float = 1.0

    @classmethod
    def from_config(cls, cfg: RetryPolicyConfig) -> "RetryPolicy":
        return cls(
            max_attempts=cfg.max_attempts,
            backoff_seconds=cfg.backoff_seconds,
            transient_max_attempts=cfg.transient_max_attempts,
            transient_backoff_seconds=cfg.transient_backoff_seconds,
        )


def classify_rejection(resp: ExchangeResponse) -> Optional[ExchangeRejected]:
    """
    Map a failed, non-transient response onto an ExchangeRejected kind.

    Returns None for errors that fit no known class; callers propagate those.
    """
    code = str(resp.code) if resp.code is not None else ""
    msg = resp.message or ""
    upper = msg.upper()
    if code == ERR_INSUFFICIENT_BALANCE or "INSUFFICIENT BALANCE" in upper:
        return InsufficientBalance(msg, code=code, status=resp.status)
    if code in (ERR_FILTER_FAILURE, ERR_INVALID_QUANTITY) or any(m in upper for m in _FILTER_MARKERS):
        return FilterViolation(msg, code=code, status=resp.status)
    if resp.status is not None and 400 <= resp.status < 500:
        return ExchangeRejected(msg, code=code, status=resp.status)
    return None


def virtual_order_id(now: Optional[float] = None) -> str:
    return f"{VIRTUAL_CLOSE_PREFIX}{int((now or time.time()) * 1000)}"


class OrderExecutor:
    """Submits market orders for one trading mode."""

    def __init__(
        self,
        client,
        filters: ExchangeFilterCache,
        quantizer: QuantityQuantizer,
        config: Optional[ExecutionConfig] = None,
        trading_mode: str = "testnet",
        dust_registry: Optional[DustRegistry] = None,
        pending_monitor: Optional[PendingOrderMonitor] = None,
        background=None,
        request_reconcile: Optional[Callable[[], None]] = None,
    ):
        self.client = client
        self.filters = filters
        self.quantizer = quantizer
        self.config = config or ExecutionConfig()
        self.trading_mode = trading_mode
        self.dust = dust_registry if dust_registry is not None else DustRegistry()
        self.pending = pending_monitor
        self.background = background
        self.request_reconcile = request_reconcile
        self.retry_policy = RetryPolicy.from_config(self.config.retry_policy)

    # ---- helpers ----

    def _reconcile_soon(self, why: str) -> None:
        if self.request_reconcile is not None:
            logger.info("RECONCILE_REQUESTED", reason=why, mode=self.trading_mode)
            self.request_reconcile()

    async def _free_balance(self, asset: str) -> Decimal:
        resp = await self.client.fetch_free_balance(asset, fresh=True)
        if not resp.ok:
            raise APIError(f"Balance read failed for {asset}: [{resp.code}] {resp.message}")
        return resp.payload

    def _floor(self, symbol: str, qty: Decimal) -> Decimal:
        f = self.filters.get(symbol)
        floored = floor_to_step(qty, f.step_size)
        return Decimal(format_quantity(floored, step_decimal_places(f.step_size)))

    def _schedule_dust_conversion(self, asset: str) -> None:
        if self.background is None or self.trading_mode != "live":
            return

        async def _convert():
            resp = await self.client.convert_dust([asset])
            if resp.ok:
                logger.info("DUST_CONVERTED", asset=asset, mode=self.trading_mode)
            else:
                logger.warning("DUST_CONVERT_FAILED", asset=asset, code=resp.code, error=resp.message)

        self.background.submit(f"dust_convert:{asset}", _convert, key=f"dust_convert:{asset}:{self.trading_mode}")

    async def _find_recent_fill(self, symbol: str, qty: Decimal) -> Optional[dict]:
        """A FILLED sell within the history window whose quantity is within tolerance of ``qty``."""
        window = timedelta(hours=self.config.order_history_window_hours)
        since = datetime.now(timezone.utc) - window
        since_ms = int(since.timestamp() * 1000)
        resp = await self.client.fetch_recent_orders(symbol, since_ms=since_ms)
        if not resp.ok:
            logger.warning("ORDER_HISTORY_CHECK_FAILED", symbol=symbol, code=resp.code, error=resp.message)
            return None

        tolerance = qty * Decimal(str(self.config.order_history_qty_tolerance))
        for order in reversed(resp.payload or []):
            if order.get("side") != "sell" or order.get("status") != "FILLED":
                continue
            ts = order.get("timestamp")
            if ts is not None and ts < since_ms:
                continue
            if abs(order["executed_qty"] - qty) <= tolerance:
                logger.info(
                    "ORDER_HISTORY_MATCH_FOUND",
                    symbol=symbol,
                    order_id=order.get("id"),
                    executed_qty=str(order["executed_qty"]),
                    requested_qty=str(qty),
                )
                return order
        return None

    # ---- buy ----

    async def buy(self, symbol: str, quantity, price, context: Optional[dict] = None) -> OrderResult:
        """
        Market buy of an already-sized quantity.

        Raises QuantizationError / UnknownSymbol before submission, APIError for
        unclassified venue errors. Never retries: a timed-out buy may have filled.
        """
        px = to_decimal(price)
        qty_str = self.quantizer.quantize(symbol, quantity, px)
        qty = Decimal(qty_str)

        resp = await self.client.create_market_order(symbol, OrderSide.BUY.value, qty_str)
        if not resp.ok:
            if resp.transient:
                return OrderResult(
                    disposition=OrderDisposition.FAILED,
                    symbol=symbol,
                    side=OrderSide.BUY,
                    requested_qty=qty,
                    reason="transient_error",
                    error=resp.message,
                )
            rejection = classify_rejection(resp)
            if rejection is None:
                raise APIError(f"Buy {symbol} failed: [{resp.code}] {resp.message}")
            logger.warning("BUY_REJECTED", symbol=symbol, kind=rejection.kind, code=rejection.code, error=rejection.message)
            return OrderResult(
                disposition=OrderDisposition.FAILED,
                symbol=symbol,
                side=OrderSide.BUY,
                requested_qty=qty,
                reason="insufficient_balance" if isinstance(rejection, InsufficientBalance) else rejection.kind,
                error=str(rejection),
            )

        order = resp.payload
        if order["status"] != "FILLED" and order["status"] not in _FAILED_STATUSES:
            await asyncio.sleep(self.config.buy_confirmation_delay_seconds)
            confirm = await self.client.fetch_order(order["id"], symbol)
            if confirm.ok:
                order = confirm.payload
            else:
                logger.warning("BUY_CONFIRMATION_FAILED", symbol=symbol, order_id=order["id"], error=confirm.message)

        return self._buy_result(symbol, qty, px, order, context or {})

    def _buy_result(self, symbol: str, qty: Decimal, price: Optional[Decimal], order: dict, context: dict) -> OrderResult:
        status = order["status"]
        base = dict(
            symbol=symbol,
            side=OrderSide.BUY,
            order_id=order.get("id"),
            requested_qty=qty,
            exchange_status=status,
        )
        if status == "FILLED":
            executed = order["executed_qty"] or qty
            avg = order["avg_price"] or price
            quote = order["quote_amount"] or (avg * executed if avg is not None else None)
            logger.info(
                "BUY_FILLED",
                symbol=symbol,
                order_id=order.get("id"),
                executed_qty=str(executed),
                avg_price=str(avg),
            )
            return OrderResult(
                disposition=OrderDisposition.FILLED,
                executed_qty=executed,
                avg_price=avg,
                quote_amount=quote,
                **base,
            )

        if status in _FAILED_STATUSES:
            if self.trading_mode == "testnet" and status in ("EXPIRED", "CANCELED"):
                # Thin testnet books let market orders expire unfilled
                logger.info("BUY_SKIPPED_NO_LIQUIDITY", symbol=symbol, order_id=order.get("id"), status=status)
                return OrderResult(disposition=OrderDisposition.SKIPPED, reason="no_liquidity", **base)
            return OrderResult(disposition=OrderDisposition.FAILED, reason=f"order_{status.lower()}", **base)

        if self.pending is not None and order.get("id"):
            self.pending.track(TrackedOrder(
                order_id=order["id"],
                symbol=symbol,
                side=OrderSide.BUY,
                requested_qty=qty,
                price=price,
                context=context,
            ))
        return OrderResult(
            disposition=OrderDisposition.PENDING,
            executed_qty=order.get("executed_qty") or Decimal("0"),
            reason="awaiting_fill",
            **base,
        )

    # ---- sell ----

    def _dust_result(self, position: Position, qty: Decimal, price: Decimal, free: Decimal) -> OrderResult:
        f = self.filters.get(position.symbol)
        self.dust.record(position.symbol, self.trading_mode, free, price, f.min_qty, f.min_notional)
        logger.info(
            "CLOSE_DUST",
            symbol=position.symbol,
            position_id=position.id,
            free=str(free),
            position_qty=str(position.quantity),
            computed_qty=str(qty),
            step=str(f.step_size),
            min_qty=str(f.min_qty),
            min_notional=str(f.min_notional),
            price=str(price),
        )
        self._reconcile_soon("dust")
        return OrderResult(
            disposition=OrderDisposition.DUST,
            symbol=position.symbol,
            side=OrderSide.SELL,
            requested_qty=qty,
            avg_price=price,
            reason="dust_or_below_threshold",
        )

    def _sell_quantity(self, position: Position, free: Decimal, price: Decimal, full: bool) -> Optional[Decimal]:
        """
        Quantity to submit, or None when it is dust.

        Below the lot/notional minimums the whole free balance is sold instead,
        if that clears both.
        """
        requested = position.quantity if full else min(position.quantity, free)
        qty = self._floor(position.symbol, requested)
        if qty > 0 and self.quantizer.meets_minimums(position.symbol, qty, price):
            return qty

        free_qty = self._floor(position.symbol, free)
        if free_qty > 0 and self.quantizer.meets_minimums(position.symbol, free_qty, price):
            logger.info(
                "CLOSE_SELL_ALL_OVERRIDE",
                symbol=position.symbol,
                requested_qty=str(qty),
                override_qty=str(free_qty),
            )
            return free_qty
        return None

    def _virtual_close(self, position: Position, price: Decimal, rejection: ExchangeRejected) -> OrderResult:
        order_id = virtual_order_id()
        logger.warning(
            "CLOSE_VIRTUAL",
            symbol=position.symbol,
            position_id=position.id,
            order_id=order_id,
            kind=rejection.kind,
            code=rejection.code,
            error=rejection.message,
        )
        if isinstance(rejection, InsufficientBalance):
            self._schedule_dust_conversion(position.base_asset)
        self._reconcile_soon("virtual_close")
        return OrderResult(
            disposition=OrderDisposition.VIRTUAL_CLOSED,
            symbol=position.symbol,
            side=OrderSide.SELL,
            order_id=order_id,
            requested_qty=position.quantity,
            executed_qty=position.quantity,
            avg_price=price,
            quote_amount=price * position.quantity,
            reason="insufficient_balance" if isinstance(rejection, InsufficientBalance) else rejection.kind,
            error=str(rejection),
        )

    def _sell_filled(self, position: Position, qty: Decimal, price: Decimal, order: dict, disposition) -> OrderResult:
        executed = order.get("executed_qty") or qty
        avg = order.get("avg_price") or price
        return OrderResult(
            disposition=disposition,
            symbol=position.symbol,
            side=OrderSide.SELL,
            order_id=order.get("id"),
            requested_qty=qty,
            executed_qty=executed,
            avg_price=avg,
            quote_amount=order.get("quote_amount") or avg * executed,
            exchange_status=order.get("status"),
        )

    async def sell(self, position: Position, price, closing: bool = True) -> OrderResult:
        """
        Sell a position's holding.

        ``closing`` requests the full position quantity first and enables the
        order-history check and virtual close. Raises APIError for unclassified
        venue errors and when balances cannot be read at all.
        """
        px = to_decimal(price)
        if px is None or px <= 0:
            px = position.last_price or position.entry_price
        symbol = position.symbol
        policy = self.retry_policy

        free = await self._free_balance(position.base_asset)
        qty = self._sell_quantity(position, free, px, full=closing)
        if qty is None:
            return self._dust_result(position, self._floor(symbol, min(position.quantity, free)), px, free)

        rejections = 0
        transients = 0
        while True:
            resp = await self.client.create_market_order(symbol, OrderSide.SELL.value, format(qty, "f"))

            if resp.ok:
                order = resp.payload
                if order["status"] == "FILLED" or order.get("executed_qty", 0) >= qty:
                    self.dust.clear(symbol, self.trading_mode)
                    logger.info(
                        "SELL_FILLED",
                        symbol=symbol,
                        position_id=position.id,
                        order_id=order.get("id"),
                        executed_qty=str(order.get("executed_qty")),
                    )
                    return self._sell_filled(position, qty, px, order, OrderDisposition.FILLED)
                if order["status"] in _FAILED_STATUSES:
                    rejection = ExchangeRejected(f"Sell order {order['status']}", code=order["status"])
                else:
                    if self.pending is not None and order.get("id"):
                        self.pending.track(TrackedOrder(
                            order_id=order["id"],
                            symbol=symbol,
                            side=OrderSide.SELL,
                            requested_qty=qty,
                            price=px,
                            context={"position_id": position.id},
                        ))
                    return OrderResult(
                        disposition=OrderDisposition.PENDING,
                        symbol=symbol,
                        side=OrderSide.SELL,
                        order_id=order.get("id"),
                        requested_qty=qty,
                        executed_qty=order.get("executed_qty") or Decimal("0"),
                        exchange_status=order["status"],
                        reason="awaiting_fill",
                    )
            elif resp.transient:
                rejection = None
            else:
                rejection = classify_rejection(resp)
                if rejection is None:
                    raise APIError(f"Sell {symbol} failed: [{resp.code}] {resp.message}")

            if closing:
                match = await self._find_recent_fill(symbol, qty)
                if match is not None:
                    return self._sell_filled(position, qty, px, match, OrderDisposition.ALREADY_CLOSED)

            if rejection is None:
                transients += 1
                if transients > policy.transient_max_attempts:
                    logger.error("SELL_TRANSIENT_EXHAUSTED", symbol=symbol, position_id=position.id, error=resp.message)
                    if closing:
                        return self._virtual_close(
                            position, px, ExchangeRejected(resp.message, code=resp.code, status=resp.status)
                        )
                    return OrderResult(
                        disposition=OrderDisposition.FAILED,
                        symbol=symbol,
                        side=OrderSide.SELL,
                        requested_qty=qty,
                        reason="transient_error",
                        error=resp.message,
                    )
                logger.warning("SELL_TRANSIENT_RETRY", symbol=symbol, attempt=transients, error=resp.message)
                if policy.transient_backoff_seconds > 0:
                    await asyncio.sleep(policy.transient_backoff_seconds)
                continue

            rejections += 1
            logger.warning(
                "SELL_REJECTED",
                symbol=symbol,
                position_id=position.id,
                attempt=rejections,
                kind=rejection.kind,
                code=rejection.code,
                error=rejection.message,
            )
            if rejections > policy.max_attempts:
                if closing:
                    return self._virtual_close(position, px, rejection)
                return OrderResult(
                    disposition=OrderDisposition.FAILED,
                    symbol=symbol,
                    side=OrderSide.SELL,
                    requested_qty=qty,
                    reason=rejection.kind,
                    error=str(rejection),
                )

            if policy.backoff_seconds > 0:
                await asyncio.sleep(policy.backoff_seconds)
            free = await self._free_balance(position.base_asset)
            qty = self._sell_quantity(position, free, px, full=False)
            if qty is None:
                logger.warning(
                    "SELL_RETRY_BELOW_THRESHOLD",
                    symbol=symbol,
                    position_id=position.id,
                    free=str(free),
                    kind=rejection.kind,
                )
                if closing:
                    return self._virtual_close(position, px, rejection)
                return OrderResult(
                    disposition=OrderDisposition.FAILED,
                    symbol=symbol,
                    side=OrderSide.SELL,
                    requested_qty=position.quantity,
                    reason="retry_below_threshold",
                    error=str(rejection),
                )
