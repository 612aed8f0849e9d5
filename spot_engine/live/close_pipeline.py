"""
Close pipeline: CloseRequest -> sell -> trade record -> ledger removal.

Each request is isolated; one failing close never blocks the rest of the
batch. A position only leaves the ledger once the sell is filled or
filled-equivalent (already closed, virtual close, dust). Failed closes keep
the position for the next monitor cycle.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from spot_engine.config.config import ExecutionConfig
from spot_engine.domain.models import (
    CloseRequest,
    ExitReason,
    OrderDisposition,
    OrderResult,
    OrderSide,
    Position,
    PositionStatus,
    TradeRecord,
    to_decimal,
    utc_now,
)
from spot_engine.exceptions import EngineError, InvariantError, PersistenceError
from spot_engine.monitoring.logger import get_logger
from spot_engine.storage.repository import delete_position, save_trade

logger = get_logger(__name__)

ClosedCallback = Callable[[Position, TradeRecord], None]
TradeHook = Callable[[TradeRecord], Awaitable[None]]


@dataclass
class CloseOutcome:
    position_id: str
    symbol: str
    disposition: Optional[OrderDisposition] = None
    trade: Optional[TradeRecord] = None
    reason: str = ""
    error: Optional[str] = None

    @property
    def closed(self) -> bool:
        return self.trade is not None


@dataclass
class CloseBatchResult:
    closed: List[CloseOutcome] = field(default_factory=list)
    failed: List[CloseOutcome] = field(default_factory=list)
    pending: List[CloseOutcome] = field(default_factory=list)
    skipped: List[CloseOutcome] = field(default_factory=list)

    @property
    def trades(self) -> List[TradeRecord]:
        return [o.trade for o in self.closed if o.trade is not None]


def _trade_exit_reason(reason: ExitReason, result: OrderResult) -> str:
    if result.disposition == OrderDisposition.DUST:
        return ExitReason.DUST.value
    if result.disposition == OrderDisposition.VIRTUAL_CLOSED and result.reason == "insufficient_balance":
        return ExitReason.INSUFFICIENT_BALANCE.value
    return reason.value


def build_trade_record(
    position: Position,
    result: OrderResult,
    reason: ExitReason,
    exit_price: Decimal,
    commission_rate: Decimal,
    now: Optional[datetime] = None,
) -> TradeRecord:
    """Entry and exit both pay ``commission_rate`` on their value."""
    now = now or utc_now()
    exit_px = result.avg_price or exit_price
    if result.disposition in (OrderDisposition.FILLED, OrderDisposition.ALREADY_CLOSED) and result.quote_amount:
        exit_value = result.quote_amount
    else:
        exit_value = exit_px * position.quantity
    entry_value = position.entry_notional
    fees = (entry_value + exit_value) * commission_rate
    pnl = exit_value - entry_value - fees
    pnl_pct = pnl / entry_value * 100 if entry_value > 0 else Decimal("0")
    return TradeRecord(
        trade_id=position.id,
        position_id=position.id,
        symbol=position.symbol,
        strategy_name=position.strategy_name,
        direction=position.direction.value,
        entry_price=position.entry_price,
        exit_price=exit_px,
        quantity=position.quantity,
        entry_value=entry_value,
        exit_value=exit_value,
        pnl=pnl,
        pnl_percentage=pnl_pct,
        total_fees=fees,
        entry_timestamp=position.entry_timestamp,
        exit_timestamp=now,
        duration_seconds=max(0, int((now - position.entry_timestamp).total_seconds())),
        exit_reason=_trade_exit_reason(reason, result),
        trading_mode=position.trading_mode,
        peak_price=position.peak_price,
        trough_price=position.trough_price,
        was_trailing=position.is_trailing,
        exit_order_id=result.order_id,
        is_virtual=result.is_virtual,
    )


class ClosePipeline:
    """Drives closes for one trading mode."""

    def __init__(
        self,
        executor,
        wallet,
        config: Optional[ExecutionConfig] = None,
        *,
        background=None,
        lock_for: Optional[Callable[[str], asyncio.Lock]] = None,
        on_closed: Optional[ClosedCallback] = None,
        trade_hook: Optional[TradeHook] = None,
        is_tracked: Optional[Callable[[str], bool]] = None,
    ):
        self.executor = executor
        self.wallet = wallet
        self.config = config or ExecutionConfig()
        self.commission_rate = Decimal(str(self.config.commission_rate))
        self.background = background
        self.lock_for = lock_for
        self.on_closed = on_closed
        self.trade_hook = trade_hook
        self.is_tracked = is_tracked
        self.closing: Set[str] = set()
        self._pending_sells: Dict[str, CloseRequest] = {}

    def is_closing(self, position_id: str) -> bool:
        return position_id in self.closing

    def release(self, position_id: str) -> None:
        """Forget an in-flight close so the next cycle can retry it."""
        self.closing.discard(position_id)
        self._pending_sells.pop(position_id, None)

    async def finalize(self, request: CloseRequest, result: OrderResult) -> TradeRecord:
        """
        Record the trade and drop the position from store, wallet and memory.

        Raises PersistenceError when the trade or the delete cannot be written;
        the position then stays in memory and the next attempt finds the fill
        in order history.
        """
        position = request.position
        trade = build_trade_record(position, result, request.exit_reason, request.exit_price, self.commission_rate)

        is_new = await asyncio.to_thread(save_trade, trade)
        await asyncio.to_thread(delete_position, position.id)

        if is_new:
            self.wallet.apply_trade(trade)
        self.wallet.remove_position_ids([position.id])

        position.status = PositionStatus.CLOSED
        self.release(position.id)
        if self.on_closed is not None:
            self.on_closed(position, trade)

        logger.info(
            "POSITION_CLOSED",
            position_id=position.id,
            symbol=position.symbol,
            disposition=result.disposition.value,
            exit_reason=trade.exit_reason,
            exit_price=str(trade.exit_price),
            pnl=f"{trade.pnl:.4f}",
            pnl_pct=f"{trade.pnl_percentage:.2f}",
            virtual=trade.is_virtual,
        )
        if is_new and self.trade_hook is not None and self.background is not None:
            hook = self.trade_hook
            self.background.submit(f"trade_hook:{trade.trade_id}", lambda: hook(trade))
        return trade

    async def close_held(self, request: CloseRequest) -> CloseOutcome:
        """Close one position; the caller holds its lock."""
        position = request.position
        outcome = CloseOutcome(position_id=position.id, symbol=position.symbol)

        if self.is_tracked is not None and not self.is_tracked(position.id):
            outcome.reason = "already_closed"
            return outcome

        if position.status == PositionStatus.CLOSED or position.id in self.closing:
            outcome.reason = "already_closing"
            return outcome

        self.closing.add(position.id)
        pending = False
        try:
            try:
                result = await self.executor.sell(position, request.exit_price, closing=True)
            except InvariantError:
                raise
            except EngineError as e:
                logger.error("CLOSE_FAILED", position_id=position.id, symbol=position.symbol, error=str(e))
                outcome.error = str(e)
                outcome.reason = type(e).__name__
                return outcome
            except Exception as e:
                logger.exception(
                    "CLOSE_FAILED_UNEXPECTED",
                    position_id=position.id,
                    symbol=position.symbol,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                outcome.error = str(e)
                outcome.reason = type(e).__name__
                return outcome

            outcome.disposition = result.disposition
            outcome.reason = result.reason

            if result.disposition == OrderDisposition.PENDING:
                pending = True
                self._pending_sells[position.id] = request
                logger.info("CLOSE_PENDING", position_id=position.id, symbol=position.symbol, order_id=result.order_id)
                return outcome

            if not result.closes_position:
                logger.warning(
                    "CLOSE_NOT_COMPLETED",
                    position_id=position.id,
                    symbol=position.symbol,
                    disposition=result.disposition.value,
                    reason=result.reason,
                    error=result.error,
                )
                outcome.error = result.error
                return outcome

            try:
                outcome.trade = await self.finalize(request, result)
            except InvariantError:
                raise
            except PersistenceError as e:
                logger.error("CLOSE_PERSIST_FAILED", position_id=position.id, symbol=position.symbol, error=str(e))
                outcome.error = str(e)
            except Exception as e:
                logger.exception(
                    "CLOSE_FINALIZE_FAILED",
                    position_id=position.id,
                    symbol=position.symbol,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                outcome.error = str(e)
            return outcome
        finally:
            # a pending sell keeps its closing mark until the order resolves
            if not pending:
                self.closing.discard(position.id)

    async def close_one(self, request: CloseRequest) -> CloseOutcome:
        if self.lock_for is None:
            return await self.close_held(request)
        async with self.lock_for(request.position.id):
            return await self.close_held(request)

    async def close(self, requests: Iterable[CloseRequest]) -> CloseBatchResult:
        batch = CloseBatchResult()
        seen: Set[str] = set()
        for request in requests:
            if request.position.id in seen:
                continue
            seen.add(request.position.id)
            outcome = await self.close_one(request)
            if outcome.closed:
                batch.closed.append(outcome)
            elif outcome.disposition == OrderDisposition.PENDING:
                batch.pending.append(outcome)
            elif outcome.reason in ("already_closing", "already_closed"):
                batch.skipped.append(outcome)
            else:
                batch.failed.append(outcome)

        if batch.closed:
            await self.wallet.save()
        if batch.closed or batch.failed:
            logger.info(
                "CLOSE_BATCH_SUMMARY",
                closed=len(batch.closed),
                failed=len(batch.failed),
                pending=len(batch.pending),
                skipped=len(batch.skipped),
            )
        return batch

    async def on_sell_filled(self, tracked, order: dict) -> None:
        """PendingOrderMonitor callback for sells left pending at submission."""
        position_id = tracked.context.get("position_id")
        request = self._pending_sells.get(position_id)
        if request is None:
            logger.warning("PENDING_SELL_UNKNOWN_POSITION", order_id=tracked.order_id, position_id=position_id)
            return
        executed = to_decimal(order.get("executed_qty")) or tracked.requested_qty
        avg = to_decimal(order.get("avg_price")) or request.exit_price
        result = OrderResult(
            disposition=OrderDisposition.FILLED,
            symbol=tracked.symbol,
            side=OrderSide.SELL,
            order_id=tracked.order_id,
            requested_qty=tracked.requested_qty,
            executed_qty=executed,
            avg_price=avg,
            quote_amount=to_decimal(order.get("quote_amount")) or avg * executed,
            exchange_status=order.get("status"),
        )
        if self.lock_for is None:
            await self.finalize(request, result)
        else:
            async with self.lock_for(position_id):
                await self.finalize(request, result)
        await self.wallet.save()
