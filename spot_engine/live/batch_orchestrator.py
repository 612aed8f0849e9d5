"""
Batch entry orchestration.

Opens positions for a batch of strategy signals against one fresh balance
snapshot. Signals are sized sequentially against a running balance and the
invest-cap headroom, so the batch as a whole never spends more than either.
Per-signal failures are isolated; results keep the input order.
"""
import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from spot_engine.domain.models import (
    OrderDisposition,
    OrderResult,
    Position,
    Signal,
    to_decimal,
)
from spot_engine.exceptions import (
    APIError,
    BelowMinimum,
    DataError,
    EngineError,
    InsufficientFunds,
    InvariantError,
    MissingATR,
    PersistenceError,
    PositionLimitReached,
    QuantizationError,
    ValidationError,
)
from spot_engine.monitoring.logger import get_logger
from spot_engine.risk.exit_params import ExitParameterCalculator, ExitParameters
from spot_engine.risk.position_sizer import PositionSizer
from spot_engine.storage.repository import save_position

logger = get_logger(__name__)

STATUS_OPENED = "opened"
STATUS_PENDING = "pending"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"
STATUS_INSUFFICIENT = "insufficient_funds"


@dataclass
class SignalOutcome:
    index: int
    symbol: str = ""
    strategy_name: str = ""
    status: str = STATUS_FAILED
    reason: str = ""
    position_id: Optional[str] = None
    order_id: Optional[str] = None
    notional: Optional[Decimal] = None


@dataclass
class BatchResult:
    results: List[SignalOutcome] = field(default_factory=list)
    busy: bool = False

    def _count(self, status: str) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def opened(self) -> int:
        return self._count(STATUS_OPENED)

    @property
    def failed(self) -> int:
        return self._count(STATUS_FAILED)

    @property
    def skipped_insufficient_funds(self) -> int:
        return self._count(STATUS_INSUFFICIENT)

    @property
    def skipped(self) -> int:
        return self._count(STATUS_SKIPPED)

    @property
    def pending(self) -> int:
        return self._count(STATUS_PENDING)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "opened": self.opened,
            "failed": self.failed,
            "skipped_insufficient_funds": self.skipped_insufficient_funds,
            "skipped": self.skipped,
            "pending": self.pending,
            "results": [r.__dict__ for r in self.results],
        }


class BatchOrchestrator:
    """
    Sequential batch opener for one trading mode.

    ``open_positions`` returns the currently open positions (for per-strategy
    counts and invested capital); ``on_opened`` receives each new Position.
    """

    def __init__(
        self,
        client,
        sizer: PositionSizer,
        exit_calculator: ExitParameterCalculator,
        executor,
        wallet,
        *,
        trading_mode: str = "testnet",
        open_positions: Optional[Callable[[], Iterable[Position]]] = None,
        on_opened: Optional[Callable[[Position], None]] = None,
    ):
        self.client = client
        self.sizer = sizer
        self.exits = exit_calculator
        self.executor = executor
        self.wallet = wallet
        self.trading_mode = trading_mode
        self.open_positions = open_positions or (lambda: [])
        self.on_opened = on_opened
        self.processed_signal_ids: Set[str] = set()

    def build_position(
        self,
        signal: Signal,
        executed_qty: Decimal,
        avg_price: Decimal,
        quote_spent: Optional[Decimal],
        order_id: Optional[str],
    ) -> Position:
        """Position from a confirmed fill; exits are derived from the fill price."""
        exits: ExitParameters = self.exits.derive(
            signal.direction,
            avg_price,
            signal.atr,
            signal.sl_multiplier,
            signal.tp_multiplier,
            symbol=signal.symbol,
        )
        metadata = dict(signal.metadata)
        metadata["enable_trailing"] = signal.enable_trailing
        metadata["signal_id"] = signal.signal_id
        return Position(
            symbol=signal.symbol,
            entry_price=avg_price,
            quantity=executed_qty,
            entry_notional=quote_spent if quote_spent else avg_price * executed_qty,
            strategy_name=signal.strategy_name,
            external_order_id=order_id,
            direction=signal.direction,
            trading_mode=self.trading_mode,
            stop_loss_price=exits.stop_loss,
            take_profit_price=exits.take_profit,
            peak_price=avg_price,
            trough_price=avg_price,
            last_price=avg_price,
            time_exit_hours=self.exits.time_exit_hours(signal.estimated_exit_minutes),
            conviction_score=signal.conviction_score,
            atr_value=signal.atr,
            strategy_metadata=metadata,
        )

    async def register_position(self, position: Position) -> None:
        """Persist a new position and add it to the wallet id set."""
        try:
            await asyncio.to_thread(save_position, position)
        except PersistenceError as e:
            logger.error("POSITION_PERSIST_FAILED", position_id=position.id, symbol=position.symbol, error=str(e))
        self.wallet.add_position_id(position.id)
        if self.on_opened is not None:
            self.on_opened(position)
        logger.info(
            "POSITION_OPENED",
            position_id=position.id,
            symbol=position.symbol,
            strategy=position.strategy_name,
            quantity=str(position.quantity),
            entry_price=str(position.entry_price),
            stop_loss=str(position.stop_loss_price),
            take_profit=str(position.take_profit_price),
            time_exit_hours=position.time_exit_hours,
        )

    async def position_from_pending_fill(self, tracked, order: Dict[str, Any]) -> Position:
        """PendingOrderMonitor buy callback."""
        signal: Signal = tracked.context["signal"]
        executed = to_decimal(order.get("executed_qty")) or tracked.requested_qty
        avg = to_decimal(order.get("avg_price")) or tracked.price or signal.current_price
        position = self.build_position(signal, executed, avg, to_decimal(order.get("quote_amount")), tracked.order_id)
        await self.register_position(position)
        await self.wallet.save()
        return position

    def _decode(self, index: int, payload: Any, seen: Set[str]) -> Any:
        try:
            signal = Signal.from_payload(payload)
        except ValidationError as e:
            logger.warning("SIGNAL_REJECTED", index=index, error=str(e))
            return SignalOutcome(index=index, status=STATUS_FAILED, reason=f"validation: {e}")

        outcome = SignalOutcome(index=index, symbol=signal.symbol, strategy_name=signal.strategy_name)
        key = f"{signal.strategy_name}|{signal.symbol}"
        if signal.signal_id in self.processed_signal_ids or key in seen:
            outcome.status = STATUS_SKIPPED
            outcome.reason = "duplicate"
            return outcome
        if signal.position_size_usdt is not None and signal.position_size_usdt < self.sizer.minimum_trade_value:
            outcome.status = STATUS_SKIPPED
            outcome.reason = "below_minimum"
            return outcome
        seen.add(key)
        return signal

    def _apply_buy(self, outcome: SignalOutcome, result: OrderResult) -> None:
        outcome.order_id = result.order_id
        if result.disposition == OrderDisposition.FILLED:
            outcome.status = STATUS_OPENED
        elif result.disposition == OrderDisposition.PENDING:
            outcome.status = STATUS_PENDING
            outcome.reason = "awaiting_fill"
        elif result.disposition == OrderDisposition.SKIPPED:
            outcome.status = STATUS_SKIPPED
            outcome.reason = result.reason
        else:
            outcome.status = STATUS_FAILED
            outcome.reason = result.reason or "buy_failed"

    async def open_batch(self, signals: Iterable[Any]) -> BatchResult:
        batch = BatchResult()
        seen: Set[str] = set()
        candidates: List[tuple] = []

        for index, payload in enumerate(signals):
            decoded = self._decode(index, payload, seen)
            if isinstance(decoded, SignalOutcome):
                batch.results.append(decoded)
            else:
                outcome = SignalOutcome(index=index, symbol=decoded.symbol, strategy_name=decoded.strategy_name)
                batch.results.append(outcome)
                candidates.append((decoded, outcome))

        if not candidates:
            return batch

        try:
            await self.wallet.sync_balances(self.client)
        except APIError as e:
            logger.error("BATCH_BALANCE_UNAVAILABLE", error=str(e))
            for _, outcome in candidates:
                outcome.status = STATUS_FAILED
                outcome.reason = "balance_unavailable"
            return batch

        running_balance = self.wallet.available_quote
        minimum = self.sizer.minimum_trade_value
        if running_balance < minimum:
            logger.info("BATCH_INSUFFICIENT_FUNDS", available=str(running_balance), minimum=str(minimum))
            for _, outcome in candidates:
                outcome.status = STATUS_INSUFFICIENT
                outcome.reason = "free_balance_below_minimum"
            return batch

        open_now = [p for p in self.open_positions() if p.is_active]
        invested = sum((p.entry_notional for p in open_now), Decimal("0"))
        strategy_counts: Dict[str, int] = {}
        for p in open_now:
            strategy_counts[p.strategy_name] = strategy_counts.get(p.strategy_name, 0) + 1

        cap_reached = False

        for signal, outcome in candidates:
            if cap_reached:
                outcome.status = STATUS_INSUFFICIENT
                outcome.reason = "invest_cap_reached"
                continue

            usable = self.sizer.usable_headroom(invested)
            if usable is not None and (usable <= 0 or usable < self.sizer.minimum_trade_value):
                cap_reached = True
                outcome.status = STATUS_INSUFFICIENT
                outcome.reason = "invest_cap_reached"
                logger.info("BATCH_INVEST_CAP_REACHED", invested=str(invested), usable_headroom=str(usable))
                continue

            try:
                sizing = self.sizer.size(
                    signal,
                    running_balance,
                    strategy_open_count=strategy_counts.get(signal.strategy_name, 0),
                    invested_so_far=invested,
                )
                self.exits.derive(
                    signal.direction,
                    signal.current_price,
                    signal.atr,
                    signal.sl_multiplier,
                    signal.tp_multiplier,
                    symbol=signal.symbol,
                )
                outcome.notional = sizing.notional
                result = await self.executor.buy(
                    signal.symbol,
                    sizing.quantity,
                    signal.current_price,
                    context={"signal": signal, "notional": sizing.notional},
                )
            except InsufficientFunds as e:
                outcome.status = STATUS_INSUFFICIENT
                outcome.reason = str(e)
                continue
            except (BelowMinimum, PositionLimitReached, QuantizationError) as e:
                outcome.status = STATUS_SKIPPED
                outcome.reason = type(e).__name__
                logger.info("SIGNAL_SKIPPED", symbol=signal.symbol, reason=str(e))
                continue
            except MissingATR as e:
                outcome.status = STATUS_FAILED
                outcome.reason = "missing_atr"
                logger.warning("SIGNAL_MISSING_ATR", symbol=signal.symbol, error=str(e))
                continue
            except InvariantError:
                raise
            except EngineError as e:
                outcome.status = STATUS_FAILED
                outcome.reason = type(e).__name__
                logger.error("SIGNAL_OPEN_FAILED", symbol=signal.symbol, error=str(e))
                continue

            self.processed_signal_ids.add(signal.signal_id)
            self._apply_buy(outcome, result)

            if outcome.status == STATUS_OPENED:
                spent = result.quote_amount or sizing.notional
                try:
                    position = self.build_position(
                        signal, result.executed_qty, result.avg_price, result.quote_amount, result.order_id
                    )
                except DataError as e:
                    # Filled on the exchange but unusable locally; reconciliation owns the holding now
                    logger.error("POSITION_BUILD_FAILED", symbol=signal.symbol, order_id=result.order_id, error=str(e))
                    outcome.status = STATUS_FAILED
                    outcome.reason = "position_build_failed"
                else:
                    await self.register_position(position)
                    outcome.position_id = position.id
                running_balance -= spent
                invested += spent
                strategy_counts[signal.strategy_name] = strategy_counts.get(signal.strategy_name, 0) + 1
            elif outcome.status == STATUS_PENDING:
                running_balance -= sizing.notional
                invested += sizing.notional

        if batch.opened:
            await self.wallet.save()
        logger.info(
            "BATCH_OPEN_SUMMARY",
            signals=len(batch.results),
            opened=batch.opened,
            pending=batch.pending,
            failed=batch.failed,
            skipped=batch.skipped,
            skipped_insufficient_funds=batch.skipped_insufficient_funds,
        )
        return batch
