"""
Trading engine: the single owner of one trading mode.

Wires the exchange client, filter cache, executor, sizing, monitoring,
close pipeline, reconciliation and wallet together and holds the in-memory
position ledger. Batch and monitor cycles share a re-entrancy guard; a
call that finds a cycle already running returns a ``busy`` result instead
of queueing. Per-position locks serialise a close against reconciliation
of the same position.
"""
import asyncio
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from spot_engine.config.config import Config
from spot_engine.data.exchange_client import ExchangeClient
from spot_engine.data.symbol_utils import normalize_symbol
from spot_engine.domain.models import (
    CloseRequest,
    ExitReason,
    OrderSide,
    Position,
    TradeRecord,
    to_decimal,
    utc_now,
)
from spot_engine.exceptions import APIError, InvariantError, OperationalError, PersistenceError
from spot_engine.execution.dust_registry import DustRegistry
from spot_engine.execution.exchange_filters import ExchangeFilterCache
from spot_engine.execution.order_executor import OrderExecutor
from spot_engine.execution.pending_orders import PendingOrderMonitor
from spot_engine.execution.quantizer import QuantityQuantizer
from spot_engine.live.batch_orchestrator import BatchOrchestrator, BatchResult
from spot_engine.live.close_pipeline import ClosePipeline
from spot_engine.live.position_monitor import PositionMonitor
from spot_engine.monitoring.alerting import AlertSender
from spot_engine.monitoring.logger import get_logger
from spot_engine.portfolio.wallet_ledger import WalletLedger
from spot_engine.reconciliation.reconciler import ReconcileResult, ReconciliationEngine
from spot_engine.risk.exit_params import ExitParameterCalculator
from spot_engine.risk.position_sizer import PositionSizer
from spot_engine.storage.repository import get_active_positions, save_positions
from spot_engine.utils.background import BackgroundWorker
from spot_engine.utils.retry import retry_on_transient_errors

logger = get_logger(__name__)


@retry_on_transient_errors(max_retries=2, base_delay=0.5, transient_errors=(PersistenceError,))
async def _load_active_positions(mode: str) -> List[Position]:
    return await asyncio.to_thread(get_active_positions, mode)


@dataclass
class MonitorCycleResult:
    trades_closed: int = 0
    positions_remaining: int = 0
    close_requests: int = 0
    failed_closes: int = 0
    pending_closes: int = 0
    skipped_no_price: List[str] = field(default_factory=list)
    trades: List[TradeRecord] = field(default_factory=list)
    busy: bool = False
    error: Optional[str] = None


class TradingEngine:
    """One instance per trading mode."""

    def __init__(
        self,
        config: Config,
        client: Optional[ExchangeClient] = None,
        *,
        alerter: Optional[AlertSender] = None,
        background: Optional[BackgroundWorker] = None,
    ):
        self.config = config
        self.mode = config.exchange.trading_mode
        quote = config.exchange.quote_asset.upper()
        self.quote_asset = quote

        self.client = client or ExchangeClient.from_config(config)
        self.background = background or BackgroundWorker()
        if alerter is None:
            webhook = config.monitoring.alert_webhook_url if "webhook" in config.monitoring.alert_methods else ""
            alerter = AlertSender(webhook_url=webhook or "")
        self.alerter = alerter

        self.positions: Dict[str, Position] = {}
        # closed or dropped by this engine; never resurrected by a ledger reload
        self._gone_ids: Set[str] = set()
        self._position_locks: Dict[str, asyncio.Lock] = {}
        self._cycle_lock = asyncio.Lock()
        self._last_prices: Dict[str, Decimal] = {}

        self.filters = ExchangeFilterCache(
            self.client,
            trading_mode=self.mode,
            cache_ttl_seconds=config.exchange.filter_cache_ttl_seconds,
            quote_asset=quote,
        )
        self.quantizer = QuantityQuantizer(self.filters)
        self.dust = DustRegistry()
        execution = config.execution
        self.pending = PendingOrderMonitor(
            self.client,
            max_age_seconds=execution.pending_order_max_age_seconds,
            max_check_failures=execution.pending_order_max_check_failures,
            check_interval_seconds=execution.pending_order_check_seconds,
        )
        self.executor = OrderExecutor(
            self.client,
            self.filters,
            self.quantizer,
            execution,
            trading_mode=self.mode,
            dust_registry=self.dust,
            pending_monitor=self.pending,
            background=self.background,
            request_reconcile=self.request_reconcile,
        )
        self.wallet = WalletLedger(self.mode, quote)
        self.sizer = PositionSizer(self.quantizer, config.sizing)
        self.exit_calculator = ExitParameterCalculator(config.exits)
        self.monitor = PositionMonitor(config.exits)
        self.reconciler = ReconciliationEngine(
            self.client,
            config.reconciliation,
            quote_asset=quote,
            wallet=self.wallet,
            alerter=self.alerter,
            lock_for=self.lock_for,
            on_ghost=self._drop_position,
        )
        self.closer = ClosePipeline(
            self.executor,
            self.wallet,
            execution,
            background=self.background,
            lock_for=self.lock_for,
            on_closed=self._on_closed,
            trade_hook=self._trade_performance,
            is_tracked=lambda pid: pid in self.positions,
        )
        self.orchestrator = BatchOrchestrator(
            self.client,
            self.sizer,
            self.exit_calculator,
            self.executor,
            self.wallet,
            trading_mode=self.mode,
            open_positions=lambda: list(self.positions.values()),
            on_opened=self._on_opened,
        )
        self.pending.on_fill(OrderSide.BUY, self._on_buy_filled)
        self.pending.on_fill(OrderSide.SELL, self.closer.on_sell_filled)
        self._started = False

    # ---- ledger plumbing ----

    def lock_for(self, position_id: str) -> asyncio.Lock:
        lock = self._position_locks.get(position_id)
        if lock is None:
            lock = self._position_locks[position_id] = asyncio.Lock()
        return lock

    def _on_opened(self, position: Position) -> None:
        self.positions[position.id] = position

    def _on_closed(self, position: Position, trade: TradeRecord) -> None:
        self._gone_ids.add(position.id)
        self.positions.pop(position.id, None)

    def _drop_position(self, position_id: str) -> None:
        self._gone_ids.add(position_id)
        if self.positions.pop(position_id, None) is not None:
            logger.info("POSITION_DROPPED_FROM_LEDGER", position_id=position_id, mode=self.mode)
        self.closer.release(position_id)

    async def _on_buy_filled(self, tracked, order: Dict[str, Any]) -> None:
        await self.orchestrator.position_from_pending_fill(tracked, order)

    async def _trade_performance(self, trade: TradeRecord) -> None:
        state = self.wallet.state
        closed = state.total_trades_count
        win_rate = state.winning_trades_count / closed * 100 if closed else 0.0
        logger.info(
            "PERFORMANCE_UPDATED",
            mode=self.mode,
            strategy=trade.strategy_name,
            trade_pnl=f"{trade.pnl:.4f}",
            total_trades=closed,
            win_rate=round(win_rate, 2),
            realized_pnl=f"{state.total_realized_pnl:.4f}",
        )

    def request_reconcile(self) -> None:
        """Queue a forced reconcile on the background worker."""
        self.background.submit(
            f"reconcile:{self.mode}",
            lambda: self.reconcile(force=True),
            key=f"reconcile:{self.mode}",
        )

    def find_position(self, position_ref: str) -> Optional[Position]:
        """By internal id, exchange order id, or symbol (oldest open first)."""
        if position_ref in self.positions:
            return self.positions[position_ref]
        for p in self.positions.values():
            if p.external_order_id and p.external_order_id == position_ref:
                return p
        symbol = normalize_symbol(position_ref, self.quote_asset)
        matches = [p for p in self.positions.values() if p.symbol == symbol and p.is_active]
        if matches:
            return min(matches, key=lambda p: p.entry_timestamp)
        return None

    # ---- lifecycle ----

    async def start(self) -> None:
        if self._started:
            return
        await self.client.initialize()
        await self.filters.ensure_loaded()
        await self.wallet.load()
        try:
            loaded = await _load_active_positions(self.mode)
        except PersistenceError as e:
            logger.error("POSITIONS_LOAD_FAILED", mode=self.mode, error=str(e))
            loaded = []
        self.positions = {p.id: p for p in loaded}
        self.wallet.set_open_ids(self.positions.keys())
        try:
            await self.wallet.sync_balances(self.client)
        except APIError as e:
            logger.warning("WALLET_SYNC_FAILED", mode=self.mode, error=str(e))
        self.background.start()
        self._started = True
        logger.info("ENGINE_STARTED", mode=self.mode, positions=len(self.positions))

    async def stop(self) -> None:
        await self.background.stop(drain=True)
        await self.wallet.save()
        await self.client.close()
        self._started = False
        logger.info("ENGINE_STOPPED", mode=self.mode, positions=len(self.positions))

    # ---- operations ----

    async def open_batch(self, signals: Iterable[Any]) -> BatchResult:
        if self._cycle_lock.locked():
            logger.warning("ENGINE_BUSY", operation="open_batch", mode=self.mode)
            return BatchResult(busy=True)
        async with self._cycle_lock:
            await self.filters.ensure_loaded()
            return await self.orchestrator.open_batch(list(signals))

    async def _resolve_prices(self, prices: Optional[Mapping[str, Any]]) -> Dict[str, Decimal]:
        if prices is not None:
            snapshot = {}
            for sym, px in prices.items():
                d = to_decimal(px)
                if d is not None and d > 0:
                    snapshot[normalize_symbol(sym, self.quote_asset)] = d
            self._last_prices.update(snapshot)
            return snapshot

        snapshot = {}
        for symbol in sorted({p.symbol for p in self.positions.values()}):
            resp = await self.client.fetch_ticker_price(symbol)
            if resp.ok:
                snapshot[symbol] = resp.payload
            else:
                logger.warning("TICKER_FETCH_FAILED", symbol=symbol, error=resp.message)
        self._last_prices.update(snapshot)
        return snapshot

    async def check_pending_orders(self) -> None:
        result = await self.pending.check_pending()
        for tracked in result.failed + result.expired:
            position_id = tracked.context.get("position_id")
            if tracked.side == OrderSide.SELL and position_id:
                self.closer.release(position_id)
        if result.failed or result.expired:
            self.request_reconcile()

    async def monitor_cycle(self, prices: Optional[Mapping[str, Any]] = None) -> MonitorCycleResult:
        if self._cycle_lock.locked():
            logger.warning("ENGINE_BUSY", operation="monitor_cycle", mode=self.mode)
            return MonitorCycleResult(busy=True, positions_remaining=len(self.positions))

        async with self._cycle_lock:
            try:
                await self.filters.ensure_loaded()
                snapshot = await self._resolve_prices(prices)
            except OperationalError as e:
                logger.error("MONITOR_CYCLE_ABORTED", mode=self.mode, error=str(e))
                return MonitorCycleResult(positions_remaining=len(self.positions), error=str(e))

            if self.pending.due():
                self.background.submit(
                    f"pending_orders:{self.mode}",
                    self.check_pending_orders,
                    key=f"pending_orders:{self.mode}",
                )

            active = [p for p in self.positions.values() if p.is_active]
            evaluation = self.monitor.evaluate(active, snapshot, utc_now(), skip_ids=self.closer.closing)

            closing_ids = {r.position.id for r in evaluation.close_requests}
            to_persist = [p for p in evaluation.updated_positions if p.id not in closing_ids]
            if to_persist:
                try:
                    await asyncio.to_thread(save_positions, to_persist)
                except PersistenceError as e:
                    logger.error("POSITION_BATCH_PERSIST_FAILED", count=len(to_persist), error=str(e))

            batch = await self.closer.close(evaluation.close_requests)
            result = MonitorCycleResult(
                trades_closed=len(batch.trades),
                positions_remaining=len(self.positions),
                close_requests=len(evaluation.close_requests),
                failed_closes=len(batch.failed),
                pending_closes=len(batch.pending),
                skipped_no_price=evaluation.skipped_no_price,
                trades=batch.trades,
            )
            logger.info(
                "MONITOR_CYCLE_COMPLETE",
                mode=self.mode,
                evaluated=len(active),
                trades_closed=result.trades_closed,
                positions_remaining=result.positions_remaining,
                failed_closes=result.failed_closes,
            )
            return result

    async def reconcile(self, force: bool = False) -> ReconcileResult:
        result = await self.reconciler.reconcile(self.mode, force=force)
        if result.success and not result.throttled and result.error is None:
            for position_id in result.ghost_ids:
                self._drop_position(position_id)
            async with self._cycle_lock:
                await self._reload_positions()
        return result

    async def _reload_positions(self) -> None:
        """
        Rebuild the in-memory ledger from the store after reconciliation.

        Stored positions keep their in-memory objects. Active positions the
        store is missing (an earlier write failed) are written again and kept.
        Ids this engine already closed or dropped stay gone.
        """
        try:
            stored = await asyncio.to_thread(get_active_positions, self.mode)
        except PersistenceError as e:
            logger.error("LEDGER_RELOAD_FAILED", mode=self.mode, error=str(e))
            self.wallet.set_open_ids(self.positions.keys())
            return

        stored_ids = {p.id for p in stored}
        reloaded = {
            p.id: self.positions.get(p.id, p)
            for p in stored
            if p.id not in self._gone_ids
        }
        unsaved = [
            p for pid, p in self.positions.items()
            if pid not in stored_ids
            and pid not in self._gone_ids
            and p.is_active
            and not self.closer.is_closing(pid)
        ]
        for pid, p in self.positions.items():
            if pid not in stored_ids and self.closer.is_closing(pid):
                reloaded.setdefault(pid, p)
        if unsaved:
            try:
                await asyncio.to_thread(save_positions, unsaved)
            except PersistenceError as e:
                logger.error("POSITION_BATCH_PERSIST_FAILED", count=len(unsaved), error=str(e))
            reloaded.update({p.id: p for p in unsaved})

        added = [pid for pid in reloaded if pid not in self.positions]
        self.positions = reloaded
        # ids the store no longer holds cannot come back through a reload
        self._gone_ids &= stored_ids
        self.wallet.set_open_ids(self.positions.keys())
        logger.info(
            "LEDGER_RELOADED",
            mode=self.mode,
            positions=len(reloaded),
            loaded_from_store=len(added),
            rewritten=len(unsaved),
        )

    async def close_manual(
        self,
        position_ref: str,
        reason: str = ExitReason.MANUAL_CLOSE.value,
        price=None,
    ) -> Dict[str, Any]:
        """
        Close one position on operator request.

        A position that is no longer in the ledger (closed, or removed as a
        ghost) is reported as ``already_closed`` rather than as an error.
        """
        position = self.find_position(position_ref)
        if position is None:
            logger.info("MANUAL_CLOSE_NOT_FOUND", position_ref=position_ref, mode=self.mode)
            return {"success": True, "already_closed": True, "pnl": None, "trade": None}

        try:
            exit_reason = ExitReason(reason)
        except ValueError:
            exit_reason = ExitReason.MANUAL_CLOSE

        px = to_decimal(price)
        if px is None or px <= 0:
            px = self._last_prices.get(position.symbol)
        if px is None:
            px = (await self.client.fetch_ticker_price(position.symbol)).unwrap()

        outcome = await self.closer.close_one(CloseRequest(position, exit_reason, px))
        if outcome.closed:
            await self.wallet.save()
            return {
                "success": True,
                "already_closed": False,
                "pnl": outcome.trade.pnl,
                "trade": outcome.trade,
                "disposition": outcome.disposition.value,
            }
        if outcome.reason in ("already_closed", "already_closing"):
            return {"success": True, "already_closed": outcome.reason == "already_closed",
                    "in_progress": outcome.reason == "already_closing", "pnl": None, "trade": None}
        return {
            "success": False,
            "already_closed": False,
            "pnl": None,
            "trade": None,
            "disposition": outcome.disposition.value if outcome.disposition else None,
            "error": outcome.error or outcome.reason,
        }

    def status(self, prices: Optional[Mapping[str, Decimal]] = None) -> Dict[str, Any]:
        positions = list(self.positions.values())
        return {
            "mode": self.mode,
            "positions": len(positions),
            "closing": len(self.closer.closing),
            "pending_orders": len(self.pending.tracked),
            "dust_entries": len(self.dust.entries(self.mode)),
            "wallet": self.wallet.summary(positions, prices or self._last_prices),
            "reconcile": self.reconciler.status().get(self.mode, {}),
            "background": dict(self.background.stats),
        }

    async def run(self, stop_event: asyncio.Event, interval_seconds: Optional[int] = None) -> None:
        """Monitor + throttled reconcile loop until ``stop_event`` is set."""
        interval = interval_seconds or self.config.monitoring.monitor_interval_seconds
        while not stop_event.is_set():
            try:
                await self.monitor_cycle()
                await self.reconcile()
            except InvariantError:
                raise
            except OperationalError as e:
                logger.error("ENGINE_LOOP_ERROR", mode=self.mode, error=str(e))
            except Exception as e:
                logger.exception("ENGINE_LOOP_ERROR", mode=self.mode, error=str(e), error_type=type(e).__name__)
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
