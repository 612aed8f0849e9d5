"""
Wallet ledger for one trading mode.

Holds the balances snapshot, the authoritative open-position id set, and the
lifetime trade counters. Never embeds positions.

Saves are single-flight: while a write is in flight, further save() calls
await it, and any call that arrives during the write schedules exactly one
follow-up write carrying the newest state.
"""
import asyncio
import dataclasses
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional

from spot_engine.domain.models import Position, TradeRecord, WalletState
from spot_engine.exceptions import APIError, PersistenceError
from spot_engine.monitoring.logger import get_logger
from spot_engine.storage.repository import load_wallet_state, save_wallet_state

logger = get_logger(__name__)


class WalletLedger:
    """Per-mode wallet state with single-flight persistence."""

    def __init__(self, mode: str, quote_asset: str = "USDT"):
        self.mode = mode
        self.quote_asset = quote_asset.upper()
        self._state: Optional[WalletState] = None
        self._inflight: Optional[asyncio.Future] = None
        self._dirty = False
        self.writes = 0

    @property
    def state(self) -> WalletState:
        if self._state is None:
            self._state = WalletState(mode=self.mode)
        return self._state

    @property
    def open_position_ids(self) -> List[str]:
        return list(self.state.open_position_ids)

    @property
    def available_quote(self) -> Decimal:
        return self.state.balance_of(self.quote_asset).free

    async def load(self) -> WalletState:
        """Load the persisted state; an unreachable store leaves a fresh in-memory state."""
        try:
            loaded = await asyncio.to_thread(load_wallet_state, self.mode)
        except PersistenceError as e:
            logger.error("WALLET_LOAD_FAILED", mode=self.mode, error=str(e))
            loaded = None
        self._state = loaded or WalletState(mode=self.mode)
        logger.info(
            "WALLET_LOADED",
            mode=self.mode,
            wallet_id=self._state.id,
            open_positions=len(self._state.open_position_ids),
            trades=self._state.total_trades_count,
        )
        return self._state

    async def sync_balances(self, client) -> WalletState:
        """Replace the balances snapshot with a fresh read from the exchange."""
        resp = await client.fetch_balances(fresh=True)
        if not resp.ok:
            raise APIError(f"Balance sync failed [{resp.code}]: {resp.message}")
        state = self.state
        state.balances = sorted(resp.payload.values(), key=lambda b: b.asset)
        now = datetime.now(timezone.utc)
        state.last_balance_sync = now
        state.last_updated = now
        if state.initial_balance_usdt == 0:
            state.initial_balance_usdt = state.balance_of(self.quote_asset).total
        logger.debug(
            "WALLET_BALANCES_SYNCED",
            mode=self.mode,
            assets=len(state.balances),
            quote_free=str(self.available_quote),
        )
        return state

    def add_position_id(self, position_id: str) -> None:
        ids = self.state.open_position_ids
        if position_id not in ids:
            ids.append(position_id)
            self.state.last_updated = datetime.now(timezone.utc)

    def remove_position_ids(self, position_ids: Iterable[str]) -> int:
        drop = set(position_ids)
        before = len(self.state.open_position_ids)
        self.state.open_position_ids = [pid for pid in self.state.open_position_ids if pid not in drop]
        removed = before - len(self.state.open_position_ids)
        if removed:
            self.state.last_updated = datetime.now(timezone.utc)
        return removed

    def set_open_ids(self, position_ids: Iterable[str]) -> None:
        seen: Dict[str, None] = {}
        for pid in position_ids:
            seen.setdefault(pid, None)
        self.state.open_position_ids = list(seen)
        self.state.last_updated = datetime.now(timezone.utc)

    def apply_trade(self, trade: TradeRecord) -> None:
        state = self.state
        state.total_trades_count += 1
        state.total_realized_pnl += trade.pnl
        state.total_fees_paid += trade.total_fees
        if trade.pnl > 0:
            state.winning_trades_count += 1
            state.total_gross_profit += trade.pnl
        elif trade.pnl < 0:
            state.losing_trades_count += 1
            state.total_gross_loss += -trade.pnl
        state.last_updated = datetime.now(timezone.utc)

    def summary(self, positions: Iterable[Position], prices: Optional[Mapping[str, Decimal]] = None) -> Dict[str, Decimal]:
        """Available cash, capital in trades, unrealized P&L and equity at ``prices``."""
        prices = prices or {}
        in_trades = Decimal("0")
        market_value = Decimal("0")
        for p in positions:
            if not p.is_active:
                continue
            px = prices.get(p.symbol) or p.last_price or p.entry_price
            in_trades += p.entry_notional
            market_value += Decimal(str(px)) * p.quantity
        available = self.available_quote
        return {
            "available": available,
            "in_trades": in_trades,
            "unrealized_pnl": market_value - in_trades,
            "equity": available + market_value,
            "realized_pnl": self.state.total_realized_pnl,
        }

    def _snapshot(self) -> WalletState:
        state = self.state
        return dataclasses.replace(
            state,
            balances=[dataclasses.replace(b) for b in state.balances],
            open_position_ids=list(state.open_position_ids),
        )

    async def _write(self) -> bool:
        snapshot = self._snapshot()
        try:
            row_id = await asyncio.to_thread(save_wallet_state, snapshot)
        except PersistenceError as e:
            logger.error("WALLET_SAVE_FAILED", mode=self.mode, error=str(e))
            return False
        self.writes += 1
        if row_id is not None:
            self.state.id = row_id
        logger.debug("WALLET_SAVED", mode=self.mode, open_positions=len(snapshot.open_position_ids))
        return True

    async def _save_loop(self) -> bool:
        ok = True
        while True:
            self._dirty = False
            ok = await self._write()
            if not self._dirty:
                return ok
            logger.debug("WALLET_SAVE_COALESCED", mode=self.mode)

    async def save(self) -> bool:
        """Persist the current state. Returns False when the write failed."""
        if self._inflight is not None and not self._inflight.done():
            self._dirty = True
            return await asyncio.shield(self._inflight)
        self._inflight = asyncio.ensure_future(self._save_loop())
        return await asyncio.shield(self._inflight)
