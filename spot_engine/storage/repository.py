"""
Persistence functions for positions, trades and wallet state.

Provides repository pattern for clean data access. Deletes and trade inserts are
idempotent so close and reconcile can race on the same position safely.
"""
import json
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import Boolean, Column, DateTime, Float, Index, Integer, Numeric, String, Text

from spot_engine.domain.models import (
    Balance,
    Direction,
    Position,
    PositionStatus,
    TradeRecord,
    WalletState,
)
from spot_engine.monitoring.logger import get_logger
from spot_engine.storage.db import Base, get_db

logger = get_logger(__name__)

ACTIVE_STATUSES = (PositionStatus.OPEN.value, PositionStatus.TRAILING.value)


# ORM Models
class PositionModel(Base):
    """ORM model for open positions (state tracking)."""
    __tablename__ = "positions"
    __table_args__ = (
        Index("idx_position_mode_status", "trading_mode", "status"),
        Index("idx_position_external_order", "external_order_id"),
    )

    id = Column(String, primary_key=True)
    external_order_id = Column(String, nullable=True)
    symbol = Column(String, nullable=False)
    direction = Column(String, nullable=False, default=Direction.LONG.value)
    strategy_name = Column(String, nullable=False)
    trading_mode = Column(String, nullable=False)
    status = Column(String, nullable=False)

    entry_price = Column(Numeric(precision=28, scale=12), nullable=False)
    quantity = Column(Numeric(precision=28, scale=12), nullable=False)
    entry_notional = Column(Numeric(precision=28, scale=12), nullable=False)

    stop_loss_price = Column(Numeric(precision=28, scale=12), nullable=True)
    take_profit_price = Column(Numeric(precision=28, scale=12), nullable=True)
    trailing_stop_price = Column(Numeric(precision=28, scale=12), nullable=True)
    trailing_peak_price = Column(Numeric(precision=28, scale=12), nullable=True)
    is_trailing = Column(Boolean, nullable=False, default=False)
    peak_price = Column(Numeric(precision=28, scale=12), nullable=True)
    trough_price = Column(Numeric(precision=28, scale=12), nullable=True)
    last_price = Column(Numeric(precision=28, scale=12), nullable=True)

    time_exit_hours = Column(Float, nullable=True)
    conviction_score = Column(Float, nullable=True)
    atr_value = Column(Numeric(precision=28, scale=12), nullable=True)
    strategy_metadata = Column(Text, nullable=True)  # JSON string

    entry_timestamp = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class TradeModel(Base):
    """ORM model for completed trades."""
    __tablename__ = "trades"
    __table_args__ = (
        Index("idx_trade_mode_exit", "trading_mode", "exit_timestamp"),
        Index("idx_trade_strategy", "strategy_name"),
    )

    trade_id = Column(String, primary_key=True)
    position_id = Column(String, nullable=False)
    symbol = Column(String, nullable=False)
    strategy_name = Column(String, nullable=False)
    direction = Column(String, nullable=False)
    trading_mode = Column(String, nullable=False)

    entry_price = Column(Numeric(precision=28, scale=12), nullable=False)
    exit_price = Column(Numeric(precision=28, scale=12), nullable=False)
    quantity = Column(Numeric(precision=28, scale=12), nullable=False)
    entry_value = Column(Numeric(precision=28, scale=12), nullable=False)
    exit_value = Column(Numeric(precision=28, scale=12), nullable=False)
    pnl = Column(Numeric(precision=28, scale=12), nullable=False)
    pnl_percentage = Column(Numeric(precision=20, scale=8), nullable=False)
    total_fees = Column(Numeric(precision=28, scale=12), nullable=False)

    entry_timestamp = Column(DateTime, nullable=False)
    exit_timestamp = Column(DateTime, nullable=False)
    duration_seconds = Column(Integer, nullable=False)
    exit_reason = Column(String, nullable=False)

    peak_price = Column(Numeric(precision=28, scale=12), nullable=True)
    trough_price = Column(Numeric(precision=28, scale=12), nullable=True)
    was_trailing = Column(Boolean, nullable=False, default=False)
    exit_order_id = Column(String, nullable=True)
    is_virtual = Column(Boolean, nullable=False, default=False)


class WalletStateModel(Base):
    """ORM model for per-mode wallet state. Balances snapshot and id set only."""
    __tablename__ = "wallet_states"

    id = Column(Integer, primary_key=True, autoincrement=True)
    mode = Column(String, nullable=False, unique=True)
    balances = Column(Text, nullable=False, default="[]")  # JSON string
    open_position_ids = Column(Text, nullable=False, default="[]")  # JSON string
    initial_balance_usdt = Column(Numeric(precision=28, scale=12), nullable=False, default=0)

    total_trades_count = Column(Integer, nullable=False, default=0)
    winning_trades_count = Column(Integer, nullable=False, default=0)
    losing_trades_count = Column(Integer, nullable=False, default=0)
    total_realized_pnl = Column(Numeric(precision=28, scale=12), nullable=False, default=0)
    total_gross_profit = Column(Numeric(precision=28, scale=12), nullable=False, default=0)
    total_gross_loss = Column(Numeric(precision=28, scale=12), nullable=False, default=0)
    total_fees_paid = Column(Numeric(precision=28, scale=12), nullable=False, default=0)

    last_balance_sync = Column(DateTime, nullable=True)
    last_updated = Column(DateTime, nullable=False)


def _dec(value) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _naive(value: Optional[datetime]) -> Optional[datetime]:
    """Stored as naive UTC."""
    if value is None:
        return None
    return value.astimezone(timezone.utc).replace(tzinfo=None)


# Repository Functions
def _apply_position(pm: PositionModel, position: Position) -> None:
    pm.external_order_id = position.external_order_id
    pm.symbol = position.symbol
    pm.direction = position.direction.value
    pm.strategy_name = position.strategy_name
    pm.trading_mode = position.trading_mode
    pm.status = position.status.value
    pm.entry_price = position.entry_price
    pm.quantity = position.quantity
    pm.entry_notional = position.entry_notional
    pm.stop_loss_price = position.stop_loss_price
    pm.take_profit_price = position.take_profit_price
    pm.trailing_stop_price = position.trailing_stop_price
    pm.trailing_peak_price = position.trailing_peak_price
    pm.is_trailing = position.is_trailing
    pm.peak_price = position.peak_price
    pm.trough_price = position.trough_price
    pm.last_price = position.last_price
    pm.time_exit_hours = position.time_exit_hours
    pm.conviction_score = position.conviction_score
    pm.atr_value = position.atr_value
    pm.strategy_metadata = json.dumps(position.strategy_metadata, default=str)
    pm.entry_timestamp = _naive(position.entry_timestamp)
    pm.updated_at = _naive(datetime.now(timezone.utc))


def _position_from_model(pm: PositionModel) -> Position:
    return Position(
        id=pm.id,
        external_order_id=pm.external_order_id,
        symbol=pm.symbol,
        direction=Direction(pm.direction),
        strategy_name=pm.strategy_name,
        trading_mode=pm.trading_mode,
        status=PositionStatus(pm.status),
        entry_price=_dec(pm.entry_price),
        quantity=_dec(pm.quantity),
        entry_notional=_dec(pm.entry_notional),
        stop_loss_price=_dec(pm.stop_loss_price),
        take_profit_price=_dec(pm.take_profit_price),
        trailing_stop_price=_dec(pm.trailing_stop_price),
        trailing_peak_price=_dec(pm.trailing_peak_price),
        is_trailing=bool(pm.is_trailing),
        peak_price=_dec(pm.peak_price),
        trough_price=_dec(pm.trough_price),
        last_price=_dec(pm.last_price),
        time_exit_hours=pm.time_exit_hours,
        conviction_score=pm.conviction_score,
        atr_value=_dec(pm.atr_value),
        strategy_metadata=json.loads(pm.strategy_metadata) if pm.strategy_metadata else {},
        entry_timestamp=_utc(pm.entry_timestamp),
    )


def save_position(position: Position) -> None:
    """Save or update position state."""
    db = get_db()
    with db.get_session() as session:
        pm = session.query(PositionModel).filter(PositionModel.id == position.id).first()
        if pm is None:
            pm = PositionModel(id=position.id)
            session.add(pm)
        _apply_position(pm, position)


def save_positions(positions: List[Position]) -> int:
    """Batched upsert in a single session. Returns the number written."""
    if not positions:
        return 0
    db = get_db()
    with db.get_session() as session:
        ids = [p.id for p in positions]
        existing = {
            pm.id: pm
            for pm in session.query(PositionModel).filter(PositionModel.id.in_(ids)).all()
        }
        for position in positions:
            pm = existing.get(position.id)
            if pm is None:
                pm = PositionModel(id=position.id)
                session.add(pm)
            _apply_position(pm, position)
    return len(positions)


def delete_position(position_id: str) -> bool:
    """
    Delete a position (when closed).

    Returns False when the row was already gone; callers treat that as success.
    """
    db = get_db()
    with db.get_session() as session:
        deleted = session.query(PositionModel).filter(PositionModel.id == position_id).delete()
    if not deleted:
        logger.debug("POSITION_DELETE_NOT_FOUND", position_id=position_id)
    return bool(deleted)


def get_position(position_id: str) -> Optional[Position]:
    db = get_db()
    with db.get_session() as session:
        pm = session.query(PositionModel).filter(PositionModel.id == position_id).first()
        return _position_from_model(pm) if pm else None


def get_active_positions(trading_mode: str) -> List[Position]:
    """Retrieve all open or trailing positions for one trading mode."""
    db = get_db()
    with db.get_session() as session:
        position_models = (
            session.query(PositionModel)
            .filter(PositionModel.trading_mode == trading_mode)
            .filter(PositionModel.status.in_(ACTIVE_STATUSES))
            .order_by(PositionModel.entry_timestamp)
            .all()
        )
        return [_position_from_model(pm) for pm in position_models]


def save_trade(trade: TradeRecord) -> bool:
    """
    Save a completed trade. Returns False when a trade with the same id already
    exists (a repeated close of the same position).
    """
    db = get_db()
    with db.get_session() as session:
        if session.query(TradeModel.trade_id).filter(TradeModel.trade_id == trade.trade_id).first():
            logger.info("TRADE_ALREADY_RECORDED", trade_id=trade.trade_id, symbol=trade.symbol)
            return False
        session.add(TradeModel(
            trade_id=trade.trade_id,
            position_id=trade.position_id,
            symbol=trade.symbol,
            strategy_name=trade.strategy_name,
            direction=trade.direction,
            trading_mode=trade.trading_mode,
            entry_price=trade.entry_price,
            exit_price=trade.exit_price,
            quantity=trade.quantity,
            entry_value=trade.entry_value,
            exit_value=trade.exit_value,
            pnl=trade.pnl,
            pnl_percentage=trade.pnl_percentage,
            total_fees=trade.total_fees,
            entry_timestamp=_naive(trade.entry_timestamp),
            exit_timestamp=_naive(trade.exit_timestamp),
            duration_seconds=trade.duration_seconds,
            exit_reason=trade.exit_reason,
            peak_price=trade.peak_price,
            trough_price=trade.trough_price,
            was_trailing=trade.was_trailing,
            exit_order_id=trade.exit_order_id,
            is_virtual=trade.is_virtual,
        ))
    return True


def get_trades(trading_mode: str, limit: Optional[int] = None) -> List[TradeRecord]:
    """Trades for one mode, most recent exit first."""
    db = get_db()
    with db.get_session() as session:
        query = (
            session.query(TradeModel)
            .filter(TradeModel.trading_mode == trading_mode)
            .order_by(TradeModel.exit_timestamp.desc())
        )
        if limit:
            query = query.limit(limit)
        return [
            TradeRecord(
                trade_id=tm.trade_id,
                position_id=tm.position_id,
                symbol=tm.symbol,
                strategy_name=tm.strategy_name,
                direction=tm.direction,
                trading_mode=tm.trading_mode,
                entry_price=_dec(tm.entry_price),
                exit_price=_dec(tm.exit_price),
                quantity=_dec(tm.quantity),
                entry_value=_dec(tm.entry_value),
                exit_value=_dec(tm.exit_value),
                pnl=_dec(tm.pnl),
                pnl_percentage=_dec(tm.pnl_percentage),
                total_fees=_dec(tm.total_fees),
                entry_timestamp=_utc(tm.entry_timestamp),
                exit_timestamp=_utc(tm.exit_timestamp),
                duration_seconds=tm.duration_seconds,
                exit_reason=tm.exit_reason,
                peak_price=_dec(tm.peak_price),
                trough_price=_dec(tm.trough_price),
                was_trailing=bool(tm.was_trailing),
                exit_order_id=tm.exit_order_id,
                is_virtual=bool(tm.is_virtual),
            )
            for tm in query.all()
        ]


def _balances_to_json(balances: List[Balance]) -> str:
    return json.dumps([
        {"asset": b.asset, "free": str(b.free), "locked": str(b.locked)} for b in balances
    ])


def _balances_from_json(raw: Optional[str]) -> List[Balance]:
    if not raw:
        return []
    return [
        Balance(asset=d["asset"], free=Decimal(str(d.get("free", "0"))), locked=Decimal(str(d.get("locked", "0"))))
        for d in json.loads(raw)
    ]


def load_wallet_state(mode: str) -> Optional[WalletState]:
    db = get_db()
    with db.get_session() as session:
        wm = session.query(WalletStateModel).filter(WalletStateModel.mode == mode).first()
        if wm is None:
            return None
        return WalletState(
            id=wm.id,
            mode=wm.mode,
            balances=_balances_from_json(wm.balances),
            open_position_ids=list(json.loads(wm.open_position_ids or "[]")),
            initial_balance_usdt=_dec(wm.initial_balance_usdt) or Decimal("0"),
            total_trades_count=wm.total_trades_count or 0,
            winning_trades_count=wm.winning_trades_count or 0,
            losing_trades_count=wm.losing_trades_count or 0,
            total_realized_pnl=_dec(wm.total_realized_pnl) or Decimal("0"),
            total_gross_profit=_dec(wm.total_gross_profit) or Decimal("0"),
            total_gross_loss=_dec(wm.total_gross_loss) or Decimal("0"),
            total_fees_paid=_dec(wm.total_fees_paid) or Decimal("0"),
            last_balance_sync=_utc(wm.last_balance_sync),
            last_updated=_utc(wm.last_updated),
        )


def save_wallet_state(state: WalletState) -> int:
    """Upsert the wallet row for ``state.mode``. Returns the row id."""
    db = get_db()
    with db.get_session() as session:
        wm = session.query(WalletStateModel).filter(WalletStateModel.mode == state.mode).first()
        if wm is None:
            wm = WalletStateModel(mode=state.mode)
            session.add(wm)
        wm.balances = _balances_to_json(state.balances)
        wm.open_position_ids = json.dumps(list(state.open_position_ids))
        wm.initial_balance_usdt = state.initial_balance_usdt
        wm.total_trades_count = state.total_trades_count
        wm.winning_trades_count = state.winning_trades_count
        wm.losing_trades_count = state.losing_trades_count
        wm.total_realized_pnl = state.total_realized_pnl
        wm.total_gross_profit = state.total_gross_profit
        wm.total_gross_loss = state.total_gross_loss
        wm.total_fees_paid = state.total_fees_paid
        wm.last_balance_sync = _naive(state.last_balance_sync)
        wm.last_updated = _naive(state.last_updated)
        session.flush()
        return wm.id


def wallet_row_summary(mode: str) -> Dict[str, Any]:
    """Row counts for one mode (CLI status)."""
    db = get_db()
    with db.get_session() as session:
        return {
            "positions": session.query(PositionModel)
            .filter(PositionModel.trading_mode == mode)
            .filter(PositionModel.status.in_(ACTIVE_STATUSES))
            .count(),
            "trades": session.query(TradeModel).filter(TradeModel.trading_mode == mode).count(),
        }
