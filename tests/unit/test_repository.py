"""
Repository round-trips against in-memory SQLite.
"""
from datetime import timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError as SQLAlchemyOperationalError

from spot_engine.domain.models import Balance, PositionStatus, TradeRecord, WalletState, utc_now
from spot_engine.exceptions import PersistenceError
from spot_engine.storage.db import get_db
from spot_engine.storage.repository import (
    delete_position,
    get_active_positions,
    get_position,
    get_trades,
    load_wallet_state,
    save_position,
    save_positions,
    save_trade,
    save_wallet_state,
    wallet_row_summary,
)


def test_position_round_trip(make_position):
    position = make_position(
        "SOL/USDT",
        "50.123",
        "1.5",
        stop_loss_price=Decimal("47.5"),
        take_profit_price=Decimal("53"),
        time_exit_hours=4.0,
        strategy_metadata={"enable_trailing": False, "signal_id": "abc"},
    )
    save_position(position)

    loaded = get_position(position.id)

    assert loaded.symbol == "SOL/USDT"
    assert loaded.entry_price == Decimal("50.123")
    assert loaded.quantity == Decimal("1.5")
    assert loaded.stop_loss_price == Decimal("47.5")
    assert loaded.strategy_metadata == {"enable_trailing": False, "signal_id": "abc"}
    assert loaded.entry_timestamp.tzinfo is not None
    assert not loaded.trailing_enabled


def test_save_position_updates_in_place(make_position):
    position = make_position()
    save_position(position)
    position.is_trailing = True
    position.status = PositionStatus.TRAILING
    position.trailing_stop_price = Decimal("51000")
    save_position(position)

    loaded = get_position(position.id)
    assert loaded.is_trailing
    assert loaded.trailing_stop_price == Decimal("51000")
    assert len(get_active_positions("testnet")) == 1


def test_active_positions_filter_by_mode_and_order(make_position):
    now = utc_now()
    later = make_position("ETH/USDT", "2000", "0.1", entry_timestamp=now)
    earlier = make_position("SOL/USDT", "50", "1", entry_timestamp=now - timedelta(hours=1))
    live = make_position("XRP/USDT", "0.5", "100", trading_mode="live")

    assert save_positions([later, earlier, live]) == 3

    assert [p.id for p in get_active_positions("testnet")] == [earlier.id, later.id]
    assert [p.id for p in get_active_positions("live")] == [live.id]


def test_delete_is_idempotent(make_position):
    position = make_position()
    save_position(position)
    assert delete_position(position.id) is True
    assert delete_position(position.id) is False
    assert get_position(position.id) is None


def _trade(trade_id: str, minutes_ago: int = 0) -> TradeRecord:
    now = utc_now() - timedelta(minutes=minutes_ago)
    return TradeRecord(
        trade_id=trade_id,
        position_id=trade_id,
        symbol="SOL/USDT",
        strategy_name="breakout",
        entry_price=Decimal("50"),
        exit_price=Decimal("55"),
        quantity=Decimal("2"),
        entry_value=Decimal("100"),
        exit_value=Decimal("110"),
        pnl=Decimal("9.79"),
        pnl_percentage=Decimal("9.79"),
        total_fees=Decimal("0.21"),
        entry_timestamp=now - timedelta(hours=1),
        exit_timestamp=now,
        duration_seconds=3600,
        exit_reason="take_profit",
        trading_mode="testnet",
        is_virtual=False,
    )


def test_save_trade_rejects_duplicates():
    assert save_trade(_trade("t1")) is True
    assert save_trade(_trade("t1")) is False
    assert len(get_trades("testnet")) == 1


def test_trades_most_recent_first_with_limit():
    save_trade(_trade("old", minutes_ago=30))
    save_trade(_trade("new", minutes_ago=1))
    save_trade(_trade("mid", minutes_ago=10))

    assert [t.trade_id for t in get_trades("testnet")] == ["new", "mid", "old"]
    assert [t.trade_id for t in get_trades("testnet", limit=1)] == ["new"]
    assert get_trades("live") == []


def test_wallet_state_upsert():
    state = WalletState(
        mode="testnet",
        balances=[Balance("USDT", Decimal("900"), Decimal("10")), Balance("SOL", Decimal("2"))],
        open_position_ids=["a", "b"],
        total_trades_count=4,
        total_realized_pnl=Decimal("12.5"),
    )
    first_id = save_wallet_state(state)
    state.open_position_ids = ["b"]
    second_id = save_wallet_state(state)

    loaded = load_wallet_state("testnet")
    assert first_id == second_id
    assert loaded.open_position_ids == ["b"]
    assert loaded.balance_of("usdt").total == Decimal("910")
    assert loaded.total_realized_pnl == Decimal("12.5")
    assert load_wallet_state("live") is None


def test_row_summary(make_position):
    save_position(make_position())
    save_trade(_trade("t1"))
    assert wallet_row_summary("testnet") == {"positions": 1, "trades": 1}


def test_sqlalchemy_errors_become_persistence_errors(make_position):
    db = get_db()
    with patch.object(db, "SessionLocal") as session_factory:
        session_factory.return_value.commit.side_effect = SQLAlchemyOperationalError("stmt", {}, Exception("locked"))
        with pytest.raises(PersistenceError):
            save_position(make_position())
