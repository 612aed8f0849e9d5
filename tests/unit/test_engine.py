"""
Unit tests for TradingEngine wiring: cycles, the busy guard, manual closes.
"""
import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from spot_engine.exceptions import InvariantError
from spot_engine.live.engine import TradingEngine
from spot_engine.storage.repository import (
    delete_position,
    get_active_positions,
    get_position,
    get_trades,
    save_position,
)


def _signal(symbol="SOL/USDT", price="50", size="100", **extra):
    payload = {
        "strategy_name": "breakout",
        "symbol": symbol,
        "current_price": price,
        "atr": str(Decimal(price) / 50),
        "position_size_usdt": size,
    }
    payload.update(extra)
    return payload


@pytest.fixture
def engine(config, exchange):
    return TradingEngine(config, client=exchange)


async def _open_sol(engine):
    batch = await engine.open_batch([_signal()])
    assert batch.opened == 1
    return engine.positions[batch.results[0].position_id]


@pytest.mark.asyncio
async def test_start_loads_ledger_and_stop_persists(engine, exchange, make_position):
    stored = make_position("SOL/USDT", "50", "2")
    save_position(stored)

    await engine.start()
    try:
        assert exchange.initialized
        assert list(engine.positions) == [stored.id]
        assert engine.wallet.open_position_ids == [stored.id]
        assert engine.wallet.available_quote == Decimal("1000")
        assert engine.background.running
    finally:
        await engine.stop()

    assert exchange.closed
    assert not engine.background.running
    assert engine.wallet.writes >= 1


@pytest.mark.asyncio
async def test_monitor_cycle_closes_take_profit(engine, exchange):
    position = await _open_sol(engine)
    assert position.take_profit_price == Decimal("53.0")
    exchange.prices["SOL/USDT"] = Decimal("54")

    result = await engine.monitor_cycle({"SOL/USDT": "54"})

    assert result.trades_closed == 1
    assert result.positions_remaining == 0
    assert engine.positions == {}
    assert get_position(position.id) is None
    trade = get_trades("testnet")[0]
    assert trade.exit_reason == "take_profit"
    assert trade.exit_price == Decimal("54")
    assert engine.wallet.state.total_trades_count == 1


@pytest.mark.asyncio
async def test_monitor_cycle_persists_extremes(engine):
    position = await _open_sol(engine)

    result = await engine.monitor_cycle({"SOLUSDT": "51"})

    assert result.trades_closed == 0
    assert get_position(position.id).peak_price == Decimal("51")


@pytest.mark.asyncio
async def test_monitor_cycle_fetches_prices_when_none_given(engine, exchange):
    await _open_sol(engine)
    exchange.prices["SOL/USDT"] = Decimal("40")

    result = await engine.monitor_cycle()

    assert result.close_requests == 1
    assert get_trades("testnet")[0].exit_reason == "stop_loss"


@pytest.mark.asyncio
async def test_cycles_report_busy_instead_of_queueing(engine):
    await engine._cycle_lock.acquire()
    try:
        assert (await engine.monitor_cycle({})).busy
        assert (await engine.open_batch([_signal()])).busy
    finally:
        engine._cycle_lock.release()


@pytest.mark.asyncio
async def test_find_position(engine):
    position = await _open_sol(engine)

    assert engine.find_position(position.id) is position
    assert engine.find_position(position.external_order_id) is position
    assert engine.find_position("solusdt") is position
    assert engine.find_position("ETH/USDT") is None


@pytest.mark.asyncio
async def test_manual_close(engine):
    position = await _open_sol(engine)

    result = await engine.close_manual(position.id, price="52")

    assert result["success"]
    assert not result["already_closed"]
    assert result["trade"].exit_reason == "manual_close"
    assert engine.positions == {}


@pytest.mark.asyncio
async def test_manual_close_unknown_position_is_already_closed(engine):
    result = await engine.close_manual("does-not-exist")
    assert result == {"success": True, "already_closed": True, "pnl": None, "trade": None}


@pytest.mark.asyncio
async def test_manual_close_racing_ghost_removal(engine, exchange):
    position = await _open_sol(engine)
    exchange.balances["SOL"] = Decimal("0")

    lock = engine.lock_for(position.id)
    await lock.acquire()
    reconcile_task = asyncio.create_task(engine.reconcile(force=True))
    await asyncio.sleep(0.05)
    close_task = asyncio.create_task(engine.close_manual(position.id, price="50"))
    await asyncio.sleep(0.01)
    lock.release()

    reconciled = await reconcile_task
    closed = await close_task

    assert reconciled.ghost_ids == [position.id]
    assert closed["success"]
    assert closed["already_closed"]
    assert [s for s in exchange.submitted if s[1] == "sell"] == []
    assert get_active_positions("testnet") == []
    assert engine.wallet.open_position_ids == []


@pytest.mark.asyncio
async def test_reconcile_requests_are_deduplicated(engine):
    engine.request_reconcile()
    engine.request_reconcile()

    assert engine.background.pending == 1
    assert engine.background.stats["dropped"] == 1
    assert await engine.background.drain() == 1


@pytest.mark.asyncio
async def test_status_snapshot(engine):
    await _open_sol(engine)
    status = engine.status({"SOL/USDT": Decimal("55")})

    assert status["mode"] == "testnet"
    assert status["positions"] == 1
    assert status["wallet"]["unrealized_pnl"] == Decimal("10")


@pytest.mark.asyncio
async def test_run_loop_exits_when_stopped(engine, exchange):
    stop = asyncio.Event()
    task = asyncio.create_task(engine.run(stop, interval_seconds=60))
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(task, timeout=1)

    assert exchange.balance_reads >= 1


@pytest.mark.asyncio
async def test_non_finite_signals_fail_alone_in_batch(engine, exchange):
    batch = await engine.open_batch([
        _signal("ETH/USDT", price="2000", atr="NaN"),
        _signal("BTC/USDT", price="50000", current_price="NaN"),
        _signal(),
    ])

    assert [r.status for r in batch.results] == ["failed", "failed", "opened"]
    assert batch.results[0].reason.startswith("validation")
    assert batch.results[1].reason.startswith("validation")
    assert batch.opened == 1
    assert [s[0] for s in exchange.submitted] == ["SOL/USDT"]


@pytest.mark.asyncio
async def test_monitor_cycle_skips_non_finite_prices(engine):
    position = await _open_sol(engine)

    result = await engine.monitor_cycle({"SOL/USDT": float("nan"), "BTC/USDT": "50000", "ETH/USDT": "Infinity"})

    assert result.error is None
    assert result.trades_closed == 0
    assert result.skipped_no_price == ["SOL/USDT"]
    assert engine.positions == {position.id: position}


@pytest.mark.asyncio
async def test_run_loop_survives_unexpected_cycle_error(engine):
    stop = asyncio.Event()
    calls = []

    async def cycle(prices=None):
        calls.append(prices)
        if len(calls) == 1:
            raise RuntimeError("malformed ticker payload")
        stop.set()

    engine.monitor_cycle = cycle
    engine.reconcile = AsyncMock()

    await asyncio.wait_for(engine.run(stop, interval_seconds=0.01), timeout=1)

    assert len(calls) == 2
    engine.reconcile.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_loop_propagates_invariant_errors(engine):
    engine.monitor_cycle = AsyncMock(side_effect=InvariantError("ledger corrupted"))

    with pytest.raises(InvariantError):
        await asyncio.wait_for(engine.run(asyncio.Event(), interval_seconds=0.01), timeout=1)


@pytest.mark.asyncio
async def test_reconcile_loads_positions_stored_elsewhere(engine, exchange, make_position):
    position = await _open_sol(engine)
    stored = make_position("ETH/USDT", "2000", "0.05")
    save_position(stored)
    exchange.balances["ETH"] = Decimal("0.05")

    result = await engine.reconcile(force=True)

    assert result.ghost_ids == []
    assert engine.positions[position.id] is position
    assert engine.positions[stored.id].symbol == "ETH/USDT"
    assert sorted(engine.wallet.open_position_ids) == sorted([position.id, stored.id])


@pytest.mark.asyncio
async def test_reconcile_rewrites_positions_missing_from_store(engine):
    position = await _open_sol(engine)
    delete_position(position.id)

    await engine.reconcile(force=True)

    assert engine.positions == {position.id: position}
    assert [p.id for p in get_active_positions("testnet")] == [position.id]
    assert engine.wallet.open_position_ids == [position.id]
