"""
Full lifecycle integration test.

Golden path through one engine over the in-memory exchange:
signal batch -> market buys -> monitor cycle hits a stop -> sell fills ->
trade recorded -> an externally sold holding is found as a ghost and
removed by reconciliation.
"""
from decimal import Decimal

import pytest

from spot_engine.live.engine import TradingEngine
from spot_engine.storage.repository import get_active_positions, get_trades


def _signal(symbol, price, atr, size="100"):
    return {
        "strategy_name": "breakout",
        "symbol": symbol,
        "current_price": price,
        "atr": atr,
        "position_size_usdt": size,
    }


@pytest.mark.asyncio
async def test_open_stop_out_and_reconcile_ghost(config, exchange):
    engine = TradingEngine(config, client=exchange)
    await engine.start()
    try:
        batch = await engine.open_batch([
            _signal("SOL/USDT", "50", "1"),
            _signal("ETH/USDT", "2000", "40"),
        ])
        assert batch.opened == 2
        assert len(get_active_positions("testnet")) == 2
        assert exchange.balances["SOL"] == Decimal("2.000")
        assert exchange.balances["ETH"] == Decimal("0.0500")

        by_symbol = {p.symbol: p for p in engine.positions.values()}
        sol, eth = by_symbol["SOL/USDT"], by_symbol["ETH/USDT"]
        assert sol.stop_loss_price == Decimal("47.5")

        # SOL breaks its stop, ETH is flat
        exchange.prices["SOL/USDT"] = Decimal("47")
        cycle = await engine.monitor_cycle({"SOL/USDT": "47", "ETH/USDT": "2000"})

        assert cycle.trades_closed == 1
        assert cycle.positions_remaining == 1
        assert exchange.balances["SOL"] == Decimal("0")
        [trade] = get_trades("testnet")
        assert trade.trade_id == sol.id
        assert trade.exit_reason == "stop_loss"
        assert trade.exit_price == Decimal("47")
        assert trade.pnl < 0

        # ETH sold outside the engine: the ledger entry is now a ghost
        exchange.balances["ETH"] = Decimal("0")
        result = await engine.reconcile(force=True)

        assert result.success
        assert result.ghost_ids == [eth.id]
        assert engine.positions == {}
        assert get_active_positions("testnet") == []
        assert engine.wallet.open_position_ids == []
        assert engine.wallet.state.total_trades_count == 1

        # a second pass finds nothing left to clean
        again = await engine.reconcile(force=True)
        assert again.ghosts_cleaned == 0
        assert again.positions_remaining == 0

        # the removed ghost reads as already closed to an operator
        manual = await engine.close_manual(eth.id)
        assert manual["already_closed"]
    finally:
        await engine.stop()
