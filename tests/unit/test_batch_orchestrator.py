"""
Unit tests for BatchOrchestrator: running balance, invest cap, per-signal isolation.
"""
import itertools
from decimal import Decimal

import pytest

from spot_engine.config.config import SizingConfig
from spot_engine.domain.models import ExchangeResponse, OrderSide
from spot_engine.execution.order_executor import OrderExecutor
from spot_engine.execution.pending_orders import PendingOrderMonitor
from spot_engine.live.batch_orchestrator import BatchOrchestrator
from spot_engine.portfolio.wallet_ledger import WalletLedger
from spot_engine.risk.exit_params import ExitParameterCalculator
from spot_engine.risk.position_sizer import PositionSizer
from spot_engine.storage.repository import get_active_positions

PRICES = {"SOL/USDT": "50", "ETH/USDT": "2000", "BTC/USDT": "50000", "XRP/USDT": "0.5"}


def _signal(symbol="SOL/USDT", strategy="breakout", size="100", **extra):
    payload = {
        "strategy_name": strategy,
        "symbol": symbol,
        "current_price": PRICES[symbol],
        "atr": str(Decimal(PRICES[symbol]) / 50),
    }
    if size is not None:
        payload["position_size_usdt"] = size
    payload.update(extra)
    return payload


@pytest.fixture
def build(exchange, filters, quantizer, config):
    def _build(opened=None, **sizing):
        sizer = PositionSizer(quantizer, SizingConfig(**sizing))
        pending = PendingOrderMonitor(exchange)
        executor = OrderExecutor(exchange, filters, quantizer, config.execution, pending_monitor=pending)
        wallet = WalletLedger("testnet")
        positions = [] if opened is None else opened
        orchestrator = BatchOrchestrator(
            exchange,
            sizer,
            ExitParameterCalculator(config.exits),
            executor,
            wallet,
            open_positions=lambda: positions,
            on_opened=positions.append,
        )
        return orchestrator, positions

    return _build


@pytest.mark.asyncio
async def test_opens_positions_with_exits_from_fill(build, exchange):
    orchestrator, positions = build()

    batch = await orchestrator.open_batch([_signal(estimated_exit_minutes=240)])

    assert batch.opened == 1
    position = positions[0]
    assert position.quantity == Decimal("2")
    assert position.entry_notional == Decimal("100")
    assert position.stop_loss_price == Decimal("47.5")
    assert position.take_profit_price == Decimal("53.0")
    assert position.time_exit_hours == 4.0
    assert batch.results[0].position_id == position.id
    assert [p.id for p in get_active_positions("testnet")] == [position.id]
    assert orchestrator.wallet.open_position_ids == [position.id]
    assert orchestrator.wallet.writes == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "order",
    list(itertools.permutations(["SOL/USDT", "ETH/USDT", "BTC/USDT", "XRP/USDT"])),
)
async def test_invest_cap_never_exceeded(build, order):
    orchestrator, positions = build(max_balance_invest_cap_usdt=250, invest_cap_buffer_usdt=5)

    batch = await orchestrator.open_batch([_signal(symbol) for symbol in order])

    invested = sum(p.entry_notional for p in positions)
    assert invested <= Decimal("250")
    assert batch.opened == 3
    assert batch.results[3].reason == "invest_cap_reached"
    assert positions[2].entry_notional == Decimal("45")


@pytest.mark.asyncio
async def test_running_balance_is_decremented(build, exchange):
    exchange.balances["USDT"] = Decimal("150")
    orchestrator, positions = build()

    batch = await orchestrator.open_batch([_signal("SOL/USDT"), _signal("ETH/USDT")])

    assert [r.status for r in batch.results] == ["opened", "insufficient_funds"]
    assert len(exchange.submitted) == 1


@pytest.mark.asyncio
async def test_existing_positions_count_toward_cap(build, make_position):
    held = [make_position("BTC/USDT", "50000", "0.004")]
    orchestrator, _ = build(opened=held, max_balance_invest_cap_usdt=250)

    batch = await orchestrator.open_batch([_signal("SOL/USDT"), _signal("ETH/USDT")])

    assert batch.results[0].notional == Decimal("45")
    assert batch.results[1].reason == "invest_cap_reached"


@pytest.mark.asyncio
async def test_fill_slippage_stays_under_cap(build, exchange):
    exchange.prices["SOL/USDT"] = Decimal("50.5")
    exchange.prices["BTC/USDT"] = Decimal("51000")
    orchestrator, positions = build(max_balance_invest_cap_usdt=250, invest_cap_buffer_usdt=5)

    batch = await orchestrator.open_batch([_signal("SOL/USDT"), _signal("ETH/USDT"), _signal("BTC/USDT")])

    assert batch.opened == 3
    assert batch.results[2].notional == Decimal("44")
    assert sum(p.entry_notional for p in positions) == Decimal("245.88")


@pytest.mark.asyncio
async def test_duplicates_and_invalid_signals_are_isolated(build, exchange):
    orchestrator, _ = build()
    signals = [
        _signal("SOL/USDT"),
        {"symbol": "ETH/USDT", "current_price": "2000"},
        _signal("SOL/USDT"),
        _signal("ETH/USDT", strategy="meanrev", size="5"),
        _signal("XRP/USDT"),
    ]

    batch = await orchestrator.open_batch(signals)

    assert [(r.index, r.status) for r in batch.results] == [
        (0, "opened"),
        (1, "failed"),
        (2, "skipped"),
        (3, "skipped"),
        (4, "opened"),
    ]
    assert batch.results[1].reason.startswith("validation")
    assert batch.results[2].reason == "duplicate"
    assert batch.results[3].reason == "below_minimum"


@pytest.mark.asyncio
async def test_missing_atr_fails_without_order(build, exchange):
    orchestrator, _ = build()
    payload = _signal("SOL/USDT")
    del payload["atr"]

    batch = await orchestrator.open_batch([payload])

    assert batch.results[0].reason == "missing_atr"
    assert exchange.submitted == []


@pytest.mark.asyncio
async def test_balance_unavailable(build, exchange):
    exchange.fail_balances = True
    orchestrator, _ = build()

    batch = await orchestrator.open_batch([_signal(), _signal("ETH/USDT")])

    assert [r.reason for r in batch.results] == ["balance_unavailable", "balance_unavailable"]
    assert exchange.submitted == []


@pytest.mark.asyncio
async def test_free_balance_below_minimum(build, exchange):
    exchange.balances["USDT"] = Decimal("5")
    orchestrator, _ = build()

    batch = await orchestrator.open_batch([_signal()])

    assert batch.skipped_insufficient_funds == 1
    assert batch.as_dict()["skipped_insufficient_funds"] == 1


@pytest.mark.asyncio
async def test_rejected_buy_does_not_stop_batch(build, exchange):
    exchange.order_responses = [ExchangeResponse.failure("-1013", "Filter failure: LOT_SIZE", status=400), None]
    orchestrator, positions = build()

    batch = await orchestrator.open_batch([_signal("SOL/USDT"), _signal("ETH/USDT")])

    assert batch.results[0].status == "failed"
    assert batch.results[1].status == "opened"
    assert [p.symbol for p in positions] == ["ETH/USDT"]


@pytest.mark.asyncio
async def test_pending_buy_becomes_position_on_fill(build, exchange):
    exchange.order_responses = [ExchangeResponse.success({"id": "77", "status": "NEW", "executed_qty": None})]
    orchestrator, positions = build()

    batch = await orchestrator.open_batch([_signal("SOL/USDT")])

    assert batch.pending == 1
    assert positions == []
    tracked = orchestrator.executor.pending.tracked["77"]
    assert tracked.side == OrderSide.BUY

    position = await orchestrator.position_from_pending_fill(
        tracked, {"status": "FILLED", "executed_qty": "2", "avg_price": "50.5", "quote_amount": "101"}
    )
    assert position.entry_price == Decimal("50.5")
    assert position.entry_notional == Decimal("101")
    assert positions == [position]


@pytest.mark.asyncio
async def test_processed_signal_ids_are_not_reopened(build):
    orchestrator, positions = build()
    payload = _signal(signal_id="sig-1")

    await orchestrator.open_batch([payload])
    second = await orchestrator.open_batch([payload])

    assert second.results[0].reason == "duplicate"
    assert len(positions) == 1
