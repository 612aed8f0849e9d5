"""
Unit tests for PositionMonitor exit evaluation and the trailing stop.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from spot_engine.config.config import ExitConfig
from spot_engine.domain.models import ExitReason, PositionStatus
from spot_engine.live.position_monitor import PositionMonitor

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def monitor():
    return PositionMonitor(ExitConfig(max_position_age_hours=12, trailing_activation_fraction=0.5, trailing_buffer_pct=2.0))


@pytest.fixture
def long_100(make_position):
    def _make(**kwargs):
        kwargs.setdefault("entry_timestamp", NOW - timedelta(minutes=10))
        kwargs.setdefault("stop_loss_price", Decimal("95"))
        kwargs.setdefault("take_profit_price", Decimal("110"))
        kwargs.setdefault("time_exit_hours", 6.0)
        return make_position("SOL/USDT", "100", "1", **kwargs)

    return _make


def test_take_profit_fires_on_the_tick_reaching_it(monitor, long_100):
    position = long_100()
    fired = []
    for tick in ("102", "108", "111"):
        result = monitor.evaluate([position], {"SOL/USDT": tick}, NOW)
        fired.append([r.exit_reason for r in result.close_requests])

    assert fired == [[], [], [ExitReason.TAKE_PROFIT]]


def test_stop_loss(monitor, long_100):
    result = monitor.evaluate([long_100()], {"SOL/USDT": "94.9"}, NOW)
    assert result.close_requests[0].exit_reason == ExitReason.STOP_LOSS
    assert result.close_requests[0].exit_price == Decimal("94.9")


def test_safety_ceiling_wins_regardless_of_pnl(monitor, long_100):
    position = long_100(entry_timestamp=NOW - timedelta(hours=13), time_exit_hours=None)
    result = monitor.evaluate([position], {"SOL/USDT": "120"}, NOW)
    assert result.close_requests[0].exit_reason == ExitReason.TIMEOUT


def test_strategy_time_exit(monitor, long_100):
    position = long_100(entry_timestamp=NOW - timedelta(hours=7))
    result = monitor.evaluate([position], {"SOL/USDT": "101"}, NOW)
    assert result.close_requests[0].exit_reason == ExitReason.TIMEOUT


def test_time_exit_while_trailing_is_trailing_timeout(monitor, long_100):
    position = long_100(entry_timestamp=NOW - timedelta(hours=7), is_trailing=True, status=PositionStatus.TRAILING)
    result = monitor.evaluate([position], {"SOL/USDT": "106"}, NOW)
    assert result.close_requests[0].exit_reason == ExitReason.TRAILING_TIMEOUT


def test_trailing_activates_at_fraction_of_take_profit(monitor, long_100):
    position = long_100()
    monitor.evaluate([position], {"SOL/USDT": "104.9"}, NOW)
    assert not position.is_trailing

    result = monitor.evaluate([position], {"SOL/USDT": "105"}, NOW)
    assert position.is_trailing
    assert position.status == PositionStatus.TRAILING
    assert position.trailing_stop_price == Decimal("102.900")
    assert result.updated_positions == [position]


@pytest.mark.parametrize(
    "ticks",
    [
        ["105", "107", "106", "109", "104", "108"],
        ["106", "106", "105.5", "109.9", "101"],
        ["105", "109", "107", "108.9", "108.5", "109.5"],
    ],
)
def test_trailing_stop_never_moves_down(monitor, long_100, ticks):
    position = long_100(stop_loss_price=Decimal("50"))
    stops = []
    for tick in ticks:
        position.take_profit_price = Decimal("1000") if position.is_trailing else Decimal("110")
        result = monitor.evaluate([position], {"SOL/USDT": tick}, NOW)
        if position.trailing_stop_price is not None:
            stops.append(position.trailing_stop_price)
        if result.close_requests:
            break
    assert stops == sorted(stops)


def test_trailing_stop_hit(monitor, long_100):
    position = long_100(stop_loss_price=Decimal("50"))
    monitor.evaluate([position], {"SOL/USDT": "108"}, NOW)  # activates, stop 105.84
    position.take_profit_price = Decimal("1000")

    result = monitor.evaluate([position], {"SOL/USDT": "105.5"}, NOW)

    assert result.close_requests[0].exit_reason == ExitReason.TRAILING_STOP_HIT


def test_trailing_disabled_by_strategy(monitor, long_100):
    position = long_100(strategy_metadata={"enable_trailing": False})
    monitor.evaluate([position], {"SOL/USDT": "109"}, NOW)
    assert not position.is_trailing


def test_missing_price_skips_but_ceiling_still_applies(monitor, long_100):
    fresh = long_100()
    stale = long_100(entry_timestamp=NOW - timedelta(hours=13), last_price=Decimal("99"))

    result = monitor.evaluate([fresh, stale], {}, NOW)

    assert result.skipped_no_price == ["SOL/USDT", "SOL/USDT"]
    assert [(r.position.id, r.exit_reason, r.exit_price) for r in result.close_requests] == [
        (stale.id, ExitReason.TIMEOUT, Decimal("99"))
    ]


def test_price_lookup_accepts_exchange_symbol(monitor, long_100):
    result = monitor.evaluate([long_100()], {"SOLUSDT": "111"}, NOW)
    assert result.close_requests[0].exit_reason == ExitReason.TAKE_PROFIT


def test_skip_ids_are_neither_evaluated_nor_mutated(monitor, long_100):
    position = long_100()
    result = monitor.evaluate([position], {"SOL/USDT": "120"}, NOW, skip_ids={position.id})
    assert result.close_requests == []
    assert position.last_price is None


def test_extremes_tracked_and_reported_for_persistence(monitor, long_100):
    position = long_100()
    monitor.evaluate([position], {"SOL/USDT": "101"}, NOW)
    result = monitor.evaluate([position], {"SOL/USDT": "97"}, NOW)
    assert position.peak_price == Decimal("101")
    assert position.trough_price == Decimal("97")
    assert result.updated_positions == [position]

    unchanged = monitor.evaluate([position], {"SOL/USDT": "97"}, NOW)
    assert unchanged.updated_positions == []


def test_duplicate_positions_produce_one_request(monitor, long_100):
    position = long_100()
    result = monitor.evaluate([position, position], {"SOL/USDT": "111"}, NOW)
    assert len(result.close_requests) == 1
