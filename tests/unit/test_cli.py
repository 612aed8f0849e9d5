"""
CLI smoke tests through typer's CliRunner with a fake exchange behind the engine.
"""
import json
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from spot_engine import __version__
from spot_engine.cli import app
from spot_engine.live.engine import TradingEngine
from spot_engine.storage.repository import get_active_positions

runner = CliRunner()


@pytest.fixture
def fake_engine(make_exchange):
    exchange = make_exchange(prices={"SOL/USDT": "50"})

    def _factory(config):
        return TradingEngine(config, client=exchange)

    # keep the per-test in-memory database across commands
    with patch("spot_engine.cli._engine", side_effect=_factory), patch("spot_engine.cli.init_db"):
        yield exchange


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.stdout


def test_status_with_empty_store():
    result = runner.invoke(app, ["status", "--mode", "testnet"])
    assert result.exit_code == 0, result.stdout
    assert "Open positions (testnet)" in result.stdout
    assert "No trades recorded yet." in result.stdout


def test_open_then_close(fake_engine, tmp_path):
    signals = tmp_path / "signals.json"
    signals.write_text(json.dumps([
        {"strategy_name": "breakout", "symbol": "SOL/USDT", "current_price": "50", "atr": "1",
         "position_size_usdt": "100"},
    ]))

    opened = runner.invoke(app, ["open", str(signals), "--mode", "testnet"])
    assert opened.exit_code == 0, opened.stdout
    assert "opened=1" in opened.stdout
    assert fake_engine.initialized
    assert len(get_active_positions("testnet")) == 1

    closed = runner.invoke(app, ["close", "SOL/USDT", "--price", "51", "--mode", "testnet"])
    assert closed.exit_code == 0, closed.stdout
    assert "closed (filled)" in closed.stdout
    assert get_active_positions("testnet") == []


def test_close_unknown_reports_already_closed(fake_engine):
    result = runner.invoke(app, ["close", "nope", "--mode", "testnet"])
    assert result.exit_code == 0
    assert "already closed" in result.stdout


def test_open_rejects_non_list(fake_engine, tmp_path):
    signals = tmp_path / "signals.json"
    signals.write_text(json.dumps({"symbol": "SOL/USDT"}))

    result = runner.invoke(app, ["open", str(signals)])

    assert result.exit_code != 0
