"""
CLI entrypoint for the spot position engine.

Provides commands for status, open, monitor, close, reconcile and run.
"""
import asyncio
import json
import signal
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from spot_engine import __version__
from spot_engine.config.config import Config, load_config
from spot_engine.monitoring.logger import get_logger, setup_logging
from spot_engine.storage.db import init_db

app = typer.Typer(
    name="spot-engine",
    help="Spot position lifecycle and reconciliation engine",
    add_completion=False,
)

logger = get_logger(__name__)
console = Console()

DEFAULT_CONFIG = Path(__file__).parent / "config" / "config.yaml"


def _bootstrap(config_path: Path, mode: Optional[str] = None) -> Config:
    config = load_config(str(config_path))
    if mode:
        config.exchange.trading_mode = mode
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    init_db(config.data.database_url)
    return config


def _engine(config: Config):
    from spot_engine.live.engine import TradingEngine

    return TradingEngine(config)


@app.command()
def status(
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
    mode: Optional[str] = typer.Option(None, "--mode", help="testnet or live"),
):
    """
    Show open positions, recent trades and wallet counters from the store.

    Example:
        python run.py status --mode testnet
    """
    from spot_engine.storage.repository import get_active_positions, get_trades, load_wallet_state

    config = _bootstrap(config_path, mode)
    trading_mode = config.exchange.trading_mode

    positions = get_active_positions(trading_mode)
    table = Table(title=f"Open positions ({trading_mode})")
    for col in ("ID", "Symbol", "Strategy", "Qty", "Entry", "SL", "TP", "Trailing", "Age (h)"):
        table.add_column(col)
    for p in positions:
        table.add_row(
            p.id[:8],
            p.symbol,
            p.strategy_name,
            str(p.quantity),
            f"{p.entry_price:,.6f}",
            f"{p.stop_loss_price:,.6f}" if p.stop_loss_price else "-",
            f"{p.take_profit_price:,.6f}" if p.take_profit_price else "-",
            str(p.trailing_stop_price) if p.is_trailing else "no",
            f"{p.age_hours():.1f}",
        )
    console.print(table)

    trades = get_trades(trading_mode, limit=5)
    if trades:
        trades_table = Table(title="Recent trades")
        for col in ("Exit", "Symbol", "Reason", "PnL", "PnL %", "Virtual"):
            trades_table.add_column(col)
        for t in trades:
            color = "green" if t.pnl >= 0 else "red"
            trades_table.add_row(
                t.exit_timestamp.strftime("%Y-%m-%d %H:%M"),
                t.symbol,
                t.exit_reason,
                f"[{color}]{t.pnl:,.4f}[/{color}]",
                f"{t.pnl_percentage:.2f}",
                "yes" if t.is_virtual else "",
            )
        console.print(trades_table)
    else:
        console.print("No trades recorded yet.")

    wallet = load_wallet_state(trading_mode)
    if wallet:
        console.print(
            f"Wallet: trades={wallet.total_trades_count} "
            f"(W {wallet.winning_trades_count} / L {wallet.losing_trades_count}) "
            f"realized={wallet.total_realized_pnl:,.4f} fees={wallet.total_fees_paid:,.4f} "
            f"open_ids={len(wallet.open_position_ids)}"
        )


@app.command(name="open")
def open_cmd(
    signals_file: Path = typer.Argument(..., help="JSON file with a list of signal payloads"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
    mode: Optional[str] = typer.Option(None, "--mode", help="testnet or live"),
):
    """Open positions for a batch of signals."""
    config = _bootstrap(config_path, mode)
    payloads = json.loads(signals_file.read_text())
    if not isinstance(payloads, list):
        raise typer.BadParameter("signals file must contain a JSON list")

    async def _run():
        engine = _engine(config)
        await engine.start()
        try:
            return await engine.open_batch(payloads)
        finally:
            await engine.stop()

    result = asyncio.run(_run())
    table = Table(title="Batch result")
    for col in ("#", "Symbol", "Strategy", "Status", "Reason", "Position"):
        table.add_column(col)
    for r in result.results:
        table.add_row(str(r.index), r.symbol, r.strategy_name, r.status, r.reason, (r.position_id or "")[:8])
    console.print(table)
    console.print(
        f"opened={result.opened} failed={result.failed} "
        f"skipped_insufficient_funds={result.skipped_insufficient_funds}"
    )


@app.command()
def monitor(
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
    mode: Optional[str] = typer.Option(None, "--mode", help="testnet or live"),
):
    """Run a single monitor cycle against live tickers."""
    config = _bootstrap(config_path, mode)

    async def _run():
        engine = _engine(config)
        await engine.start()
        try:
            return await engine.monitor_cycle()
        finally:
            await engine.stop()

    result = asyncio.run(_run())
    console.print(
        f"trades_closed={result.trades_closed} positions_remaining={result.positions_remaining} "
        f"failed_closes={result.failed_closes}"
    )


@app.command()
def close(
    position_ref: str = typer.Argument(..., help="Position id, exchange order id, or symbol"),
    reason: str = typer.Option("manual_close", "--reason", help="Exit reason to record"),
    price: Optional[str] = typer.Option(None, "--price", help="Exit price (defaults to ticker)"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
    mode: Optional[str] = typer.Option(None, "--mode", help="testnet or live"),
):
    """
    Close one position manually.

    Example:
        python run.py close BTC/USDT --reason manual_close
    """
    config = _bootstrap(config_path, mode)

    async def _run():
        engine = _engine(config)
        await engine.start()
        try:
            return await engine.close_manual(position_ref, reason=reason, price=price)
        finally:
            await engine.stop()

    result = asyncio.run(_run())
    if result.get("already_closed"):
        console.print(f"{position_ref}: already closed")
    elif result.get("success"):
        console.print(f"{position_ref}: closed ({result.get('disposition')}), pnl={result['pnl']:,.4f}")
    else:
        console.print(f"[red]{position_ref}: close failed: {result.get('error')}[/red]")
        raise typer.Exit(code=1)


@app.command()
def reconcile(
    force: bool = typer.Option(True, "--force/--no-force", help="Ignore the reconcile throttle"),
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
    mode: Optional[str] = typer.Option(None, "--mode", help="testnet or live"),
):
    """Reconcile the ledger against exchange holdings."""
    config = _bootstrap(config_path, mode)

    async def _run():
        engine = _engine(config)
        await engine.start()
        try:
            return await engine.reconcile(force=force)
        finally:
            await engine.stop()

    result = asyncio.run(_run())
    if result.throttled:
        console.print("Reconcile throttled")
    elif result.success:
        console.print(f"ghosts_cleaned={result.ghosts_cleaned} positions_remaining={result.positions_remaining}")
    else:
        console.print(f"[red]Reconcile failed: {result.error}[/red]")
        raise typer.Exit(code=1)


@app.command()
def run(
    config_path: Path = typer.Option(DEFAULT_CONFIG, "--config", help="Path to config file"),
    mode: Optional[str] = typer.Option(None, "--mode", help="testnet or live"),
    interval: Optional[int] = typer.Option(None, "--interval", help="Seconds between monitor cycles"),
):
    """
    Run the monitor/reconcile loop until interrupted.

    Example:
        python run.py run --mode testnet --interval 30
    """
    config = _bootstrap(config_path, mode)
    if config.exchange.trading_mode == "live" and config.environment != "prod":
        logger.warning("Live trading outside prod environment", env=config.environment)
        if not typer.confirm("Continue anyway?"):
            raise typer.Abort()

    async def _run():
        engine = _engine(config)
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
        await engine.start()
        try:
            await engine.run(stop_event, interval_seconds=interval)
        finally:
            await engine.stop()

    asyncio.run(_run())


def _version_callback(value: bool):
    if value:
        typer.echo(f"spot-engine v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        False, "--version", help="Show version and exit", callback=_version_callback, is_eager=True
    ),
):
    """
    Spot position lifecycle and reconciliation engine.
    """


if __name__ == "__main__":
    app()
