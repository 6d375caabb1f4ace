"""
CLI entrypoint for the Ichimoku paper trading engine.

Provides commands for run, status, export, and ack-drawdown.
"""
import asyncio
import signal
import typer
from decimal import Decimal
from pathlib import Path
from typing import Optional

from cloudtrader.config.config import Config, load_config
from cloudtrader.domain.models import Metrics
from cloudtrader.exceptions import DrawdownHaltError
from cloudtrader.monitoring.logger import setup_logging, get_logger
from cloudtrader.risk.drawdown_guard import DrawdownGuard
from cloudtrader.storage.transaction_log import TransactionLog, export_csv

app = typer.Typer(
    name="cloudtrader",
    help="Ichimoku cloud paper trading engine",
    add_completion=False,
)

logger = get_logger(__name__)


def _load(config_path: Optional[Path]) -> Config:
    config = load_config(config_path)
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    return config


@app.command()
def run(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
    cycles: Optional[int] = typer.Option(None, "--cycles", min=1, help="Stop after N cycles"),
    minutes: Optional[float] = typer.Option(None, "--minutes", min=0.01, help="Stop after M minutes"),
    no_dashboard: bool = typer.Option(False, "--no-dashboard", help="Do not serve the HTTP dashboard"),
):
    """
    Run paper trading with live market data and simulated fills.

    Example:
        python run.py run --cycles 10 --no-dashboard
    """
    config = _load(config_path)
    logger.info("Starting paper trading", symbols=len(config.exchange.symbols), environment=config.environment)

    from cloudtrader.live.engine import TradingEngine
    from cloudtrader.runtime.scheduler import CycleScheduler

    async def run_engine() -> str:
        engine = TradingEngine.from_config(config)
        scheduler = CycleScheduler(engine, max_cycles=cycles, run_minutes=minutes)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, scheduler.shutdown)

        server = None
        server_task = None
        if config.dashboard.enabled and not no_dashboard:
            import uvicorn
            from cloudtrader.dashboard.server import create_app

            server = uvicorn.Server(
                uvicorn.Config(
                    create_app(engine, engine.sink),
                    host=config.dashboard.host,
                    port=config.dashboard.port,
                    log_level="warning",
                )
            )
            # Signals are handled by the scheduler
            server.install_signal_handlers = lambda: None
            server_task = asyncio.create_task(server.serve())

        try:
            return await scheduler.run()
        finally:
            if server is not None:
                server.should_exit = True
                await server_task
            await engine.market_data.close()

    try:
        reason = asyncio.run(run_engine())
    except DrawdownHaltError as e:
        typer.echo(f"Refusing to start: {e}", err=True)
        typer.echo("Run `ack-drawdown` to acknowledge the halt.", err=True)
        raise typer.Exit(2)

    typer.echo(f"Run finished: {reason}")
    typer.echo(f"Results exported to {config.storage.results_csv_path}")
    if reason == "drawdown_halt":
        raise typer.Exit(3)


@app.command()
def status(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """
    Summarise the persisted transaction log and the drawdown latch.
    """
    config = _load(config_path)
    transactions = TransactionLog(config.storage.transaction_log_path).read()
    guard = DrawdownGuard(config.risk, Metrics(), config.engine.drawdown_state_path)

    entries = [tx for tx in transactions if tx.type.is_entry]
    exits = [tx for tx in transactions if not tx.type.is_entry]
    realized = sum((tx.pnl for tx in exits if tx.pnl is not None), Decimal("0"))
    # Each run restarts from initial capital, so the balance is the last snapshot
    quote_ccy = config.exchange.quote_currency
    quote = Decimal(str(config.risk.initial_capital))
    if transactions:
        quote = Decimal(transactions[-1].portfolio.get(quote_ccy, str(quote)))
    net_flow = sum((tx.quote_delta for tx in transactions), Decimal("0"))

    typer.echo("=" * 50)
    typer.echo(f"Transactions:   {len(transactions)} ({len(entries)} entries, {len(exits)} exits)")
    typer.echo(f"Realized P&L:   {realized:,.2f} {config.exchange.quote_currency}")
    typer.echo(f"Quote balance:  {quote:,.2f} {quote_ccy} (as of last event)")
    typer.echo(f"Net quote flow: {net_flow:,.2f} {quote_ccy} (cumulative, all runs)")
    typer.echo(f"Drawdown latch: {'LATCHED (' + str(guard.reason) + ')' if guard.is_latched() else 'clear'}")
    if transactions:
        last = transactions[-1]
        typer.echo(f"Last event:     {last.timestamp.isoformat()} {last.type.value} {last.symbol} @ {last.price}")
    typer.echo("=" * 50)


@app.command()
def export(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
    output: Optional[Path] = typer.Option(None, "--output", help="CSV destination"),
):
    """
    Convert the JSONL transaction log into the results CSV.
    """
    config = _load(config_path)
    transactions = TransactionLog(config.storage.transaction_log_path).read()
    path = export_csv(transactions, output or config.storage.results_csv_path)
    typer.echo(f"Exported {len(transactions)} transactions to {path}")


@app.command("ack-drawdown")
def ack_drawdown(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """
    Acknowledge a latched drawdown halt so the engine can start again.
    """
    config = _load(config_path)
    guard = DrawdownGuard(config.risk, Metrics(), config.engine.drawdown_state_path)
    if guard.acknowledge():
        typer.echo("Drawdown halt acknowledged")
    else:
        typer.echo("Drawdown guard is not latched")


if __name__ == "__main__":
    app()
