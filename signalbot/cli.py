"""CLI entry point for the Binance signal bot.

Commands:
  signalbot serve             Run the webhook / management API
  signalbot streams           Run user-data streams and the TP/SL monitor
  signalbot init-db           Create or migrate the database
  signalbot stats ID          Show portfolio statistics
  signalbot positions ID      List a portfolio's positions
  signalbot orders ID         List recorded exchange orders
  signalbot close PID POSID   Close one position
  signalbot close-all ID      Close every open position of a portfolio
  signalbot sync EXCHANGE_ID  Refresh an exchange's USD valuation
  signalbot create-portfolio  Create a portfolio
  signalbot add-exchange      Connect a Binance account to a portfolio
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from signalbot.config import AppConfig, ConfigWatcher, is_live_trading_enabled, load_config
from signalbot.observability.logger import configure_logging, get_logger
from signalbot.storage.database import Database
from signalbot.storage.models import ExchangeRecord, PortfolioRecord

load_dotenv()

console = Console()
log = get_logger(__name__)

_REFRESH_SECS = 30.0

# Sections the stream loop reads through ``cfg`` on each use; others need a restart.
_HOT_SECTIONS = ("monitor", "streams")


def _run(coro: Any) -> Any:
    """Run an async coroutine from sync CLI."""
    return asyncio.run(coro)


def _open_db(cfg: AppConfig) -> Database:
    db = Database(cfg.storage)
    db.connect()
    return db


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """Binance TradingView signal bot."""
    ctx.ensure_object(dict)
    cfg = load_config(config_path)
    ctx.obj["config"] = cfg
    ctx.obj["config_path"] = config_path
    configure_logging(
        level=cfg.observability.log_level,
        fmt="console",
        log_file=cfg.observability.log_file,
    )


# ─── SERVE ───────────────────────────────────────────────────────────

@cli.command()
@click.option("--host", default=None, help="Host to bind to")
@click.option("--port", default=None, type=int, help="Port to listen on")
@click.option("--debug", is_flag=True, help="Enable Flask debug mode")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, debug: bool) -> None:
    """Run the webhook and management API."""
    from signalbot.api.app import run_api

    cfg: AppConfig = ctx.obj["config"]
    console.print("[bold cyan]Signal bot API[/bold cyan]")
    console.print(f"  Listening: http://{host or cfg.webhook.host}:{port or cfg.webhook.port}")
    console.print(f"  Dry run: {cfg.execution.dry_run}")
    console.print(f"  Live trading: {is_live_trading_enabled()}")
    run_api(config_path=ctx.obj["config_path"], host=host, port=port, debug=debug)


# ─── STREAMS ─────────────────────────────────────────────────────────

@cli.command()
@click.pass_context
def streams(ctx: click.Context) -> None:
    """Run user-data streams and the TP/SL price monitor until interrupted."""
    from signalbot.connectors.user_stream import UserDataStreamManager
    from signalbot.engine.position_manager import PositionManager
    from signalbot.engine.tp_sl_monitor import MonitoredPosition, TpSlMonitor

    watcher = ConfigWatcher(ctx.obj["config_path"])
    cfg = watcher.config

    async def _streams() -> None:
        db = _open_db(cfg)
        user_streams = UserDataStreamManager(db, cfg)
        monitor = TpSlMonitor(db, cfg, manager=PositionManager(db, cfg))

        def _reloaded(new_cfg: AppConfig, changed: list[str]) -> None:
            applied = [s for s in changed if s in _HOT_SECTIONS]
            for section in applied:
                setattr(cfg, section, getattr(new_cfg, section))
            log.info(
                "cli.config_reloaded",
                applied=applied,
                needs_restart=[s for s in changed if s not in _HOT_SECTIONS],
            )

        watcher.on_change(_reloaded)

        started = await user_streams.initialize_all_active_streams()
        loaded = monitor.load_open_positions()
        await monitor.start()
        console.print(f"[green]User streams: {started}  Monitored positions: {loaded}[/green]")

        elapsed = 0.0
        try:
            while True:
                await asyncio.sleep(cfg.monitor.queue_poll_secs)
                elapsed += cfg.monitor.queue_poll_secs
                watcher.check_and_reload()
                if elapsed < _REFRESH_SECS:
                    continue
                elapsed = 0.0
                known = {p.id for p in monitor.monitored()}
                for record in db.monitorable_positions():
                    if record.id not in known and not monitor.closer.is_queued(record.id):
                        monitor.add_position(MonitoredPosition.from_record(record))
                active = set(user_streams.active_sessions())
                for position in db.protected_positions():
                    portfolio = db.get_portfolio(position.portfolio_id)
                    if portfolio is None or portfolio.user_id in active:
                        continue
                    exchange = db.get_active_exchange(position.portfolio_id)
                    if exchange is not None and await user_streams.start_stream(portfolio.user_id, exchange):
                        active.add(portfolio.user_id)
        finally:
            await monitor.stop()
            await user_streams.stop_all()
            db.close()

    console.print("[bold cyan]Starting streams[/bold cyan] (Ctrl+C to stop)")
    try:
        _run(_streams())
    except KeyboardInterrupt:
        console.print("\n[yellow]Streams stopped by user.[/yellow]")


# ─── DATABASE ────────────────────────────────────────────────────────

@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the database and apply migrations."""
    cfg: AppConfig = ctx.obj["config"]
    db = _open_db(cfg)
    db.close()
    console.print(f"[green]Database ready at {cfg.storage.sqlite_path}[/green]")


@cli.command("create-portfolio")
@click.option("--user", "user_id", required=True, help="Owner user id")
@click.option("--name", default="Main", help="Portfolio name")
@click.option("--balance", "initial_balance", default=0.0, type=float, help="Initial balance (USD)")
@click.pass_context
def create_portfolio(ctx: click.Context, user_id: str, name: str, initial_balance: float) -> None:
    """Create a portfolio."""
    db = _open_db(ctx.obj["config"])
    try:
        pid = db.create_portfolio(PortfolioRecord(
            user_id=user_id, name=name, initial_balance=initial_balance,
        ))
    finally:
        db.close()
    console.print(f"[green]Created portfolio {pid}[/green]")


@cli.command("add-exchange")
@click.option("--portfolio", "portfolio_id", required=True, help="Portfolio id")
@click.option("--api-key", envvar="BINANCE_API_KEY", required=True, help="Binance API key")
@click.option("--api-secret", envvar="BINANCE_API_SECRET", required=True, help="Binance API secret")
@click.pass_context
def add_exchange(ctx: click.Context, portfolio_id: str, api_key: str, api_secret: str) -> None:
    """Connect a Binance account to a portfolio."""
    db = _open_db(ctx.obj["config"])
    try:
        if db.get_portfolio(portfolio_id) is None:
            console.print(f"[red]Portfolio {portfolio_id} not found[/red]")
            raise SystemExit(1)
        eid = db.create_exchange(ExchangeRecord(
            portfolio_id=portfolio_id, api_key=api_key, api_secret=api_secret,
        ))
    finally:
        db.close()
    console.print(f"[green]Added exchange {eid}[/green]")


# ─── PORTFOLIO ───────────────────────────────────────────────────────

@cli.command()
@click.argument("portfolio_id")
@click.option("--recalculate", is_flag=True, help="Recalculate before showing")
@click.pass_context
def stats(ctx: click.Context, portfolio_id: str, recalculate: bool) -> None:
    """Show portfolio statistics."""
    from signalbot.analytics.portfolio_stats import recalculate_portfolio_stats

    db = _open_db(ctx.obj["config"])
    try:
        if recalculate and db.get_portfolio(portfolio_id) is not None:
            recalculate_portfolio_stats(db, portfolio_id)
        portfolio = db.get_portfolio(portfolio_id)
    finally:
        db.close()
    if portfolio is None:
        console.print(f"[red]Portfolio {portfolio_id} not found[/red]")
        raise SystemExit(1)

    table = Table(title=f"📊 Portfolio {portfolio.name}")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Current balance", f"${portfolio.current_balance:,.2f}")
    table.add_row("Total P&L", f"${portfolio.total_pnl:,.2f} ({portfolio.total_pnl_percent:.2f}%)")
    table.add_row("Daily / weekly / monthly", (
        f"${portfolio.daily_pnl:,.2f} / ${portfolio.weekly_pnl:,.2f} / ${portfolio.monthly_pnl:,.2f}"
    ))
    table.add_row("Trades (open)", f"{portfolio.total_trades} ({portfolio.active_trades})")
    table.add_row("Win rate", f"{portfolio.win_rate:.1f}%")
    table.add_row("Avg win / loss", f"${portfolio.avg_win:,.2f} / ${portfolio.avg_loss:,.2f}")
    table.add_row("Profit factor", f"{portfolio.profit_factor:.2f}")
    table.add_row("Last calculated", portfolio.last_calculated_at or "-")
    console.print(table)


@cli.command()
@click.argument("portfolio_id")
@click.option("--status", default=None, help="Comma-separated statuses, e.g. OPEN,PENDING")
@click.pass_context
def positions(ctx: click.Context, portfolio_id: str, status: str | None) -> None:
    """List a portfolio's positions."""
    statuses = [s.strip().upper() for s in status.split(",")] if status else None
    db = _open_db(ctx.obj["config"])
    try:
        rows = db.list_positions(portfolio_id, statuses=statuses)
    finally:
        db.close()

    table = Table(title=f"Positions ({len(rows)})")
    table.add_column("ID", style="dim", max_width=12)
    table.add_column("Symbol", style="cyan")
    table.add_column("Side")
    table.add_column("Status")
    table.add_column("Qty", justify="right")
    table.add_column("Entry", justify="right")
    table.add_column("Exit", justify="right")
    table.add_column("P&L", justify="right")
    for p in rows:
        pnl_style = "green" if p.pnl > 0 else "red" if p.pnl < 0 else ""
        table.add_row(
            p.id[:12],
            p.symbol,
            p.side,
            p.status,
            f"{p.quantity:.8g}",
            f"{p.entry_price:.8g}",
            f"{p.exit_price:.8g}" if p.exit_price else "-",
            f"[{pnl_style}]{p.pnl:,.2f}[/{pnl_style}]" if pnl_style else f"{p.pnl:,.2f}",
        )
    console.print(table)


@cli.command()
@click.argument("portfolio_id")
@click.option("--position", "position_id", default=None, help="Only orders of this position")
@click.option("--symbol", default=None, help="Only orders for this symbol")
@click.option("--limit", default=50, type=int, help="Maximum rows")
@click.pass_context
def orders(
    ctx: click.Context,
    portfolio_id: str,
    position_id: str | None,
    symbol: str | None,
    limit: int,
) -> None:
    """List recorded exchange orders."""
    db = _open_db(ctx.obj["config"])
    try:
        if position_id:
            rows = [o for o in db.get_orders_for_position(position_id) if o.portfolio_id == portfolio_id]
        else:
            rows = db.list_orders(portfolio_id, symbol=symbol, limit=limit)
    finally:
        db.close()

    table = Table(title=f"Orders ({len(rows)})")
    table.add_column("Order ID", style="dim")
    table.add_column("Symbol", style="cyan")
    table.add_column("Type")
    table.add_column("Side")
    table.add_column("Status")
    table.add_column("Qty", justify="right")
    table.add_column("Price", justify="right")
    table.add_column("Account")
    for o in rows:
        table.add_row(
            o.order_id,
            o.symbol,
            o.type,
            o.side,
            o.status,
            f"{o.executed_qty or o.quantity:.8g}",
            f"{o.price:.8g}" if o.price else "-",
            o.account_type,
        )
    console.print(table)


@cli.command()
@click.argument("portfolio_id")
@click.argument("position_id")
@click.option("--side-effect", "side_effect_type", default=None, help="Margin side effect for the close order")
@click.pass_context
def close(ctx: click.Context, portfolio_id: str, position_id: str, side_effect_type: str | None) -> None:
    """Close one position at market."""
    from signalbot.engine.position_manager import PositionManager

    cfg: AppConfig = ctx.obj["config"]

    async def _close() -> Any:
        db = _open_db(cfg)
        try:
            position = db.get_position(position_id)
            if position is None or position.portfolio_id != portfolio_id:
                return None
            return await PositionManager(db, cfg).close_position(position_id, side_effect_type)
        finally:
            db.close()

    result = _run(_close())
    if result is None:
        console.print(f"[red]Position {position_id} not found in portfolio {portfolio_id}[/red]")
        raise SystemExit(1)
    if not result.success:
        console.print(f"[red]❌ {result.error}[/red]")
        raise SystemExit(1)
    console.print(
        f"[green]Closed {result.symbol}: P&L {result.pnl:,.2f} ({result.pnl_percent:.2f}%)[/green]"
    )


@cli.command("close-all")
@click.argument("portfolio_id")
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt")
@click.pass_context
def close_all(ctx: click.Context, portfolio_id: str, yes: bool) -> None:
    """Close every OPEN position of a portfolio."""
    from signalbot.engine.position_manager import PositionManager

    cfg: AppConfig = ctx.obj["config"]
    if not yes:
        click.confirm(f"Close all open positions in {portfolio_id}?", abort=True)

    async def _close_all() -> Any:
        db = _open_db(cfg)
        try:
            return await PositionManager(db, cfg).close_all_positions(portfolio_id)
        finally:
            db.close()

    summary = _run(_close_all())
    console.print_json(json.dumps(summary.to_dict(), default=str))


@cli.command()
@click.argument("exchange_id")
@click.pass_context
def sync(ctx: click.Context, exchange_id: str) -> None:
    """Refresh an exchange's spot and margin USD valuation."""
    from signalbot.analytics.valuation import sync_exchange
    from signalbot.connectors.binance_client import client_for_exchange

    cfg: AppConfig = ctx.obj["config"]

    async def _sync() -> Any:
        db = _open_db(cfg)
        try:
            exchange = db.get_exchange(exchange_id)
            if exchange is None:
                raise click.ClickException(f"Exchange {exchange_id} not found")
            client = client_for_exchange(exchange, cfg.binance)
            try:
                return await sync_exchange(db, exchange_id, client)
            finally:
                await client.close()
        finally:
            db.close()

    try:
        value = _run(_sync())
    except ValueError as e:
        raise click.ClickException(str(e)) from e
    console.print(
        f"[green]Spot ${value.spot_value:,.2f}  Margin ${value.margin_value:,.2f}  "
        f"Total ${value.total_value:,.2f}[/green]"
    )


def main() -> None:
    cli(obj={})


if __name__ == "__main__":
    main()
