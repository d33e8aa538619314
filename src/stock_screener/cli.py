"""Command-line interface for stock screener."""

import csv
from datetime import datetime, timedelta

import click
import yaml
from rich.console import Console
from rich.table import Table

from stock_screener import __version__
from stock_screener.config import Settings, get_settings, load_settings
from stock_screener.data.cached_provider import CachedMarketData
from stock_screener.data.database import SNAPSHOT_NUMERIC_FIELDS, Database
from stock_screener.data.fmp_provider import FMPProvider
from stock_screener.data.yfinance_provider import YFinanceProvider
from stock_screener.engine import (
    DataRefresher,
    EarningsCalendarSync,
    TradingEngine,
    Watchdog,
)
from stock_screener.errors import EngineError
from stock_screener.models.enums import ExitReason, PositionStatus, RefreshType, RunType
from stock_screener.models.records import RunRecord
from stock_screener.scoring.factors import criteria_from_definition
from stock_screener.utils.calculations import (
    calculate_data_quality,
    determine_data_completeness,
    to_float,
)
from stock_screener.utils.logging import setup_logging

console = Console()

DATE = click.DateTime(formats=["%Y-%m-%d"])

# CSV columns accepted by "stocks import"
SNAPSHOT_IMPORT_FIELDS = ["company_name", "sector", *SNAPSHOT_NUMERIC_FIELDS]


def create_market_data(settings: Settings, db: Database, provider_choice: str | None = None):
    """
    Create the market data source, wrapped so failed quotes fall back to stored prices.

    Returns:
        Tuple of (market_data, provider_name)
    """
    provider_name = provider_choice or "yfinance"

    if provider_name == "fmp":
        try:
            base = FMPProvider(settings.fmp)
            console.print("[cyan]Using FMP data provider[/cyan]")
        except ValueError as e:
            console.print(f"[yellow]FMP unavailable ({e}), falling back to yfinance[/yellow]")
            base = YFinanceProvider(settings.data)
            provider_name = "yfinance"
    else:
        base = YFinanceProvider(settings.data)

    def stored_price(symbol: str) -> float | None:
        snapshot = db.get_stock(symbol)
        return to_float(snapshot.current_price) if snapshot else None

    return CachedMarketData(base, fallback=stored_price), provider_name


def _db(ctx: click.Context) -> Database:
    return ctx.obj["db"]


def _engine(ctx: click.Context, provider: str | None = None) -> TradingEngine:
    settings = ctx.obj["settings"]
    db = _db(ctx)
    market_data, _ = create_market_data(settings, db, provider)
    return TradingEngine(db, market_data, settings=settings)


def _fail(error: Exception) -> None:
    console.print(f"[red]Error: {error}[/red]")
    raise SystemExit(1)


def _money(value: float | None) -> str:
    return "-" if value is None else f"${value:,.2f}"


def _print_run(run: RunRecord) -> None:
    table = Table(show_header=False, title=f"Run {run.id}: {run.name}")
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    table.add_row("Status", run.status.value)
    table.add_row("Type", run.run_type.value)
    table.add_row("Screen", str(run.screen_id))
    table.add_row("Dates", f"{run.start_date} to {run.end_date or 'open'}")
    table.add_row("Starting capital", _money(run.starting_capital))
    table.add_row("Max positions", str(run.max_positions))
    table.add_row("Trailing stop", f"{run.trailing_stop_pct:.1f}%")
    if run.current_capital is not None:
        table.add_row("Current capital", _money(run.current_capital))
    if run.error_message:
        table.add_row("Error", f"[red]{run.error_message}[/red]")

    agg = run.aggregates
    if agg is not None:
        table.add_row("Final capital", _money(agg.final_capital))
        table.add_row("Total return", f"{agg.total_return:.2f}% ({_money(agg.total_return_dollars)})")
        table.add_row("Trades", f"{agg.total_trades} ({agg.winning_trades} won, {agg.losing_trades} lost)")
        table.add_row("Win rate", f"{agg.win_rate:.1f}%")
        table.add_row("Avg win / loss", f"{_money(agg.avg_win_amount)} / {_money(agg.avg_loss_amount)}")
        table.add_row("Avg hold", f"{agg.avg_hold_time_days:.2f} days")
        table.add_row("Max drawdown", f"{agg.max_drawdown:.2f}%")
        table.add_row("Sharpe", f"{agg.sharpe_ratio:.2f}")
        table.add_row("Profit factor", "-" if agg.profit_factor is None else f"{agg.profit_factor:.2f}")

    console.print(table)


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose logging")
@click.option("--config", type=click.Path(exists=True), help="Path to config file")
@click.option("--db-path", type=click.Path(), default=None, help="Path to database file")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config: str | None, db_path: str | None) -> None:
    """Stock Screener - Factor screening, backtests and paper trading."""
    ctx.ensure_object(dict)

    settings = load_settings(config) if config else get_settings()
    ctx.obj["settings"] = settings

    log_level = "DEBUG" if verbose else settings.logging.level
    setup_logging(log_level)

    ctx.obj["db"] = Database(db_path or settings.database.path)


# =============================================================================
# Screens and stock data
# =============================================================================


@cli.group()
def screens() -> None:
    """Screen definitions."""
    pass


@screens.command("import")
@click.argument("yaml_file", type=click.Path(exists=True))
@click.pass_context
def import_screens(ctx: click.Context, yaml_file: str) -> None:
    """Import screen definitions from a YAML file (a list or a 'screens' key)."""
    with open(yaml_file) as f:
        data = yaml.safe_load(f) or []
    definitions = data.get("screens", []) if isinstance(data, dict) else data

    db = _db(ctx)
    imported = 0
    for definition in definitions:
        try:
            screen_id = db.save_screen(criteria_from_definition(definition))
            console.print(f"  [green]{definition['name']}[/green] -> screen {screen_id}")
            imported += 1
        except EngineError as e:
            console.print(f"[red]Error importing {definition.get('name', 'unnamed')}: {e}[/red]")

    console.print(f"[green]Imported {imported} of {len(definitions)} screens[/green]")


@screens.command("list")
@click.pass_context
def list_screens(ctx: click.Context) -> None:
    """List screens."""
    table = Table(title="Screens")
    table.add_column("ID", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("Type")
    table.add_column("Active")
    table.add_column("Factors")
    table.add_column("Capital", justify="right")

    for screen in _db(ctx).list_screens():
        table.add_row(
            str(screen.id),
            screen.name,
            screen.screen_type.value,
            "yes" if screen.is_active else "no",
            ", ".join(sorted(screen.factors)) or "-",
            _money(screen.current_capital if screen.current_capital is not None else screen.allocated_capital),
        )
    console.print(table)


@cli.group()
def stocks() -> None:
    """Stock snapshot data."""
    pass


@stocks.command("import")
@click.argument("csv_file", type=click.Path(exists=True))
@click.pass_context
def import_stocks(ctx: click.Context, csv_file: str) -> None:
    """Import stock snapshots from a CSV file with a 'symbol' column."""
    db = _db(ctx)

    with open(csv_file, "r") as f:
        rows = list(csv.DictReader(f))

    if not rows:
        console.print("[yellow]No data in CSV file[/yellow]")
        return

    console.print(f"[cyan]Importing {len(rows)} stocks from {csv_file}...[/cyan]")

    imported = 0
    for row in rows:
        symbol = (row.get("symbol") or row.get("ticker") or "").strip().upper()
        if not symbol:
            continue
        try:
            fields = {
                name: (row[name].strip() or None) if name in ("company_name", "sector") else to_float(row[name])
                for name in SNAPSHOT_IMPORT_FIELDS
                if name in row
            }
            fields["data_quality"] = calculate_data_quality(fields)
            fields["data_completeness"] = determine_data_completeness(fields)
            db.upsert_stock(symbol, fields)
            imported += 1
        except ValueError as e:
            console.print(f"[red]Error importing {symbol}: {e}[/red]")

    console.print(f"[green]Imported {imported} stocks to {db.db_path}[/green]")


# =============================================================================
# Screening and opportunities
# =============================================================================


@cli.group()
def screen() -> None:
    """Screening passes and earnings opportunities."""
    pass


@screen.command("run")
@click.option("--screen-id", type=int, default=None, help="Screen to run (default: all active)")
@click.pass_context
def run_screen(ctx: click.Context, screen_id: int | None) -> None:
    """Score the stock universe and update watchlists."""
    engine = _engine(ctx)
    try:
        results = engine.run_oshaughnessy_screening(screen_id)
    except EngineError as e:
        _fail(e)

    table = Table(title="Screening Results")
    for column in ("Screen", "Processed", "Qualified", "Updated", "Inserted", "Skipped", "Failed"):
        table.add_column(column, justify="right")
    for result in results:
        table.add_row(*(str(v) for v in result.to_dict().values()))
    console.print(table)


@screen.command("watchlist")
@click.argument("screen_id", type=int)
@click.option("--limit", type=int, default=25, help="Rows to show")
@click.pass_context
def show_watchlist(ctx: click.Context, screen_id: int, limit: int) -> None:
    """Show a screen's watchlist, best score first."""
    entries = _db(ctx).get_watchlist(screen_id)[:limit]
    if not entries:
        console.print("[yellow]Watchlist is empty. Run 'stock-screener screen run' first.[/yellow]")
        return

    table = Table(title=f"Watchlist for screen {screen_id} (top {len(entries)})")
    table.add_column("Ticker", style="cyan")
    table.add_column("Score", justify="right")
    table.add_column("P/E", justify="right")
    table.add_column("P/S", justify="right")
    table.add_column("Momentum", justify="right")
    table.add_column("Price", justify="right")
    for entry in entries:
        table.add_row(
            entry.ticker,
            f"{entry.score:.2f}",
            "-" if entry.pe_ratio is None else f"{entry.pe_ratio:.1f}",
            "-" if entry.ps_ratio is None else f"{entry.ps_ratio:.1f}",
            "-" if entry.momentum is None else f"{entry.momentum:.1f}%",
            _money(entry.current_price),
        )
    console.print(table)


@screen.command("opportunities")
@click.argument("screen_id", type=int)
@click.option("--from", "start", type=DATE, default=None, help="First earnings date (default: today)")
@click.option("--to", "end", type=DATE, default=None, help="Last earnings date (default: --from)")
@click.option("--execute", is_flag=True, help="Open live positions for the opportunities")
@click.pass_context
def opportunities(
    ctx: click.Context, screen_id: int, start: datetime | None, end: datetime | None, execute: bool
) -> None:
    """Find qualifying earnings beats on a screen's watchlist."""
    engine = _engine(ctx)
    try:
        scan = engine.earnings_scan(
            screen_id, start.date() if start else None, end.date() if end else None
        )
    except EngineError as e:
        _fail(e)

    summary = scan.summary
    console.print(
        f"Monitored {summary.total_monitored} | scheduled {summary.scheduled} | "
        f"reported {summary.reported} | beats {summary.beats} "
        f"(qualified {summary.qualified_beats}) | misses {summary.misses} | pending {summary.pending}"
    )
    if not scan.opportunities:
        console.print("[yellow]No qualifying earnings beats[/yellow]")
        return

    table = Table(title="Earnings Opportunities")
    table.add_column("Ticker", style="cyan")
    table.add_column("Date")
    table.add_column("Estimate", justify="right")
    table.add_column("Actual", justify="right")
    table.add_column("Surprise", justify="right", style="green")
    table.add_column("Price", justify="right")
    for opp in scan.opportunities:
        table.add_row(
            opp.ticker,
            str(opp.earnings_date),
            f"{opp.estimated_eps:.2f}" if opp.estimated_eps is not None else "-",
            f"{opp.actual_eps:.2f}" if opp.actual_eps is not None else "-",
            f"{opp.surprise:.1f}%",
            _money(opp.current_price),
        )
    console.print(table)

    if execute:
        opened = engine.execute_opportunities(screen_id, scan.opportunities)
        console.print(f"[green]Opened {len(opened)} positions[/green]")


# =============================================================================
# Backtests and paper trading
# =============================================================================


@cli.command()
@click.argument("screen_id", type=int)
@click.option("--start", type=DATE, required=True, help="First trading day (YYYY-MM-DD)")
@click.option("--end", type=DATE, required=True, help="Last trading day (YYYY-MM-DD)")
@click.option("--capital", type=float, default=None, help="Initial capital (default: from config)")
@click.option("--max-positions", type=int, default=None, help="Concurrent positions (default: from config)")
@click.option("--trailing-stop", type=float, default=None, help="Trailing stop percent (default: from config)")
@click.option("--name", type=str, default=None, help="Run name")
@click.option(
    "--provider",
    type=click.Choice(["fmp", "yfinance"]),
    default=None,
    help="Price source for daily bars",
)
@click.pass_context
def backtest(
    ctx: click.Context,
    screen_id: int,
    start: datetime,
    end: datetime,
    capital: float | None,
    max_positions: int | None,
    trailing_stop: float | None,
    name: str | None,
    provider: str | None,
) -> None:
    """Replay a screen's watchlist over historical daily bars."""
    engine = _engine(ctx, provider)
    try:
        result = engine.run_backtest(
            screen_id,
            start.date(),
            end.date(),
            initial_capital=capital,
            max_positions=max_positions,
            trailing_stop_pct=trailing_stop,
            name=name,
        )
    except EngineError as e:
        _fail(e)

    _print_run(result.run)
    if result.trades:
        _print_trades(result.trades[-20:], title=f"Last {min(20, len(result.trades))} trades")


@cli.group()
def paper() -> None:
    """Paper-trading runs."""
    pass


@paper.command("create")
@click.argument("screen_id", type=int)
@click.option("--type", "run_type", type=click.Choice(["LIVE", "HISTORICAL"]), default="LIVE")
@click.option("--start", "start_date", type=DATE, default=None, help="Start date (default: today)")
@click.option("--end", "end_date", type=DATE, default=None, help="End date (required for HISTORICAL)")
@click.option("--capital", type=float, default=None)
@click.option("--max-positions", type=int, default=None)
@click.option("--trailing-stop", type=float, default=None)
@click.option("--name", type=str, default=None)
@click.option("--description", type=str, default=None)
@click.option("--run", "drive", is_flag=True, help="Drive the run in the foreground after creating it")
@click.pass_context
def create_run(
    ctx: click.Context,
    screen_id: int,
    run_type: str,
    start_date: datetime | None,
    end_date: datetime | None,
    capital: float | None,
    max_positions: int | None,
    trailing_stop: float | None,
    name: str | None,
    description: str | None,
    drive: bool,
) -> None:
    """Create a RUNNING paper-trading run."""
    engine = _engine(ctx)
    try:
        run = engine.create_paper_trading_run(
            screen_id,
            start_date=start_date.date() if start_date else None,
            end_date=end_date.date() if end_date else None,
            run_type=RunType(run_type),
            starting_capital=capital,
            max_positions=max_positions,
            trailing_stop_pct=trailing_stop,
            name=name,
            description=description,
            start=False,
        )
        console.print(f"[green]Created run {run.id} ({run.run_type.value})[/green]")
        if drive:
            run = engine.run_paper_trading_backtest(run.id)
    except EngineError as e:
        _fail(e)

    _print_run(run)


@paper.command("start")
@click.argument("run_id", type=int)
@click.pass_context
def start_run(ctx: click.Context, run_id: int) -> None:
    """Drive a RUNNING run in the foreground until it finishes or is stopped."""
    engine = _engine(ctx)
    try:
        run = engine.run_paper_trading_backtest(run_id)
    except EngineError as e:
        _fail(e)
    _print_run(run)


@paper.command("stop")
@click.argument("run_id", type=int)
@click.pass_context
def stop_run(ctx: click.Context, run_id: int) -> None:
    """Request a RUNNING run to stop."""
    engine = _engine(ctx)
    try:
        run = engine.stop_run(run_id)
    except EngineError as e:
        _fail(e)
    _print_run(run)


@paper.command("show")
@click.argument("run_id", type=int, required=False)
@click.option("--trades", "show_trades", is_flag=True, help="Also list the run's trades")
@click.pass_context
def show_run(ctx: click.Context, run_id: int | None, show_trades: bool) -> None:
    """Show one run, or list all runs."""
    db = _db(ctx)
    if run_id is None:
        table = Table(title="Runs")
        for column in ("ID", "Name", "Type", "Status", "Start", "End", "Return"):
            table.add_column(column)
        for run in db.list_runs():
            ret = f"{run.aggregates.total_return:.2f}%" if run.aggregates else "-"
            table.add_row(
                str(run.id), run.name, run.run_type.value, run.status.value,
                str(run.start_date), str(run.end_date or "-"), ret,
            )
        console.print(table)
        return

    run = db.get_run(run_id)
    if run is None:
        _fail(EngineError(f"Run {run_id} not found"))
    _print_run(run)
    if show_trades:
        _print_trades(db.get_trades(run_id), title="Trades")


def _print_trades(trades, title: str) -> None:
    table = Table(title=title)
    table.add_column("Ticker", style="cyan")
    table.add_column("Qty", justify="right")
    table.add_column("Entry", justify="right")
    table.add_column("Exit", justify="right")
    table.add_column("P&L", justify="right")
    table.add_column("Reason")
    table.add_column("Closed")
    for trade in trades:
        color = "green" if trade.realized_pnl > 0 else "red"
        table.add_row(
            trade.ticker,
            str(trade.quantity),
            _money(trade.entry_price),
            _money(trade.exit_price),
            f"[{color}]{_money(trade.realized_pnl)}[/{color}]",
            trade.exit_reason.value,
            trade.exit_time.strftime("%Y-%m-%d %H:%M"),
        )
    console.print(table)


# =============================================================================
# Live positions
# =============================================================================


@cli.group()
def positions() -> None:
    """Live positions."""
    pass


@positions.command("list")
@click.option("--all", "show_all", is_flag=True, help="Include closed positions")
@click.pass_context
def list_positions(ctx: click.Context, show_all: bool) -> None:
    """List live positions."""
    status = None if show_all else PositionStatus.OPEN
    rows = _db(ctx).list_positions(status=status, live_only=True)
    if not rows:
        console.print("[yellow]No positions[/yellow]")
        return

    table = Table(title="Positions")
    for column in ("ID", "Ticker", "Qty", "Entry", "Current", "Stop", "Unrealized", "Status"):
        table.add_column(column)
    for p in rows:
        table.add_row(
            str(p.id), p.ticker, str(p.quantity), _money(p.entry_price), _money(p.current_price),
            _money(p.trailing_stop_price), _money(p.unrealized_pnl), p.status.value,
        )
    console.print(table)


@positions.command("close")
@click.argument("position_id", type=int)
@click.option("--price", type=float, default=None, help="Exit price (default: latest quote)")
@click.pass_context
def close_position(ctx: click.Context, position_id: int, price: float | None) -> None:
    """Manually close one OPEN position."""
    engine = _engine(ctx)
    try:
        trade = engine.sell_position(position_id, ExitReason.MANUAL, price=price)
    except EngineError as e:
        _fail(e)
    console.print(
        f"[green]Closed {trade.ticker} @ {_money(trade.exit_price)} "
        f"(P&L {_money(trade.realized_pnl)})[/green]"
    )


@positions.command("monitor")
@click.pass_context
def monitor(ctx: click.Context) -> None:
    """Update open positions and sell the ones that hit an exit rule."""
    trades = _engine(ctx).monitor_positions()
    if trades:
        _print_trades(trades, title="Closed this pass")
    else:
        console.print("[green]No exits triggered[/green]")


# =============================================================================
# Data maintenance
# =============================================================================


@cli.group()
def data() -> None:
    """Stock data refresh, earnings calendar and cleanup."""
    pass


@data.command("refresh")
@click.option("--symbols", type=str, default=None, help="Comma-separated symbols (default: all)")
@click.option("--momentum", is_flag=True, help="Recompute 1M/3M/6M/12M momentum from daily bars")
@click.option(
    "--type",
    "refresh_type",
    type=click.Choice([t.value for t in RefreshType]),
    default=RefreshType.MANUAL_REFRESH.value,
)
@click.option("--provider", type=click.Choice(["fmp", "yfinance"]), default=None)
@click.pass_context
def refresh(
    ctx: click.Context, symbols: str | None, momentum: bool, refresh_type: str, provider: str | None
) -> None:
    """Refresh stock snapshots from the market data source."""
    settings = ctx.obj["settings"]
    db = _db(ctx)
    market_data, _ = create_market_data(settings, db, provider)
    refresher = DataRefresher(db, market_data, settings.data)

    symbol_list = [s.strip().upper() for s in symbols.split(",") if s.strip()] if symbols else None
    try:
        log = refresher.refresh(symbol_list, RefreshType(refresh_type), include_momentum=momentum)
    except EngineError as e:
        _fail(e)

    console.print(
        f"[green]Refresh {log.id} {log.status.value}[/green]: processed {log.stocks_processed}, "
        f"updated {log.stocks_updated}, skipped {log.stocks_skipped}, failed {log.stocks_failed}"
    )


@data.command("earnings-sync")
@click.option("--from", "start", type=DATE, default=None, help="First date (default: today)")
@click.option("--to", "end", type=DATE, default=None, help="Last date (default: +30 days)")
@click.pass_context
def earnings_sync(ctx: click.Context, start: datetime | None, end: datetime | None) -> None:
    """Sync the earnings calendar from FMP."""
    settings = ctx.obj["settings"]
    try:
        source = FMPProvider(settings.fmp)
        result = EarningsCalendarSync(_db(ctx), source).sync(
            start.date() if start else None, end.date() if end else None
        )
    except (EngineError, ValueError) as e:
        _fail(e)

    console.print(
        f"[green]Earnings calendar synced[/green]: added {result.added}, "
        f"updated {result.updated}, skipped {result.skipped}"
    )


@data.command("watchdog")
@click.option("--minutes", type=int, default=None, help="Staleness threshold (default: from config)")
@click.pass_context
def watchdog(ctx: click.Context, minutes: int | None) -> None:
    """Mark stale RUNNING runs and refresh jobs FAILED."""
    settings = ctx.obj["settings"]
    threshold = timedelta(minutes=minutes or settings.engine.stale_run_minutes)
    report = Watchdog(_db(ctx), threshold).check()

    console.print(
        f"Marked {len(report.failed_runs)} stale runs and "
        f"{report.failed_refreshes} stale refreshes FAILED"
    )
    for run_id in report.failed_runs:
        console.print(f"  [yellow]run {run_id}[/yellow]")


@data.command("refresh-logs")
@click.option("--limit", type=int, default=10)
@click.pass_context
def refresh_logs(ctx: click.Context, limit: int) -> None:
    """Show recent refresh jobs."""
    table = Table(title="Refresh Logs")
    for column in ("ID", "Type", "Status", "Started", "Processed", "Updated", "Failed", "Error"):
        table.add_column(column)
    for log in _db(ctx).list_refresh_logs(limit):
        table.add_row(
            str(log.id), log.refresh_type.value, log.status.value,
            log.start_time.strftime("%Y-%m-%d %H:%M"), str(log.stocks_processed),
            str(log.stocks_updated), str(log.stocks_failed), log.error_message or "",
        )
    console.print(table)


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
