"""Main CLI entry point for TradeCore."""

import sys
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from dotenv import load_dotenv

# Relative imports for package
from .config import load_config, account_from_config, resolve_config_path
from .export import parse_positions_csv
from .feed import FeedConsumer, parse_ticks_csv
from .ledger import PositionLedger
from .models import OrderFormData, OrderType, RiskMethod, Side, utcnow
from .reporter import Reporter
from .risk_calculator import RiskCalculator
from .validator import validate_order
from .exceptions import (
    ExceptionMapper,
    ConfigError,
    DataError,
    TradeCoreError,
    EXIT_SUCCESS,
    EXIT_CONFIG_ERROR,
    EXIT_BLOCKED,
    EXIT_DATA_ERROR
)

# Load environment variables (TRADECORE_CONFIG may come from .env)
load_dotenv()

# Initialize Typer app
app = typer.Typer(
    name="tradecore",
    help="Risk and position management for margin trading accounts.",
    add_completion=False
)

# Initialize console for output
console = Console()

CONFIG_HELP = "Path to configuration file (default: $TRADECORE_CONFIG or config.yaml)"


# Configure logging
def setup_logging(debug: bool = False):
    """Configure logging based on debug flag."""
    level = logging.DEBUG if debug else logging.WARNING

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def handle_error(e: Exception, debug: bool) -> None:
    """Report an exception and exit with its mapped code."""
    if isinstance(e, ConfigError):
        console.print(f"\n[red]Configuration error: {e}[/red]")
        sys.exit(EXIT_CONFIG_ERROR)

    if isinstance(e, DataError):
        console.print(f"\n[red]Data error: {e}[/red]")
        sys.exit(EXIT_DATA_ERROR)

    if isinstance(e, KeyboardInterrupt):
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(EXIT_SUCCESS)

    # Map exception to exit code
    exit_code = ExceptionMapper.map_to_exit_code(e)

    if debug:
        # In debug mode, show full traceback
        console.print_exception()
    elif isinstance(e, TradeCoreError):
        console.print(f"\n[red]{e.code}: {e}[/red]")
    else:
        console.print(f"\n[red]Error: {e}[/red]")
        console.print(f"[dim]Exit code: {exit_code}[/dim]")
        console.print("[dim]Run with --debug for more details[/dim]")

    sys.exit(exit_code)


@app.command("check-config")
def check_config(
    config_file: Optional[str] = typer.Option(None, "--config-file", "-c", help=CONFIG_HELP),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging")
):
    """Validate a configuration file and show the effective settings."""
    setup_logging(debug)

    try:
        path = resolve_config_path(config_file)
        console.print(f"[dim]Loading configuration from {path}...[/dim]")
        config = load_config(path)
        account = account_from_config(config)

        console.print("\n[bold]Configuration:[/bold]")
        console.print(f"  • Balance: {account.balance:,.2f}")
        console.print(f"  • Leverage: 1:{account.leverage:g}")
        console.print(f"  • Margin call / stop out: {account.margin_call_level:g}% / {account.stop_out_level:g}%")
        console.print(f"  • Default lot size: {account.default_lot_size:g}")
        console.print(f"  • Tick throttle: {config['ledger']['throttle_interval_ms']:g} ms")
        console.print(f"  • Max risk per order: {config['risk']['max_risk_percentage']:g}%")
        console.print(f"  • Export format: {config['export']['format'].upper()}")
        console.print(f"  • Timezone: {config['display']['timezone']}")

        console.print("\n[green]✓ Configuration valid[/green]")
        sys.exit(EXIT_SUCCESS)

    except (Exception, KeyboardInterrupt) as e:
        handle_error(e, debug)


@app.command()
def margin(
    positions_file: Path = typer.Argument(..., help="Positions CSV (export format)"),
    ticks_file: Optional[Path] = typer.Option(
        None, "--ticks", "-t",
        help="CSV of ticks (symbol,bid,ask,timestamp) to replay before reporting"
    ),
    export_file: Optional[str] = typer.Option(
        None, "--export", "-o",
        help="Write the marked positions to this file"
    ),
    report_file: Optional[str] = typer.Option(
        None, "--report",
        help="Write a JSON margin report to this file"
    ),
    config_file: Optional[str] = typer.Option(None, "--config-file", "-c", help=CONFIG_HELP),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging")
):
    """
    Report margin status for a set of open positions.

    Positions are loaded from an export file, optionally marked to
    replayed ticks, and summarized with equity, free margin and the
    margin level tier.
    """
    setup_logging(debug)
    logger = logging.getLogger(__name__)

    try:
        config = load_config(config_file)
        account = account_from_config(config)
        reporter = Reporter(config, console)

        ledger = PositionLedger(throttle_interval_ms=config['ledger']['throttle_interval_ms'])
        for row in parse_positions_csv(positions_file):
            ledger.restore(row.to_position(ledger.id_factory()))
        logger.info(f"Loaded {len(ledger)} positions from {positions_file}")

        stale = []
        if ticks_file is not None:
            ticks = parse_ticks_csv(ticks_file)
            with FeedConsumer(ledger) as consumer:
                received = consumer.start(ticks).result()
            console.print(f"[dim]Replayed {received} ticks[/dim]")

            # Symbols that never received a tick keep their exported price
            stale = ledger.stale_symbols(since=ticks[0].timestamp if ticks else utcnow())

        reporter.display_positions(ledger.snapshot())

        status = ledger.margin_status(account)
        console.print()
        reporter.display_margin_status(status, account)

        if stale:
            console.print(f"[yellow]No ticks for: {', '.join(stale)}[/yellow]")

        if export_file:
            path = reporter.export_positions(ledger.snapshot(), export_file)
            console.print(f"[dim]Exported positions to {path}[/dim]")

        if report_file:
            reporter.save_report(report_file, status, account, stale)

        sys.exit(EXIT_SUCCESS)

    except (Exception, KeyboardInterrupt) as e:
        handle_error(e, debug)


@app.command()
def size(
    symbol: str = typer.Argument(..., help="Currency pair, e.g. EURUSD"),
    side: Side = typer.Argument(..., help="BUY or SELL"),
    entry: float = typer.Argument(..., help="Entry price"),
    stop_loss_pips: float = typer.Option(50.0, "--sl-pips", help="Stop loss distance in pips"),
    take_profit_pips: float = typer.Option(100.0, "--tp-pips", help="Take profit distance in pips"),
    method: RiskMethod = typer.Option(RiskMethod.PERCENTAGE, "--method", "-m", help="Sizing method"),
    risk: float = typer.Option(2.0, "--risk", "-r", help="Percent of balance to risk (percentage method)"),
    amount: float = typer.Option(0.0, "--amount", help="Amount to risk (fixed method)"),
    lots: Optional[float] = typer.Option(None, "--lots", help="Volume in lots (lots method)"),
    config_file: Optional[str] = typer.Option(None, "--config-file", "-c", help=CONFIG_HELP),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging")
):
    """Suggest a position size for a stop distance and risk budget."""
    setup_logging(debug)

    try:
        config = load_config(config_file)
        account = account_from_config(config)

        sizing = RiskCalculator().size_position(
            symbol.upper(),
            side,
            entry,
            account,
            stop_loss_pips=stop_loss_pips,
            take_profit_pips=take_profit_pips,
            method=method,
            risk_percentage=risk,
            fixed_amount=amount,
            lots=lots
        )
        Reporter(config, console).display_sizing(sizing)
        sys.exit(EXIT_SUCCESS)

    except (Exception, KeyboardInterrupt) as e:
        handle_error(e, debug)


@app.command()
def validate(
    symbol: str = typer.Argument(..., help="Currency pair, e.g. EURUSD"),
    side: Side = typer.Argument(..., help="BUY or SELL"),
    volume: float = typer.Argument(..., help="Volume in lots"),
    order_type: OrderType = typer.Option(OrderType.MARKET, "--type", help="Order type"),
    price: Optional[float] = typer.Option(None, "--price", "-p", help="Entry price"),
    stop_loss: Optional[float] = typer.Option(None, "--sl", help="Stop loss price"),
    take_profit: Optional[float] = typer.Option(None, "--tp", help="Take profit price"),
    risk: Optional[float] = typer.Option(None, "--risk", "-r", help="Risk percentage"),
    config_file: Optional[str] = typer.Option(None, "--config-file", "-c", help=CONFIG_HELP),
    debug: bool = typer.Option(False, "--debug", "-d", help="Enable debug logging")
):
    """
    Validate an order without submitting it.

    Exits with code 3 when the order has validation errors.
    """
    setup_logging(debug)

    try:
        config = load_config(config_file)
        form = OrderFormData(
            symbol=symbol.upper(),
            side=side,
            volume=volume,
            order_type=order_type,
            price=price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            risk_percentage=risk
        )
        result = validate_order(
            form,
            max_risk_percentage=config['risk']['max_risk_percentage'],
            large_volume=config['risk']['large_volume_warning']
        )
        Reporter(config, console).display_validation(result)
        sys.exit(EXIT_SUCCESS if result.is_valid else EXIT_BLOCKED)

    except (Exception, KeyboardInterrupt) as e:
        handle_error(e, debug)


@app.command()
def version():
    """Show version information."""
    from . import __version__
    console.print(f"TradeCore v{__version__}")


if __name__ == "__main__":
    app()
