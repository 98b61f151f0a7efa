"""Console display of positions, margin status and risk reports."""

from __future__ import annotations

import json
import logging
import math
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pytz
from rich.console import Console
from rich.table import Table

from . import export
from .models import (
    AccountContext,
    AccountMarginStatus,
    MarginTier,
    Position,
    PositionSizing,
    RiskLevel,
    Side,
    ValidationResult,
)

logger = logging.getLogger(__name__)

TIER_STYLES = {
    MarginTier.SAFE: "green",
    MarginTier.WARNING: "yellow",
    MarginTier.DANGER: "red",
    MarginTier.CRITICAL: "bold red",
}

RISK_STYLES = {
    RiskLevel.LOW: "green",
    RiskLevel.MEDIUM: "yellow",
    RiskLevel.HIGH: "red",
    RiskLevel.EXTREME: "bold red",
}

DISPLAY_LIMIT = 20


def format_level(margin_level: float) -> str:
    return "∞" if math.isinf(margin_level) else f"{margin_level:.2f}%"


class Reporter:
    """
    Renders account state to the console and writes exports.

    Args:
        config: Validated configuration dictionary
        console: Console to write to (a new one by default)
    """

    def __init__(self, config: Dict[str, Any], console: Optional[Console] = None):
        self.config = config
        self.console = console or Console()
        self.timezone = pytz.timezone(config['display']['timezone'])

    def local_time(self, when: datetime) -> str:
        if when.tzinfo is None:
            when = pytz.UTC.localize(when)
        return when.astimezone(self.timezone).strftime('%Y-%m-%d %H:%M:%S %Z')

    def display_positions(self, positions: Sequence[Position]) -> None:
        """Display open positions, at most 20 rows."""
        if not positions:
            self.console.print("[yellow]No open positions[/yellow]")
            return

        table = Table(title="Open Positions", show_header=True, header_style="bold cyan")
        table.add_column("Symbol", style="cyan", no_wrap=True)
        table.add_column("Side")
        table.add_column("Volume", justify="right")
        table.add_column("Open", justify="right")
        table.add_column("Current", justify="right")
        table.add_column("P&L", justify="right")
        table.add_column("SL", justify="right")
        table.add_column("TP", justify="right")
        table.add_column("Opened")

        for position in positions[:DISPLAY_LIMIT]:
            pnl_style = "green" if position.pnl >= 0 else "red"
            table.add_row(
                position.symbol,
                "[green]BUY[/green]" if position.side is Side.BUY else "[red]SELL[/red]",
                f"{position.volume:.2f}",
                f"{position.open_price:.5f}",
                f"{position.current_price:.5f}",
                f"[{pnl_style}]{position.pnl:.2f}[/{pnl_style}]",
                f"{position.stop_loss:.5f}" if position.stop_loss is not None else "-",
                f"{position.take_profit:.5f}" if position.take_profit is not None else "-",
                self.local_time(position.open_time)
            )

        self.console.print(table)
        if len(positions) > DISPLAY_LIMIT:
            self.console.print(
                f"\n[dim]Showing {DISPLAY_LIMIT} of {len(positions)} positions. "
                f"Export for the complete list.[/dim]"
            )

    def display_margin_status(self, status: AccountMarginStatus, account: AccountContext) -> None:
        style = TIER_STYLES[status.status]

        table = Table(title="Margin Status", show_header=False)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", justify="right")
        table.add_row("Balance", f"{account.balance:,.2f}")
        table.add_row("Unrealized P&L", f"{status.total_unrealized_pnl:,.2f}")
        table.add_row("Equity", f"{status.equity:,.2f}")
        table.add_row("Margin used", f"{status.total_margin_used:,.2f}")
        table.add_row("Free margin", f"{status.free_margin:,.2f}")
        table.add_row("Margin level", format_level(status.margin_level))
        table.add_row("Leverage", f"1:{account.leverage:g}")
        table.add_row("Status", f"[{style}]{status.status.value.upper()}[/{style}]")
        self.console.print(table)

        if status.status is MarginTier.CRITICAL:
            self.console.print(
                f"[bold red]Margin level below stop out ({account.stop_out_level:g}%)[/bold red]"
            )
        elif status.status is MarginTier.DANGER:
            self.console.print(
                f"[red]Margin level below margin call ({account.margin_call_level:g}%)[/red]"
            )

    def display_sizing(self, sizing: PositionSizing) -> None:
        assessment = sizing.assessment
        style = RISK_STYLES[assessment.risk_level]

        table = Table(title=f"Position Size: {sizing.side.value} {sizing.symbol}", show_header=False)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", justify="right")
        table.add_row("Volume (lots)", f"{sizing.volume:.2f}")
        table.add_row("Entry", f"{sizing.entry_price:.5f}")
        table.add_row("Stop loss", f"{sizing.stop_loss:.5f} ({assessment.stop_loss_pips:.1f} pips)")
        table.add_row("Take profit", f"{sizing.take_profit:.5f} ({assessment.take_profit_pips:.1f} pips)")
        table.add_row("Notional", f"{assessment.notional:,.2f}")
        table.add_row("Margin required", f"{assessment.margin_required:,.2f}")
        table.add_row("Risk amount", f"{assessment.risk_amount:,.2f} ({assessment.risk_percentage:.2f}%)")
        table.add_row("Potential profit", f"{assessment.potential_profit:,.2f}")
        table.add_row("Risk/reward", f"1:{assessment.risk_reward_ratio:.2f}")
        table.add_row("Risk level", f"[{style}]{assessment.risk_level.value.upper()}[/{style}]")
        self.console.print(table)

    def display_validation(self, result: ValidationResult) -> None:
        if result.is_valid:
            self.console.print("[green]✓ Order is valid[/green]")
        else:
            table = Table(title="Validation Errors", show_header=True, header_style="bold red")
            table.add_column("Field", style="cyan")
            table.add_column("Code")
            table.add_column("Message")
            for error in result.errors:
                table.add_row(error.field, error.code, error.message)
            self.console.print(table)

        for warning in result.warnings:
            self.console.print(f"[yellow]⚠ {warning}[/yellow]")

    def export_positions(self, positions: Sequence[Position], filepath: str, fmt: Optional[str] = None) -> Path:
        """Write positions in the given (or configured) export format."""
        fmt = fmt or self.config['export']['format']
        return export.write_export(positions, filepath, fmt)

    def save_report(
        self,
        filepath: str,
        status: AccountMarginStatus,
        account: AccountContext,
        stale_symbols: List[str]
    ) -> None:
        """
        Save a JSON summary of the margin report.

        Args:
            filepath: Path for the JSON file
            status: Margin status to record
            account: Account parameters used
            stale_symbols: Symbols that received no tick
        """
        report = {
            'generated_at': datetime.now(self.timezone).isoformat(),
            'account': {
                'balance': account.balance,
                'leverage': account.leverage,
                'margin_call_level': account.margin_call_level,
                'stop_out_level': account.stop_out_level,
            },
            'margin': {
                'total_margin_used': status.total_margin_used,
                'total_unrealized_pnl': status.total_unrealized_pnl,
                'equity': status.equity,
                'free_margin': status.free_margin,
                'margin_level': None if math.isinf(status.margin_level) else status.margin_level,
                'status': status.status.value,
            },
            'stale_symbols': stale_symbols,
        }

        with open(filepath, 'w') as f:
            json.dump(report, f, indent=2)
        logger.info(f"Saved margin report to {filepath}")
