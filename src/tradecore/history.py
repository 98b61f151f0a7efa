"""Closed trade history and performance metrics."""

from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd

from . import query
from .ledger import POSITION_CLOSED
from .models import TradeRecord

logger = logging.getLogger(__name__)

RISK_FREE_RETURN = 0.02


@dataclass(frozen=True)
class PerformanceMetrics:
    """Summary statistics over a set of closed trades."""
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    average_pnl: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0
    profit_factor: float = 0.0
    max_drawdown: float = 0.0
    max_drawdown_percent: float = 0.0
    sharpe_ratio: float = 0.0
    recovery_factor: float = 0.0
    most_traded_symbol: Optional[str] = None
    total_volume: float = 0.0
    total_commission: float = 0.0
    average_duration: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def compute_metrics(trades: List[TradeRecord], starting_balance: float = 10_000.0) -> PerformanceMetrics:
    """
    Derive performance metrics from closed trades.

    Trades are replayed in close-time order to build the equity curve used
    for drawdown. P&L figures are net of commission and swap.

    Args:
        trades: Closed trades in any order
        starting_balance: Account balance before the first trade

    Returns:
        PerformanceMetrics (all zeros for an empty history)
    """
    if not trades:
        return PerformanceMetrics()

    ordered = sorted(trades, key=lambda t: (t.close_time, t.position_id))
    pnls = np.array([t.net_pnl for t in ordered])
    returns = np.array([t.pnl_percent for t in ordered])

    wins = pnls[pnls > 0]
    losses = pnls[pnls < 0]

    gross_profit = wins.sum() if len(wins) else 0.0
    gross_loss = abs(losses.sum()) if len(losses) else 0.0
    if gross_loss > 0:
        profit_factor = gross_profit / gross_loss
    else:
        profit_factor = float('inf') if gross_profit > 0 else 0.0

    # Drawdown on the running equity curve
    equity = starting_balance + np.cumsum(pnls)
    running_max = np.maximum.accumulate(np.concatenate(([starting_balance], equity)))[1:]
    drawdowns = running_max - equity
    max_index = int(np.argmax(drawdowns))
    max_drawdown = float(drawdowns[max_index])
    max_drawdown_percent = max_drawdown / running_max[max_index] * 100 if running_max[max_index] > 0 else 0.0

    std = np.std(returns)
    sharpe_ratio = (np.mean(returns) - RISK_FREE_RETURN) / std if len(returns) > 1 and std > 0 else 0.0

    total_pnl = float(pnls.sum())
    recovery_factor = total_pnl / max_drawdown if max_drawdown > 0 else 0.0

    symbols = Counter(t.symbol for t in ordered)

    return PerformanceMetrics(
        total_trades=len(ordered),
        winning_trades=len(wins),
        losing_trades=len(losses),
        win_rate=len(wins) / len(ordered) * 100,
        total_pnl=total_pnl,
        average_pnl=float(pnls.mean()),
        average_win=float(wins.mean()) if len(wins) else 0.0,
        average_loss=float(losses.mean()) if len(losses) else 0.0,
        largest_win=float(wins.max()) if len(wins) else 0.0,
        largest_loss=float(losses.min()) if len(losses) else 0.0,
        profit_factor=float(profit_factor),
        max_drawdown=max_drawdown,
        max_drawdown_percent=float(max_drawdown_percent),
        sharpe_ratio=float(sharpe_ratio),
        recovery_factor=recovery_factor,
        most_traded_symbol=symbols.most_common(1)[0][0],
        total_volume=float(sum(t.volume for t in ordered)),
        total_commission=float(sum(t.commission for t in ordered)),
        average_duration=float(np.mean([t.duration for t in ordered]))
    )


class TradeHistory:
    """
    Collects closed trades.

    Register ``on_event`` as a ledger listener to record every close
    automatically.
    """

    def __init__(self, starting_balance: float = 10_000.0):
        self.starting_balance = starting_balance
        self._lock = threading.Lock()
        self._trades: List[TradeRecord] = []

    def record(self, trade: TradeRecord) -> None:
        with self._lock:
            self._trades = self._trades + [trade]
        logger.debug(f"Recorded trade {trade.position_id} ({trade.symbol}) pnl={trade.pnl:.2f}")

    def on_event(self, event: str, payload: Any) -> None:
        if event == POSITION_CLOSED:
            self.record(payload)

    def trades(self) -> List[TradeRecord]:
        return list(self._trades)

    def __len__(self) -> int:
        return len(self._trades)

    def query(
        self,
        filters: Optional[query.Filters] = None,
        sort: Optional[query.SortOrder] = None,
        page: Optional[query.PageRequest] = None
    ) -> query.QueryResult:
        return query.apply(self._trades, filters, sort or query.SortOrder('close_time'), page)

    def metrics(self, filters: Optional[query.Filters] = None) -> PerformanceMetrics:
        return compute_metrics(query.filter_items(self._trades, filters), self.starting_balance)

    def to_frame(self) -> pd.DataFrame:
        """Trade history as a DataFrame, one row per trade, oldest close first."""
        rows = [asdict(t) for t in sorted(self._trades, key=lambda t: t.close_time)]
        df = pd.DataFrame(rows)
        if not df.empty:
            df['side'] = df['side'].map(lambda s: s.value)
            df['net_pnl'] = df['pnl'] - df['commission'] + df['swap']
        return df
