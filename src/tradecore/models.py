"""Core data model: orders, positions, ticks and account projections.

Positions, orders and ticks are frozen dataclasses. Every change produces a
new value through ``dataclasses.replace`` so that a snapshot handed out by
the ledger can never be observed half-updated.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import List, Optional

import pytz

# Standard lot: 100,000 units of the base currency
LOT_SIZE = 100_000


def utcnow() -> datetime:
    return datetime.now(pytz.UTC)


class Side(str, Enum):
    """Trade direction."""
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    """Supported order types."""
    MARKET = "MARKET"
    LIMIT = "LIMIT"
    STOP = "STOP"


class OrderStatus(str, Enum):
    """Order lifecycle states."""
    PENDING = "PENDING"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"

    @property
    def is_terminal(self) -> bool:
        return self is not OrderStatus.PENDING


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    EXTREME = "extreme"


class MarginTier(str, Enum):
    """Account health classification derived from the margin level."""
    SAFE = "safe"
    WARNING = "warning"
    DANGER = "danger"
    CRITICAL = "critical"


class RiskMethod(str, Enum):
    """How the amount at risk is chosen when sizing a trade."""
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    LOTS = "lots"


@dataclass(frozen=True)
class PriceTick:
    """A single quote from the price feed."""
    symbol: str
    bid: float
    ask: float
    timestamp: datetime


@dataclass(frozen=True)
class TrailingStop:
    """Trailing stop configuration; distance and step are in pips."""
    enabled: bool = False
    distance: float = 0.0
    step: float = 0.0
    current_level: Optional[float] = None


def compute_pnl(side: Side, open_price: float, current_price: float, volume: float):
    """Closed-form P&L for a position.

    Returns:
        Tuple of (pnl, pnl_percent)
    """
    price_diff = current_price - open_price
    if side is Side.SELL:
        price_diff = -price_diff
    pnl = price_diff * volume * LOT_SIZE
    pnl_percent = (price_diff / open_price) * 100 if open_price else 0.0
    return pnl, pnl_percent


@dataclass(frozen=True)
class Position:
    """An open trade held by the ledger."""
    id: str
    symbol: str
    side: Side
    volume: float
    open_price: float
    current_price: float
    open_time: datetime
    pnl: float = 0.0
    pnl_percent: float = 0.0
    swap: float = 0.0
    commission: float = 0.0
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    trailing_stop: TrailingStop = field(default_factory=TrailingStop)
    comment: Optional[str] = None

    def marked_at(self, price: float) -> "Position":
        """Return a copy marked to ``price`` with P&L recomputed together."""
        pnl, pnl_percent = compute_pnl(self.side, self.open_price, price, self.volume)
        return replace(self, current_price=price, pnl=pnl, pnl_percent=pnl_percent)

    @property
    def notional(self) -> float:
        return self.volume * LOT_SIZE * self.current_price


@dataclass(frozen=True)
class OrderFormData:
    """An order request as entered by the user.

    Optional fields left as ``None`` are unset; zero is a real value.
    """
    symbol: str
    side: Side
    volume: float
    order_type: OrderType = OrderType.MARKET
    price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    risk_percentage: Optional[float] = None
    comment: Optional[str] = None


@dataclass(frozen=True)
class Order:
    """A recorded trade request."""
    id: str
    symbol: str
    order_type: OrderType
    side: Side
    volume: float
    status: OrderStatus
    created_at: datetime
    updated_at: datetime
    price: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    risk_percentage: Optional[float] = None
    comment: Optional[str] = None
    position_id: Optional[str] = None


@dataclass(frozen=True)
class FieldError:
    """A single field-scoped validation failure."""
    field: str
    message: str
    code: str


@dataclass(frozen=True)
class ValidationResult:
    errors: List[FieldError] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return len(self.errors) == 0

    def codes(self) -> List[str]:
        return [e.code for e in self.errors]


@dataclass(frozen=True)
class OrderResult:
    """Outcome of submitting or modifying an order."""
    order_id: Optional[str]
    status: OrderStatus
    message: str
    validation_errors: List[FieldError] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class AccountContext:
    """Read-only account parameters supplied by the settings collaborator."""
    balance: float
    leverage: float = 100.0
    margin_call_level: float = 100.0
    stop_out_level: float = 50.0
    default_lot_size: float = 0.1


@dataclass(frozen=True)
class AccountMarginStatus:
    total_margin_used: float
    total_unrealized_pnl: float
    equity: float
    free_margin: float
    margin_level: float
    status: MarginTier

    @property
    def has_margin_in_use(self) -> bool:
        return self.total_margin_used > 0


@dataclass(frozen=True)
class RiskAssessment:
    """Computed risk projection for an order or a test position."""
    position_size: float
    notional: float
    margin_required: float
    risk_amount: float
    risk_percentage: float
    potential_profit: float
    potential_loss: float
    risk_reward_ratio: float
    risk_level: RiskLevel
    pip_value: float
    stop_loss_pips: float
    take_profit_pips: float


@dataclass(frozen=True)
class PositionSizing:
    """Result of the position sizer: suggested volume plus derived levels."""
    symbol: str
    side: Side
    entry_price: float
    stop_loss: float
    take_profit: float
    assessment: RiskAssessment

    @property
    def volume(self) -> float:
        return self.assessment.position_size


@dataclass(frozen=True)
class MarginProjection:
    """What the account would look like after opening a test order."""
    margin_required: float
    margin_percent: float
    margin_level_after: float
    can_open: bool


@dataclass(frozen=True)
class TradeRecord:
    """Final snapshot of a closed position."""
    position_id: str
    symbol: str
    side: Side
    volume: float
    open_price: float
    close_price: float
    pnl: float
    pnl_percent: float
    commission: float
    swap: float
    open_time: datetime
    close_time: datetime
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    comment: Optional[str] = None

    @property
    def duration(self) -> float:
        """Holding time in seconds."""
        return (self.close_time - self.open_time).total_seconds()

    @property
    def net_pnl(self) -> float:
        return self.pnl + self.swap - self.commission


@dataclass(frozen=True)
class OrderTemplate:
    """Reusable order preset; distances are in pips from the entry price."""
    id: str
    name: str
    symbol: str
    order_type: OrderType
    side: Side
    volume: float
    created_at: datetime
    stop_loss_distance: Optional[float] = None
    take_profit_distance: Optional[float] = None
    risk_percentage: Optional[float] = None
    comment: Optional[str] = None
