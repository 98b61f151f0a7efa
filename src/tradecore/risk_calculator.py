"""Margin, risk and position-size calculations.

Every margin and risk formula used by the package lives here: order
submission, the margin what-if and the position sizer all call into the
same ``RiskCalculator``. The calculator holds no state beyond its pip value
function and is safe to share between threads.
"""

import logging
import math
from typing import Callable, Iterable, Optional

from .models import (
    LOT_SIZE,
    AccountContext,
    AccountMarginStatus,
    MarginProjection,
    MarginTier,
    OrderFormData,
    Position,
    PositionSizing,
    RiskAssessment,
    RiskLevel,
    RiskMethod,
    Side,
)

logger = logging.getLogger(__name__)

# Margin level (%) at or above which the account is always considered safe
SAFE_MARGIN_LEVEL = 200.0

# Smallest tradable volume increment, in lots
LOT_STEP = 0.01

PipValueFn = Callable[[str], float]


def is_jpy_pair(symbol: str) -> bool:
    return 'JPY' in symbol.upper()


def pip_size(symbol: str) -> float:
    """Smallest standard price increment for a symbol."""
    return 0.01 if is_jpy_pair(symbol) else 0.0001


def simplified_pip_value(symbol: str) -> float:
    """
    USD value of one pip per lot, simplified.

    This is a flat approximation (1.0 for most pairs, 0.91 for JPY pairs)
    rather than a conversion through live cross rates. Pass a different
    function to ``RiskCalculator`` to price pips properly.
    """
    return 0.91 if is_jpy_pair(symbol) else 1.0


def price_to_pips(symbol: str, distance: float) -> float:
    """Convert an absolute price distance to pips."""
    return abs(distance) / pip_size(symbol)


def round_to_lot_step(volume: float) -> float:
    """Round a volume down to the lot step so the risk budget is never exceeded."""
    # Tolerance keeps 4.0 from becoming 3.99 after float division
    steps = math.floor(volume / LOT_STEP + 1e-9)
    return round(steps * LOT_STEP, 2)


def classify_risk(risk_percent: float) -> RiskLevel:
    """Map the share of the balance at risk to a risk level."""
    if risk_percent <= 1:
        return RiskLevel.LOW
    elif risk_percent <= 3:
        return RiskLevel.MEDIUM
    elif risk_percent <= 5:
        return RiskLevel.HIGH
    return RiskLevel.EXTREME


def classify_margin(margin_level: float, total_margin_used: float, account: AccountContext) -> MarginTier:
    """
    Classify a margin level into a tier.

    The tiers partition [0, inf): critical below the stop out level, danger
    up to the margin call level, warning up to 200% and safe above that or
    when no margin is in use.
    """
    if total_margin_used <= 0 or margin_level >= SAFE_MARGIN_LEVEL:
        return MarginTier.SAFE
    elif margin_level >= account.margin_call_level:
        return MarginTier.WARNING
    elif margin_level >= account.stop_out_level:
        return MarginTier.DANGER
    return MarginTier.CRITICAL


class RiskCalculator:
    """
    Stateless risk and margin calculator.

    Args:
        pip_value_fn: Returns the USD value of one pip per lot for a symbol
    """

    def __init__(self, pip_value_fn: Optional[PipValueFn] = None):
        self.pip_value_fn = pip_value_fn or simplified_pip_value

    @staticmethod
    def notional(volume: float, price: float) -> float:
        return volume * LOT_SIZE * price

    def margin_required(self, volume: float, price: float, leverage: float) -> float:
        """Margin needed to hold ``volume`` lots at ``price``."""
        return self.notional(volume, price) / leverage

    def calculate(
        self,
        order: OrderFormData,
        account: AccountContext,
        market_price: Optional[float] = None,
        fixed_amount: Optional[float] = None
    ) -> RiskAssessment:
        """
        Build the risk assessment for an order.

        The amount at risk is percentage based when the order carries a
        risk percentage, the fixed amount when one is given, and otherwise
        derived from the stop distance and the order volume.

        Args:
            order: Order form (LIMIT/STOP orders carry their own price)
            account: Account balance and leverage
            market_price: Entry price to assume when the order has none
            fixed_amount: Fixed amount at risk, in account currency

        Returns:
            RiskAssessment for the order

        Raises:
            ValueError: If no entry price is available
        """
        price = order.price if order.price is not None else market_price
        if price is None:
            raise ValueError(f"No entry price available for {order.symbol}")

        pip_value = self.pip_value_fn(order.symbol)
        stop_loss_pips = (
            price_to_pips(order.symbol, price - order.stop_loss)
            if order.stop_loss is not None else 0.0
        )
        take_profit_pips = (
            price_to_pips(order.symbol, order.take_profit - price)
            if order.take_profit is not None else 0.0
        )

        if order.risk_percentage is not None:
            method = RiskMethod.PERCENTAGE
        elif fixed_amount is not None:
            method = RiskMethod.FIXED
        else:
            method = RiskMethod.LOTS

        risk_amount = self._risk_amount(
            method, account, order.volume, stop_loss_pips, pip_value,
            risk_percentage=order.risk_percentage, fixed_amount=fixed_amount
        )

        return self._assess(
            symbol=order.symbol,
            volume=order.volume,
            price=price,
            account=account,
            risk_amount=risk_amount,
            stop_loss_pips=stop_loss_pips,
            take_profit_pips=take_profit_pips,
            pip_value=pip_value
        )

    def size_position(
        self,
        symbol: str,
        side: Side,
        entry_price: float,
        account: AccountContext,
        stop_loss_pips: float,
        take_profit_pips: float,
        method: RiskMethod = RiskMethod.PERCENTAGE,
        risk_percentage: float = 2.0,
        fixed_amount: float = 0.0,
        lots: Optional[float] = None
    ) -> PositionSizing:
        """
        Suggest a position size for a given stop distance.

        For the percentage and fixed methods the volume is chosen so that
        hitting the stop loses at most the amount at risk; the volume is
        rounded down to the 0.01 lot step. The lots method
        takes the volume as given and reports the resulting risk.

        Args:
            symbol: Currency pair
            side: Trade direction
            entry_price: Expected entry price
            account: Account balance and leverage
            stop_loss_pips: Stop distance in pips
            take_profit_pips: Target distance in pips
            method: Risk sizing method
            risk_percentage: Share of balance to risk (percentage method)
            fixed_amount: Amount to risk (fixed method)
            lots: Desired volume (lots method, defaults to the account lot size)

        Returns:
            PositionSizing with volume, stop/target prices and assessment
        """
        pip_value = self.pip_value_fn(symbol)
        pip = pip_size(symbol)

        if method is RiskMethod.LOTS:
            volume = lots if lots is not None else account.default_lot_size
        else:
            amount = (
                account.balance * risk_percentage / 100
                if method is RiskMethod.PERCENTAGE else fixed_amount
            )
            volume = amount / (stop_loss_pips * pip_value) if stop_loss_pips > 0 else 0.0
            volume = round_to_lot_step(volume)

        risk_amount = self._risk_amount(
            method, account, volume, stop_loss_pips, pip_value,
            risk_percentage=risk_percentage, fixed_amount=fixed_amount
        )

        if side is Side.BUY:
            stop_loss = entry_price - stop_loss_pips * pip
            take_profit = entry_price + take_profit_pips * pip
        else:
            stop_loss = entry_price + stop_loss_pips * pip
            take_profit = entry_price - take_profit_pips * pip

        assessment = self._assess(
            symbol=symbol,
            volume=volume,
            price=entry_price,
            account=account,
            risk_amount=risk_amount,
            stop_loss_pips=stop_loss_pips,
            take_profit_pips=take_profit_pips,
            pip_value=pip_value
        )

        return PositionSizing(
            symbol=symbol,
            side=side,
            entry_price=entry_price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            assessment=assessment
        )

    def margin_status(self, positions: Iterable[Position], account: AccountContext) -> AccountMarginStatus:
        """
        Aggregate margin usage over open positions.

        Args:
            positions: Open positions (a consistent snapshot)
            account: Account balance, leverage and thresholds

        Returns:
            AccountMarginStatus with equity, free margin, level and tier
        """
        total_margin_used = 0.0
        total_unrealized_pnl = 0.0
        for position in positions:
            total_margin_used += self.margin_required(
                position.volume, position.current_price, account.leverage
            )
            total_unrealized_pnl += position.pnl

        equity = account.balance + total_unrealized_pnl
        free_margin = equity - total_margin_used
        margin_level = (
            equity / total_margin_used * 100 if total_margin_used > 0 else math.inf
        )

        return AccountMarginStatus(
            total_margin_used=total_margin_used,
            total_unrealized_pnl=total_unrealized_pnl,
            equity=equity,
            free_margin=free_margin,
            margin_level=margin_level,
            status=classify_margin(margin_level, total_margin_used, account)
        )

    def project(
        self,
        volume: float,
        price: float,
        status: AccountMarginStatus,
        account: AccountContext
    ) -> MarginProjection:
        """
        Project margin usage after opening a test position.

        Args:
            volume: Test volume in lots
            price: Test entry price
            status: Current margin status
            account: Account parameters

        Returns:
            MarginProjection including the can-open decision
        """
        margin_required = self.margin_required(volume, price, account.leverage)
        margin_percent = margin_required / account.balance * 100 if account.balance else math.inf

        new_total = status.total_margin_used + margin_required
        margin_level_after = status.equity / new_total * 100 if new_total > 0 else math.inf

        can_open = (
            margin_required <= status.free_margin
            and margin_level_after >= account.margin_call_level
        )

        return MarginProjection(
            margin_required=margin_required,
            margin_percent=margin_percent,
            margin_level_after=margin_level_after,
            can_open=can_open
        )

    def can_open(
        self,
        volume: float,
        price: float,
        status: AccountMarginStatus,
        account: AccountContext
    ) -> bool:
        return self.project(volume, price, status, account).can_open

    @staticmethod
    def _risk_amount(
        method: RiskMethod,
        account: AccountContext,
        volume: float,
        stop_loss_pips: float,
        pip_value: float,
        risk_percentage: Optional[float] = None,
        fixed_amount: Optional[float] = None
    ) -> float:
        if method is RiskMethod.PERCENTAGE:
            return account.balance * (risk_percentage or 0.0) / 100
        elif method is RiskMethod.FIXED:
            return fixed_amount or 0.0
        return stop_loss_pips * pip_value * volume

    def _assess(
        self,
        symbol: str,
        volume: float,
        price: float,
        account: AccountContext,
        risk_amount: float,
        stop_loss_pips: float,
        take_profit_pips: float,
        pip_value: float
    ) -> RiskAssessment:
        notional = self.notional(volume, price)
        risk_percent = risk_amount / account.balance * 100 if account.balance > 0 else math.inf
        risk_reward_ratio = take_profit_pips / stop_loss_pips if stop_loss_pips > 0 else 0.0

        return RiskAssessment(
            position_size=volume,
            notional=notional,
            margin_required=notional / account.leverage,
            risk_amount=risk_amount,
            risk_percentage=risk_percent,
            potential_profit=take_profit_pips * pip_value * volume,
            potential_loss=risk_amount,
            risk_reward_ratio=risk_reward_ratio,
            risk_level=classify_risk(risk_percent),
            pip_value=pip_value,
            stop_loss_pips=stop_loss_pips,
            take_profit_pips=take_profit_pips
        )
