"""Trailing stop adjustment, run by the ledger for every marked position."""

import logging
from dataclasses import replace
from typing import Optional

from .exceptions import InvariantViolationError
from .models import Position, Side
from .risk_calculator import pip_size

logger = logging.getLogger(__name__)

# Tolerance (in pips) when comparing a move against the configured step
STEP_TOLERANCE = 1e-9


def is_more_favorable(side: Side, new_level: float, old_level: float) -> bool:
    """True if ``new_level`` protects more profit than ``old_level``."""
    if side is Side.BUY:
        return new_level > old_level
    return new_level < old_level


def candidate_level(position: Position) -> float:
    """Stop level ``distance`` pips behind the current price."""
    offset = position.trailing_stop.distance * pip_size(position.symbol)
    if position.side is Side.BUY:
        return position.current_price - offset
    return position.current_price + offset


def trail(position: Position) -> Position:
    """
    Advance a position's trailing stop after a price update.

    The level only moves in the position's favour and only once the price
    has gained at least ``step`` pips over the last level. When the new
    level beats the existing stop loss it becomes the stop loss.

    Args:
        position: Position already marked to the latest price

    Returns:
        The position, unchanged or with a tightened stop

    Raises:
        InvariantViolationError: If the adjustment would loosen the stop
    """
    config = position.trailing_stop
    if not config.enabled or config.distance <= 0:
        return position

    pip = pip_size(position.symbol)
    new_level = candidate_level(position)
    current = config.current_level

    if current is not None:
        gained = (new_level - current) / pip
        if position.side is Side.SELL:
            gained = -gained
        if gained <= 0 or gained + STEP_TOLERANCE < config.step:
            return position

    _check_not_regressing(position, current, new_level, 'trailing level')

    stop_loss = position.stop_loss
    if stop_loss is None or is_more_favorable(position.side, new_level, stop_loss):
        _check_not_regressing(position, stop_loss, new_level, 'stop loss')
        stop_loss = new_level
        logger.debug(
            f"Trailing stop for {position.id} ({position.symbol}) moved to {new_level:.5f}"
        )

    return replace(
        position,
        stop_loss=stop_loss,
        trailing_stop=replace(config, current_level=new_level)
    )


def _check_not_regressing(position: Position, old: Optional[float], new: float, what: str) -> None:
    if old is None or old == new:
        return
    if not is_more_favorable(position.side, new, old):
        message = (
            f"{what.capitalize()} regression on {position.id}: "
            f"{old:.5f} -> {new:.5f} ({position.side.value})"
        )
        logger.error(message)
        raise InvariantViolationError(message)
