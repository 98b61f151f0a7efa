"""Rule checks for proposed orders.

Validation is pure: it never touches ledger state, never raises for a bad
order and can be re-run every time a form field changes.
"""

import logging
from typing import List, Optional

from .models import FieldError, OrderFormData, OrderType, Side, ValidationResult

logger = logging.getLogger(__name__)

# Error codes
REQUIRED = "REQUIRED"
INVALID_VOLUME = "INVALID_VOLUME"
INVALID_PRICE = "INVALID_PRICE"
EXCESSIVE_RISK = "EXCESSIVE_RISK"
INVALID_SL = "INVALID_SL"
INVALID_TP = "INVALID_TP"

DEFAULT_MAX_RISK_PERCENTAGE = 10.0
DEFAULT_LARGE_VOLUME = 10.0
HIGH_RISK_WARNING_PERCENTAGE = 5.0

PRICED_ORDER_TYPES = (OrderType.LIMIT, OrderType.STOP)


def validate_order(
    order: OrderFormData,
    max_risk_percentage: float = DEFAULT_MAX_RISK_PERCENTAGE,
    large_volume: float = DEFAULT_LARGE_VOLUME
) -> ValidationResult:
    """
    Validate an order request.

    Args:
        order: The order form to check
        max_risk_percentage: Risk percentage above which the order is rejected
        large_volume: Volume (lots) above which a warning is produced

    Returns:
        ValidationResult with field errors and advisory warnings
    """
    errors: List[FieldError] = []
    warnings: List[str] = []

    # Basic validation
    if not order.symbol or not order.symbol.strip():
        errors.append(FieldError('symbol', 'Symbol is required', REQUIRED))

    if order.volume is None or order.volume <= 0:
        errors.append(FieldError('volume', 'Volume must be greater than 0', INVALID_VOLUME))
    elif order.volume > large_volume:
        warnings.append('Large position size detected. Consider risk management.')

    if order.order_type in PRICED_ORDER_TYPES and order.price is None:
        errors.append(FieldError(
            'price',
            f'Price is required for {order.order_type.value.lower()} orders',
            REQUIRED
        ))
    elif order.price is not None and order.price <= 0:
        errors.append(FieldError('price', 'Price must be greater than 0', INVALID_PRICE))

    # Risk validation
    if order.risk_percentage is not None:
        if order.risk_percentage > max_risk_percentage:
            errors.append(FieldError(
                'risk_percentage',
                f'Risk percentage cannot exceed {max_risk_percentage:g}%',
                EXCESSIVE_RISK
            ))
        elif order.risk_percentage > HIGH_RISK_WARNING_PERCENTAGE:
            warnings.append(f'Risk exceeds {HIGH_RISK_WARNING_PERCENTAGE:g}% of account')

    # Stop loss / take profit must sit on the correct side of the entry
    if order.stop_loss is not None and order.price is not None:
        if not _stop_loss_on_correct_side(order.side, order.stop_loss, order.price):
            errors.append(FieldError('stop_loss', 'Invalid stop loss level', INVALID_SL))

    if order.take_profit is not None and order.price is not None:
        if not _take_profit_on_correct_side(order.side, order.take_profit, order.price):
            errors.append(FieldError('take_profit', 'Invalid take profit level', INVALID_TP))

    ratio = _reward_to_risk(order)
    if ratio is not None and ratio < 1:
        warnings.append('Poor risk/reward ratio')

    result = ValidationResult(errors=errors, warnings=warnings)
    if not result.is_valid:
        logger.debug(f"Order for {order.symbol!r} failed validation: {result.codes()}")
    return result


def _stop_loss_on_correct_side(side: Side, stop_loss: float, price: float) -> bool:
    if side is Side.BUY:
        return stop_loss < price
    return stop_loss > price


def _take_profit_on_correct_side(side: Side, take_profit: float, price: float) -> bool:
    if side is Side.BUY:
        return take_profit > price
    return take_profit < price


def _reward_to_risk(order: OrderFormData) -> Optional[float]:
    """Reward/risk from price distances, or None when it cannot be computed."""
    if order.price is None or order.stop_loss is None or order.take_profit is None:
        return None

    risk = abs(order.price - order.stop_loss)
    reward = abs(order.take_profit - order.price)
    if risk == 0:
        return None
    return reward / risk
