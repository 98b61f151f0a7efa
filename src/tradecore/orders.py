"""Order submission, lifecycle and templates.

Validation problems are returned in the ``OrderResult``; hard errors that
block an order (insufficient margin, closed market) are raised so the
caller can decide whether and when to retry.
"""

import logging
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from . import query
from .exceptions import (
    ImmutableFieldError,
    InsufficientMarginError,
    MarketClosedError,
    NotFoundError,
    OrderStateError,
)
from .ledger import PositionLedger, mark_price
from .models import (
    AccountContext,
    Order,
    OrderFormData,
    OrderResult,
    OrderStatus,
    OrderTemplate,
    OrderType,
    Position,
    Side,
    TrailingStop,
    utcnow,
)
from .risk_calculator import RiskCalculator, pip_size
from .validator import DEFAULT_LARGE_VOLUME, DEFAULT_MAX_RISK_PERCENTAGE, validate_order

logger = logging.getLogger(__name__)

MODIFIABLE_ORDER_FIELDS = frozenset({
    'price', 'volume', 'stop_loss', 'take_profit', 'risk_percentage', 'comment'
})

# Order events
ORDER_SUBMITTED = "order_submitted"
ORDER_CANCELLED = "order_cancelled"
ORDER_FILLED = "order_filled"
ORDER_REJECTED = "order_rejected"

AccountSource = Union[AccountContext, Callable[[], AccountContext]]


def entry_price(side: Side, bid: float, ask: float) -> float:
    """Price a market order executes at: ask for BUY, bid for SELL."""
    return ask if side is Side.BUY else bid


class OrderService:
    """
    Accepts order requests and turns fills into ledger positions.

    Args:
        ledger: Ledger receiving positions on fill
        account: Account context, or a callable returning the current one
        calculator: Risk calculator (defaults to the ledger's)
        market_open: Predicate telling whether a symbol can trade now
        max_risk_percentage: Validator limit for risk percentage
        large_volume: Validator warning threshold for volume
        id_factory: Generates new order and template ids
    """

    def __init__(
        self,
        ledger: PositionLedger,
        account: AccountSource,
        calculator: Optional[RiskCalculator] = None,
        market_open: Optional[Callable[[str], bool]] = None,
        max_risk_percentage: float = DEFAULT_MAX_RISK_PERCENTAGE,
        large_volume: float = DEFAULT_LARGE_VOLUME,
        id_factory: Optional[Callable[[], str]] = None
    ):
        self.ledger = ledger
        self._account = account
        self.calculator = calculator or ledger.calculator
        self.market_open = market_open or (lambda symbol: True)
        self.max_risk_percentage = max_risk_percentage
        self.large_volume = large_volume
        self.id_factory = id_factory or (lambda: uuid.uuid4().hex)

        self._lock = threading.RLock()
        self._orders: Dict[str, Order] = {}
        self._templates: Dict[str, OrderTemplate] = {}
        self._listeners: List[Callable[[str, Any], None]] = []

    @property
    def account(self) -> AccountContext:
        return self._account() if callable(self._account) else self._account

    def add_listener(self, listener: Callable[[str, Any], None]) -> None:
        self._listeners = self._listeners + [listener]

    def _emit(self, event: str, payload: Any) -> None:
        for listener in self._listeners:
            try:
                listener(event, payload)
            except Exception as e:
                logger.error(f"Order listener failed on {event}: {e}")

    # ------------------------------------------------------------------
    # Queries

    def get(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise NotFoundError(order_id, kind="order")
        return order

    def orders(self, status: Optional[OrderStatus] = None) -> List[Order]:
        orders = list(self._orders.values())
        if status is not None:
            orders = [o for o in orders if o.status is status]
        return orders

    def pending(self) -> List[Order]:
        return self.orders(OrderStatus.PENDING)

    def query(
        self,
        filters: Optional[query.Filters] = None,
        sort: Optional[query.SortOrder] = None,
        page: Optional[query.PageRequest] = None
    ) -> query.QueryResult:
        return query.apply(self.orders(), filters, sort or query.SortOrder('created_at'), page)

    # ------------------------------------------------------------------
    # Submission

    def validate(self, form: OrderFormData):
        return validate_order(form, self.max_risk_percentage, self.large_volume)

    def submit(self, form: OrderFormData, trailing_stop: Optional[TrailingStop] = None) -> OrderResult:
        """
        Submit an order.

        The order is validated, checked against free margin and the margin
        call level, and recorded. Market orders fill immediately at the
        last quote; limit and stop orders stay pending until ``fill``.

        Args:
            form: The order request
            trailing_stop: Trailing stop for the position opened on fill

        Returns:
            OrderResult; invalid orders come back REJECTED with field errors

        Raises:
            MarketClosedError: If the symbol cannot trade or has no quote
            InsufficientMarginError: If the account cannot carry the order
        """
        validation = self.validate(form)
        if not validation.is_valid:
            logger.info(f"Rejected order for {form.symbol!r}: {validation.codes()}")
            return OrderResult(
                order_id=None,
                status=OrderStatus.REJECTED,
                message='Order validation failed',
                validation_errors=validation.errors,
                warnings=validation.warnings
            )

        symbol = form.symbol.strip().upper()
        if not self.market_open(symbol):
            raise MarketClosedError(symbol)

        with self._lock:
            price = self._execution_price(form, symbol)
            account = self.account
            status = self.ledger.margin_status(account)
            projection = self.calculator.project(form.volume, price, status, account)
            if not projection.can_open:
                logger.warning(
                    f"Insufficient margin for {symbol}: required {projection.margin_required:.2f}, "
                    f"free {status.free_margin:.2f}, level after {projection.margin_level_after:.0f}%"
                )
                raise InsufficientMarginError(
                    projection.margin_required, status.free_margin, projection.margin_level_after
                )

            now = utcnow()
            order = Order(
                id=self.id_factory(),
                symbol=symbol,
                order_type=form.order_type,
                side=form.side,
                volume=form.volume,
                status=OrderStatus.PENDING,
                created_at=now,
                updated_at=now,
                price=form.price,
                stop_loss=form.stop_loss,
                take_profit=form.take_profit,
                risk_percentage=form.risk_percentage,
                comment=form.comment
            )
            self._orders[order.id] = order

            # Filled before the lock is released so no cancel can slip in between
            filled = None
            if order.order_type is OrderType.MARKET:
                filled, _ = self._fill_locked(order.id, price, trailing_stop=trailing_stop)

        logger.info(f"Submitted {order.order_type.value} {order.side.value} {order.volume} {symbol} ({order.id})")
        self._emit(ORDER_SUBMITTED, order)
        if filled is not None:
            self._emit(ORDER_FILLED, filled)

        return OrderResult(
            order_id=order.id,
            status=filled.status if filled is not None else order.status,
            message='Order submitted successfully',
            warnings=validation.warnings
        )

    def _execution_price(self, form: OrderFormData, symbol: str) -> float:
        if form.order_type is not OrderType.MARKET:
            return form.price

        tick = self.ledger.last_tick(symbol)
        if tick is None:
            if form.price is not None:
                return form.price
            raise MarketClosedError(symbol, "no quote available")
        return entry_price(form.side, tick.bid, tick.ask)

    def cancel(self, order_id: str) -> Order:
        """
        Cancel a pending order.

        Raises:
            NotFoundError: If the id is unknown
            OrderStateError: If the order is no longer pending
        """
        with self._lock:
            order = self._require_pending(order_id)
            order = replace(order, status=OrderStatus.CANCELLED, updated_at=utcnow())
            self._orders[order_id] = order

        logger.info(f"Cancelled order {order_id}")
        self._emit(ORDER_CANCELLED, order)
        return order

    def reject(self, order_id: str, reason: str) -> Order:
        """Mark a pending order as rejected (e.g. refused by the broker)."""
        with self._lock:
            order = self._require_pending(order_id)
            order = replace(order, status=OrderStatus.REJECTED, updated_at=utcnow())
            self._orders[order_id] = order

        logger.warning(f"Order {order_id} rejected: {reason}")
        self._emit(ORDER_REJECTED, order)
        return order

    def modify(self, order_id: str, updates: Dict[str, Any]) -> OrderResult:
        """
        Modify a pending order.

        The modified order is re-validated as a whole; when it fails the
        stored order is left untouched and the errors are returned.

        Raises:
            NotFoundError: If the id is unknown
            OrderStateError: If the order is no longer pending
            ImmutableFieldError: If a non-modifiable field is given
        """
        for name in updates:
            if name not in MODIFIABLE_ORDER_FIELDS:
                raise ImmutableFieldError(name)

        with self._lock:
            order = self._require_pending(order_id)
            candidate = replace(order, **updates)
            validation = self.validate(_form_of(candidate))
            if not validation.is_valid:
                return OrderResult(
                    order_id=order_id,
                    status=order.status,
                    message='Order validation failed',
                    validation_errors=validation.errors,
                    warnings=validation.warnings
                )

            self._orders[order_id] = replace(candidate, updated_at=utcnow())

        logger.info(f"Modified order {order_id}: {sorted(updates)}")
        return OrderResult(
            order_id=order_id,
            status=OrderStatus.PENDING,
            message='Order modified',
            warnings=validation.warnings
        )

    def fill(
        self,
        order_id: str,
        fill_price: float,
        fill_time: Optional[datetime] = None,
        commission: float = 0.0,
        trailing_stop: Optional[TrailingStop] = None
    ) -> Position:
        """
        Record a fill and open the resulting position.

        Raises:
            NotFoundError: If the id is unknown
            OrderStateError: If the order is no longer pending
        """
        with self._lock:
            order, position = self._fill_locked(order_id, fill_price, fill_time, commission, trailing_stop)

        self._emit(ORDER_FILLED, order)
        return position

    def _fill_locked(
        self,
        order_id: str,
        fill_price: float,
        fill_time: Optional[datetime] = None,
        commission: float = 0.0,
        trailing_stop: Optional[TrailingStop] = None
    ) -> Tuple[Order, Position]:
        order = self._require_pending(order_id)
        position = self.ledger.open(
            order,
            fill_price,
            open_time=fill_time,
            commission=commission,
            trailing_stop=trailing_stop
        )
        order = replace(
            order,
            status=OrderStatus.FILLED,
            updated_at=utcnow(),
            position_id=position.id
        )
        self._orders[order_id] = order
        logger.info(f"Filled order {order_id} @ {fill_price} (position {position.id})")
        return order, position

    def _require_pending(self, order_id: str) -> Order:
        order = self.get(order_id)
        if order.status.is_terminal:
            raise OrderStateError(order_id, order.status.value)
        return order

    # ------------------------------------------------------------------
    # Templates

    def save_template(
        self,
        name: str,
        symbol: str,
        side: Side,
        volume: float,
        order_type: OrderType = OrderType.MARKET,
        stop_loss_distance: Optional[float] = None,
        take_profit_distance: Optional[float] = None,
        risk_percentage: Optional[float] = None,
        comment: Optional[str] = None
    ) -> OrderTemplate:
        """Store a reusable order preset; distances are in pips."""
        template = OrderTemplate(
            id=self.id_factory(),
            name=name,
            symbol=symbol.upper(),
            order_type=order_type,
            side=side,
            volume=volume,
            created_at=utcnow(),
            stop_loss_distance=stop_loss_distance,
            take_profit_distance=take_profit_distance,
            risk_percentage=risk_percentage,
            comment=comment
        )
        with self._lock:
            self._templates[template.id] = template
        return template

    def delete_template(self, template_id: str) -> None:
        with self._lock:
            if template_id not in self._templates:
                raise NotFoundError(template_id, kind="template")
            del self._templates[template_id]

    def list_templates(self) -> List[OrderTemplate]:
        return sorted(self._templates.values(), key=lambda t: (t.created_at, t.id))

    def form_from_template(self, template_id: str, price: float) -> OrderFormData:
        """
        Build an order form from a template around an entry price.

        Args:
            template_id: Template to load
            price: Entry price the pip distances are measured from

        Returns:
            OrderFormData ready for validation and submission
        """
        template = self._templates.get(template_id)
        if template is None:
            raise NotFoundError(template_id, kind="template")

        pip = pip_size(template.symbol)
        direction = 1 if template.side is Side.BUY else -1

        stop_loss = None
        if template.stop_loss_distance is not None:
            stop_loss = price - direction * template.stop_loss_distance * pip
        take_profit = None
        if template.take_profit_distance is not None:
            take_profit = price + direction * template.take_profit_distance * pip

        return OrderFormData(
            symbol=template.symbol,
            side=template.side,
            volume=template.volume,
            order_type=template.order_type,
            price=price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            risk_percentage=template.risk_percentage,
            comment=template.comment
        )


def _form_of(order: Order) -> OrderFormData:
    return OrderFormData(
        symbol=order.symbol,
        side=order.side,
        volume=order.volume,
        order_type=order.order_type,
        price=order.price,
        stop_loss=order.stop_loss,
        take_profit=order.take_profit,
        risk_percentage=order.risk_percentage,
        comment=order.comment
    )
