"""Position ledger: the single owner of open positions.

All mutating operations (ticks, open, modify, close) run under one
re-entrant lock, so no two of them ever overlap on the same ledger. The
position map is copy-on-write: a mutation builds a new mapping of frozen
``Position`` values and publishes it with a single assignment, so readers
always see a complete point-in-time snapshot without taking the lock.
"""

import logging
import threading
import uuid
from dataclasses import fields, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple, Union

from .exceptions import (
    ImmutableFieldError,
    InvariantViolationError,
    ModificationRejectedError,
    NotFoundError,
)
from .models import (
    AccountContext,
    AccountMarginStatus,
    FieldError,
    Order,
    OrderFormData,
    Position,
    PriceTick,
    Side,
    TradeRecord,
    TrailingStop,
    utcnow,
)
from . import query
from .risk_calculator import RiskCalculator
from .throttle import UpdateThrottle, price_channel
from .trailing_stop import trail

logger = logging.getLogger(__name__)

MUTABLE_FIELDS = frozenset({'stop_loss', 'take_profit', 'trailing_stop', 'comment'})
IMMUTABLE_FIELDS = frozenset({'id', 'symbol', 'side', 'open_time'})

# Ledger events
POSITION_OPENED = "position_opened"
POSITION_MODIFIED = "position_modified"
STOP_ADJUSTED = "stop_adjusted"
POSITION_CLOSED = "position_closed"

Listener = Callable[[str, Any], None]


def mark_price(side: Side, tick: PriceTick) -> float:
    """Price a position is marked at: bid for BUY, ask for SELL."""
    return tick.bid if side is Side.BUY else tick.ask


class PositionLedger:
    """
    Owns the set of open positions and keeps them consistent with ticks.

    Features:
    - Serialized mutations under a single lock
    - Copy-on-write snapshots for readers
    - Per-symbol throttled tick ingestion with coalescing
    - Trailing stop adjustment on every applied tick
    - Event listeners for opened/modified/closed positions
    """

    def __init__(
        self,
        throttle_interval_ms: float = 1000,
        calculator: Optional[RiskCalculator] = None,
        clock: Optional[Callable[[], float]] = None,
        id_factory: Optional[Callable[[], str]] = None
    ):
        """
        Initialize the ledger.

        Args:
            throttle_interval_ms: Minimum interval between applied ticks per symbol
            calculator: Risk calculator for margin snapshots
            clock: Monotonic time source for the throttle
            id_factory: Generates new position ids
        """
        self._lock = threading.RLock()
        self._positions: Dict[str, Position] = {}
        self._last_ticks: Dict[str, PriceTick] = {}
        self._listeners: List[Listener] = []

        self.calculator = calculator or RiskCalculator()
        self.throttle = UpdateThrottle(throttle_interval_ms, clock=clock)
        self.id_factory = id_factory or (lambda: uuid.uuid4().hex)

        logger.debug(f"Position ledger initialized (throttle={throttle_interval_ms}ms)")

    # ------------------------------------------------------------------
    # Listeners

    def add_listener(self, listener: Listener) -> None:
        with self._lock:
            self._listeners = self._listeners + [listener]

    def remove_listener(self, listener: Listener) -> None:
        with self._lock:
            self._listeners = [l for l in self._listeners if l is not listener]

    def _emit(self, events: List[Tuple[str, Any]]) -> None:
        # Called after the lock is released; the change is already published
        for event, payload in events:
            for listener in self._listeners:
                try:
                    listener(event, payload)
                except Exception as e:
                    logger.error(f"Ledger listener failed on {event}: {e}")

    # ------------------------------------------------------------------
    # Reads

    def snapshot(self) -> List[Position]:
        """All open positions at one point in time, in opening order."""
        return list(self._positions.values())

    def snapshot_map(self) -> Mapping[str, Position]:
        """
        The current id-to-position map, captured once.

        The map is never mutated after publication, so lookups in it all see
        the same point in time even while ticks keep arriving.
        """
        return self._positions

    def get(self, position_id: str) -> Position:
        """
        Get a position by id.

        Raises:
            NotFoundError: If the id is unknown
        """
        position = self._positions.get(position_id)
        if position is None:
            raise NotFoundError(position_id)
        return position

    def __contains__(self, position_id: str) -> bool:
        return position_id in self._positions

    def __len__(self) -> int:
        return len(self._positions)

    def last_tick(self, symbol: str) -> Optional[PriceTick]:
        return self._last_ticks.get(symbol)

    def stale_symbols(self, since: datetime) -> List[str]:
        """
        Symbols with open positions and no tick applied since ``since``.

        Staleness policy belongs to the caller; this only reports.
        """
        symbols = sorted({p.symbol for p in self._positions.values()})
        stale = []
        for symbol in symbols:
            tick = self._last_ticks.get(symbol)
            if tick is None or tick.timestamp < since:
                stale.append(symbol)
        return stale

    def margin_status(self, account: AccountContext) -> AccountMarginStatus:
        return self.calculator.margin_status(self.snapshot(), account)

    def query(
        self,
        filters: Optional[query.Filters] = None,
        sort: Optional[query.SortOrder] = None,
        page: Optional[query.PageRequest] = None
    ) -> query.QueryResult:
        return query.apply(self.snapshot(), filters, sort, page)

    # ------------------------------------------------------------------
    # Ticks

    def apply_tick(self, tick: PriceTick) -> List[Position]:
        """
        Mark every position on ``tick.symbol`` to the tick and trail stops.

        Args:
            tick: Latest quote

        Returns:
            The updated positions

        Raises:
            InvariantViolationError: If the tick is older than the last one
                applied for its symbol
        """
        with self._lock:
            updated, events = self._apply_tick_locked(tick)
        self._emit(events)
        return updated

    def _apply_tick_locked(self, tick: PriceTick) -> Tuple[List[Position], List[Tuple[str, Any]]]:
        self._check_tick_order(tick, self._last_ticks.get(tick.symbol))

        positions = dict(self._positions)
        updated = []
        events = []
        for position_id, position in self._positions.items():
            if position.symbol != tick.symbol:
                continue

            marked = position.marked_at(mark_price(position.side, tick))
            trailed = trail(marked)
            if trailed.stop_loss != marked.stop_loss:
                events.append((STOP_ADJUSTED, trailed))

            positions[position_id] = trailed
            updated.append(trailed)

        # Publish only after every position has been recomputed
        self._positions = positions
        self._last_ticks = {**self._last_ticks, tick.symbol: tick}
        return updated, events

    @staticmethod
    def _check_tick_order(tick: PriceTick, previous: Optional[PriceTick]) -> None:
        if previous is not None and tick.timestamp < previous.timestamp:
            message = (
                f"Out-of-order tick for {tick.symbol}: "
                f"{tick.timestamp.isoformat()} < {previous.timestamp.isoformat()}"
            )
            logger.error(message)
            raise InvariantViolationError(message)

    def _apply_released(
        self,
        released: List[Tuple[str, PriceTick]]
    ) -> Tuple[int, List[Tuple[str, Any]], List[InvariantViolationError]]:
        """Apply held ticks one by one; a failing tick never costs the others."""
        applied = 0
        events: List[Tuple[str, Any]] = []
        errors: List[InvariantViolationError] = []
        for _, held in released:
            previous = self._last_ticks.get(held.symbol)
            if previous is not None and held.timestamp < previous.timestamp:
                # A newer tick was applied directly while this one was held
                logger.warning(
                    f"Discarding superseded held tick for {held.symbol} "
                    f"({held.timestamp.isoformat()})"
                )
                continue
            try:
                events.extend(self._apply_tick_locked(held)[1])
                applied += 1
            except InvariantViolationError as e:
                errors.append(e)
        return applied, events, errors

    def ingest(self, tick: PriceTick) -> bool:
        """
        Throttled tick entry point for price feeds.

        Ticks for a symbol are applied at most once per throttle interval.
        An early tick is held and superseded by any newer tick, then applied
        by ``flush()`` or the next ingest after the interval elapses.

        Returns:
            True if this tick was applied immediately

        Raises:
            InvariantViolationError: If the tick is older than the last
                applied or currently held tick for its symbol
        """
        channel = price_channel(tick.symbol)
        events = []
        with self._lock:
            # Rejected here so the error reaches this tick's own caller
            self._check_tick_order(tick, self._last_ticks.get(tick.symbol))
            self._check_tick_order(tick, self.throttle.pending(channel))

            apply_now, _ = self.throttle.offer(channel, tick)
            if apply_now:
                events.extend(self._apply_tick_locked(tick)[1])

            _, released_events, errors = self._apply_released(self.throttle.due())
            events.extend(released_events)
        self._emit(events)
        if errors:
            raise errors[0]
        return apply_now

    def flush(self, force: bool = False) -> int:
        """
        Apply held ticks whose interval has elapsed.

        Args:
            force: Apply every held tick regardless of the interval

        Returns:
            Number of ticks applied

        Raises:
            InvariantViolationError: After every other held tick has been
                applied, if one of them broke an invariant
        """
        with self._lock:
            released = self.throttle.drain() if force else self.throttle.due()
            applied, events, errors = self._apply_released(released)
        self._emit(events)
        if errors:
            raise errors[0]
        return applied

    # ------------------------------------------------------------------
    # Lifecycle

    def open(
        self,
        order: Union[Order, OrderFormData],
        fill_price: float,
        open_time: Optional[datetime] = None,
        swap: float = 0.0,
        commission: float = 0.0,
        trailing_stop: Optional[TrailingStop] = None
    ) -> Position:
        """
        Create a position from a filled order.

        Args:
            order: The filled order (or an equivalent order form)
            fill_price: Execution price; the position starts marked here
            open_time: Fill time (default: now)
            swap: Accumulated swap
            commission: Commission charged
            trailing_stop: Trailing stop configuration

        Returns:
            The new position
        """
        if fill_price <= 0:
            raise ValueError(f"Fill price must be positive, got {fill_price}")

        position = Position(
            id=self.id_factory(),
            symbol=order.symbol,
            side=order.side,
            volume=order.volume,
            open_price=fill_price,
            current_price=fill_price,
            open_time=open_time or utcnow(),
            swap=swap,
            commission=commission,
            stop_loss=order.stop_loss,
            take_profit=order.take_profit,
            trailing_stop=trailing_stop or TrailingStop(),
            comment=order.comment
        ).marked_at(fill_price)

        with self._lock:
            if position.id in self._positions:
                raise InvariantViolationError(f"Duplicate position id: {position.id}")
            self._positions = {**self._positions, position.id: position}

        logger.info(
            f"Opened {position.side.value} {position.volume} {position.symbol} "
            f"@ {fill_price} (id={position.id})"
        )
        self._emit([(POSITION_OPENED, position)])
        return position

    def restore(self, position: Position) -> Position:
        """
        Insert an existing position, e.g. one recovered from an export.

        The position is stored as given; no event is emitted.

        Raises:
            InvariantViolationError: If the id is already present
        """
        with self._lock:
            if position.id in self._positions:
                raise InvariantViolationError(f"Duplicate position id: {position.id}")
            self._positions = {**self._positions, position.id: position}
        logger.debug(f"Restored position {position.id} ({position.symbol})")
        return position

    def modify(self, position_id: str, updates: Dict[str, Any]) -> Position:
        """
        Update a position's mutable fields.

        Only stop_loss, take_profit, trailing_stop and comment can change.
        Changed stop and target levels are checked against the current
        price. The trailing level itself belongs to the trailing stop engine
        and is carried over from the existing configuration.

        Args:
            position_id: Position to modify
            updates: Field name to new value

        Returns:
            The modified position

        Raises:
            NotFoundError: If the id is unknown
            ImmutableFieldError: If a field other than the mutable ones is given
            ModificationRejectedError: If a level is on the wrong side of the price
        """
        known_fields = {f.name for f in fields(Position)}
        for name in updates:
            if name in IMMUTABLE_FIELDS or name not in MUTABLE_FIELDS:
                if name not in known_fields:
                    logger.warning(f"Unknown field in modify request: {name}")
                raise ImmutableFieldError(name)

        with self._lock:
            position = self.get(position_id)
            changes = dict(updates)

            if 'trailing_stop' in changes:
                changes['trailing_stop'] = self._merge_trailing_stop(
                    position.trailing_stop, changes['trailing_stop']
                )

            candidate = replace(position, **changes)
            errors = _level_errors(candidate, set(updates))
            if errors:
                raise ModificationRejectedError(position_id, errors)

            self._positions = {**self._positions, position_id: candidate}

        logger.info(f"Modified position {position_id}: {sorted(updates)}")
        self._emit([(POSITION_MODIFIED, candidate)])
        return candidate

    def set_trailing_stop(self, position_id: str, trailing_stop: TrailingStop) -> Position:
        return self.modify(position_id, {'trailing_stop': trailing_stop})

    def close(self, position_id: str, close_time: Optional[datetime] = None) -> TradeRecord:
        """
        Remove a position and return its final realized snapshot.

        Args:
            position_id: Position to close
            close_time: Time of the close (default: now)

        Returns:
            TradeRecord with the realized P&L at the last marked price

        Raises:
            NotFoundError: If the id is unknown
        """
        with self._lock:
            position = self.get(position_id)
            remaining = dict(self._positions)
            del remaining[position_id]
            self._positions = remaining

        record = TradeRecord(
            position_id=position.id,
            symbol=position.symbol,
            side=position.side,
            volume=position.volume,
            open_price=position.open_price,
            close_price=position.current_price,
            pnl=position.pnl,
            pnl_percent=position.pnl_percent,
            commission=position.commission,
            swap=position.swap,
            open_time=position.open_time,
            close_time=close_time or utcnow(),
            stop_loss=position.stop_loss,
            take_profit=position.take_profit,
            comment=position.comment
        )

        logger.info(f"Closed position {position_id} ({position.symbol}) pnl={record.pnl:.2f}")
        self._emit([(POSITION_CLOSED, record)])
        return record

    @staticmethod
    def _merge_trailing_stop(existing: TrailingStop, update: Any) -> TrailingStop:
        if isinstance(update, dict):
            update = replace(existing, **update)
        if not isinstance(update, TrailingStop):
            raise TypeError(f"trailing_stop must be a TrailingStop or dict, got {type(update)}")

        # The engine owns the level; a caller cannot move it backwards
        if existing.current_level is not None:
            update = replace(update, current_level=existing.current_level)
        return update


def _level_errors(position: Position, changed: Set[str]) -> List[FieldError]:
    """Check changed stop/target levels and trailing parameters against the current price."""
    errors = []
    price = position.current_price

    if 'stop_loss' in changed and position.stop_loss is not None:
        valid = position.stop_loss < price if position.side is Side.BUY else position.stop_loss > price
        if not valid:
            errors.append(FieldError('stop_loss', 'Invalid stop loss level', 'INVALID_SL'))

    if 'take_profit' in changed and position.take_profit is not None:
        valid = position.take_profit > price if position.side is Side.BUY else position.take_profit < price
        if not valid:
            errors.append(FieldError('take_profit', 'Invalid take profit level', 'INVALID_TP'))

    trailing = position.trailing_stop
    if 'trailing_stop' in changed and (trailing.distance < 0 or trailing.step < 0):
        errors.append(FieldError(
            'trailing_stop', 'Trailing distance and step cannot be negative', 'INVALID_TRAILING'
        ))

    return errors
