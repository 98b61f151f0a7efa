"""Per-channel update throttle with coalescing of early updates."""

import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

# Standard update channels
PRICES_CHANNEL = "prices"
BALANCE_CHANNEL = "balance"
POSITIONS_CHANNEL = "positions"


def price_channel(symbol: str) -> str:
    """Channel name for a single symbol's price updates.

    The symbol is used exactly as given, matching how the ledger pairs
    ticks with positions.
    """
    return f"price:{symbol}"


class UpdateThrottle:
    """
    Thread-safe minimum-interval throttle keyed by channel.

    An update offered before its channel's interval has elapsed is held as
    the channel's pending value. A later early update replaces it, so at
    most one value per channel is ever held and the newest one wins. Held
    values are released by ``due()`` once the interval has passed, or are
    superseded by the next update that is let through.
    """

    def __init__(self, interval_ms: float = 1000, clock: Optional[Callable[[], float]] = None):
        """
        Initialize the throttle.

        Args:
            interval_ms: Minimum interval between applied updates per channel
            clock: Monotonic time source in seconds (default: time.monotonic)
        """
        self.interval = interval_ms / 1000.0
        self.clock = clock or time.monotonic
        self.lock = threading.Lock()
        self._last_applied: Dict[str, float] = {}
        self._pending: Dict[str, Any] = {}

    def _elapsed(self, channel: str, now: float) -> bool:
        last = self._last_applied.get(channel)
        return last is None or now - last >= self.interval

    def should_update(self, channel: str) -> bool:
        """Whether an update on ``channel`` would be applied right now."""
        with self.lock:
            return self._elapsed(channel, self.clock())

    def offer(self, channel: str, value: Any) -> Tuple[bool, Any]:
        """
        Offer an update for a channel.

        Args:
            channel: Update channel name
            value: The update payload

        Returns:
            Tuple of (apply_now, value). When apply_now is False the value
            has been held as the channel's pending update.
        """
        with self.lock:
            now = self.clock()
            if self._elapsed(channel, now):
                self._last_applied[channel] = now
                # Anything held for this channel is older than this value
                self._pending.pop(channel, None)
                return True, value

            self._pending[channel] = value
            return False, value

    def due(self) -> List[Tuple[str, Any]]:
        """
        Release pending updates whose channel interval has elapsed.

        Returns:
            List of (channel, value) pairs to apply now, marked as applied
        """
        released = []
        with self.lock:
            now = self.clock()
            for channel in list(self._pending):
                if self._elapsed(channel, now):
                    released.append((channel, self._pending.pop(channel)))
                    self._last_applied[channel] = now
        return released

    def drain(self) -> List[Tuple[str, Any]]:
        """Release every pending update regardless of the interval."""
        with self.lock:
            now = self.clock()
            released = list(self._pending.items())
            for channel, _ in released:
                self._last_applied[channel] = now
            self._pending.clear()
        return released

    def pending(self, channel: str) -> Optional[Any]:
        """The value currently held for a channel, if any."""
        with self.lock:
            return self._pending.get(channel)

    def pending_count(self) -> int:
        with self.lock:
            return len(self._pending)

    def reset(self) -> None:
        """Forget all timing state and pending values."""
        with self.lock:
            self._last_applied.clear()
            self._pending.clear()
