"""Price feed consumption on a worker thread."""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from typing import Iterable, List, Optional, Union

import pandas as pd
import pytz

from .exceptions import DataError
from .ledger import PositionLedger
from .models import PriceTick

logger = logging.getLogger(__name__)

# Any iterable of ticks, finite (replay) or not (live)
PriceFeed = Iterable[PriceTick]

TICK_COLUMNS = ['symbol', 'bid', 'ask', 'timestamp']


def parse_ticks_csv(filepath: Union[str, Path]) -> List[PriceTick]:
    """
    Load recorded ticks from a CSV file.

    Expected columns: symbol, bid, ask, timestamp (ISO-8601). Naive
    timestamps are taken as UTC. Rows are returned sorted by timestamp.

    Raises:
        DataError: If columns are missing or a row cannot be parsed
    """
    df = pd.read_csv(filepath, dtype=str, keep_default_na=False)
    df.columns = [c.strip().lower() for c in df.columns]

    missing = [c for c in TICK_COLUMNS if c not in df.columns]
    if missing:
        raise DataError(f"Malformed ticks file, missing columns: {missing}")

    ticks = []
    for line_no, record in enumerate(df.to_dict(orient='records'), start=2):
        try:
            timestamp = datetime.fromisoformat(record['timestamp'].strip())
            if timestamp.tzinfo is None:
                timestamp = pytz.UTC.localize(timestamp)
            ticks.append(PriceTick(
                symbol=record['symbol'].strip().upper(),
                bid=float(record['bid']),
                ask=float(record['ask']),
                timestamp=timestamp
            ))
        except ValueError as e:
            raise DataError(f"Malformed ticks file at line {line_no}: {e}") from e

    ticks.sort(key=lambda t: t.timestamp)
    logger.debug(f"Loaded {len(ticks)} ticks from {filepath}")
    return ticks


class FeedConsumer:
    """
    Drains a price feed into a ledger without blocking the caller.

    Each tick goes through ``ledger.ingest`` so the per-symbol throttle
    applies. When the feed ends (or ``stop()`` is called) every held tick
    is flushed, leaving the ledger at the newest price seen per symbol.

    Args:
        ledger: Ledger to update
        executor: Executor to run on; one single-thread executor is created
            and owned by the consumer when omitted
    """

    def __init__(self, ledger: PositionLedger, executor: Optional[ThreadPoolExecutor] = None):
        self.ledger = ledger
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="tradecore-feed")
        self._stop = threading.Event()

    def start(self, feed: PriceFeed) -> "Future[int]":
        """
        Start consuming a feed.

        Returns:
            Future resolving to the number of ticks received. An exception
            raised while applying a tick (e.g. an out-of-order timestamp)
            is delivered through the future.
        """
        self._stop.clear()
        return self.executor.submit(self._consume, feed)

    def stop(self) -> None:
        """Ask the running consumer to stop after the current tick."""
        self._stop.set()

    def _consume(self, feed: PriceFeed) -> int:
        received = 0
        try:
            for tick in feed:
                if self._stop.is_set():
                    logger.info(f"Feed consumer stopped after {received} ticks")
                    break
                self.ledger.ingest(tick)
                received += 1
        finally:
            flushed = self.ledger.flush(force=True)
            logger.debug(f"Feed drained: {received} ticks received, {flushed} held ticks flushed")
        return received

    def close(self) -> None:
        self.stop()
        if self._owns_executor:
            self.executor.shutdown(wait=True)

    def __enter__(self) -> "FeedConsumer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
