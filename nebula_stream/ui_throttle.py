"""
UI fan-out throttle.

The ticker stream delivers hundreds of symbols per second; UI consumers
should redraw at most once per UI_FLUSH_INTERVAL. The throttle keeps a
pending dict keyed by symbol (a later snapshot for the same symbol replaces
the earlier one) and publishes it as a single list once the interval has
elapsed since the previous flush.

A flush is a delta: only symbols touched since the last flush are included.
Consumers keep their own copy and merge by key; UIStateMirror does exactly
that. The render loop does not go through here; it reads the table directly.
"""

import logging
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional

from nebula_stream.config import UI_FLUSH_INTERVAL
from nebula_stream.ticker_table import TickerSnapshot

logger = logging.getLogger(__name__)

FlushCallback = Callable[[List[TickerSnapshot]], None]


class UIFanoutThrottle:
    """Batches snapshots and publishes them at a bounded rate."""

    def __init__(
        self,
        interval: float = UI_FLUSH_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.interval = interval
        self._clock = clock
        self._pending: Dict[str, TickerSnapshot] = {}
        self._subscribers: List[FlushCallback] = []
        self.last_flush: Optional[float] = None
        self.flush_count = 0

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def subscribe(self, callback: FlushCallback) -> Callable[[], None]:
        """Register a flush callback; returns a function that removes it."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def offer(self, snapshots: Iterable[TickerSnapshot]) -> bool:
        """Queue snapshots; flush if the interval has elapsed. True if flushed."""
        for snapshot in snapshots:
            self._pending[snapshot.symbol] = snapshot

        now = self._clock()
        if self.last_flush is not None and now - self.last_flush <= self.interval:
            return False
        return self._emit(now)

    def flush(self) -> bool:
        """Publish whatever is pending regardless of the interval."""
        return self._emit(self._clock())

    def _emit(self, now: float) -> bool:
        if not self._pending:
            return False

        batch = list(self._pending.values())
        self._pending = {}
        self.last_flush = now
        self.flush_count += 1

        for callback in list(self._subscribers):
            try:
                callback(batch)
            except Exception as e:
                logger.error("UI flush callback failed: %s", e, exc_info=True)
        return True


class UIStateMirror:
    """Reactive copy of the ticker state, updated by merging flushes by key."""

    def __init__(self) -> None:
        self._tickers: Dict[str, TickerSnapshot] = {}
        self._lock = threading.Lock()
        self.updates = 0

    def apply(self, batch: Iterable[TickerSnapshot]) -> None:
        with self._lock:
            for snapshot in batch:
                self._tickers[snapshot.symbol] = snapshot
            self.updates += 1

    def get(self, symbol: str) -> Optional[TickerSnapshot]:
        with self._lock:
            return self._tickers.get(symbol)

    def tickers(self) -> Dict[str, TickerSnapshot]:
        with self._lock:
            return dict(self._tickers)

    def __len__(self) -> int:
        with self._lock:
            return len(self._tickers)
