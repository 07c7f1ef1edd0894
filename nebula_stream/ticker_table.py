"""
Mutable ticker table: latest known state per symbol.

One TickerSnapshot per symbol, last write wins, no history. Entries are
created on the first admitted observation and never removed: symbols that
stop trading simply go stale. ``received_at`` lets readers tell a stale
entry from a fresh one, and absence from the table means "never seen".

The render loop reads the table directly every frame; the UI path receives
throttled deltas (see ui_throttle). All access goes through a lock so the
embedded API thread can read while the event loop writes.
"""

import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Optional


@dataclass
class TickerSnapshot:
    """
    One instrument's latest observed state.

    Fields:
        symbol:                 Uppercase exchange symbol ("BTCUSDT")
        price:                  Last price
        volume:                 Rolling 24h quote-asset volume
        native_change_percent:  Upstream-reported 24h change
        display_change_percent: Change over the active window (equals the
                                native value when the native window is active)
        timeframe:              Window label the display figure refers to
        event_time:             Upstream event time (ms)
        received_at:            Local receive time (epoch seconds)
        provisional:            True while the display figure is a zero
                                placeholder awaiting a baseline
    """
    symbol: str
    price: float
    volume: float
    native_change_percent: float
    display_change_percent: float
    timeframe: str
    event_time: int = 0
    received_at: float = 0.0
    provisional: bool = False

    @property
    def price_change_percent(self) -> float:
        """The figure to show, whichever source populated it."""
        return self.display_change_percent

    def to_dict(self) -> Dict:
        return {
            "symbol": self.symbol,
            "price": self.price,
            "volume": self.volume,
            "priceChangePercent": self.display_change_percent,
            "nativeChangePercent": self.native_change_percent,
            "timeframe": self.timeframe,
            "eventTime": self.event_time,
            "receivedAt": self.received_at,
            "provisional": self.provisional,
        }


class TickerTable:
    """Process-wide symbol -> TickerSnapshot map."""

    def __init__(self) -> None:
        self._tickers: Dict[str, TickerSnapshot] = {}
        self._lock = threading.Lock()

    def upsert(self, snapshot: TickerSnapshot) -> None:
        with self._lock:
            self._tickers[snapshot.symbol] = snapshot

    def upsert_many(self, snapshots: Iterable[TickerSnapshot]) -> None:
        with self._lock:
            for snapshot in snapshots:
                self._tickers[snapshot.symbol] = snapshot

    def update_all(self, fn: Callable[[TickerSnapshot], None]) -> int:
        """Run ``fn`` on every entry in place; returns the entry count."""
        with self._lock:
            for snapshot in self._tickers.values():
                fn(snapshot)
            return len(self._tickers)

    def get(self, symbol: str) -> Optional[TickerSnapshot]:
        with self._lock:
            return self._tickers.get(symbol)

    def symbols(self) -> List[str]:
        """Known symbols in first-seen order."""
        with self._lock:
            return list(self._tickers.keys())

    def snapshots(self) -> List[TickerSnapshot]:
        """Copies of every entry, safe to hand to another thread."""
        with self._lock:
            return [replace(s) for s in self._tickers.values()]

    def age_of(self, symbol: str, now: Optional[float] = None) -> Optional[float]:
        """Seconds since the symbol was last written, None if never seen."""
        now = time.time() if now is None else now
        with self._lock:
            snapshot = self._tickers.get(symbol)
        if snapshot is None:
            return None
        return now - snapshot.received_at

    def stale_symbols(self, max_age: float, now: Optional[float] = None) -> List[str]:
        """Symbols not updated within ``max_age`` seconds."""
        now = time.time() if now is None else now
        with self._lock:
            return [
                sym for sym, snap in self._tickers.items()
                if now - snap.received_at > max_age
            ]

    def __contains__(self, symbol: object) -> bool:
        with self._lock:
            return symbol in self._tickers

    def __len__(self) -> int:
        with self._lock:
            return len(self._tickers)
