"""
Ticker normalizer: turns raw ``!ticker@arr`` records into TickerSnapshots.

Binance sends each record as:
    {"e": "24hrTicker", "E": 1690000000000, "s": "BTCUSDT",
     "c": "65000.5", "q": "5000000", "P": "2.3", ...}

    s → symbol
    c → last price (string)
    q → 24h quote-asset volume (string)
    P → 24h price change percent (string)
    E → event time in ms

Admission filter, in order:
  1. symbol must end with the target quote asset ("USDT")
  2. quote volume must be >= MIN_QUOTE_VOLUME

Unparsable numeric strings become NaN. In strict mode (the default) a record
with any non-finite price, volume or change is dropped and counted; with
strict=False it is admitted with the NaN in place and renderers must guard.

Ingestion is synchronous and never awaits: one inbound batch is applied to
the table in a single pass, in arrival order, so a duplicate symbol within a
batch resolves to the last record.
"""

import logging
import math
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from nebula_stream.config import MIN_QUOTE_VOLUME, TARGET_QUOTE_ASSET
from nebula_stream.ticker_table import TickerSnapshot, TickerTable

logger = logging.getLogger(__name__)

# (symbol, price, native_change_percent, timeframe) -> (display_percent, provisional)
ChangeFn = Callable[[str, float, float, str], Any]

# Emit a rejection summary every N inbound messages
SUMMARY_EVERY_MESSAGES = 600

# Reason codes returned by classify_ticker()
ADMITTED = "admitted"
REJECT_SHAPE = "shape"
REJECT_SUFFIX = "suffix"
REJECT_VOLUME = "volume"
REJECT_MALFORMED = "malformed"


def parse_float(value: Any) -> float:
    """float(value), or NaN when the value is not a number."""
    if isinstance(value, bool):
        return math.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


@dataclass
class IngestStats:
    """Running counters for the ingestion path."""
    messages: int = 0
    records: int = 0
    admitted: int = 0
    rejected_shape: int = 0
    rejected_suffix: int = 0
    rejected_volume: int = 0
    rejected_malformed: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


def classify_ticker(
    raw: Any,
    quote_asset: str = TARGET_QUOTE_ASSET,
    min_volume: float = MIN_QUOTE_VOLUME,
    strict: bool = True,
) -> str:
    """Return ADMITTED or the reason code a record would be rejected for."""
    if not isinstance(raw, dict):
        return REJECT_SHAPE

    symbol = raw.get("s")
    if not isinstance(symbol, str) or not symbol:
        return REJECT_SHAPE
    if not symbol.endswith(quote_asset):
        return REJECT_SUFFIX

    volume = parse_float(raw.get("q"))
    if volume < min_volume:
        return REJECT_VOLUME

    if strict:
        price = parse_float(raw.get("c"))
        change = parse_float(raw.get("P"))
        if not (math.isfinite(volume) and math.isfinite(price) and math.isfinite(change)):
            return REJECT_MALFORMED

    return ADMITTED


def normalize_ticker(
    raw: Any,
    timeframe: str,
    quote_asset: str = TARGET_QUOTE_ASSET,
    min_volume: float = MIN_QUOTE_VOLUME,
    strict: bool = True,
    received_at: Optional[float] = None,
) -> Optional[TickerSnapshot]:
    """
    Convert one raw record to a TickerSnapshot, or None if not admitted.

    The display change starts out equal to the native 24h figure; callers
    that track another window overwrite it via change_calc.
    """
    if classify_ticker(raw, quote_asset, min_volume, strict) != ADMITTED:
        return None

    native_change = parse_float(raw.get("P"))
    event_time = raw.get("E")
    return TickerSnapshot(
        symbol=raw["s"],
        price=parse_float(raw.get("c")),
        volume=parse_float(raw.get("q")),
        native_change_percent=native_change,
        display_change_percent=native_change,
        timeframe=timeframe,
        event_time=event_time if isinstance(event_time, int) else 0,
        received_at=time.time() if received_at is None else received_at,
    )


class TickerIngestor:
    """
    Stream subscriber that applies inbound batches to the ticker table.

    Args:
        table:            Destination TickerTable
        timeframe_getter: Returns the active window label; read per record
        throttle:         Optional UIFanoutThrottle offered each batch's
                          admitted snapshots after the table write
        change_fn:        Optional calculator returning
                          ``(display_percent, provisional)`` for a record
        quote_asset:      Required symbol suffix
        min_volume:       Minimum 24h quote volume
        strict:           Drop records with non-finite numeric fields
    """

    def __init__(
        self,
        table: TickerTable,
        timeframe_getter: Callable[[], str],
        throttle: Optional[Any] = None,
        change_fn: Optional[ChangeFn] = None,
        quote_asset: str = TARGET_QUOTE_ASSET,
        min_volume: float = MIN_QUOTE_VOLUME,
        strict: bool = True,
    ):
        self.table = table
        self.get_timeframe = timeframe_getter
        self.throttle = throttle
        self.change_fn = change_fn
        self.quote_asset = quote_asset
        self.min_volume = min_volume
        self.strict = strict
        self.stats = IngestStats()

    def __call__(self, message: Any) -> List[TickerSnapshot]:
        return self.handle_message(message)

    def handle_message(self, message: Any) -> List[TickerSnapshot]:
        """Apply one inbound message; returns the snapshots written."""
        self.stats.messages += 1

        if isinstance(message, dict):
            records: Iterable[Any] = [message]
        elif isinstance(message, list):
            records = message
        else:
            self.stats.rejected_shape += 1
            logger.debug("Ignoring non-ticker message of type %s", type(message).__name__)
            return []

        now = time.time()
        written: List[TickerSnapshot] = []
        for raw in records:
            self.stats.records += 1
            reason = classify_ticker(raw, self.quote_asset, self.min_volume, self.strict)
            if reason != ADMITTED:
                self._count_rejection(reason)
                continue

            snapshot = normalize_ticker(
                raw,
                self.get_timeframe(),
                quote_asset=self.quote_asset,
                min_volume=self.min_volume,
                strict=self.strict,
                received_at=now,
            )
            if self.change_fn is not None:
                display, provisional = self.change_fn(
                    snapshot.symbol, snapshot.price,
                    snapshot.native_change_percent, snapshot.timeframe,
                )
                snapshot.display_change_percent = display
                snapshot.provisional = provisional

            self.table.upsert(snapshot)
            written.append(snapshot)
            self.stats.admitted += 1

        if self.throttle is not None and written:
            self.throttle.offer(written)

        if self.stats.messages % SUMMARY_EVERY_MESSAGES == 0:
            self._log_summary()

        return written

    def _count_rejection(self, reason: str) -> None:
        if reason == REJECT_SUFFIX:
            self.stats.rejected_suffix += 1
        elif reason == REJECT_VOLUME:
            self.stats.rejected_volume += 1
        elif reason == REJECT_MALFORMED:
            self.stats.rejected_malformed += 1
        else:
            self.stats.rejected_shape += 1

    def _log_summary(self) -> None:
        s = self.stats
        logger.info(
            "Ingest: %d msgs, %d records, %d admitted, rejected suffix=%d volume=%d "
            "malformed=%d shape=%d, %d symbols tracked",
            s.messages, s.records, s.admitted, s.rejected_suffix, s.rejected_volume,
            s.rejected_malformed, s.rejected_shape, len(self.table),
        )
