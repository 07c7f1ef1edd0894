"""
Derived-change calculator.

Produces the percent change to display for the active observation window:

  - native window (24h): the upstream figure, verbatim
  - any other window:    (price - baseline) / baseline * 100
  - no baseline yet, or a zero baseline: exactly 0.0, flagged provisional

Showing zero rather than the 24h figure keeps a symbol neutral until its
baseline for the selected window arrives. Called per symbol per frame, so it
is one dict lookup plus arithmetic.
"""

from typing import Mapping, NamedTuple, Optional

from nebula_stream.ticker_table import TickerSnapshot
from nebula_stream.timeframes import NATIVE_TIMEFRAME


class ChangeReading(NamedTuple):
    percent: float
    provisional: bool


def derive_change(
    symbol: str,
    price: float,
    native_change_percent: float,
    timeframe: str,
    baselines: Optional[Mapping[str, float]],
) -> ChangeReading:
    if timeframe == NATIVE_TIMEFRAME:
        return ChangeReading(native_change_percent, False)

    baseline = baselines.get(symbol) if baselines is not None else None
    if not baseline:
        return ChangeReading(0.0, True)

    return ChangeReading((price - baseline) / baseline * 100, False)


def derive_change_percent(
    symbol: str,
    price: float,
    native_change_percent: float,
    timeframe: str,
    baselines: Optional[Mapping[str, float]],
) -> float:
    """Percent change for display; see module docstring for the rules."""
    return derive_change(symbol, price, native_change_percent, timeframe, baselines).percent


def apply_display_change(
    snapshot: TickerSnapshot,
    timeframe: str,
    baselines: Optional[Mapping[str, float]],
) -> TickerSnapshot:
    """Recompute a snapshot's display fields in place for ``timeframe``."""
    reading = derive_change(
        snapshot.symbol, snapshot.price, snapshot.native_change_percent,
        timeframe, baselines,
    )
    snapshot.display_change_percent = reading.percent
    snapshot.provisional = reading.provisional
    snapshot.timeframe = timeframe
    return snapshot
