"""
Observation window vocabulary.

The upstream ticker only reports change over its native 24h window. Every
other selectable window is served by fetching the opening price of the most
recent kline at the matching Binance interval.
"""

from typing import Dict, Optional, Tuple

from nebula_stream.exceptions import UnsupportedTimeframeError

# Window served directly by the stream's "P" field
NATIVE_TIMEFRAME = "24h"

# Order matches the selector shown to users
TIMEFRAMES: Tuple[str, ...] = ("1m", "15m", "1h", "4h", "24h", "7d")

# Timeframe label -> Binance kline interval
KLINE_INTERVALS: Dict[str, str] = {
    "1m": "1m",
    "15m": "15m",
    "1h": "1h",
    "4h": "4h",
    "7d": "1w",
}


def is_native(timeframe: str) -> bool:
    return timeframe == NATIVE_TIMEFRAME


def to_kline_interval(timeframe: str) -> Optional[str]:
    """Map a timeframe label to a kline interval, or None if unmappable."""
    return KLINE_INTERVALS.get(timeframe)


def validate_timeframe(timeframe: str) -> str:
    """Return the timeframe unchanged or raise UnsupportedTimeframeError."""
    if timeframe not in TIMEFRAMES:
        raise UnsupportedTimeframeError(timeframe)
    return timeframe
