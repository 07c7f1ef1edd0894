"""Exceptions raised at the few seams of the streaming core that do raise."""


class NebulaError(Exception):
    """Base class for errors raised by nebula_stream."""


class UnsupportedTimeframeError(NebulaError, ValueError):
    """Raised when a timeframe label has no known meaning."""

    def __init__(self, timeframe: str):
        self.timeframe = timeframe
        super().__init__(f"Unsupported timeframe: {timeframe!r}")
