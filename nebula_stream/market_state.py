"""
Market state: wires the streaming core together for one process.

    stream manager ──▶ TickerIngestor ──▶ TickerTable ──▶ render_rows() (per frame)
                                     └──▶ UIFanoutThrottle ──▶ UIStateMirror (≤1/s)

    set_timeframe() ──▶ BaselineResynchronizer ──▶ BaselineMap ──▶ change_calc

MarketState owns the table, the throttle, the UI mirror, the resynchronizer,
the favorites list and the active window. It does not own the stream
manager: several MarketStates (or other consumers) may share one socket.

Usage:
    market = MarketState(NebulaConfig())
    await market.start()
    market.set_timeframe("1h")
    rows = market.render_rows(limit=50, sort="gainers")
    await market.stop()
"""

import asyncio
import logging
import math
from typing import Any, Dict, List, Optional

from nebula_stream.baseline_sync import BaselineFetcher, BaselineMap, BaselineResynchronizer
from nebula_stream.change_calc import ChangeReading, apply_display_change, derive_change
from nebula_stream.config import NebulaConfig
from nebula_stream.ticker_normalizer import TickerIngestor
from nebula_stream.ticker_table import TickerSnapshot, TickerTable
from nebula_stream.timeframes import validate_timeframe
from nebula_stream.ui_throttle import UIFanoutThrottle, UIStateMirror
from nebula_stream.ws_connectors import StreamConnectionManager, Subscription, get_stream_manager

logger = logging.getLogger(__name__)

SORT_MODES = ("gainers", "losers", "volume", "favorites")


def _sort_key_change(row: Dict[str, Any]) -> float:
    change = row["change"]
    return change if not math.isnan(change) else 0.0


class MarketState:
    """
    Owner of shared market state and the components that maintain it.

    Args:
        config:  NebulaConfig
        manager: StreamConnectionManager to subscribe to (default: the
                 process-wide singleton for config.stream_url)
        fetcher: BaselineFetcher (default: one built from config)
    """

    def __init__(
        self,
        config: Optional[NebulaConfig] = None,
        manager: Optional[StreamConnectionManager] = None,
        fetcher: Optional[BaselineFetcher] = None,
    ):
        self.config = config or NebulaConfig()
        self.manager = manager or get_stream_manager(
            self.config.stream_url,
            reconnect_delay=self.config.reconnect_delay,
            close_grace_period=self.config.close_grace_period,
        )
        self.timeframe = validate_timeframe(self.config.timeframe)
        self._favorites: List[str] = list(self.config.favorites)

        self.table = TickerTable()
        self.throttle = UIFanoutThrottle(interval=self.config.ui_flush_interval)
        self.ui_state = UIStateMirror()
        self.throttle.subscribe(self.ui_state.apply)

        self.fetcher = fetcher or BaselineFetcher(
            base_url=self.config.rest_base,
            chunk_size=self.config.chunk_size,
            chunk_delay=self.config.chunk_delay,
            request_timeout=self.config.request_timeout,
        )
        self.resync = BaselineResynchronizer(
            self.fetcher,
            symbols_getter=self.table.symbols,
            favorites_getter=lambda: list(self._favorites),
            refresh_interval=self.config.refresh_interval,
            cold_start_min_symbols=self.config.cold_start_min_symbols,
            cold_start_retry_delay=self.config.cold_start_retry_delay,
        )
        self.resync.subscribe(self._on_baselines)

        self.ingestor = TickerIngestor(
            self.table,
            timeframe_getter=lambda: self.timeframe,
            throttle=self.throttle,
            change_fn=self._change_for,
            quote_asset=self.config.quote_asset,
            min_volume=self.config.min_quote_volume,
            strict=self.config.strict_ingest,
        )

        self._subscription: Optional[Subscription] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def started(self) -> bool:
        return self._subscription is not None and self._subscription.active

    async def start(self) -> None:
        """Subscribe to the stream and begin baseline sync for the window."""
        if self.started:
            return
        self._loop = asyncio.get_running_loop()
        self._subscription = self.manager.subscribe(self.ingestor.handle_message)
        self.resync.on_timeframe_change(self.timeframe)
        logger.info("Market state started (timeframe=%s, favorites=%d)",
                    self.timeframe, len(self._favorites))

    async def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        await self.resync.stop()
        await self.fetcher.close()
        self.throttle.flush()
        logger.info("Market state stopped")

    # ------------------------------------------------------------------
    # Window selection
    # ------------------------------------------------------------------

    def set_timeframe(self, timeframe: str) -> None:
        """Switch the observation window. Raises UnsupportedTimeframeError."""
        validate_timeframe(timeframe)
        if timeframe == self.timeframe and self.resync.timeframe == timeframe:
            return
        logger.info("Timeframe %s -> %s", self.timeframe, timeframe)
        self.timeframe = timeframe
        self.resync.on_timeframe_change(timeframe)

    def set_timeframe_threadsafe(self, timeframe: str) -> None:
        """set_timeframe() from another thread (e.g. the embedded API)."""
        validate_timeframe(timeframe)
        if self._loop is None:
            raise RuntimeError("MarketState has not been started")
        self._loop.call_soon_threadsafe(self.set_timeframe, timeframe)

    # ------------------------------------------------------------------
    # Favorites
    # ------------------------------------------------------------------

    @property
    def favorites(self) -> List[str]:
        return list(self._favorites)

    def toggle_favorite(self, symbol: str) -> bool:
        """Pin or unpin a symbol; returns True if it is now a favorite."""
        symbol = symbol.strip().upper()
        if symbol in self._favorites:
            self._favorites.remove(symbol)
            return False
        self._favorites.append(symbol)
        return True

    # ------------------------------------------------------------------
    # Derived change
    # ------------------------------------------------------------------

    @property
    def baselines(self) -> BaselineMap:
        return self.resync.baselines

    def _change_for(self, symbol: str, price: float, native: float, timeframe: str) -> ChangeReading:
        return derive_change(symbol, price, native, timeframe, self.resync.baselines)

    def _on_baselines(self, baselines: BaselineMap) -> None:
        # Keep table display figures in step with the newly published map
        timeframe = self.timeframe
        self.table.update_all(lambda snap: apply_display_change(snap, timeframe, baselines))

    def display_change(self, symbol: str) -> Optional[ChangeReading]:
        """Change over the active window for one symbol; None if unknown."""
        snapshot = self.table.get(symbol)
        if snapshot is None:
            return None
        return derive_change(
            symbol, snapshot.price, snapshot.native_change_percent,
            self.timeframe, self.resync.baselines,
        )

    # ------------------------------------------------------------------
    # Render-layer access
    # ------------------------------------------------------------------

    def get_ticker(self, symbol: str) -> Optional[TickerSnapshot]:
        return self.table.get(symbol.strip().upper())

    def render_rows(self, limit: Optional[int] = None, sort: str = "volume") -> List[Dict[str, Any]]:
        """
        One row per known symbol with the change for the active window.

        sort: "gainers" | "losers" | "volume" | "favorites"
        """
        if sort not in SORT_MODES:
            raise ValueError(f"Unknown sort {sort!r}, expected one of {SORT_MODES}")

        timeframe = self.timeframe
        baselines = self.resync.baselines
        favorites = set(self._favorites)

        rows = []
        for snap in self.table.snapshots():
            reading = derive_change(
                snap.symbol, snap.price, snap.native_change_percent, timeframe, baselines,
            )
            rows.append({
                "symbol": snap.symbol,
                "price": snap.price,
                "volume": snap.volume,
                "change": reading.percent,
                "provisional": reading.provisional,
                "favorite": snap.symbol in favorites,
                "received_at": snap.received_at,
            })

        if sort == "gainers":
            rows.sort(key=_sort_key_change, reverse=True)
        elif sort == "losers":
            rows.sort(key=_sort_key_change)
        elif sort == "favorites":
            rows = [r for r in rows if r["favorite"]]
            rows.sort(key=lambda r: r["volume"], reverse=True)
        else:
            rows.sort(key=lambda r: r["volume"], reverse=True)

        if limit is not None:
            rows = rows[:limit]
        return rows

    def get_stats(self) -> Dict[str, Any]:
        return {
            "timeframe": self.timeframe,
            "symbols": len(self.table),
            "favorites": len(self._favorites),
            "stream": self.manager.get_stats(),
            "ingest": self.ingestor.stats.to_dict(),
            "ui": {
                "flushes": self.throttle.flush_count,
                "pending": self.throttle.pending_count,
                "mirrored": len(self.ui_state),
            },
            "baselines": self.resync.get_stats(),
        }
