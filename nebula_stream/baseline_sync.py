"""
Baseline resynchronizer: window-start prices for every known symbol.

The ticker stream only reports change over 24h. For any other window we need
the price at the start of that window, per symbol. Binance klines give it
directly: the most recent kline at the window's interval has the window's
opening price at index 1.

    GET /fapi/v1/klines?symbol=BTCUSDT&interval=1h&limit=1
    → [[open_time, "64000.0", high, low, close, volume, ...]]

Rate budget: a full pass for ~300 symbols at 20 requests per chunk is 15
chunks with a 50ms pause between them. Binance futures allows 2400 weight/min
and a limit=1 kline costs 1 weight, so a pass every 5 minutes is well inside
the budget even with several processes running.

Failure policy: every per-symbol failure (HTTP status, network error,
timeout, bad payload) is logged at debug level and the symbol is simply
left out of the map. Each pass replaces the published map outright.
Nothing here raises to the caller.

Pass ordering: favorites first, so pinned symbols get their baselines first
when the map is published chunk by chunk.

Superseded passes: each window change bumps a generation counter and cancels
the running loop. A pass only publishes while its generation is current, so
a slow pass for an old window can never overwrite the map for a new one.
"""

import asyncio
import logging
import math
import time
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

import aiohttp

from nebula_stream.config import (
    BASELINE_CHUNK_DELAY,
    BASELINE_CHUNK_SIZE,
    BASELINE_REFRESH_INTERVAL,
    BASELINE_REQUEST_TIMEOUT,
    BINANCE_FAPI_BASE,
    COLD_START_MIN_SYMBOLS,
    COLD_START_RETRY_DELAY,
    KLINES_PATH,
)
from nebula_stream.timeframes import NATIVE_TIMEFRAME, is_native, to_kline_interval

logger = logging.getLogger(__name__)


def chunked(items: Sequence[Any], size: int) -> List[List[Any]]:
    """Split ``items`` into consecutive lists of at most ``size``."""
    if size <= 0:
        raise ValueError(f"chunk size must be positive, got {size}")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def order_symbols(symbols: Sequence[str], favorites: Optional[Sequence[str]] = None) -> List[str]:
    """Known favorites first (in favorites order), then the rest, no duplicates."""
    known = set(symbols)
    ordered: List[str] = []
    seen = set()
    for symbol in favorites or ():
        if symbol in known and symbol not in seen:
            ordered.append(symbol)
            seen.add(symbol)
    for symbol in symbols:
        if symbol not in seen:
            ordered.append(symbol)
            seen.add(symbol)
    return ordered


def parse_open_price(payload: Any) -> Optional[float]:
    """Opening price of the first kline in a klines payload, or None."""
    if not isinstance(payload, list) or not payload:
        return None
    kline = payload[0]
    if not isinstance(kline, (list, tuple)) or len(kline) < 2:
        return None
    try:
        price = float(kline[1])
    except (TypeError, ValueError):
        return None
    if not math.isfinite(price):
        return None
    return price


class BaselineMap(Mapping):
    """Read-only symbol -> baseline price map for one window and generation."""

    def __init__(self, prices: Optional[Dict[str, float]] = None,
                 timeframe: str = NATIVE_TIMEFRAME, generation: int = 0):
        self._prices: Dict[str, float] = dict(prices or {})
        self.timeframe = timeframe
        self.generation = generation
        self.created_at = time.time()

    def __getitem__(self, symbol: str) -> float:
        return self._prices[symbol]

    def __iter__(self) -> Iterator[str]:
        return iter(self._prices)

    def __len__(self) -> int:
        return len(self._prices)

    def as_dict(self) -> Dict[str, float]:
        return dict(self._prices)

    def __repr__(self) -> str:
        return (f"BaselineMap(timeframe={self.timeframe!r}, generation={self.generation}, "
                f"size={len(self._prices)})")


@dataclass
class BaselinePassStats:
    """Summary of the most recent fetch pass."""
    timeframe: str = ""
    interval: str = ""
    requested: int = 0
    resolved: int = 0
    failed: int = 0
    chunks: int = 0
    started_at: float = 0.0
    duration_s: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class BaselineFetcher:
    """
    Fetches window-opening prices from Binance futures klines.

    Args:
        session:         aiohttp session to use; one is created lazily if None
        base_url:        REST base URL
        chunk_size:      Concurrent requests per chunk
        chunk_delay:     Pause between chunks (seconds)
        request_timeout: Per-request timeout; expiry counts as "no baseline"
    """

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        base_url: str = BINANCE_FAPI_BASE,
        chunk_size: int = BASELINE_CHUNK_SIZE,
        chunk_delay: float = BASELINE_CHUNK_DELAY,
        request_timeout: float = BASELINE_REQUEST_TIMEOUT,
    ):
        self._session = session
        self._owns_session = session is None
        self.base_url = base_url.rstrip("/")
        self.chunk_size = chunk_size
        self.chunk_delay = chunk_delay
        self.request_timeout = request_timeout
        self.last_pass = BaselinePassStats()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.request_timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None

    async def fetch_open_price(self, symbol: str, interval: str) -> Optional[float]:
        """Open of the latest ``interval`` kline for ``symbol``, or None."""
        url = f"{self.base_url}{KLINES_PATH}"
        params = {"symbol": symbol, "interval": interval, "limit": "1"}
        session = self._get_session()
        try:
            async with session.get(url, params=params) as resp:
                if resp.status != 200:
                    if resp.status in (418, 429):
                        logger.warning("Baseline %s: rate limited (HTTP %d)", symbol, resp.status)
                    else:
                        logger.debug("Baseline %s: HTTP %d", symbol, resp.status)
                    return None
                payload = await resp.json()
        except aiohttp.ClientError as e:
            logger.debug("Baseline %s: request error %s", symbol, e)
            return None
        except ValueError as e:
            logger.debug("Baseline %s: bad payload %s", symbol, e)
            return None

        price = parse_open_price(payload)
        if price is None:
            logger.debug("Baseline %s: no usable kline in payload", symbol)
        return price

    async def _fetch_guarded(self, symbol: str, interval: str) -> Optional[float]:
        try:
            return await asyncio.wait_for(
                self.fetch_open_price(symbol, interval), timeout=self.request_timeout
            )
        except asyncio.TimeoutError:
            logger.debug("Baseline %s: timed out after %.1fs", symbol, self.request_timeout)
            return None

    async def fetch_baselines(
        self,
        symbols: Sequence[str],
        timeframe: str,
        on_chunk: Optional[Callable[[Dict[str, float]], None]] = None,
    ) -> Dict[str, float]:
        """
        Fetch baselines for ``symbols`` over ``timeframe``.

        Symbols are processed in order, ``chunk_size`` at a time, with the
        requests inside a chunk running concurrently. ``on_chunk`` receives a
        copy of the accumulated map after every chunk.

        Returns {} for the native window (no fetch needed) and for windows
        with no kline interval.
        """
        if is_native(timeframe):
            return {}

        interval = to_kline_interval(timeframe)
        if interval is None:
            logger.warning("Unsupported timeframe %r, skipping baseline fetch", timeframe)
            return {}

        chunks = chunked(list(symbols), self.chunk_size)
        stats = BaselinePassStats(
            timeframe=timeframe,
            interval=interval,
            requested=len(symbols),
            chunks=len(chunks),
            started_at=time.time(),
        )
        baselines: Dict[str, float] = {}

        for index, chunk in enumerate(chunks):
            if index > 0:
                await asyncio.sleep(self.chunk_delay)

            results = await asyncio.gather(
                *(self._fetch_guarded(symbol, interval) for symbol in chunk),
                return_exceptions=True,
            )

            for symbol, result in zip(chunk, results):
                if isinstance(result, BaseException):
                    logger.warning("Baseline %s: unexpected error %s", symbol, result)
                    stats.failed += 1
                elif result is None:
                    stats.failed += 1
                else:
                    baselines[symbol] = result
                    stats.resolved += 1

            if on_chunk is not None:
                on_chunk(dict(baselines))

        stats.duration_s = round(time.time() - stats.started_at, 3)
        self.last_pass = stats
        if stats.failed:
            logger.info(
                "Baseline pass %s: %d/%d resolved, %d failed in %.1fs",
                timeframe, stats.resolved, stats.requested, stats.failed, stats.duration_s,
            )
        return baselines


class BaselineResynchronizer:
    """
    Keeps the published BaselineMap in step with the active window.

    Args:
        fetcher:                BaselineFetcher
        symbols_getter:         Returns the currently known symbols
        favorites_getter:       Returns pinned symbols to fetch first
        refresh_interval:       Seconds between passes while a non-native
                                window stays selected
        cold_start_min_symbols: Fewer known symbols than this means the
                                stream has not delivered yet; wait and retry
        cold_start_retry_delay: Seconds between cold-start re-checks
    """

    def __init__(
        self,
        fetcher: BaselineFetcher,
        symbols_getter: Callable[[], List[str]],
        favorites_getter: Optional[Callable[[], List[str]]] = None,
        refresh_interval: float = BASELINE_REFRESH_INTERVAL,
        cold_start_min_symbols: int = COLD_START_MIN_SYMBOLS,
        cold_start_retry_delay: float = COLD_START_RETRY_DELAY,
    ):
        self.fetcher = fetcher
        self._get_symbols = symbols_getter
        self._get_favorites = favorites_getter or (lambda: [])
        self.refresh_interval = refresh_interval
        self.cold_start_min_symbols = cold_start_min_symbols
        self.cold_start_retry_delay = cold_start_retry_delay

        self.timeframe = NATIVE_TIMEFRAME
        self.generation = 0
        self.pass_count = 0
        self.discarded_passes = 0
        self._baselines = BaselineMap()
        self._subscribers: List[Callable[[BaselineMap], None]] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def baselines(self) -> BaselineMap:
        return self._baselines

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, callback: Callable[[BaselineMap], None]) -> Callable[[], None]:
        """Be told whenever the published map is replaced."""
        self._subscribers.append(callback)

        def _unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return _unsubscribe

    def _publish(self, baselines: BaselineMap) -> None:
        self._baselines = baselines
        for callback in list(self._subscribers):
            try:
                callback(baselines)
            except Exception as e:
                logger.error("Baseline subscriber failed: %s", e, exc_info=True)

    def on_timeframe_change(self, timeframe: str) -> None:
        """Start over for a new window; the fetch loop needs a running event loop."""
        self.generation += 1
        self.timeframe = timeframe
        self._cancel_task()

        # Baselines for the previous window are meaningless now
        self._publish(BaselineMap({}, timeframe, self.generation))

        if is_native(timeframe):
            logger.info("Timeframe %s uses stream values, baselines cleared", timeframe)
            return

        if to_kline_interval(timeframe) is None:
            logger.warning("Unsupported timeframe %r, no baselines will be fetched", timeframe)
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Selected before the loop started; start() launches the pass
            logger.info("Timeframe %s recorded, sync starts with the event loop", timeframe)
            return
        self._task = loop.create_task(self._run(timeframe, self.generation))

    async def _run(self, timeframe: str, generation: int) -> None:
        first_pass = True
        while generation == self.generation:
            try:
                await self.sync_once(timeframe, generation, progressive=first_pass)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Baseline sync for %s failed: %s", timeframe, e, exc_info=True)
            first_pass = False
            await asyncio.sleep(self.refresh_interval)

    async def _wait_for_symbols(self, generation: int) -> Optional[List[str]]:
        while True:
            symbols = self._get_symbols()
            if len(symbols) >= self.cold_start_min_symbols:
                return symbols
            if generation != self.generation:
                return None
            logger.info(
                "Only %d symbols known, deferring baseline sync by %.1fs",
                len(symbols), self.cold_start_retry_delay,
            )
            await asyncio.sleep(self.cold_start_retry_delay)

    async def sync_once(
        self,
        timeframe: Optional[str] = None,
        generation: Optional[int] = None,
        progressive: bool = False,
    ) -> Optional[BaselineMap]:
        """
        Run one full pass and publish the result.

        With ``progressive`` the map is also published after every chunk.
        Returns the published map, or None if the pass was superseded.
        """
        timeframe = self.timeframe if timeframe is None else timeframe
        generation = self.generation if generation is None else generation

        symbols = await self._wait_for_symbols(generation)
        if symbols is None:
            return None

        ordered = order_symbols(symbols, self._get_favorites())
        logger.info("Fetching baselines for %d symbols on %s", len(ordered), timeframe)

        on_chunk = None
        if progressive:
            def on_chunk(partial: Dict[str, float]) -> None:
                if generation == self.generation:
                    self._publish(BaselineMap(partial, timeframe, generation))

        prices = await self.fetcher.fetch_baselines(ordered, timeframe, on_chunk=on_chunk)

        if generation != self.generation:
            self.discarded_passes += 1
            logger.info("Discarding baseline pass for %s (superseded)", timeframe)
            return None

        self.pass_count += 1
        result = BaselineMap(prices, timeframe, generation)
        self._publish(result)
        logger.info("Updated %d baselines for %s", len(result), timeframe)
        return result

    def _cancel_task(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def stop(self) -> None:
        task = self._task
        self._task = None
        self.generation += 1
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def get_stats(self) -> Dict[str, Any]:
        return {
            "timeframe": self.timeframe,
            "generation": self.generation,
            "baselines": len(self._baselines),
            "passes": self.pass_count,
            "discarded_passes": self.discarded_passes,
            "running": self.running,
            "last_pass": self.fetcher.last_pass.to_dict(),
        }
