# tests/conftest.py
import asyncio
import os
import sys
from typing import Dict, Iterable, List, Optional

import aiohttp
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from nebula_stream import ws_connectors  # noqa: E402

# Captured before any test monkeypatches asyncio.sleep
_real_sleep = asyncio.sleep

_CLOSE = object()


def make_ticker(symbol: str = "BTCUSDT", price: str = "65000.5", volume: str = "5000000",
                change: str = "2.3", event_time: int = 1690000000000) -> dict:
    """Raw !ticker@arr record as Binance sends it."""
    return {"e": "24hrTicker", "E": event_time, "s": symbol,
            "c": price, "q": volume, "P": change}


async def wait_until(predicate, timeout: float = 1.0, interval: float = 0.005) -> bool:
    """Poll ``predicate`` until true or the timeout elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await _real_sleep(interval)
    return predicate()


class FakeWebSocket:
    """Stands in for a websockets connection: async-iterable with close()."""

    def __init__(self, close_delay: float = 0.0):
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.close_calls = 0
        self.close_delay = close_delay

    def feed(self, message) -> None:
        self._queue.put_nowait(message)

    def fail(self, exc: Exception) -> None:
        self._queue.put_nowait(exc)

    def server_close(self) -> None:
        self._queue.put_nowait(_CLOSE)

    async def close(self) -> None:
        self.close_calls += 1
        if self.close_delay:
            await _real_sleep(self.close_delay)
        self.closed = True
        self._queue.put_nowait(_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._queue.get()
        if item is _CLOSE:
            self.closed = True
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item


class FakeConnector:
    """Replacement for websockets.connect that records every attempt."""

    def __init__(self, fail_times: int = 0, close_delay: float = 0.0):
        self.calls: List[str] = []
        self.sockets: List[FakeWebSocket] = []
        self.fail_times = fail_times
        self.close_delay = close_delay
        self.gate: Optional[asyncio.Event] = None

    async def __call__(self, url: str, ping_interval=None):
        self.calls.append(url)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_times > 0:
            self.fail_times -= 1
            raise OSError("connection refused")
        ws = FakeWebSocket(self.close_delay)
        self.sockets.append(ws)
        return ws

    @property
    def latest(self) -> FakeWebSocket:
        return self.sockets[-1]


class ManualClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeResponse:
    def __init__(self, status: int, payload, json_error: Optional[Exception] = None):
        self.status = status
        self._payload = payload
        self._json_error = json_error

    async def json(self):
        await _real_sleep(0)
        if self._json_error is not None:
            raise self._json_error
        return self._payload


class _RequestContext:
    def __init__(self, session: "FakeKlineSession", symbol: str):
        self.session = session
        self.symbol = symbol

    async def __aenter__(self):
        session = self.session
        if session.in_flight == 0:
            session.phases += 1
        session.in_flight += 1
        session.max_in_flight = max(session.max_in_flight, session.in_flight)
        try:
            await _real_sleep(session.delay)
            if self.symbol in session.hang:
                await _real_sleep(3600)
            if self.symbol in session.errors:
                raise session.errors[self.symbol]
        except BaseException:
            session.in_flight -= 1
            raise

        status = session.statuses.get(self.symbol, 200)
        if self.symbol in session.bad_payloads:
            return FakeResponse(status, session.bad_payloads[self.symbol])
        price = session.prices.get(self.symbol, session.default_price)
        return FakeResponse(status, [[1700000000000, str(price), "0", "0", "0", "0"]])

    async def __aexit__(self, *args):
        self.session.in_flight -= 1
        return None


class FakeKlineSession:
    """
    Minimal aiohttp.ClientSession stand-in serving /klines responses.

    Tracks how many requests are in flight so tests can count chunk phases.
    """

    def __init__(self, prices: Optional[Dict[str, float]] = None,
                 statuses: Optional[Dict[str, int]] = None,
                 errors: Optional[Dict[str, Exception]] = None,
                 bad_payloads: Optional[Dict[str, object]] = None,
                 hang: Iterable[str] = (), delay: float = 0.0,
                 default_price: float = 100.0):
        self.prices = prices or {}
        self.statuses = statuses or {}
        self.errors = errors or {}
        self.bad_payloads = bad_payloads or {}
        self.hang = set(hang)
        self.delay = delay
        self.default_price = default_price
        self.requests: List[tuple] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.phases = 0
        self.closed = False

    def get(self, url, params=None):
        self.requests.append((url, dict(params or {})))
        return _RequestContext(self, (params or {}).get("symbol"))

    async def close(self):
        self.closed = True

    @property
    def requested_symbols(self) -> List[str]:
        return [params["symbol"] for _, params in self.requests]


@pytest.fixture(autouse=True)
def reset_singleton():
    """Each test gets a fresh process-wide stream manager."""
    ws_connectors.reset_stream_manager()
    yield
    ws_connectors.reset_stream_manager()


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def client_error():
    return aiohttp.ClientConnectionError("connection reset")
