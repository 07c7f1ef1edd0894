"""
Websocket connection manager for the Binance futures ticker stream.

One upstream socket per process, shared by every consumer. Consumers
subscribe a callback and get back a handle; the socket opens on the first
subscription and closes a few seconds after the last one leaves, so a
consumer that drops and immediately re-subscribes never causes a reconnect.

State machine:
    DISCONNECTED -> CONNECTING -> CONNECTED -> (error|close) -> DISCONNECTED
    CONNECTED -> CLOSING   when the subscriber count reaches zero
    CLOSING   -> CONNECTED when someone subscribes within the grace period
    CLOSING   -> DISCONNECTED once the grace period elapses

Unexpected closes reconnect after RECONNECT_DELAY for as long as at least one
subscriber remains. Errors are logged, never raised to subscribers.

All methods must be called from the event loop thread.
"""

import asyncio
import json
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import websockets

from nebula_stream.config import (
    BINANCE_FUTURES_WS,
    CLOSE_GRACE_PERIOD,
    PING_INTERVAL,
    RECONNECT_DELAY,
)

logger = logging.getLogger(__name__)

MessageCallback = Callable[[Any], None]


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


class Subscription:
    """Handle returned by StreamConnectionManager.subscribe()."""

    def __init__(self, manager: "StreamConnectionManager", callback: MessageCallback):
        self._manager = manager
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        self._manager.unsubscribe(self)

    def __repr__(self) -> str:
        return f"Subscription(callback={self.callback!r}, active={self.active})"


class StreamConnectionManager:
    """
    Reference-counted owner of the upstream websocket.

    Args:
        url:                Websocket URL (default: all-market futures tickers)
        connect:            Coroutine factory ``connect(url, ping_interval=...)``
                            returning a connection that supports ``async for``
                            and ``close()``. Defaults to websockets.connect.
        reconnect_delay:    Seconds to wait before reconnecting after a close
        close_grace_period: Seconds to keep an idle socket open
    """

    def __init__(
        self,
        url: str = BINANCE_FUTURES_WS,
        connect: Optional[Callable[..., Any]] = None,
        reconnect_delay: float = RECONNECT_DELAY,
        close_grace_period: float = CLOSE_GRACE_PERIOD,
        ping_interval: Optional[float] = PING_INTERVAL,
    ):
        self.url = url
        self._connect = connect or websockets.connect
        self.reconnect_delay = reconnect_delay
        self.close_grace_period = close_grace_period
        self.ping_interval = ping_interval

        self.state = ConnectionState.DISCONNECTED
        self._subscriptions: List[Subscription] = []
        self._ws: Optional[Any] = None
        self._connecting = False
        self._shutdown = False

        self._task: Optional[asyncio.Task] = None
        self._close_task: Optional[asyncio.Task] = None
        self._close_handle: Optional[asyncio.TimerHandle] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None

        self.message_count = 0
        self.malformed_count = 0
        self.connect_attempts = 0
        self.reconnect_count = 0
        self.last_message_time = 0.0

    # ------------------------------------------------------------------
    # Subscriber registry
    # ------------------------------------------------------------------

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, callback: MessageCallback) -> Subscription:
        """Register a callback for every decoded inbound message."""
        if not callable(callback):
            raise TypeError(f"callback must be callable, got {type(callback).__name__}")

        self._shutdown = False
        subscription = Subscription(self, callback)
        self._subscriptions.append(subscription)
        self._connect_global()
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        """Remove a subscription; the last one out starts the close timer."""
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        subscription.active = False

        if not self._subscriptions:
            self._schedule_close()

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    def _connect_global(self) -> None:
        """Open the socket unless one is open or already being opened."""
        self._cancel_close()
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

        if self._ws is not None:
            if self.state == ConnectionState.CLOSING:
                logger.info("Subscriber returned within grace period, keeping socket")
                self.state = ConnectionState.CONNECTED
            return

        if self._connecting or self._shutdown:
            return

        if not self._subscriptions:
            return

        self._connecting = True
        self.state = ConnectionState.CONNECTING
        loop = asyncio.get_running_loop()
        self._task = loop.create_task(self._run())

    async def _run(self) -> None:
        """One connection: open, pump messages until closed, then clean up."""
        self.connect_attempts += 1
        logger.info("Connecting to %s", self.url)
        try:
            ws = await self._connect(self.url, ping_interval=self.ping_interval)
        except asyncio.CancelledError:
            self._connecting = False
            self.state = ConnectionState.DISCONNECTED
            raise
        except Exception as e:
            logger.error("Websocket connect failed: %s", e)
            self._on_closed()
            return

        self._connecting = False
        self._ws = ws
        self.state = ConnectionState.CONNECTED
        logger.info("Websocket connected (%d subscribers)", len(self._subscriptions))

        if not self._subscriptions or self._shutdown:
            # Everyone left while the handshake was in flight
            self._schedule_close()

        try:
            async for message in ws:
                self._dispatch(message)
        except asyncio.CancelledError:
            raise
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning("Websocket closed: %s", e)
        except Exception as e:
            logger.error("Websocket error: %s", e, exc_info=True)
            await self._close_socket(ws)
        finally:
            if self._ws is ws:
                self._ws = None

        if asyncio.current_task() is not self._task:
            # A newer connection owns the manager state now
            logger.debug("Detached websocket finished closing")
            return

        logger.warning("Websocket connection ended")
        self._on_closed()

    def _on_closed(self) -> None:
        self._ws = None
        self._connecting = False
        self.state = ConnectionState.DISCONNECTED

        if self._subscriptions and not self._shutdown:
            self.reconnect_count += 1
            logger.info("Reconnecting in %.1fs", self.reconnect_delay)
            loop = asyncio.get_running_loop()
            self._reconnect_handle = loop.call_later(
                self.reconnect_delay, self._reconnect
            )

    def _reconnect(self) -> None:
        self._reconnect_handle = None
        self._connect_global()

    def _dispatch(self, message: Any) -> None:
        self.message_count += 1
        self.last_message_time = time.time()

        try:
            data = json.loads(message)
        except (json.JSONDecodeError, TypeError, ValueError) as e:
            self.malformed_count += 1
            logger.debug("Dropping undecodable frame: %s", e)
            return

        for subscription in list(self._subscriptions):
            try:
                subscription.callback(data)
            except Exception as e:
                logger.error("Subscriber callback failed: %s", e, exc_info=True)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _schedule_close(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

        if self._ws is None and not self._connecting:
            return

        self._cancel_close()
        if self._ws is not None:
            self.state = ConnectionState.CLOSING
        loop = asyncio.get_running_loop()
        self._close_handle = loop.call_later(self.close_grace_period, self._close_if_idle)

    def _cancel_close(self) -> None:
        if self._close_handle is not None:
            self._close_handle.cancel()
            self._close_handle = None

    def _close_if_idle(self) -> None:
        self._close_handle = None
        if self._subscriptions or self._ws is None:
            return
        logger.info("No subscribers, closing websocket")
        # Detach first so a subscriber arriving mid-close opens a fresh socket
        ws = self._ws
        self._ws = None
        self.state = ConnectionState.DISCONNECTED
        self._close_task = asyncio.get_running_loop().create_task(self._close_socket(ws))

    @staticmethod
    async def _close_socket(ws: Any) -> None:
        try:
            await ws.close()
        except Exception as e:
            logger.debug("Error closing websocket: %s", e)

    async def close(self) -> None:
        """Drop every subscriber and shut the socket down now."""
        self._shutdown = True
        for subscription in self._subscriptions:
            subscription.active = False
        self._subscriptions.clear()
        self._cancel_close()
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

        if self._ws is not None:
            await self._close_socket(self._ws)

        task = self._task
        if task is not None and not task.done():
            if self._connecting:
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._task = None
        self._ws = None
        self._connecting = False
        self.state = ConnectionState.DISCONNECTED

    def get_stats(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "subscribers": len(self._subscriptions),
            "messages": self.message_count,
            "malformed": self.malformed_count,
            "connect_attempts": self.connect_attempts,
            "reconnects": self.reconnect_count,
            "last_message": self.last_message_time,
        }


# ----------------------------------------------------------------------
# Process-wide singleton
# ----------------------------------------------------------------------

_manager: Optional[StreamConnectionManager] = None


def get_stream_manager(url: str = BINANCE_FUTURES_WS, **kwargs: Any) -> StreamConnectionManager:
    """Return the shared manager, creating it on first use."""
    global _manager
    if _manager is None:
        _manager = StreamConnectionManager(url, **kwargs)
    elif url != _manager.url:
        logger.warning(
            "Stream manager already bound to %s, ignoring %s", _manager.url, url
        )
    return _manager


def reset_stream_manager() -> None:
    """Forget the shared manager (it is not closed)."""
    global _manager
    _manager = None
