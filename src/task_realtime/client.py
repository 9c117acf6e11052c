"""
Client Connection Manager

Owns a single outbound WebSocket connection to the realtime service,
reconnects with exponential backoff, and exposes publish/subscribe to the
rest of the application through a ListenerDispatchTable.

Reconnection is an explicit state machine:

    IDLE -> CONNECTING -> OPEN -> CLOSED -> CONNECTING -> ...
                                  CLOSED -> FAILED        (attempts exhausted)
    any  -> DISCONNECTED                                  (disconnect())

Every transport close funnels through one transition (``_handle_close``)
and at most one reconnect timer handle exists at a time. Each transport
carries a generation number so callbacks from a transport that has been
replaced or disconnected are ignored.

The application's composition root owns the instance; there is no
process-wide singleton.
"""

import asyncio
import logging
import os
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set, Union
from urllib.parse import urlencode

import websockets

from .config import RealtimeSettings, ReconnectConfig, default_client_url
from .dispatch import Listener, ListenerDispatchTable, Unsubscribe
from .models import Event, utc_timestamp

logger = logging.getLogger(__name__)

Scheduler = Callable[[float, Callable[[], None]], Any]


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    FAILED = "failed"
    DISCONNECTED = "disconnected"


class ConnectionSignals:
    """
    User-visible advisory signals raised by the connection manager.

    The default implementation only logs; UI layers subclass it to show
    notifications. None of these signals are fatal to the application.
    """

    def connected(self):
        logger.info("Connected to real-time updates")

    def transient_error(self, error: Exception):
        logger.warning(f"Real-time connection error: {error}")

    def failed_permanently(self):
        logger.error("Failed to establish real-time connection")


def _call_later(delay: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
    return asyncio.get_running_loop().call_later(delay, callback)


class ClientConnectionManager:
    """
    Reconnecting WebSocket client with typed publish/subscribe.

    Args:
        url: Service endpoint; defaults to the environment-selected URL
        reconnect: Backoff settings (max_attempts, base_delay_ms)
        connector: Callable returning an async context manager for a
            connection, defaults to ``websockets.connect``
        scheduler: ``scheduler(delay_seconds, callback)`` returning a handle
            with ``cancel()``, defaults to ``loop.call_later``
        signals: Advisory signal sink
        dispatch_table: Listener table, a fresh one by default
    """

    def __init__(
        self,
        url: Optional[str] = None,
        reconnect: Optional[ReconnectConfig] = None,
        connector: Optional[Callable[[str], Any]] = None,
        scheduler: Optional[Scheduler] = None,
        signals: Optional[ConnectionSignals] = None,
        dispatch_table: Optional[ListenerDispatchTable] = None,
    ):
        if url is None:
            environment = os.getenv("REALTIME_ENV") or os.getenv("NODE_ENV") or "development"
            url = os.getenv("REALTIME_WS_URL") or default_client_url(environment)
        self.url = url
        self.reconnect = reconnect or ReconnectConfig()
        self._connector = connector or websockets.connect
        self._scheduler = scheduler or _call_later
        self.signals = signals or ConnectionSignals()
        self.listeners = dispatch_table or ListenerDispatchTable()

        self.attempts = 0
        self.last_delay_ms: Optional[int] = None
        self._state = ConnectionState.IDLE
        self._generation = 0
        self._ws: Any = None
        self._transport_task: Optional[asyncio.Task] = None
        self._reconnect_handle: Any = None
        self._pending_sends: Set[asyncio.Task] = set()
        self._user_id: Optional[str] = None
        self._organization_id: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: RealtimeSettings, **kwargs) -> "ClientConnectionManager":
        return cls(url=settings.client_url, reconnect=settings.reconnect, **kwargs)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.OPEN

    @property
    def user_id(self) -> Optional[str]:
        """User id passed to the most recent connect()."""
        return self._user_id

    @property
    def has_pending_reconnect(self) -> bool:
        return self._reconnect_handle is not None

    def get_connection_state(self) -> Dict[str, Any]:
        return {
            "is_connected": self.is_connected,
            "state": self._state.value,
            "attempts": self.attempts,
        }

    def connection_url(self) -> str:
        params = {"userId": self._user_id}
        if self._organization_id:
            params["organizationId"] = self._organization_id
        return f"{self.url}?{urlencode(params)}"

    # Public API

    def connect(self, user_id: str, organization_id: Optional[str] = None):
        """
        Start connecting. No-op while a transport is connecting or open.

        An explicit call from IDLE, FAILED or DISCONNECTED starts a fresh
        backoff cycle; a call while a reconnect is pending connects now.
        Must be called from a running event loop.
        """
        if self._state in (ConnectionState.CONNECTING, ConnectionState.OPEN):
            logger.debug(f"connect() ignored, already {self._state.value}")
            return

        if self._state in (ConnectionState.IDLE, ConnectionState.FAILED, ConnectionState.DISCONNECTED):
            self.attempts = 0

        self._cancel_reconnect()
        self._user_id = user_id
        self._organization_id = organization_id
        self._open_transport()

    def disconnect(self):
        """
        Close the transport and stop reconnecting.

        A reconnect timer that is already pending is cancelled, and the
        DISCONNECTED state gates it should it fire anyway.
        """
        self._cancel_reconnect()
        self._state = ConnectionState.DISCONNECTED
        self._generation += 1
        self._ws = None

        task, self._transport_task = self._transport_task, None
        if task is not None and not task.done():
            task.cancel()
        logger.info("WebSocket disconnected by client")

    async def close(self):
        """disconnect() and wait for the transport task to finish."""
        task = self._transport_task
        self.disconnect()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def send(self, message: Union[Event, Dict[str, Any]]) -> bool:
        """
        Send an event without blocking. Never raises and never queues.

        Returns:
            True if the frame was handed to the open transport, False if it
            was dropped because the connection is not open or the message is
            not a valid event
        """
        if self._state is not ConnectionState.OPEN or self._ws is None:
            if isinstance(message, dict):
                message_type = message.get("type")
            else:
                message_type = getattr(message, "type", None)
            logger.warning(f"WebSocket not connected, cannot send message: {message_type}")
            return False

        try:
            event = message if isinstance(message, Event) else Event.model_validate(message)
            frame = event.stamped(utc_timestamp()).to_wire()
        except ValueError as e:
            logger.warning(f"Dropping invalid outbound message: {e}")
            return False

        task = asyncio.get_running_loop().create_task(self._ws.send(frame))
        self._pending_sends.add(task)
        task.add_done_callback(self._send_done)
        return True

    def subscribe(self, event_type: str, callback: Listener) -> Unsubscribe:
        return self.listeners.subscribe(event_type, callback)

    # Transitions

    def _open_transport(self):
        self._generation += 1
        generation = self._generation
        self._state = ConnectionState.CONNECTING
        url = self.connection_url()
        self._transport_task = asyncio.get_running_loop().create_task(
            self._run_transport(url, generation)
        )

    async def _run_transport(self, url: str, generation: int):
        try:
            async with self._connector(url) as ws:
                if generation != self._generation:
                    return
                self._ws = ws
                self._handle_open(generation)
                async for raw in ws:
                    self._handle_message(raw)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._handle_error(generation, e)
        finally:
            self._handle_close(generation)

    def _handle_open(self, generation: int):
        if generation != self._generation:
            return
        self.attempts = 0
        self._state = ConnectionState.OPEN
        logger.info("WebSocket connected")
        self.signals.connected()

    def _handle_message(self, raw: Union[str, bytes]):
        try:
            event = Event.from_wire(raw)
        except ValueError as e:
            logger.warning(f"Failed to parse WebSocket message: {e}")
            return
        self.listeners.dispatch(event)

    def _handle_error(self, generation: int, error: Exception):
        if generation != self._generation or self._state is ConnectionState.DISCONNECTED:
            return
        logger.error(f"WebSocket error: {error}")
        self.signals.transient_error(error)

    def _handle_close(self, generation: int):
        if generation != self._generation:
            return
        self._ws = None
        self._transport_task = None
        if self._state is ConnectionState.DISCONNECTED:
            return
        self._state = ConnectionState.CLOSED
        logger.info("WebSocket closed")
        self._schedule_reconnect()

    def _schedule_reconnect(self):
        if self._reconnect_handle is not None:
            return

        if self.attempts >= self.reconnect.max_attempts:
            self._state = ConnectionState.FAILED
            logger.error(f"Giving up after {self.attempts} reconnect attempts")
            self.signals.failed_permanently()
            return

        self.attempts += 1
        delay_ms = self.reconnect.delay_ms(self.attempts)
        self.last_delay_ms = delay_ms
        generation = self._generation
        logger.info(f"Reconnecting in {delay_ms}ms (attempt {self.attempts}/{self.reconnect.max_attempts})")
        self._reconnect_handle = self._scheduler(
            delay_ms / 1000, lambda: self._fire_reconnect(generation)
        )

    def _fire_reconnect(self, generation: int):
        self._reconnect_handle = None
        if self._state is not ConnectionState.CLOSED or generation != self._generation:
            return
        logger.info(f"Reconnecting WebSocket (attempt {self.attempts})...")
        self._open_transport()

    def _cancel_reconnect(self):
        handle, self._reconnect_handle = self._reconnect_handle, None
        if handle is not None:
            handle.cancel()

    def _send_done(self, task: asyncio.Task):
        self._pending_sends.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Failed to send WebSocket message: {error}")
