"""
Broadcast Router

Fans a published event out to every registered connection whose scope
matches, stamping a server timestamp and serializing once per publish.
Delivery is best-effort: a failed send to one connection never stops the
rest of the fan-out and never raises out of publish. Failed connections are
cleaned up by their own close path, not here.

Also applies the inbound policy to frames that clients send over their own
connection before anything is rebroadcast.
"""

import asyncio
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from .config import InboundPolicy
from .exceptions import PublishRejected
from .models import SERVER_ONLY_TYPES, ConnectionEstablishedPayload, Event, EventType, utc_timestamp
from .monitoring import PerformanceMonitor
from .registry import Connection, ConnectionRegistry

logger = logging.getLogger(__name__)


class TimestampClock:
    """Issues UTC timestamps that never go backwards between calls."""

    def __init__(self, now: Optional[Callable[[], datetime]] = None):
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()

    def stamp(self) -> str:
        with self._lock:
            moment = self._now()
            if self._last is not None and moment < self._last:
                moment = self._last
            self._last = moment
        return utc_timestamp(moment)


class BroadcastRouter:
    """
    Scoped fan-out of events to registered connections.

    Features:
    - Server-assigned timestamps overwrite anything the producer supplied
    - One serialization per publish, identical frame to every target
    - Parallel sends with asyncio.gather and per-target error isolation
    - Inbound client frames checked against the configured InboundPolicy
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        monitor: Optional[PerformanceMonitor] = None,
        inbound_policy: InboundPolicy = InboundPolicy.SCOPED,
        clock: Optional[TimestampClock] = None,
    ):
        self.registry = registry
        self.monitor = monitor or PerformanceMonitor()
        self.inbound_policy = inbound_policy
        self.clock = clock or TimestampClock()

    async def publish(self, event: Event) -> int:
        """
        Broadcast an event to every matching connection.

        Args:
            event: Event to publish; any timestamp it carries is replaced

        Returns:
            Number of connections the frame was delivered to

        Raises:
            PublishRejected: For types only the server may emit
        """
        if event.type in SERVER_ONLY_TYPES:
            raise PublishRejected(f"{event.type} is sent only to a newly connected client", event.type)

        stamped = event.stamped(self.clock.stamp())
        self.monitor.increment_daily_stat("events_published")

        targets = self.registry.matching(stamped.organization_id)
        if not targets:
            logger.debug(f"No matching connections for {stamped.type} (org: {stamped.organization_id})")
            return 0

        message = stamped.to_wire()

        start_time = time.perf_counter()
        results = await asyncio.gather(
            *(self._send_safe(connection, message) for connection in targets),
            return_exceptions=True,
        )
        duration_ms = (time.perf_counter() - start_time) * 1000

        successful = sum(1 for result in results if result is True)
        failed = len(targets) - successful
        if failed:
            self.monitor.increment_daily_stat("send_failures", failed)
        self.monitor.record_broadcast_time(len(targets), duration_ms)

        logger.info(
            f"Broadcast {stamped.type} (org: {stamped.organization_id}): "
            f"{successful}/{len(targets)} successful"
        )
        return successful

    async def send_welcome(self, connection: Connection) -> bool:
        """Send the connection_established frame to a newly registered client."""
        event = Event.build(
            EventType.CONNECTION_ESTABLISHED,
            ConnectionEstablishedPayload(
                user_id=connection.user_id,
                organization_id=connection.organization_id,
            ),
        ).stamped(self.clock.stamp())
        return await self._send_safe(connection, event.to_wire())

    def authorize_inbound(self, connection: Connection, event: Event) -> Event:
        """
        Apply the inbound policy to a client-originated event.

        Returns:
            The event to publish, possibly re-scoped to the sender

        Raises:
            PublishRejected: If the sender may not publish this event
        """
        if event.type in SERVER_ONLY_TYPES:
            raise PublishRejected(f"Clients cannot publish {event.type}", event.type)

        if self.inbound_policy is InboundPolicy.VERBATIM:
            return event

        if self.inbound_policy is InboundPolicy.DISABLED:
            raise PublishRejected("Client-originated publishing is disabled", event.type)

        if connection.organization_id is None:
            raise PublishRejected(
                f"User {connection.user_id} has no organization scope to publish into", event.type
            )
        if event.organization_id is not None and event.organization_id != connection.organization_id:
            raise PublishRejected(
                f"User {connection.user_id} cannot publish into organization {event.organization_id}",
                event.type,
            )
        return event.model_copy(update={
            "organization_id": connection.organization_id,
            "user_id": connection.user_id,
        })

    async def handle_inbound(self, connection: Connection, raw: str) -> bool:
        """
        Handle a frame received from a client connection.

        Malformed frames and policy rejections are logged and dropped; the
        connection stays open either way.

        Returns:
            True if the frame was published
        """
        try:
            event = Event.from_wire(raw, trust_timestamp=False)
            event.typed_payload()
        except ValueError as e:
            logger.warning(f"Dropping malformed frame from {connection.user_id}: {e}")
            self.monitor.increment_daily_stat("malformed_frames")
            return False

        try:
            event = self.authorize_inbound(connection, event)
        except PublishRejected as e:
            logger.warning(f"Rejected inbound {e.event_type} frame: {e}")
            self.monitor.increment_daily_stat("inbound_rejected")
            return False

        logger.debug(f"Received {event.type} from {connection.user_id}")
        await self.publish(event)
        return True

    async def _send_safe(self, connection: Connection, message: str) -> bool:
        """
        Send a text frame to one connection without raising.

        Returns:
            True if successful, False if the send failed
        """
        try:
            await connection.websocket.send_text(message)
            return True
        except Exception as e:
            logger.warning(f"Failed to send message to {connection.user_id} ({connection.handle}): {e}")
            return False
