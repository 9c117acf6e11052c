"""
Connection Registry

Tracks live WebSocket connections keyed by an opaque handle, each tagged with
the verified user id and optional organization scope taken from the
handshake. Shared by every connection handler and the background producer.

All methods are synchronous and guarded by one thread lock. The lock covers
only dictionary updates and snapshots, never a send, so cleanup from a
``finally`` block still runs while the handler task is being cancelled.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from .exceptions import ConnectionLimitReached

logger = logging.getLogger(__name__)


@dataclass
class Connection:
    """A live client connection and the identity/scope it was opened with."""
    handle: str
    websocket: Any
    user_id: str
    organization_id: Optional[str] = None
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def matches(self, organization_id: Optional[str]) -> bool:
        """Scoped broadcasts match equal scopes; unscoped ones match everyone."""
        if organization_id is None:
            return True
        return self.organization_id == organization_id


class ConnectionRegistry:
    """
    Registry of live connections with scope-based lookup.

    Features:
    - Opaque handles returned from register, used for unregister
    - Double registration of the same websocket returns the original handle
    - Idempotent unregister so close and error paths can both call it
    - Snapshot lookups so sends happen outside the lock
    """

    def __init__(self):
        self._connections: Dict[str, Connection] = {}
        self._handles_by_socket: Dict[int, str] = {}
        self._lock = threading.Lock()

    def register(self, websocket: Any, user_id: str,
                 organization_id: Optional[str] = None,
                 limit: Optional[int] = None) -> str:
        """
        Register a connection after a successful handshake.

        Args:
            websocket: Transport handle used for sends
            user_id: Verified user id
            organization_id: Organization scope, None for unscoped clients
            limit: Maximum number of live connections, checked under the lock

        Returns:
            Opaque handle identifying this registration

        Raises:
            ConnectionLimitReached: If the registry already holds ``limit``
                connections
        """
        with self._lock:
            existing = self._handles_by_socket.get(id(websocket))
            if existing is not None and existing in self._connections:
                logger.warning(f"Connection for user {user_id} already registered as {existing}")
                return existing

            if limit is not None and len(self._connections) >= limit:
                raise ConnectionLimitReached(f"Connection limit {limit} reached")

            handle = uuid.uuid4().hex
            self._connections[handle] = Connection(
                handle=handle,
                websocket=websocket,
                user_id=user_id,
                organization_id=organization_id,
            )
            self._handles_by_socket[id(websocket)] = handle
            total = len(self._connections)

        logger.info(f"Client connected: {user_id} (org: {organization_id}). Total connections: {total}")
        return handle

    def unregister(self, handle: str) -> Optional[Connection]:
        """
        Remove a connection. Safe to call more than once for the same handle.

        Returns:
            The removed Connection, or None if it was already gone
        """
        with self._lock:
            connection = self._connections.pop(handle, None)
            if connection is None:
                return None
            if self._handles_by_socket.get(id(connection.websocket)) == handle:
                del self._handles_by_socket[id(connection.websocket)]
            total = len(self._connections)

        logger.info(f"Client disconnected: {connection.user_id}. Total connections: {total}")
        return connection

    def matching(self, organization_id: Optional[str] = None) -> List[Connection]:
        """
        Snapshot of connections that should receive a broadcast.

        Args:
            organization_id: Broadcast scope, None to match every connection
        """
        with self._lock:
            return [c for c in self._connections.values() if c.matches(organization_id)]

    def for_each_matching(self, organization_id: Optional[str] = None) -> Iterator[Connection]:
        """Iterate over a snapshot of matching connections."""
        return iter(self.matching(organization_id))

    def get(self, handle: str) -> Optional[Connection]:
        with self._lock:
            return self._connections.get(handle)

    def get_connection_count(self) -> int:
        """Get current number of registered connections."""
        with self._lock:
            return len(self._connections)

    def get_connection_stats(self) -> Dict[str, Any]:
        """Connection counts per organization and distinct users."""
        with self._lock:
            connections = list(self._connections.values())
        by_org: Dict[str, int] = {}
        for connection in connections:
            key = connection.organization_id or "unscoped"
            by_org[key] = by_org.get(key, 0) + 1
        return {
            "active_connections": len(connections),
            "distinct_users": len({c.user_id for c in connections}),
            "by_organization": by_org,
        }
