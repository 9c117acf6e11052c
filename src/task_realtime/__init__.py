"""
Task Realtime - organization-scoped update distribution for task management.

Server side: connection registry, broadcast router, event producer and the
FastAPI WebSocket surface. Client side: reconnecting connection manager and
listener dispatch table.
"""

from .models import Event, EventType
from .registry import Connection, ConnectionRegistry
from .router import BroadcastRouter
from .producer import EventProducer, TaskSimulator
from .dispatch import ListenerDispatchTable, WILDCARD
from .client import ClientConnectionManager, ConnectionState
from .task_list import RealTimeTaskList, TaskFilter

__version__ = "1.0.0"

__all__ = [
    "Event",
    "EventType",
    "Connection",
    "ConnectionRegistry",
    "BroadcastRouter",
    "EventProducer",
    "TaskSimulator",
    "ListenerDispatchTable",
    "WILDCARD",
    "ClientConnectionManager",
    "ConnectionState",
    "RealTimeTaskList",
    "TaskFilter",
]
