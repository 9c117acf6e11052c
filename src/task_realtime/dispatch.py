"""
Listener Dispatch Table

Maps event types (and the ``*`` wildcard) to ordered callback registrations
on the receiving side. Dispatch is synchronous; each callback failure is
caught and logged on its own so sibling callbacks still run.
"""

import logging
from typing import Callable, Dict, List, Optional

from .models import Event

logger = logging.getLogger(__name__)

WILDCARD = "*"

Listener = Callable[[Event], None]
Unsubscribe = Callable[[], None]


class _Registration:
    """One subscribe() call. Identity, not the callback, is what unsubscribe removes."""
    __slots__ = ("event_type", "callback", "active")

    def __init__(self, event_type: str, callback: Listener):
        self.event_type = event_type
        self.callback = callback
        self.active = True


class ListenerDispatchTable:
    """
    Per-event-type listener lists with wildcard support.

    Invocation order for an event is the type-specific listeners followed by
    the wildcard listeners, each in subscription order.
    """

    def __init__(self):
        self._listeners: Dict[str, List[_Registration]] = {}

    def subscribe(self, event_type: str, callback: Listener) -> Unsubscribe:
        """
        Register a callback for an event type, or ``*`` for every event.

        Returns:
            Function removing exactly this registration; extra calls are no-ops
        """
        registration = _Registration(event_type, callback)
        self._listeners.setdefault(event_type, []).append(registration)

        def unsubscribe():
            if not registration.active:
                return
            registration.active = False
            listeners = self._listeners.get(event_type)
            if listeners is None:
                return
            for index, candidate in enumerate(listeners):
                if candidate is registration:
                    del listeners[index]
                    break
            if not listeners:
                del self._listeners[event_type]

        return unsubscribe

    def dispatch(self, event: Event) -> int:
        """
        Invoke every listener matching the event.

        Listeners are snapshotted before the first call, so subscribing or
        unsubscribing from inside a callback affects only later dispatches.

        Returns:
            Number of callbacks that completed without raising
        """
        specific = list(self._listeners.get(event.type, ()))
        wildcard = list(self._listeners.get(WILDCARD, ())) if event.type != WILDCARD else []

        completed = 0
        for registration in specific + wildcard:
            try:
                registration.callback(event)
                completed += 1
            except Exception:
                logger.exception(f"Error in listener for {event.type} message")
        return completed

    def listener_count(self, event_type: Optional[str] = None) -> int:
        if event_type is not None:
            return len(self._listeners.get(event_type, ()))
        return sum(len(listeners) for listeners in self._listeners.values())

    def clear(self):
        for listeners in self._listeners.values():
            for registration in listeners:
                registration.active = False
        self._listeners.clear()
