"""
Typed subscription helpers for application code.

Thin wrappers over ClientConnectionManager.subscribe for the common feeds:
task changes, comments on one task, notifications and room presence.
"""

from typing import Any, Callable, Dict, List, Optional

from .client import ClientConnectionManager
from .dispatch import Unsubscribe
from .models import Event, EventType, PresencePayload

TASK_ACTIONS = {
    EventType.TASK_CREATED.value: "created",
    EventType.TASK_UPDATED.value: "updated",
    EventType.TASK_DELETED.value: "deleted",
}


def _combine(unsubscribers: List[Unsubscribe]) -> Unsubscribe:
    def unsubscribe_all():
        for unsubscribe in unsubscribers:
            unsubscribe()
    return unsubscribe_all


def subscribe_task_changes(client: ClientConnectionManager,
                           callback: Callable[[Dict[str, Any]], None]) -> Unsubscribe:
    """
    Deliver task_created/updated/deleted payloads with ``_action`` set.

    Returns:
        One function removing all three subscriptions
    """
    def make_listener(action: str):
        def listener(event: Event):
            payload = dict(event.payload or {})
            payload["_action"] = action
            callback(payload)
        return listener

    return _combine([
        client.subscribe(event_type, make_listener(action))
        for event_type, action in TASK_ACTIONS.items()
    ])


def subscribe_comments(client: ClientConnectionManager, task_id: Any,
                       callback: Callable[[Dict[str, Any]], None]) -> Unsubscribe:
    """Deliver comment_added payloads for one task only."""
    def listener(event: Event):
        payload = event.payload or {}
        if str(payload.get("taskId")) == str(task_id):
            callback(payload)

    return client.subscribe(EventType.COMMENT_ADDED.value, listener)


def subscribe_notifications(client: ClientConnectionManager,
                            callback: Callable[[Dict[str, Any]], None]) -> Unsubscribe:
    return client.subscribe(
        EventType.NOTIFICATION_CREATED.value, lambda event: callback(event.payload)
    )


class PresenceTracker:
    """
    Tracks which users are online from user_joined/user_left events.

    ``online_users`` keeps join order with no duplicates; a user who joins
    again moves to the end.
    """

    def __init__(self, client: ClientConnectionManager):
        self.client = client
        self.online_users: List[str] = []
        self._unsubscribe = _combine([
            client.subscribe(EventType.USER_JOINED.value, self._on_joined),
            client.subscribe(EventType.USER_LEFT.value, self._on_left),
        ])

    def _user_of(self, event: Event) -> Optional[str]:
        presence = PresencePayload.model_validate(event.payload or {})
        return presence.user_id or event.user_id

    def _on_joined(self, event: Event):
        user_id = self._user_of(event)
        if user_id is None:
            return
        self.online_users = [u for u in self.online_users if u != user_id] + [user_id]

    def _on_left(self, event: Event):
        user_id = self._user_of(event)
        self.online_users = [u for u in self.online_users if u != user_id]

    def join_room(self, room_id: str) -> bool:
        return self.client.send(
            Event.build(EventType.USER_JOINED, {"roomId": room_id}, user_id=self.client.user_id)
        )

    def leave_room(self, room_id: str) -> bool:
        return self.client.send(
            Event.build(EventType.USER_LEFT, {"roomId": room_id}, user_id=self.client.user_id)
        )

    def close(self):
        self._unsubscribe()
