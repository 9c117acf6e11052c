"""
Pydantic models for realtime event frames.

Defines the wire-level Event record shared by server and client, the closed
set of known event types, and one payload model per known type so payload
shapes are checked where events are built or consumed.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, Union, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


class EventType(str, Enum):
    """Known event types. Unknown type strings are still forwarded."""
    TASK_UPDATED = "task_updated"
    TASK_CREATED = "task_created"
    TASK_DELETED = "task_deleted"
    COMMENT_ADDED = "comment_added"
    NOTIFICATION_CREATED = "notification_created"
    USER_JOINED = "user_joined"
    USER_LEFT = "user_left"
    # Sent only to a newly connected client
    CONNECTION_ESTABLISHED = "connection_established"


def utc_timestamp(moment: Optional[datetime] = None) -> str:
    """Format a UTC moment as an ISO-8601 string with millisecond precision."""
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class _Payload(BaseModel):
    """Base for payload variants; records may carry arbitrary extra columns."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class TaskPayload(_Payload):
    """Payload of task_created, task_updated and task_deleted."""
    id: Union[str, int]
    title: Optional[str] = None
    status: Optional[str] = None
    organization_id: Optional[str] = Field(None, alias="organizationId")
    team_id: Optional[str] = Field(None, alias="teamId")
    action: Optional[str] = Field(None, alias="_action")


class CommentPayload(_Payload):
    """Payload of comment_added."""
    task_id: Union[str, int] = Field(alias="taskId")
    id: Optional[Union[str, int]] = None
    content: Optional[str] = None
    author_id: Optional[str] = Field(None, alias="authorId")


class NotificationPayload(_Payload):
    """Payload of notification_created."""
    id: Optional[Union[str, int]] = None
    user_id: Optional[str] = Field(None, alias="userId")
    title: Optional[str] = None
    message: Optional[str] = None


class PresencePayload(_Payload):
    """Payload of user_joined and user_left."""
    user_id: Optional[str] = Field(None, alias="userId")
    room_id: Optional[str] = Field(None, alias="roomId")


class ConnectionEstablishedPayload(_Payload):
    """Payload of the welcome frame sent after the handshake."""
    message: str = "Connected to WebSocket server"
    user_id: str = Field(alias="userId")
    organization_id: Optional[str] = Field(None, alias="organizationId")


# Types only the server may emit; never accepted from publishers or clients
SERVER_ONLY_TYPES = frozenset({EventType.CONNECTION_ESTABLISHED.value})


PAYLOAD_MODELS: Dict[str, Type[_Payload]] = {
    EventType.TASK_CREATED.value: TaskPayload,
    EventType.TASK_UPDATED.value: TaskPayload,
    EventType.TASK_DELETED.value: TaskPayload,
    EventType.COMMENT_ADDED.value: CommentPayload,
    EventType.NOTIFICATION_CREATED.value: NotificationPayload,
    EventType.USER_JOINED.value: PresencePayload,
    EventType.USER_LEFT.value: PresencePayload,
    EventType.CONNECTION_ESTABLISHED.value: ConnectionEstablishedPayload,
}


def payload_model_for(event_type: str) -> Optional[Type[_Payload]]:
    """Return the payload model for a known type, None for unknown types."""
    return PAYLOAD_MODELS.get(event_type)


class Event(BaseModel):
    """
    Wire-level event record.

    Attributes use snake_case; the JSON frame uses the camelCase aliases
    (userId, organizationId, teamId). ``timestamp`` is optional on partial
    events built by producers and always set on frames the server sends.
    """
    model_config = ConfigDict(populate_by_name=True)

    type: str = Field(min_length=1)
    payload: Any = None
    user_id: Optional[str] = Field(None, alias="userId")
    organization_id: Optional[str] = Field(None, alias="organizationId")
    team_id: Optional[str] = Field(None, alias="teamId")
    timestamp: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def validate_type(cls, v):
        """Accept EventType members and plain strings."""
        if isinstance(v, EventType):
            return v.value
        if not isinstance(v, str):
            raise ValueError("Event type must be a string")
        return v

    @classmethod
    def build(
        cls,
        event_type: Union[EventType, str],
        payload: Any = None,
        user_id: Optional[str] = None,
        organization_id: Optional[str] = None,
        team_id: Optional[str] = None,
    ) -> "Event":
        """
        Build an event, checking the payload against its type's model.

        Args:
            event_type: Event type, known or forward-compatible string
            payload: Payload model instance or plain data
            user_id: Originating user
            organization_id: Routing scope, None for all connections
            team_id: Team scope (carried, not used for routing)

        Raises:
            pydantic.ValidationError: If the payload does not fit a known type
        """
        type_value = event_type.value if isinstance(event_type, EventType) else event_type
        model = payload_model_for(type_value)

        if isinstance(payload, BaseModel):
            if model is not None and not isinstance(payload, model):
                raise TypeError(
                    f"{type(payload).__name__} is not a valid payload for {type_value}"
                )
            data = payload.model_dump(by_alias=True, exclude_none=True)
        else:
            if model is not None:
                model.model_validate(payload)
            data = payload

        return cls(
            type=type_value,
            payload=data,
            user_id=user_id,
            organization_id=organization_id,
            team_id=team_id,
        )

    @property
    def known_type(self) -> Optional[EventType]:
        try:
            return EventType(self.type)
        except ValueError:
            return None

    def typed_payload(self) -> Any:
        """
        Return the payload as its typed variant.

        Unknown event types return the raw payload unchanged.

        Raises:
            pydantic.ValidationError: If the payload does not fit its type
        """
        model = payload_model_for(self.type)
        if model is None:
            return self.payload
        return model.model_validate(self.payload)

    def stamped(self, timestamp: str) -> "Event":
        """Copy of this event carrying the given timestamp."""
        return self.model_copy(update={"timestamp": timestamp})

    def to_dict(self) -> Dict[str, Any]:
        """Wire dictionary; absent optional fields are omitted."""
        data: Dict[str, Any] = {"type": self.type, "payload": self.payload}
        if self.user_id is not None:
            data["userId"] = self.user_id
        if self.organization_id is not None:
            data["organizationId"] = self.organization_id
        if self.team_id is not None:
            data["teamId"] = self.team_id
        if self.timestamp is not None:
            data["timestamp"] = self.timestamp
        return data

    def to_wire(self) -> str:
        """Serialize to a JSON text frame."""
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_wire(cls, raw: Union[str, bytes], trust_timestamp: bool = True) -> "Event":
        """
        Parse a JSON text frame.

        Args:
            raw: Frame text
            trust_timestamp: False to discard the sender's timestamp before
                validation, for frames the server restamps anyway

        Raises:
            ValueError: If the frame is not JSON or does not have the wire shape
                (json.JSONDecodeError and pydantic.ValidationError are both
                ValueError subclasses)
        """
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("Event frame must be a JSON object")
        if not trust_timestamp:
            data.pop("timestamp", None)
        return cls.model_validate(data)


__all__ = [
    "EventType",
    "Event",
    "TaskPayload",
    "CommentPayload",
    "NotificationPayload",
    "PresencePayload",
    "ConnectionEstablishedPayload",
    "PAYLOAD_MODELS",
    "SERVER_ONLY_TYPES",
    "payload_model_for",
    "utc_timestamp",
    "ValidationError",
]
