"""Exception types for the realtime service."""

from typing import Optional


class RealtimeError(Exception):
    """Base class for realtime service errors."""


class ConfigurationError(RealtimeError):
    """Raised when a setting has an invalid value."""


class PublishRejected(RealtimeError):
    """Raised when an inbound client frame may not be rebroadcast."""

    def __init__(self, message: str, event_type: Optional[str] = None):
        super().__init__(message)
        self.event_type = event_type


class ConnectionLimitReached(RealtimeError):
    """Raised by the registry when a registration would exceed its limit."""
