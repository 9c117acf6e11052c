"""
Configuration for the realtime update service and client.

Settings are read from environment variables so the same code runs against a
local development server and a production deployment. The client endpoint URL
is selected from the deployment environment unless explicitly overridden.
"""

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional

from .exceptions import ConfigurationError

PRODUCTION_WS_URL = "wss://your-domain.com/ws"
DEVELOPMENT_WS_URL = "ws://localhost:3002"

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY_MS = 1000

DEFAULT_SAMPLE_TASKS = Path(__file__).parent / "data" / "sample_tasks.yaml"


class InboundPolicy(str, Enum):
    """How the server treats event frames sent by clients."""
    VERBATIM = "verbatim"  # rebroadcast with the scope the client supplied
    SCOPED = "scoped"      # only into the sending connection's own organization
    DISABLED = "disabled"  # client frames are never rebroadcast


@dataclass(frozen=True)
class ReconnectConfig:
    """Client reconnection settings."""
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS

    def __post_init__(self):
        if self.max_attempts < 0:
            raise ConfigurationError("max_attempts must be >= 0")
        if self.base_delay_ms <= 0:
            raise ConfigurationError("base_delay_ms must be > 0")

    def delay_ms(self, attempt: int) -> int:
        """Backoff delay for the given 1-based attempt number."""
        return self.base_delay_ms * (2 ** (attempt - 1))


def default_client_url(environment: str) -> str:
    """Pick the client endpoint for a deployment environment."""
    if environment.lower() == "production":
        return PRODUCTION_WS_URL
    return DEVELOPMENT_WS_URL


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}")


def _float_env(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}")


def _bool_env(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def parse_inbound_policy(value: str) -> InboundPolicy:
    try:
        return InboundPolicy(value.strip().lower())
    except ValueError:
        valid = [p.value for p in InboundPolicy]
        raise ConfigurationError(f"Inbound policy must be one of: {valid}, got {value!r}")


@dataclass
class RealtimeSettings:
    """
    Runtime settings for server and client components.

    Use ``RealtimeSettings.from_env()`` in entry points; tests construct the
    dataclass directly with the values they need.
    """
    environment: str = "development"
    client_url: str = DEVELOPMENT_WS_URL
    host: str = "0.0.0.0"
    port: int = 3002
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)
    max_connections: int = 500
    inbound_policy: InboundPolicy = InboundPolicy.SCOPED
    simulate: bool = False
    simulation_interval: float = 10.0
    simulation_start_delay: float = 5.0
    sample_tasks_path: Path = DEFAULT_SAMPLE_TASKS
    publish_token: Optional[str] = None
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "RealtimeSettings":
        """
        Build settings from environment variables.

        Args:
            env: Mapping to read from, defaults to ``os.environ``

        Raises:
            ConfigurationError: If a value cannot be parsed
        """
        if env is None:
            env = os.environ

        environment = env.get("REALTIME_ENV") or env.get("NODE_ENV") or "development"
        client_url = env.get("REALTIME_WS_URL") or default_client_url(environment)

        reconnect = ReconnectConfig(
            max_attempts=_int_env(env, "REALTIME_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            base_delay_ms=_int_env(env, "REALTIME_BASE_DELAY_MS", DEFAULT_BASE_DELAY_MS),
        )

        max_connections = _int_env(env, "REALTIME_MAX_CONNECTIONS", 500)
        if max_connections <= 0:
            raise ConfigurationError("REALTIME_MAX_CONNECTIONS must be > 0")

        sample_path = env.get("REALTIME_SAMPLE_TASKS")

        return cls(
            environment=environment,
            client_url=client_url,
            host=env.get("WS_HOST", "0.0.0.0"),
            port=_int_env(env, "WS_PORT", 3002),
            reconnect=reconnect,
            max_connections=max_connections,
            inbound_policy=parse_inbound_policy(env.get("REALTIME_INBOUND_POLICY", "scoped")),
            simulate=_bool_env(env, "REALTIME_SIMULATE", False),
            simulation_interval=_float_env(env, "REALTIME_SIMULATION_INTERVAL", 10.0),
            simulation_start_delay=_float_env(env, "REALTIME_SIMULATION_DELAY", 5.0),
            sample_tasks_path=Path(sample_path) if sample_path else DEFAULT_SAMPLE_TASKS,
            publish_token=env.get("REALTIME_PUBLISH_TOKEN") or None,
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
