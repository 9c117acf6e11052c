"""
Shared fixtures for realtime service tests.

Provides fake server-side sockets for the registry/router, a fake client
transport and connector for the connection manager, and a manual scheduler
that records reconnect delays instead of sleeping.
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Callable, List, Optional
from unittest.mock import MagicMock

import pytest

project_root = Path(__file__).parent.parent.parent / "src"
sys.path.insert(0, str(project_root))

from task_realtime.client import ClientConnectionManager, ConnectionSignals
from task_realtime.config import ReconnectConfig
from task_realtime.monitoring import PerformanceMonitor
from task_realtime.registry import ConnectionRegistry
from task_realtime.router import BroadcastRouter


class FakeServerSocket:
    """Server-side socket double recording text frames sent to it."""

    def __init__(self, name: str = "ws", fail: bool = False):
        self.name = name
        self.fail = fail
        self.sent: List[str] = []

    async def send_text(self, message: str):
        if self.fail:
            raise RuntimeError(f"{self.name} is closing")
        self.sent.append(message)

    def frames(self) -> List[dict]:
        return [json.loads(message) for message in self.sent]


_CLOSE = object()


class FakeClientSocket:
    """
    Client transport double driven by the test.

    ``feed`` delivers a frame, ``drop`` closes normally, ``fail`` ends the
    receive loop with an exception.
    """

    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent: List[str] = []
        self.closed = False

    async def send(self, frame: str):
        self.sent.append(frame)

    def feed(self, frame: Any):
        self.incoming.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self):
        self.incoming.put_nowait(_CLOSE)

    def fail(self, error: Exception):
        self.incoming.put_nowait(error)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.incoming.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        if isinstance(item, Exception):
            raise item
        return item

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        self.closed = True
        return False


class FakeConnector:
    """Stands in for websockets.connect; the first ``failures`` calls are refused."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.urls: List[str] = []
        self.sockets: List[FakeClientSocket] = []

    def __call__(self, url: str) -> FakeClientSocket:
        self.urls.append(url)
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionRefusedError("connection refused")
        socket = FakeClientSocket()
        self.sockets.append(socket)
        return socket

    @property
    def last_socket(self) -> Optional[FakeClientSocket]:
        return self.sockets[-1] if self.sockets else None


class FakeTimerHandle:
    def __init__(self, delay: float, callback: Callable[[], None]):
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler:
    """Records scheduled callbacks; tests fire them explicitly."""

    def __init__(self):
        self.handles: List[FakeTimerHandle] = []

    def __call__(self, delay: float, callback: Callable[[], None]) -> FakeTimerHandle:
        handle = FakeTimerHandle(delay, callback)
        self.handles.append(handle)
        return handle

    @property
    def delays(self) -> List[float]:
        return [handle.delay for handle in self.handles]

    @property
    def pending(self) -> List[FakeTimerHandle]:
        return [handle for handle in self.handles if not handle.cancelled]

    def fire_last(self):
        self.handles[-1].callback()


async def drain(cycles: int = 10):
    """Let scheduled tasks run until they block."""
    for _ in range(cycles):
        await asyncio.sleep(0)


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def monitor():
    return PerformanceMonitor()


@pytest.fixture
def router(registry, monitor):
    return BroadcastRouter(registry, monitor=monitor)


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def signals():
    return MagicMock(spec=ConnectionSignals)


@pytest.fixture
def make_client(connector, scheduler, signals):
    """Factory for connection managers wired to the fakes."""
    def factory(max_attempts: int = 5, base_delay_ms: int = 1000, **kwargs) -> ClientConnectionManager:
        return ClientConnectionManager(
            url="ws://localhost:3002",
            reconnect=ReconnectConfig(max_attempts=max_attempts, base_delay_ms=base_delay_ms),
            connector=kwargs.pop("connector", connector),
            scheduler=scheduler,
            signals=signals,
            **kwargs,
        )
    return factory
