"""
FastAPI Backend for the Realtime Update Service

Provides the WebSocket endpoint clients connect to, an HTTP publish endpoint
for post-commit mutation hooks in the persistence layer, and health/metrics
endpoints for monitoring. Each app built by ``create_app`` owns its own
registry, router and producer, so tests can construct isolated instances.
"""

import hmac
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from .config import RealtimeSettings
from .exceptions import ConnectionLimitReached
from .models import SERVER_ONLY_TYPES, Event, utc_timestamp
from .monitoring import BackgroundTasks, PerformanceMonitor
from .producer import EventProducer, TaskSimulator, load_sample_tasks
from .registry import ConnectionRegistry
from .router import BroadcastRouter

logger = logging.getLogger(__name__)

# WebSocket close codes
POLICY_VIOLATION = 1008
TRY_AGAIN_LATER = 1013

IdentityProvider = Callable[[WebSocket], Awaitable[Optional[str]]]


async def query_identity(websocket: WebSocket) -> Optional[str]:
    """
    Identity from the ``userId`` handshake parameter.

    Stand-in for a session-verifying provider; deployments pass their own
    provider to ``create_app``.
    """
    return websocket.query_params.get("userId") or None


@dataclass
class RealtimeService:
    """Components owned by one application instance."""
    settings: RealtimeSettings
    identity_provider: IdentityProvider
    monitor: PerformanceMonitor = field(default_factory=PerformanceMonitor)
    registry: ConnectionRegistry = field(default_factory=ConnectionRegistry)
    router: Optional[BroadcastRouter] = None
    producer: Optional[EventProducer] = None
    background: Optional[BackgroundTasks] = None
    simulator: Optional[TaskSimulator] = None

    def __post_init__(self):
        self.router = self.router or BroadcastRouter(
            self.registry, monitor=self.monitor, inbound_policy=self.settings.inbound_policy
        )
        self.producer = self.producer or EventProducer(self.router)
        self.background = self.background or BackgroundTasks(self.monitor, self.registry)


class HealthResponse(BaseModel):
    """Response model for health check endpoint."""
    status: str
    active_websocket_connections: int
    timestamp: str


class MetricsResponse(BaseModel):
    """Response model for performance metrics endpoint."""
    connections: Dict[str, Any]
    broadcasts: Dict[str, Any]
    daily: Dict[str, Any]
    system: Dict[str, Any]


class PublishResponse(BaseModel):
    """Response model for the publish endpoint."""
    success: bool
    type: str
    delivered: int


def get_service(request: Request) -> RealtimeService:
    return request.app.state.realtime


def create_app(settings: Optional[RealtimeSettings] = None,
               identity_provider: Optional[IdentityProvider] = None) -> FastAPI:
    """
    Build the realtime service application.

    Args:
        settings: Service settings, read from the environment by default
        identity_provider: Async callable returning the verified user id for
            a handshake, or None to reject it

    Returns:
        FastAPI application with its own RealtimeService on ``app.state``
    """
    settings = settings or RealtimeSettings.from_env()
    service = RealtimeService(settings=settings, identity_provider=identity_provider or query_identity)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.simulate:
            tasks = load_sample_tasks(settings.sample_tasks_path)
            service.simulator = TaskSimulator(
                service.producer,
                service.registry,
                tasks,
                interval=settings.simulation_interval,
                start_delay=settings.simulation_start_delay,
            )
            logger.info(f"Task simulation enabled with {len(tasks)} sample tasks")

        await service.background.start_background_tasks(service.simulator)

        logger.info("Realtime API starting up...")
        logger.info(f"  Inbound policy: {settings.inbound_policy.value}")
        logger.info("  WebSocket /ws - Real-time event stream")
        logger.info("  POST /api/events - Publish mutation event")
        logger.info("  GET /healthz - Health check")
        logger.info("  GET /api/metrics - Performance metrics")

        yield

        try:
            await service.background.stop_background_tasks()
        except Exception as e:
            logger.error(f"Error stopping background tasks: {e}")

    app = FastAPI(
        title="Task Realtime API",
        description="Organization-scoped real-time updates for task management",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.realtime = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    async def websocket_updates(websocket: WebSocket):
        """
        Handshake, register, then relay inbound frames until the client leaves.

        Close and error both end in the same finally block, which is the only
        place the registration is removed.
        """
        user_id = await service.identity_provider(websocket)
        organization_id = websocket.query_params.get("organizationId") or None

        if not user_id:
            logger.warning("Rejecting WebSocket handshake without a verified userId")
            await websocket.close(code=POLICY_VIOLATION)
            return

        if service.registry.get_connection_count() >= settings.max_connections:
            logger.warning(f"Connection limit {settings.max_connections} reached, rejecting {user_id}")
            await websocket.close(code=TRY_AGAIN_LATER)
            return

        await websocket.accept()
        try:
            handle = service.registry.register(
                websocket, user_id, organization_id, limit=settings.max_connections
            )
        except ConnectionLimitReached as e:
            logger.warning(f"{e}, closing connection for {user_id}")
            await websocket.close(code=TRY_AGAIN_LATER)
            return
        service.monitor.increment_daily_stat("connections_opened")

        try:
            connection = service.registry.get(handle)
            await service.router.send_welcome(connection)

            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes")
                if raw is None:
                    continue
                await service.router.handle_inbound(connection, raw)
        except Exception as e:
            logger.error(f"WebSocket error for {user_id}: {e}")
        finally:
            if service.registry.unregister(handle) is not None:
                service.monitor.increment_daily_stat("connections_closed")

    app.add_api_websocket_route("/ws", websocket_updates)
    app.add_api_websocket_route("/", websocket_updates)

    @app.get("/healthz", response_model=HealthResponse)
    async def health_check(svc: RealtimeService = Depends(get_service)):
        """Service status and live connection count for load balancers."""
        return HealthResponse(
            status="healthy",
            active_websocket_connections=svc.registry.get_connection_count(),
            timestamp=utc_timestamp(),
        )

    @app.get("/api/metrics", response_model=MetricsResponse)
    async def get_performance_metrics(svc: RealtimeService = Depends(get_service)):
        """
        Get realtime service metrics.

        Raises:
            HTTPException: 500 if metrics collection fails
        """
        try:
            system_metrics = svc.monitor.get_system_metrics(svc.registry)
            connection_stats = svc.registry.get_connection_stats()

            return MetricsResponse(
                connections={
                    **connection_stats,
                    "max_capacity": svc.settings.max_connections,
                },
                broadcasts={
                    "avg_broadcast_per_connection_ms": system_metrics.avg_broadcast_time_ms,
                    "events_published_today": system_metrics.events_published_today,
                    "send_failures_today": system_metrics.send_failures_today,
                },
                daily=svc.monitor.get_daily_stats(),
                system={
                    "memory_usage_mb": system_metrics.memory_usage_mb,
                    "cpu_usage_percent": system_metrics.cpu_usage_percent,
                    "uptime_seconds": system_metrics.uptime_seconds,
                    "inbound_policy": svc.settings.inbound_policy.value,
                    "simulation_enabled": svc.settings.simulate,
                    "resource_warnings": svc.monitor.detect_resource_trends(),
                },
            )
        except Exception as e:
            logger.error(f"Failed to get performance metrics: {e}")
            raise HTTPException(status_code=500, detail="Failed to retrieve performance metrics")

    @app.post("/api/events", response_model=PublishResponse)
    async def publish_event(
        event: Event,
        svc: RealtimeService = Depends(get_service),
        x_publish_token: Optional[str] = Header(None),
    ):
        """
        Publish a committed mutation event to matching connections.

        Called by the persistence layer after a mutation commits. Any
        timestamp in the body is replaced by the server.

        Raises:
            HTTPException: 401 on a bad publish token, 422 if the payload does
                not fit the event type or the type is server-only
        """
        expected = svc.settings.publish_token
        if expected and not hmac.compare_digest(x_publish_token or "", expected):
            raise HTTPException(status_code=401, detail="Invalid publish token")

        if event.type in SERVER_ONLY_TYPES:
            raise HTTPException(status_code=422, detail=f"{event.type} cannot be published")

        try:
            event.typed_payload()
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=f"Invalid payload for {event.type}: {e}")

        delivered = await svc.producer.emit(event)
        return PublishResponse(success=True, type=event.type, delivered=delivered)

    @app.exception_handler(Exception)
    async def general_exception_handler(request, exc):
        """Global exception handler for unhandled errors."""
        logger.error(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"}
        )

    return app


logging.basicConfig(level=logging.INFO)

app = create_app()
