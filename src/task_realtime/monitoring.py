"""
Performance Monitoring and Background Tasks

Provides broadcast performance tracking, daily event counters and process
resource metrics for the realtime service, plus the background task manager
that runs the event simulator and resource monitoring alongside the FastAPI
application.
"""

import asyncio
import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import psutil

# Performance monitoring configuration
METRICS_HISTORY_SIZE = 1000  # Keep last 1000 data points for trending
RESOURCE_SAMPLE_INTERVAL = 60  # seconds between resource samples
RESOURCE_HISTORY_SIZE = 60
RESOURCE_TREND_WINDOW = 10
MEMORY_GROWTH_WARN_PERCENT = 20
SLOW_BROADCAST_MS_PER_CONNECTION = 20

logger = logging.getLogger(__name__)


@dataclass
class PerformanceMetric:
    """Single performance measurement with timestamp."""
    timestamp: datetime
    value: float
    operation: str


@dataclass
class ResourceSample:
    """Process memory next to the live connection count at one moment."""
    timestamp: datetime
    memory_mb: float
    active_connections: int


@dataclass
class SystemMetrics:
    """Current realtime service metrics."""
    active_connections: int
    events_published_today: int
    send_failures_today: int
    malformed_frames_today: int
    inbound_rejected_today: int
    avg_broadcast_time_ms: float
    memory_usage_mb: float
    cpu_usage_percent: float
    uptime_seconds: float


class PerformanceMonitor:
    """
    Performance monitoring for the broadcast pipeline.

    Features:
    - Per-connection broadcast latency history
    - Daily counters (events, send failures, malformed frames, rejections)
    - Memory and CPU usage via psutil
    """

    def __init__(self):
        self.broadcast_times: deque = deque(maxlen=METRICS_HISTORY_SIZE)
        self.daily_stats = defaultdict(int)
        self.resource_samples: deque = deque(maxlen=RESOURCE_HISTORY_SIZE)
        self.start_time = datetime.now(timezone.utc)

        # Reset daily stats at midnight
        self._last_reset_date = datetime.now(timezone.utc).date()

    def record_broadcast_time(self, connection_count: int, duration_ms: float):
        """
        Record WebSocket broadcast performance.

        Args:
            connection_count: Number of connections broadcasted to
            duration_ms: Total broadcast duration in milliseconds
        """
        per_connection_ms = duration_ms / max(connection_count, 1)

        self.broadcast_times.append(PerformanceMetric(
            timestamp=datetime.now(timezone.utc),
            value=per_connection_ms,
            operation=f"broadcast_to_{connection_count}_connections"
        ))

        if per_connection_ms > SLOW_BROADCAST_MS_PER_CONNECTION:
            logger.warning(f"Slow broadcast: {per_connection_ms:.2f}ms per connection")

    def increment_daily_stat(self, stat_name: str, amount: int = 1):
        """
        Increment daily statistics counter.

        Args:
            stat_name: Name of the statistic to increment
            amount: Amount to increment by (default 1)
        """
        self._check_daily_reset()
        self.daily_stats[stat_name] += amount

    def _check_daily_reset(self):
        """Reset daily statistics if date has changed."""
        current_date = datetime.now(timezone.utc).date()
        if current_date != self._last_reset_date:
            logger.info("Resetting daily statistics for new day")
            self.daily_stats.clear()
            self._last_reset_date = current_date

    def get_average_broadcast_time(self) -> float:
        """Get average per-connection broadcast time from recent history."""
        if not self.broadcast_times:
            return 0.0
        return sum(m.value for m in self.broadcast_times) / len(self.broadcast_times)

    def get_memory_usage_mb(self) -> float:
        """Get current process memory usage in MB."""
        try:
            return psutil.Process().memory_info().rss / (1024 * 1024)
        except Exception as e:
            logger.warning(f"Failed to get memory usage: {e}")
            return 0.0

    def get_cpu_usage_percent(self) -> float:
        """Get current CPU usage percentage without blocking."""
        try:
            return psutil.cpu_percent(interval=None)
        except Exception as e:
            logger.warning(f"Failed to get CPU usage: {e}")
            return 0.0

    def get_system_metrics(self, registry) -> SystemMetrics:
        """
        Collect current service metrics.

        Args:
            registry: ConnectionRegistry for the live connection count
        """
        self._check_daily_reset()
        return SystemMetrics(
            active_connections=registry.get_connection_count(),
            events_published_today=self.daily_stats.get("events_published", 0),
            send_failures_today=self.daily_stats.get("send_failures", 0),
            malformed_frames_today=self.daily_stats.get("malformed_frames", 0),
            inbound_rejected_today=self.daily_stats.get("inbound_rejected", 0),
            avg_broadcast_time_ms=self.get_average_broadcast_time(),
            memory_usage_mb=self.get_memory_usage_mb(),
            cpu_usage_percent=self.get_cpu_usage_percent(),
            uptime_seconds=(datetime.now(timezone.utc) - self.start_time).total_seconds(),
        )

    def get_daily_stats(self) -> Dict[str, Any]:
        self._check_daily_reset()
        return dict(self.daily_stats)

    def sample_resources(self, registry) -> ResourceSample:
        """Record current memory usage alongside the registry's connection count."""
        sample = ResourceSample(
            timestamp=datetime.now(timezone.utc),
            memory_mb=self.get_memory_usage_mb(),
            active_connections=registry.get_connection_count(),
        )
        self.resource_samples.append(sample)
        return sample

    def detect_resource_trends(self, window: int = RESOURCE_TREND_WINDOW) -> List[str]:
        """
        Warnings derived from the most recent ``window`` resource samples.

        Memory growth is only suspicious when connections did not grow with
        it. A connection count that rises on every sample points at clients
        that connect but never leave.
        """
        samples = list(self.resource_samples)[-window:]
        if len(samples) < window or window < 2:
            return []

        warnings = []
        first, last = samples[0], samples[-1]
        if first.memory_mb > 0:
            growth = (last.memory_mb - first.memory_mb) / first.memory_mb * 100
            if growth > MEMORY_GROWTH_WARN_PERCENT and last.active_connections <= first.active_connections:
                warnings.append(
                    f"Memory grew {growth:.1f}% over {len(samples)} samples without more connections "
                    f"(current: {last.memory_mb:.1f}MB, connections: {last.active_connections})"
                )

        counts = [s.active_connections for s in samples]
        if all(later > earlier for earlier, later in zip(counts, counts[1:])):
            warnings.append(f"Connections rose on every sample: {counts[0]} -> {counts[-1]}")
        return warnings


class BackgroundTasks:
    """
    Background task management for the realtime service.

    Runs the task simulator (when enabled) and resource monitoring alongside
    the FastAPI application, sharing one shutdown event.
    """

    def __init__(self, monitor: Optional[PerformanceMonitor] = None, registry=None,
                 sample_interval: float = RESOURCE_SAMPLE_INTERVAL):
        self.monitor = monitor or PerformanceMonitor()
        self.registry = registry
        self.sample_interval = sample_interval
        self.tasks: List[asyncio.Task] = []
        self.shutdown_event = asyncio.Event()

    async def start_background_tasks(self, simulator=None):
        """
        Start all background tasks.

        Args:
            simulator: Optional TaskSimulator to run on its own timer
        """
        logger.info("Starting background tasks...")
        self.shutdown_event.clear()

        if self.registry is not None:
            self.tasks.append(asyncio.create_task(self._resource_monitoring_worker()))

        if simulator is not None:
            self.tasks.append(asyncio.create_task(simulator.run(self.shutdown_event)))

        logger.info(f"Started {len(self.tasks)} background tasks")

    async def stop_background_tasks(self):
        """Stop all background tasks gracefully."""
        logger.info("Stopping background tasks...")

        self.shutdown_event.set()

        for task in self.tasks:
            if not task.done():
                task.cancel()

        if self.tasks:
            try:
                await asyncio.wait_for(
                    asyncio.gather(*self.tasks, return_exceptions=True),
                    timeout=10.0
                )
                logger.info("All background tasks stopped")
            except asyncio.TimeoutError:
                logger.warning("Background task shutdown timeout")
        self.tasks = []

    async def _resource_monitoring_worker(self):
        """Sample memory and connection counts, logging suspicious trends."""
        logger.info("Resource monitoring worker started")

        while not self.shutdown_event.is_set():
            try:
                sample = self.monitor.sample_resources(self.registry)
                logger.debug(
                    f"Resources: {sample.memory_mb:.1f}MB, {sample.active_connections} connections"
                )
                for warning in self.monitor.detect_resource_trends():
                    logger.warning(warning)
            except Exception as e:
                logger.error(f"Resource monitoring worker error: {e}")

            try:
                await asyncio.wait_for(self.shutdown_event.wait(), timeout=self.sample_interval)
                break
            except asyncio.TimeoutError:
                continue
