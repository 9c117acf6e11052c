"""
Event Producer and Task Simulator

The producer is the slot through which domain mutations reach the broadcast
router. Persistence code calls its hooks after a mutation is committed, or
collects events inside ``transaction()`` so that nothing is published for a
unit of work that fails.

The simulator stands in for a real mutation source during development: on a
fixed interval it applies a synthetic update to an in-memory sample task set
and publishes the resulting event.
"""

import asyncio
import copy
import logging
import random
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional, Union

import yaml

from .models import Event, EventType, utc_timestamp
from .registry import ConnectionRegistry
from .router import BroadcastRouter

logger = logging.getLogger(__name__)

SIMULATED_ACTIONS = ("updated", "created", "status_changed")
SIMULATED_STATUSES = ("todo", "in-progress", "review", "done")
SYSTEM_USER_ID = "system"
DEFAULT_ORGANIZATION_ID = "org1"
MAX_SIMULATED_TASKS = 100
AUTO_GENERATED_TAG = "auto-generated"


def _scope_of(record: Dict[str, Any]) -> Dict[str, Optional[str]]:
    return {
        "organization_id": record.get("organizationId"),
        "team_id": record.get("teamId"),
    }


def build_task_event(event_type: EventType, task: Dict[str, Any], actor_id: Optional[str]) -> Event:
    """Task event scoped to the task's organization."""
    return Event.build(event_type, task, user_id=actor_id, **_scope_of(task))


def build_comment_event(comment: Dict[str, Any], actor_id: Optional[str]) -> Event:
    return Event.build(EventType.COMMENT_ADDED, comment, user_id=actor_id, **_scope_of(comment))


def build_notification_event(notification: Dict[str, Any], actor_id: Optional[str]) -> Event:
    return Event.build(
        EventType.NOTIFICATION_CREATED, notification, user_id=actor_id, **_scope_of(notification)
    )


class PendingEvents:
    """
    Events collected during a unit of work, published only on commit.

    Offers the same mutation hooks as EventProducer, but synchronous: they
    only record the event.
    """

    def __init__(self):
        self.events: List[Event] = []

    def add(self, event: Event):
        self.events.append(event)

    def task_created(self, task: Dict[str, Any], actor_id: Optional[str] = None):
        self.add(build_task_event(EventType.TASK_CREATED, task, actor_id))

    def task_updated(self, task: Dict[str, Any], actor_id: Optional[str] = None):
        self.add(build_task_event(EventType.TASK_UPDATED, task, actor_id))

    def task_deleted(self, task: Dict[str, Any], actor_id: Optional[str] = None):
        self.add(build_task_event(EventType.TASK_DELETED, task, actor_id))

    def comment_added(self, comment: Dict[str, Any], actor_id: Optional[str] = None):
        self.add(build_comment_event(comment, actor_id))

    def notification_created(self, notification: Dict[str, Any], actor_id: Optional[str] = None):
        self.add(build_notification_event(notification, actor_id))

    def __len__(self) -> int:
        return len(self.events)


class EventProducer:
    """
    Post-commit mutation hooks feeding the broadcast router.

    Each hook builds a typed event carrying the acting user's id and the
    resource's organization/team scope, then publishes it. Call hooks only
    after the mutation is durably committed, or use ``transaction()``.
    """

    def __init__(self, router: BroadcastRouter):
        self.router = router

    async def emit(self, event: Event) -> int:
        """
        Publish a producer event. Any timestamp it carries is replaced.

        Returns:
            Number of connections the event reached
        """
        return await self.router.publish(event)

    async def task_created(self, task: Dict[str, Any], actor_id: Optional[str] = None) -> int:
        return await self.emit(build_task_event(EventType.TASK_CREATED, task, actor_id))

    async def task_updated(self, task: Dict[str, Any], actor_id: Optional[str] = None) -> int:
        return await self.emit(build_task_event(EventType.TASK_UPDATED, task, actor_id))

    async def task_deleted(self, task: Dict[str, Any], actor_id: Optional[str] = None) -> int:
        return await self.emit(build_task_event(EventType.TASK_DELETED, task, actor_id))

    async def comment_added(self, comment: Dict[str, Any], actor_id: Optional[str] = None) -> int:
        return await self.emit(build_comment_event(comment, actor_id))

    async def notification_created(self, notification: Dict[str, Any],
                                   actor_id: Optional[str] = None) -> int:
        return await self.emit(build_notification_event(notification, actor_id))

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PendingEvents]:
        """
        Collect events for a unit of work and publish them on success.

        If the block raises, the collected events are discarded and the
        exception propagates.
        """
        pending = PendingEvents()
        yield pending
        for event in pending.events:
            await self.emit(event)


def load_sample_tasks(path: Union[str, Path]) -> List[Dict[str, Any]]:
    """
    Load the simulator's sample task records from a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the YAML is invalid or has no task list
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        raise FileNotFoundError(f"Sample tasks file not found: {path}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML format: {str(e)}")

    if not isinstance(data, dict) or not isinstance(data.get("tasks"), list):
        raise ValueError("Sample tasks file must contain a 'tasks' list")

    tasks = data["tasks"]
    for task in tasks:
        if not isinstance(task, dict) or "id" not in task:
            raise ValueError("Every sample task must be a mapping with an 'id'")
        task["id"] = str(task["id"])
    return tasks


class TaskSimulator:
    """
    Periodic synthetic task updates for exercising the pipeline.

    Each tick picks a random sample task and one of the update kinds
    ``updated``, ``status_changed`` or ``created``, applies it to the
    in-memory set and publishes the resulting event as the system user.
    Ticks are skipped while no client is connected.
    """

    def __init__(
        self,
        producer: EventProducer,
        registry: ConnectionRegistry,
        tasks: List[Dict[str, Any]],
        interval: float = 10.0,
        start_delay: float = 5.0,
        rng: Optional[random.Random] = None,
        max_tasks: int = MAX_SIMULATED_TASKS,
    ):
        if not tasks:
            raise ValueError("TaskSimulator needs at least one sample task")
        self.producer = producer
        self.registry = registry
        self.tasks = tasks
        self.interval = interval
        self.start_delay = start_delay
        self.rng = rng or random.Random()
        self.max_tasks = max_tasks

    def _apply(self, action: str, task: Dict[str, Any]) -> Dict[str, Any]:
        now = utc_timestamp()
        if action == "created":
            stamp = str(int(time.time() * 1000))
            created = {
                "id": stamp,
                "title": f"New task {stamp}",
                "description": "Auto-generated task for testing",
                "status": "todo",
                "priority": "medium",
                "assigneeId": task.get("assigneeId"),
                "assignee": copy.deepcopy(task.get("assignee")),
                "createdAt": now,
                "updatedAt": now,
                "organizationId": task.get("organizationId") or DEFAULT_ORGANIZATION_ID,
                "teamId": task.get("teamId"),
                "tags": [AUTO_GENERATED_TAG],
            }
            self.tasks.append(created)
            self._trim_generated()
            return created

        updated = copy.deepcopy(task)
        updated["updatedAt"] = now
        if action == "updated":
            updated["title"] = f"{task.get('title', '')} (updated)"
        else:
            updated["status"] = self.rng.choice(SIMULATED_STATUSES)
        return updated

    def _trim_generated(self):
        """Drop the oldest generated tasks once the set exceeds max_tasks; sample tasks stay."""
        excess = len(self.tasks) - self.max_tasks
        if excess <= 0:
            return
        kept = []
        for task in self.tasks:
            if excess > 0 and AUTO_GENERATED_TAG in (task.get("tags") or []):
                excess -= 1
                continue
            kept.append(task)
        self.tasks[:] = kept

    async def tick(self) -> Optional[Event]:
        """
        Perform one synthetic update.

        Returns:
            The published event, or None when no client is connected
        """
        if self.registry.get_connection_count() == 0:
            return None

        task = self.rng.choice(self.tasks)
        action = self.rng.choice(SIMULATED_ACTIONS)
        record = self._apply(action, task)

        event_type = EventType.TASK_CREATED if action == "created" else EventType.TASK_UPDATED
        payload = dict(record, _action="created" if action == "created" else "updated")
        event = Event.build(
            event_type,
            payload,
            user_id=SYSTEM_USER_ID,
            organization_id=record.get("organizationId") or DEFAULT_ORGANIZATION_ID,
            team_id=record.get("teamId"),
        )

        logger.info(f"Simulating {action} for task: {record.get('title')}")
        await self.producer.emit(event)
        return event

    async def run(self, shutdown_event: asyncio.Event):
        """Run ticks on a fixed interval until shutdown_event is set."""
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=self.start_delay)
            return
        except asyncio.TimeoutError:
            pass

        logger.info("Starting task update simulation...")
        while not shutdown_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Task simulator error: {e}")

            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.interval)
                break
            except asyncio.TimeoutError:
                continue
