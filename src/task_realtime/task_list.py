"""
Live Task List

Keeps a filtered, in-memory list of tasks current from task change events
and derives the views task screens need: status counts, completion rate,
tasks grouped by status, overdue tasks and lookups by id, assignee or tag.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from .subscriptions import subscribe_task_changes

logger = logging.getLogger(__name__)

TASK_STATUSES = ("todo", "in-progress", "review", "done")

Task = Dict[str, Any]


@dataclass
class TaskFilter:
    """Which tasks a list holds. Unset fields do not filter."""
    organization_id: Optional[str] = None
    team_id: Optional[str] = None
    sprint_id: Optional[str] = None
    epic_id: Optional[str] = None
    assignee_id: Optional[str] = None
    statuses: List[str] = field(default_factory=list)

    def matches(self, task: Task) -> bool:
        checks = (
            (self.organization_id, "organizationId"),
            (self.team_id, "teamId"),
            (self.sprint_id, "sprintId"),
            (self.epic_id, "epicId"),
            (self.assignee_id, "assigneeId"),
        )
        for expected, key in checks:
            if expected and task.get(key) != expected:
                return False
        if self.statuses and task.get("status") not in self.statuses:
            return False
        return True


@dataclass
class TaskStats:
    total: int
    completed: int
    in_progress: int
    todo: int
    review: int
    completion_rate: int


def _parse_due_date(value: str) -> datetime:
    due = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if due.tzinfo is None:
        due = due.replace(tzinfo=timezone.utc)
    return due


class RealTimeTaskList:
    """
    Filtered task list kept current by a client connection.

    Task events carry ``_action``: ``created`` adds a task that passes the
    filter and is not already listed, ``updated`` replaces a listed task,
    and ``deleted`` removes it. Updates for tasks not in the list are
    ignored.

    Args:
        client: ClientConnectionManager (or anything with ``subscribe``)
        task_filter: Which tasks to keep, everything by default
        tasks: Initial task records, filtered on load
        on_change: Called with ``(action, task)`` after each applied change
        enabled: False to load tasks without subscribing to updates
    """

    def __init__(self, client, task_filter: Optional[TaskFilter] = None,
                 tasks: Optional[Iterable[Task]] = None,
                 on_change: Optional[Callable[[str, Task], None]] = None,
                 enabled: bool = True):
        self.filter = task_filter or TaskFilter()
        self.on_change = on_change
        self.tasks: List[Task] = []
        self.last_update: Optional[datetime] = None
        self._unsubscribe = subscribe_task_changes(client, self.apply) if enabled else None
        self.load(tasks or [])

    @property
    def is_realtime_enabled(self) -> bool:
        return self._unsubscribe is not None

    @property
    def is_empty(self) -> bool:
        return not self.tasks

    def load(self, tasks: Iterable[Task]):
        """Replace the list with the given records that pass the filter."""
        self.tasks = [dict(task) for task in tasks if self.filter.matches(task)]
        self.last_update = datetime.now(timezone.utc)

    def apply(self, task: Task) -> bool:
        """
        Apply one task change.

        Returns:
            True if the list changed
        """
        action = task.get("_action") or "updated"
        record = {key: value for key, value in task.items() if key != "_action"}
        task_id = str(record.get("id"))
        index = self._index_of(task_id)
        changed = False

        if action == "created":
            if index is None and self.filter.matches(record):
                self.tasks.append(record)
                changed = True
        elif action == "updated":
            if index is not None:
                self.tasks[index] = record
                changed = True
        elif action == "deleted":
            if index is not None:
                del self.tasks[index]
                changed = True
        else:
            logger.debug(f"Ignoring unknown task action {action!r}")

        self.last_update = datetime.now(timezone.utc)
        if changed:
            logger.debug(f"Task {task_id} {action}")
            if self.on_change is not None:
                self.on_change(action, record)
        return changed

    def _index_of(self, task_id: str) -> Optional[int]:
        for index, task in enumerate(self.tasks):
            if str(task.get("id")) == task_id:
                return index
        return None

    # Derived views

    def stats(self) -> TaskStats:
        counts = {status: 0 for status in TASK_STATUSES}
        for task in self.tasks:
            if task.get("status") in counts:
                counts[task["status"]] += 1
        total = len(self.tasks)
        return TaskStats(
            total=total,
            completed=counts["done"],
            in_progress=counts["in-progress"],
            todo=counts["todo"],
            review=counts["review"],
            completion_rate=round(counts["done"] / total * 100) if total else 0,
        )

    def tasks_by_status(self) -> Dict[str, List[Task]]:
        grouped: Dict[str, List[Task]] = {}
        for task in self.tasks:
            grouped.setdefault(task.get("status"), []).append(task)
        return grouped

    def overdue_tasks(self, now: Optional[datetime] = None) -> List[Task]:
        """Unfinished tasks whose due date has passed."""
        now = now or datetime.now(timezone.utc)
        overdue = []
        for task in self.tasks:
            due = task.get("dueDate")
            if not due or task.get("status") == "done":
                continue
            try:
                if _parse_due_date(due) < now:
                    overdue.append(task)
            except ValueError:
                logger.warning(f"Task {task.get('id')} has an invalid due date: {due!r}")
        return overdue

    def get_task(self, task_id: Any) -> Optional[Task]:
        index = self._index_of(str(task_id))
        return self.tasks[index] if index is not None else None

    def tasks_by_assignee(self, assignee_id: str) -> List[Task]:
        return [task for task in self.tasks if task.get("assigneeId") == assignee_id]

    def tasks_by_tag(self, tag: str) -> List[Task]:
        return [task for task in self.tasks if tag in (task.get("tags") or [])]

    def close(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
