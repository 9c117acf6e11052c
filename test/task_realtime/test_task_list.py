"""
Unit tests for the live task list.
"""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from conftest import drain
from task_realtime.dispatch import ListenerDispatchTable
from task_realtime.models import Event
from task_realtime.task_list import RealTimeTaskList, TaskFilter


class FakeClient:

    def __init__(self):
        self.listeners = ListenerDispatchTable()

    def subscribe(self, event_type, callback):
        return self.listeners.subscribe(event_type, callback)

    def deliver(self, event_type, payload):
        self.listeners.dispatch(Event(type=event_type, payload=payload))


def make_task(task_id, **fields):
    task = {
        "id": task_id,
        "title": f"Task {task_id}",
        "status": "todo",
        "organizationId": "org1",
        "teamId": "team1",
        "assigneeId": "user1",
    }
    task.update(fields)
    return task


SEED = [
    make_task("1", status="done", tags=["setup"], dueDate="2024-01-15"),
    make_task("2", status="in-progress", assigneeId="user2", tags=["design", "ui"], dueDate="2024-01-20"),
    make_task("3", teamId="team2", dueDate="2099-01-01"),
    make_task("4", organizationId="org2"),
]


class TestFiltering:

    def test_load_applies_filter(self):
        task_list = RealTimeTaskList(FakeClient(), TaskFilter(organization_id="org1", team_id="team1"), SEED)
        assert [task["id"] for task in task_list.tasks] == ["1", "2"]

    def test_status_and_assignee_filters(self):
        task_filter = TaskFilter(assignee_id="user1", statuses=["todo", "done"])
        task_list = RealTimeTaskList(FakeClient(), task_filter, SEED)
        assert [task["id"] for task in task_list.tasks] == ["1", "3", "4"]

    def test_sprint_and_epic_filters(self):
        tasks = [make_task("1", sprintId="s1", epicId="e1"), make_task("2", sprintId="s2", epicId="e1")]
        task_list = RealTimeTaskList(FakeClient(), TaskFilter(sprint_id="s1", epic_id="e1"), tasks)
        assert [task["id"] for task in task_list.tasks] == ["1"]


class TestLiveUpdates:

    def setup_method(self):
        self.client = FakeClient()
        self.on_change = MagicMock()
        self.task_list = RealTimeTaskList(
            self.client, TaskFilter(organization_id="org1"), SEED[:3], on_change=self.on_change
        )

    def test_created_task_matching_filter_is_added(self):
        self.client.deliver("task_created", make_task("9", title="New"))

        added = self.task_list.get_task("9")
        assert added["title"] == "New"
        assert "_action" not in added
        self.on_change.assert_called_once()
        assert self.on_change.call_args.args[0] == "created"

    def test_created_task_outside_filter_is_ignored(self):
        self.client.deliver("task_created", make_task("9", organizationId="org2"))

        assert self.task_list.get_task("9") is None
        self.on_change.assert_not_called()

    def test_duplicate_create_is_ignored(self):
        self.client.deliver("task_created", make_task("1", title="Duplicate"))
        self.client.deliver("task_created", make_task(1, title="Numeric duplicate"))

        assert len(self.task_list.tasks) == 3
        assert self.task_list.get_task("1")["title"] == "Task 1"

    def test_update_replaces_listed_task(self):
        self.client.deliver("task_updated", make_task("2", status="review"))

        assert self.task_list.get_task("2")["status"] == "review"
        assert [task["id"] for task in self.task_list.tasks] == ["1", "2", "3"]

    def test_update_for_unlisted_task_is_ignored(self):
        self.client.deliver("task_updated", make_task("42"))

        assert self.task_list.get_task("42") is None

    def test_delete_removes_task(self):
        self.client.deliver("task_deleted", {"id": "1"})

        assert [task["id"] for task in self.task_list.tasks] == ["2", "3"]
        assert self.on_change.call_args.args == ("deleted", {"id": "1"})

    def test_delete_of_unknown_task_is_noop(self):
        self.client.deliver("task_deleted", {"id": "77"})
        self.on_change.assert_not_called()

    def test_close_stops_updates(self):
        self.task_list.close()
        self.client.deliver("task_created", make_task("9"))

        assert self.task_list.get_task("9") is None
        assert not self.task_list.is_realtime_enabled

    def test_disabled_list_does_not_subscribe(self):
        client = FakeClient()
        task_list = RealTimeTaskList(client, tasks=SEED, enabled=False)

        assert client.listeners.listener_count() == 0
        assert len(task_list.tasks) == 4


class TestDerivedViews:

    def setup_method(self):
        self.task_list = RealTimeTaskList(FakeClient(), TaskFilter(organization_id="org1"), SEED)

    def test_stats(self):
        stats = self.task_list.stats()

        assert stats.total == 3
        assert stats.completed == 1
        assert stats.in_progress == 1
        assert stats.todo == 1
        assert stats.review == 0
        assert stats.completion_rate == 33

    def test_stats_for_empty_list(self):
        task_list = RealTimeTaskList(FakeClient())

        assert task_list.is_empty
        assert task_list.stats().completion_rate == 0

    def test_tasks_by_status(self):
        grouped = self.task_list.tasks_by_status()
        assert {status: [t["id"] for t in tasks] for status, tasks in grouped.items()} == {
            "done": ["1"], "in-progress": ["2"], "todo": ["3"],
        }

    def test_overdue_excludes_done_and_future(self):
        now = datetime(2024, 2, 1, tzinfo=timezone.utc)
        assert [task["id"] for task in self.task_list.overdue_tasks(now)] == ["2"]

    def test_lookups(self):
        assert [t["id"] for t in self.task_list.tasks_by_assignee("user1")] == ["1", "3"]
        assert [t["id"] for t in self.task_list.tasks_by_tag("ui")] == ["2"]
        assert self.task_list.get_task(2)["assigneeId"] == "user2"


@pytest.mark.asyncio
async def test_task_list_over_connection_manager(make_client, connector):
    client = make_client()
    task_list = RealTimeTaskList(client, TaskFilter(organization_id="org1"), [make_task("1")])
    client.connect("me", "org1")
    await drain()

    connector.last_socket.feed({"type": "task_created", "payload": make_task("2"), "organizationId": "org1"})
    connector.last_socket.feed({"type": "task_deleted", "payload": {"id": "1"}, "organizationId": "org1"})
    await drain()

    assert [task["id"] for task in task_list.tasks] == ["2"]
    await client.close()
