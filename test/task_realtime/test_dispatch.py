"""
Unit tests for the listener dispatch table.

Covers ordering of type-specific and wildcard listeners, isolation of
failing callbacks, and unsubscribe semantics.
"""

import logging

from task_realtime.dispatch import ListenerDispatchTable, WILDCARD
from task_realtime.models import Event


def make_event(event_type: str = "task_updated") -> Event:
    return Event(type=event_type, payload={"id": "1"}, timestamp="2024-01-01T00:00:00.000Z")


class TestDispatchOrdering:

    def setup_method(self):
        self.table = ListenerDispatchTable()
        self.calls = []

    def recorder(self, name):
        return lambda event: self.calls.append(name)

    def test_listeners_run_in_subscription_order(self):
        for name in ("first", "second", "third"):
            self.table.subscribe("task_updated", self.recorder(name))

        completed = self.table.dispatch(make_event())

        assert self.calls == ["first", "second", "third"]
        assert completed == 3

    def test_type_specific_listeners_before_wildcard(self):
        """Wildcard subscribed first still runs after the type-specific listener."""
        self.table.subscribe(WILDCARD, self.recorder("wildcard"))
        self.table.subscribe("task_updated", self.recorder("specific"))

        self.table.dispatch(make_event("task_updated"))

        assert self.calls == ["specific", "wildcard"]

    def test_only_matching_type_is_invoked(self):
        self.table.subscribe("task_created", self.recorder("created"))
        self.table.subscribe("comment_added", self.recorder("comment"))

        self.table.dispatch(make_event("task_created"))

        assert self.calls == ["created"]

    def test_unknown_type_reaches_wildcard(self):
        self.table.subscribe(WILDCARD, self.recorder("wildcard"))

        self.table.dispatch(make_event("sprint_closed"))

        assert self.calls == ["wildcard"]

    def test_dispatch_without_listeners(self):
        assert self.table.dispatch(make_event()) == 0


class TestDispatchIsolation:

    def test_failing_listener_does_not_stop_siblings(self, caplog):
        table = ListenerDispatchTable()
        calls = []

        def boom(event):
            raise ValueError("listener failure")

        table.subscribe("task_updated", lambda e: calls.append("first"))
        table.subscribe("task_updated", boom)
        table.subscribe("task_updated", lambda e: calls.append("third"))
        table.subscribe(WILDCARD, lambda e: calls.append("wildcard"))

        with caplog.at_level(logging.ERROR, logger="task_realtime.dispatch"):
            completed = table.dispatch(make_event())

        assert calls == ["first", "third", "wildcard"]
        assert completed == 3
        assert "Error in listener" in caplog.text

    def test_failure_does_not_affect_later_dispatches(self):
        table = ListenerDispatchTable()
        calls = []

        def flaky(event):
            calls.append("flaky")
            raise RuntimeError("nope")

        table.subscribe("task_updated", flaky)
        table.dispatch(make_event())
        table.dispatch(make_event())

        assert calls == ["flaky", "flaky"]

    def test_subscribe_during_dispatch_applies_to_next_dispatch(self):
        table = ListenerDispatchTable()
        calls = []

        def subscriber(event):
            calls.append("subscriber")
            table.subscribe("task_updated", lambda e: calls.append("late"))

        table.subscribe("task_updated", subscriber)
        table.dispatch(make_event())
        assert calls == ["subscriber"]


class TestUnsubscribe:

    def test_unsubscribe_twice_is_noop(self):
        table = ListenerDispatchTable()
        calls = []

        unsubscribe = table.subscribe("task_updated", lambda e: calls.append("a"))
        table.subscribe("task_updated", lambda e: calls.append("b"))

        unsubscribe()
        unsubscribe()

        table.dispatch(make_event())
        assert calls == ["b"]
        assert table.listener_count("task_updated") == 1

    def test_same_callback_registered_twice_removes_one(self):
        table = ListenerDispatchTable()
        calls = []

        def listener(event):
            calls.append("hit")

        first = table.subscribe("task_updated", listener)
        table.subscribe("task_updated", listener)

        first()
        first()

        table.dispatch(make_event())
        assert calls == ["hit"]

    def test_stale_unsubscribe_does_not_remove_new_registration(self):
        table = ListenerDispatchTable()
        calls = []

        def listener(event):
            calls.append("hit")

        old = table.subscribe("task_updated", listener)
        old()
        table.subscribe("task_updated", listener)
        old()

        table.dispatch(make_event())
        assert calls == ["hit"]

    def test_listener_count_and_clear(self):
        table = ListenerDispatchTable()
        table.subscribe("task_updated", lambda e: None)
        table.subscribe(WILDCARD, lambda e: None)

        assert table.listener_count() == 2
        assert table.listener_count(WILDCARD) == 1

        table.clear()
        assert table.listener_count() == 0
