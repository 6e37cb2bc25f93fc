"""Event bus delivery, subscriptions and history."""

from __future__ import annotations

import asyncio

import pytest

from control_tower.events import ACTIVITY_EVENTS, TICKET_CREATED, TICKET_UNBLOCKED, WILDCARD, EventBus


class TestDelivery:
    def test_sync_handler_runs_inline(self, bus):
        seen = []
        bus.on("ticket:queued", lambda e: seen.append(e.data["ticket_id"]))

        event = bus.emit("ticket:queued", "scheduler", {"ticket_id": "T-1"})

        assert seen == ["T-1"]
        assert event.source == "scheduler"
        assert event.timestamp

    def test_wildcard_sees_everything(self, bus):
        seen = []
        bus.on(WILDCARD, lambda e: seen.append(e.type))
        bus.emit("a", "x")
        bus.emit("b", "x")
        assert seen == ["a", "b"]

    def test_subscription_close_detaches(self, bus):
        seen = []
        sub = bus.on("a", lambda e: seen.append(e))
        assert bus.listener_count("a") == 1

        sub.close()
        sub.close()
        bus.emit("a", "x")

        assert seen == []
        assert bus.listener_count() == 0

    def test_failing_handler_is_logged_and_isolated(self, bus, log):
        seen = []

        def broken(event):
            raise RuntimeError("kaput")

        bus.on("a", broken)
        bus.on("a", lambda e: seen.append(e.type))
        bus.emit("a", "x")

        assert seen == ["a"]
        assert log.contains("[EventBus] Handler for a failed: kaput")

    def test_emitted_data_is_copied(self, bus):
        data = {"ticket_id": "T-1"}
        event = bus.emit("a", "x", data)
        data["ticket_id"] = "changed"
        assert event.data["ticket_id"] == "T-1"


class TestAsyncHandlers:
    @pytest.mark.asyncio
    async def test_async_handler_scheduled_and_drained(self, bus):
        seen = []

        async def handler(event):
            await asyncio.sleep(0)
            seen.append(event.data["n"])

        bus.on("a", handler)
        bus.emit("a", "x", {"n": 1})
        assert seen == []

        await bus.drain()
        assert seen == [1]

    @pytest.mark.asyncio
    async def test_async_failure_is_logged(self, bus, log):
        async def handler(event):
            raise ValueError("bad payload")

        bus.on("a", handler)
        bus.emit("a", "x")
        await bus.drain()

        assert log.contains("bad payload")

    def test_async_handler_outside_loop_is_reported(self, bus, log):
        async def handler(event):
            pass

        bus.on("a", handler)
        bus.emit("a", "x")
        assert log.contains("[EventBus] Handler for a failed")


class TestHistory:
    def test_filter_by_type_and_data(self, bus):
        bus.emit("ticket:retry", "x", {"ticket_id": "T-1", "attempt": 1})
        bus.emit("ticket:retry", "x", {"ticket_id": "T-2", "attempt": 1})
        bus.emit("ticket:queued", "x", {"ticket_id": "T-1"})

        assert len(bus.events("ticket:retry")) == 2
        assert [e.data["ticket_id"] for e in bus.events("ticket:retry", ticket_id="T-2")] == ["T-2"]

    def test_history_is_bounded(self):
        bus = EventBus(max_history=3)
        for i in range(5):
            bus.emit("a", "x", {"i": i})
        assert [e.data["i"] for e in bus.history] == [2, 3, 4]


class TestActivityEvents:
    def test_excludes_admission_events(self):
        assert set(ACTIVITY_EVENTS) == {
            "ticket:updated", "ticket:resolved", "task:completed",
            "task:verified", "task:started", "agent:completed",
        }
        assert TICKET_CREATED not in ACTIVITY_EVENTS
        assert TICKET_UNBLOCKED not in ACTIVITY_EVENTS
