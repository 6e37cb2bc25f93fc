"""End-to-end scheduler behaviour against a scripted agent hub."""

from __future__ import annotations

import asyncio

import pytest

from control_tower.events import (
    TICKET_CANCELLED,
    TICKET_CREATED,
    TICKET_ESCALATED,
    TICKET_PROCESSING_COMPLETED,
    TICKET_PROCESSING_STARTED,
    TICKET_RETRY,
    TICKET_REVIEW_FLAGGED,
    TICKET_UNBLOCKED,
    TICKET_VERIFICATION_FAILED,
    TICKET_VERIFICATION_PASSED,
)
from control_tower.models import (
    AgentAction,
    AgentResponse,
    OperationType,
    ProcessingStatus,
    TicketStatus,
)
from control_tower.queues import AdmissionResult
from control_tower.router import Agent

TASKS_CREATED = AgentResponse(content="Created 3 tasks: schema, API, UI.", confidence=90)


async def _announce(store, bus, title, **kwargs):
    ticket = await store.create_ticket(title, **kwargs)
    bus.emit(TICKET_CREATED, "test", {"ticket_id": ticket.id})
    return ticket


class TestPipelineOutcomes:
    @pytest.mark.asyncio
    async def test_task_generation_resolves(self, scheduler, store, bus, hub):
        hub.script(Agent.PLANNING, TASKS_CREATED)
        await scheduler.start()

        t = await _announce(
            store, bus, "Phase: Task Generation for auth",
            operation_type=OperationType.PLAN_GENERATION,
            acceptance_criteria="Tasks are created",
        )
        await scheduler.wait_until_idle()

        assert hub.agents_called(t.id) == [Agent.ORCHESTRATOR, Agent.PLANNING, Agent.REVIEW]
        done = await store.get_ticket(t.id)
        assert done.status == TicketStatus.RESOLVED
        assert done.processing_status == ProcessingStatus.IDLE
        assert bus.events(TICKET_VERIFICATION_PASSED, ticket_id=t.id)
        assert bus.events(TICKET_PROCESSING_COMPLETED, ticket_id=t.id)[0].data["agent"] == "planning"

        authors = [r.author for r in await store.get_replies(t.id)]
        assert authors == ["planning", "review"]

    @pytest.mark.asyncio
    async def test_bad_deliverable_retries_then_escalates_once(self, scheduler, store, bus, hub):
        hub.script(Agent.PLANNING, AgentResponse(content="OK", confidence=90))
        await scheduler.start()

        t = await _announce(
            store, bus, "Phase: Task Generation for billing",
            operation_type=OperationType.PLAN_GENERATION,
            acceptance_criteria="Tasks are created",
        )
        await scheduler.wait_until_idle()

        assert hub.agents_called(t.id).count(Agent.PLANNING) == 4
        assert [e.data["attempt"] for e in bus.events(TICKET_RETRY, ticket_id=t.id)] == [1, 2, 3]
        assert [e.data["attempt"] for e in bus.events(TICKET_PROCESSING_STARTED, ticket_id=t.id)] == [1, 2, 3, 4]
        assert len(bus.events(TICKET_VERIFICATION_FAILED, ticket_id=t.id)) == 4
        assert len(bus.events(TICKET_ESCALATED, ticket_id=t.id)) == 1

        final = await store.get_ticket(t.id)
        assert final.status == TicketStatus.ESCALATED
        assert final.processing_status == ProcessingStatus.AWAITING_USER
        assert final.retry_count == 3

    @pytest.mark.asyncio
    async def test_retry_message_carries_previous_failure(self, scheduler, store, bus, hub, config):
        config.update(max_ticket_retries=1)
        hub.script(Agent.CODING, AgentResponse(content="Looks fine to me", confidence=90))
        await scheduler.start()

        t = await _announce(store, bus, "Coding: add login", operation_type=OperationType.CODE_GENERATION,
                            acceptance_criteria="Login form exists")
        await scheduler.wait_until_idle()

        coding = [c for c in hub.calls if c.agent == Agent.CODING]
        assert "Previous Attempts" not in coding[0].message
        assert "--- Previous Attempts (1 failed) ---" in coding[1].message
        assert "recognisable code" in coding[1].message

    @pytest.mark.asyncio
    async def test_configuration_phase_is_never_processed(self, scheduler, store, bus, hub):
        await scheduler.start()
        t = await _announce(store, bus, "Phase: Configuration of env vars")
        await scheduler.wait_until_idle()

        assert hub.calls == []
        assert (await store.get_ticket(t.id)).status == TicketStatus.OPEN
        assert len(scheduler.general_queue) == 0

    @pytest.mark.asyncio
    async def test_directive_runs_only_boss_in_supervisor_lane(self, scheduler, store, bus, hub):
        await scheduler.start()
        t = await _announce(store, bus, "Pause all coding work", operation_type=OperationType.BOSS_DIRECTIVE)
        await scheduler.wait_until_idle()

        assert hub.agents_called(t.id) == [Agent.BOSS]
        assert bus.events(TICKET_PROCESSING_STARTED, ticket_id=t.id)[0].data["queue"] == "supervisor"
        assert (await store.get_ticket(t.id)).status == TicketStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_ghost_ticket_skips_review(self, scheduler, store, bus, hub):
        await scheduler.start()
        t = await _announce(store, bus, "What does done mean here?", is_ghost=True)
        await scheduler.wait_until_idle()

        assert hub.agents_called(t.id) == [Agent.ORCHESTRATOR, Agent.CLARITY]
        assert (await store.get_ticket(t.id)).status == TicketStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_low_confidence_ghost_is_retried(self, scheduler, store, bus, hub, config):
        config.update(max_ticket_retries=1)
        hub.script(Agent.CLARITY, AgentResponse("Not sure", 60), AgentResponse("Clear answer", 92))
        await scheduler.start()

        t = await _announce(store, bus, "Question", is_ghost=True)
        await scheduler.wait_until_idle()

        assert (await store.get_ticket(t.id)).status == TicketStatus.RESOLVED
        assert len(bus.events(TICKET_RETRY, ticket_id=t.id)) == 1

    @pytest.mark.asyncio
    async def test_review_escalation_holds_ticket(self, scheduler, store, bus, hub):
        hub.script(Agent.REVIEW, AgentResponse(
            "This touches payments.", 50,
            actions=[AgentAction("escalate", {"reason": "Security sensitive change"})],
        ))
        await scheduler.start()

        t = await _announce(store, bus, "Coding: payment webhook")
        await scheduler.wait_until_idle()

        held = await store.get_ticket(t.id)
        assert held.processing_status == ProcessingStatus.HOLDING
        assert held.status == TicketStatus.IN_REVIEW
        assert bus.events(TICKET_REVIEW_FLAGGED)[0].data == {
            "ticket_id": t.id, "reason": "Security sensitive change",
        }
        assert bus.events(TICKET_VERIFICATION_PASSED) == []

        assert await scheduler.recover_stuck_tickets() == 0

    @pytest.mark.asyncio
    async def test_agent_exception_counts_as_failure(self, scheduler, store, bus, hub, config):
        config.update(max_ticket_retries=0)
        hub.script(Agent.CODING, RuntimeError("rate limited"))
        await scheduler.start()

        t = await _announce(store, bus, "Coding: cache layer")
        await scheduler.wait_until_idle()

        assert hub.agents_called(t.id) == [Agent.ORCHESTRATOR, Agent.CODING]
        final = await store.get_ticket(t.id)
        assert final.status == TicketStatus.ESCALATED
        assert final.last_error == "Agent error during coding: rate limited"
        bodies = [r.body for r in await store.get_replies(t.id)]
        assert "Agent error during coding: rate limited" in bodies

    @pytest.mark.asyncio
    async def test_orchestrator_disabled_skips_assessment(self, scheduler, store, bus, hub, config):
        config.update(agents={"orchestrator": {"enabled": False}})
        await scheduler.start()

        t = await _announce(store, bus, "Verify: login works")
        await scheduler.wait_until_idle()

        assert hub.agents_called(t.id) == [Agent.VERIFICATION, Agent.REVIEW]


class TestGating:
    @pytest.mark.asyncio
    async def test_manual_mode_gates_work_but_not_directives(self, scheduler, store, bus, hub, config):
        config.update(ai_mode="manual")
        await scheduler.start()

        gated = await _announce(store, bus, "Coding: a")
        override = await _announce(store, bus, "Coding: b", body="Do it.\nAI Level: smart")
        directive = await _announce(store, bus, "Reprioritise", operation_type=OperationType.BOSS_DIRECTIVE)
        await scheduler.wait_until_idle()

        assert hub.agents_called(gated.id) == []
        assert (await store.get_ticket(gated.id)).processing_status == ProcessingStatus.IDLE
        assert hub.agents_called(override.id) == [Agent.ORCHESTRATOR, Agent.CODING, Agent.REVIEW]
        assert hub.agents_called(directive.id) == [Agent.BOSS]

    @pytest.mark.asyncio
    async def test_manual_override_on_ticket(self, scheduler, store, hub):
        t = await store.create_ticket("Coding: a", body="AI Level: Manual")
        assert await scheduler.enqueue_ticket(t.id) is None
        assert len(scheduler.general_queue) == 0

    @pytest.mark.asyncio
    async def test_unknown_ticket_is_ignored(self, scheduler, log):
        assert await scheduler.enqueue_ticket("TK-missing") is None
        assert log.contains("TK-missing not found")


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_general_lane_respects_max_parallel(self, scheduler, store, bus, hub, config):
        hub.delay = 0.02
        config.update(max_parallel_tickets=2)
        await scheduler.start()

        ids = [(await _announce(store, bus, f"Coding: part {i}")).id for i in range(5)]
        await scheduler.wait_until_idle()

        assert hub.max_running == 2
        for tid in ids:
            assert (await store.get_ticket(tid)).status == TicketStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_supervisor_lane_is_serial(self, scheduler, store, bus, hub):
        hub.delay = 0.02
        await scheduler.start()

        for i in range(3):
            await _announce(store, bus, f"Directive {i}", operation_type=OperationType.BOSS_DIRECTIVE)
        await scheduler.wait_until_idle()

        assert hub.agents_called().count(Agent.BOSS) == 3
        assert hub.max_running == 1

    @pytest.mark.asyncio
    async def test_priority_order_within_lane(self, scheduler, store, hub, config):
        config.update(max_parallel_tickets=1)
        hub.delay = 0.01
        first = await store.create_ticket("Coding: first", priority="P2")
        low = await store.create_ticket("Coding: low", priority="P3")
        urgent = await store.create_ticket("Coding: urgent", priority="P1")

        await scheduler.enqueue_ticket(first.id)
        await scheduler.enqueue_ticket(low.id)
        await scheduler.enqueue_ticket(urgent.id)
        await scheduler.wait_until_idle()

        order = [c.ticket_id for c in hub.calls if c.agent == Agent.CODING]
        assert order == [first.id, urgent.id, low.id]

    @pytest.mark.asyncio
    async def test_capacity_backlog_drains(self, scheduler, store, bus, hub, config, log):
        hub.delay = 0.01
        config.update(max_active_tickets=1, max_parallel_tickets=1)
        await scheduler.start()

        ids = []
        for i in range(3):
            ids.append((await _announce(store, bus, f"Coding: {i}")).id)
            await bus.drain()
        await scheduler.wait_until_idle()

        assert log.contains("Ticket limit reached (1)")
        for tid in ids:
            assert (await store.get_ticket(tid)).status == TicketStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_evicted_ticket_is_readmitted(self, scheduler, store, hub, config, log):
        hub.delay = 0.02
        config.update(max_active_tickets=2, max_parallel_tickets=1)
        running = await store.create_ticket("Coding: running", priority="P2")
        low = await store.create_ticket("Coding: low", priority="P3")
        urgent = await store.create_ticket("Coding: urgent", priority="P1")

        await scheduler.enqueue_ticket(running.id)
        await scheduler.enqueue_ticket(low.id)
        assert await scheduler.enqueue_ticket(urgent.id) == AdmissionResult.ADMITTED
        assert log.contains(f"Bumped P3 ticket {low.id}")
        assert low.id not in scheduler._routes

        await scheduler.wait_until_idle()

        for tid in (running.id, low.id, urgent.id):
            assert (await store.get_ticket(tid)).status == TicketStatus.RESOLVED
        order = [c.ticket_id for c in hub.calls if c.agent == Agent.CODING]
        assert order == [running.id, urgent.id, low.id]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_admits_backlog_and_recovers(self, scheduler, store, hub):
        waiting = await store.create_ticket("Coding: left over")
        stuck = await store.create_ticket("Verify: crashed mid-run")
        await store.update_ticket(stuck.id, status=TicketStatus.IN_REVIEW, processing_status=ProcessingStatus.PROCESSING)

        await scheduler.start()
        await scheduler.wait_until_idle()

        for tid in (waiting.id, stuck.id):
            assert (await store.get_ticket(tid)).status == TicketStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_unblocked_event_admits(self, scheduler, store, bus, hub):
        await scheduler.start()
        t = await store.create_ticket("Coding: was blocked")
        await store.update_ticket(t.id, processing_status=ProcessingStatus.AWAITING_USER)
        await store.update_ticket(t.id, processing_status=ProcessingStatus.IDLE)
        bus.emit(TICKET_UNBLOCKED, "test", {"ticket_id": t.id})
        await scheduler.wait_until_idle()

        assert (await store.get_ticket(t.id)).status == TicketStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_children_enqueued_when_parent_resolves(self, scheduler, store, bus, hub):
        await scheduler.start()
        await scheduler.wait_until_idle()

        parent = await store.create_ticket("Coding: parent")
        child = await store.create_ticket("Verify: child", parent_ticket_id=parent.id)
        bus.emit(TICKET_CREATED, "test", {"ticket_id": parent.id})
        await scheduler.wait_until_idle()

        assert (await store.get_ticket(child.id)).status == TicketStatus.RESOLVED
        assert hub.agents_called().index(Agent.VERIFICATION) > hub.agents_called().index(Agent.CODING)
        assert any(f"Parent ticket {parent.id} resolved" in r.body for r in await store.get_replies(child.id))

    @pytest.mark.asyncio
    async def test_dispose_stops_admission(self, scheduler, store, bus, hub):
        await scheduler.start()
        scheduler.dispose()

        t = await _announce(store, bus, "Coding: too late")
        await scheduler.wait_until_idle()

        assert hub.calls == []
        assert len(scheduler.general_queue) == 0
        assert bus.listener_count(TICKET_CREATED) == 0
        assert (await store.get_ticket(t.id)).processing_status == ProcessingStatus.IDLE
        assert await scheduler.enqueue_ticket(t.id) is None
        with pytest.raises(RuntimeError):
            await scheduler.start()

    @pytest.mark.asyncio
    async def test_dispose_during_admission_leaves_ticket_idle(self, scheduler, store, hub, monkeypatch):
        real_admit = scheduler.admission.admit

        async def admit_then_dispose(*args, **kwargs):
            result = await real_admit(*args, **kwargs)
            scheduler.dispose()
            return result

        monkeypatch.setattr(scheduler.admission, "admit", admit_then_dispose)
        t = await store.create_ticket("Coding: raced")

        assert await scheduler.enqueue_ticket(t.id) == AdmissionResult.ADMITTED
        await scheduler.wait_until_idle()

        assert hub.calls == []
        assert len(scheduler.general_queue) == 0
        assert (await store.get_ticket(t.id)).processing_status == ProcessingStatus.IDLE

    @pytest.mark.asyncio
    async def test_get_status(self, scheduler):
        await scheduler.start()
        status = scheduler.get_status()

        assert status["queue_size"] == 0
        assert status["max_slots"] == 3
        assert status["is_processing"] is False
        assert status["disposed"] is False
        assert {"general_queue_size", "supervisor_queue_size", "active_slots", "boss_state",
                "next_check_seconds", "idle_minutes", "last_activity"} <= set(status)

        scheduler.dispose()
        assert scheduler.get_status()["disposed"] is True


class TestCancelAndReengage:
    @pytest.mark.asyncio
    async def test_cancel_queued_ticket(self, scheduler, store, bus, hub, config):
        config.update(max_parallel_tickets=1)
        hub.delay = 0.02
        running = await store.create_ticket("Coding: running")
        waiting = await store.create_ticket("Coding: waiting")
        await scheduler.enqueue_ticket(running.id)
        assert await scheduler.enqueue_ticket(waiting.id) == AdmissionResult.ADMITTED

        assert await scheduler.cancel_ticket(waiting.id) is True
        await scheduler.wait_until_idle()

        assert hub.agents_called(waiting.id) == []
        cancelled = await store.get_ticket(waiting.id)
        assert cancelled.status == TicketStatus.ON_HOLD
        assert bus.events(TICKET_CANCELLED, ticket_id=waiting.id)
        assert await scheduler.cancel_ticket(waiting.id) is False

    @pytest.mark.asyncio
    async def test_cancel_running_ticket_drops_result(self, scheduler, store, bus, hub, log):
        hub.delay = 0.05
        t = await store.create_ticket("Coding: slow")
        await scheduler.enqueue_ticket(t.id)
        await asyncio.sleep(0.02)
        assert scheduler.is_busy()

        assert await scheduler.cancel_ticket(t.id) is True
        await scheduler.wait_until_idle()

        assert (await store.get_ticket(t.id)).status == TicketStatus.ON_HOLD
        assert bus.events(TICKET_VERIFICATION_PASSED) == []
        assert log.contains("cancelled while running")

    @pytest.mark.asyncio
    async def test_reengage_resets_retry_budget(self, scheduler, store, hub):
        t = await store.create_ticket("Coding: retry me")
        await store.update_ticket(
            t.id, status=TicketStatus.ESCALATED,
            processing_status=ProcessingStatus.AWAITING_USER, retry_count=3,
        )

        assert await scheduler.reengage_ticket(t.id) == AdmissionResult.ADMITTED
        await scheduler.wait_until_idle()

        final = await store.get_ticket(t.id)
        assert final.status == TicketStatus.RESOLVED
        assert final.retry_count == 0

    @pytest.mark.asyncio
    async def test_reengage_open_ticket_raises(self, scheduler, store):
        t = await store.create_ticket("Coding: fine")
        with pytest.raises(ValueError, match="nothing to re-engage"):
            await scheduler.reengage_ticket(t.id)
