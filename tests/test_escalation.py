"""Retry bound, escalation and plan lookup."""

from __future__ import annotations

import pytest

from control_tower.escalation import (
    FailureOutcome,
    RetryEscalationManager,
    find_plan_id,
    retry_suggestions,
)
from control_tower.events import TICKET_ESCALATED, TICKET_RETRY
from control_tower.models import ProcessingStatus, TicketStatus
from control_tower.router import route
from control_tower.verifier import VerificationResult


def _failed(details: str = "Clarity score 40 below threshold 70", confidence: float = 40) -> VerificationResult:
    return VerificationResult(
        passed=False, confidence=confidence, deliverable_check=True,
        attempt_number=1, failure_details=details,
    )


class TestRetrySuggestions:
    def test_low_clarity(self):
        tips = retry_suggestions("Clarity score 40 below threshold 70", 40)
        assert any("specific" in t for t in tips)

    def test_missing_content(self):
        tips = retry_suggestions("Response does not contain recognisable code", 90)
        assert any("acceptance criterion" in t for t in tips)

    def test_generic_fallback(self):
        tips = retry_suggestions("Something odd", 90)
        assert tips[0].startswith("Review the failure details")


class TestFindPlanId:
    @pytest.mark.asyncio
    async def test_own_task_wins(self, store):
        plan = await store.create_plan("A")
        other = await store.create_plan("B", status="active")
        task = await store.create_task(plan.id, "t")
        t = await store.create_ticket("x", task_id=task.id, plan_id=other.id)
        assert await find_plan_id(store, t) == plan.id

    @pytest.mark.asyncio
    async def test_parent_chain(self, store):
        plan = await store.create_plan("A")
        await store.create_plan("B", status="active")
        task = await store.create_task(plan.id, "t")
        root = await store.create_ticket("root", task_id=task.id)
        mid = await store.create_ticket("mid", parent_ticket_id=root.id)
        leaf = await store.create_ticket("leaf", parent_ticket_id=mid.id)
        assert await find_plan_id(store, leaf) == plan.id

    @pytest.mark.asyncio
    async def test_active_then_first_plan(self, store):
        t = await store.create_ticket("x")
        assert await find_plan_id(store, t) is None

        first = await store.create_plan("first")
        assert await find_plan_id(store, t) == first.id

        active = await store.create_plan("live", status="active")
        assert await find_plan_id(store, t) == active.id

    @pytest.mark.asyncio
    async def test_parent_cycle_terminates(self, store):
        a = await store.create_ticket("a", ticket_id="T-a", parent_ticket_id="T-b")
        await store.create_ticket("b", ticket_id="T-b", parent_ticket_id="T-a")
        assert await find_plan_id(store, a) is None


class TestRetryEscalationManager:
    @pytest.fixture
    def requeued(self):
        return []

    @pytest.fixture
    def manager(self, store, hub, bus, config, log, requeued):
        async def requeue(ticket, ticket_route):
            requeued.append(ticket.id)

        return RetryEscalationManager(store, hub, bus, config, log, requeue)

    @pytest.mark.asyncio
    async def test_retry_under_bound(self, store, bus, manager, requeued):
        t = await store.create_ticket("Coding: a")
        await store.update_ticket(t.id, status=TicketStatus.IN_REVIEW, processing_status=ProcessingStatus.PROCESSING)

        outcome = await manager.handle_failure(t, route(t), _failed())

        assert outcome == FailureOutcome.RETRIED
        assert requeued == [t.id]
        updated = await store.get_ticket(t.id)
        assert updated.retry_count == 1
        assert updated.status == TicketStatus.OPEN
        assert updated.processing_status == ProcessingStatus.IDLE
        assert updated.last_error.startswith("Clarity score")
        reply = (await store.get_replies(t.id))[-1]
        assert reply.author == "system"
        assert "attempt 1/3" in reply.body
        assert "SUGGESTIONS FOR NEXT ATTEMPT" in reply.body
        assert bus.events(TICKET_RETRY)[0].data["attempt"] == 1

    @pytest.mark.asyncio
    async def test_escalate_at_bound(self, store, bus, hub, manager, requeued):
        plan = await store.create_plan("Launch", status="active")
        t = await store.create_ticket("Coding: a")
        t = await store.update_ticket(t.id, retry_count=3)

        outcome = await manager.handle_failure(t, route(t), _failed())

        assert outcome == FailureOutcome.ESCALATED
        assert requeued == []
        updated = await store.get_ticket(t.id)
        assert updated.status == TicketStatus.ESCALATED
        assert updated.processing_status == ProcessingStatus.AWAITING_USER
        assert updated.escalation_plan_id == plan.id

        reply = (await store.get_replies(t.id))[-1]
        assert reply.author == "clarity"
        assert reply.body.startswith("In plain words:")
        assert "4 time(s)" in hub.rewrites[0]

        events = bus.events(TICKET_ESCALATED)
        assert len(events) == 1
        assert events[0].data == {
            "ticket_id": t.id,
            "plan_id": plan.id,
            "attempts": 4,
            "failure_details": "Clarity score 40 below threshold 70",
        }
        audit = await store.get_audit_log()
        assert audit[0]["action"] == "ticket_escalated"

    @pytest.mark.asyncio
    async def test_rewrite_failure_falls_back_to_raw_message(self, store, hub, log, manager):
        hub.rewrite_error = RuntimeError("llm down")
        t = await store.create_ticket("Coding: a")
        t = await store.update_ticket(t.id, retry_count=3)

        await manager.handle_failure(t, route(t), _failed())

        reply = (await store.get_replies(t.id))[-1]
        assert reply.author == "system"
        assert "What would you like to do?" in reply.body
        assert log.contains("Rewrite for")
        assert (await store.get_ticket(t.id)).escalation_plan_id is None

    @pytest.mark.asyncio
    async def test_zero_retries_escalates_immediately(self, store, config, manager, requeued):
        config.update(max_ticket_retries=0)
        t = await store.create_ticket("Coding: a")

        assert await manager.handle_failure(t, route(t), _failed()) == FailureOutcome.ESCALATED
        assert requeued == []
