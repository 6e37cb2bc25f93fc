"""The per-ticket pipeline: assessment, specialist, review, verification."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Awaitable

import aiosqlite

from control_tower.agents.base import AgentHub
from control_tower.config import ConfigManager
from control_tower.escalation import FailureOutcome, RetryEscalationManager
from control_tower.events import (
    TICKET_PROCESSING_COMPLETED,
    TICKET_PROCESSING_STARTED,
    TICKET_REVIEW_FLAGGED,
    TICKET_VERIFICATION_FAILED,
    TICKET_VERIFICATION_PASSED,
    EventBus,
)
from control_tower.log_sink import LogSink
from control_tower.models import AgentResponse, ProcessingStatus, Ticket, TicketStatus
from control_tower.router import Agent, Route
from control_tower.store import TicketStore
from control_tower.verifier import VerificationResult, verify

HISTORY_REPLIES = 5

ASSESSMENT_PROMPT = """\
TICKET ASSESSMENT: you are assessing a ticket before the {agent} agent works on it.

Ticket: "{title}" ({ticket_id})
Type: {operation_type}
Priority: {priority}
Acceptance Criteria: {criteria}

Provide:
1. A brief assessment of what needs to be done
2. Key requirements and constraints for the specialist
3. Risks or dependencies to watch for
4. Success criteria the final output should meet

Original ticket body:
{body}"""


class PipelineOutcome(str, Enum):
    RESOLVED = "resolved"
    RETRIED = "retried"
    ESCALATED = "escalated"
    HELD = "held"
    SKIPPED = "skipped"


class _StepFailed(Exception):
    def __init__(self, step: str, error: Exception):
        super().__init__(f"{step} failed: {error}")
        self.step = step
        self.error = error


async def _step(step: str, call: Awaitable[Any]) -> Any:
    try:
        return await call
    except aiosqlite.Error:
        raise
    except Exception as e:
        raise _StepFailed(step, e) from e


class TicketPipeline:
    """Runs one admitted ticket to a verdict.

    Agent failures are caught here and become verification failures; store
    errors propagate to the caller.
    """

    def __init__(
        self,
        store: TicketStore,
        hub: AgentHub,
        bus: EventBus,
        config: ConfigManager,
        log: LogSink,
        escalation: RetryEscalationManager,
    ):
        self.store = store
        self.hub = hub
        self.bus = bus
        self.config = config
        self.log = log
        self.escalation = escalation

    async def run(self, ticket_id: str, route: Route) -> PipelineOutcome:
        ticket = await self.store.get_ticket(ticket_id)
        if ticket is None or ticket.is_terminal or ticket.processing_status == ProcessingStatus.HOLDING:
            self.log.append_line(f"[Pipeline] {ticket_id} no longer eligible, skipping")
            return PipelineOutcome.SKIPPED

        started = time.monotonic()
        ticket = await self._start(ticket, route)

        try:
            if route.is_directive:
                response = await _step("boss", self.execute_specialist(ticket, route, None))
            else:
                assessment = await _step("assessment", self.assess(ticket, route))
                response = await _step(route.agent.value, self.execute_specialist(ticket, route, assessment))
                if not route.is_communication:
                    review = await _step("review", self.review(ticket, response))
                    if review.has_action("escalate"):
                        await self._hold(ticket, review)
                        return PipelineOutcome.HELD
        except _StepFailed as e:
            if await self._cancelled(ticket.id):
                return PipelineOutcome.SKIPPED
            return await self._agent_failed(ticket, route, e)

        if await self._cancelled(ticket.id):
            return PipelineOutcome.SKIPPED
        result = verify(ticket, route, response, self.config.get_config())
        if result.passed:
            await self._resolve(ticket, route, result, time.monotonic() - started)
            return PipelineOutcome.RESOLVED
        return await self._fail(ticket, route, result)

    # ── Steps ─────────────────────────────────────────────────────────

    async def assess(self, ticket: Ticket, route: Route) -> AgentResponse | None:
        """Orchestrator assessment. None when the orchestrator is switched off."""
        if not self.config.get_config().agent_enabled(Agent.ORCHESTRATOR.value):
            return None

        replies = await self.store.get_replies(ticket.id)
        history = [
            {"author": r.author, "body": r.body, "created_at": r.created_at}
            for r in replies[-HISTORY_REPLIES:]
        ]
        message = ASSESSMENT_PROMPT.format(
            agent=route.agent.value,
            title=ticket.title,
            ticket_id=ticket.id,
            operation_type=ticket.operation_type.value,
            priority=ticket.priority.value,
            criteria=ticket.acceptance_criteria or "None specified",
            body=ticket.prompt_text,
        )
        return await self.hub.call_agent(
            Agent.ORCHESTRATOR,
            message,
            {"ticket": ticket.to_context(), "conversation_history": history},
        )

    async def execute_specialist(
        self,
        ticket: Ticket,
        route: Route,
        assessment: AgentResponse | None,
    ) -> AgentResponse:
        context: dict[str, Any] = {
            "ticket": ticket.to_context(),
            "deliverable_type": ticket.operation_type.value,
        }
        if assessment is not None:
            context["assessment"] = assessment.content

        response = await self.hub.call_agent(route.agent, self._specialist_message(ticket), context)
        await self.store.add_reply(ticket.id, route.agent.value, response.content, clarity_score=response.confidence)
        return response

    async def review(self, ticket: Ticket, response: AgentResponse) -> AgentResponse:
        review = await self.hub.review_ticket(ticket, response.content)
        await self.store.add_reply(ticket.id, Agent.REVIEW.value, review.content, clarity_score=review.confidence)
        return review

    def _specialist_message(self, ticket: Ticket) -> str:
        if ticket.retry_count == 0:
            return ticket.prompt_text
        return (
            f"{ticket.prompt_text}\n\n"
            f"--- Previous Attempts ({ticket.retry_count} failed) ---\n"
            f"This is attempt #{ticket.retry_count + 1}. "
            f"Last failure: {ticket.last_error or 'unknown'}\n\n"
            f"Please try a different approach to address the issues from previous attempts."
        )

    # ── Transitions ───────────────────────────────────────────────────

    async def _cancelled(self, ticket_id: str) -> bool:
        current = await self.store.get_ticket(ticket_id)
        if current is not None and current.status != TicketStatus.ON_HOLD:
            return False
        self.log.append_line(f"[Pipeline] {ticket_id} was cancelled while running, dropping the result")
        return True

    async def _start(self, ticket: Ticket, route: Route) -> Ticket:
        ticket = await self.store.update_ticket(
            ticket.id,
            status=TicketStatus.IN_REVIEW,
            processing_status=ProcessingStatus.PROCESSING,
            processing_agent=route.agent.value,
        )
        self.log.append_line(
            f"[Pipeline] {ticket.id} started → {route.agent.value} ({route.queue_class.value} lane)"
        )
        self.bus.emit(TICKET_PROCESSING_STARTED, "scheduler", {
            "ticket_id": ticket.id,
            "agent": route.agent.value,
            "queue": route.queue_class.value,
            "attempt": ticket.retry_count + 1,
        })
        return ticket

    async def _resolve(self, ticket: Ticket, route: Route, result: VerificationResult, elapsed: float) -> None:
        await self.store.update_ticket(
            ticket.id,
            status=TicketStatus.RESOLVED,
            processing_status=ProcessingStatus.IDLE,
            last_error=None,
        )
        self.log.append_line(
            f"[Pipeline] {ticket.id} resolved by {route.agent.value} "
            f"(confidence {result.confidence:g}, {elapsed:.1f}s)"
        )
        self.bus.emit(TICKET_VERIFICATION_PASSED, "scheduler", {
            "ticket_id": ticket.id,
            "confidence": result.confidence,
            "attempt": result.attempt_number,
        })
        self.bus.emit(TICKET_PROCESSING_COMPLETED, "scheduler", {
            "ticket_id": ticket.id,
            "agent": route.agent.value,
            "duration_seconds": round(elapsed, 3),
        })

    async def _hold(self, ticket: Ticket, review: AgentResponse) -> None:
        reason = next(
            (a.payload.get("reason") for a in review.actions if a.type == "escalate" and a.payload.get("reason")),
            "Review requested human attention",
        )
        await self.store.update_ticket(ticket.id, processing_status=ProcessingStatus.HOLDING)
        self.log.append_line(f"[Pipeline] {ticket.id} held for human review: {reason}")
        self.bus.emit(TICKET_REVIEW_FLAGGED, "scheduler", {"ticket_id": ticket.id, "reason": reason})

    async def _agent_failed(self, ticket: Ticket, route: Route, failure: _StepFailed) -> PipelineOutcome:
        details = f"Agent error during {failure.step}: {failure.error}"
        self.log.append_line(f"[Pipeline] {ticket.id} {details}")
        await self.store.add_reply(ticket.id, "system", details)
        ticket = await self.store.update_ticket(ticket.id, last_error=details)
        result = VerificationResult(
            passed=False,
            confidence=0,
            deliverable_check=False,
            attempt_number=ticket.retry_count + 1,
            failure_details=details,
        )
        return await self._fail(ticket, route, result)

    async def _fail(self, ticket: Ticket, route: Route, result: VerificationResult) -> PipelineOutcome:
        self.bus.emit(TICKET_VERIFICATION_FAILED, "scheduler", {
            "ticket_id": ticket.id,
            "attempt": result.attempt_number,
            "confidence": result.confidence,
            "failure_details": result.failure_details,
        })
        outcome = await self.escalation.handle_failure(ticket, route, result)
        if outcome == FailureOutcome.RETRIED:
            return PipelineOutcome.RETRIED
        return PipelineOutcome.ESCALATED
