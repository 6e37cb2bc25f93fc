"""Retry or escalate tickets that failed verification."""

from __future__ import annotations

from enum import Enum
from typing import Awaitable, Callable

from control_tower.agents.base import AgentHub
from control_tower.config import ConfigManager
from control_tower.events import TICKET_ESCALATED, TICKET_RETRY, EventBus
from control_tower.log_sink import LogSink
from control_tower.models import ProcessingStatus, Ticket, TicketStatus
from control_tower.router import Route
from control_tower.store import TicketStore
from control_tower.verifier import VerificationResult

MAX_PARENT_DEPTH = 10

Requeue = Callable[[Ticket, Route], Awaitable[object]]


class FailureOutcome(str, Enum):
    RETRIED = "retried"
    ESCALATED = "escalated"


def retry_suggestions(failure_details: str, confidence: float | None = None) -> list[str]:
    """Targeted advice for the next attempt, keyed off the failure text."""
    text = failure_details.lower()
    suggestions: list[str] = []

    if "clarity" in text or (confidence is not None and confidence < 60):
        suggestions.append("Be more specific and structured in the response")
        suggestions.append("Use clear headings, bullet points and code blocks to organise the output")
    if "incomplete" in text or "missing" in text or "does not contain" in text:
        suggestions.append("Address every acceptance criterion explicitly")
        suggestions.append("Re-read the ticket body and check each requirement is fulfilled")
    if "test" in text or "coverage" in text:
        suggestions.append("Add tests covering edge cases and error paths")
    if "format" in text or "style" in text:
        suggestions.append("Follow the output format expected for this deliverable type")
    if "error" in text or "bug" in text or "broken" in text:
        suggestions.append("Fix the errors reported above before resubmitting")

    if not suggestions:
        suggestions.append("Review the failure details carefully and address each point")
        suggestions.append("If the requirements are unclear, say what needs clarification")
    return suggestions


def _numbered(items: list[str], indent: str = "") -> str:
    return "\n".join(f"{indent}{i}. {item}" for i, item in enumerate(items, 1))


async def find_plan_id(store: TicketStore, ticket: Ticket, depth: int = 0) -> str | None:
    """Resolve the plan an escalated ticket belongs to.

    Own task, then the nearest task-linked ancestor, then the active plan,
    then any plan. Returns None rather than failing.
    """
    if depth > MAX_PARENT_DEPTH:
        return None

    if ticket.task_id:
        task = await store.get_task(ticket.task_id)
        if task:
            return task.plan_id
    if ticket.plan_id and await store.get_plan(ticket.plan_id):
        return ticket.plan_id

    if ticket.parent_ticket_id:
        parent = await store.get_ticket(ticket.parent_ticket_id)
        if parent:
            return await find_plan_id(store, parent, depth + 1)

    plans = await store.list_plans()
    for plan in plans:
        if plan.status == "active":
            return plan.id
    return plans[0].id if plans else None


class RetryEscalationManager:
    """Applies the retry bound to a failed ticket.

    Under the bound the ticket is counted, annotated and handed back to
    ``requeue``. At the bound it is escalated to a human, exactly once.
    """

    def __init__(
        self,
        store: TicketStore,
        hub: AgentHub,
        bus: EventBus,
        config: ConfigManager,
        log: LogSink,
        requeue: Requeue,
    ):
        self.store = store
        self.hub = hub
        self.bus = bus
        self.config = config
        self.log = log
        self.requeue = requeue

    async def handle_failure(self, ticket: Ticket, route: Route, result: VerificationResult) -> FailureOutcome:
        max_retries = self.config.get_config().max_ticket_retries
        details = result.failure_details or "Quality below threshold"
        suggestions = retry_suggestions(details, result.confidence)

        if ticket.retry_count < max_retries:
            await self._retry(ticket, route, details, suggestions, max_retries)
            return FailureOutcome.RETRIED

        await self._escalate(ticket, route, details, suggestions, max_retries)
        return FailureOutcome.ESCALATED

    async def _retry(
        self,
        ticket: Ticket,
        route: Route,
        details: str,
        suggestions: list[str],
        max_retries: int,
    ) -> None:
        attempt = ticket.retry_count + 1
        ticket = await self.store.update_ticket(
            ticket.id,
            retry_count=attempt,
            last_error=details,
            status=TicketStatus.OPEN,
            processing_status=ProcessingStatus.IDLE,
        )
        await self.store.add_reply(
            ticket.id,
            "system",
            f"Verification failed (attempt {attempt}/{max_retries}):\n"
            f"WHAT FAILED: {details}\n"
            f"SUGGESTIONS FOR NEXT ATTEMPT:\n{_numbered(suggestions, '  ')}",
        )
        self.log.append_line(f"[Escalation] {ticket.id} verification failed, auto-retry {attempt}/{max_retries}")
        self.bus.emit(TICKET_RETRY, "scheduler", {
            "ticket_id": ticket.id,
            "attempt": attempt,
            "max_retries": max_retries,
            "failure_details": details,
        })
        await self.requeue(ticket, route)

    async def _escalate(
        self,
        ticket: Ticket,
        route: Route,
        details: str,
        suggestions: list[str],
        max_retries: int,
    ) -> None:
        plan_id = await find_plan_id(self.store, ticket)
        if plan_id is None:
            self.log.append_line(f"[Escalation] No plan found for {ticket.id}, escalating without a plan reference")

        await self.store.update_ticket(
            ticket.id,
            status=TicketStatus.ESCALATED,
            processing_status=ProcessingStatus.AWAITING_USER,
            last_error=details,
            escalation_plan_id=plan_id,
        )

        attempts = ticket.retry_count + 1
        message = (
            f'The system tried to complete "{ticket.title}" {attempts} time(s) but could not get it right.\n\n'
            f"What went wrong: {details}\n\n"
            f"Suggestions that were tried:\n{_numbered(suggestions)}\n\n"
            f"What would you like to do?"
        )
        author = "clarity"
        try:
            message = await self.hub.rewrite_for_user(message)
        except Exception as e:
            self.log.append_line(f"[Escalation] Rewrite for {ticket.id} failed, using raw message: {e}")
            author = "system"
        await self.store.add_reply(ticket.id, author, message)

        await self.store.add_audit_log(
            "escalation",
            "ticket_escalated",
            f"{ticket.id} after {attempts} attempt(s) via {route.agent.value}: {details}",
        )
        self.log.append_line(f"[Escalation] {ticket.id} max retries ({max_retries}) reached, escalating to user")
        self.bus.emit(TICKET_ESCALATED, "scheduler", {
            "ticket_id": ticket.id,
            "plan_id": plan_id,
            "attempts": attempts,
            "failure_details": details,
        })
