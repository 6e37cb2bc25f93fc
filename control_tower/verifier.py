"""Deliverable verification for finished pipeline runs."""

from __future__ import annotations

import re
from dataclasses import dataclass

from control_tower.config import SchedulerConfig
from control_tower.models import AgentResponse, OperationType, Ticket
from control_tower.router import Route

ERROR_MARKERS = ("400 bad request", "llm api error")
PLAN_ERROR_MARKERS = ERROR_MARKERS + ("could not auto-generate", "no_json_found", "no valid json")

_JSON_TASKS_RE = re.compile(r"\{[\s\S]*\"tasks\"\s*:\s*\[")
_CODE_RE = re.compile(r"```|\bdef\s+\w|\bclass\s+\w|\bfunction\b|\bimport\s+\w|\bconst\s+\w")
_DESIGN_WORDS = ("component", "page", "layout", "design")


@dataclass
class VerificationResult:
    passed: bool
    confidence: float
    deliverable_check: bool
    attempt_number: int
    failure_details: str | None = None


def _has_error_marker(lower: str, markers: tuple[str, ...] = ERROR_MARKERS) -> bool:
    return any(m in lower for m in markers)


def check_deliverable(operation_type: OperationType, content: str) -> tuple[bool, str | None]:
    """Content check for one deliverable type. Returns (ok, failure details)."""
    lower = content.lower()

    if operation_type == OperationType.PLAN_GENERATION:
        if _has_error_marker(lower, PLAN_ERROR_MARKERS):
            return False, "Plan generation failed due to LLM errors, no structured tasks were produced"
        created_tasks = "task" in lower and ("created" in lower or "generated" in lower)
        if created_tasks or _JSON_TASKS_RE.search(content):
            return True, None
        return False, "Response does not contain task generation content (no tasks created, no JSON tasks found)"

    if operation_type == OperationType.DESIGN_CHANGE:
        if _has_error_marker(lower):
            return False, "Design generation failed due to LLM errors"
        if any(word in lower for word in _DESIGN_WORDS):
            return True, None
        return False, "Response does not mention any component or page"

    if operation_type == OperationType.CODE_GENERATION:
        if _has_error_marker(lower):
            return False, "Code generation failed due to LLM errors"
        if _CODE_RE.search(content):
            return True, None
        return False, "Response does not contain recognisable code"

    return True, None


def verify(ticket: Ticket, route: Route, response: AgentResponse, config: SchedulerConfig) -> VerificationResult:
    """Decide whether a pipeline's final response resolves the ticket.

    Communication tickets pass on confidence alone, against the auto-resolve
    score. Work tickets need the clarification score and, when the ticket has
    acceptance criteria, a deliverable check keyed by its operation type.
    """
    attempt = ticket.retry_count + 1
    confidence = response.confidence

    if route.is_communication:
        threshold = config.clarity_auto_resolve_score
        passed = confidence >= threshold
        return VerificationResult(
            passed=passed,
            confidence=confidence,
            deliverable_check=True,
            attempt_number=attempt,
            failure_details=None if passed else f"Clarity score {confidence:g} below threshold {threshold:g}",
        )

    deliverable_ok, details = True, None
    if ticket.acceptance_criteria:
        deliverable_ok, details = check_deliverable(ticket.operation_type, response.content)

    threshold = config.clarity_clarification_score
    passed = deliverable_ok and confidence >= threshold
    if not passed and details is None:
        details = f"Clarity score {confidence:g} below threshold {threshold:g}"

    return VerificationResult(
        passed=passed,
        confidence=confidence,
        deliverable_check=deliverable_ok,
        attempt_number=attempt,
        failure_details=details,
    )
