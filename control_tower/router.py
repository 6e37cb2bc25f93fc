"""Maps a ticket to the agent that works it and the queue it waits in."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from control_tower.config import AI_MODES, normalize_ai_mode
from control_tower.models import OperationType, Ticket


class Agent(str, Enum):
    ORCHESTRATOR = "orchestrator"
    PLANNING = "planning"
    CODING = "coding"
    VERIFICATION = "verification"
    CLARITY = "clarity"
    BOSS = "boss"
    REVIEW = "review"


class QueueClass(str, Enum):
    GENERAL = "general"
    SUPERVISOR = "supervisor"


@dataclass(frozen=True)
class Route:
    queue_class: QueueClass
    agent: Agent

    @property
    def is_directive(self) -> bool:
        return self.queue_class == QueueClass.SUPERVISOR

    @property
    def is_communication(self) -> bool:
        """Communication tickets are verified on confidence alone and skip review."""
        return self.agent in (Agent.CLARITY, Agent.BOSS)


SKIP_PREFIXES = ("phase: configuration",)
PLANNING_PREFIXES = ("phase: task generation", "phase: design", "phase: data model")
CODING_PREFIXES = ("coding:", "rework:")
VERIFY_PREFIXES = ("verify:",)

_OPERATION_AGENTS = {
    OperationType.CODE_GENERATION: Agent.CODING,
    OperationType.VERIFICATION: Agent.VERIFICATION,
    OperationType.DESIGN_CHANGE: Agent.PLANNING,
}


def _general(agent: Agent) -> Route:
    return Route(QueueClass.GENERAL, agent)


def route(ticket: Ticket) -> Route | None:
    """Pick the agent and queue class for a ticket. ``None`` means skip it."""
    op = ticket.operation_type
    title = ticket.title.strip().lower()

    if op == OperationType.BOSS_DIRECTIVE:
        return Route(QueueClass.SUPERVISOR, Agent.BOSS)
    if title.startswith(SKIP_PREFIXES):
        return None
    if ticket.is_ghost or op == OperationType.GHOST_TICKET:
        return _general(Agent.CLARITY)
    if title.startswith(PLANNING_PREFIXES):
        return _general(Agent.PLANNING)
    if title.startswith(CODING_PREFIXES):
        return _general(Agent.CODING)
    if title.startswith(VERIFY_PREFIXES):
        return _general(Agent.VERIFICATION)
    return _general(_OPERATION_AGENTS.get(op, Agent.PLANNING))


# ── AI level gate ─────────────────────────────────────────────────────

_AI_LEVEL_RE = re.compile(r"AI Level:\s*(\w+)", re.IGNORECASE)


def ticket_ai_level(ticket: Ticket) -> str | None:
    """The recognised ``AI Level: <mode>`` directive in the body, if any."""
    if not ticket.body:
        return None
    match = _AI_LEVEL_RE.search(ticket.body)
    if not match:
        return None
    mode = normalize_ai_mode(match.group(1))
    return mode if mode in AI_MODES else None


def effective_ai_mode(ticket: Ticket, global_mode: str) -> str:
    return ticket_ai_level(ticket) or normalize_ai_mode(global_mode)


def automation_enabled(ticket: Ticket, global_mode: str) -> bool:
    """False when the ticket (or, failing a directive, the system) is in manual mode."""
    return effective_ai_mode(ticket, global_mode) != "manual"
