"""Core records shared by the scheduler, the store and the agent hub."""

from __future__ import annotations

import itertools
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TicketPriority(str, Enum):
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"


PRIORITY_RANK: dict[str, int] = {"P1": 0, "P2": 1, "P3": 2}


def priority_rank(priority: str) -> int:
    """Lower is more urgent. Unknown priorities sort after P3."""
    value = priority.value if isinstance(priority, TicketPriority) else str(priority)
    return PRIORITY_RANK.get(value, 3)


class OperationType(str, Enum):
    BOSS_DIRECTIVE = "boss_directive"
    GHOST_TICKET = "ghost_ticket"
    PLAN_GENERATION = "plan_generation"
    DESIGN_CHANGE = "design_change"
    CODE_GENERATION = "code_generation"
    VERIFICATION = "verification"
    USER_CREATED = "user_created"


class TicketStatus(str, Enum):
    OPEN = "open"
    IN_REVIEW = "in_review"
    RESOLVED = "resolved"
    ESCALATED = "escalated"
    ON_HOLD = "on_hold"


TERMINAL_STATUSES = frozenset({
    TicketStatus.RESOLVED,
    TicketStatus.ESCALATED,
    TicketStatus.ON_HOLD,
})


class ProcessingStatus(str, Enum):
    IDLE = "idle"
    QUEUED = "queued"
    PROCESSING = "processing"
    HOLDING = "holding"
    AWAITING_USER = "awaiting_user"


@dataclass
class Ticket:
    """A routed unit of work. The store owns it; queues only hold references."""

    id: str
    title: str
    body: str = ""
    priority: TicketPriority = TicketPriority.P2
    operation_type: OperationType = OperationType.USER_CREATED
    is_ghost: bool = False
    status: TicketStatus = TicketStatus.OPEN
    processing_status: ProcessingStatus = ProcessingStatus.IDLE
    acceptance_criteria: str | None = None
    task_id: str | None = None
    plan_id: str | None = None
    parent_ticket_id: str | None = None
    retry_count: int = 0
    processing_agent: str | None = None
    last_error: str | None = None
    escalation_plan_id: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def prompt_text(self) -> str:
        return self.body if self.body.strip() else self.title

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_context(self) -> dict[str, Any]:
        """Compact dict form handed to agents as context."""
        return {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "priority": self.priority.value,
            "operation_type": self.operation_type.value,
            "is_ghost": self.is_ghost,
            "status": self.status.value,
            "acceptance_criteria": self.acceptance_criteria,
            "retry_count": self.retry_count,
        }


@dataclass
class TicketReply:
    ticket_id: str
    author: str
    body: str
    clarity_score: float | None = None
    created_at: str = ""


_sequence = itertools.count()


@dataclass
class QueueEntry:
    """Ordering key for a queued ticket."""

    ticket_id: str
    priority: TicketPriority
    enqueued_at: float = field(default_factory=time.time)
    seq: int = field(default_factory=lambda: next(_sequence))

    @property
    def sort_key(self) -> tuple[int, int]:
        # FIFO within a tier follows creation order; enqueued_at is display only
        return (priority_rank(self.priority), self.seq)


@dataclass
class AgentAction:
    type: str
    payload: dict[str, Any] = field(default_factory=dict)


DEFAULT_CONFIDENCE = 85


@dataclass
class AgentResponse:
    """What an agent call returns. Confidence is 0-100."""

    content: str
    confidence: float = DEFAULT_CONFIDENCE
    actions: list[AgentAction] = field(default_factory=list)
    tokens_used: int | None = None

    def has_action(self, action_type: str) -> bool:
        return any(a.type == action_type for a in self.actions)


@dataclass
class Plan:
    id: str
    name: str
    status: str = "draft"
    created_at: str = ""


@dataclass
class Task:
    id: str
    plan_id: str
    title: str
    status: str = "pending"
    created_at: str = ""
