"""Ticket source abstractions and the importer that feeds the store."""

from __future__ import annotations

import abc
from dataclasses import dataclass

from control_tower.events import TICKET_CREATED, EventBus
from control_tower.models import OperationType, Ticket, TicketPriority
from control_tower.store import TicketStore

PRIORITY_ALIASES = {
    "high": TicketPriority.P1,
    "medium": TicketPriority.P2,
    "low": TicketPriority.P3,
}


def parse_priority(value: str | None) -> TicketPriority:
    """Accept P1/P2/P3 or high/medium/low."""
    if value is None:
        return TicketPriority.P2
    raw = str(value).strip()
    if raw.lower() in PRIORITY_ALIASES:
        return PRIORITY_ALIASES[raw.lower()]
    return TicketPriority(raw.upper())


@dataclass
class TicketDraft:
    """A ticket as written in a source, before the store assigns state."""

    title: str
    body: str = ""
    id: str | None = None
    priority: TicketPriority = TicketPriority.P2
    operation_type: OperationType = OperationType.USER_CREATED
    is_ghost: bool = False
    acceptance_criteria: str | None = None
    parent_ticket_id: str | None = None
    task_id: str | None = None
    plan_id: str | None = None


class BaseTicketSource(abc.ABC):
    """Interface for loading ticket drafts from any source."""

    @abc.abstractmethod
    async def load_tickets(self) -> list[TicketDraft]:
        ...

    async def get_ticket(self, ticket_id: str) -> TicketDraft | None:
        for draft in await self.load_tickets():
            if draft.id == ticket_id:
                return draft
        return None


async def import_tickets(source: BaseTicketSource, store: TicketStore, bus: EventBus | None = None) -> list[Ticket]:
    """Create every new draft in the store and announce it with ``ticket:created``.

    Drafts whose id already exists in the store are skipped.
    """
    created: list[Ticket] = []
    for draft in await source.load_tickets():
        if draft.id and await store.get_ticket(draft.id):
            continue
        ticket = await store.create_ticket(
            title=draft.title,
            body=draft.body,
            priority=draft.priority,
            operation_type=draft.operation_type,
            is_ghost=draft.is_ghost,
            acceptance_criteria=draft.acceptance_criteria,
            task_id=draft.task_id,
            plan_id=draft.plan_id,
            parent_ticket_id=draft.parent_ticket_id,
            ticket_id=draft.id,
        )
        created.append(ticket)
        if bus is not None:
            bus.emit(TICKET_CREATED, "import", {"ticket_id": ticket.id})
    return created
