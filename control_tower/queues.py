"""Priority queues and the admission controller that guards them."""

from __future__ import annotations

import asyncio
import bisect
from enum import Enum
from typing import Callable, Iterable, Iterator

from control_tower.events import TICKET_EVICTED, TICKET_QUEUED, EventBus
from control_tower.log_sink import LogSink
from control_tower.models import (
    ProcessingStatus,
    QueueEntry,
    Ticket,
    TicketPriority,
    priority_rank,
)
from control_tower.store import TicketStore


class TicketQueue:
    """Priority-then-FIFO queue of ticket references."""

    def __init__(self, name: str):
        self.name = name
        self._entries: list[QueueEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[QueueEntry]:
        return iter(list(self._entries))

    def __contains__(self, ticket_id: object) -> bool:
        return any(e.ticket_id == ticket_id for e in self._entries)

    def push(self, entry: QueueEntry) -> None:
        bisect.insort(self._entries, entry, key=lambda e: e.sort_key)

    def pop(self) -> QueueEntry | None:
        if not self._entries:
            return None
        return self._entries.pop(0)

    def peek(self) -> QueueEntry | None:
        return self._entries[0] if self._entries else None

    def remove(self, ticket_id: str) -> QueueEntry | None:
        for i, entry in enumerate(self._entries):
            if entry.ticket_id == ticket_id:
                return self._entries.pop(i)
        return None

    def evict_lowest(self) -> QueueEntry | None:
        """Remove the longest-waiting P3 entry, if there is one."""
        for i, entry in enumerate(self._entries):
            if priority_rank(entry.priority) >= priority_rank(TicketPriority.P3):
                return self._entries.pop(i)
        return None

    def clear(self) -> None:
        self._entries.clear()

    def snapshot(self) -> list[dict]:
        return [
            {"ticket_id": e.ticket_id, "priority": e.priority.value, "enqueued_at": e.enqueued_at}
            for e in self._entries
        ]


class AdmissionResult(str, Enum):
    ADMITTED = "admitted"
    DUPLICATE = "duplicate"
    REFUSED = "refused"
    REJECTED = "rejected"


class AdmissionController:
    """Enforces the system-wide active ticket cap when tickets enter a queue.

    A ticket counts as active while its processing status is ``queued`` or
    ``processing``. At capacity a P1 ticket evicts a queued P3 ticket, which
    is reported through ``on_evict``; every other ticket is turned away and
    left for the caller to retry later.
    """

    def __init__(
        self,
        store: TicketStore,
        bus: EventBus,
        log: LogSink,
        queues: Iterable[TicketQueue],
        on_evict: Callable[[str], None] | None = None,
    ):
        self.store = store
        self.bus = bus
        self.log = log
        self.queues = list(queues)
        self.on_evict = on_evict
        self._lock = asyncio.Lock()

    def is_queued(self, ticket_id: str) -> bool:
        return any(ticket_id in q for q in self.queues)

    async def admit(
        self,
        ticket: Ticket,
        queue: TicketQueue,
        max_active: int,
        enforce_limit: bool = True,
    ) -> AdmissionResult:
        async with self._lock:
            if self.is_queued(ticket.id):
                return AdmissionResult.DUPLICATE
            if ticket.is_terminal or ticket.processing_status == ProcessingStatus.HOLDING:
                self.log.append_line(
                    f"[Admission] {ticket.id} is {ticket.status.value}/{ticket.processing_status.value}, not admitting"
                )
                return AdmissionResult.REFUSED

            if enforce_limit and not await self._has_room(ticket, max_active):
                return AdmissionResult.REJECTED

            await self.store.update_ticket(ticket.id, processing_status=ProcessingStatus.QUEUED)
            queue.push(QueueEntry(ticket_id=ticket.id, priority=ticket.priority))
            self.bus.emit(TICKET_QUEUED, "scheduler", {
                "ticket_id": ticket.id,
                "priority": ticket.priority.value,
                "queue": queue.name,
            })
            return AdmissionResult.ADMITTED

    async def _has_room(self, ticket: Ticket, max_active: int) -> bool:
        active = await self.store.count_active_tickets()
        if ticket.processing_status in (ProcessingStatus.QUEUED, ProcessingStatus.PROCESSING):
            active -= 1  # already counted
        if active < max_active:
            return True

        if ticket.priority != TicketPriority.P1:
            self.log.append_line(
                f"[Admission] Ticket limit reached ({max_active}), {ticket.id} waiting for slot"
            )
            return False

        evicted = self._evict_p3()
        if evicted is None:
            self.log.append_line(
                f"[Admission] Ticket limit reached ({max_active}), P1 ticket {ticket.id} waiting for slot"
            )
            return False

        await self.store.update_ticket(evicted.ticket_id, processing_status=ProcessingStatus.IDLE)
        self.log.append_line(f"[Admission] Bumped P3 ticket {evicted.ticket_id} for P1 ticket {ticket.id}")
        self.bus.emit(TICKET_EVICTED, "scheduler", {
            "ticket_id": evicted.ticket_id,
            "evicted_by": ticket.id,
        })
        if self.on_evict is not None:
            self.on_evict(evicted.ticket_id)
        return True

    def _evict_p3(self) -> QueueEntry | None:
        for queue in self.queues:
            evicted = queue.evict_lowest()
            if evicted is not None:
                return evicted
        return None
