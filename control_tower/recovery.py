"""Crash recovery for tickets left mid-pipeline by a previous process."""

from __future__ import annotations

from typing import Awaitable, Callable, Iterable

from control_tower.events import TICKET_RECOVERED, EventBus
from control_tower.log_sink import LogSink
from control_tower.models import ProcessingStatus, Ticket, TicketStatus
from control_tower.router import Route, route
from control_tower.store import TicketStore

Readmit = Callable[[Ticket, Route], Awaitable[bool]]


async def find_stuck_tickets(store: TicketStore, exclude: Iterable[str] = ()) -> list[Ticket]:
    """Tickets marked in_review/processing that nothing is working on.

    ``holding`` tickets are parked on purpose and never returned.
    """
    skip = set(exclude)
    stuck = await store.get_tickets_by_status(TicketStatus.IN_REVIEW, ProcessingStatus.PROCESSING)
    return [t for t in stuck if t.id not in skip]


async def recover_stuck_tickets(
    store: TicketStore,
    bus: EventBus,
    log: LogSink,
    readmit: Readmit,
    exclude: Iterable[str] = (),
) -> int:
    """Reset stuck tickets to open and hand them back to their queues.

    Returns the number of tickets recovered.
    """
    recovered = 0
    for ticket in await find_stuck_tickets(store, exclude):
        ticket_route = route(ticket)
        if ticket_route is None:
            log.append_line(f"[Recovery] {ticket.id} has no route, leaving it alone")
            continue

        ticket = await store.update_ticket(
            ticket.id,
            status=TicketStatus.OPEN,
            processing_status=ProcessingStatus.IDLE,
        )
        await store.add_reply(
            ticket.id,
            "system",
            "Processing was interrupted before this ticket finished. It has been re-queued.",
        )
        bus.emit(TICKET_RECOVERED, "scheduler", {
            "ticket_id": ticket.id,
            "queue": ticket_route.queue_class.value,
        })
        if await readmit(ticket, ticket_route):
            recovered += 1

    if recovered:
        log.append_line(f"[Recovery] Recovered {recovered} stuck ticket(s)")
    return recovered
