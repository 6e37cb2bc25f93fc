"""Ticket scheduler: admission, the execution pool and lifecycle wiring."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

from control_tower.agents.base import AgentHub
from control_tower.config import ConfigManager
from control_tower.escalation import RetryEscalationManager
from control_tower.events import (
    ACTIVITY_EVENTS,
    TICKET_CANCELLED,
    TICKET_CREATED,
    TICKET_UNBLOCKED,
    Event,
    EventBus,
    Subscription,
)
from control_tower.log_sink import LogSink, MemoryLogSink
from control_tower.models import ProcessingStatus, Ticket, TicketStatus
from control_tower.pipeline import PipelineOutcome, TicketPipeline
from control_tower.queues import AdmissionController, AdmissionResult, TicketQueue
from control_tower.recovery import recover_stuck_tickets
from control_tower.router import QueueClass, Route, automation_enabled, route
from control_tower.store import TicketStore
from control_tower.supervisor import BossSupervisor

SUPERVISOR_SLOTS = 1


class TicketScheduler:
    """Routes tickets into two priority queues and drains them.

    The general lane runs up to ``max_parallel_tickets`` pipelines at once;
    the supervisor lane runs directives one at a time. A ticket leaves its
    queue at the moment a slot takes it, so it is never in two places.
    """

    def __init__(
        self,
        store: TicketStore,
        hub: AgentHub,
        bus: EventBus,
        config: ConfigManager,
        log: LogSink | None = None,
    ):
        self.store = store
        self.hub = hub
        self.bus = bus
        self.config = config
        self.log = log or MemoryLogSink()

        self.general_queue = TicketQueue(QueueClass.GENERAL.value)
        self.supervisor_queue = TicketQueue(QueueClass.SUPERVISOR.value)
        self.admission = AdmissionController(
            store,
            bus,
            self.log,
            (self.general_queue, self.supervisor_queue),
            on_evict=self._on_evicted,
        )
        self.escalation = RetryEscalationManager(store, hub, bus, config, self.log, requeue=self._readmit)
        self.pipeline = TicketPipeline(store, hub, bus, config, self.log, self.escalation)
        self.supervisor = BossSupervisor(
            hub,
            bus,
            config,
            self.log,
            store=store,
            is_busy=self.is_busy,
            on_idle=self.recover_stuck_tickets,
            snapshot=self.get_status,
        )

        self._routes: dict[str, Route] = {}
        self._active: set[str] = set()
        self._lane_counts: dict[QueueClass, int] = {QueueClass.GENERAL: 0, QueueClass.SUPERVISOR: 0}
        self._tasks: set[asyncio.Task] = set()
        self._subscriptions: list[Subscription] = []
        self._backlog_task: asyncio.Task | None = None
        self._backlog_pending = False
        self._started = False
        self._disposed = False

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def start(self) -> None:
        """Subscribe, recover crashed work, admit the backlog, start the boss."""
        if self._disposed:
            raise RuntimeError("TicketScheduler has been disposed.")
        if self._started:
            return
        self._started = True

        self._listen(TICKET_CREATED, self._on_admission_event)
        self._listen(TICKET_UNBLOCKED, self._on_admission_event)
        for event_type in ACTIVITY_EVENTS:
            self._listen(event_type, self._on_activity)

        await self.recover_stuck_tickets()
        await self.admit_backlog()
        self.supervisor.start()
        self.log.append_line(
            f"[Scheduler] Started ({self.config.get_config().max_parallel_tickets} general slots, "
            f"{SUPERVISOR_SLOTS} supervisor slot)"
        )

    def dispose(self) -> None:
        """Stop admitting, detach from the bus, cancel the watchdog and clear both queues.

        Pipelines already running finish, but nothing they produce is admitted again.
        """
        if self._disposed:
            return
        self._disposed = True
        for sub in self._subscriptions:
            sub.close()
        self._subscriptions.clear()
        self.supervisor.dispose()
        if self._backlog_task is not None and not self._backlog_task.done():
            self._backlog_task.cancel()
        self._backlog_task = None
        self.general_queue.clear()
        self.supervisor_queue.clear()
        self._routes.clear()
        self.log.append_line("[Scheduler] Disposed")

    @property
    def disposed(self) -> bool:
        return self._disposed

    def _listen(self, event_type: str, handler) -> None:
        self._subscriptions.append(self.bus.on(event_type, handler))

    # ── Event handlers ────────────────────────────────────────────────

    async def _on_admission_event(self, event: Event) -> None:
        ticket_id = event.data.get("ticket_id")
        if not ticket_id:
            return
        try:
            await self.enqueue_ticket(ticket_id)
        except Exception as e:
            self.log.append_line(f"[Scheduler] Failed to admit {ticket_id} on {event.type}: {e}")

    def _on_activity(self, event: Event) -> None:
        self.supervisor.touch()

    # ── Admission ─────────────────────────────────────────────────────

    def _queue_for(self, queue_class: QueueClass) -> TicketQueue:
        if queue_class == QueueClass.SUPERVISOR:
            return self.supervisor_queue
        return self.general_queue

    async def enqueue_ticket(self, ticket_id: str) -> AdmissionResult | None:
        """Route and admit one ticket. None when it is skipped or gated."""
        if self._disposed:
            return None

        ticket = await self.store.get_ticket(ticket_id)
        if ticket is None:
            self.log.append_line(f"[Scheduler] Ticket {ticket_id} not found, ignoring")
            return None

        ticket_route = route(ticket)
        if ticket_route is None:
            self.log.append_line(f"[Scheduler] {ticket.id} skipped by router: {ticket.title}")
            return None

        cfg = self.config.get_config()
        if not ticket_route.is_directive and not automation_enabled(ticket, cfg.ai_mode):
            self.log.append_line(f"[Scheduler] {ticket.id} is in manual mode, not queued")
            return None

        if ticket.id in self._active:
            return AdmissionResult.DUPLICATE

        return await self._admit(ticket, ticket_route, enforce_limit=True)

    async def _admit(self, ticket: Ticket, ticket_route: Route, enforce_limit: bool) -> AdmissionResult:
        queue = self._queue_for(ticket_route.queue_class)
        result = await self.admission.admit(
            ticket,
            queue,
            self.config.get_config().max_active_tickets,
            enforce_limit=enforce_limit,
        )
        if result == AdmissionResult.ADMITTED:
            if self._disposed:
                queue.remove(ticket.id)
                await self.store.update_ticket(ticket.id, processing_status=ProcessingStatus.IDLE)
                return result
            self._routes[ticket.id] = ticket_route
            self._fill_slots()
        elif result == AdmissionResult.REJECTED:
            self._backlog_pending = True
        return result

    def _on_evicted(self, ticket_id: str) -> None:
        # back to open/idle; admitted again once a slot frees
        self._routes.pop(ticket_id, None)
        self._backlog_pending = True

    async def _readmit(self, ticket: Ticket, ticket_route: Route) -> bool:
        """Put a retried or recovered ticket back, bypassing the capacity check."""
        if self._disposed:
            self.log.append_line(f"[Scheduler] Disposed, not re-admitting {ticket.id}")
            return False
        result = await self._admit(ticket, ticket_route, enforce_limit=False)
        return result == AdmissionResult.ADMITTED

    async def admit_backlog(self) -> int:
        """Admit open tickets left idle or orphaned in ``queued``. Returns the count."""
        admitted = 0
        tickets = await self.store.get_tickets_by_status(TicketStatus.OPEN)
        for ticket in tickets:
            if self._disposed:
                break
            if ticket.processing_status not in (ProcessingStatus.IDLE, ProcessingStatus.QUEUED):
                continue
            if self.admission.is_queued(ticket.id) or ticket.id in self._active:
                continue
            if await self.enqueue_ticket(ticket.id) == AdmissionResult.ADMITTED:
                admitted += 1
        return admitted

    def _kick_backlog(self) -> None:
        if self._disposed or not self._backlog_pending:
            return
        if self._backlog_task is not None and not self._backlog_task.done():
            return
        self._backlog_pending = False
        self._backlog_task = asyncio.create_task(self._run_backlog())

    async def _run_backlog(self) -> None:
        try:
            await self.admit_backlog()
        except Exception as e:
            self.log.append_line(f"[Scheduler] Backlog admission failed: {e}")

    # ── Execution pool ────────────────────────────────────────────────

    def _fill_slots(self) -> None:
        if self._disposed:
            return
        cfg = self.config.get_config()
        self._fill_lane(QueueClass.GENERAL, self.general_queue, cfg.max_parallel_tickets)
        self._fill_lane(QueueClass.SUPERVISOR, self.supervisor_queue, SUPERVISOR_SLOTS)

    def _fill_lane(self, lane: QueueClass, queue: TicketQueue, limit: int) -> None:
        while self._lane_counts[lane] < limit:
            entry = next((e for e in queue if e.ticket_id not in self._active), None)
            if entry is None:
                return
            queue.remove(entry.ticket_id)
            ticket_route = self._routes.pop(entry.ticket_id, None)

            self._lane_counts[lane] += 1
            self._active.add(entry.ticket_id)
            task = asyncio.create_task(self._run_slot(lane, entry.ticket_id, ticket_route))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _run_slot(self, lane: QueueClass, ticket_id: str, ticket_route: Route | None) -> None:
        try:
            if ticket_route is None:
                ticket = await self.store.require_ticket(ticket_id)
                ticket_route = route(ticket)
                if ticket_route is None:
                    return
            outcome = await self.pipeline.run(ticket_id, ticket_route)
            if outcome == PipelineOutcome.RESOLVED and not self._disposed:
                await self._enqueue_children(ticket_id)
        except Exception as e:
            self.log.append_line(f"[Scheduler] Slot error on {ticket_id}: {e}")
        finally:
            self._lane_counts[lane] -= 1
            self._active.discard(ticket_id)
            self._fill_slots()
            self._kick_backlog()

    async def _enqueue_children(self, parent_id: str) -> None:
        for child in await self.store.get_child_tickets(parent_id):
            if child.status != TicketStatus.OPEN or child.processing_status != ProcessingStatus.IDLE:
                continue
            result = await self.enqueue_ticket(child.id)
            if result == AdmissionResult.ADMITTED:
                await self.store.add_reply(
                    child.id,
                    "system",
                    f"Parent ticket {parent_id} resolved. This sub-ticket is now ready for processing.",
                )
                self.log.append_line(f"[Scheduler] Sub-ticket {child.id} enqueued (parent {parent_id} resolved)")

    def is_busy(self) -> bool:
        return bool(self._active)

    @property
    def is_idle(self) -> bool:
        backlog_running = self._backlog_task is not None and not self._backlog_task.done()
        return (
            not self._active
            and not backlog_running
            and len(self.general_queue) == 0
            and len(self.supervisor_queue) == 0
        )

    async def wait_until_idle(self, poll_interval: float = 0.01) -> None:
        """Return once both queues are empty and no slot is running."""
        while True:
            await self.bus.drain()
            if self.is_idle:
                return
            await asyncio.sleep(poll_interval)

    # ── Operations ────────────────────────────────────────────────────

    async def recover_stuck_tickets(self) -> int:
        if self._disposed:
            return 0
        return await recover_stuck_tickets(
            self.store,
            self.bus,
            self.log,
            self._readmit,
            exclude=set(self._active),
        )

    async def cancel_ticket(self, ticket_id: str) -> bool:
        """Pull a ticket out of its queue and put it on hold."""
        ticket = await self.store.require_ticket(ticket_id)
        if ticket.status in (TicketStatus.RESOLVED, TicketStatus.ON_HOLD):
            return False

        self.general_queue.remove(ticket_id)
        self.supervisor_queue.remove(ticket_id)
        self._routes.pop(ticket_id, None)
        if ticket_id in self._active:
            self.log.append_line(f"[Scheduler] {ticket_id} is running; its current attempt will finish")

        await self.store.update_ticket(
            ticket_id,
            status=TicketStatus.ON_HOLD,
            processing_status=ProcessingStatus.IDLE,
        )
        await self.store.add_reply(ticket_id, "system", "Ticket cancelled and put on hold.")
        self.bus.emit(TICKET_CANCELLED, "scheduler", {"ticket_id": ticket_id})
        self.log.append_line(f"[Scheduler] {ticket_id} cancelled")
        return True

    async def reengage_ticket(self, ticket_id: str) -> AdmissionResult | None:
        """Re-open a cancelled, escalated or held ticket with a fresh retry budget."""
        ticket = await self.store.require_ticket(ticket_id)
        held = ticket.processing_status == ProcessingStatus.HOLDING
        if ticket.status not in (TicketStatus.ON_HOLD, TicketStatus.ESCALATED) and not held:
            raise ValueError(f"Ticket '{ticket_id}' is {ticket.status.value}, nothing to re-engage")

        await self.store.update_ticket(
            ticket_id,
            status=TicketStatus.OPEN,
            processing_status=ProcessingStatus.IDLE,
            retry_count=0,
        )
        await self.store.add_reply(ticket_id, "system", "Ticket re-engaged for processing.")
        self.log.append_line(f"[Scheduler] {ticket_id} re-engaged")
        return await self.enqueue_ticket(ticket_id)

    def get_status(self) -> dict[str, Any]:
        cfg = self.config.get_config()
        next_check = self.supervisor.next_check_in
        return {
            "general_queue_size": len(self.general_queue),
            "supervisor_queue_size": len(self.supervisor_queue),
            "queue_size": len(self.general_queue) + len(self.supervisor_queue),
            "active_slots": len(self._active),
            "max_slots": cfg.max_parallel_tickets,
            "general_processing": self._lane_counts[QueueClass.GENERAL] > 0,
            "supervisor_processing": self._lane_counts[QueueClass.SUPERVISOR] > 0,
            "is_processing": self.is_busy(),
            "last_activity": datetime.fromtimestamp(self.supervisor.last_activity, timezone.utc).isoformat(),
            "idle_minutes": round(self.supervisor.idle_minutes, 2),
            "boss_state": self.supervisor.state.value,
            "next_check_seconds": round(next_check, 1) if next_check is not None else None,
            "disposed": self._disposed,
        }
