"""
In-process event bus.

Broadcast only: ``emit`` never blocks on a listener. Sync handlers run inline,
coroutine handlers are scheduled on the running loop. A failing handler is
logged and never breaks delivery to the others.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Union

from control_tower.log_sink import LogSink

# Consumed by the scheduler
TICKET_CREATED = "ticket:created"
TICKET_UNBLOCKED = "ticket:unblocked"
TICKET_UPDATED = "ticket:updated"
TICKET_RESOLVED = "ticket:resolved"
TASK_STARTED = "task:started"
TASK_COMPLETED = "task:completed"
TASK_VERIFIED = "task:verified"
AGENT_COMPLETED = "agent:completed"

ACTIVITY_EVENTS: tuple[str, ...] = (
    TICKET_UPDATED,
    TICKET_RESOLVED,
    TASK_COMPLETED,
    TASK_VERIFIED,
    TASK_STARTED,
    AGENT_COMPLETED,
)

# Emitted by the scheduler
TICKET_QUEUED = "ticket:queued"
TICKET_EVICTED = "ticket:evicted"
TICKET_PROCESSING_STARTED = "ticket:processing_started"
TICKET_PROCESSING_COMPLETED = "ticket:processing_completed"
TICKET_VERIFICATION_PASSED = "ticket:verification_passed"
TICKET_VERIFICATION_FAILED = "ticket:verification_failed"
TICKET_REVIEW_FLAGGED = "ticket:review_flagged"
TICKET_RETRY = "ticket:retry"
TICKET_ESCALATED = "ticket:escalated"
TICKET_RECOVERED = "ticket:recovered"
TICKET_CANCELLED = "ticket:cancelled"
BOSS_IDLE_WATCHDOG_TRIGGERED = "boss:idle_watchdog_triggered"
BOSS_HEALTH_CHECK_COMPLETED = "boss:health_check_completed"

WILDCARD = "*"


@dataclass
class Event:
    type: str
    source: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


EventHandler = Callable[[Event], Union[None, Awaitable[None]]]


class Subscription:
    """Handle returned by ``EventBus.on``; ``close()`` detaches the handler."""

    def __init__(self, bus: "EventBus", event_type: str, handler: EventHandler):
        self.bus = bus
        self.event_type = event_type
        self.handler = handler
        self.active = True

    def close(self) -> None:
        if self.active:
            self.bus.off(self.event_type, self.handler)
            self.active = False


class EventBus:
    """
    Typed-by-name pub/sub bus with a bounded history.

    Example:
        bus = EventBus()
        sub = bus.on("ticket:queued", lambda e: print(e.data["ticket_id"]))
        bus.emit("ticket:queued", "scheduler", {"ticket_id": "T-1"})
        sub.close()
    """

    def __init__(self, max_history: int = 1000, log: LogSink | None = None):
        self._handlers: dict[str, list[EventHandler]] = {}
        self._pending: set[asyncio.Task] = set()
        self.history: deque[Event] = deque(maxlen=max_history)
        self.log = log

    def on(self, event_type: str, handler: EventHandler) -> Subscription:
        self._handlers.setdefault(event_type, []).append(handler)
        return Subscription(self, event_type, handler)

    def off(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def listener_count(self, event_type: str | None = None) -> int:
        if event_type is None:
            return sum(len(h) for h in self._handlers.values())
        return len(self._handlers.get(event_type, []))

    def emit(self, event_type: str, source: str, data: dict[str, Any] | None = None) -> Event:
        event = Event(type=event_type, source=source, data=dict(data or {}))
        self.history.append(event)

        handlers = list(self._handlers.get(event_type, []))
        handlers.extend(self._handlers.get(WILDCARD, []))
        for handler in handlers:
            self._dispatch(handler, event)
        return event

    def _dispatch(self, handler: EventHandler, event: Event) -> None:
        try:
            result = handler(event)
        except Exception as e:
            self._report(event, e)
            return

        if inspect.isawaitable(result):
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError as e:
                # emitted outside a running loop
                if inspect.iscoroutine(result):
                    result.close()
                self._report(event, e)
                return
            task = asyncio.ensure_future(result, loop=loop)
            self._pending.add(task)
            task.add_done_callback(lambda t: self._finish(t, event))

    def _finish(self, task: asyncio.Task, event: Event) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self._report(event, error)

    def _report(self, event: Event, error: BaseException) -> None:
        if self.log is not None:
            self.log.append_line(f"[EventBus] Handler for {event.type} failed: {error}")

    async def drain(self) -> None:
        """Wait for every scheduled async handler, including ones they schedule."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def events(self, event_type: str, **match: Any) -> list[Event]:
        """History entries of a type whose data contains all ``match`` items."""
        return [
            e for e in self.history
            if e.type == event_type and all(e.data.get(k) == v for k, v in match.items())
        ]
