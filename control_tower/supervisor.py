"""The boss supervisor: startup health check and the idle watchdog."""

from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from control_tower.agents.base import AgentHub
from control_tower.config import ConfigManager
from control_tower.events import BOSS_HEALTH_CHECK_COMPLETED, BOSS_IDLE_WATCHDOG_TRIGGERED, EventBus
from control_tower.log_sink import LogSink
from control_tower.models import AgentResponse
from control_tower.store import TicketStore


class BossState(str, Enum):
    ACTIVE = "active"
    WAITING = "waiting"
    IDLE = "idle"


class BossSupervisor:
    """Owns the single idle-countdown task.

    Activity only moves ``last_activity``; the countdown runs on a fixed
    schedule and defers while ``is_busy()`` is true. Arming always cancels
    the pending countdown before scheduling a new one.
    """

    def __init__(
        self,
        hub: AgentHub,
        bus: EventBus,
        config: ConfigManager,
        log: LogSink,
        store: TicketStore | None = None,
        is_busy: Callable[[], bool] = lambda: False,
        on_idle: Callable[[], Awaitable[Any]] | None = None,
        snapshot: Callable[[], dict[str, Any]] | None = None,
    ):
        self.hub = hub
        self.bus = bus
        self.config = config
        self.log = log
        self.store = store
        self.is_busy = is_busy
        self.on_idle = on_idle
        self.snapshot = snapshot
        self.state = BossState.IDLE
        self.last_activity = time.time()
        self.next_check_at: float | None = None
        self._startup_task: asyncio.Task | None = None
        self._timer: asyncio.Task | None = None
        self._disposed = False

    @property
    def enabled(self) -> bool:
        cfg = self.config.get_config()
        return cfg.boss_auto_run_enabled and cfg.ai_mode != "manual"

    @property
    def idle_minutes(self) -> float:
        return (time.time() - self.last_activity) / 60

    @property
    def next_check_in(self) -> float | None:
        """Seconds until the countdown elapses, or None when not armed."""
        if self.next_check_at is None:
            return None
        return max(0.0, self.next_check_at - time.time())

    def touch(self) -> None:
        self.last_activity = time.time()

    def start(self) -> None:
        if self._disposed:
            raise RuntimeError("BossSupervisor has been disposed.")
        if self._startup_task is None:
            self._startup_task = asyncio.create_task(self._startup())

    async def _startup(self) -> None:
        await asyncio.sleep(self.config.get_config().boss_startup_delay_seconds)
        if self._disposed:
            return
        if self.enabled:
            try:
                await self.run_health_check("startup")
            except Exception as e:
                self.log.append_line(f"[Boss] Startup check failed: {e}")
        self.arm()

    def arm(self) -> None:
        """Cancel any pending countdown and schedule a fresh one."""
        if self._disposed:
            return
        self._cancel_timer()
        if not self.enabled:
            self.state = BossState.IDLE
            self.next_check_at = None
            return

        timeout = self.config.get_config().boss_idle_timeout_minutes * 60
        self.next_check_at = time.time() + timeout
        self.state = BossState.WAITING
        self._timer = asyncio.create_task(self._countdown(timeout))

    async def _countdown(self, timeout: float) -> None:
        await asyncio.sleep(timeout)
        if self._disposed:
            return
        try:
            if self.is_busy():
                self.log.append_line("[Boss] Watchdog deferred, tickets still processing")
            else:
                await self.fire()
        except Exception as e:
            self.log.append_line(f"[Boss] Watchdog cycle failed: {e}")
        # drop our own handle so arm() does not cancel the running task
        self._timer = None
        self.arm()

    async def fire(self) -> None:
        """Raise the idle alert, check health and run the idle callback."""
        idle = round(self.idle_minutes, 1)
        self.log.append_line(f"[Boss] Idle watchdog triggered ({idle} min since last activity)")
        self.bus.emit(BOSS_IDLE_WATCHDOG_TRIGGERED, "boss", {
            "last_activity": datetime.fromtimestamp(self.last_activity, timezone.utc).isoformat(),
            "idle_minutes": idle,
        })
        await self.run_health_check("idle")
        if self._disposed or self.on_idle is None:
            return
        try:
            await self.on_idle()
        except Exception as e:
            self.log.append_line(f"[Boss] Idle callback failed: {e}")

    async def run_health_check(self, reason: str) -> AgentResponse | None:
        """One health check. Failures are logged, never raised."""
        previous = self.state
        self.state = BossState.ACTIVE
        try:
            snapshot = self.snapshot() if self.snapshot else None
            response = await self.hub.check_system_health(snapshot)
        except Exception as e:
            self.log.append_line(f"[Boss] Health check ({reason}) failed: {e}")
            return None
        finally:
            self.state = previous

        if self._disposed:
            return response
        summary = response.content.strip().splitlines()[0][:200] if response.content.strip() else ""
        self.log.append_line(f"[Boss] Health check ({reason}): {summary}")
        if self.store is not None:
            try:
                await self.store.add_audit_log("boss", f"health_check:{reason}", response.content)
            except Exception as e:
                self.log.append_line(f"[Boss] Could not record health check ({reason}): {e}")
        self.bus.emit(BOSS_HEALTH_CHECK_COMPLETED, "boss", {
            "reason": reason,
            "confidence": response.confidence,
            "summary": summary,
        })
        return response

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    def dispose(self) -> None:
        self._disposed = True
        if self._startup_task is not None and not self._startup_task.done():
            self._startup_task.cancel()
        self._startup_task = None
        self._cancel_timer()
        self.state = BossState.IDLE
        self.next_check_at = None
