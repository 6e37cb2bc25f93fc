"""Shared fixtures: a scripted agent hub, real SQLite stores and a scheduler."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any

import pytest
import pytest_asyncio

from control_tower.agents.base import AgentHub
from control_tower.config import ConfigManager, SchedulerConfig
from control_tower.events import EventBus
from control_tower.log_sink import MemoryLogSink
from control_tower.models import AgentResponse, Ticket
from control_tower.router import Agent
from control_tower.scheduler import TicketScheduler
from control_tower.store import TicketStore


@dataclass
class Call:
    agent: Agent
    message: str
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def ticket_id(self) -> str | None:
        ticket = self.context.get("ticket")
        if isinstance(ticket, dict):
            return ticket.get("id")
        return ticket


class FakeAgentHub(AgentHub):
    """Returns scripted responses per agent and records every call.

    A script entry may be an AgentResponse, an exception (raised), or a
    callable taking ``(message, context)``. The last entry repeats.
    """

    def __init__(self, delay: float = 0):
        self.delay = delay
        self.calls: list[Call] = []
        self.health_checks: list[dict | None] = []
        self.rewrites: list[str] = []
        self.rewrite_error: Exception | None = None
        self.health_error: Exception | None = None
        self.running = 0
        self.max_running = 0
        self._scripts: dict[Agent, list[Any]] = {}

    def script(self, agent: Agent, *responses: Any) -> None:
        self._scripts[agent] = list(responses)

    def agents_called(self, ticket_id: str | None = None) -> list[Agent]:
        return [c.agent for c in self.calls if ticket_id is None or c.ticket_id == ticket_id]

    async def _respond(self, agent: Agent, message: str, context: dict[str, Any]) -> AgentResponse:
        self.calls.append(Call(agent, message, context))
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            else:
                await asyncio.sleep(0)
            script = self._scripts.get(agent)
            if not script:
                return AgentResponse(content="Done.", confidence=90)
            item = script.pop(0) if len(script) > 1 else script[0]
            if isinstance(item, Exception):
                raise item
            if callable(item):
                return item(message, context)
            return item
        finally:
            self.running -= 1

    async def call_agent(self, agent: Agent, message: str, context: dict[str, Any]) -> AgentResponse:
        return await self._respond(agent, message, context)

    async def review_ticket(self, ticket: Ticket, output: str) -> AgentResponse:
        return await self._respond(Agent.REVIEW, output, {"ticket": ticket.id})

    async def check_system_health(self, snapshot: dict[str, Any] | None = None) -> AgentResponse:
        self.health_checks.append(snapshot)
        if self.health_error is not None:
            raise self.health_error
        return AgentResponse(content="All systems nominal.", confidence=95)

    async def rewrite_for_user(self, text: str) -> str:
        if self.rewrite_error is not None:
            raise self.rewrite_error
        self.rewrites.append(text)
        return f"In plain words: {text}"


@pytest.fixture
def hub():
    return FakeAgentHub()


@pytest.fixture
def log():
    return MemoryLogSink()


@pytest.fixture
def bus(log):
    return EventBus(log=log)


@pytest.fixture
def config():
    return ConfigManager(SchedulerConfig(boss_startup_delay_seconds=0))


@pytest_asyncio.fixture
async def store(tmp_path):
    s = TicketStore(tmp_path / "tower.db")
    await s.initialize()
    yield s
    await s.close()


@pytest_asyncio.fixture
async def scheduler(store, hub, bus, config, log):
    s = TicketScheduler(store, hub, bus, config, log)
    yield s
    s.dispose()
    await s.wait_until_idle()
