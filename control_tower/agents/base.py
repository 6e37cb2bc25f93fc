"""The agent hub contract the scheduler depends on."""

from __future__ import annotations

import abc
from typing import Any

from control_tower.models import AgentResponse, Ticket
from control_tower.router import Agent


class AgentHub(abc.ABC):
    """Produces agent responses. One method per pipeline collaborator."""

    @abc.abstractmethod
    async def call_agent(self, agent: Agent, message: str, context: dict[str, Any]) -> AgentResponse:
        """Run one agent turn and return its response."""
        ...

    @abc.abstractmethod
    async def review_ticket(self, ticket: Ticket, output: str) -> AgentResponse:
        """Review a specialist's output. An ``escalate`` action parks the ticket."""
        ...

    @abc.abstractmethod
    async def check_system_health(self, snapshot: dict[str, Any] | None = None) -> AgentResponse:
        ...

    @abc.abstractmethod
    async def rewrite_for_user(self, text: str) -> str:
        """Rewrite a technical message in plain language for a human reader."""
        ...
