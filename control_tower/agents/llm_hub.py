"""Agent hub backed by LLM providers and Markdown agent definitions."""

from __future__ import annotations

import json
from typing import Any

from control_tower.agents.base import AgentHub
from control_tower.agents.definitions import AgentDefinition, AgentManager
from control_tower.llm import get_provider
from control_tower.llm.base import BaseLLMProvider, JSON_INSTRUCTION, parse_json_reply
from control_tower.models import DEFAULT_CONFIDENCE, AgentAction, AgentResponse, Ticket
from control_tower.router import Agent

RESPONSE_FORMAT = """\
Respond with a JSON object:
{
  "content": "<your full answer>",
  "confidence": <0-100, how sure you are the answer fully satisfies the request>,
  "actions": [{"type": "<action>", "payload": {}}]
}
Use an empty "actions" list unless an action is required."""

REVIEW_PROMPT = """\
Review the following output for ticket "{title}" ({ticket_id}).

Acceptance criteria: {criteria}

--- Output under review ---
{output}

Judge correctness and completeness. If a human must decide before this
work can be accepted, include an action {{"type": "escalate", "payload": {{"reason": "..."}}}}."""

HEALTH_PROMPT = """\
Run a system health check. Using the status snapshot in the context, identify
stuck, starving or repeatedly failing tickets and recommend corrective actions.
Summarise the overall health in one paragraph."""

REWRITE_PROMPT = """\
Rewrite the following message for a non-technical reader. Keep every fact,
drop internal identifiers where they do not help, and end with a clear question
or next step.

{text}"""


def to_agent_response(data: dict[str, Any], tokens_used: int | None = None) -> AgentResponse:
    """Convert a parsed JSON reply into an AgentResponse."""
    actions = []
    for raw in data.get("actions") or []:
        if isinstance(raw, dict) and raw.get("type"):
            actions.append(AgentAction(type=str(raw["type"]), payload=raw.get("payload") or {}))
        elif isinstance(raw, str):
            actions.append(AgentAction(type=raw))

    confidence = data.get("confidence", DEFAULT_CONFIDENCE)
    try:
        confidence = max(0.0, min(100.0, float(confidence)))
    except (TypeError, ValueError):
        confidence = DEFAULT_CONFIDENCE

    content = data.get("content", "")
    if not isinstance(content, str):
        content = json.dumps(content, indent=2)

    return AgentResponse(content=content, confidence=confidence, actions=actions, tokens_used=tokens_used)


class LLMAgentHub(AgentHub):
    """Calls an LLM with the agent's definition as the system prompt."""

    def __init__(
        self,
        agent_manager: AgentManager,
        default_provider: str = "anthropic",
        default_model: str | None = None,
        providers: dict[str, BaseLLMProvider] | None = None,
    ):
        self.agent_manager = agent_manager
        self.default_provider = default_provider
        self.default_model = default_model
        self._providers: dict[str, BaseLLMProvider] = dict(providers or {})

    def _provider(self, name: str) -> BaseLLMProvider:
        if name not in self._providers:
            self._providers[name] = get_provider(name)
        return self._providers[name]

    async def call_agent(self, agent: Agent, message: str, context: dict[str, Any]) -> AgentResponse:
        definition = self._definition(agent)
        provider = self._provider(definition.llm_provider or self.default_provider)

        system = f"{definition.system_prompt}\n\n{RESPONSE_FORMAT}\n\n{JSON_INSTRUCTION}"
        prompt = message
        if context:
            prompt += f"\n\n## Context\n```json\n{json.dumps(context, indent=2, default=str)}\n```"

        response = await provider.complete(
            prompt,
            system=system,
            model=definition.llm_model or self.default_model,
            temperature=definition.temperature,
            json_mode=True,
        )

        try:
            data = parse_json_reply(response.content)
        except ValueError:
            # plain-text answer: keep it, with the default confidence
            return AgentResponse(content=response.content, tokens_used=response.total_tokens)
        return to_agent_response(data, tokens_used=response.total_tokens)

    async def review_ticket(self, ticket: Ticket, output: str) -> AgentResponse:
        message = REVIEW_PROMPT.format(
            title=ticket.title,
            ticket_id=ticket.id,
            criteria=ticket.acceptance_criteria or "None specified",
            output=output,
        )
        return await self.call_agent(Agent.REVIEW, message, {"ticket": ticket.to_context()})

    async def check_system_health(self, snapshot: dict[str, Any] | None = None) -> AgentResponse:
        return await self.call_agent(Agent.BOSS, HEALTH_PROMPT, {"status": snapshot or {}})

    async def rewrite_for_user(self, text: str) -> str:
        response = await self.call_agent(Agent.CLARITY, REWRITE_PROMPT.format(text=text), {})
        return response.content.strip() or text

    def _definition(self, agent: Agent) -> AgentDefinition:
        try:
            return self.agent_manager.get(agent)
        except KeyError:
            return AgentDefinition(
                agent=agent,
                role=agent.value.title(),
                system_prompt=f"You are the {agent.value} agent of a ticket-driven delivery system.",
            )
