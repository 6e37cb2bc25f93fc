"""Agent hub: the contract the scheduler calls and its LLM-backed implementation."""

from control_tower.agents.base import AgentHub
from control_tower.agents.definitions import AgentDefinition, AgentManager, create_default_agents
from control_tower.agents.llm_hub import LLMAgentHub

__all__ = [
    "AgentHub",
    "AgentDefinition",
    "AgentManager",
    "LLMAgentHub",
    "create_default_agents",
]
