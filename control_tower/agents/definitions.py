"""Load agent definitions from Markdown files with YAML frontmatter."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import frontmatter

from control_tower.router import Agent


@dataclass
class AgentDefinition:
    """Parsed agent definition from a .md file."""

    agent: Agent
    role: str
    llm_provider: str | None = None
    llm_model: str | None = None
    temperature: float = 0.4
    system_prompt: str = ""
    source_path: str = ""


class AgentManager:
    """Loads one definition per ``Agent`` from a directory of .md files."""

    def __init__(self, agents_dir: str | Path):
        self.agents_dir = Path(agents_dir)
        self._agents: dict[Agent, AgentDefinition] = {}

    def load_all(self) -> dict[Agent, AgentDefinition]:
        self._agents.clear()
        if not self.agents_dir.exists():
            raise FileNotFoundError(f"Agents directory not found: {self.agents_dir}")

        for md_file in sorted(self.agents_dir.glob("*.md")):
            definition = self._parse_agent_file(md_file)
            self._agents[definition.agent] = definition

        return self._agents

    def get(self, agent: Agent | str) -> AgentDefinition:
        if not self._agents:
            self.load_all()
        key = Agent(agent)
        if key not in self._agents:
            available = [a.value for a in self._agents]
            raise KeyError(f"Agent '{key.value}' not defined. Available: {available}")
        return self._agents[key]

    def list_agents(self) -> list[AgentDefinition]:
        if not self._agents:
            self.load_all()
        return list(self._agents.values())

    def _parse_agent_file(self, path: Path) -> AgentDefinition:
        post = frontmatter.load(str(path))
        metadata = post.metadata

        name = metadata.get("name", path.stem)
        try:
            agent = Agent(name)
        except ValueError:
            valid = [a.value for a in Agent]
            raise ValueError(f"{path}: unknown agent '{name}'. Expected one of {valid}") from None

        return AgentDefinition(
            agent=agent,
            role=metadata.get("role", name.title()),
            llm_provider=metadata.get("llm_provider"),
            llm_model=metadata.get("llm_model"),
            temperature=float(metadata.get("temperature", 0.4)),
            system_prompt=post.content.strip(),
            source_path=str(path),
        )


def create_default_agents(agents_dir: str | Path) -> list[Path]:
    """Write the default agent .md files, leaving existing ones alone.

    Returns the files that were created.
    """
    agents_dir = Path(agents_dir)
    agents_dir.mkdir(parents=True, exist_ok=True)

    created = []
    for agent, content in _DEFAULT_TEMPLATES.items():
        target = agents_dir / f"{agent.value}.md"
        if not target.exists():
            target.write_text(content)
            created.append(target)
    return created


_ORCHESTRATOR = """\
---
name: orchestrator
role: "Orchestrator"
temperature: 0.2
---
# Orchestrator Agent

You assess incoming tickets before specialist agents work on them.

## Responsibilities
- Summarise what the ticket asks for
- List the key requirements and constraints for the specialist
- Call out risks and dependencies
- State the success criteria the final output must meet
"""

_PLANNING = """\
---
name: planning
role: "Planning Agent"
---
# Planning Agent

You turn goals and design requests into concrete plans.

## Responsibilities
- Break work into small, ordered, testable tasks
- Describe pages, components and data models when the ticket is about design
- When generating tasks, include a JSON block of the form {"tasks": [...]}
"""

_CODING = """\
---
name: coding
role: "Coding Agent"
temperature: 0.2
---
# Coding Agent

You implement tickets by writing working code.

## Guidelines
- Return complete code in fenced blocks
- Follow the conventions of the existing codebase
- Include tests for new behaviour
"""

_VERIFICATION = """\
---
name: verification
role: "Verification Agent"
temperature: 0.1
---
# Verification Agent

You check delivered work against the ticket's acceptance criteria and report
each criterion as met or not met, with evidence.
"""

_CLARITY = """\
---
name: clarity
role: "Clarity Agent"
---
# Clarity Agent

You handle clarification tickets and talk to humans.

## Guidelines
- Answer the question directly, in plain language
- Avoid jargon; explain any technical term you must use
- Rate your confidence honestly: a vague answer deserves a low score
"""

_BOSS = """\
---
name: boss
role: "Boss"
temperature: 0.2
---
# Boss Agent

You supervise the whole system. You execute directives that change
system-wide state and you run periodic health checks.

## Health checks
- Look for stuck, starving or repeatedly failing tickets
- Recommend concrete corrective actions
"""

_REVIEW = """\
---
name: review
role: "Review Agent"
temperature: 0.1
---
# Review Agent

You review specialist output before it is verified.

## Guidelines
- Check correctness and completeness against the ticket
- Only request escalation when a human decision is genuinely required
"""

_DEFAULT_TEMPLATES: dict[Agent, str] = {
    Agent.ORCHESTRATOR: _ORCHESTRATOR,
    Agent.PLANNING: _PLANNING,
    Agent.CODING: _CODING,
    Agent.VERIFICATION: _VERIFICATION,
    Agent.CLARITY: _CLARITY,
    Agent.BOSS: _BOSS,
    Agent.REVIEW: _REVIEW,
}
