"""Scheduler and workspace configuration loading and validation."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

AIMode = Literal["manual", "suggest", "hybrid", "smart"]

AI_MODES: tuple[str, ...] = ("manual", "suggest", "hybrid", "smart")


def normalize_ai_mode(value: str) -> str:
    """Lower-case a mode name and map the legacy 'suggestions' spelling."""
    raw = str(value).strip().lower()
    return "suggest" if raw == "suggestions" else raw


class AgentToggle(BaseModel):
    enabled: bool = True


def _default_agents() -> dict[str, AgentToggle]:
    return {
        name: AgentToggle()
        for name in ("orchestrator", "planning", "coding", "verification", "clarity", "boss", "review")
    }


class SchedulerConfig(BaseModel):
    """Options the scheduler reads once per decision.

    Keys may be written in snake_case or in the camelCase used by older
    config files (``maxActiveTickets`` and friends).
    """

    model_config = ConfigDict(populate_by_name=True)

    max_active_tickets: int = Field(default=10, ge=1, alias="maxActiveTickets")
    max_ticket_retries: int = Field(default=3, ge=0, alias="maxTicketRetries")
    max_parallel_tickets: int = Field(default=3, ge=1, le=20, alias="maxParallelTickets")
    clarity_auto_resolve_score: float = Field(default=85, ge=0, le=100, alias="clarityAutoResolveScore")
    clarity_clarification_score: float = Field(default=70, ge=0, le=100, alias="clarityClarificationScore")
    boss_idle_timeout_minutes: float = Field(default=5, gt=0, alias="bossIdleTimeoutMinutes")
    boss_startup_delay_seconds: float = Field(default=2.0, ge=0, alias="bossStartupDelaySeconds")
    boss_auto_run_enabled: bool = Field(default=True, alias="bossAutoRunEnabled")
    ai_mode: AIMode = Field(default="hybrid", alias="aiMode")
    agents: dict[str, AgentToggle] = Field(default_factory=_default_agents)
    llm_provider: str = Field(default="anthropic", alias="llmProvider")
    llm_model: str | None = Field(default=None, alias="llmModel")

    @field_validator("ai_mode", mode="before")
    @classmethod
    def validate_ai_mode(cls, v: Any) -> str:
        return normalize_ai_mode(v)

    def agent_enabled(self, name: str) -> bool:
        toggle = self.agents.get(name)
        return toggle.enabled if toggle else True


class ConfigManager:
    """Holds the live scheduler config.

    Callers fetch a fresh snapshot with ``get_config()`` for every decision so
    that ``update()`` and ``reload()`` take effect without a restart.
    """

    def __init__(self, config: SchedulerConfig | None = None, path: str | Path | None = None):
        self.path = Path(path) if path else None
        self._config = config or SchedulerConfig()

    @classmethod
    def from_file(cls, path: str | Path) -> "ConfigManager":
        return cls(load_scheduler_config(path), path=path)

    def get_config(self) -> SchedulerConfig:
        return self._config

    def update(self, **changes: Any) -> SchedulerConfig:
        data = self._config.model_dump()
        data.update(changes)
        self._config = SchedulerConfig(**data)
        return self._config

    def reload(self) -> SchedulerConfig:
        if self.path is None:
            raise RuntimeError("ConfigManager has no backing file to reload from.")
        self._config = load_scheduler_config(self.path)
        return self._config


class WorkspaceConfig(BaseModel):
    """Top-level control-tower workspace layout (``tower.yaml``)."""

    agents_dir: str = "./agents"
    tickets_dir: str = "./tickets"
    db_path: str = "./control_tower.db"
    config_path: str = "./scheduler.yaml"


def load_scheduler_config(path: str | Path) -> SchedulerConfig:
    """Load and validate scheduler options from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Scheduler config not found: {path}")

    with open(path) as f:
        data: dict[str, Any] = yaml.safe_load(f) or {}

    return SchedulerConfig(**data)


def load_workspace_config(base_dir: str | Path | None = None) -> WorkspaceConfig:
    """Load the workspace layout, or return defaults."""
    if base_dir is None:
        base_dir = Path.cwd()
    base_dir = Path(base_dir)

    config_path = base_dir / "tower.yaml"
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        return WorkspaceConfig(**data)

    return WorkspaceConfig()


def load_config_manager(base_dir: str | Path, workspace: WorkspaceConfig) -> ConfigManager:
    """Config manager for a workspace; falls back to defaults when the file is absent."""
    path = Path(base_dir) / workspace.config_path
    if path.exists():
        return ConfigManager.from_file(path)
    return ConfigManager(path=None)
