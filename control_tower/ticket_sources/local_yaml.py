"""Local YAML file ticket source."""

from __future__ import annotations

from pathlib import Path

import yaml

from control_tower.models import OperationType
from control_tower.ticket_sources.base import BaseTicketSource, TicketDraft, parse_priority


class LocalYAMLTicketSource(BaseTicketSource):
    """Loads ticket drafts from YAML files.

    Supports three layouts:
    - A single tickets.yaml with a list of tickets
    - One .yaml file per ticket in the directory
    - A path pointing straight at one YAML file
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    async def load_tickets(self) -> list[TicketDraft]:
        if not self.path.exists():
            return []
        if self.path.is_file():
            return self._dedupe(self._load_from_file(self.path))

        drafts: list[TicketDraft] = []

        single_file = self.path / "tickets.yaml"
        if single_file.exists():
            drafts.extend(self._load_from_file(single_file))

        for yaml_file in sorted(self.path.glob("*.yaml")) + sorted(self.path.glob("*.yml")):
            if yaml_file.name == "tickets.yaml":
                continue
            drafts.extend(self._load_from_file(yaml_file))

        return self._dedupe(drafts)

    def _dedupe(self, drafts: list[TicketDraft]) -> list[TicketDraft]:
        seen_ids: set[str] = set()
        unique: list[TicketDraft] = []
        for d in drafts:
            if d.id is not None:
                if d.id in seen_ids:
                    continue
                seen_ids.add(d.id)
            unique.append(d)
        return unique

    def _load_from_file(self, path: Path) -> list[TicketDraft]:
        with open(path) as f:
            data = yaml.safe_load(f)

        if data is None:
            return []
        if isinstance(data, list):
            return [self._parse_ticket(item, path) for item in data]
        if isinstance(data, dict):
            if "tickets" in data:
                return [self._parse_ticket(item, path) for item in data["tickets"] or []]
            return [self._parse_ticket(data, path)]
        return []

    def _parse_ticket(self, data: dict, path: Path) -> TicketDraft:
        title = data.get("title")
        if not title:
            raise ValueError(f"{path}: ticket is missing a title")

        criteria = data.get("acceptance_criteria")
        if isinstance(criteria, list):
            criteria = "\n".join(f"- {c}" for c in criteria) or None

        ticket_id = data.get("id")
        return TicketDraft(
            id=str(ticket_id) if ticket_id is not None else None,
            title=str(title),
            body=data.get("body", data.get("description", "")) or "",
            priority=parse_priority(data.get("priority")),
            operation_type=OperationType(data.get("operation_type", OperationType.USER_CREATED.value)),
            is_ghost=bool(data.get("is_ghost", False)),
            acceptance_criteria=criteria,
            parent_ticket_id=data.get("parent_ticket_id"),
            task_id=data.get("task_id"),
            plan_id=data.get("plan_id"),
        )
