"""Where tickets come from before they reach the store."""

from control_tower.ticket_sources.base import BaseTicketSource, TicketDraft, import_tickets, parse_priority
from control_tower.ticket_sources.local_yaml import LocalYAMLTicketSource

SOURCES: dict[str, type[BaseTicketSource]] = {
    "local_yaml": LocalYAMLTicketSource,
}


def get_ticket_source(name: str, **kwargs) -> BaseTicketSource:
    """Build the ticket source registered as ``name``."""
    source_cls = SOURCES.get(name)
    if source_cls is None:
        known = ", ".join(sorted(SOURCES))
        raise ValueError(f"Unknown ticket source '{name}' (known: {known})")
    return source_cls(**kwargs)


__all__ = [
    "SOURCES",
    "BaseTicketSource",
    "LocalYAMLTicketSource",
    "TicketDraft",
    "get_ticket_source",
    "import_tickets",
    "parse_priority",
]
