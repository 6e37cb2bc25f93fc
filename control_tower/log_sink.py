"""Line-oriented log sinks.

Every component writes plain lines prefixed with its tag, e.g.
``[Scheduler] Ticket limit reached (10), ticket waiting for slot``.
"""

from __future__ import annotations

import re
from collections import deque
from datetime import datetime
from typing import Protocol

from rich.console import Console
from rich.markup import escape

_TAG_RE = re.compile(r"^\[(?P<tag>[A-Za-z]+)\]\s*")

_TAG_STYLES = {
    "Scheduler": "cyan",
    "Pipeline": "blue",
    "Verifier": "magenta",
    "Escalation": "yellow",
    "Boss": "bold cyan",
    "Recovery": "green",
    "Admission": "yellow",
}


class LogSink(Protocol):
    def append_line(self, message: str) -> None: ...


class ConsoleLogSink:
    """Writes lines to a rich console with a timestamp and a coloured tag."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console(stderr=True)

    def append_line(self, message: str) -> None:
        stamp = datetime.now().strftime("%H:%M:%S")
        match = _TAG_RE.match(message)
        if match:
            tag = match.group("tag")
            style = _TAG_STYLES.get(tag, "white")
            rest = escape(message[match.end():])
            self.console.print(f"[dim]{stamp}[/] [{style}]{tag}[/{style}] {rest}")
        else:
            self.console.print(f"[dim]{stamp}[/] {escape(message)}")


class MemoryLogSink:
    """Keeps the most recent lines in memory, optionally forwarding them."""

    def __init__(self, max_lines: int = 500, forward: LogSink | None = None):
        self.lines: deque[str] = deque(maxlen=max_lines)
        self.forward = forward

    def append_line(self, message: str) -> None:
        self.lines.append(message)
        if self.forward is not None:
            self.forward.append_line(message)

    def tail(self, n: int = 20) -> list[str]:
        return list(self.lines)[-n:]

    def contains(self, fragment: str) -> bool:
        return any(fragment in line for line in self.lines)
