"""SQLite-backed ticket store: tickets, replies, plans, tasks and the audit log."""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

import aiosqlite

from control_tower.models import (
    OperationType,
    Plan,
    ProcessingStatus,
    Task,
    Ticket,
    TicketPriority,
    TicketReply,
    TicketStatus,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS plans (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'draft',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
    id TEXT PRIMARY KEY,
    plan_id TEXT NOT NULL REFERENCES plans(id),
    title TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tickets (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    body TEXT NOT NULL DEFAULT '',
    priority TEXT NOT NULL DEFAULT 'P2',
    operation_type TEXT NOT NULL DEFAULT 'user_created',
    is_ghost INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'open',
    processing_status TEXT NOT NULL DEFAULT 'idle',
    acceptance_criteria TEXT,
    task_id TEXT,
    plan_id TEXT,
    parent_ticket_id TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    processing_agent TEXT,
    last_error TEXT,
    escalation_plan_id TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS ticket_replies (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    ticket_id TEXT NOT NULL REFERENCES tickets(id),
    author TEXT NOT NULL,
    body TEXT NOT NULL,
    clarity_score REAL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    actor TEXT NOT NULL,
    action TEXT NOT NULL,
    detail TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tickets_status ON tickets(status, processing_status);
CREATE INDEX IF NOT EXISTS idx_tickets_parent ON tickets(parent_ticket_id);
CREATE INDEX IF NOT EXISTS idx_ticket_replies_ticket_id ON ticket_replies(ticket_id);
CREATE INDEX IF NOT EXISTS idx_tasks_plan_id ON tasks(plan_id);
"""

_TICKET_COLUMNS = (
    "title", "body", "priority", "operation_type", "is_ghost", "status",
    "processing_status", "acceptance_criteria", "task_id", "plan_id",
    "parent_ticket_id", "retry_count", "processing_agent", "last_error",
    "escalation_plan_id",
)

ACTIVE_PROCESSING = (ProcessingStatus.QUEUED.value, ProcessingStatus.PROCESSING.value)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


def _row_to_ticket(row: aiosqlite.Row) -> Ticket:
    d = dict(row)
    return Ticket(
        id=d["id"],
        title=d["title"],
        body=d["body"] or "",
        priority=TicketPriority(d["priority"]),
        operation_type=OperationType(d["operation_type"]),
        is_ghost=bool(d["is_ghost"]),
        status=TicketStatus(d["status"]),
        processing_status=ProcessingStatus(d["processing_status"]),
        acceptance_criteria=d["acceptance_criteria"],
        task_id=d["task_id"],
        plan_id=d["plan_id"],
        parent_ticket_id=d["parent_ticket_id"],
        retry_count=d["retry_count"],
        processing_agent=d["processing_agent"],
        last_error=d["last_error"],
        escalation_plan_id=d["escalation_plan_id"],
        created_at=d["created_at"],
        updated_at=d["updated_at"],
    )


class TicketStore:
    """Async SQLite store. The single source of truth for ticket state."""

    def __init__(self, db_path: str | Path = "control_tower.db"):
        self.db_path = str(db_path)
        self._db: aiosqlite.Connection | None = None
        self._locks: dict[str, asyncio.Lock] = {}

    async def initialize(self) -> None:
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("TicketStore not initialized. Call initialize() first.")
        return self._db

    def _lock_for(self, ticket_id: str) -> asyncio.Lock:
        lock = self._locks.get(ticket_id)
        if lock is None:
            lock = self._locks[ticket_id] = asyncio.Lock()
        return lock

    # ── Tickets ───────────────────────────────────────────────────────

    async def create_ticket(
        self,
        title: str,
        body: str = "",
        priority: TicketPriority | str = TicketPriority.P2,
        operation_type: OperationType | str = OperationType.USER_CREATED,
        is_ghost: bool = False,
        acceptance_criteria: str | None = None,
        task_id: str | None = None,
        plan_id: str | None = None,
        parent_ticket_id: str | None = None,
        ticket_id: str | None = None,
    ) -> Ticket:
        ticket_id = ticket_id or f"TK-{uuid.uuid4().hex[:8]}"
        now = _now()
        await self.db.execute(
            "INSERT INTO tickets "
            "(id, title, body, priority, operation_type, is_ghost, status, processing_status, "
            "acceptance_criteria, task_id, plan_id, parent_ticket_id, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                ticket_id, title, body,
                TicketPriority(_db_value(priority)).value,
                OperationType(_db_value(operation_type)).value,
                int(is_ghost),
                TicketStatus.OPEN.value, ProcessingStatus.IDLE.value,
                acceptance_criteria, task_id, plan_id, parent_ticket_id, now, now,
            ),
        )
        await self.db.commit()
        return await self.require_ticket(ticket_id)

    async def get_ticket(self, ticket_id: str) -> Ticket | None:
        async with self.db.execute("SELECT * FROM tickets WHERE id = ?", (ticket_id,)) as cursor:
            row = await cursor.fetchone()
            return _row_to_ticket(row) if row else None

    async def require_ticket(self, ticket_id: str) -> Ticket:
        ticket = await self.get_ticket(ticket_id)
        if ticket is None:
            raise KeyError(f"Ticket '{ticket_id}' not found")
        return ticket

    async def update_ticket(self, ticket_id: str, **fields: Any) -> Ticket:
        """Read-modify-write one ticket, serialised per ticket id."""
        unknown = set(fields) - set(_TICKET_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown ticket fields: {sorted(unknown)}")

        async with self._lock_for(ticket_id):
            await self.require_ticket(ticket_id)
            if fields:
                assignments = ", ".join(f"{name} = ?" for name in fields)
                params = [_db_value(v) for v in fields.values()]
                await self.db.execute(
                    f"UPDATE tickets SET {assignments}, updated_at = ? WHERE id = ?",
                    (*params, _now(), ticket_id),
                )
                await self.db.commit()
            return await self.require_ticket(ticket_id)

    async def list_tickets(self, limit: int = 100) -> list[Ticket]:
        async with self.db.execute(
            "SELECT * FROM tickets ORDER BY created_at DESC LIMIT ?", (limit,)
        ) as cursor:
            rows = await cursor.fetchall()
            return [_row_to_ticket(r) for r in rows]

    async def get_tickets_by_status(
        self,
        status: TicketStatus | str,
        processing_status: ProcessingStatus | str | None = None,
    ) -> list[Ticket]:
        if processing_status is None:
            query = "SELECT * FROM tickets WHERE status = ? ORDER BY created_at"
            params: tuple = (_db_value(status),)
        else:
            query = (
                "SELECT * FROM tickets WHERE status = ? AND processing_status = ? "
                "ORDER BY created_at"
            )
            params = (_db_value(status), _db_value(processing_status))
        async with self.db.execute(query, params) as cursor:
            rows = await cursor.fetchall()
            return [_row_to_ticket(r) for r in rows]

    async def get_child_tickets(self, parent_ticket_id: str) -> list[Ticket]:
        async with self.db.execute(
            "SELECT * FROM tickets WHERE parent_ticket_id = ? ORDER BY created_at",
            (parent_ticket_id,),
        ) as cursor:
            rows = await cursor.fetchall()
            return [_row_to_ticket(r) for r in rows]

    async def count_active_tickets(self) -> int:
        """Tickets currently queued or executing anywhere in the system."""
        async with self.db.execute(
            "SELECT COUNT(*) FROM tickets WHERE processing_status IN (?, ?)",
            ACTIVE_PROCESSING,
        ) as cursor:
            row = await cursor.fetchone()
            return row[0]

    # ── Replies ───────────────────────────────────────────────────────

    async def add_reply(
        self,
        ticket_id: str,
        author: str,
        body: str,
        clarity_score: float | None = None,
    ) -> TicketReply:
        now = _now()
        await self.db.execute(
            "INSERT INTO ticket_replies (ticket_id, author, body, clarity_score, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (ticket_id, author, body, clarity_score, now),
        )
        await self.db.commit()
        return TicketReply(
            ticket_id=ticket_id, author=author, body=body,
            clarity_score=clarity_score, created_at=now,
        )

    async def get_replies(self, ticket_id: str) -> list[TicketReply]:
        async with self.db.execute(
            "SELECT * FROM ticket_replies WHERE ticket_id = ? ORDER BY id", (ticket_id,)
        ) as cursor:
            rows = await cursor.fetchall()
            return [
                TicketReply(
                    ticket_id=r["ticket_id"],
                    author=r["author"],
                    body=r["body"],
                    clarity_score=r["clarity_score"],
                    created_at=r["created_at"],
                )
                for r in rows
            ]

    # ── Plans & tasks ─────────────────────────────────────────────────

    async def create_plan(self, name: str, status: str = "draft", plan_id: str | None = None) -> Plan:
        plan = Plan(id=plan_id or f"plan-{uuid.uuid4().hex[:8]}", name=name, status=status, created_at=_now())
        await self.db.execute(
            "INSERT INTO plans (id, name, status, created_at) VALUES (?, ?, ?, ?)",
            (plan.id, plan.name, plan.status, plan.created_at),
        )
        await self.db.commit()
        return plan

    async def get_plan(self, plan_id: str) -> Plan | None:
        async with self.db.execute("SELECT * FROM plans WHERE id = ?", (plan_id,)) as cursor:
            row = await cursor.fetchone()
            return Plan(**dict(row)) if row else None

    async def list_plans(self) -> list[Plan]:
        async with self.db.execute("SELECT * FROM plans ORDER BY created_at") as cursor:
            rows = await cursor.fetchall()
            return [Plan(**dict(r)) for r in rows]

    async def create_task(self, plan_id: str, title: str, task_id: str | None = None) -> Task:
        task = Task(id=task_id or f"task-{uuid.uuid4().hex[:8]}", plan_id=plan_id, title=title, created_at=_now())
        await self.db.execute(
            "INSERT INTO tasks (id, plan_id, title, status, created_at) VALUES (?, ?, ?, ?, ?)",
            (task.id, task.plan_id, task.title, task.status, task.created_at),
        )
        await self.db.commit()
        return task

    async def get_task(self, task_id: str) -> Task | None:
        async with self.db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)) as cursor:
            row = await cursor.fetchone()
            return Task(**dict(row)) if row else None

    # ── Audit log ─────────────────────────────────────────────────────

    async def add_audit_log(self, actor: str, action: str, detail: str | None = None) -> None:
        await self.db.execute(
            "INSERT INTO audit_log (actor, action, detail, created_at) VALUES (?, ?, ?, ?)",
            (actor, action, detail, _now()),
        )
        await self.db.commit()

    async def get_audit_log(self, limit: int = 50) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,)
        ) as cursor:
            rows = await cursor.fetchall()
            return [dict(r) for r in rows]

    # ── Summary ───────────────────────────────────────────────────────

    async def get_status_counts(self) -> dict[str, int]:
        """Ticket counts keyed by ``status/processing_status``."""
        async with self.db.execute(
            "SELECT status, processing_status, COUNT(*) AS n FROM tickets "
            "GROUP BY status, processing_status"
        ) as cursor:
            rows = await cursor.fetchall()
            return {f"{r['status']}/{r['processing_status']}": r["n"] for r in rows}
