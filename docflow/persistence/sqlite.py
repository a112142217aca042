"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Type, TypeVar

from pydantic import BaseModel

from .models import (
    WorkflowDefinition,
    WorkflowEvent,
    WorkflowExecution,
    WorkflowStep,
    latest_active,
    utcnow,
)
from .repository import WorkflowRepository

ModelT = TypeVar("ModelT", bound=BaseModel)

_JSON_COLUMNS = {
    "metadata",
    "checkpoint_data",
    "input_data",
    "output_data",
    "event_data",
    "steps",
}

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS workflow_executions (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        document_type TEXT NOT NULL,
        document_id TEXT,
        workflow_name TEXT NOT NULL,
        workflow_version TEXT NOT NULL,
        current_state TEXT NOT NULL,
        current_step TEXT,
        percent_complete INTEGER NOT NULL DEFAULT 0,
        started_at TEXT NOT NULL,
        completed_at TEXT,
        paused_at TEXT,
        resumed_at TEXT,
        error_code TEXT,
        error_message TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0,
        max_retries INTEGER NOT NULL DEFAULT 3,
        checkpoint_data TEXT,
        triggered_by TEXT,
        metadata TEXT,
        locked_by TEXT,
        lease_expires_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_steps (
        id TEXT PRIMARY KEY,
        execution_id TEXT NOT NULL REFERENCES workflow_executions(id),
        step_name TEXT NOT NULL,
        step_order INTEGER NOT NULL,
        agent_name TEXT NOT NULL,
        status TEXT NOT NULL,
        started_at TEXT,
        completed_at TEXT,
        duration_ms INTEGER,
        input_data TEXT,
        output_data TEXT,
        error_type TEXT,
        error_message TEXT,
        error_stack TEXT,
        retry_attempt INTEGER NOT NULL DEFAULT 0,
        metadata TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (execution_id, step_order)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_events (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        execution_id TEXT NOT NULL REFERENCES workflow_executions(id),
        event_type TEXT NOT NULL,
        event_data TEXT,
        actor_id TEXT,
        actor_type TEXT NOT NULL,
        step_id TEXT,
        previous_state TEXT,
        new_state TEXT,
        metadata TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflow_definitions (
        id TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        version TEXT NOT NULL,
        description TEXT,
        document_type TEXT NOT NULL,
        steps TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        is_default INTEGER NOT NULL DEFAULT 0,
        created_by TEXT,
        metadata TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (name, version)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_steps_execution ON workflow_steps (execution_id, step_order)",
    "CREATE INDEX IF NOT EXISTS idx_events_execution ON workflow_events (execution_id, created_at)",
]


def _timestamp(value: datetime) -> str:
    # Fixed width so that text comparison matches time order.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _to_column(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in _JSON_COLUMNS:
        return json.dumps(value, default=str)
    if isinstance(value, datetime):
        return _timestamp(value)
    if isinstance(value, Enum):
        return value.value
    return value


def _to_row(model: BaseModel) -> dict[str, Any]:
    return {name: _to_column(name, value) for name, value in model.model_dump().items()}


def _from_row(model_cls: Type[ModelT], row: sqlite3.Row) -> ModelT:
    # NULL columns fall back to the model defaults
    data = {key: row[key] for key in row.keys() if key != "seq" and row[key] is not None}
    for key in _JSON_COLUMNS.intersection(data):
        data[key] = json.loads(data[key])
    return model_cls.model_validate(data)


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflow state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock, self._conn:
            for statement in _SCHEMA:
                self._conn.execute(statement)

    # ------------------------------------------------------------------
    # Helper methods
    def _insert(self, cur: sqlite3.Cursor, table: str, row: dict[str, Any]) -> None:
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        cur.execute(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
            tuple(row.values()),
        )

    def _insert_many(self, table: str, rows: list[dict[str, Any]]) -> None:
        with self._lock, self._conn:
            cur = self._conn.cursor()
            for row in rows:
                self._insert(cur, table, row)

    def _create_execution(self, execution: dict[str, Any], steps: list[dict[str, Any]]) -> None:
        # One transaction: the execution never exists without its steps.
        with self._lock, self._conn:
            cur = self._conn.cursor()
            self._insert(cur, "workflow_executions", execution)
            for step in steps:
                self._insert(cur, "workflow_steps", step)

    def _update(
        self, table: str, model_cls: Type[ModelT], record_id: str, fields: dict[str, Any]
    ) -> ModelT | None:
        # Read, merge and write under one lock and one transaction.
        with self._lock, self._conn:
            row = self._conn.execute(
                f"SELECT * FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            if row is None:
                return None
            updated = _from_row(model_cls, row).model_copy(
                update={**fields, "updated_at": utcnow()}
            )
            values = _to_row(updated)
            columns = [c for c in values if c != "id"]
            assignments = ", ".join(f"{c} = ?" for c in columns)
            self._conn.execute(
                f"UPDATE {table} SET {assignments} WHERE id = ?",
                (*(values[c] for c in columns), record_id),
            )
            return updated

    def _execute(self, query: str, *params: Any) -> int:
        with self._lock, self._conn:
            return self._conn.execute(query, params).rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(query, params).fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(query, params).fetchall()

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(
        self, execution: WorkflowExecution, steps: list[WorkflowStep]
    ) -> WorkflowExecution:
        await asyncio.to_thread(
            self._create_execution, _to_row(execution), [_to_row(s) for s in steps]
        )
        return execution

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM workflow_executions WHERE id = ?", execution_id
        )
        return _from_row(WorkflowExecution, row) if row else None

    async def update_execution(
        self, execution_id: str, fields: dict[str, Any]
    ) -> WorkflowExecution | None:
        return await asyncio.to_thread(
            self._update, "workflow_executions", WorkflowExecution, execution_id, fields
        )

    async def list_executions(
        self, project_id: Optional[str] = None
    ) -> list[WorkflowExecution]:
        if project_id is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT * FROM workflow_executions ORDER BY created_at DESC"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM workflow_executions WHERE project_id = ? ORDER BY created_at DESC",
                project_id,
            )
        return [_from_row(WorkflowExecution, r) for r in rows]

    async def claim_execution(
        self, execution_id: str, worker_id: str, lease_expires_at: datetime, now: datetime
    ) -> bool:
        claimed = await asyncio.to_thread(
            self._execute,
            """
            UPDATE workflow_executions
            SET locked_by = ?, lease_expires_at = ?
            WHERE id = ?
              AND (locked_by IS NULL OR locked_by = ?
                   OR lease_expires_at IS NULL OR lease_expires_at < ?)
            """,
            worker_id,
            _timestamp(lease_expires_at),
            execution_id,
            worker_id,
            _timestamp(now),
        )
        return claimed == 1

    async def release_execution(self, execution_id: str, worker_id: str) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE workflow_executions SET locked_by = NULL, lease_expires_at = NULL WHERE id = ? AND locked_by = ?",
            execution_id,
            worker_id,
        )

    # ------------------------------------------------------------------
    # Steps
    async def get_step(self, step_id: str) -> WorkflowStep | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM workflow_steps WHERE id = ?", step_id
        )
        return _from_row(WorkflowStep, row) if row else None

    async def list_steps(self, execution_id: str) -> list[WorkflowStep]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM workflow_steps WHERE execution_id = ? ORDER BY step_order",
            execution_id,
        )
        return [_from_row(WorkflowStep, r) for r in rows]

    async def update_step(
        self, step_id: str, fields: dict[str, Any]
    ) -> WorkflowStep | None:
        return await asyncio.to_thread(
            self._update, "workflow_steps", WorkflowStep, step_id, fields
        )

    # ------------------------------------------------------------------
    # Events
    async def insert_event(self, event: WorkflowEvent) -> WorkflowEvent:
        await asyncio.to_thread(self._insert_many, "workflow_events", [_to_row(event)])
        return event

    async def list_events(self, execution_id: str) -> list[WorkflowEvent]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM workflow_events WHERE execution_id = ? ORDER BY created_at DESC, seq DESC",
            execution_id,
        )
        return [_from_row(WorkflowEvent, r) for r in rows]

    # ------------------------------------------------------------------
    # Definitions
    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        existing = await self.get_definition(definition.name, definition.version)
        if existing is not None:
            definition = definition.model_copy(
                update={"id": existing.id, "created_at": existing.created_at, "updated_at": utcnow()}
            )
            await asyncio.to_thread(
                self._execute,
                "DELETE FROM workflow_definitions WHERE name = ? AND version = ?",
                definition.name,
                definition.version,
            )
        await asyncio.to_thread(self._insert_many, "workflow_definitions", [_to_row(definition)])
        return definition

    async def get_definition(
        self, name: str, version: Optional[str] = None
    ) -> WorkflowDefinition | None:
        if version is not None:
            row = await asyncio.to_thread(
                self._fetchone,
                "SELECT * FROM workflow_definitions WHERE name = ? AND version = ?",
                name,
                version,
            )
            return _from_row(WorkflowDefinition, row) if row else None
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM workflow_definitions WHERE name = ? AND is_active = 1",
            name,
        )
        return latest_active([_from_row(WorkflowDefinition, r) for r in rows])

    async def list_definitions(self) -> list[WorkflowDefinition]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT * FROM workflow_definitions ORDER BY name, version"
        )
        return [_from_row(WorkflowDefinition, r) for r in rows]
