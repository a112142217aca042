"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Type, TypeVar

import asyncpg
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


def _to_row(model: BaseModel) -> dict[str, Any]:
    row = {}
    for name, value in model.model_dump().items():
        row[name] = value.value if isinstance(value, Enum) else value
    return row


def _from_record(model_cls: Type[ModelT], record: asyncpg.Record) -> ModelT:
    data = {k: v for k, v in dict(record).items() if k != "seq" and v is not None}
    return model_cls.model_validate(data)


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        await conn.set_type_codec(
            "jsonb",
            encoder=lambda v: json.dumps(v, default=str),
            decoder=json.loads,
            schema="pg_catalog",
        )
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
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
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                paused_at TIMESTAMPTZ,
                resumed_at TIMESTAMPTZ,
                error_code TEXT,
                error_message TEXT,
                retry_count INTEGER NOT NULL DEFAULT 0,
                max_retries INTEGER NOT NULL DEFAULT 3,
                checkpoint_data JSONB,
                triggered_by TEXT,
                metadata JSONB,
                locked_by TEXT,
                lease_expires_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_steps (
                id TEXT PRIMARY KEY,
                execution_id TEXT NOT NULL REFERENCES workflow_executions(id),
                step_name TEXT NOT NULL,
                step_order INTEGER NOT NULL,
                agent_name TEXT NOT NULL,
                status TEXT NOT NULL,
                started_at TIMESTAMPTZ,
                completed_at TIMESTAMPTZ,
                duration_ms INTEGER,
                input_data JSONB,
                output_data JSONB,
                error_type TEXT,
                error_message TEXT,
                error_stack TEXT,
                retry_attempt INTEGER NOT NULL DEFAULT 0,
                metadata JSONB,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                UNIQUE (execution_id, step_order)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_events (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                execution_id TEXT NOT NULL REFERENCES workflow_executions(id),
                event_type TEXT NOT NULL,
                event_data JSONB,
                actor_id TEXT,
                actor_type TEXT NOT NULL,
                step_id TEXT,
                previous_state TEXT,
                new_state TEXT,
                metadata JSONB,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_definitions (
                id TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                version TEXT NOT NULL,
                description TEXT,
                document_type TEXT NOT NULL,
                steps JSONB NOT NULL,
                is_active BOOLEAN NOT NULL DEFAULT TRUE,
                is_default BOOLEAN NOT NULL DEFAULT FALSE,
                created_by TEXT,
                metadata JSONB,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                PRIMARY KEY (name, version)
            )
            """
        )

    # ------------------------------------------------------------------
    @staticmethod
    async def _insert(conn: asyncpg.Connection, table: str, row: dict[str, Any]) -> None:
        columns = ", ".join(row)
        placeholders = ", ".join(f"${i}" for i in range(1, len(row) + 1))
        await conn.execute(
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders})", *row.values()
        )

    @staticmethod
    async def _update(conn: asyncpg.Connection, table: str, row: dict[str, Any]) -> None:
        columns = [c for c in row if c != "id"]
        assignments = ", ".join(f"{c} = ${i}" for i, c in enumerate(columns, start=1))
        await conn.execute(
            f"UPDATE {table} SET {assignments} WHERE id = ${len(columns) + 1}",
            *(row[c] for c in columns),
            row["id"],
        )

    # ------------------------------------------------------------------
    async def create_execution(
        self, execution: WorkflowExecution, steps: list[WorkflowStep]
    ) -> WorkflowExecution:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await self._insert(conn, "workflow_executions", _to_row(execution))
                for step in steps:
                    await self._insert(conn, "workflow_steps", _to_row(step))
        finally:
            await conn.close()
        return execution

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        conn = await self._connect()
        try:
            record = await conn.fetchrow(
                "SELECT * FROM workflow_executions WHERE id = $1", execution_id
            )
        finally:
            await conn.close()
        return _from_record(WorkflowExecution, record) if record else None

    async def update_execution(
        self, execution_id: str, fields: dict[str, Any]
    ) -> WorkflowExecution | None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                record = await conn.fetchrow(
                    "SELECT * FROM workflow_executions WHERE id = $1 FOR UPDATE",
                    execution_id,
                )
                if not record:
                    return None
                updated = _from_record(WorkflowExecution, record).model_copy(
                    update={**fields, "updated_at": utcnow()}
                )
                await self._update(conn, "workflow_executions", _to_row(updated))
        finally:
            await conn.close()
        return updated

    async def list_executions(
        self, project_id: Optional[str] = None
    ) -> list[WorkflowExecution]:
        conn = await self._connect()
        try:
            if project_id is None:
                records = await conn.fetch(
                    "SELECT * FROM workflow_executions ORDER BY created_at DESC"
                )
            else:
                records = await conn.fetch(
                    "SELECT * FROM workflow_executions WHERE project_id = $1 ORDER BY created_at DESC",
                    project_id,
                )
        finally:
            await conn.close()
        return [_from_record(WorkflowExecution, r) for r in records]

    async def claim_execution(
        self, execution_id: str, worker_id: str, lease_expires_at: datetime, now: datetime
    ) -> bool:
        conn = await self._connect()
        try:
            status = await conn.execute(
                """
                UPDATE workflow_executions
                SET locked_by = $1, lease_expires_at = $2
                WHERE id = $3
                  AND (locked_by IS NULL OR locked_by = $1
                       OR lease_expires_at IS NULL OR lease_expires_at < $4)
                """,
                worker_id,
                lease_expires_at,
                execution_id,
                now,
            )
        finally:
            await conn.close()
        return status == "UPDATE 1"

    async def release_execution(self, execution_id: str, worker_id: str) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE workflow_executions SET locked_by = NULL, lease_expires_at = NULL WHERE id = $1 AND locked_by = $2",
                execution_id,
                worker_id,
            )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def get_step(self, step_id: str) -> WorkflowStep | None:
        conn = await self._connect()
        try:
            record = await conn.fetchrow("SELECT * FROM workflow_steps WHERE id = $1", step_id)
        finally:
            await conn.close()
        return _from_record(WorkflowStep, record) if record else None

    async def list_steps(self, execution_id: str) -> list[WorkflowStep]:
        conn = await self._connect()
        try:
            records = await conn.fetch(
                "SELECT * FROM workflow_steps WHERE execution_id = $1 ORDER BY step_order",
                execution_id,
            )
        finally:
            await conn.close()
        return [_from_record(WorkflowStep, r) for r in records]

    async def update_step(
        self, step_id: str, fields: dict[str, Any]
    ) -> WorkflowStep | None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                record = await conn.fetchrow(
                    "SELECT * FROM workflow_steps WHERE id = $1 FOR UPDATE", step_id
                )
                if not record:
                    return None
                updated = _from_record(WorkflowStep, record).model_copy(
                    update={**fields, "updated_at": utcnow()}
                )
                await self._update(conn, "workflow_steps", _to_row(updated))
        finally:
            await conn.close()
        return updated

    # ------------------------------------------------------------------
    async def insert_event(self, event: WorkflowEvent) -> WorkflowEvent:
        conn = await self._connect()
        try:
            await self._insert(conn, "workflow_events", _to_row(event))
        finally:
            await conn.close()
        return event

    async def list_events(self, execution_id: str) -> list[WorkflowEvent]:
        conn = await self._connect()
        try:
            records = await conn.fetch(
                "SELECT * FROM workflow_events WHERE execution_id = $1 ORDER BY created_at DESC, seq DESC",
                execution_id,
            )
        finally:
            await conn.close()
        return [_from_record(WorkflowEvent, r) for r in records]

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        conn = await self._connect()
        try:
            async with conn.transaction():
                existing = await conn.fetchrow(
                    "SELECT id, created_at FROM workflow_definitions WHERE name = $1 AND version = $2",
                    definition.name,
                    definition.version,
                )
                if existing:
                    definition = definition.model_copy(
                        update={
                            "id": existing["id"],
                            "created_at": existing["created_at"],
                            "updated_at": utcnow(),
                        }
                    )
                    await conn.execute(
                        "DELETE FROM workflow_definitions WHERE name = $1 AND version = $2",
                        definition.name,
                        definition.version,
                    )
                row = _to_row(definition)
                row["steps"] = [step.model_dump(mode="json") for step in definition.steps]
                await self._insert(conn, "workflow_definitions", row)
        finally:
            await conn.close()
        return definition

    async def get_definition(
        self, name: str, version: Optional[str] = None
    ) -> WorkflowDefinition | None:
        conn = await self._connect()
        try:
            if version is not None:
                record = await conn.fetchrow(
                    "SELECT * FROM workflow_definitions WHERE name = $1 AND version = $2",
                    name,
                    version,
                )
                return _from_record(WorkflowDefinition, record) if record else None
            records = await conn.fetch(
                "SELECT * FROM workflow_definitions WHERE name = $1 AND is_active",
                name,
            )
        finally:
            await conn.close()
        return latest_active([_from_record(WorkflowDefinition, r) for r in records])

    async def list_definitions(self) -> list[WorkflowDefinition]:
        conn = await self._connect()
        try:
            records = await conn.fetch(
                "SELECT * FROM workflow_definitions ORDER BY name, version"
            )
        finally:
            await conn.close()
        return [_from_record(WorkflowDefinition, r) for r in records]
