"""In-memory implementation of the workflow repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from .models import (
    WorkflowDefinition,
    WorkflowEvent,
    WorkflowExecution,
    WorkflowStep,
    latest_active,
    utcnow,
)
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._executions: Dict[str, WorkflowExecution] = {}
        self._steps: Dict[str, WorkflowStep] = {}
        self._events: list[tuple[int, WorkflowEvent]] = []
        self._definitions: Dict[tuple[str, str], WorkflowDefinition] = {}
        self._event_seq = 0

    # ------------------------------------------------------------------
    async def create_execution(
        self, execution: WorkflowExecution, steps: list[WorkflowStep]
    ) -> WorkflowExecution:
        if execution.id in self._executions:
            raise ValueError(f"Duplicate execution id: {execution.id}")
        orders = [s.step_order for s in steps]
        if len(set(orders)) != len(orders):
            raise ValueError(f"Duplicate step_order for execution {execution.id}")
        self._executions[execution.id] = execution.model_copy(deep=True)
        for step in steps:
            self._steps[step.id] = step.model_copy(deep=True)
        return execution.model_copy(deep=True)

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def update_execution(
        self, execution_id: str, fields: dict[str, Any]
    ) -> WorkflowExecution | None:
        execution = self._executions.get(execution_id)
        if execution is None:
            return None
        updated = execution.model_copy(update={**fields, "updated_at": utcnow()}, deep=True)
        self._executions[execution_id] = updated
        return updated.model_copy(deep=True)

    async def list_executions(
        self, project_id: Optional[str] = None
    ) -> list[WorkflowExecution]:
        executions = [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if project_id is None or e.project_id == project_id
        ]
        return sorted(executions, key=lambda e: e.created_at, reverse=True)

    async def claim_execution(
        self, execution_id: str, worker_id: str, lease_expires_at: datetime, now: datetime
    ) -> bool:
        execution = self._executions.get(execution_id)
        if execution is None:
            return False
        lease_free = (
            execution.locked_by is None
            or execution.locked_by == worker_id
            or execution.lease_expires_at is None
            or execution.lease_expires_at < now
        )
        if not lease_free:
            return False
        execution.locked_by = worker_id
        execution.lease_expires_at = lease_expires_at
        return True

    async def release_execution(self, execution_id: str, worker_id: str) -> None:
        execution = self._executions.get(execution_id)
        if execution and execution.locked_by == worker_id:
            execution.locked_by = None
            execution.lease_expires_at = None

    # ------------------------------------------------------------------
    async def get_step(self, step_id: str) -> WorkflowStep | None:
        step = self._steps.get(step_id)
        return step.model_copy(deep=True) if step else None

    async def list_steps(self, execution_id: str) -> list[WorkflowStep]:
        steps = [
            s.model_copy(deep=True)
            for s in self._steps.values()
            if s.execution_id == execution_id
        ]
        return sorted(steps, key=lambda s: s.step_order)

    async def update_step(
        self, step_id: str, fields: dict[str, Any]
    ) -> WorkflowStep | None:
        step = self._steps.get(step_id)
        if step is None:
            return None
        updated = step.model_copy(update={**fields, "updated_at": utcnow()}, deep=True)
        self._steps[step_id] = updated
        return updated.model_copy(deep=True)

    # ------------------------------------------------------------------
    async def insert_event(self, event: WorkflowEvent) -> WorkflowEvent:
        self._event_seq += 1
        self._events.append((self._event_seq, event.model_copy(deep=True)))
        return event.model_copy(deep=True)

    async def list_events(self, execution_id: str) -> list[WorkflowEvent]:
        matching = [
            (seq, e) for seq, e in self._events if e.execution_id == execution_id
        ]
        matching.sort(key=lambda item: (item[1].created_at, item[0]), reverse=True)
        return [e.model_copy(deep=True) for _, e in matching]

    # ------------------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        key = (definition.name, definition.version)
        existing = self._definitions.get(key)
        if existing is not None:
            definition = definition.model_copy(
                update={"id": existing.id, "created_at": existing.created_at, "updated_at": utcnow()}
            )
        self._definitions[key] = definition.model_copy(deep=True)
        return definition.model_copy(deep=True)

    async def get_definition(
        self, name: str, version: Optional[str] = None
    ) -> WorkflowDefinition | None:
        if version is not None:
            definition = self._definitions.get((name, version))
            return definition.model_copy(deep=True) if definition else None
        candidates = [d for (n, _), d in self._definitions.items() if n == name]
        found = latest_active(candidates)
        return found.model_copy(deep=True) if found else None

    async def list_definitions(self) -> list[WorkflowDefinition]:
        return [d.model_copy(deep=True) for d in self._definitions.values()]
