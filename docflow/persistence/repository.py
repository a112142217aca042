"""Repository abstraction for workflow state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional, Protocol

from .models import WorkflowDefinition, WorkflowEvent, WorkflowExecution, WorkflowStep


class WorkflowRepository(Protocol):
    """Protocol for workflow state persistence backends.

    Update methods take a mapping of field name to new value, apply it to a
    single row and return the updated record, or ``None`` when no row has the
    given id. Backends stamp ``updated_at`` themselves.
    """

    # Executions ---------------------------------------------------------
    async def create_execution(
        self, execution: WorkflowExecution, steps: list[WorkflowStep]
    ) -> WorkflowExecution:
        """Insert an execution together with its full step set, atomically."""

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve an execution by id."""

    async def update_execution(
        self, execution_id: str, fields: dict[str, Any]
    ) -> WorkflowExecution | None:
        """Apply a partial update to an execution."""

    async def list_executions(
        self, project_id: Optional[str] = None
    ) -> list[WorkflowExecution]:
        """Return executions, newest first."""

    async def claim_execution(
        self, execution_id: str, worker_id: str, lease_expires_at: datetime, now: datetime
    ) -> bool:
        """Take the lease if it is free, expired or already held by ``worker_id``."""

    async def release_execution(self, execution_id: str, worker_id: str) -> None:
        """Drop the lease if ``worker_id`` holds it."""

    # Steps --------------------------------------------------------------
    async def get_step(self, step_id: str) -> WorkflowStep | None:
        """Retrieve a step by id."""

    async def list_steps(self, execution_id: str) -> list[WorkflowStep]:
        """Return the steps of an execution ordered by ``step_order``."""

    async def update_step(
        self, step_id: str, fields: dict[str, Any]
    ) -> WorkflowStep | None:
        """Apply a partial update to a step."""

    # Events -------------------------------------------------------------
    async def insert_event(self, event: WorkflowEvent) -> WorkflowEvent:
        """Append an event to the audit log."""

    async def list_events(self, execution_id: str) -> list[WorkflowEvent]:
        """Return events of an execution, newest first."""

    # Definitions --------------------------------------------------------
    async def save_definition(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Insert or replace a definition keyed by (name, version)."""

    async def get_definition(
        self, name: str, version: Optional[str] = None
    ) -> WorkflowDefinition | None:
        """Return a definition.

        Without ``version`` only active definitions are considered and the
        highest semantic version wins.
        """

    async def list_definitions(self) -> list[WorkflowDefinition]:
        """Return every stored definition."""
