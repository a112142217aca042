"""Workflow engine for docflow.

A passive state-transition API over a :class:`WorkflowRepository`: it creates
executions from definitions, tracks execution and step state, applies the
retry policy and writes the audit event log. It never invokes agents and
runs no loop of its own; :class:`docflow.driver.WorkflowDriver` does that.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Optional

from .config import EngineConfig
from .constants import DEFAULT_LEASE_SECONDS
from .contracts import (
    TERMINAL_STATES,
    ActorType,
    AgentResult,
    CreateEventInput,
    CreateExecutionInput,
    ErrorType,
    EventType,
    ExecutionUpdate,
    InvalidTransitionError,
    NotFoundError,
    StepStatus,
    StepUpdate,
    WorkflowState,
    calculate_percent_complete,
    is_terminal_state,
)
from .persistence import WorkflowRepository, get_repository
from .persistence.models import (
    WorkflowDefinition,
    WorkflowEvent,
    WorkflowExecution,
    WorkflowStateQuery,
    WorkflowStep,
    utcnow,
)
from .utils import retry as retry_utils

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Creates and advances workflow executions.

    Write operations raise on any store failure. The display reads
    (:meth:`get_execution`, :meth:`get_steps`, :meth:`get_events`,
    :meth:`list_executions`) log the failure and return an empty result.
    """

    def __init__(
        self,
        repository: WorkflowRepository | None = None,
        config: EngineConfig | None = None,
    ) -> None:
        self._repository = repository or get_repository()
        self.config = config or EngineConfig()

    @property
    def repository(self) -> WorkflowRepository:
        return self._repository

    # ==================================================================
    # Execution management
    # ==================================================================

    async def create_execution(self, input: CreateExecutionInput) -> WorkflowExecution:
        """Create an execution and materialize every step of its definition."""
        definition = await self._repository.get_definition(input.workflow_name)
        if definition is None:
            raise NotFoundError("definition", input.workflow_name)

        execution = WorkflowExecution(
            project_id=input.project_id,
            document_type=input.document_type,
            document_id=input.document_id,
            workflow_name=input.workflow_name,
            workflow_version=definition.version,
            current_state=WorkflowState.CREATED,
            percent_complete=0,
            max_retries=self.config.max_retries,
            triggered_by=input.triggered_by,
            metadata=dict(input.metadata or {}),
        )
        steps = self._create_steps(execution.id, definition)
        await self._repository.create_execution(execution, steps)

        await self.record_event(
            CreateEventInput(
                execution_id=execution.id,
                event_type=EventType.STARTED,
                actor_id=input.triggered_by,
                actor_type=ActorType.USER if input.triggered_by else ActorType.SYSTEM,
                new_state=WorkflowState.CREATED,
            )
        )
        logger.info(
            f"Created execution {execution.id} for project={input.project_id} "
            f"workflow={definition.name}@{definition.version} with {len(steps)} steps"
        )
        return execution

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        try:
            return await self._repository.get_execution(execution_id)
        except Exception:
            logger.exception(f"Failed to get workflow execution {execution_id}")
            return None

    async def list_executions(
        self, project_id: Optional[str] = None
    ) -> list[WorkflowExecution]:
        try:
            return await self._repository.list_executions(project_id)
        except Exception:
            logger.exception("Failed to list workflow executions")
            return []

    async def update_execution(
        self, execution_id: str, update: ExecutionUpdate | dict[str, Any]
    ) -> WorkflowExecution:
        """Apply a partial update; only explicitly provided fields change."""
        if isinstance(update, dict):
            update = ExecutionUpdate(**update)
        return await self._update_execution(
            execution_id, update.model_dump(exclude_unset=True)
        )

    async def transition_state(
        self,
        execution_id: str,
        new_state: WorkflowState,
        metadata: Optional[dict[str, Any]] = None,
    ) -> WorkflowExecution:
        """Move an execution to ``new_state`` and merge ``metadata`` into it."""
        new_state = WorkflowState(new_state)
        execution = await self._require_execution(execution_id)
        previous_state = execution.current_state
        self._ensure_not_terminal(execution, new_state, "transition")
        self._ensure_not_paused(execution, new_state, "transition")

        fields: dict[str, Any] = {"current_state": new_state}
        if new_state in TERMINAL_STATES:
            fields["completed_at"] = utcnow()
        if metadata:
            fields["metadata"] = {**execution.metadata, **metadata}
        updated = await self._update_execution(execution_id, fields)

        await self.record_event(
            CreateEventInput(
                execution_id=execution_id,
                event_type=EventType.STATE_CHANGED,
                actor_type=ActorType.SYSTEM,
                previous_state=previous_state,
                new_state=new_state,
                metadata=metadata,
            )
        )
        logger.info(
            f"Execution {execution_id} transitioned {previous_state.value} -> {new_state.value}"
        )
        return updated

    # ==================================================================
    # Execution control
    # ==================================================================

    async def pause_execution(
        self, execution_id: str, actor_id: Optional[str] = None
    ) -> WorkflowExecution:
        execution = await self._require_execution(execution_id)
        self._ensure_not_terminal(execution, WorkflowState.PAUSED, "pause")

        updated = await self._update_execution(
            execution_id,
            {"current_state": WorkflowState.PAUSED, "paused_at": utcnow()},
        )
        await self.record_event(
            CreateEventInput(
                execution_id=execution_id,
                event_type=EventType.PAUSED,
                actor_id=actor_id,
                actor_type=ActorType.USER if actor_id else ActorType.SYSTEM,
                previous_state=execution.current_state,
                new_state=WorkflowState.PAUSED,
            )
        )
        logger.info(f"Execution {execution_id} paused by {actor_id or 'system'}")
        return updated

    async def resume_execution(
        self, execution_id: str, actor_id: Optional[str] = None
    ) -> WorkflowExecution:
        """Resume a paused execution; the driver restarts from the first pending step."""
        execution = await self._require_execution(execution_id)
        if execution.current_state != WorkflowState.PAUSED:
            logger.warning(
                f"Rejected resume of execution {execution_id} in state {execution.current_state.value}"
            )
            raise InvalidTransitionError(
                f"Cannot resume workflow in state: {execution.current_state.value}"
            )

        updated = await self._update_execution(
            execution_id,
            {"current_state": WorkflowState.CREATED, "resumed_at": utcnow()},
        )
        await self.record_event(
            CreateEventInput(
                execution_id=execution_id,
                event_type=EventType.RESUMED,
                actor_id=actor_id,
                actor_type=ActorType.USER if actor_id else ActorType.SYSTEM,
                previous_state=WorkflowState.PAUSED,
                new_state=WorkflowState.CREATED,
            )
        )
        logger.info(f"Execution {execution_id} resumed by {actor_id or 'system'}")
        return updated

    async def fail_execution(
        self, execution_id: str, error_code: str, error_message: str
    ) -> WorkflowExecution:
        execution = await self._require_execution(execution_id)
        if execution.current_state == WorkflowState.COMPLETED:
            raise InvalidTransitionError(
                f"Cannot fail workflow in state: {execution.current_state.value}"
            )

        updated = await self._update_execution(
            execution_id,
            {
                "current_state": WorkflowState.FAILED,
                "error_code": error_code,
                "error_message": error_message,
                "completed_at": utcnow(),
            },
        )
        await self.record_event(
            CreateEventInput(
                execution_id=execution_id,
                event_type=EventType.FAILED,
                actor_type=ActorType.SYSTEM,
                previous_state=execution.current_state,
                new_state=WorkflowState.FAILED,
                metadata={"error_code": error_code, "error_message": error_message},
            )
        )
        logger.warning(f"Execution {execution_id} failed: [{error_code}] {error_message}")
        return updated

    async def complete_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self._require_execution(execution_id)
        self._ensure_not_terminal(execution, WorkflowState.COMPLETED, "complete")
        self._ensure_not_paused(execution, WorkflowState.COMPLETED, "complete")

        updated = await self._update_execution(
            execution_id,
            {
                "current_state": WorkflowState.COMPLETED,
                "percent_complete": 100,
                "completed_at": utcnow(),
            },
        )
        await self.record_event(
            CreateEventInput(
                execution_id=execution_id,
                event_type=EventType.COMPLETED,
                actor_type=ActorType.SYSTEM,
                previous_state=execution.current_state,
                new_state=WorkflowState.COMPLETED,
            )
        )
        logger.info(f"Execution {execution_id} completed")
        return updated

    # ==================================================================
    # Checkpoints, summaries and leases
    # ==================================================================

    async def save_checkpoint(
        self, execution_id: str, data: dict[str, Any]
    ) -> WorkflowExecution:
        """Store opaque resumability data for an execution."""
        if not self.config.enable_checkpoints:
            raise InvalidTransitionError("Checkpoints are disabled")
        await self._require_execution(execution_id)
        return await self._update_execution(execution_id, {"checkpoint_data": data})

    async def get_checkpoint(self, execution_id: str) -> dict[str, Any] | None:
        execution = await self._require_execution(execution_id)
        return execution.checkpoint_data

    async def get_state(self, execution_id: str) -> WorkflowStateQuery:
        execution = await self._require_execution(execution_id)
        steps = await self._repository.list_steps(execution_id)
        return WorkflowStateQuery(
            execution_id=execution.id,
            current_state=execution.current_state,
            current_step=execution.current_step,
            percent_complete=execution.percent_complete,
            steps_completed=sum(1 for s in steps if s.status == StepStatus.COMPLETED),
            steps_total=len(steps),
            error_message=execution.error_message,
        )

    async def claim_execution(
        self,
        execution_id: str,
        worker_id: str,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
    ) -> bool:
        """Take the single-writer lease on an execution for ``lease_seconds``."""
        now = utcnow()
        claimed = await self._repository.claim_execution(
            execution_id, worker_id, now + timedelta(seconds=lease_seconds), now
        )
        if not claimed:
            logger.info(f"Execution {execution_id} is leased by another worker")
        return claimed

    async def release_execution(self, execution_id: str, worker_id: str) -> None:
        await self._repository.release_execution(execution_id, worker_id)

    # ==================================================================
    # Step management
    # ==================================================================

    def _create_steps(
        self, execution_id: str, definition: WorkflowDefinition
    ) -> list[WorkflowStep]:
        """Translate definition entries into pending step rows, in order."""
        return [
            WorkflowStep(
                execution_id=execution_id,
                step_name=step_def.name,
                step_order=index + 1,
                agent_name=step_def.agent,
                status=StepStatus.PENDING,
                metadata={
                    "description": step_def.description,
                    "timeout_minutes": step_def.timeout_minutes,
                    "retry_on_failure": step_def.retry_on_failure,
                },
            )
            for index, step_def in enumerate(definition.steps)
        ]

    async def get_steps(self, execution_id: str) -> list[WorkflowStep]:
        try:
            return await self._repository.list_steps(execution_id)
        except Exception:
            logger.exception(f"Failed to get steps for execution {execution_id}")
            return []

    async def get_next_step(self, execution_id: str) -> WorkflowStep | None:
        """Return the lowest-ordered pending step, if any."""
        # Store errors propagate here: an empty answer would read as "done".
        steps = await self._repository.list_steps(execution_id)
        return next((s for s in steps if s.status == StepStatus.PENDING), None)

    async def update_step(
        self, step_id: str, update: StepUpdate | dict[str, Any]
    ) -> WorkflowStep:
        if isinstance(update, dict):
            update = StepUpdate(**update)
        return await self._update_step(step_id, update.model_dump(exclude_unset=True))

    async def start_step(self, step_id: str) -> WorkflowStep:
        step = await self._require_step(step_id)
        if step.status in (StepStatus.COMPLETED, StepStatus.SKIPPED):
            raise InvalidTransitionError(
                f"Cannot start step {step_id} in status: {step.status.value}"
            )

        updated = await self._update_step(
            step_id, {"status": StepStatus.RUNNING, "started_at": utcnow()}
        )
        # Step starts reuse the step_completed type, tagged with status=running.
        await self.record_event(
            CreateEventInput(
                execution_id=step.execution_id,
                event_type=EventType.STEP_COMPLETED,
                actor_type=ActorType.SYSTEM,
                step_id=step_id,
                metadata={"step_name": step.step_name, "status": StepStatus.RUNNING.value},
            )
        )
        logger.debug(f"Started step {step.step_name} ({step_id})")
        return updated

    async def complete_step(self, step_id: str, result: AgentResult) -> WorkflowStep:
        """Record an agent result on a step and refresh execution progress."""
        step = await self._require_step(step_id)

        completed_at = utcnow()
        duration_ms = (
            int((completed_at - step.started_at).total_seconds() * 1000)
            if step.started_at
            else None
        )
        status = StepStatus.COMPLETED if result.success else StepStatus.FAILED
        updated = await self._update_step(
            step_id,
            {
                "status": status,
                "completed_at": completed_at,
                "duration_ms": duration_ms,
                "output_data": result.data,
                "error_type": result.error.type if result.error else None,
                "error_message": result.error.message if result.error else None,
                "metadata": {**step.metadata, **(result.metadata or {})},
            },
        )

        await self.record_event(
            CreateEventInput(
                execution_id=step.execution_id,
                event_type=EventType.STEP_COMPLETED,
                actor_type=ActorType.AGENT,
                step_id=step_id,
                metadata={
                    "step_name": step.step_name,
                    "status": status.value,
                    "duration_ms": duration_ms,
                },
            )
        )
        await self._refresh_progress(step.execution_id, step.step_name)

        if result.success:
            logger.info(f"Step {step.step_name} completed in {duration_ms}ms")
        else:
            logger.warning(
                f"Step {step.step_name} failed: "
                f"{result.error.type.value if result.error else 'unknown'} "
                f"{result.error.message if result.error else ''}"
            )
        return updated

    async def skip_step(self, step_id: str, reason: Optional[str] = None) -> WorkflowStep:
        """Mark an optional step as skipped so the pipeline can move on."""
        step = await self._require_step(step_id)
        if step.status == StepStatus.COMPLETED:
            raise InvalidTransitionError(f"Cannot skip completed step: {step_id}")

        metadata = dict(step.metadata)
        if reason:
            metadata["skip_reason"] = reason
        updated = await self._update_step(
            step_id,
            {"status": StepStatus.SKIPPED, "completed_at": utcnow(), "metadata": metadata},
        )
        await self.record_event(
            CreateEventInput(
                execution_id=step.execution_id,
                event_type=EventType.STEP_COMPLETED,
                actor_type=ActorType.SYSTEM,
                step_id=step_id,
                metadata={
                    "step_name": step.step_name,
                    "status": StepStatus.SKIPPED.value,
                    "reason": reason,
                },
            )
        )
        await self._refresh_progress(step.execution_id, step.step_name)
        logger.info(f"Step {step.step_name} skipped: {reason}")
        return updated

    # ==================================================================
    # Retry logic
    # ==================================================================

    def should_retry_step(
        self, step: WorkflowStep, execution: Optional[WorkflowExecution] = None
    ) -> bool:
        """Whether a failed step may be reset for another attempt.

        The limit is the execution's ``max_retries`` when the execution is
        given, otherwise the engine-wide ``config.max_retries``.
        """
        if step.status != StepStatus.FAILED:
            return False
        if step.error_type in (ErrorType.FATAL, ErrorType.VALIDATION):
            return False

        retry_on_failure = step.metadata.get("retry_on_failure")
        if retry_on_failure is not None and not retry_on_failure:
            return False

        max_retries = execution.max_retries if execution else self.config.max_retries
        return step.retry_attempt < max_retries

    async def retry_step(self, step_id: str) -> WorkflowStep:
        """Wait out the backoff delay, then put a failed step back to pending."""
        step = await self._require_step(step_id)
        execution = await self._repository.get_execution(step.execution_id)

        if not self.should_retry_step(step, execution):
            logger.warning(f"Rejected retry of step {step.step_name} ({step_id})")
            raise InvalidTransitionError(f"Step cannot be retried: {step_id}")

        retry_delay_ms = retry_utils.compute_backoff(
            step.retry_attempt,
            base_ms=self.config.retry_delay_ms,
            multiplier=self.config.retry_backoff_multiplier,
        )
        logger.info(
            f"Retrying step {step.step_name} (attempt {step.retry_attempt + 1}) in {retry_delay_ms}ms"
        )
        await retry_utils.schedule_retry(retry_delay_ms)

        updated = await self._update_step(
            step_id,
            {
                "status": StepStatus.PENDING,
                "retry_attempt": step.retry_attempt + 1,
                "error_type": None,
                "error_message": None,
                "error_stack": None,
            },
        )
        if execution is not None:
            await self._update_execution(
                execution.id, {"retry_count": execution.retry_count + 1}
            )

        await self.record_event(
            CreateEventInput(
                execution_id=step.execution_id,
                event_type=EventType.RETRY,
                actor_type=ActorType.SYSTEM,
                step_id=step_id,
                metadata={
                    "step_name": step.step_name,
                    "retry_attempt": updated.retry_attempt,
                    "retry_delay_ms": retry_delay_ms,
                },
            )
        )
        return updated

    # ==================================================================
    # Events
    # ==================================================================

    async def record_event(self, input: CreateEventInput) -> WorkflowEvent:
        """Append an event; store failures always propagate."""
        event = WorkflowEvent(**input.model_dump())
        return await self._repository.insert_event(event)

    async def get_events(self, execution_id: str) -> list[WorkflowEvent]:
        try:
            return await self._repository.list_events(execution_id)
        except Exception:
            logger.exception(f"Failed to get events for execution {execution_id}")
            return []

    # ==================================================================
    # Internal helpers
    # ==================================================================

    async def _require_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self._repository.get_execution(execution_id)
        if execution is None:
            raise NotFoundError("execution", execution_id)
        return execution

    async def _require_step(self, step_id: str) -> WorkflowStep:
        step = await self._repository.get_step(step_id)
        if step is None:
            raise NotFoundError("step", step_id)
        return step

    async def _update_execution(
        self, execution_id: str, fields: dict[str, Any]
    ) -> WorkflowExecution:
        updated = await self._repository.update_execution(execution_id, fields)
        if updated is None:
            raise NotFoundError("execution", execution_id)
        return updated

    async def _update_step(self, step_id: str, fields: dict[str, Any]) -> WorkflowStep:
        updated = await self._repository.update_step(step_id, fields)
        if updated is None:
            raise NotFoundError("step", step_id)
        return updated

    async def _refresh_progress(self, execution_id: str, step_name: str) -> None:
        steps = await self._repository.list_steps(execution_id)
        await self._update_execution(
            execution_id,
            {
                "percent_complete": calculate_percent_complete(steps),
                "current_step": step_name,
            },
        )

    @staticmethod
    def _ensure_not_terminal(
        execution: WorkflowExecution, target: WorkflowState, operation: str
    ) -> None:
        state = execution.current_state
        if is_terminal_state(state) and state != target:
            logger.warning(
                f"Rejected {operation} of execution {execution.id} in terminal state {state.value}"
            )
            raise InvalidTransitionError(
                f"Cannot {operation} workflow in terminal state: {state.value}"
            )

    @staticmethod
    def _ensure_not_paused(
        execution: WorkflowExecution, target: WorkflowState, operation: str
    ) -> None:
        # Only resume_execution and fail_execution may leave the paused state.
        if execution.current_state == WorkflowState.PAUSED and target != WorkflowState.PAUSED:
            logger.warning(f"Rejected {operation} of paused execution {execution.id}")
            raise InvalidTransitionError(
                f"Cannot {operation} paused workflow to: {target.value}"
            )
