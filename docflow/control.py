"""Control actions and status reads for callers such as an HTTP layer or the CLI."""

from __future__ import annotations

import logging
from typing import Literal, Optional

from pydantic import BaseModel, ValidationError, model_validator

from .contracts import InvalidTransitionError, NotFoundError
from .engine import WorkflowEngine
from .persistence.models import WorkflowEvent, WorkflowExecution, WorkflowStep

logger = logging.getLogger(__name__)


class ControlRequest(BaseModel):
    """A single control action against an execution."""

    execution_id: str
    action: Literal["pause", "resume", "retry", "fail"]
    actor_id: Optional[str] = None
    step_id: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @model_validator(mode="after")
    def _check_action_fields(self) -> "ControlRequest":
        if self.action == "retry" and not self.step_id:
            raise ValueError("step_id is required for retry action")
        if self.action == "fail" and not (self.error_code and self.error_message):
            raise ValueError("error_code and error_message are required for fail action")
        return self


class WorkflowStatus(BaseModel):
    execution: WorkflowExecution
    steps: Optional[list[WorkflowStep]] = None
    events: Optional[list[WorkflowEvent]] = None


async def apply_control(
    engine: WorkflowEngine, request: ControlRequest
) -> WorkflowExecution | WorkflowStep:
    """Dispatch ``request`` to the matching engine operation."""
    logger.info(f"Control action {request.action} on execution {request.execution_id}")
    if request.action == "pause":
        return await engine.pause_execution(request.execution_id, request.actor_id)
    if request.action == "resume":
        return await engine.resume_execution(request.execution_id, request.actor_id)
    if request.action == "retry":
        return await engine.retry_step(request.step_id)  # type: ignore[arg-type]
    return await engine.fail_execution(
        request.execution_id,
        request.error_code,  # type: ignore[arg-type]
        request.error_message,  # type: ignore[arg-type]
    )


async def get_status(
    engine: WorkflowEngine,
    execution_id: str,
    include_steps: bool = True,
    include_events: bool = False,
) -> WorkflowStatus:
    execution = await engine.get_execution(execution_id)
    if execution is None:
        raise NotFoundError("execution", execution_id)
    return WorkflowStatus(
        execution=execution,
        steps=await engine.get_steps(execution_id) if include_steps else None,
        events=await engine.get_events(execution_id) if include_events else None,
    )


def status_code_for(exc: BaseException) -> int:
    """HTTP status an API layer should answer with for ``exc``."""
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, (InvalidTransitionError, ValidationError, ValueError)):
        return 400
    return 500
