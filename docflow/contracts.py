"""Core contracts for the docflow workflow engine.

Enumerations, agent results, input payloads for engine operations and the
exceptions the engine raises. Persisted records live in
:mod:`docflow.persistence.models`.
"""

from __future__ import annotations

import math
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Iterable, Optional

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from .persistence.models import WorkflowStep


class WorkflowState(str, Enum):
    CREATED = "created"
    ENRICHING = "enriching"
    ENRICHED = "enriched"
    COMPOSING = "composing"
    COMPOSED = "composed"
    WRITING = "writing"
    WRITTEN = "written"
    VALIDATING = "validating"
    VALIDATED = "validated"
    ASSEMBLING = "assembling"
    ASSEMBLED = "assembled"
    EXPORTING = "exporting"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ErrorType(str, Enum):
    """Failure classification reported by agents."""

    TRANSIENT = "transient"  # network errors, retried automatically
    VALIDATION = "validation"  # data errors, need a human fix
    FATAL = "fatal"  # workflow cannot continue


class EventType(str, Enum):
    STARTED = "started"
    STEP_COMPLETED = "step_completed"
    STATE_CHANGED = "state_changed"
    PAUSED = "paused"
    RESUMED = "resumed"
    FAILED = "failed"
    COMPLETED = "completed"
    RETRY = "retry"


class ActorType(str, Enum):
    USER = "user"
    SYSTEM = "system"
    AGENT = "agent"


class DocumentType(str, Enum):
    IB = "ib"  # Investigator Brochure
    PROTOCOL = "protocol"  # Clinical Study Protocol
    ICF = "icf"  # Informed Consent Form
    CSR = "csr"  # Clinical Study Report
    SAP = "sap"  # Statistical Analysis Plan


class AgentName(str, Enum):
    REGDATA = "regdata"
    COMPOSER = "composer"
    WRITER = "writer"
    VALIDATOR = "validator"
    ASSEMBLER = "assembler"
    EXPORT = "export"
    COMPOSER_PROTOCOL = "composer_protocol"
    WRITER_PROTOCOL = "writer_protocol"
    VALIDATOR_PROTOCOL = "validator_protocol"
    ASSEMBLER_PROTOCOL = "assembler_protocol"
    COMPOSER_ICF = "composer_icf"
    WRITER_ICF = "writer_icf"
    VALIDATOR_ICF = "validator_icf"
    ASSEMBLER_ICF = "assembler_icf"


TERMINAL_STATES = frozenset({WorkflowState.COMPLETED, WorkflowState.FAILED})


# ---------------------------------------------------------------------------
# Exceptions


class WorkflowError(Exception):
    """Base class for errors raised by the workflow engine."""


class NotFoundError(WorkflowError):
    """A referenced execution, step or definition does not exist."""

    def __init__(self, kind: str, identifier: str) -> None:
        super().__init__(f"Workflow {kind} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier


class InvalidTransitionError(WorkflowError):
    """The requested operation is not allowed in the current state."""


# ---------------------------------------------------------------------------
# Agent results


class AgentError(BaseModel):
    type: ErrorType
    message: str
    code: Optional[str] = None


class AgentResult(BaseModel):
    """Structured outcome of one agent invocation."""

    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[AgentError] = None
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def ok(cls, data: Optional[Dict[str, Any]] = None, **metadata: Any) -> "AgentResult":
        return cls(success=True, data=data, metadata=metadata or None)

    @classmethod
    def fail(
        cls,
        message: str,
        error_type: ErrorType = ErrorType.TRANSIENT,
        code: Optional[str] = None,
        **metadata: Any,
    ) -> "AgentResult":
        return cls(
            success=False,
            error=AgentError(type=error_type, message=message, code=code),
            metadata=metadata or None,
        )


# ---------------------------------------------------------------------------
# Operation payloads


class CreateExecutionInput(BaseModel):
    project_id: str
    document_type: DocumentType
    document_id: Optional[str] = None
    workflow_name: str
    triggered_by: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class ExecutionUpdate(BaseModel):
    """Partial update of an execution; only explicitly set fields apply."""

    current_state: Optional[WorkflowState] = None
    current_step: Optional[str] = None
    percent_complete: Optional[int] = Field(default=None, ge=0, le=100)
    completed_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    resumed_at: Optional[datetime] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: Optional[int] = Field(default=None, ge=0)
    checkpoint_data: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None


class StepUpdate(BaseModel):
    """Partial update of a step; only explicitly set fields apply."""

    status: Optional[StepStatus] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    output_data: Optional[Dict[str, Any]] = None
    error_type: Optional[ErrorType] = None
    error_message: Optional[str] = None
    error_stack: Optional[str] = None
    retry_attempt: Optional[int] = Field(default=None, ge=0)
    metadata: Optional[Dict[str, Any]] = None


class CreateEventInput(BaseModel):
    execution_id: str
    event_type: EventType
    event_data: Optional[Dict[str, Any]] = None
    actor_id: Optional[str] = None
    actor_type: ActorType = ActorType.SYSTEM
    step_id: Optional[str] = None
    previous_state: Optional[WorkflowState] = None
    new_state: Optional[WorkflowState] = None
    metadata: Optional[Dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Helpers

_STATE_DISPLAY = {
    WorkflowState.CREATED: "Created",
    WorkflowState.ENRICHING: "Enriching Data",
    WorkflowState.ENRICHED: "Data Enriched",
    WorkflowState.COMPOSING: "Composing Structure",
    WorkflowState.COMPOSED: "Structure Ready",
    WorkflowState.WRITING: "Writing Content",
    WorkflowState.WRITTEN: "Content Written",
    WorkflowState.VALIDATING: "Validating",
    WorkflowState.VALIDATED: "Validated",
    WorkflowState.ASSEMBLING: "Assembling Document",
    WorkflowState.ASSEMBLED: "Document Assembled",
    WorkflowState.EXPORTING: "Exporting",
    WorkflowState.COMPLETED: "Completed",
    WorkflowState.FAILED: "Failed",
    WorkflowState.PAUSED: "Paused",
}

# phase -> (state while running, state once done)
_PHASE_STATES = {
    "enrich": (WorkflowState.ENRICHING, WorkflowState.ENRICHED),
    "compose": (WorkflowState.COMPOSING, WorkflowState.COMPOSED),
    "write": (WorkflowState.WRITING, WorkflowState.WRITTEN),
    "validate": (WorkflowState.VALIDATING, WorkflowState.VALIDATED),
    "assemble": (WorkflowState.ASSEMBLING, WorkflowState.ASSEMBLED),
    "export": (WorkflowState.EXPORTING, WorkflowState.COMPLETED),
}

_AGENT_PHASES = {
    "regdata": "enrich",
    "composer": "compose",
    "writer": "write",
    "validator": "validate",
    "assembler": "assemble",
    "export": "export",
}


def state_display(state: WorkflowState) -> str:
    """Human readable label for ``state``."""
    return _STATE_DISPLAY[WorkflowState(state)]


def step_status_display(status: StepStatus) -> str:
    return StepStatus(status).value.capitalize()


def is_terminal_state(state: WorkflowState) -> bool:
    return WorkflowState(state) in TERMINAL_STATES


def phase_states(
    step_name: str, agent_name: Optional[str] = None
) -> Optional[tuple[WorkflowState, WorkflowState]]:
    """Return the (working, done) execution states for a pipeline step.

    The step name is matched first (``enrich``, ``compose``...); otherwise the
    agent family (``writer_icf`` -> ``write``) decides. ``None`` when the
    step does not belong to a known phase.
    """
    if step_name in _PHASE_STATES:
        return _PHASE_STATES[step_name]
    if agent_name:
        family = str(getattr(agent_name, "value", agent_name)).split("_", 1)[0]
        phase = _AGENT_PHASES.get(family)
        if phase:
            return _PHASE_STATES[phase]
    return None


def percent_of(completed: int, total: int) -> int:
    """Half-up rounded percentage, 0 for an empty total."""
    if total <= 0:
        return 0
    return int(math.floor(100 * completed / total + 0.5))


def calculate_percent_complete(steps: Iterable["WorkflowStep"]) -> int:
    steps = list(steps)
    completed = sum(1 for s in steps if s.status == StepStatus.COMPLETED)
    return percent_of(completed, len(steps))


def format_duration(ms: int) -> str:
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60_000:
        return f"{ms / 1000:.1f}s"
    if ms < 3_600_000:
        return f"{ms / 60_000:.1f}m"
    return f"{ms / 3_600_000:.1f}h"
