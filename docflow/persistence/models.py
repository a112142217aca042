"""Data models for persisted workflow state."""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from ..constants import DEFAULT_MAX_RETRIES, DEFAULT_TIMEOUT_MINUTES, DEFAULT_WORKFLOW_VERSION
from ..contracts import (
    ActorType,
    AgentName,
    DocumentType,
    ErrorType,
    EventType,
    StepStatus,
    WorkflowState,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class WorkflowExecution(BaseModel):
    """One pipeline run for a project document."""

    id: str = Field(default_factory=new_id)

    # Project context
    project_id: str
    document_type: DocumentType
    document_id: Optional[str] = None

    # Definition binding, frozen at creation
    workflow_name: str
    workflow_version: str

    current_state: WorkflowState = WorkflowState.CREATED
    current_step: Optional[str] = None
    percent_complete: int = Field(default=0, ge=0, le=100)

    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    resumed_at: Optional[datetime] = None

    error_code: Optional[str] = None
    error_message: Optional[str] = None
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=DEFAULT_MAX_RETRIES, ge=0)

    checkpoint_data: Optional[dict[str, Any]] = None

    triggered_by: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    # Worker lease
    locked_by: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class WorkflowStep(BaseModel):
    """A unit of work bound to one agent within an execution."""

    id: str = Field(default_factory=new_id)
    execution_id: str

    step_name: str
    step_order: int = Field(ge=1)
    agent_name: AgentName
    status: StepStatus = StepStatus.PENDING

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    input_data: Optional[dict[str, Any]] = None
    output_data: Optional[dict[str, Any]] = None

    error_type: Optional[ErrorType] = None
    error_message: Optional[str] = None
    error_stack: Optional[str] = None
    retry_attempt: int = Field(default=0, ge=0)

    metadata: dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class WorkflowEvent(BaseModel):
    """Immutable audit record."""

    id: str = Field(default_factory=new_id)
    execution_id: str

    event_type: EventType
    event_data: Optional[dict[str, Any]] = None

    actor_id: Optional[str] = None
    actor_type: ActorType = ActorType.SYSTEM

    step_id: Optional[str] = None
    previous_state: Optional[WorkflowState] = None
    new_state: Optional[WorkflowState] = None

    metadata: Optional[dict[str, Any]] = None

    created_at: datetime = Field(default_factory=utcnow)


class WorkflowStepDefinition(BaseModel):
    name: str
    agent: AgentName
    description: str = ""
    parallel: bool = False
    required: bool = True
    timeout_minutes: int = DEFAULT_TIMEOUT_MINUTES
    retry_on_failure: bool = True


class WorkflowDefinition(BaseModel):
    """Named, versioned template of ordered steps for a document type."""

    id: str = Field(default_factory=new_id)
    name: str
    version: str = DEFAULT_WORKFLOW_VERSION
    description: Optional[str] = None

    document_type: DocumentType
    steps: list[WorkflowStepDefinition] = Field(default_factory=list)

    is_active: bool = True
    is_default: bool = False

    created_by: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("version")
    @classmethod
    def _check_version(cls, value: str) -> str:
        SemanticVersion.parse(value)
        return value


class WorkflowStateQuery(BaseModel):
    """Compact progress summary for status displays."""

    execution_id: str
    current_state: WorkflowState
    current_step: Optional[str] = None
    percent_complete: int
    steps_completed: int
    steps_total: int
    error_message: Optional[str] = None


_VERSION_PATTERN = re.compile(
    r"^v?(?P<major>\d+)(?:\.(?P<minor>\d+))?(?:\.(?P<patch>\d+))?"
    r"(?:-(?P<prerelease>[0-9A-Za-z.-]+))?(?:\+[0-9A-Za-z.-]+)?$"
)


class SemanticVersion(BaseModel):
    """Semantic version with ``major.minor.patch`` components.

    A pre-release tag (``1.0.0-beta``) sorts before the plain release and
    build metadata (``+build.7``) is ignored for ordering.
    """

    major: int
    minor: int = 0
    patch: int = 0
    prerelease: Optional[str] = None

    @classmethod
    def parse(cls, value: str) -> "SemanticVersion":
        """Parse a dotted version string; missing components default to 0."""
        match = _VERSION_PATTERN.match(value.strip())
        if match is None:
            raise ValueError(f"Invalid semantic version: {value}")
        return cls(
            major=int(match["major"]),
            minor=int(match["minor"] or 0),
            patch=int(match["patch"] or 0),
            prerelease=match["prerelease"],
        )

    def as_tuple(self) -> tuple[int, int, int]:
        return (self.major, self.minor, self.patch)

    def sort_key(self) -> tuple[int, int, int, bool, str]:
        return (*self.as_tuple(), self.prerelease is None, self.prerelease or "")

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        base = f"{self.major}.{self.minor}.{self.patch}"
        return f"{base}-{self.prerelease}" if self.prerelease else base


def latest_active(definitions: list[WorkflowDefinition]) -> WorkflowDefinition | None:
    """Pick the active definition with the highest version."""
    active = [d for d in definitions if d.is_active]
    if not active:
        return None
    return max(active, key=lambda d: SemanticVersion.parse(d.version).sort_key())
