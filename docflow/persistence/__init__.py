"""Persistence layer for docflow workflows."""

from __future__ import annotations

from typing import Optional

from ..config import DocflowConfig, load_config
from .inmemory import InMemoryWorkflowRepository
from .models import (
    SemanticVersion,
    WorkflowDefinition,
    WorkflowEvent,
    WorkflowExecution,
    WorkflowStateQuery,
    WorkflowStep,
    WorkflowStepDefinition,
)
from .postgres import PostgresWorkflowRepository
from .repository import WorkflowRepository
from .sqlite import SQLiteWorkflowRepository

_repository_instance: WorkflowRepository | None = None


def open_repository(database_url: Optional[str]) -> WorkflowRepository:
    """Open the backend named by the scheme of ``database_url``.

    ``None`` and ``memory://`` give an in-memory store, ``sqlite://<path>`` a
    SQLite file and ``postgres://`` / ``postgresql://`` an asyncpg store.
    """
    if not database_url:
        return InMemoryWorkflowRepository()
    scheme, separator, location = database_url.partition("://")
    if not separator:
        raise ValueError(f"Database url has no scheme: {database_url}")
    if scheme == "memory":
        return InMemoryWorkflowRepository()
    if scheme == "sqlite":
        return SQLiteWorkflowRepository(location)
    if scheme in ("postgres", "postgresql"):
        return PostgresWorkflowRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[DocflowConfig] = None
) -> WorkflowRepository:
    """Return the process-wide repository, opening it on first use.

    The url comes from ``database_url`` or else from ``config.database_url``;
    :func:`load_config` has already applied the ``DOCFLOW_DATABASE_URL`` and
    ``DATABASE_URL`` overrides. Passing either argument opens a fresh store.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    if database_url is None:
        database_url = (config or load_config()).database_url
    _repository_instance = open_repository(database_url)
    return _repository_instance


__all__ = [
    "SemanticVersion",
    "WorkflowDefinition",
    "WorkflowEvent",
    "WorkflowExecution",
    "WorkflowStateQuery",
    "WorkflowStep",
    "WorkflowStepDefinition",
    "WorkflowRepository",
    "SQLiteWorkflowRepository",
    "PostgresWorkflowRepository",
    "InMemoryWorkflowRepository",
    "get_repository",
    "open_repository",
]
