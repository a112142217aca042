"""Built-in workflow definitions and YAML definition loading."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable

import yaml

from .contracts import AgentName, DocumentType
from .persistence.models import WorkflowDefinition, WorkflowStepDefinition
from .persistence.repository import WorkflowRepository

logger = logging.getLogger(__name__)


def default_workflow_name(document_type: DocumentType | str) -> str:
    """Name of the default definition for ``document_type``."""
    return f"{DocumentType(document_type).value}-generation"


def _pipeline(suffix: str = "") -> list[WorkflowStepDefinition]:
    def agent(base: str) -> AgentName:
        return AgentName(f"{base}{suffix}")

    return [
        WorkflowStepDefinition(
            name="enrich",
            agent=AgentName.REGDATA,
            description="Collect regulatory and literature data for the project",
            timeout_minutes=15,
        ),
        WorkflowStepDefinition(
            name="compose",
            agent=agent("composer"),
            description="Plan the document structure",
            timeout_minutes=10,
        ),
        WorkflowStepDefinition(
            name="write",
            agent=agent("writer"),
            description="Write section content",
        ),
        WorkflowStepDefinition(
            name="validate",
            agent=agent("validator"),
            description="Check the document against regulatory requirements",
            timeout_minutes=15,
        ),
        WorkflowStepDefinition(
            name="assemble",
            agent=agent("assembler"),
            description="Assemble sections into the final document",
            timeout_minutes=10,
        ),
        WorkflowStepDefinition(
            name="export",
            agent=AgentName.EXPORT,
            description="Render the document for download",
            timeout_minutes=10,
            required=False,
        ),
    ]


def default_definitions() -> list[WorkflowDefinition]:
    """The stock pipelines for Investigator Brochures, Protocols and ICFs."""
    return [
        WorkflowDefinition(
            name=default_workflow_name(DocumentType.IB),
            description="Investigator Brochure generation",
            document_type=DocumentType.IB,
            steps=_pipeline(),
            is_default=True,
        ),
        WorkflowDefinition(
            name=default_workflow_name(DocumentType.PROTOCOL),
            description="Clinical Study Protocol generation",
            document_type=DocumentType.PROTOCOL,
            steps=_pipeline("_protocol"),
            is_default=True,
        ),
        WorkflowDefinition(
            name=default_workflow_name(DocumentType.ICF),
            description="Informed Consent Form generation",
            document_type=DocumentType.ICF,
            steps=_pipeline("_icf"),
            is_default=True,
        ),
    ]


def parse_definitions(data: Any) -> list[WorkflowDefinition]:
    """Build definitions from parsed YAML.

    Accepts a single mapping, a list of mappings or a mapping with a
    ``definitions`` key.
    """
    if data is None:
        return []
    if isinstance(data, dict) and "definitions" in data:
        data = data["definitions"]
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise ValueError("Definition file must contain a mapping or a list of mappings")

    definitions = [WorkflowDefinition.model_validate(item) for item in data]
    for definition in definitions:
        names = [step.name for step in definition.steps]
        if not names:
            raise ValueError(f"Definition {definition.name} has no steps")
        if len(set(names)) != len(names):
            raise ValueError(f"Definition {definition.name} has duplicate step names")
    return definitions


def load_definitions(path: str | Path) -> list[WorkflowDefinition]:
    """Load workflow definitions from a YAML file."""
    with open(path) as f:
        data = yaml.safe_load(f)
    definitions = parse_definitions(data)
    logger.debug(f"Loaded {len(definitions)} definitions from {path}")
    return definitions


async def seed_definitions(
    repository: WorkflowRepository,
    definitions: Iterable[WorkflowDefinition] | None = None,
) -> list[WorkflowDefinition]:
    """Store ``definitions`` (the built-in set by default) in ``repository``."""
    saved = []
    for definition in definitions if definitions is not None else default_definitions():
        saved.append(await repository.save_definition(definition))
        logger.info(f"Saved workflow definition {definition.name}@{definition.version}")
    return saved
