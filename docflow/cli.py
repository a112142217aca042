"""Command line interface for docflow workflows."""

from __future__ import annotations

import asyncio
import importlib
import json
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError

from .agent import AgentRegistry
from .config import configure_logging, load_config
from .contracts import (
    CreateExecutionInput,
    DocumentType,
    EventType,
    WorkflowError,
    format_duration,
    state_display,
    step_status_display,
)
from .control import ControlRequest, apply_control, get_status
from .definitions import default_workflow_name, load_definitions, seed_definitions
from .driver import WorkflowDriver
from .engine import WorkflowEngine
from .persistence import get_repository
from .persistence.models import WorkflowEvent

app = typer.Typer(help="CLI for docflow workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflow executions")
definition_app = typer.Typer(help="Commands for managing workflow definitions")

app.add_typer(workflow_app, name="workflow")
app.add_typer(definition_app, name="definition")


@app.callback()
def main() -> None:
    """docflow CLI entry point."""
    configure_logging(load_config().logging)


def _engine() -> WorkflowEngine:
    config = load_config()
    return WorkflowEngine(get_repository(), config.engine)


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _load_agents(spec: str) -> AgentRegistry:
    """Resolve ``module:attribute`` to an :class:`AgentRegistry`."""
    module_name, _, attr = spec.partition(":")
    module = importlib.import_module(module_name)
    registry = getattr(module, attr or "agents")
    if callable(registry) and not isinstance(registry, AgentRegistry):
        registry = registry()
    if not isinstance(registry, AgentRegistry):
        raise TypeError(f"{spec} is not an AgentRegistry")
    return registry


@workflow_app.command("create")
def workflow_create(
    project_id: str,
    document_type: DocumentType,
    workflow_name: Optional[str] = typer.Option(
        None, help="Definition to run (default: '<document_type>-generation')"
    ),
    document_id: Optional[str] = None,
    triggered_by: Optional[str] = None,
) -> None:
    """
    Create a workflow execution for a project document.

    Example:
        docflow workflow create proj-1 ib
        docflow workflow create proj-1 protocol --triggered-by alice
    """
    engine = _engine()
    payload = CreateExecutionInput(
        project_id=project_id,
        document_type=document_type,
        document_id=document_id,
        workflow_name=workflow_name or default_workflow_name(document_type),
        triggered_by=triggered_by,
    )
    try:
        execution = asyncio.run(engine.create_execution(payload))
    except WorkflowError as exc:
        _fail(str(exc))
    typer.echo(f"Created execution {execution.id}")


@workflow_app.command("list")
def workflow_list(project_id: Optional[str] = None) -> None:
    """
    List workflow executions, newest first.

    Example:
        docflow workflow list
        # Output: 3f2b...    ib-generation    Writing Content    40%
    """
    engine = _engine()
    executions = asyncio.run(engine.list_executions(project_id))
    if not executions:
        typer.echo("No workflows found")
        return
    for execution in executions:
        typer.echo(
            f"{execution.id}\t{execution.workflow_name}\t"
            f"{state_display(execution.current_state)}\t{execution.percent_complete}%"
        )


def _event_line(event: WorkflowEvent) -> str:
    """One timeline line; step events carry their real status in metadata."""
    line = f"  {event.created_at.isoformat()} {event.event_type.value}"
    metadata = event.metadata or {}
    if event.event_type == EventType.STEP_COMPLETED:
        line += f" {metadata.get('step_name', event.step_id)}: {metadata.get('status', 'completed')}"
    elif event.new_state is not None:
        line += f" -> {event.new_state.value}"
    return line


@workflow_app.command("show")
def workflow_show(
    execution_id: str,
    events: bool = typer.Option(False, "--events", help="Include the event log"),
) -> None:
    """Show an execution with its steps and, optionally, its events."""
    engine = _engine()
    try:
        status = asyncio.run(
            get_status(engine, execution_id, include_steps=True, include_events=events)
        )
    except WorkflowError as exc:
        _fail(str(exc))

    execution = status.execution
    typer.echo(
        f"Workflow {execution.id}: {state_display(execution.current_state)} "
        f"({execution.percent_complete}%)"
    )
    if execution.error_message:
        typer.echo(f"Error: [{execution.error_code}] {execution.error_message}")
    for step in status.steps or []:
        line = f"- {step.step_order}. {step.step_name} [{step.agent_name.value}]: {step_status_display(step.status)}"
        if step.duration_ms is not None:
            line += f" in {format_duration(step.duration_ms)}"
        if step.retry_attempt:
            line += f" (retries: {step.retry_attempt})"
        typer.echo(line)
    for event in status.events or []:
        typer.echo(_event_line(event))


@workflow_app.command("control")
def workflow_control(
    execution_id: str,
    action: str,
    actor_id: Optional[str] = None,
    step_id: Optional[str] = None,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
) -> None:
    """
    Apply a control action: pause, resume, retry or fail.

    Example:
        docflow workflow control <id> pause --actor-id alice
        docflow workflow control <id> retry --step-id <step>
        docflow workflow control <id> fail --error-code MANUAL --error-message "Stopped"
    """
    engine = _engine()
    try:
        request = ControlRequest(
            execution_id=execution_id,
            action=action,
            actor_id=actor_id,
            step_id=step_id,
            error_code=error_code,
            error_message=error_message,
        )
        result = asyncio.run(apply_control(engine, request))
    except ValidationError as exc:
        _fail(exc.errors()[0]["msg"])
    except WorkflowError as exc:
        _fail(str(exc))
    typer.echo(json.dumps(result.model_dump(mode="json"), indent=2))


@workflow_app.command("run")
def workflow_run(
    execution_id: str,
    agents: str = typer.Option(
        ..., help="Agent registry to use, as 'module:attribute'"
    ),
    worker_id: Optional[str] = None,
) -> None:
    """
    Drive an execution by invoking its agents until it finishes or pauses.

    Example:
        docflow workflow run <id> --agents myproject.agents:registry
    """
    config = load_config()
    if worker_id:
        config.driver.worker_id = worker_id
    try:
        registry = _load_agents(agents)
    except (ImportError, AttributeError, TypeError) as exc:
        _fail(f"Cannot load agents from {agents}: {exc}")

    driver = WorkflowDriver(
        WorkflowEngine(get_repository(), config.engine), registry, config.driver
    )
    try:
        execution = asyncio.run(driver.run(execution_id))
    except WorkflowError as exc:
        _fail(str(exc))
    if execution is None:
        _fail(f"Execution {execution_id} is leased by another worker")
    typer.echo(
        f"Workflow {execution.id}: {state_display(execution.current_state)} "
        f"({execution.percent_complete}%)"
    )


@definition_app.command("list")
def definition_list() -> None:
    """List stored workflow definitions."""
    repo = get_repository()
    definitions = asyncio.run(repo.list_definitions())
    if not definitions:
        typer.echo("No definitions found")
        return
    for definition in definitions:
        status = "active" if definition.is_active else "inactive"
        typer.echo(
            f"{definition.name}\t{definition.version}\t{status}\t"
            f"{' -> '.join(step.name for step in definition.steps)}"
        )


@definition_app.command("load")
def definition_load(path: Path) -> None:
    """Store the definitions contained in a YAML file."""
    if not path.exists():
        _fail("Specified path does not exist")
    try:
        definitions = load_definitions(path)
    except (ValueError, ValidationError) as exc:
        _fail(f"Invalid definition file: {exc}")
    saved = asyncio.run(seed_definitions(get_repository(), definitions))
    typer.echo(f"Loaded {len(saved)} definitions")


@definition_app.command("seed")
def definition_seed() -> None:
    """Store the built-in IB, Protocol and ICF definitions."""
    saved = asyncio.run(seed_definitions(get_repository()))
    for definition in saved:
        typer.echo(f"Seeded {definition.name}@{definition.version}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
