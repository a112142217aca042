import asyncio
from datetime import timedelta

import pytest

from docflow.agent import AgentRegistry, FunctionInvoker
from docflow.config import DriverConfig, EngineConfig
from docflow.contracts import (
    AgentName,
    AgentResult,
    CreateExecutionInput,
    DocumentType,
    ErrorType,
    EventType,
    StepStatus,
    WorkflowState,
)
from docflow.definitions import seed_definitions
from docflow.driver import WorkflowDriver
from docflow.engine import WorkflowEngine
from docflow.persistence import InMemoryWorkflowRepository
from docflow.persistence.models import WorkflowDefinition, WorkflowStepDefinition, utcnow


def _registry(overrides=None, calls=None):
    async def succeed(step, execution):
        if calls is not None:
            calls.append(step.step_name)
        return AgentResult.ok({"step": step.step_name})

    registry = AgentRegistry({name: FunctionInvoker(succeed) for name in AgentName})
    for name, func in (overrides or {}).items():
        registry.register(name, FunctionInvoker(func))
    return registry


async def _setup(definition=None, engine_config=None):
    repo = InMemoryWorkflowRepository()
    engine = WorkflowEngine(repo, engine_config or EngineConfig())
    if definition is None:
        await seed_definitions(repo)
        name = "ib-generation"
    else:
        await repo.save_definition(definition)
        name = definition.name
    execution = await engine.create_execution(
        CreateExecutionInput(project_id="proj-1", document_type=DocumentType.IB, workflow_name=name)
    )
    return engine, execution


@pytest.mark.asyncio
async def test_driver_runs_pipeline_to_completion():
    engine, execution = await _setup()
    calls = []
    driver = WorkflowDriver(engine, _registry(calls=calls))

    finished = await driver.run(execution.id)

    assert finished.current_state == WorkflowState.COMPLETED
    assert finished.percent_complete == 100
    assert finished.completed_at is not None
    assert calls == ["enrich", "compose", "write", "validate", "assemble", "export"]

    steps = await engine.get_steps(execution.id)
    assert all(s.status == StepStatus.COMPLETED for s in steps)
    assert steps[2].output_data == {"step": "write"}

    events = await engine.get_events(execution.id)
    assert events[0].event_type == EventType.COMPLETED
    visited = [e.new_state for e in reversed(events) if e.event_type == EventType.STATE_CHANGED]
    assert visited == [
        WorkflowState.ENRICHING,
        WorkflowState.ENRICHED,
        WorkflowState.COMPOSING,
        WorkflowState.COMPOSED,
        WorkflowState.WRITING,
        WorkflowState.WRITTEN,
        WorkflowState.VALIDATING,
        WorkflowState.VALIDATED,
        WorkflowState.ASSEMBLING,
        WorkflowState.ASSEMBLED,
        WorkflowState.EXPORTING,
    ]


@pytest.mark.asyncio
async def test_driver_retries_transient_failures(retry_delays):
    engine, execution = await _setup()
    attempts = []

    async def flaky_writer(step, execution):
        attempts.append(step.retry_attempt)
        if len(attempts) < 3:
            return AgentResult.fail("rate limited", error_type=ErrorType.TRANSIENT)
        return AgentResult.ok({"sections": 12})

    driver = WorkflowDriver(engine, _registry({AgentName.WRITER: flaky_writer}))
    finished = await driver.run(execution.id)

    assert finished.current_state == WorkflowState.COMPLETED
    assert finished.retry_count == 2
    assert attempts == [0, 1, 2]
    assert retry_delays == [1000, 2000]

    write = next(s for s in await engine.get_steps(execution.id) if s.step_name == "write")
    assert write.retry_attempt == 2
    assert write.status == StepStatus.COMPLETED


@pytest.mark.asyncio
async def test_driver_fails_execution_on_fatal_error():
    engine, execution = await _setup()

    async def broken_validator(step, execution):
        return AgentResult.fail("template missing", error_type=ErrorType.FATAL, code="NO_TEMPLATE")

    driver = WorkflowDriver(engine, _registry({AgentName.VALIDATOR: broken_validator}))
    finished = await driver.run(execution.id)

    assert finished.current_state == WorkflowState.FAILED
    assert finished.error_code == "NO_TEMPLATE"
    assert "template missing" in finished.error_message
    assert finished.completed_at is not None

    statuses = {s.step_name: s.status for s in await engine.get_steps(execution.id)}
    assert statuses["validate"] == StepStatus.FAILED
    assert statuses["assemble"] == StepStatus.PENDING


@pytest.mark.asyncio
async def test_driver_fails_when_agent_missing():
    engine, execution = await _setup()
    registry = AgentRegistry()
    finished = await WorkflowDriver(engine, registry).run(execution.id)

    assert finished.current_state == WorkflowState.FAILED
    assert finished.error_code == "AGENT_NOT_REGISTERED"


@pytest.mark.asyncio
async def test_driver_skips_failed_optional_step():
    engine, execution = await _setup()

    async def bad_export(step, execution):
        return AgentResult.fail("renderer rejected layout", error_type=ErrorType.VALIDATION)

    finished = await WorkflowDriver(engine, _registry({AgentName.EXPORT: bad_export})).run(
        execution.id
    )

    assert finished.current_state == WorkflowState.COMPLETED
    export = (await engine.get_steps(execution.id))[-1]
    assert export.status == StepStatus.SKIPPED
    assert export.metadata["skip_reason"] == "renderer rejected layout"


@pytest.mark.asyncio
async def test_driver_turns_exceptions_into_failures(retry_delays):
    engine, execution = await _setup()

    async def crashing(step, execution):
        raise RuntimeError("connection reset")

    finished = await WorkflowDriver(engine, _registry({AgentName.REGDATA: crashing})).run(
        execution.id
    )

    assert finished.current_state == WorkflowState.FAILED
    assert finished.error_code == "RuntimeError"
    assert retry_delays == [1000, 2000, 4000]

    enrich = (await engine.get_steps(execution.id))[0]
    assert enrich.retry_attempt == 3
    assert enrich.error_message == "connection reset"
    assert "RuntimeError: connection reset" in enrich.error_stack


@pytest.mark.asyncio
async def test_driver_times_out_slow_agents():
    definition = WorkflowDefinition(
        name="slow",
        document_type=DocumentType.IB,
        steps=[
            WorkflowStepDefinition(
                name="write", agent=AgentName.WRITER, timeout_minutes=0, retry_on_failure=False
            )
        ],
    )
    engine, execution = await _setup(definition)

    async def slow(step, execution):
        await asyncio.sleep(5)
        return AgentResult.ok()

    finished = await WorkflowDriver(engine, _registry({AgentName.WRITER: slow})).run(execution.id)

    assert finished.current_state == WorkflowState.FAILED
    assert finished.error_code == "TIMEOUT"


@pytest.mark.asyncio
async def test_driver_stops_on_pause_and_continues_after_resume():
    engine, execution = await _setup()

    async def pausing_composer(step, execution):
        await engine.pause_execution(execution.id, actor_id="reviewer")
        return AgentResult.ok()

    driver = WorkflowDriver(engine, _registry({AgentName.COMPOSER: pausing_composer}))
    paused = await driver.run(execution.id)

    assert paused.current_state == WorkflowState.PAUSED
    statuses = [s.status for s in await engine.get_steps(execution.id)]
    assert statuses[:3] == [StepStatus.COMPLETED, StepStatus.COMPLETED, StepStatus.PENDING]

    await engine.resume_execution(execution.id, actor_id="reviewer")
    driver = WorkflowDriver(engine, _registry())
    finished = await driver.run(execution.id)
    assert finished.current_state == WorkflowState.COMPLETED


@pytest.mark.asyncio
async def test_driver_runs_parallel_steps_together():
    definition = WorkflowDefinition(
        name="parallel",
        document_type=DocumentType.IB,
        steps=[
            WorkflowStepDefinition(name="enrich", agent=AgentName.REGDATA),
            WorkflowStepDefinition(name="write_efficacy", agent=AgentName.WRITER, parallel=True),
            WorkflowStepDefinition(name="write_safety", agent=AgentName.WRITER, parallel=True),
            WorkflowStepDefinition(name="validate", agent=AgentName.VALIDATOR),
        ],
    )
    engine, execution = await _setup(definition)
    started = []
    both_running = asyncio.Event()

    async def writer(step, execution):
        started.append(step.step_name)
        if len(started) == 2:
            both_running.set()
        await asyncio.wait_for(both_running.wait(), timeout=1)
        return AgentResult.ok()

    driver = WorkflowDriver(
        engine, _registry({AgentName.WRITER: writer}), DriverConfig(max_concurrency=2)
    )
    finished = await driver.run(execution.id)

    assert finished.current_state == WorkflowState.COMPLETED
    assert sorted(started) == ["write_efficacy", "write_safety"]


@pytest.mark.asyncio
async def test_driver_respects_lease():
    engine, execution = await _setup()
    assert await engine.claim_execution(execution.id, "other-worker")

    driver = WorkflowDriver(engine, _registry(), DriverConfig(worker_id="me"))
    assert await driver.run(execution.id) is None

    await engine.release_execution(execution.id, "other-worker")
    finished = await driver.run(execution.id)
    assert finished.current_state == WorkflowState.COMPLETED
    assert finished.locked_by is None


@pytest.mark.asyncio
async def test_driver_keeps_lease_alive_while_agent_runs():
    engine, execution = await _setup()
    takeover_attempts = []

    async def slow_enrich(step, execution):
        await asyncio.sleep(1.3)
        takeover_attempts.append(
            await engine.claim_execution(execution.id, "worker-b", lease_seconds=60)
        )
        return AgentResult.ok()

    driver = WorkflowDriver(
        engine,
        _registry({AgentName.REGDATA: slow_enrich}),
        DriverConfig(worker_id="worker-a", lease_seconds=1),
    )
    finished = await driver.run(execution.id)

    assert takeover_attempts == [False]
    assert finished.current_state == WorkflowState.COMPLETED
    assert finished.locked_by is None


@pytest.mark.asyncio
async def test_driver_stops_when_lease_is_lost():
    engine, execution = await _setup()

    async def composer_losing_lease(step, execution):
        await engine.repository.update_execution(
            execution.id,
            {"locked_by": "worker-b", "lease_expires_at": utcnow() + timedelta(minutes=5)},
        )
        return AgentResult.ok()

    driver = WorkflowDriver(
        engine,
        _registry({AgentName.COMPOSER: composer_losing_lease}),
        DriverConfig(worker_id="worker-a"),
    )
    stopped = await driver.run(execution.id)

    assert stopped.current_state != WorkflowState.COMPLETED
    assert stopped.locked_by == "worker-b"
    statuses = [s.status for s in await engine.get_steps(execution.id)]
    assert statuses[:3] == [StepStatus.COMPLETED, StepStatus.COMPLETED, StepStatus.PENDING]


@pytest.mark.asyncio
async def test_driver_cancels_parallel_siblings_when_a_step_errors(monkeypatch):
    definition = WorkflowDefinition(
        name="parallel",
        document_type=DocumentType.IB,
        steps=[
            WorkflowStepDefinition(name="write_efficacy", agent=AgentName.WRITER, parallel=True),
            WorkflowStepDefinition(name="write_safety", agent=AgentName.COMPOSER, parallel=True),
        ],
    )
    engine, execution = await _setup(definition)
    cancelled = []

    async def quick(step, execution):
        return AgentResult.ok()

    async def hanging(step, execution):
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            cancelled.append(step.step_name)
            raise
        return AgentResult.ok()

    complete_step = engine.complete_step

    async def broken_complete_step(step_id, result):
        step = await engine.repository.get_step(step_id)
        if step.step_name == "write_efficacy":
            raise RuntimeError("store unavailable")
        return await complete_step(step_id, result)

    monkeypatch.setattr(engine, "complete_step", broken_complete_step)
    driver = WorkflowDriver(
        engine,
        _registry({AgentName.WRITER: quick, AgentName.COMPOSER: hanging}),
        DriverConfig(max_concurrency=2),
    )

    with pytest.raises(RuntimeError, match="store unavailable"):
        await driver.run(execution.id)
    assert cancelled == ["write_safety"]

@pytest.mark.asyncio
async def test_driver_leaves_finished_execution_alone():
    engine, execution = await _setup()
    await engine.fail_execution(execution.id, "MANUAL", "cancelled")
    calls = []

    finished = await WorkflowDriver(engine, _registry(calls=calls)).run(execution.id)

    assert finished.current_state == WorkflowState.FAILED
    assert calls == []
