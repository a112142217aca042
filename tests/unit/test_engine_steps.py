import pytest

from docflow.config import EngineConfig
from docflow.contracts import (
    ActorType,
    AgentResult,
    CreateExecutionInput,
    DocumentType,
    ErrorType,
    EventType,
    InvalidTransitionError,
    NotFoundError,
    StepStatus,
    WorkflowState,
)
from docflow.engine import WorkflowEngine


async def _start(repo, engine, definition):
    await repo.save_definition(definition)
    execution = await engine.create_execution(
        CreateExecutionInput(
            project_id="proj-1",
            document_type=DocumentType.IB,
            workflow_name=definition.name,
        )
    )
    return execution, await engine.get_steps(execution.id)


async def _run(engine, step, result):
    await engine.start_step(step.id)
    return await engine.complete_step(step.id, result)


@pytest.mark.asyncio
async def test_next_step_follows_step_order(repo, engine, three_step_definition):
    execution, steps = await _start(repo, engine, three_step_definition)

    assert (await engine.get_next_step(execution.id)).id == steps[0].id
    await _run(engine, steps[0], AgentResult.ok())
    assert (await engine.get_next_step(execution.id)).id == steps[1].id

    # A running step is no longer pending
    await engine.start_step(steps[1].id)
    assert (await engine.get_next_step(execution.id)).id == steps[2].id


@pytest.mark.asyncio
async def test_next_step_none_when_nothing_pending(repo, engine, three_step_definition):
    execution, steps = await _start(repo, engine, three_step_definition)
    for step in steps:
        await _run(engine, step, AgentResult.ok())
    assert await engine.get_next_step(execution.id) is None


@pytest.mark.asyncio
async def test_start_step_records_running_event(repo, engine, three_step_definition):
    execution, steps = await _start(repo, engine, three_step_definition)

    started = await engine.start_step(steps[0].id)
    assert started.status == StepStatus.RUNNING
    assert started.started_at is not None

    event = (await engine.get_events(execution.id))[0]
    assert event.event_type == EventType.STEP_COMPLETED
    assert event.step_id == steps[0].id
    assert event.metadata == {"step_name": "enrich", "status": "running"}


@pytest.mark.asyncio
async def test_start_step_rejects_finished_steps(repo, engine, three_step_definition):
    _, steps = await _start(repo, engine, three_step_definition)
    await _run(engine, steps[0], AgentResult.ok())
    with pytest.raises(InvalidTransitionError):
        await engine.start_step(steps[0].id)
    with pytest.raises(NotFoundError):
        await engine.start_step("missing")


@pytest.mark.asyncio
async def test_complete_step_success_updates_progress(repo, engine, three_step_definition):
    execution, steps = await _start(repo, engine, three_step_definition)

    completed = await _run(
        engine, steps[0], AgentResult.ok({"sources": 4}, tokens_consumed=120)
    )
    assert completed.status == StepStatus.COMPLETED
    assert completed.output_data == {"sources": 4}
    assert completed.duration_ms is not None and completed.duration_ms >= 0
    assert completed.metadata["tokens_consumed"] == 120
    assert completed.metadata["retry_on_failure"] is True

    refreshed = await engine.get_execution(execution.id)
    assert refreshed.percent_complete == 33
    assert refreshed.current_step == "enrich"

    event = (await engine.get_events(execution.id))[0]
    assert event.event_type == EventType.STEP_COMPLETED
    assert event.actor_type == ActorType.AGENT
    assert event.metadata["status"] == "completed"
    assert event.metadata["duration_ms"] == completed.duration_ms


@pytest.mark.asyncio
async def test_complete_step_without_start_has_no_duration(repo, engine, three_step_definition):
    _, steps = await _start(repo, engine, three_step_definition)
    completed = await engine.complete_step(steps[0].id, AgentResult.ok())
    assert completed.duration_ms is None


@pytest.mark.asyncio
async def test_failed_step_is_retried_with_backoff(repo, engine, three_step_definition, retry_delays):
    execution, steps = await _start(repo, engine, three_step_definition)
    await _run(engine, steps[0], AgentResult.ok())

    failed = await _run(
        engine, steps[1], AgentResult.fail("timeout", error_type=ErrorType.TRANSIENT)
    )
    assert failed.status == StepStatus.FAILED
    assert failed.error_type == ErrorType.TRANSIENT
    assert failed.error_message == "timeout"
    assert (await engine.get_execution(execution.id)).percent_complete == 33
    assert engine.should_retry_step(failed)

    retried = await engine.retry_step(steps[1].id)
    assert retried.status == StepStatus.PENDING
    assert retried.retry_attempt == 1
    assert retried.error_type is None
    assert retry_delays == [1000]

    event = (await engine.get_events(execution.id))[0]
    assert event.event_type == EventType.RETRY
    assert event.metadata["retry_delay_ms"] == 1000
    assert event.metadata["retry_attempt"] == 1
    assert (await engine.get_execution(execution.id)).retry_count == 1


@pytest.mark.asyncio
async def test_retry_delay_grows_per_attempt(repo, engine, three_step_definition, retry_delays):
    _, steps = await _start(repo, engine, three_step_definition)

    for _ in range(3):
        await _run(engine, steps[0], AgentResult.fail("flaky"))
        await engine.retry_step(steps[0].id)

    assert retry_delays == [1000, 2000, 4000]

    exhausted = await _run(engine, steps[0], AgentResult.fail("flaky"))
    assert exhausted.retry_attempt == 3
    assert not engine.should_retry_step(exhausted)
    with pytest.raises(InvalidTransitionError):
        await engine.retry_step(steps[0].id)


@pytest.mark.asyncio
@pytest.mark.parametrize("error_type", [ErrorType.VALIDATION, ErrorType.FATAL])
async def test_non_transient_errors_are_not_retried(repo, engine, three_step_definition, error_type):
    _, steps = await _start(repo, engine, three_step_definition)
    failed = await _run(engine, steps[0], AgentResult.fail("bad input", error_type=error_type))
    assert failed.retry_attempt == 0
    assert not engine.should_retry_step(failed)


@pytest.mark.asyncio
async def test_retry_requires_failed_status(repo, engine, three_step_definition):
    _, steps = await _start(repo, engine, three_step_definition)
    assert not engine.should_retry_step(steps[0])
    with pytest.raises(InvalidTransitionError):
        await engine.retry_step(steps[0].id)


@pytest.mark.asyncio
async def test_retry_on_failure_flag_disables_retry(repo, engine, three_step_definition):
    definition = three_step_definition.model_copy(deep=True)
    definition.steps[0].retry_on_failure = False
    _, steps = await _start(repo, engine, definition)

    failed = await _run(engine, steps[0], AgentResult.fail("down"))
    assert not engine.should_retry_step(failed)


@pytest.mark.asyncio
async def test_execution_max_retries_governs_retries(repo, three_step_definition):
    engine = WorkflowEngine(repo, EngineConfig(max_retries=1))
    execution, steps = await _start(repo, engine, three_step_definition)
    await engine.update_step(steps[0].id, {"retry_attempt": 1})
    failed = await _run(engine, steps[0], AgentResult.fail("down"))

    assert not engine.should_retry_step(failed, execution)
    roomier = execution.model_copy(update={"max_retries": 2})
    assert engine.should_retry_step(failed, roomier)


@pytest.mark.asyncio
async def test_skip_step_moves_on_without_raising_percent(repo, engine, three_step_definition):
    execution, steps = await _start(repo, engine, three_step_definition)
    skipped = await engine.skip_step(steps[0].id, reason="not needed")
    assert skipped.status == StepStatus.SKIPPED
    assert skipped.metadata["skip_reason"] == "not needed"

    refreshed = await engine.get_execution(execution.id)
    assert refreshed.percent_complete == 0
    assert refreshed.current_step == "enrich"
    assert (await engine.get_next_step(execution.id)).id == steps[1].id


@pytest.mark.asyncio
async def test_full_run_completes_execution(repo, engine, three_step_definition):
    execution, steps = await _start(repo, engine, three_step_definition)
    for step in steps:
        await _run(engine, step, AgentResult.ok())

    assert (await engine.get_execution(execution.id)).percent_complete == 100
    completed = await engine.complete_execution(execution.id)
    assert completed.current_state == WorkflowState.COMPLETED
    assert completed.percent_complete == 100
    assert completed.completed_at is not None

    events = await engine.get_events(execution.id)
    assert events[0].event_type == EventType.COMPLETED
    assert events[-1].event_type == EventType.STARTED
    assert [e.created_at for e in events] == sorted(
        (e.created_at for e in events), reverse=True
    )


@pytest.mark.asyncio
async def test_get_state_summarizes_progress(repo, engine, three_step_definition):
    execution, steps = await _start(repo, engine, three_step_definition)
    await _run(engine, steps[0], AgentResult.ok())
    await _run(engine, steps[1], AgentResult.ok())

    state = await engine.get_state(execution.id)
    assert state.steps_completed == 2
    assert state.steps_total == 3
    assert state.percent_complete == 67
    assert state.current_step == "compose"


class _BrokenReads:
    """Repository whose reads always fail."""

    async def get_execution(self, execution_id):
        raise RuntimeError("db down")

    async def list_steps(self, execution_id):
        raise RuntimeError("db down")

    async def list_events(self, execution_id):
        raise RuntimeError("db down")

    async def list_executions(self, project_id=None):
        raise RuntimeError("db down")

    async def insert_event(self, event):
        raise RuntimeError("db down")


@pytest.mark.asyncio
async def test_display_reads_degrade_but_writes_propagate(caplog):
    from docflow.contracts import CreateEventInput

    engine = WorkflowEngine(_BrokenReads(), EngineConfig())

    assert await engine.get_execution("x") is None
    assert await engine.get_steps("x") == []
    assert await engine.get_events("x") == []
    assert await engine.list_executions() == []
    assert "Failed to get workflow execution x" in caplog.text

    with pytest.raises(RuntimeError):
        await engine.get_next_step("x")
    with pytest.raises(RuntimeError):
        await engine.record_event(
            CreateEventInput(execution_id="x", event_type=EventType.STARTED)
        )
