"""Step dispatcher for docflow workflows.

The engine only records state. :class:`WorkflowDriver` walks an execution's
pending steps, invokes the agent bound to each one and feeds the result back
to the engine, applying retry, skip and failure policy along the way.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import traceback
from typing import Optional

from .agent import AgentRegistry
from .config import DriverConfig
from .contracts import (
    TERMINAL_STATES,
    AgentResult,
    ErrorType,
    NotFoundError,
    StepStatus,
    WorkflowState,
    phase_states,
)
from .engine import WorkflowEngine
from .persistence.models import (
    WorkflowExecution,
    WorkflowStep,
    WorkflowStepDefinition,
)

logger = logging.getLogger(__name__)


class WorkflowDriver:
    """Runs executions to completion, failure or pause."""

    def __init__(
        self,
        engine: WorkflowEngine,
        agents: AgentRegistry,
        config: DriverConfig | None = None,
    ) -> None:
        self.engine = engine
        self.agents = agents
        self.config = config or DriverConfig()
        self._semaphore = asyncio.Semaphore(self.config.max_concurrency)
        self._lost_leases: set[str] = set()

    async def run(self, execution_id: str) -> WorkflowExecution | None:
        """Drive ``execution_id`` until no runnable step remains.

        Returns the execution as last persisted, or ``None`` when another
        worker holds the lease. With a ``worker_id`` configured the lease is
        renewed in the background and re-claimed before every batch and
        retry; the run stops as soon as a renewal fails.
        """
        worker_id = self.config.worker_id
        heartbeat: asyncio.Task | None = None
        if worker_id:
            self._lost_leases.discard(execution_id)
            if not await self._renew_lease(execution_id):
                return None
            heartbeat = asyncio.create_task(self._heartbeat(execution_id))
        try:
            await self._run(execution_id)
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await heartbeat
            if worker_id:
                await self.engine.release_execution(execution_id, worker_id)
                self._lost_leases.discard(execution_id)
        return await self.engine.get_execution(execution_id)

    async def _renew_lease(self, execution_id: str) -> bool:
        worker_id = self.config.worker_id
        if not worker_id:
            return True
        if execution_id in self._lost_leases:
            return False
        claimed = await self.engine.claim_execution(
            execution_id, worker_id, self.config.lease_seconds
        )
        if not claimed:
            self._lost_leases.add(execution_id)
        return claimed

    async def _heartbeat(self, execution_id: str) -> None:
        """Extend the lease while agents run, a third of the lease at a time."""
        interval = self.config.lease_seconds / 3
        while True:
            await asyncio.sleep(interval)
            try:
                renewed = await self._renew_lease(execution_id)
            except Exception:
                logger.exception(f"Lease renewal for execution {execution_id} failed")
                self._lost_leases.add(execution_id)
                return
            if not renewed:
                logger.warning(
                    f"Lost lease on execution {execution_id} to another worker"
                )
                return

    async def _run(self, execution_id: str) -> None:
        execution = await self._load_execution(execution_id)
        step_defs = await self._step_definitions(execution)

        while True:
            execution = await self._load_execution(execution_id)
            if execution.current_state in TERMINAL_STATES:
                logger.info(
                    f"Execution {execution_id} is {execution.current_state.value}, stopping"
                )
                return
            if execution.current_state == WorkflowState.PAUSED:
                logger.info(f"Execution {execution_id} is paused, stopping")
                return

            if not await self._renew_lease(execution_id):
                logger.warning(f"Lease on execution {execution_id} lost, stopping")
                return

            next_step = await self.engine.get_next_step(execution_id)
            if next_step is None:
                await self._finish(execution_id)
                return

            batch = await self._collect_batch(execution_id, next_step, step_defs)
            if len(batch) == 1:
                await self._enter_phase(execution_id, next_step, working=True)

            results = await self._run_batch(batch, execution)

            failed = False
            for step, result in zip(batch, results):
                if result.success:
                    continue
                if not await self._handle_failure(
                    execution_id, step, result, step_defs.get(step.step_name)
                ):
                    failed = True
                    break
            if failed:
                return

            if len(batch) == 1 and results[0].success:
                await self._enter_phase(execution_id, next_step, working=False)

    async def _load_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self.engine.repository.get_execution(execution_id)
        if execution is None:
            raise NotFoundError("execution", execution_id)
        return execution

    async def _step_definitions(
        self, execution: WorkflowExecution
    ) -> dict[str, WorkflowStepDefinition]:
        definition = await self.engine.repository.get_definition(
            execution.workflow_name, execution.workflow_version
        )
        if definition is None:
            logger.warning(
                f"Definition {execution.workflow_name}@{execution.workflow_version} "
                "is gone; running steps sequentially as required"
            )
            return {}
        return {step_def.name: step_def for step_def in definition.steps}

    async def _collect_batch(
        self,
        execution_id: str,
        next_step: WorkflowStep,
        step_defs: dict[str, WorkflowStepDefinition],
    ) -> list[WorkflowStep]:
        """The next pending step plus any contiguous pending parallel steps."""
        first_def = step_defs.get(next_step.step_name)
        if first_def is None or not first_def.parallel:
            return [next_step]

        batch = [next_step]
        steps = await self.engine.repository.list_steps(execution_id)
        for step in steps:
            if step.step_order <= next_step.step_order:
                continue
            step_def = step_defs.get(step.step_name)
            if step.status != StepStatus.PENDING or step_def is None or not step_def.parallel:
                break
            batch.append(step)
        return batch

    async def _enter_phase(
        self, execution_id: str, step: WorkflowStep, working: bool
    ) -> None:
        states = phase_states(step.step_name, step.agent_name)
        if states is None:
            return
        target = states[0] if working else states[1]
        # Completion is recorded by complete_execution.
        if target in TERMINAL_STATES:
            return
        execution = await self._load_execution(execution_id)
        if execution.current_state in TERMINAL_STATES or execution.current_state in (
            WorkflowState.PAUSED,
            target,
        ):
            return
        await self.engine.transition_state(execution_id, target)

    async def _run_batch(
        self, batch: list[WorkflowStep], execution: WorkflowExecution
    ) -> list[AgentResult]:
        """Run a batch concurrently; on any error the rest are cancelled and awaited."""
        tasks = [asyncio.create_task(self._run_step(step, execution)) for step in batch]
        try:
            return await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _run_step(
        self, step: WorkflowStep, execution: WorkflowExecution
    ) -> AgentResult:
        async with self._semaphore:
            step = await self.engine.start_step(step.id)
            result, error_stack = await self._invoke(step, execution)
            if error_stack:
                await self.engine.update_step(step.id, {"error_stack": error_stack})
            await self.engine.complete_step(step.id, result)
            return result

    async def _invoke(
        self, step: WorkflowStep, execution: WorkflowExecution
    ) -> tuple[AgentResult, Optional[str]]:
        invoker = self.agents.get(step.agent_name)
        if invoker is None:
            logger.error(f"No agent registered for {step.agent_name.value}")
            return (
                AgentResult.fail(
                    f"No agent registered for {step.agent_name.value}",
                    error_type=ErrorType.FATAL,
                    code="AGENT_NOT_REGISTERED",
                ),
                None,
            )

        timeout_minutes = step.metadata.get(
            "timeout_minutes", self.engine.config.timeout_minutes
        )
        try:
            result = await asyncio.wait_for(
                invoker.invoke(step, execution), timeout=timeout_minutes * 60
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Step {step.step_name} timed out after {timeout_minutes} minutes"
            )
            return (
                AgentResult.fail(
                    f"Step timed out after {timeout_minutes} minutes",
                    error_type=ErrorType.TRANSIENT,
                    code="TIMEOUT",
                ),
                None,
            )
        except Exception as e:
            logger.exception(f"Agent {step.agent_name.value} raised in step {step.step_name}")
            return (
                AgentResult.fail(
                    str(e) or type(e).__name__,
                    error_type=ErrorType.TRANSIENT,
                    code=type(e).__name__,
                ),
                traceback.format_exc(),
            )
        return result, None

    async def _handle_failure(
        self,
        execution_id: str,
        step: WorkflowStep,
        result: AgentResult,
        step_def: Optional[WorkflowStepDefinition],
    ) -> bool:
        """Retry, skip or fail. Returns False once driving must stop."""
        failed_step = await self.engine.repository.get_step(step.id)
        execution = await self._load_execution(execution_id)

        if self.engine.should_retry_step(failed_step, execution):
            if not await self._renew_lease(execution_id):
                logger.warning(
                    f"Lease on execution {execution_id} lost, leaving step {step.step_name} failed"
                )
                return False
            await self.engine.retry_step(step.id)
            return True

        error_type = result.error.type if result.error else ErrorType.TRANSIENT
        if step_def is not None and not step_def.required and error_type != ErrorType.FATAL:
            reason = result.error.message if result.error else "optional step failed"
            await self.engine.skip_step(step.id, reason=reason)
            return True

        error_code = (
            result.error.code if result.error and result.error.code else error_type.value
        )
        message = result.error.message if result.error else "Step failed"
        await self.engine.fail_execution(
            execution_id, error_code, f"Step {step.step_name} failed: {message}"
        )
        return False

    async def _finish(self, execution_id: str) -> None:
        execution = await self._load_execution(execution_id)
        if execution.current_state == WorkflowState.PAUSED:
            logger.info(f"Execution {execution_id} was paused before completion")
            return
        steps = await self.engine.repository.list_steps(execution_id)
        done = (StepStatus.COMPLETED, StepStatus.SKIPPED)
        if all(step.status in done for step in steps):
            await self.engine.complete_execution(execution_id)
            return
        unfinished = [s.step_name for s in steps if s.status not in done]
        logger.warning(
            f"Execution {execution_id} has no pending steps but unfinished steps: {unfinished}"
        )
