from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional

from pydantic import BaseModel, ValidationError
from pydantic_ai import Agent

from ..contracts import AgentResult, ErrorType
from ..persistence.models import WorkflowExecution, WorkflowStep

logger = logging.getLogger(__name__)


def default_prompt(step: WorkflowStep, execution: WorkflowExecution) -> str:
    """Build a prompt from the step description, its input and the checkpoint."""
    lines = [
        f"Task: {step.metadata.get('description') or step.step_name}",
        f"Document type: {execution.document_type.value}",
        f"Project: {execution.project_id}",
    ]
    if step.input_data:
        lines.append(f"Input: {json.dumps(step.input_data, default=str)}")
    if execution.checkpoint_data:
        lines.append(f"Checkpoint: {json.dumps(execution.checkpoint_data, default=str)}")
    return "\n".join(lines)


class PydanticAIInvoker:
    """Run a pydantic-ai ``Agent`` as the worker for a pipeline step."""

    def __init__(
        self,
        agent: Agent,
        prompt_builder: Callable[[WorkflowStep, WorkflowExecution], str] = default_prompt,
        deps_factory: Optional[Callable[[WorkflowStep, WorkflowExecution], Any]] = None,
    ) -> None:
        self.agent = agent
        self._prompt_builder = prompt_builder
        self._deps_factory = deps_factory

    async def invoke(
        self, step: WorkflowStep, execution: WorkflowExecution
    ) -> AgentResult:
        prompt = self._prompt_builder(step, execution)
        deps = self._deps_factory(step, execution) if self._deps_factory else None
        logger.debug(f"Invoking agent {step.agent_name.value} for step {step.step_name}")

        try:
            result = await self.agent.run(prompt, deps=deps)
        except ValidationError as e:
            return AgentResult.fail(str(e), error_type=ErrorType.VALIDATION)

        output = result.output if hasattr(result, "output") else result
        if isinstance(output, BaseModel):
            data = output.model_dump(mode="json")
        elif isinstance(output, dict):
            data = output
        else:
            data = {"output": output}

        metadata: dict[str, Any] = {}
        usage = getattr(result, "usage", None)
        # Older pydantic-ai releases expose usage() as a method, newer ones as a property.
        if callable(usage):
            usage = usage()
        if usage is not None:
            total = getattr(usage, "total_tokens", None)
            if total is not None:
                metadata["tokens_consumed"] = total
        model = getattr(self.agent, "model", None)
        if model is not None:
            metadata["model_used"] = getattr(model, "model_name", str(model))
        return AgentResult.ok(data, **metadata)
