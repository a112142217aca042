"""Agent invoker contract and registry.

Agents are opaque to the engine. The driver looks up the invoker bound to a
step's ``agent_name`` and feeds the returned :class:`AgentResult` back to
:meth:`WorkflowEngine.complete_step`.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Dict, Optional, Protocol

from ..contracts import AgentName, AgentResult
from ..persistence.models import WorkflowExecution, WorkflowStep

logger = logging.getLogger(__name__)


class AgentInvoker(Protocol):
    """Runs the unit of work for one step."""

    async def invoke(
        self, step: WorkflowStep, execution: WorkflowExecution
    ) -> AgentResult:
        ...


class FunctionInvoker:
    """Adapt a plain coroutine function to :class:`AgentInvoker`."""

    def __init__(
        self,
        func: Callable[[WorkflowStep, WorkflowExecution], Awaitable[AgentResult]],
    ) -> None:
        self._func = func

    async def invoke(
        self, step: WorkflowStep, execution: WorkflowExecution
    ) -> AgentResult:
        return await self._func(step, execution)


class AgentRegistry:
    """Maps agent names to their invokers."""

    def __init__(self, invokers: Optional[Dict[str, AgentInvoker]] = None) -> None:
        self._invokers: Dict[str, AgentInvoker] = {}
        for name, invoker in (invokers or {}).items():
            self.register(name, invoker)

    @staticmethod
    def _key(name: str | AgentName) -> str:
        return AgentName(name).value

    def register(self, name: str | AgentName, invoker: AgentInvoker) -> None:
        key = self._key(name)
        if key in self._invokers:
            logger.warning(f"Replacing invoker registered for agent {key}")
        self._invokers[key] = invoker

    def get(self, name: str | AgentName) -> AgentInvoker | None:
        return self._invokers.get(self._key(name))

    def __contains__(self, name: object) -> bool:
        try:
            return self._key(name) in self._invokers  # type: ignore[arg-type]
        except ValueError:
            return False

    def names(self) -> list[str]:
        return sorted(self._invokers)
