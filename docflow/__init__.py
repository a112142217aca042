"""docflow: workflow orchestration for regulatory document generation."""

from .agent import AgentRegistry, FunctionInvoker, PydanticAIInvoker
from .config import DocflowConfig, load_config
from .contracts import (
    AgentResult,
    CreateExecutionInput,
    InvalidTransitionError,
    NotFoundError,
    StepStatus,
    WorkflowError,
    WorkflowState,
)
from .definitions import default_definitions, seed_definitions
from .driver import WorkflowDriver
from .engine import WorkflowEngine
from .persistence import get_repository

__version__ = "0.1.0"
__all__ = [
    "AgentRegistry",
    "AgentResult",
    "CreateExecutionInput",
    "DocflowConfig",
    "FunctionInvoker",
    "InvalidTransitionError",
    "NotFoundError",
    "PydanticAIInvoker",
    "StepStatus",
    "WorkflowDriver",
    "WorkflowEngine",
    "WorkflowError",
    "WorkflowState",
    "default_definitions",
    "get_repository",
    "load_config",
    "seed_definitions",
]
