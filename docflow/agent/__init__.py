from .base import AgentInvoker, AgentRegistry, FunctionInvoker
from .wrapper import PydanticAIInvoker, default_prompt

__all__ = [
    "AgentInvoker",
    "AgentRegistry",
    "FunctionInvoker",
    "PydanticAIInvoker",
    "default_prompt",
]
