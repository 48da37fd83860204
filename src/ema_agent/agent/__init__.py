"""
Agent module - the brain of the system.

Includes:
- Agent: Step loop driving the LLM and tool dispatch
- ContextManager: Message history, token accounting and summarization
"""

from .context import Context, ContextManager
from .core import Agent, AgentState, MaxStepsExceededError, RunResult

__all__ = [
    "Agent",
    "AgentState",
    "Context",
    "ContextManager",
    "MaxStepsExceededError",
    "RunResult",
]
