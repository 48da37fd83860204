"""
Core agent implementation.

The agent drives a bounded step loop:
1. Summarizes the history when it is over the token budget
2. Calls the LLM with the current messages and tool schemas
3. Executes requested tool calls one by one, in the order received
4. Stops when the LLM answers without tool calls, the LLM call fails,
   or the step budget runs out
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable

import structlog

from ..config import Settings, get_settings
from ..events import (
    AgentEvent,
    EventChannel,
    LLMResponseReceived,
    RunFinished,
    StepStarted,
    ToolCallFinished,
    ToolCallStarted,
)
from ..llm import BaseLLM, LLMResponse, Message, create_llm
from ..retry import RetryExhaustedError
from ..tools.registry import AnyTool
from .context import ContextManager

logger = structlog.get_logger()

DEFAULT_SYSTEM_PROMPT = """You are EMA, a helpful AI assistant.

Answer the user's questions concisely and politely. Use the available tools when you need to
inspect or change files, run commands, or keep notes, and explain what you did."""


class AgentState(str, Enum):
    """Where the agent is in its step loop."""

    STEPPING = "stepping"
    SUMMARIZING = "summarizing"
    AWAITING_LLM = "awaiting_llm"
    DISPATCHING_TOOLS = "dispatching_tools"
    DONE_SUCCESS = "done_success"
    DONE_FAILURE = "done_failure"


class MaxStepsExceededError(Exception):
    """The run used its whole step budget without a final answer."""

    def __init__(self, max_steps: int):
        super().__init__(f"Task couldn't be completed after {max_steps} steps.")
        self.max_steps = max_steps


@dataclass
class RunResult:
    """Outcome of one `Agent.run()`; mirrors the run-finished event."""

    ok: bool
    content: str
    error: BaseException | None = None
    steps: int = 0


class Agent:
    """Single agent: one LLM, one context manager, one event channel."""

    def __init__(
        self,
        llm: BaseLLM | None = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        tools: Iterable[AnyTool] = (),
        settings: Settings | None = None,
        workspace_dir: str | None = None,
        token_limit: int | None = None,
        max_steps: int | None = None,
        events: EventChannel | None = None,
    ):
        self.settings = settings or get_settings()
        self.llm = llm or create_llm(settings=self.settings)
        self.events = events or EventChannel()
        if max_steps is None:
            max_steps = self.settings.agent.max_steps
        if token_limit is None:
            token_limit = self.settings.agent.token_limit
        if max_steps < 1:
            raise ValueError(f"max_steps must be at least 1, got {max_steps}")
        if token_limit < 1:
            raise ValueError(f"token_limit must be at least 1, got {token_limit}")

        self.max_steps = max_steps
        self.state = AgentState.STEPPING

        self.context_manager = ContextManager(
            system_prompt=system_prompt,
            llm=self.llm,
            tools=tools,
            workspace_dir=workspace_dir or self.settings.agent.workspace_dir,
            token_limit=token_limit,
            events=self.events,
        )

    def _finish(self, ok: bool, msg: str, steps: int, error: BaseException | None = None) -> RunResult:
        self.state = AgentState.DONE_SUCCESS if ok else AgentState.DONE_FAILURE
        if ok:
            logger.info("Run finished", steps=steps)
        else:
            logger.warning("Run failed", msg=msg, steps=steps, error=str(error))
        self.events.emit(AgentEvent.RUN_FINISHED, RunFinished(ok=ok, msg=msg, error=error))
        return RunResult(ok=ok, content=msg, error=error, steps=steps)

    async def _call_llm(self) -> LLMResponse:
        context = self.context_manager.context
        definitions = self.context_manager.tool_registry.get_definitions()
        return await self.llm.generate(list(context.messages), definitions or None)

    async def _dispatch_tool_calls(self, response: LLMResponse) -> None:
        """Run each tool call sequentially and record its result."""
        registry = self.context_manager.tool_registry

        for tool_call in response.tool_calls or []:
            call_args = dict(tool_call.arguments or {})
            self.events.emit(
                AgentEvent.TOOL_CALL_STARTED,
                ToolCallStarted(
                    tool_call_id=tool_call.id,
                    function_name=tool_call.name,
                    call_args=call_args,
                ),
            )

            result = await registry.execute(tool_call.name, call_args)

            self.events.emit(
                AgentEvent.TOOL_CALL_FINISHED,
                ToolCallFinished(
                    ok=result.success,
                    tool_call_id=tool_call.id,
                    function_name=tool_call.name,
                    result=result,
                ),
            )
            self.context_manager.add_tool_message(result, tool_call.id, tool_call.name)

    async def run(self) -> RunResult:
        """Execute the step loop until the task is complete or max steps reached."""
        step = 0

        while step < self.max_steps:
            self.state = AgentState.SUMMARIZING
            await self.context_manager.summarize_messages()

            self.state = AgentState.STEPPING
            self.events.emit(
                AgentEvent.STEP_STARTED,
                StepStarted(step_number=step + 1, max_steps=self.max_steps),
            )

            self.state = AgentState.AWAITING_LLM
            try:
                response = await self._call_llm()
            except RetryExhaustedError as e:
                return self._finish(False, f"LLM call failed after {e.attempts} retries.", step, e)
            except Exception as e:
                return self._finish(False, "LLM call failed.", step, e)

            self.events.emit(AgentEvent.LLM_RESPONSE_RECEIVED, LLMResponseReceived(response=response))

            self.context_manager.update_api_tokens(response)
            self.context_manager.add_assistant_message(response)

            if not response.tool_calls:
                return self._finish(True, response.content, step + 1)

            self.state = AgentState.DISPATCHING_TOOLS
            await self._dispatch_tool_calls(response)

            step += 1

        error = MaxStepsExceededError(self.max_steps)
        return self._finish(False, str(error), step, error)

    async def chat(self, message: str) -> RunResult:
        """Add a user message and run the loop."""
        self.context_manager.add_user_message(message)
        return await self.run()

    def get_history(self) -> list[Message]:
        """Get message history."""
        return self.context_manager.get_history()
