"""
Typed, synchronous publish/subscribe channel for agent lifecycle events.

Every agent owns its own `EventChannel`. Presentation layers (CLI, logging,
UI) subscribe to it; the core never talks to them directly.

Handlers run synchronously in registration order at `emit` time. Handlers
registered after an event was emitted do not see it.
"""

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

import structlog

if TYPE_CHECKING:
    from .llm.base import LLMResponse
    from .tools.base import ToolResult

logger = structlog.get_logger()


class AgentEvent(str, Enum):
    """Names of the events an agent emits."""

    TOKEN_ESTIMATION_FALLBACKED = "tokenEstimationFallbacked"
    SUMMARIZE_MESSAGES_STARTED = "summarizeMessagesStarted"
    SUMMARIZE_MESSAGES_FINISHED = "summarizeMessagesFinished"
    CREATE_SUMMARY_FINISHED = "createSummaryFinished"
    STEP_STARTED = "stepStarted"
    LLM_RESPONSE_RECEIVED = "llmResponseReceived"
    TOOL_CALL_STARTED = "toolCallStarted"
    TOOL_CALL_FINISHED = "toolCallFinished"
    RUN_FINISHED = "runFinished"


@dataclass(frozen=True)
class TokenEstimationFallbacked:
    """Token estimation fell back to the character heuristic."""

    error: BaseException


@dataclass(frozen=True)
class SummarizeMessagesStarted:
    local_estimated_tokens: int
    api_reported_tokens: int
    token_limit: int


@dataclass(frozen=True)
class SummarizeMessagesFinished:
    """Outcome of a summarization pass. Token fields are set only when ok."""

    ok: bool
    msg: str
    old_tokens: int | None = None
    new_tokens: int | None = None
    user_message_count: int | None = None
    summary_count: int | None = None


@dataclass(frozen=True)
class CreateSummaryFinished:
    ok: bool
    msg: str
    round_num: int
    summary_text: str | None = None
    error: BaseException | None = None


@dataclass(frozen=True)
class StepStarted:
    step_number: int
    max_steps: int


@dataclass(frozen=True)
class LLMResponseReceived:
    response: "LLMResponse"


@dataclass(frozen=True)
class ToolCallStarted:
    tool_call_id: str
    function_name: str
    call_args: dict[str, Any]


@dataclass(frozen=True)
class ToolCallFinished:
    ok: bool
    tool_call_id: str
    function_name: str
    result: "ToolResult"


@dataclass(frozen=True)
class RunFinished:
    ok: bool
    msg: str
    error: BaseException | None = None


PAYLOAD_TYPES: dict[AgentEvent, type] = {
    AgentEvent.TOKEN_ESTIMATION_FALLBACKED: TokenEstimationFallbacked,
    AgentEvent.SUMMARIZE_MESSAGES_STARTED: SummarizeMessagesStarted,
    AgentEvent.SUMMARIZE_MESSAGES_FINISHED: SummarizeMessagesFinished,
    AgentEvent.CREATE_SUMMARY_FINISHED: CreateSummaryFinished,
    AgentEvent.STEP_STARTED: StepStarted,
    AgentEvent.LLM_RESPONSE_RECEIVED: LLMResponseReceived,
    AgentEvent.TOOL_CALL_STARTED: ToolCallStarted,
    AgentEvent.TOOL_CALL_FINISHED: ToolCallFinished,
    AgentEvent.RUN_FINISHED: RunFinished,
}

Handler = Callable[[Any], None]


class EventChannel:
    """In-process event channel owned by a single agent."""

    def __init__(self) -> None:
        self._handlers: dict[AgentEvent, list[Handler]] = {}

    def on(self, event: AgentEvent, handler: Handler) -> "EventChannel":
        """Subscribe `handler` to `event`."""
        self._handlers.setdefault(AgentEvent(event), []).append(handler)
        return self

    def once(self, event: AgentEvent, handler: Handler) -> "EventChannel":
        """Subscribe `handler` for the next emission of `event` only."""

        def wrapper(payload: Any) -> None:
            self.off(event, wrapper)
            handler(payload)

        wrapper.__wrapped__ = handler  # type: ignore[attr-defined]
        return self.on(event, wrapper)

    def off(self, event: AgentEvent, handler: Handler) -> "EventChannel":
        """Remove the first registration of `handler` (or its `once` wrapper)."""
        handlers = self._handlers.get(AgentEvent(event), [])
        for registered in handlers:
            if registered == handler or getattr(registered, "__wrapped__", None) == handler:
                handlers.remove(registered)
                break
        return self

    def listener_count(self, event: AgentEvent) -> int:
        return len(self._handlers.get(AgentEvent(event), []))

    def emit(self, event: AgentEvent, payload: Any) -> bool:
        """Deliver `payload` to the current subscribers of `event`.

        Returns:
            True if at least one handler was registered
        """
        event = AgentEvent(event)
        expected = PAYLOAD_TYPES[event]
        if not isinstance(payload, expected):
            raise TypeError(
                f"{event.value} expects {expected.__name__}, got {type(payload).__name__}"
            )

        # Snapshot so handlers may subscribe/unsubscribe while we dispatch
        handlers = list(self._handlers.get(event, []))
        for handler in handlers:
            try:
                handler(payload)
            except Exception as e:
                logger.error(
                    "Event handler failed",
                    event_name=event.value,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(e),
                )

        return bool(handlers)
