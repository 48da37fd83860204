"""
Context Manager - message history, token accounting and summarization.

The history is append-only except for `summarize_messages`, which compacts it
round by round once the token budget is exceeded:

    system -> user1 -> summary1 -> user2 -> summary2 -> user3 (-> summary3)

Every user message survives verbatim. Everything the agent and its tools did
between two user messages collapses into a single summary message.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

import structlog

from ..events import (
    AgentEvent,
    CreateSummaryFinished,
    EventChannel,
    SummarizeMessagesFinished,
    SummarizeMessagesStarted,
    TokenEstimationFallbacked,
)
from ..llm.base import BaseLLM, LLMResponse, Message
from ..tokens import get_encoder
from ..tools.base import ToolResult
from ..tools.registry import AnyTool, ToolRegistry

logger = structlog.get_logger()

DEFAULT_TOKEN_LIMIT = 80_000
MESSAGE_OVERHEAD_TOKENS = 4
FALLBACK_CHARS_PER_TOKEN = 2.5

SUMMARY_PREFIX = "[Assistant Execution Summary]\n\n"
SUMMARY_SYSTEM_PROMPT = "You are an assistant skilled at summarizing Agent execution processes."


@dataclass(frozen=True)
class Context:
    """Read-only view of what the LLM sees on one step."""

    messages: tuple[Message, ...]
    tools: tuple[AnyTool, ...]


def _content_text(content: str | list[dict[str, Any]]) -> str:
    return content if isinstance(content, str) else json.dumps(content, ensure_ascii=False)


def _tool_calls_text(message: Message) -> str:
    return json.dumps([tc.to_dict() for tc in message.tool_calls or []], ensure_ascii=False)


class ContextManager:
    """Owns the conversation history of one agent."""

    def __init__(
        self,
        system_prompt: str,
        llm: BaseLLM,
        tools: Iterable[AnyTool],
        workspace_dir: str,
        token_limit: int = DEFAULT_TOKEN_LIMIT,
        events: EventChannel | None = None,
    ):
        self.llm = llm
        self.events = events or EventChannel()

        self.workspace_dir = Path(workspace_dir).expanduser().resolve()
        self.workspace_dir.mkdir(parents=True, exist_ok=True)
        if "Current Workspace" not in system_prompt:
            system_prompt = (
                f"{system_prompt}\n\n## Current Workspace\n"
                f"You are currently working in: `{self.workspace_dir}`\n"
                "All relative paths will be resolved relative to this directory."
            )

        self.system_prompt = system_prompt
        self.token_limit = token_limit
        self.messages: list[Message] = [Message(role="system", content=system_prompt)]
        self.tool_registry = ToolRegistry(tools)

        # Provider-reported total for the whole conversation as of the last call
        self.api_total_tokens = 0
        # Set after a summary; the API total is stale until the next LLM call
        self.skip_next_token_check = False

    @property
    def context(self) -> Context:
        """Messages and tools for the next LLM call."""
        return Context(messages=tuple(self.messages), tools=tuple(self.tool_registry.tools))

    def add_user_message(self, content: str) -> None:
        """Add a user message."""
        self.messages.append(Message(role="user", content=content))

    def add_assistant_message(self, response: LLMResponse) -> None:
        """Add an assistant message, keeping thinking and tool calls verbatim."""
        self.messages.append(Message(
            role="assistant",
            content=response.content,
            thinking=response.thinking,
            tool_calls=response.tool_calls,
        ))

    def add_tool_message(self, result: ToolResult, tool_call_id: str, tool_name: str) -> None:
        """Add a tool result message."""
        content = result.content if result.success else f"Error: {result.error}"
        self.messages.append(Message(
            role="tool",
            content=content,
            tool_call_id=tool_call_id,
            name=tool_name,
        ))

    def update_api_tokens(self, response: LLMResponse) -> None:
        """Record the provider-reported token total."""
        if response.usage:
            self.api_total_tokens = response.usage.total_tokens

    def estimate_tokens(self) -> int:
        """Count history tokens with tiktoken, falling back to a character heuristic."""
        try:
            encoder = get_encoder()
            total = 0
            for msg in self.messages:
                if isinstance(msg.content, str):
                    total += len(encoder.encode(msg.content, disallowed_special=()))
                else:
                    for block in msg.content:
                        if isinstance(block, dict):
                            total += len(encoder.encode(json.dumps(block), disallowed_special=()))
                if msg.thinking:
                    total += len(encoder.encode(msg.thinking, disallowed_special=()))
                if msg.tool_calls:
                    total += len(encoder.encode(_tool_calls_text(msg), disallowed_special=()))
                total += MESSAGE_OVERHEAD_TOKENS
            return total
        except Exception as e:
            logger.warning("Token estimation fell back to character count", error=str(e))
            self.events.emit(
                AgentEvent.TOKEN_ESTIMATION_FALLBACKED,
                TokenEstimationFallbacked(error=e),
            )
            return self.estimate_tokens_fallback()

    def estimate_tokens_fallback(self) -> int:
        """Rough estimate: 2.5 characters per token."""
        total_chars = 0
        for msg in self.messages:
            if isinstance(msg.content, str):
                total_chars += len(msg.content)
            else:
                total_chars += sum(
                    len(json.dumps(block)) for block in msg.content if isinstance(block, dict)
                )
            if msg.thinking:
                total_chars += len(msg.thinking)
            if msg.tool_calls:
                total_chars += len(_tool_calls_text(msg))
        return int(total_chars / FALLBACK_CHARS_PER_TOKEN)

    async def summarize_messages(self) -> bool:
        """Compact the history if it is over the token budget.

        Summarization triggers when EITHER the local estimate or the API
        reported total exceeds `token_limit`. The check is skipped once right
        after a summary, because the API total only refreshes on the next call.

        Returns:
            True if the history was rebuilt
        """
        if self.skip_next_token_check:
            self.skip_next_token_check = False
            return False

        estimated_tokens = self.estimate_tokens()
        if estimated_tokens <= self.token_limit and self.api_total_tokens <= self.token_limit:
            return False

        logger.info(
            "Token limit exceeded, summarizing history",
            local_estimated_tokens=estimated_tokens,
            api_reported_tokens=self.api_total_tokens,
            token_limit=self.token_limit,
        )
        self.events.emit(
            AgentEvent.SUMMARIZE_MESSAGES_STARTED,
            SummarizeMessagesStarted(
                local_estimated_tokens=estimated_tokens,
                api_reported_tokens=self.api_total_tokens,
                token_limit=self.token_limit,
            ),
        )

        user_indices = [
            i for i, msg in enumerate(self.messages) if msg.role == "user" and i > 0
        ]
        if not user_indices:
            msg = "Insufficient messages, cannot summarize."
            logger.warning(msg)
            self.events.emit(
                AgentEvent.SUMMARIZE_MESSAGES_FINISHED,
                SummarizeMessagesFinished(ok=False, msg=msg),
            )
            return False

        new_messages = [self.messages[0]]
        summary_count = 0

        for round_index, user_idx in enumerate(user_indices):
            new_messages.append(self.messages[user_idx])

            next_idx = (
                user_indices[round_index + 1]
                if round_index + 1 < len(user_indices)
                else len(self.messages)
            )
            execution_messages = self.messages[user_idx + 1:next_idx]
            if not execution_messages:
                continue

            summary_text = await self.create_summary(execution_messages, round_index + 1)
            if summary_text:
                new_messages.append(Message(role="user", content=f"{SUMMARY_PREFIX}{summary_text}"))
                summary_count += 1

        self.messages = new_messages
        self.skip_next_token_check = True

        new_tokens = self.estimate_tokens()
        logger.info(
            "History summarized",
            old_tokens=estimated_tokens,
            new_tokens=new_tokens,
            user_messages=len(user_indices),
            summaries=summary_count,
        )
        self.events.emit(
            AgentEvent.SUMMARIZE_MESSAGES_FINISHED,
            SummarizeMessagesFinished(
                ok=True,
                msg="Summary completed and API token count will update on next LLM call.",
                old_tokens=estimated_tokens,
                new_tokens=new_tokens,
                user_message_count=len(user_indices),
                summary_count=summary_count,
            ),
        )
        return True

    @staticmethod
    def build_transcript(messages: list[Message], round_num: int) -> str:
        """Plain-text record of one round: assistant text, tools called, tool outputs."""
        transcript = f"Round {round_num} execution process:\n\n"
        for msg in messages:
            if msg.role == "assistant":
                transcript += f"Assistant: {_content_text(msg.content)}\n"
                if msg.tool_calls:
                    names = ", ".join(tc.name for tc in msg.tool_calls)
                    transcript += f"  -> Called tools: {names}\n"
            elif msg.role == "tool":
                transcript += f"  <- Tool returned: {_content_text(msg.content)}...\n"
        return transcript

    async def create_summary(self, messages: list[Message], round_num: int) -> str:
        """Summarize one round with the LLM; on failure return the raw transcript."""
        if not messages:
            return ""

        transcript = self.build_transcript(messages, round_num)
        summary_prompt = (
            "Please provide a concise summary of the following Agent execution process:\n\n"
            f"{transcript}\n\n"
            "Requirements:\n"
            "1. Focus on what tasks were completed and which tools were called\n"
            "2. Keep key execution results and important findings\n"
            "3. Be concise and clear, within 1000 words\n"
            "4. Use English\n"
            '5. Do not include "user" related content, only summarize the Agent\'s execution process'
        )

        try:
            response = await self.llm.generate([
                Message(role="system", content=SUMMARY_SYSTEM_PROMPT),
                Message(role="user", content=summary_prompt),
            ])
        except Exception as e:
            logger.error("Summary generation failed, keeping transcript", round_num=round_num, error=str(e))
            self.events.emit(
                AgentEvent.CREATE_SUMMARY_FINISHED,
                CreateSummaryFinished(
                    ok=False,
                    msg="Summary generation failed.",
                    round_num=round_num,
                    error=e,
                ),
            )
            return transcript

        # An empty answer would silently drop the round
        summary_text = response.content or transcript
        self.events.emit(
            AgentEvent.CREATE_SUMMARY_FINISHED,
            CreateSummaryFinished(
                ok=True,
                msg="Summary generation succeeded.",
                round_num=round_num,
                summary_text=summary_text,
            ),
        )
        return summary_text

    def get_history(self) -> list[Message]:
        """Get a shallow copy of the message history."""
        return list(self.messages)
