"""
OpenAI-protocol LLM provider (also works with OpenRouter, Gemini and other compatible APIs).
"""

import json
from typing import Any

import openai
import structlog

from ..retry import RetryConfig, async_retry
from .base import BaseLLM, FunctionCall, LLMResponse, Message, TokenUsage, ToolCall, ToolDefinition

logger = structlog.get_logger()


class OpenAILLM(BaseLLM):
    """OpenAI chat-completions provider with tool calling and reasoning pass-through."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: str | None = None,
        retry_config: RetryConfig | None = None,
        client: Any = None,
    ):
        super().__init__(api_key, model, base_url, retry_config)
        self.client = client or openai.AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
        )

    @property
    def provider_name(self) -> str:
        return "openai"

    def _convert_messages(self, messages: list[Message]) -> list[dict[str, Any]]:
        """Convert Messages to OpenAI format."""
        converted = []

        for msg in messages:
            if msg.role == "tool":
                converted.append({
                    "role": "tool",
                    "tool_call_id": msg.tool_call_id,
                    "content": msg.content,
                })
            elif msg.role == "assistant":
                item: dict[str, Any] = {
                    "role": "assistant",
                    "content": msg.content,
                }
                if msg.tool_calls:
                    item["tool_calls"] = [
                        {
                            "id": tc.id,
                            "type": "function",
                            "function": {
                                "name": tc.function.name,
                                "arguments": json.dumps(tc.function.arguments),
                            },
                        }
                        for tc in msg.tool_calls
                    ]
                # Reasoning must go back exactly as received to keep the chain intact
                if msg.thinking:
                    item["reasoning_details"] = [{"text": msg.thinking}]
                converted.append(item)
            elif msg.role in ("system", "user"):
                converted.append({
                    "role": msg.role,
                    "content": msg.content,
                })
            else:
                raise ValueError(f"Unsupported message role: {msg.role}")

        return converted

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert ToolDefinitions to OpenAI format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                },
            }
            for tool in tools
        ]

    @staticmethod
    def _parse_arguments(raw: str | None) -> dict[str, Any]:
        if not raw:
            return {}
        try:
            arguments = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Malformed tool call arguments", raw_arguments=raw)
            return {}
        return arguments if isinstance(arguments, dict) else {}

    def _parse_response(self, response: Any) -> LLMResponse:
        """Parse an OpenAI ChatCompletion into an LLMResponse."""
        choice = response.choices[0]
        message = choice.message

        details = getattr(message, "reasoning_details", None) or []
        thinking = "".join(
            (d.get("text") if isinstance(d, dict) else getattr(d, "text", None)) or ""
            for d in details
        )

        tool_calls = None
        if message.tool_calls:
            tool_calls = [
                ToolCall(
                    id=tc.id,
                    function=FunctionCall(
                        name=tc.function.name,
                        arguments=self._parse_arguments(tc.function.arguments),
                    ),
                )
                for tc in message.tool_calls
            ]

        usage = None
        if response.usage:
            usage = TokenUsage(
                prompt_tokens=response.usage.prompt_tokens or 0,
                completion_tokens=response.usage.completion_tokens or 0,
                total_tokens=response.usage.total_tokens or 0,
            )

        return LLMResponse(
            content=message.content or "",
            thinking=thinking or None,
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "stop",
            usage=usage,
        )

    async def _make_api_request(
        self,
        api_messages: list[dict[str, Any]],
        tools: list[ToolDefinition] | None = None,
    ) -> Any:
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": api_messages,
        }

        if tools:
            kwargs["tools"] = self._convert_tools(tools)

        try:
            return await self.client.chat.completions.create(**kwargs)
        except openai.APIError as e:
            logger.error("OpenAI API error", error=str(e), model=self.model)
            raise

    async def generate(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
    ) -> LLMResponse:
        """Generate a response, retrying the request when retry is enabled."""
        api_messages = self._convert_messages(messages)

        request = self._make_api_request
        if self.retry_config.enabled:
            request = async_retry(self.retry_config, on_retry=self.retry_callback)(request)

        response = await request(api_messages, tools)
        return self._parse_response(response)
