"""
Message schema and base class for LLM providers.
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from ..retry import RetryCallback, RetryConfig

Role = Literal["system", "user", "assistant", "tool"]


@dataclass
class ToolDefinition:
    """Definition of a tool that the LLM can use."""

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class FunctionCall:
    """Function name and arguments requested by the LLM."""

    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolCall:
    """A tool call made by the LLM."""

    id: str
    function: FunctionCall
    type: str = "function"

    @property
    def name(self) -> str:
        return self.function.name

    @property
    def arguments(self) -> dict[str, Any]:
        return self.function.arguments

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Message:
    """A message in the conversation.

    `thinking` is the model's reasoning trace. It is kept as opaque text and
    sent back unchanged on later requests.
    """

    role: Role
    content: str | list[dict[str, Any]]
    thinking: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    name: str | None = None


@dataclass
class TokenUsage:
    """Token usage reported by the provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


@dataclass
class LLMResponse:
    """Response from an LLM."""

    content: str
    thinking: str | None = None
    tool_calls: list[ToolCall] | None = None
    finish_reason: str = "stop"
    usage: TokenUsage | None = None


class BaseLLM(ABC):
    """Base class for LLM providers."""

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        retry_config: RetryConfig | None = None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.retry_config = retry_config or RetryConfig()
        self.retry_callback: RetryCallback | None = None

    @abstractmethod
    async def generate(
        self,
        messages: list[Message],
        tools: list[ToolDefinition] | None = None,
    ) -> LLMResponse:
        """Generate a response from the LLM."""
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get the provider name."""
        pass
