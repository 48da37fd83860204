"""
LLM module: message schema and OpenAI-protocol providers.

Providers:
- OpenAI GPT (native SDK)
- OpenRouter (via OpenAI-compatible endpoint)
- Google Gemini (via OpenAI-compatible endpoint)
"""

from .base import (
    BaseLLM,
    FunctionCall,
    LLMResponse,
    Message,
    TokenUsage,
    ToolCall,
    ToolDefinition,
)
from .openai import OpenAILLM
from .factory import create_llm

__all__ = [
    "BaseLLM",
    "FunctionCall",
    "LLMResponse",
    "Message",
    "TokenUsage",
    "ToolCall",
    "ToolDefinition",
    "OpenAILLM",
    "create_llm",
]
