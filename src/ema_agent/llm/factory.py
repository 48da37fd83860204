"""
LLM factory for creating provider instances.

Every supported provider speaks the OpenAI chat-completions protocol.
"""

from ..config import LLMConfig, Settings
from ..retry import RetryConfig
from .base import BaseLLM
from .openai import OpenAILLM


def create_llm(
    config: LLMConfig | None = None,
    settings: Settings | None = None,
    retry_config: RetryConfig | None = None,
) -> BaseLLM:
    """Create an LLM instance based on configuration.

    Provider routing:
    - openai -> OpenAILLM (native endpoint)
    - openrouter -> OpenAILLM (OpenRouter endpoint)
    - google -> OpenAILLM (Gemini OpenAI-compatible endpoint)
    """
    if config is None or retry_config is None:
        if settings is None:
            from ..config import get_settings
            settings = get_settings()
        config = config or settings.get_llm_config()
        retry_config = retry_config or settings.retry.to_retry_config()

    provider = config.provider

    if provider == "openai":
        base_url = config.base_url
    elif provider == "openrouter":
        base_url = config.base_url or "https://openrouter.ai/api/v1"
    elif provider == "google":
        base_url = config.base_url or "https://generativelanguage.googleapis.com/v1beta/openai/"
    else:
        raise ValueError(f"Unknown LLM provider: {provider}")

    return OpenAILLM(
        api_key=config.api_key,
        model=config.model,
        base_url=base_url,
        retry_config=retry_config,
    )
