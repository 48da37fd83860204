"""
Configuration management for EMA Agent

Uses pydantic-settings for environment variable parsing and validation.
"""

from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .retry import RetryConfig

Provider = Literal["openai", "openrouter", "google"]


class LLMConfig(BaseSettings):
    """Configuration for a single LLM provider."""

    model_config = SettingsConfigDict(extra="ignore")

    provider: Provider = "openai"
    model: str = "gpt-4o"
    api_key: str = ""
    base_url: str | None = None


class RetrySettings(BaseModel):
    """Retry policy applied to every LLM request."""

    enabled: bool = True
    max_retries: int = Field(default=3, ge=0)
    initial_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=60.0, ge=0)
    exponential_base: float = Field(default=2.0, ge=1)

    def to_retry_config(self) -> RetryConfig:
        return RetryConfig(
            enabled=self.enabled,
            max_retries=self.max_retries,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            exponential_base=self.exponential_base,
        )


class AgentSettings(BaseModel):
    """Agent loop limits and workspace."""

    max_steps: int = Field(default=50, ge=1, description="Max LLM steps per run")
    workspace_dir: str = Field(default="./workspace", description="Working directory for tools")
    token_limit: int = Field(default=80_000, ge=1, description="Token budget before summarization")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Application
    app_name: str = "EMA-Agent"
    debug: bool = False
    log_level: str = "INFO"

    # LLM Providers (API Keys)
    openai_api_key: str = Field(default="", description="OpenAI API key")
    openrouter_api_key: str = Field(default="", description="OpenRouter API key")
    google_api_key: str = Field(default="", description="Google AI API key for Gemini")

    # Default model settings
    default_provider: Provider = "openai"
    default_model: str = ""
    api_base: str = Field(default="", description="Override the provider base URL")

    retry: RetrySettings = Field(default_factory=RetrySettings)
    agent: AgentSettings = Field(default_factory=AgentSettings)

    @field_validator("default_model", "api_base", mode="before")
    @classmethod
    def strip_value(cls, v: str) -> str:
        return v.strip() if v else ""

    def get_llm_config(self, provider: str | None = None) -> LLMConfig:
        """Get LLM configuration for a provider."""
        provider = provider or self.default_provider

        api_key_map = {
            "openai": self.openai_api_key,
            "openrouter": self.openrouter_api_key,
            "google": self.google_api_key,
        }

        model_map = {
            "openai": "gpt-4o",
            "openrouter": "anthropic/claude-sonnet-4",
            "google": "gemini-2.5-flash",
        }

        base_url_map = {
            "openai": None,
            "openrouter": "https://openrouter.ai/api/v1",
            "google": "https://generativelanguage.googleapis.com/v1beta/openai/",
        }

        # The configured default model only applies to the default provider
        model = model_map.get(provider, "gpt-4o")
        if self.default_model and provider == self.default_provider:
            model = self.default_model

        return LLMConfig(
            provider=provider,  # type: ignore
            model=model,
            api_key=api_key_map.get(provider, ""),
            base_url=self.api_base or base_url_map.get(provider),
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
