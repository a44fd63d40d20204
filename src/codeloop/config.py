"""
Configuration management for codeloop

Uses pydantic-settings for environment variable parsing and validation.
"""

from functools import lru_cache
from typing import TYPE_CHECKING, Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from .agent.compaction import ContextConfig


class LLMConfig(BaseSettings):
    """Configuration for a single LLM provider."""

    model_config = SettingsConfigDict(extra="ignore")

    provider: Literal["anthropic", "openai", "openrouter"] = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    api_key: str = ""
    base_url: str | None = None
    max_tokens: int = 4096
    temperature: float = 0.7


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Application
    app_name: str = "codeloop"
    debug: bool = False
    log_level: str = "INFO"

    # LLM Providers (API Keys)
    anthropic_api_key: str = Field(default="", description="Anthropic API key for Claude")
    openai_api_key: str = Field(default="", description="OpenAI API key")
    openrouter_api_key: str = Field(default="", description="OpenRouter API key")

    # Default model settings
    default_provider: Literal["anthropic", "openai", "openrouter"] = "anthropic"
    default_model: str = ""
    max_tokens: int = 4096
    temperature: float = 0.7

    # Context budget
    context_limit_tokens: int = Field(default=100_000, gt=0, description="Context size limit in tokens")
    compression_trigger_ratio: float = Field(default=0.92, gt=0, le=1)
    compression_target_ratio: float = Field(default=0.70, gt=0, lt=1)
    summary_budget_ratio: float = Field(default=0.10, gt=0, lt=1)
    keep_recent_messages: int = Field(default=10, ge=0, description="Messages kept verbatim when compressing")

    # Agent loop
    max_tool_iterations: int = Field(default=10, ge=1, description="Tool rounds allowed per turn")
    steering_queue_size: int = Field(default=1024, ge=0, description="Steering inbox bound, 0 for unbounded")

    # Storage
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/codeloop.db",
        description="Database connection URL"
    )
    workspace_dir: str = Field(default=".", description="Root directory for file tools")

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.strip().upper() if v else "INFO"

    @model_validator(mode="after")
    def check_compression_ratios(self) -> "Settings":
        if self.compression_target_ratio >= self.compression_trigger_ratio:
            raise ValueError(
                "compression_target_ratio must be strictly lower than compression_trigger_ratio"
            )
        return self

    def get_llm_config(self, provider: str | None = None) -> LLMConfig:
        """Get LLM configuration for a provider."""
        provider = provider or self.default_provider

        api_key_map = {
            "anthropic": self.anthropic_api_key,
            "openai": self.openai_api_key,
            "openrouter": self.openrouter_api_key,
        }

        model_map = {
            "anthropic": "claude-sonnet-4-20250514",
            "openai": "gpt-4o",
            "openrouter": "anthropic/claude-sonnet-4",
        }

        base_url_map = {
            "anthropic": None,
            "openai": None,
            "openrouter": "https://openrouter.ai/api/v1",
        }

        model = model_map.get(provider, "")
        if self.default_model and provider == self.default_provider:
            model = self.default_model

        return LLMConfig(
            provider=provider,  # type: ignore
            model=model,
            api_key=api_key_map.get(provider, ""),
            base_url=base_url_map.get(provider),
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )

    def get_context_config(self) -> "ContextConfig":
        """Get the context budget configuration for new sessions."""
        from .agent.compaction import ContextConfig

        return ContextConfig(
            max_context_tokens=self.context_limit_tokens,
            trigger_ratio=self.compression_trigger_ratio,
            target_ratio=self.compression_target_ratio,
            summary_budget_ratio=self.summary_budget_ratio,
            keep_recent_messages=self.keep_recent_messages,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
