"""
Configuration management for Bot Manager Agent

Uses pydantic-settings for environment variable parsing and validation.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LLMConfig(BaseSettings):
    """Configuration for a single LLM provider."""

    model_config = SettingsConfigDict(extra="ignore")

    provider: Literal["anthropic", "openai", "openrouter"] = "anthropic"
    model: str = "claude-haiku-4-5"
    api_key: str = ""
    base_url: str | None = None
    max_tokens: int = 4096
    temperature: float = 0.3


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Application
    app_name: str = "Bot-Manager-Agent"
    debug: bool = False
    log_level: str = "INFO"

    # Storage
    data_dir: Path = Field(default=Path("./data"), description="Root directory for persisted state")

    # Telegram
    telegram_bot_token: str = Field(default="", description="Telegram Bot API token")

    # LLM Providers (API Keys)
    anthropic_api_key: str = Field(default="", description="Anthropic API key for Claude")
    openai_api_key: str = Field(default="", description="OpenAI API key")
    openrouter_api_key: str = Field(default="", description="OpenRouter API key")

    # Compaction
    compaction_provider: Literal["anthropic", "openai", "openrouter"] = "anthropic"
    compaction_model: str = Field(default="", description="Override model used for summaries")
    compaction_threshold_tokens: int = Field(default=100_000, description="Soft compaction threshold")
    context_window_tokens: int = Field(default=200_000, description="Model context window size")
    auto_compact_ratio: float = Field(default=0.95, description="Hard auto-compaction trigger ratio")
    compaction_prompt: str = Field(default="", description="Custom summarization instructions")
    summary_max_tokens: int = 4096

    # Working memory
    context_max_messages: int = Field(default=200, description="Messages kept per user")
    context_max_tokens: int = Field(default=50_000, description="Token budget for recent context")
    context_cache_ttl_seconds: float = Field(default=300.0, description="Context read cache TTL")
    dedup_window_seconds: float = Field(default=2.0, description="Duplicate message window")
    recent_context_messages: int = Field(default=10, description="Messages used to enrich prompts")

    # Confirmations
    enable_confirmations: bool = True
    confirmation_timeout_seconds: float = Field(default=60.0, description="Approval timeout")

    @field_validator("context_max_messages", "context_max_tokens", "compaction_threshold_tokens")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("auto_compact_ratio")
    @classmethod
    def ratio_in_range(cls, v: float) -> float:
        if not 0 < v <= 1:
            raise ValueError("must be in (0, 1]")
        return v

    @property
    def sessions_dir(self) -> Path:
        return self.data_dir / "sessions"

    @property
    def session_index_file(self) -> Path:
        return self.data_dir / "session-index.json"

    @property
    def context_dir(self) -> Path:
        return self.data_dir / "memories" / "users"

    def get_llm_config(self, provider: str | None = None) -> LLMConfig:
        """Get LLM configuration for a provider."""
        provider = provider or self.compaction_provider

        api_key_map = {
            "anthropic": self.anthropic_api_key,
            "openai": self.openai_api_key,
            "openrouter": self.openrouter_api_key,
        }

        model_map = {
            "anthropic": "claude-haiku-4-5",
            "openai": "gpt-4o-mini",
            "openrouter": "anthropic/claude-haiku-4.5",
        }

        base_url_map = {
            "anthropic": None,
            "openai": None,
            "openrouter": "https://openrouter.ai/api/v1",
        }

        return LLMConfig(
            provider=provider,  # type: ignore
            model=self.compaction_model or model_map.get(provider, "claude-haiku-4-5"),
            api_key=api_key_map.get(provider, ""),
            base_url=base_url_map.get(provider),
            max_tokens=self.summary_max_tokens,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
