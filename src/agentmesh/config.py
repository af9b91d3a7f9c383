"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class Settings(BaseSettings):
    """Orchestrator settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # LLM Providers
    ANTHROPIC_API_KEY: str = ""
    OPENAI_API_KEY: str = ""
    LLM_TIMEOUT: int = 30
    LLM_MAX_RETRIES: int = 3
    LLM_DEFAULT_PROVIDER: str = "openai"
    LLM_DEFAULT_MODEL: str = "gpt-4o-mini"

    # Checkpointing
    CHECKPOINT_ENABLED: bool = True
    CHECKPOINT_THREAD_PREFIX: str = "multi-agent"

    # Workflow execution
    WORKFLOW_RECURSION_LIMIT: int = 25
    WORKFLOW_DEFAULT_TIMEOUT: float = 0.0  # seconds, 0 disables

    # Token streaming
    TOKEN_BUFFER_SIZE: int = 50
    TOKEN_FLUSH_INTERVAL_MS: int = 1000
    TOKEN_STREAM_IDLE_TIMEOUT_S: float = 300.0
    TOKEN_CLEANUP_INTERVAL_S: float = 60.0
    TOKEN_STATS_INTERVAL_S: float = 5.0

    # Tool execution
    TOOL_MAX_RETRIES: int = 3
    TOOL_RETRY_BASE_DELAY: float = 1.0
    TOOL_RETRY_MULTIPLIER: float = 2.0

    # Event bus
    EVENT_QUEUE_SIZE: int = 1000

    def api_key_for(self, provider: str) -> str:
        """Return the configured API key for an LLM provider, or empty string."""
        keys = {
            "openai": self.OPENAI_API_KEY,
            "anthropic": self.ANTHROPIC_API_KEY,
        }
        return keys.get(provider, "")


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
