"""
Claw-Kanban - Configuration
===========================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "Claw-Kanban"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False

    # ==========================================================================
    # API
    # ==========================================================================
    HOST: str = "127.0.0.1"  # set 0.0.0.0 for LAN / Tailscale
    PORT: int = 8787
    API_PREFIX: str = "/api"
    CORS_ORIGINS: list[str] = ["*"]

    # ==========================================================================
    # Database
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./kanban.sqlite"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    # ==========================================================================
    # Agent Runs
    # ==========================================================================
    LOGS_DIR: Path = Path("logs")
    REVIEWER_AGENT: str = "claude"
    REVIEW_DELAY_SECONDS: float = 2.0     # let filesystem writes settle before review
    STOP_GRACE_SECONDS: float = 5.0       # SIGTERM -> SIGKILL escalation
    PASS_SENTINEL: str = "REVIEW_PASSED"

    # ==========================================================================
    # HTTP-streamed agents
    # ==========================================================================
    COPILOT_API_URL: str = "https://api.githubcopilot.com/chat/completions"
    COPILOT_MODEL: str = "gpt-4o"
    COPILOT_TOKEN: str | None = None

    GEMINI_API_URL: str = (
        "https://generativelanguage.googleapis.com/v1beta/models/{model}:streamGenerateContent?alt=sse"
    )
    GEMINI_API_MODEL: str = "gemini-2.5-pro"
    GEMINI_API_TOKEN: str | None = None

    HTTP_AGENT_TIMEOUT_SECONDS: float = 600.0

    # ==========================================================================
    # OpenClaw Gateway (wake notifications)
    # ==========================================================================
    OPENCLAW_CONFIG: str | None = None  # e.g. ~/.openclaw/openclaw.json
    WAKE_TIMEOUT_SECONDS: float = 8.0
    WAKE_DEBOUNCE_SECONDS: float = 12.0

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @computed_field  # type: ignore[misc]
    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == "test"

    @computed_field  # type: ignore[misc]
    @property
    def gateway_configured(self) -> bool:
        return bool(self.OPENCLAW_CONFIG)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
