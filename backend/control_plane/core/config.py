"""
Runner Control Plane - Configuration
====================================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import computed_field, model_validator
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
    APP_NAME: str = "Runner Control Plane"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # ==========================================================================
    # Database (supports SQLite and PostgreSQL)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./control_plane.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    @computed_field  # type: ignore[misc]
    @property
    def is_sqlite(self) -> bool:
        return "sqlite" in self.DATABASE_URL

    # ==========================================================================
    # Runner Fleet
    # ==========================================================================
    LIVENESS_WINDOW_SECONDS: int = 60
    HEARTBEAT_INTERVAL_SECONDS: int = 30
    POLL_BATCH_SIZE: int = 10
    ORDER_WAIT_MAX_SECONDS: int = 25

    # Order report truncation
    OUTPUT_TAIL_MAX_CHARS: int = 10000
    ERROR_MESSAGE_MAX_CHARS: int = 1000

    # Capability observations older than this are flagged stale
    CAPABILITY_STALE_AFTER_HOURS: int = 24

    # ==========================================================================
    # Deployments
    # ==========================================================================
    APPS_ROOT: str = "/opt/ikoma/apps"
    DEFAULT_APP_PORT: int = 3000

    # ==========================================================================
    # Playbook Catalog
    # ==========================================================================
    PLAYBOOK_API_URL: Optional[str] = None
    PLAYBOOK_API_KEY: Optional[str] = None
    PLAYBOOK_API_TIMEOUT: float = 10.0
    STATIC_PLAYBOOK_CATALOG: Path = Path(__file__).parent / "fleet" / "playbooks.yaml"

    @model_validator(mode="after")
    def check_heartbeat_margin(self) -> "Settings":
        """The liveness window must exceed the agent heartbeat interval."""
        if self.HEARTBEAT_INTERVAL_SECONDS >= self.LIVENESS_WINDOW_SECONDS:
            raise ValueError(
                "LIVENESS_WINDOW_SECONDS must be greater than HEARTBEAT_INTERVAL_SECONDS"
            )
        return self

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


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
