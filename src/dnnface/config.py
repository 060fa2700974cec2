"""Environment-based configuration for dnnface."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from DNNFACE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DNNFACE_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # Network input resolution (fixes the prior layout)
    input_width: int = Field(default=320, ge=1)
    input_height: int = Field(default=240, ge=1)

    # Post-processing defaults
    score_threshold: float = Field(default=0.9, ge=0.0, le=1.0)
    nms_threshold: float = Field(default=0.3, ge=0.0, le=1.0)
    top_k: int = Field(default=5000, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0.0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
