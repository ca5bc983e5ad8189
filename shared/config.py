"""Base configuration with pydantic-settings.

This module provides a base Settings class that services inherit from.
Each service defines its own Settings with the fields specific to it.

Usage in service:
    from shared.config import BaseSettings
    from pydantic import Field

    class Settings(BaseSettings):
        redis_url: str = redis_url_field()

    settings = Settings()
"""

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings as PydanticBaseSettings, SettingsConfigDict


class BaseSettings(PydanticBaseSettings):
    """Base application settings.

    All fields here are optional with sensible defaults.
    Services inherit this and make required fields mandatory.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging configuration
    service_name: str = Field(
        default="unknown",
        description="Service name for structured logging",
    )
    log_format: Literal["json", "console"] = Field(
        default="console",
        description="Log output format",
    )
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR)",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v


# === Field definitions for reuse in service configs ===


def redis_url_field(required: bool = False):
    """Redis URL field definition."""
    if required:
        return Field(
            ...,
            description="Redis connection URL",
            examples=["redis://redis:6379/0"],
        )
    return Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL",
    )


def docker_url_field():
    """Container engine endpoint field definition.

    Empty means discovery from the environment (DOCKER_HOST, local socket).
    """
    return Field(
        default=None,
        description="Docker engine base URL",
        examples=["unix:///var/run/docker.sock", "tcp://docker:2375"],
    )
