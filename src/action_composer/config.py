"""Configuration for the conductor, the session store and the action invoker.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

The platform variables (`__OW_API_HOST`, `__OW_API_KEY`, `__OW_NAMESPACE`) are
the ones an action runtime exposes to the code it runs.
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from action_composer.sessions.store import DEFAULT_EXPIRATION


class ComposerSettings(BaseSettings):
    """Settings shared by the CLI, the HTTP adapter and the conductor.

    Notes:
        Tests can bypass the `.env` file with
        `ComposerSettings(_env_file=None, redis_url=...)`.
    """

    redis_url: str = Field(
        default="redis://localhost:6379/0",
        validation_alias="REDIS_URL",
        description="Redis connection URL for session state",
    )
    session_namespace: str = Field(
        default="composer",
        validation_alias="COMPOSER_SESSION_NAMESPACE",
        description="Prefix of every session key",
    )
    session_expiration_seconds: int = Field(
        default=DEFAULT_EXPIRATION,
        gt=0,
        validation_alias="COMPOSER_SESSION_EXPIRATION",
        description="Seconds before session records expire",
    )

    notify: bool = Field(
        default=True,
        validation_alias="COMPOSER_NOTIFY",
        description=(
            "Invoke actions from the conductor with result notification. "
            "When false, each turn returns a continuation for the platform to run."
        ),
    )
    conductor_action: str = Field(
        default="conductor",
        validation_alias="COMPOSER_CONDUCTOR_ACTION",
        description="Name of the conductor action, target of notifications and fan-out",
    )
    blocking_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        validation_alias="COMPOSER_BLOCKING_TIMEOUT",
        description="How long blocking callers and fan-out joins wait for results",
    )
    poll_interval_seconds: float = Field(
        default=0.5,
        gt=0,
        validation_alias="COMPOSER_POLL_INTERVAL",
    )

    api_host: str = Field(default="", validation_alias="__OW_API_HOST")
    api_key: str = Field(default="", validation_alias="__OW_API_KEY")
    namespace: str = Field(default="_", validation_alias="__OW_NAMESPACE")
    ignore_certs: bool = Field(default=False, validation_alias="__OW_IGNORE_CERTS")

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Unknown log level {value!r}")
        return level

    @model_validator(mode="after")
    def _api_key_shape(self) -> ComposerSettings:
        if self.api_key and ":" not in self.api_key:
            raise ValueError("__OW_API_KEY must have the form 'uuid:key'")
        return self


class SessionConfig(BaseModel):
    """Per-invocation overrides carried in the `$config` parameter."""

    model_config = ConfigDict(extra="ignore")

    redis: str | None = None
    notify: bool | None = None
    expiration: int | None = Field(default=None, gt=0)
