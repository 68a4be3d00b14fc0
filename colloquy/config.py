"""Settings via pydantic-settings with COLLOQUY_ env prefix.

The API key is read from the unprefixed GEMINI_API_KEY env var via
validation_alias, so the same .env file works for other tooling that
talks to the Interactions service.
"""

from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="COLLOQUY_", env_file=".env")

    # Service endpoint
    api_base_url: str = "https://generativelanguage.googleapis.com"
    api_version: str = "v1beta"
    api_key: str = Field("", validation_alias="GEMINI_API_KEY")
    api_timeout_connect: float = 10.0  # seconds
    api_timeout_read: float = 120.0  # seconds, per network call

    # Model or agent selector (agent wins when both are set)
    model: str = "gemini-2.5-flash"
    agent: str = ""

    # Turn defaults
    store: bool = True
    stream: bool = True
    background: bool = False

    # Stream resumption
    stream_max_attempts: int = 5
    stream_backoff_base: float = 0.5
    stream_backoff_max: float = 8.0
    stream_backoff_jitter: float = 0.1  # fraction of the delay

    # Background polling
    poll_interval: float = 2.0
    poll_interval_max: float = 15.0
    poll_timeout: float = 3600.0  # 60 minute cap on a background task

    # Tool execution
    max_tool_rounds: int = 10
    tool_fail_fast: bool = False
    tool_timeout: float | None = None

    event_bus_enabled: bool = True
    log_level: Literal["debug", "info", "warning", "error"] = "info"

    @model_validator(mode="after")
    def _validate_combinations(self) -> "Settings":
        if self.background and not self.store:
            raise ValueError("background=True requires store=True")
        if not self.model and not self.agent:
            raise ValueError("One of model or agent must be set")
        if self.poll_interval <= 0 or self.poll_interval > self.poll_interval_max:
            raise ValueError(
                f"poll_interval ({self.poll_interval}) must be > 0 and <= "
                f"poll_interval_max ({self.poll_interval_max})"
            )
        if self.stream_backoff_base > self.stream_backoff_max:
            raise ValueError("stream_backoff_base must be <= stream_backoff_max")
        if self.stream_max_attempts < 0:
            raise ValueError("stream_max_attempts must be >= 0")
        if self.max_tool_rounds < 1:
            raise ValueError("max_tool_rounds must be >= 1")
        return self

    @property
    def selector(self) -> dict[str, str]:
        """Model-or-agent selector for new turns. An agent takes precedence."""
        if self.agent:
            return {"agent": self.agent}
        return {"model": self.model}

    @property
    def interactions_path(self) -> str:
        return f"/{self.api_version}/interactions"
