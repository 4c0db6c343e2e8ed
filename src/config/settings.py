"""SDK-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_EVENT_NAMES: tuple[str, ...] = (
    "call_created",
    "call_updated",
    "call_ended",
    "transfer_created",
    "transfer_updated",
    "transfer_answered",
    "transfer_completed",
    "transfer_cancelled",
    "relocate_initiated",
    "relocate_answered",
    "relocate_completed",
    "relocate_ended",
    "user_status_update",
    "line_status_updated",
    "switchboard_call_moved",
)


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    environment: Literal["local", "dev", "prod"] = Field(default="local")
    log_level: str = Field(default="INFO")

    # Call-control REST service
    calld_url: str = Field(
        default="https://localhost/api/calld/1.0",
        description="Base URL of the call-control REST API.",
    )
    http_timeout_seconds: float = Field(default=10.0, gt=0)
    verify_tls: bool = Field(default=True)

    # Real-time channel
    websocket_url: str = Field(
        default="wss://localhost/api/websocketd/",
        description="Websocket endpoint delivering call-control events.",
    )
    websocket_ping_interval: float = Field(default=20.0, gt=0)
    websocket_reconnect_delay: float = Field(default=2.0, ge=0)
    event_names: tuple[str, ...] = Field(default=DEFAULT_EVENT_NAMES)

    # Registry
    terminal_retention_seconds: float | None = Field(
        default=None,
        ge=0,
        description=(
            "How long ended/completed/cancelled entities are remembered. "
            "None keeps them until the next successful listing sync."
        ),
    )

    @field_validator("calld_url", "websocket_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
