"""Configuration settings using Pydantic settings management."""
import os
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings


def is_addon_mode() -> bool:
    """Check if running as a Home Assistant add-on."""
    return bool(os.environ.get("SUPERVISOR_TOKEN")) or os.environ.get("HASSIO_ADDON") == "true"


class Settings(BaseSettings):
    """Application settings loaded from environment variables or a .env file."""

    # App
    app_name: str = Field(default="HomeDeck")
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Dashboard API the client library talks to
    dashboard_url: str = Field(default="http://localhost:8000")

    # Home Assistant
    ha_url: str = Field(
        default="http://localhost:8123",
        validation_alias=AliasChoices("ha_url", "home_assistant_url", "ha_base_url"),
    )
    ha_token: str = Field(
        default="",
        validation_alias=AliasChoices("ha_token", "home_assistant_token"),
    )

    # Chat store
    data_dir: str = Field(default="data")

    # Chat defaults
    default_model: str = Field(default="gpt-5-mini")
    default_agent_style: str = Field(default="balanced")
    default_enabled_tools: list[str] = Field(
        default_factory=lambda: [
            "home_assistant",
            "memory",
            "web_search",
            "tavily_search",
            "image_generation",
        ]
    )

    # Push channels
    device_poll_seconds: float = Field(default=5.0)
    system_poll_min_seconds: float = Field(default=10.0)
    system_poll_max_seconds: float = Field(default=15.0)
    heartbeat_seconds: float = Field(default=15.0)
    sse_retry_ms: int = Field(default=3000)

    # Health checks
    health_timeout_seconds: float = Field(default=5.0)
    health_failure_threshold: int = Field(default=2)
    db_cooldown_failures: int = Field(default=3)
    db_cooldown_seconds: float = Field(default=60.0)
    db_health_url: str = Field(default="")

    # Rate limiting
    requests_per_minute: int = Field(default=20)

    # Chat stream bounds
    stream_idle_timeout_seconds: float = Field(default=120.0)
    max_stream_chars: int = Field(default=1_000_000)

    # Sharing
    share_base_url: str = Field(default="")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


# Settings cache
_settings_cache: Optional[Settings] = None


def clear_settings_cache() -> None:
    """Clear settings cache. Call after configuration changes."""
    global _settings_cache
    _settings_cache = None


def get_settings() -> Settings:
    """Get settings.

    In add-on mode the Home Assistant connection comes from the supervisor
    environment; otherwise everything is read from the environment or .env.
    """
    global _settings_cache

    if _settings_cache is not None:
        return _settings_cache

    if is_addon_mode():
        ha_url = os.environ.get("HA_URL", "http://supervisor/core")
        ha_token = os.environ.get("HA_TOKEN") or os.environ.get("SUPERVISOR_TOKEN", "")
        _settings_cache = Settings(ha_url=ha_url, ha_token=ha_token, data_dir="/data/app_data")
        return _settings_cache

    _settings_cache = Settings()
    return _settings_cache
