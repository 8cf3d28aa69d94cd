"""Central configuration for the coweb session client."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ROOT_DIR = Path(__file__).resolve().parents[1]
DEFAULT_ENV_FILE = ROOT_DIR / ".env"


# ============================================================
# Nested Configuration Classes
# ============================================================

class TransportSettings(BaseModel):
    """Timeouts used by the transport bridge."""
    http_timeout: float = Field(15.0, description="Timeout for admin and credential HTTP calls (seconds)")
    open_timeout: float = Field(10.0, description="Timeout for opening the session websocket (seconds)")
    reply_timeout: float = Field(30.0, description="Max wait for a join/update reply from the server (seconds)")


class Settings(BaseSettings):
    """Environment-driven settings for the session client."""

    # Server endpoints
    server_url: str = Field("http://localhost:8080", description="Base URL of the coweb server REST endpoints")
    ws_url: str = Field("ws://localhost:8080", description="Base URL for session websocket connections")
    admin_url: str = Field("/admin", description="Admin endpoint that prepares a session for a key")
    login_url: str = Field("/login", description="Credential endpoint accepting a JSON username/password POST")
    logout_url: str = Field("/logout", description="Credential endpoint dropping the current login")

    # Session defaults
    page_url: str = Field("http://localhost/", description="URL of the hosting page; seeds the default session key")
    session_key_param: str = Field("cowebkey", description="Query-string parameter carrying an explicit session key")
    debug: bool = Field(False, description="Verbose logging and debug behaviour")

    # Notification fan-out
    hub_queue_size: int = Field(16, description="Max buffered notifications per hub subscriber")
    listener_queue_size: int = Field(256, description="Max buffered inbound sync messages for the listener")

    # Logging
    log_level: str = Field("INFO", description="Logging level")
    log_to_file: bool = Field(False, description="Also write a rotating log file")
    log_directory: Path = Field(ROOT_DIR / "logs", description="Log directory path")
    log_retention_days: int = Field(14, description="Number of log files to retain")

    transport: TransportSettings = Field(default_factory=TransportSettings, description="Transport timeouts")

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalise_level(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("server_url", "ws_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("session_key_param")
    @classmethod
    def _require_param_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("SESSION_KEY_PARAM must not be empty")
        return value

    @property
    def effective_log_level(self) -> str:
        return "DEBUG" if self.debug else self.log_level

    model_config = SettingsConfigDict(
        env_prefix="COWEB_",
        env_nested_delimiter="__",
        env_file=str(DEFAULT_ENV_FILE),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache()
def get_settings(override_env_file: Optional[Path] = None) -> Settings:
    """Cached Settings instance; accepts optional env override for tests."""

    if override_env_file:
        return Settings(_env_file=str(override_env_file))
    return Settings()


__all__ = ["Settings", "TransportSettings", "get_settings"]
