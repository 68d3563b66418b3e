"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    environment: Literal["local", "dev", "prod"] = Field(default="local")
    log_level: str = Field(default="INFO")

    # Peer transport
    ice_servers: list[str] = Field(
        default_factory=lambda: ["stun:stun.l.google.com:19302"],
        description="STUN/TURN URLs handed to the peer connection. Empty means host candidates only.",
    )
    control_channel_label: str = Field(default="chat")
    display_name: str = Field(default="me", description="Value sent in the `from` field of call messages.")
    gathering_timeout_seconds: float = Field(default=30.0, gt=0.0)

    # Local capture
    capture_backend: Literal["device", "synthetic"] = Field(
        default="device",
        description="`synthetic` produces silence and a test pattern instead of opening hardware.",
    )
    video_device: str = Field(default="/dev/video0")
    video_format: str = Field(default="v4l2")
    video_size: str = Field(default="1280x720")
    video_framerate: int = Field(default=30, ge=1)
    audio_device: str = Field(default="default")
    audio_format: str = Field(default="pulse")

    # Session metadata cache
    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/peerlink.db",
        description="SQLAlchemy connection string.",
    )
    auto_create_db_schema: bool = Field(default=True)
    persist_session_metadata: bool = Field(
        default=True,
        description="Best-effort write of session metadata once a transport connects.",
    )

    # In-memory buffers exposed to presentation layers
    chat_history_limit: int = Field(default=500, ge=1)
    event_log_limit: int = Field(default=1000, ge=1)

    data_dir: Path = Field(default=Path("./data"))

    @field_validator("data_dir")
    @classmethod
    def ensure_data_dir(cls, value: Path) -> Path:
        value.mkdir(parents=True, exist_ok=True)
        return value

    @field_validator("video_size")
    @classmethod
    def validate_video_size(cls, value: str) -> str:
        width, sep, height = value.lower().partition("x")
        if not sep or not width.isdigit() or not height.isdigit():
            raise ValueError("video_size must look like <width>x<height>")
        return f"{int(width)}x{int(height)}"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
