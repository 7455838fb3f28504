"""Configuration schema for the voice tutor.

Defines Pydantic models for loading and validating tutor configuration
from YAML files and environment variables.
"""

import os
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator


class OpenAIConfig(BaseModel):
    """Remote speech engine and evaluator configuration."""

    api_key: str | None = Field(
        default=None,
        description="Long-lived server secret (never sent to clients)",
    )
    base_url: str = Field(
        default="https://api.openai.com/v1",
        description="API base URL for credential, negotiation and scoring endpoints",
    )
    realtime_model: str = Field(default="gpt-realtime", description="Realtime speech model")
    voice: str | None = Field(default="alloy", description="Tutor voice (optional)")
    transcription_model: str = Field(
        default="gpt-4o-mini-transcribe",
        description="Model used to transcribe student speech",
    )
    transcription_language: str = Field(default="en", description="Student speech language")
    scoring_model: str = Field(default="gpt-4o-mini", description="Model used for evaluation")

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Strip trailing slash so endpoint paths can be appended."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be an http(s) URL, got '{v}'")
        return v.rstrip("/")


class SessionConfig(BaseModel):
    """Session duration budget and per-step timeouts."""

    duration_budget_s: int = Field(
        default=600,
        ge=10,
        le=7200,
        description="Maximum Live duration per session (10 minutes by default)",
    )
    tick_interval_s: float = Field(
        default=1.0,
        gt=0.0,
        le=10.0,
        description="Deadline ticker period",
    )
    credential_timeout_s: float = Field(default=15.0, gt=0.0)
    microphone_timeout_s: float = Field(default=10.0, gt=0.0)
    negotiation_timeout_s: float = Field(default=20.0, gt=0.0)
    channel_open_timeout_s: float = Field(default=15.0, gt=0.0)
    credential_url: str | None = Field(
        default=None,
        description="Remote /api/realtime URL; issue credentials in-process when unset",
    )


class FollowUpConfig(BaseModel):
    """Follow-up nudge policy applied when the student stays silent."""

    enabled: bool = Field(default=True, description="Send follow-up nudges")
    budget: int = Field(default=6, ge=0, le=50, description="Maximum nudges per session")
    cooldown_s: float = Field(default=15.0, ge=0.0, description="Minimum gap between nudges")
    silence_window_s: float = Field(
        default=12.0,
        gt=0.0,
        description="Silence after a tutor reply before a nudge fires",
    )


class ScoringConfig(BaseModel):
    """Evaluation request policy."""

    min_transcript_chars: int = Field(default=20, ge=1)
    history_size: int = Field(default=10, ge=1, le=100)
    timeout_s: float = Field(default=20.0, gt=0.0)
    endpoint_url: str | None = Field(
        default=None,
        description="Remote /api/score URL; evaluate in-process when unset",
    )


class StorageConfig(BaseModel):
    """Progress and roster storage backend."""

    backend: Literal["memory", "redis"] = Field(default="memory")
    redis_url: str = Field(default="redis://localhost:6379")
    db: int = Field(default=0, ge=0, le=15, description="Redis database number")
    key_prefix: str = Field(default="tutor:", description="Key prefix for stored records")
    connection_pool_size: int = Field(default=10, ge=1)


class ServerConfig(BaseModel):
    """HTTP API server configuration."""

    host: str = Field(default="127.0.0.1", description="Bind host address")
    port: int = Field(default=8080, ge=1024, le=65535, description="Bind port")


class MediaConfig(BaseModel):
    """Local audio device configuration.

    ``microphone_device``/``microphone_format`` are passed to the media player
    (e.g. ``default``/``pulse`` on Linux, ``:0``/``avfoundation`` on macOS).
    ``audio_output`` names a file or device for the tutor's voice; when unset
    the remote audio is consumed and discarded.
    """

    microphone_device: str = Field(default="default")
    microphone_format: str | None = Field(default="pulse")
    audio_output: str | None = Field(default=None)
    audio_output_format: str | None = Field(default=None)


class TutorConfig(BaseModel):
    """Root voice tutor configuration."""

    openai: OpenAIConfig = Field(default_factory=OpenAIConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    followup: FollowUpConfig = Field(default_factory=FollowUpConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate logging level name."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}, got '{v}'")
        return v.upper()

    @classmethod
    def from_yaml(cls, path: Path) -> "TutorConfig":
        """Load configuration from YAML file with environment variable overrides.

        Args:
            path: Path to YAML configuration file

        Returns:
            Loaded configuration

        Raises:
            FileNotFoundError: If configuration file doesn't exist
            ValueError: If YAML is invalid or validation fails
        """
        import yaml  # type: ignore[import-untyped]

        if not path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}

        return cls.model_validate(_apply_env_overrides(data))

    @classmethod
    def from_yaml_with_defaults(cls, path: Path | None = None) -> "TutorConfig":
        """Load configuration from YAML or use defaults if file doesn't exist.

        Environment overrides apply in both cases.

        Args:
            path: Optional path to YAML configuration file

        Returns:
            Loaded configuration or defaults
        """
        if path is not None and path.exists():
            return cls.from_yaml(path)

        return cls.model_validate(_apply_env_overrides({}))


def _apply_env_overrides(data: dict) -> dict:
    """Overlay secrets and deployment settings from the environment (.env aware)."""
    load_dotenv()

    if api_key := os.getenv("OPENAI_API_KEY"):
        data.setdefault("openai", {})["api_key"] = api_key

    if base_url := os.getenv("OPENAI_BASE_URL"):
        data.setdefault("openai", {})["base_url"] = base_url

    if redis_url := os.getenv("REDIS_URL"):
        data.setdefault("storage", {})["redis_url"] = redis_url

    if backend := os.getenv("TUTOR_STORAGE_BACKEND"):
        data.setdefault("storage", {})["backend"] = backend.lower()

    if score_url := os.getenv("TUTOR_SCORE_URL"):
        data.setdefault("scoring", {})["endpoint_url"] = score_url

    if credential_url := os.getenv("TUTOR_CREDENTIAL_URL"):
        data.setdefault("session", {})["credential_url"] = credential_url

    return data
