"""
SyncSettings - Canonical configuration for a sync run.

Sources, lowest to highest precedence:
1. Built-in defaults (match the original car-multimedia profile)
2. JSON config file (--config)
3. Environment variables (MEDIASYNC_DOWNLOAD_DIR, MEDIASYNC_STATE_FILE,
   MEDIASYNC_CONCURRENCY)
4. Explicit CLI flags

Settings are frozen once loaded. A run never mutates its settings.
"""

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .jobs.errors import SyncError


ENV_DOWNLOAD_DIR = "MEDIASYNC_DOWNLOAD_DIR"
ENV_STATE_FILE = "MEDIASYNC_STATE_FILE"
ENV_CONCURRENCY = "MEDIASYNC_CONCURRENCY"

DEFAULT_RETRY_LIMIT = 3
DEFAULT_ACQUIRE_FORMAT = "bestvideo+bestaudio/best"


class SettingsError(SyncError):
    """Raised when configuration cannot be loaded or is invalid."""
    pass


def default_concurrency() -> int:
    """Available hardware parallelism (at least 1)."""
    return os.cpu_count() or 1


class VideoFormat(BaseModel):
    """
    Target encoding for the transform stage.

    Defaults: H.264 baseline 3.0, 720p, 2 Mbps cap, AAC 192k, the widest
    compatible profile for in-car head units.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    codec: str = "libx264"
    profile: str = "baseline"
    level: str = "3.0"
    resolution: str = "1280:720"
    max_rate: str = "2M"
    buf_size: str = "2M"
    audio_codec: str = "aac"
    audio_bitrate: str = "192k"

    @field_validator("resolution")
    @classmethod
    def _check_resolution(cls, value: str) -> str:
        parts = value.split(":")
        if len(parts) != 2 or not all(p.lstrip("-").isdigit() for p in parts):
            raise ValueError(f"resolution must look like WIDTH:HEIGHT, got {value!r}")
        return value


class SyncSettings(BaseModel):
    """
    Complete, immutable run configuration.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    # Sources
    playlist_urls: List[str] = Field(default_factory=list)
    video_urls: List[str] = Field(default_factory=list)

    # Locations
    download_dir: Path = Field(default_factory=lambda: Path.cwd() / "Downloaded")
    state_file: Path = Field(default_factory=lambda: Path.cwd() / "sync_state.json")

    # Execution
    retry_limit: int = Field(default=DEFAULT_RETRY_LIMIT, ge=1)
    concurrency: int = Field(default_factory=default_concurrency, ge=1)
    grace_seconds: float = Field(default=5.0, ge=0)
    # Only the metadata lookup is time-limited; acquire/transform are not
    metadata_timeout: Optional[float] = Field(default=120.0, gt=0)

    # Tools
    acquire_format: str = DEFAULT_ACQUIRE_FORMAT
    video_format: VideoFormat = Field(default_factory=VideoFormat)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SyncSettings":
        """
        Build settings from a plain mapping.

        Raises:
            SettingsError: If any value is invalid
        """
        try:
            return cls.model_validate(dict(data))
        except ValidationError as e:
            raise SettingsError(f"Invalid settings: {e}") from e

    @classmethod
    def load(
        cls,
        config_path: Union[str, Path, None] = None,
        environ: Optional[Mapping[str, str]] = None,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> "SyncSettings":
        """
        Resolve settings from file, environment and explicit overrides.

        Args:
            config_path: Optional JSON config file
            environ: Environment mapping (defaults to os.environ)
            overrides: Explicit values (CLI flags); None values are ignored

        Returns:
            Validated settings

        Raises:
            SettingsError: File missing/unreadable, invalid JSON or values
        """
        data: Dict[str, Any] = {}

        if config_path is not None:
            path = Path(config_path)
            if not path.is_file():
                raise SettingsError(f"Config file not found: {path}")
            try:
                with open(path, "r", encoding="utf-8") as f:
                    loaded = json.load(f)
            except json.JSONDecodeError as e:
                raise SettingsError(f"Invalid JSON in {path}: {e}") from e
            except OSError as e:
                raise SettingsError(f"Cannot read config file {path}: {e}") from e
            if not isinstance(loaded, dict):
                raise SettingsError(f"Config file {path} must contain a JSON object")
            data.update(loaded)

        env = os.environ if environ is None else environ
        if env.get(ENV_DOWNLOAD_DIR):
            data["download_dir"] = env[ENV_DOWNLOAD_DIR]
        if env.get(ENV_STATE_FILE):
            data["state_file"] = env[ENV_STATE_FILE]
        if env.get(ENV_CONCURRENCY):
            data["concurrency"] = env[ENV_CONCURRENCY]

        for key, value in (overrides or {}).items():
            if value is not None:
                data[key] = value

        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to a JSON-compatible dictionary."""
        return self.model_dump(mode="json")
