"""
scribeline.config - YAML config loading, override merging, validation.

Handles loading scribeline.yaml from the working directory (or any parent),
applying command-line overrides, and validating all parameters.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from scribeline.exceptions import ConfigError

CONFIG_FILENAME = "scribeline.yaml"

SUPPORTED_MODELS = ("auto", "tiny", "base", "small", "medium", "large-v3", "custom")

SUPPORTED_LANGUAGES = (
    "auto", "en", "es", "fr", "de", "it", "pt", "ru", "ja", "ko", "zh", "ar", "nl", "pl",
    "tr", "sv", "no", "da", "fi", "el", "hi", "th", "vi", "cs", "hu", "ro", "uk",
)

DEFAULT_TOOL_SEARCH_PATHS = [
    "/opt/homebrew/bin",
    "/usr/local/bin",
    "/usr/bin",
    "~/.local/bin",
    "~/bin",
]

DEFAULT_TRANSCODER_SEARCH_PATHS = [
    "/opt/homebrew/bin",
    "/usr/local/bin",
    "/usr/bin",
]


class DiarizationSettings(BaseModel):
    """Speaker attribution settings."""

    enabled: bool = False
    server_url: str = "http://localhost:50061/diarize"
    timeout_seconds: float = Field(default=600.0, gt=0.0)

    @field_validator("server_url")
    @classmethod
    def validate_server_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("server_url must be an http(s) URL")
        return v


class ScribelineConfig(BaseModel):
    """Resolved configuration for a transcription run."""

    model_config = ConfigDict(protected_namespaces=())

    language: str = "en"
    model: str = "auto"
    model_path: Path | None = None

    tool_name: str = "whisperkit-cli"
    tool_search_paths: list[str] = Field(default_factory=lambda: list(DEFAULT_TOOL_SEARCH_PATHS))
    transcoder_name: str = "ffmpeg"
    probe_name: str = "ffprobe"
    transcoder_search_paths: list[str] = Field(
        default_factory=lambda: list(DEFAULT_TRANSCODER_SEARCH_PATHS)
    )

    job_timeout_seconds: float = Field(default=1800.0, gt=0.0)
    termination_grace_seconds: float = Field(default=5.0, ge=0.0)
    settle_seconds: float = Field(default=2.0, ge=0.0)
    poll_interval_seconds: float = Field(default=0.1, gt=0.0)

    scratch_dir: Path | None = None

    diarization: DiarizationSettings = Field(default_factory=DiarizationSettings)

    config_path: Path | None = None

    @field_validator("language")
    @classmethod
    def validate_language(cls, v: str) -> str:
        if v not in SUPPORTED_LANGUAGES:
            raise ValueError(f"language must be one of: {', '.join(SUPPORTED_LANGUAGES)}")
        return v

    @field_validator("model")
    @classmethod
    def validate_model(cls, v: str) -> str:
        if v not in SUPPORTED_MODELS:
            raise ValueError(f"model must be one of: {', '.join(SUPPORTED_MODELS)}")
        return v

    @model_validator(mode="after")
    def check_custom_model(self) -> ScribelineConfig:
        if self.model == "custom" and self.model_path is None:
            raise ValueError("model 'custom' requires model_path")
        return self

    @property
    def model_identifier(self) -> str:
        """Name recorded on transcripts for the model that produced them."""
        if self.model_path is not None:
            return str(self.model_path)
        return self.model


def find_config_file(start: Path | None = None) -> Path | None:
    """Find scribeline.yaml in the start directory or any of its parents."""
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.exists():
            return candidate
        if current == current.parent:
            return None
        current = current.parent


def merge_config(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Merge overrides onto a base config. Overrides take precedence; None is ignored."""
    merged = dict(base)
    for key, value in overrides.items():
        if key == "diarization" and isinstance(value, dict):
            nested = dict(merged.get("diarization") or {})
            nested.update({k: v for k, v in value.items() if v is not None})
            merged["diarization"] = nested
        elif value is not None:
            merged[key] = value
    return merged


def load_config(
    config_file: Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> ScribelineConfig:
    """Load and validate configuration.

    Args:
        config_file: Explicit config path; searched from the cwd if None
        overrides: Values that take precedence over the file (e.g. CLI flags)

    Returns:
        Validated ScribelineConfig (defaults if no file exists)

    Raises:
        ConfigError: If the file is unreadable or a value is invalid
    """
    path = config_file or find_config_file()
    raw_config: dict[str, Any] = {}

    if path is not None:
        if not path.exists():
            raise ConfigError(f"No {CONFIG_FILENAME} found at {path}")
        try:
            with open(path) as f:
                raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        if not isinstance(raw_config, dict):
            raise ConfigError(f"{path} must contain a mapping")

    merged = merge_config(raw_config, overrides or {})
    merged["config_path"] = path

    try:
        return ScribelineConfig(**merged)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def create_default_config() -> dict[str, Any]:
    """Create the default config written by ``scribeline init``."""
    return {
        "language": "en",
        "model": "auto",
        "tool_name": "whisperkit-cli",
        "job_timeout_seconds": 1800,
        "diarization": {
            "enabled": False,
            "server_url": "http://localhost:50061/diarize",
        },
    }


def write_config(config: dict[str, Any], path: Path) -> None:
    """Write configuration to a YAML file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.dump(config, f, default_flow_style=False, sort_keys=False)
