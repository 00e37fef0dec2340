"""Pydantic configuration models for the prompt runner."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from exceptions import ConfigFileNotFoundError, ConfigurationError


# Load .env file if present
load_dotenv()

DEFAULT_CONFIG_FILES = ("prompt_runner.json", "prompt_runner.yaml", "prompt_runner.yml")


def _fill_from_env(data: Any, env_mapping: dict[str, str]) -> Any:
    if not isinstance(data, dict):
        return data
    for field_name, env_var in env_mapping.items():
        if field_name not in data or data[field_name] is None:
            env_value = os.getenv(env_var)
            if env_value:
                data[field_name] = env_value
    return data


class StreamConfig(BaseModel):
    """Remote execution service connection settings."""

    base_url: str = Field(
        default="http://localhost:8080",
        description="Base URL of the remote execution service",
    )
    endpoint_path: str = Field(
        default="/api/v1/prompts",
        description="Path of the push-stream endpoint",
    )
    connect_timeout: float = Field(
        default=10.0,
        gt=0.0,
        le=120.0,
        description="Seconds to wait for the stream to connect",
    )
    read_timeout: Optional[float] = Field(
        default=None,
        gt=0.0,
        description="Seconds to wait between chunks (None = wait indefinitely)",
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Ensure base_url doesn't have trailing slash."""
        return v.rstrip("/")

    @field_validator("endpoint_path")
    @classmethod
    def validate_endpoint_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("endpoint_path must start with '/'")
        return v

    @model_validator(mode="before")
    @classmethod
    def load_from_env(cls, data: Any) -> Any:
        """Load values from environment variables if not explicitly set."""
        return _fill_from_env(data, {"base_url": "PROMPT_RUNNER_API_BASE_URL"})


class HistoryConfig(BaseModel):
    """Prompt history persistence settings."""

    path: Path = Field(
        default=Path("~/.prompt_runner/history.json"),
        description="File holding the durable history blob",
    )
    storage_key: str = Field(
        default="ai-automation-prompts",
        min_length=1,
        description="Name of the record holding the serialized history",
    )
    capacity: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Maximum number of stored prompts",
    )

    @field_validator("path", mode="before")
    @classmethod
    def convert_to_path(cls, v: Any) -> Path:
        """Convert string to Path."""
        if isinstance(v, str):
            return Path(v)
        return v

    @model_validator(mode="before")
    @classmethod
    def load_from_env(cls, data: Any) -> Any:
        return _fill_from_env(data, {"path": "PROMPT_RUNNER_HISTORY_PATH"})

    @property
    def resolved_path(self) -> Path:
        return self.path.expanduser()


class RunnerConfig(BaseModel):
    """Root configuration model combining all config sections."""

    stream: StreamConfig = Field(default_factory=StreamConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)

    verbose: bool = Field(
        default=False,
        description="Enable verbose logging",
    )
    log_file: Optional[Path] = Field(
        default=None,
        description="Optional rotating log file",
    )

    @classmethod
    def from_flat_dict(cls, data: dict[str, Any]) -> "RunnerConfig":
        """Create config from a flat dictionary (legacy format compatibility)."""
        stream_keys = {"base_url", "endpoint_path", "connect_timeout", "read_timeout"}
        history_keys = {"storage_key", "capacity"}

        nested: dict[str, Any] = {
            "stream": {},
            "history": {},
        }

        for key, value in data.items():
            if key in stream_keys:
                nested["stream"][key] = value
            elif key in history_keys:
                nested["history"][key] = value
            elif key == "history_path":
                nested["history"]["path"] = value
            elif key in ("verbose", "log_file"):
                nested[key] = value

        return cls.model_validate(nested)


def _find_default_config() -> Optional[Path]:
    for name in DEFAULT_CONFIG_FILES:
        candidate = Path(name)
        if candidate.exists():
            return candidate
    return None


def load_config(
    config_path: Optional[Path] = None,
    cli_overrides: Optional[dict[str, Any]] = None,
) -> RunnerConfig:
    """
    Load configuration from file with CLI overrides.

    Priority (highest to lowest):
    1. CLI arguments
    2. Environment variables
    3. Config file
    4. Defaults
    """
    config_data: dict[str, Any] = {}

    if config_path is None:
        config_path = _find_default_config()
    elif not config_path.exists():
        raise ConfigFileNotFoundError(str(config_path))

    if config_path is not None:
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                if config_path.suffix in {".yaml", ".yml"}:
                    config_data = yaml.safe_load(f) or {}
                else:
                    config_data = json.load(f)
        except (OSError, ValueError, yaml.YAMLError) as exc:
            raise ConfigurationError(
                f"Failed to read config file: {exc}", {"file_path": str(config_path)}
            ) from exc

    if not isinstance(config_data, dict):
        raise ConfigurationError("Config file must contain a mapping", {"file_path": str(config_path)})

    # Check if it's flat or nested format
    is_flat = any(key in config_data for key in ["base_url", "history_path"])

    try:
        if is_flat:
            config = RunnerConfig.from_flat_dict(config_data)
        else:
            config = RunnerConfig.model_validate(config_data)

        if cli_overrides:
            config_dict = config.model_dump()
            _apply_overrides(config_dict, cli_overrides)
            config = RunnerConfig.model_validate(config_dict)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc

    return config


def _apply_overrides(config_dict: dict[str, Any], overrides: dict[str, Any]) -> None:
    """Apply CLI overrides to config dictionary."""
    override_mapping = {
        "base_url": ("stream", "base_url"),
        "history_path": ("history", "path"),
        "verbose": ("verbose", None),
        "log_file": ("log_file", None),
    }

    for key, value in overrides.items():
        if value is None:
            continue

        mapping = override_mapping.get(key)
        if mapping:
            section, field = mapping
            if field is None:
                config_dict[section] = value
            else:
                config_dict[section][field] = value
