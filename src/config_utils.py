"""Helpers for loading and validating the indexer settings."""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

CONFIG_PATH = Path("config.yaml")
ENV_FILE = Path(".env")

# setting name -> environment variable
ENV_VARIABLES: dict[str, str] = {
    "data_path": "DATA_PATH",
    "channel_url": "CHANNEL_URL",
    "whisper_model_path": "WHISPER_MODEL_PATH",
    "download_workers": "MAX_DOWNLOAD_PROCESS_WORKERS",
    "transcribe_workers": "MAX_TRANSCRIBE_WORKERS",
    "metadata_workers": "MAX_VIDEO_DETAIL_FETCH_WORKERS",
    "meilisearch_url": "MEILISEARCH_URL",
    "meilisearch_api_key": "MEILISEARCH_API_KEY",
    "index_name": "MEILISEARCH_INDEX",
    "index_batch_size": "INDEX_BATCH_SIZE",
    "index_flush_interval": "INDEX_FLUSH_INTERVAL",
    "tool_timeout": "TOOL_TIMEOUT",
}


class ConfigError(RuntimeError):
    """Raised when required settings are missing or invalid."""


class Settings(BaseModel):
    """Validated runtime settings."""

    data_path: Path
    channel_url: str
    whisper_model_path: Path
    # n+1 download/transform workers per transcriber keeps the bottleneck fed
    download_workers: int = Field(default=3, ge=1)
    transcribe_workers: int = Field(default=2, ge=1)
    metadata_workers: int = Field(default=8, ge=1)
    meilisearch_url: str = "http://localhost:7700"
    meilisearch_api_key: str | None = None
    index_name: str = "videos"
    index_batch_size: int = Field(default=100, ge=1)
    index_flush_interval: float = Field(default=5.0, gt=0)
    tool_timeout: float | None = Field(default=3600.0, ge=0)

    @field_validator("channel_url", "index_name")
    @classmethod
    def _require_text(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be empty")
        return value.strip()

    @field_validator("tool_timeout")
    @classmethod
    def _zero_disables_timeout(cls, value: float | None) -> float | None:
        if not value:
            return None
        return value


def load_config(path: Path | str = CONFIG_PATH) -> dict[str, Any]:
    """Load the YAML configuration, returning an empty mapping if absent."""
    config_path = Path(path)
    if not config_path.exists():
        return {}
    with config_path.open("r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Unable to parse {config_path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ConfigError(f"{config_path} must contain a mapping of settings.")
    return dict(data)


def _env_overrides(environ: Mapping[str, str]) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for key, variable in ENV_VARIABLES.items():
        value = environ.get(variable)
        if value is not None and value != "":
            overrides[key] = value
    return overrides


def _format_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        key = ".".join(str(part) for part in error["loc"])
        variable = ENV_VARIABLES.get(key)
        label = f"{key} ({variable})" if variable else key
        problems.append(f"{label}: {error['msg']}")
    return "Invalid configuration: " + "; ".join(problems)


def load_settings(
    config_path: Path | str | None = None,
    *,
    environ: Mapping[str, str] | None = None,
    env_file: Path | str | None = ENV_FILE,
) -> Settings:
    """Build settings from defaults, the YAML file and the environment."""
    if environ is None:
        if env_file is not None:
            load_dotenv(env_file)
        environ = os.environ

    values: dict[str, Any] = {}
    values.update(load_config(config_path or CONFIG_PATH))
    values.update(_env_overrides(environ))

    try:
        return Settings.model_validate(values)
    except ValidationError as exc:
        raise ConfigError(_format_validation_error(exc)) from exc
