"""Configuration loading for Feedsync."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any, Literal

import yaml
from apscheduler.triggers.cron import CronTrigger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from feedsync.handles import is_valid_handle, normalize_handles

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")
BEARER_TOKEN_ENV = "X_BEARER_TOKEN"


def _validate_cron(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("Schedule must be a non-empty cron expression.")
    expression = " ".join(value.split())
    try:
        CronTrigger.from_crontab(expression)
    except ValueError as exc:
        raise ValueError(f"Invalid cron expression {value!r}: {exc}") from exc
    return expression


class LoggingSettings(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(extra="forbid")

    path: Path | None = None
    level: str = Field(default="info")

    @field_validator("level", mode="before")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        if not isinstance(value, str):
            raise ValueError("Logging level must be a string.")
        normalized = value.strip().lower()
        if normalized not in {"debug", "info", "warn", "warning", "error", "critical"}:
            raise ValueError(f"Unsupported logging level: {value!r}")
        return normalized


class StorageSettings(BaseModel):
    """Storage configuration."""

    model_config = ConfigDict(extra="forbid")

    path: Path | None = None


class FetchSettings(BaseModel):
    """Which accounts to follow and how hard to pull."""

    model_config = ConfigDict(extra="forbid")

    mode: Literal["static", "dynamic"] = "static"
    static_usernames: list[str] = Field(default_factory=list)
    schedule: str = "*/5 * * * *"
    max_per_user: int = Field(default=20, ge=1, le=100)
    concurrency: int = Field(default=3, ge=1, le=10)
    request_timeout_seconds: float = Field(default=30.0, gt=0.0)

    @field_validator("static_usernames", mode="before")
    @classmethod
    def _normalize_usernames(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("static_usernames must be a list of strings.")
        cleaned = normalize_handles(str(item) for item in value)
        invalid = [name for name in cleaned if not is_valid_handle(name)]
        if invalid:
            raise ValueError(f"Invalid usernames: {', '.join(invalid)}")
        return cleaned

    @field_validator("schedule", mode="before")
    @classmethod
    def _check_schedule(cls, value: Any) -> str:
        return _validate_cron(value)


class UpstreamSettings(BaseModel):
    """Upstream social API client options."""

    model_config = ConfigDict(extra="forbid")

    base_url: str = "https://api.x.com/2"
    bearer_token: str | None = None
    max_retries: int = Field(default=3, ge=0)
    backoff_min_seconds: float = Field(default=1.0, ge=0.0)
    backoff_max_seconds: float = Field(default=30.0, ge=0.0)

    def resolved_token(self) -> str | None:
        return self.bearer_token or os.environ.get(BEARER_TOKEN_ENV) or None


class MediaCacheSettings(BaseModel):
    """Local media mirror options."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    root_dir: Path = Path("media-cache")
    cache_for_priority_only: bool = True
    priority_usernames: list[str] = Field(default_factory=list)
    include_video_files: bool = False
    request_timeout_seconds: float = Field(default=12.0, ge=1.0, le=60.0)
    max_disk_usage_mb: int = Field(default=2048, ge=100, le=1_048_576)
    ttl_days: int = Field(default=30, ge=0, le=3650)
    cleanup_schedule: str = "0 * * * *"
    backfill_page_size: int = Field(default=100, ge=1, le=1000)

    @field_validator("priority_usernames", mode="before")
    @classmethod
    def _normalize_priority(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("priority_usernames must be a list of strings.")
        return normalize_handles(str(item) for item in value)

    @field_validator("cleanup_schedule", mode="before")
    @classmethod
    def _check_schedule(cls, value: Any) -> str:
        return _validate_cron(value)

    @property
    def max_disk_bytes(self) -> int:
        return max(0, int(self.max_disk_usage_mb * 1024 * 1024))


class TaskSettings(BaseModel):
    """Lease timings shared by every job."""

    model_config = ConfigDict(extra="forbid")

    stale_after_seconds: float = Field(default=600.0, gt=0.0)
    retry_delay_seconds: float = Field(default=60.0, ge=0.0)


class ConfigModel(BaseModel):
    """Root configuration model."""

    model_config = ConfigDict(extra="forbid")

    version: int = 1
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    fetch: FetchSettings = Field(default_factory=FetchSettings)
    upstream: UpstreamSettings = Field(default_factory=UpstreamSettings)
    media_cache: MediaCacheSettings = Field(default_factory=MediaCacheSettings)
    tasks: TaskSettings = Field(default_factory=TaskSettings)


@dataclass(slots=True)
class Config:
    """Validated configuration with convenience helpers."""

    model: ConfigModel
    raw: Mapping[str, Any] = field(repr=False)
    loaded_from: tuple[str, ...] = field(default_factory=tuple, repr=False)

    @property
    def logging(self) -> LoggingSettings:
        return self.model.logging

    @property
    def storage(self) -> StorageSettings:
        return self.model.storage

    @property
    def fetch(self) -> FetchSettings:
        return self.model.fetch

    @property
    def upstream(self) -> UpstreamSettings:
        return self.model.upstream

    @property
    def media_cache(self) -> MediaCacheSettings:
        return self.model.media_cache

    @property
    def tasks(self) -> TaskSettings:
        return self.model.tasks

    def model_dump(self) -> Mapping[str, Any]:
        """Expose the parsed configuration as a mapping."""

        return self.model.model_dump()


def build_config(payload: Mapping[str, Any] | None = None) -> Config:
    """Validate an in-memory mapping; used by tests and embedding callers."""

    merged = dict(payload or {})
    try:
        model = ConfigModel.model_validate(merged)
    except ValidationError as exc:
        raise ValueError(f"Invalid configuration: {exc}") from exc
    return Config(model=model, raw=merged)


def load_config(path: Path | None = None) -> Config:
    """Load configuration from defaults/local overrides, or from an explicit config document."""

    merged: dict[str, Any] = {}
    loaded_from: list[str] = []

    if path is not None:
        override_path = _resolve_path(path)
        if not override_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")
        merged = _merge_dicts(merged, _read_yaml(override_path))
        loaded_from.append(str(override_path))
    else:
        default_candidate = _resolve_path(DEFAULT_CONFIG_PATH)
        if default_candidate.exists():
            merged = _merge_dicts(merged, _read_yaml(default_candidate))
            loaded_from.append(str(default_candidate))
        else:
            packaged_payload = _read_packaged_yaml("feedsync.config", "default.yaml")
            if packaged_payload is not None:
                merged = _merge_dicts(merged, packaged_payload)
                loaded_from.append("feedsync.config:default.yaml")

        local_candidate = _resolve_path(LOCAL_CONFIG_PATH)
        if local_candidate.exists():
            merged = _merge_dicts(merged, _read_yaml(local_candidate))
            loaded_from.append(str(local_candidate))

    if not merged:
        raise FileNotFoundError("No configuration data could be loaded.")

    config = build_config(merged)
    config.loaded_from = tuple(loaded_from)
    return config


def _resolve_path(path: Path) -> Path:
    """Resolve configuration paths relative to the current working directory."""

    return path if path.is_absolute() else Path.cwd() / path


def _read_yaml(path: Path) -> dict[str, Any]:
    """Read a YAML file into a dictionary."""

    content = path.read_text(encoding="utf-8")
    data = yaml.safe_load(content) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Configuration file {path} must define a mapping at the top level.")
    return data


def _read_packaged_yaml(package: str, name: str) -> dict[str, Any] | None:
    """Read YAML embedded in a Python package via importlib.resources."""

    try:
        content = resources.files(package).joinpath(name).read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    data = yaml.safe_load(content) or {}
    if not isinstance(data, dict):
        raise ValueError(
            f"Packaged configuration {package}:{name} must define a mapping at the top level."
        )
    return data


def _merge_dicts(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """Deep-merge two dictionaries, with override values taking precedence."""

    result: dict[str, Any] = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _merge_dicts(result[key], value)
        else:
            result[key] = value
    return result
