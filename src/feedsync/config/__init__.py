"""Configuration utilities for Feedsync."""

from .loader import (
    Config,
    ConfigModel,
    FetchSettings,
    LoggingSettings,
    MediaCacheSettings,
    StorageSettings,
    TaskSettings,
    UpstreamSettings,
    build_config,
    load_config,
)

__all__ = [
    "Config",
    "ConfigModel",
    "FetchSettings",
    "LoggingSettings",
    "MediaCacheSettings",
    "StorageSettings",
    "TaskSettings",
    "UpstreamSettings",
    "build_config",
    "load_config",
]
