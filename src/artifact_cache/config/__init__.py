"""Configuration models and loaders."""

from artifact_cache.config.loader import YamlConfigLoader
from artifact_cache.config.models import (
    AppConfig,
    CacheSettings,
    ConfigLoadRequest,
    FileLoggingSettings,
    FileRotationSettings,
    LoggingSettings,
)

__all__ = [
    "AppConfig",
    "CacheSettings",
    "ConfigLoadRequest",
    "FileLoggingSettings",
    "FileRotationSettings",
    "LoggingSettings",
    "YamlConfigLoader",
]
