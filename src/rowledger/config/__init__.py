"""Configuration models and loaders."""

from __future__ import annotations

from .config import (
    Config,
    DedupConfig,
    LimitsConfig,
    LogBatchConfig,
    MonitoringConfig,
    SQLiteConfig,
    StorageConfig,
    find_config_file,
)

__all__ = [
    "Config",
    "DedupConfig",
    "LimitsConfig",
    "LogBatchConfig",
    "MonitoringConfig",
    "SQLiteConfig",
    "StorageConfig",
    "find_config_file",
]
