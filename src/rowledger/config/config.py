"""
Configuration management for RowLedger using Pydantic.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Any, List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Setup Logging ---
log = logging.getLogger(__name__)

# --- Nested Configuration Models ---


class LimitsConfig(BaseModel):
    """Batch limits enforced before any hashing or corpus access."""

    max_columns: int = Field(default=100, ge=1, description="Maximum number of columns per batch.")
    max_rows: int = Field(default=5000, ge=1, description="Maximum number of rows per batch.")
    max_file_size_bytes: int = Field(
        default=10 * 1024 * 1024, ge=1, description="Maximum size of an uploaded file in bytes."
    )


class DedupConfig(BaseModel):
    """Duplicate detection and reconciliation settings."""

    duplicate_overlap_threshold: int = Field(
        default=2,
        ge=1,
        description="Historical overlaps at or above which a log batch is deduplicated against history.",
    )
    hash_algorithm: str = Field(default="sha256", description="hashlib algorithm used for row content hashes.")
    full_scan_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Upper bound on corpus reads during a full-scan comparison."
    )

    @field_validator("hash_algorithm")
    @classmethod
    def validate_hash_algorithm(cls, v: str) -> str:
        name = v.lower()
        # shake_* digests need an explicit length and are not usable as row hashes
        if name not in hashlib.algorithms_guaranteed or name.startswith("shake_"):
            raise ValueError(f"unsupported hash algorithm: {v}")
        return name


class LogBatchConfig(BaseModel):
    """Settings for time-ordered log batch ingestion."""

    filename_pattern: str = Field(
        default=r"aimtrainer_results_(\d+)",
        description="Regex whose first group is the batch timestamp embedded in a log file name.",
    )
    key_fields: Optional[List[str]] = Field(
        default=None,
        description="Fields forming a record's composite key. None uses every field except the timestamp.",
    )
    default_page_size: int = Field(default=100, ge=1, description="Records per page when listing log records.")
    max_page_size: int = Field(default=10000, ge=1, description="Upper bound on a requested page size.")
    recent_batches: int = Field(default=10, ge=1, description="Imported files listed in log statistics.")

    @field_validator("key_fields")
    @classmethod
    def validate_key_fields(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is not None and not v:
            raise ValueError("key_fields must contain at least one field or be null")
        return v


class SQLiteConfig(BaseModel):
    """Configuration for the SQLite corpus store."""

    db_path: Path = Field(
        default_factory=lambda: Path.home() / ".rowledger" / "corpus.db",
        description="SQLite database file path",
    )
    pool_size: int = Field(default=5, ge=1, description="Size of the connection pool.")
    wal_mode: bool = Field(default=True, description="Enable Write-Ahead Logging for higher concurrency.")

    @field_validator("db_path", mode="before")
    @classmethod
    def ensure_db_directory(cls, v: Any) -> Path:
        """Ensure database directory exists."""
        path = Path(v) if not isinstance(v, Path) else v
        path.parent.mkdir(parents=True, exist_ok=True)
        return path


class StorageConfig(BaseModel):
    """Configuration for the corpus store."""

    sqlite: SQLiteConfig = Field(default_factory=SQLiteConfig)


class MonitoringConfig(BaseModel):
    """Configuration for logging."""

    log_level: str = Field(default="INFO", description="Logging level (e.g., DEBUG, INFO, WARNING).")
    log_file: str | None = Field(default=None, description="Path to log file. If None, logs to console.")
    json_logs: bool = Field(default=False, description="Render console logs as JSON.")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"invalid log level: {v}")
        return level

    @field_validator("log_file", mode="before")
    @classmethod
    def create_parent_dir(cls, v: str | Path | None) -> str | None:
        if v is None:
            return None
        path = Path(v)
        path.parent.mkdir(parents=True, exist_ok=True)
        return str(path)


# --- Main Configuration Class ---


class Config(BaseSettings):
    project_name: str = "RowLedger"
    version: str = "0.1.0"
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    log_batches: LogBatchConfig = Field(default_factory=LogBatchConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = SettingsConfigDict(env_prefix="ROWLEDGER_", env_nested_delimiter="__", case_sensitive=False)

    @classmethod
    def from_yaml(cls, path: Path) -> Config:
        log.debug("Loading configuration from YAML file: %s", path)
        if not path.is_file():
            raise FileNotFoundError(f"Configuration file not found or is not a file: {path}")
        with open(path, "r", encoding="utf-8") as f:
            yaml_data = yaml.safe_load(f)
        if not yaml_data:
            log.warning("Configuration file is empty: %s. Using default settings.", path)
            return cls.model_validate({})
        return cls.model_validate(yaml_data)


def find_config_file() -> Path | None:
    current_dir = Path.cwd()
    paths_to_check = [
        current_dir / "rowledger.yaml",
        current_dir / "rowledger.yml",
        current_dir / "config.yaml",
        current_dir / "config.yml",
    ]
    for path in paths_to_check:
        if path.exists():
            return path
    return None
