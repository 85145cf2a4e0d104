"""
Test configuration for RowLedger.

Provides isolated configuration, a temporary SQLite corpus and an engine
bound to it, plus small row and log fixtures shared across suites.
"""

from pathlib import Path
from typing import AsyncGenerator

import pytest
import pytest_asyncio

from rowledger.config import Config, SQLiteConfig
from rowledger.engine import ImportEngine
from rowledger.storage import SQLiteCorpusStore

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def test_config(tmp_path: Path) -> Config:
    """Provide a configuration writing only under tmp_path."""
    config = Config()
    config.storage.sqlite = SQLiteConfig(db_path=tmp_path / "corpus.db", pool_size=2)
    config.monitoring.log_file = str(tmp_path / "rowledger.log")
    return config


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    """A YAML configuration file pointing at a temporary database."""
    path = tmp_path / "rowledger.yaml"
    path.write_text(
        "storage:\n"
        "  sqlite:\n"
        f"    db_path: {tmp_path / 'cli.db'}\n"
        "    pool_size: 1\n"
        "monitoring:\n"
        f"  log_file: {tmp_path / 'cli.log'}\n",
        encoding="utf-8",
    )
    return path


# ============================================================================
# Storage and Engine Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def store(test_config: Config) -> AsyncGenerator[SQLiteCorpusStore, None]:
    """An initialized SQLite corpus store, closed after the test."""
    corpus = SQLiteCorpusStore(test_config.storage.sqlite)
    await corpus.initialize()
    yield corpus
    await corpus.close()


@pytest_asyncio.fixture
async def engine(store: SQLiteCorpusStore, test_config: Config) -> ImportEngine:
    return ImportEngine(store, test_config)


# ============================================================================
# Data Fixtures
# ============================================================================


@pytest.fixture
def people_columns():
    return ["name", "age"]


@pytest.fixture
def people_rows():
    return [{"name": "John", "age": "30"}, {"name": "Jane", "age": "25"}]


def make_log_record(challenge: str, shots_hit: int, total_shots: int = 100, weapon: str = "Pistol"):
    """A parsed AimTrainer record with deterministic derived fields."""
    return {
        "challenge_name": challenge,
        "shots_hit": shots_hit,
        "kills": shots_hit // 10,
        "weapon": weapon,
        "accuracy": round(shots_hit / total_shots * 100, 1),
        "damage": shots_hit * 10,
        "critical_shots": shots_hit // 4,
        "total_shots": total_shots,
        "round_time": 60,
    }


@pytest.fixture
def log_record():
    return make_log_record
