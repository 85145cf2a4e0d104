"""SQLite-backed corpus storage for RowLedger."""

from __future__ import annotations

from .schema import metadata as db_metadata
from .sqlite_manager import SQLiteCorpusStore

__all__ = ["SQLiteCorpusStore", "db_metadata"]
