"""
SQLite implementation of the corpus store.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AbstractSet, Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Tuple

import aiosqlite
import structlog
from sqlalchemy import create_engine

from rowledger.config.config import SQLiteConfig
from rowledger.dedup.schema_registry import columns_signature
from rowledger.errors import DatasetNameConflictError, DuplicateConflictError, StorageError
from rowledger.protocols import (
    BatchSummary,
    CanonicalRow,
    Dataset,
    DatasetScope,
    GroupStatistics,
    HistoryScope,
    LogBatch,
    LogRecord,
    LogStatistics,
    Row,
    RowValue,
    Scope,
    UploadRecord,
)

from .schema import metadata as db_metadata

logger = structlog.get_logger(__name__)

# The current version of the database schema.
# This should be incremented whenever the schema in schema.py changes.
CURRENT_SCHEMA_VERSION = 1


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _dataset_from_row(row: aiosqlite.Row) -> Dataset:
    return Dataset(
        id=row["id"],
        owner_id=row["owner_id"],
        name=row["name"],
        columns=tuple(json.loads(row["columns_json"])),
        description=row["description"],
        created_at=_parse_timestamp(row["created_at"]),
    )


def _upload_from_row(row: aiosqlite.Row) -> UploadRecord:
    return UploadRecord(
        id=row["id"],
        owner_id=row["owner_id"],
        source_name=row["source_name"],
        columns=tuple(json.loads(row["columns_json"])),
        rows=json.loads(row["data_json"]),
        created_at=_parse_timestamp(row["created_at"]),
    )


def _log_record_from_row(row: aiosqlite.Row) -> LogRecord:
    return LogRecord(
        owner_id=row["owner_id"],
        batch_timestamp=row["batch_timestamp"],
        source_name=row["source_name"],
        payload=json.loads(row["payload_json"]),
        id=row["id"],
        uploaded_at=_parse_timestamp(row["uploaded_at"]),
    )


def _log_filter_clause(owner_id: str, filters: Optional[Mapping[str, RowValue]]) -> Tuple[str, List[Any]]:
    """WHERE clause matching an owner's log records whose payload fields equal ``filters``."""
    clauses = ["owner_id = ?"]
    params: List[Any] = [owner_id]
    for name, value in (filters or {}).items():
        clauses.append("json_extract(payload_json, ?) = ?")
        params.extend([f'$."{name}"', value])
    return " AND ".join(clauses), params


def _json_field(name: str) -> str:
    return f"json_extract(payload_json, '$.{name}')"


class SQLiteCorpusStore:
    """
    Corpus store backed by a single SQLite file.

    Dataset rows are appended under UNIQUE(dataset_id, row_hash, occurrence).
    A plain insert claims occurrence 0 for each new hash, so content stored by
    a concurrent upload in the meantime makes the whole insert fail with
    DuplicateConflictError. Rows the caller confirmed as duplicates take the
    next free occurrence instead.
    """

    def __init__(self, config: SQLiteConfig):
        self.config = config
        self.db_path = Path(config.db_path)
        self._pool: asyncio.Queue[aiosqlite.Connection] = asyncio.Queue(maxsize=config.pool_size)
        self._engine = create_engine(f"sqlite:///{self.db_path}")
        self._initialized = False

    async def initialize(self) -> None:
        """Initializes the database, connection pool, and runs migrations."""
        if self._initialized:
            return
        try:
            for _ in range(self.config.pool_size):
                conn = await self._create_connection()
                await self._pool.put(conn)

            async with self.get_connection() as conn:
                await self._run_migrations(conn)
        except sqlite3.Error as e:
            logger.error("Failed to open corpus database", db_path=str(self.db_path), error=str(e))
            raise StorageError("could not open the corpus database") from e
        self._initialized = True

    async def _create_connection(self) -> aiosqlite.Connection:
        """Creates and configures a new database connection."""
        conn = await aiosqlite.connect(self.db_path)
        if self.config.wal_mode:
            await conn.execute("PRAGMA journal_mode=WAL;")
        await conn.execute("PRAGMA foreign_keys=ON;")
        await conn.execute("PRAGMA busy_timeout = 5000;")
        conn.row_factory = aiosqlite.Row
        return conn

    @asynccontextmanager
    async def get_connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Gets a connection from the pool."""
        conn = await self._pool.get()
        try:
            yield conn
        finally:
            await self._pool.put(conn)

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Write transaction holding the database write lock from the start."""
        async with self.get_connection() as conn:
            await conn.execute("BEGIN IMMEDIATE;")
            try:
                yield conn
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()

    async def _run_migrations(self, conn: aiosqlite.Connection) -> None:
        """Checks schema version and applies migrations if necessary."""
        cursor = await conn.execute("PRAGMA user_version;")
        version_row = await cursor.fetchone()
        current_version = version_row[0] if version_row is not None else 0

        if current_version < CURRENT_SCHEMA_VERSION:
            logger.info(
                f"Database schema is out of date (v{current_version}). Migrating to v{CURRENT_SCHEMA_VERSION}..."
            )
            db_metadata.create_all(self._engine)
            self._engine.dispose()

            await conn.execute(f"PRAGMA user_version = {CURRENT_SCHEMA_VERSION};")
            await conn.commit()
            logger.info("Database migration complete.")

    async def close(self) -> None:
        """Closes all connections in the pool."""
        while not self._pool.empty():
            conn = await self._pool.get()
            await conn.close()
        self._engine.dispose()
        self._initialized = False

    async def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> List[aiosqlite.Row]:
        try:
            async with self.get_connection() as conn:
                cursor = await conn.execute(sql, tuple(params))
                return list(await cursor.fetchall())
        except sqlite3.Error as e:
            logger.error("Corpus read failed", sql=sql, error=str(e), exc_info=True)
            raise StorageError() from e

    # ------------------------------------------------------------------
    # Dataset rows
    # ------------------------------------------------------------------

    async def list_existing_rows(self, scope: DatasetScope) -> List[CanonicalRow]:
        rows = await self._fetchall(
            "SELECT row_hash, data_json FROM data_records WHERE dataset_id = ? ORDER BY id",
            (scope.dataset_id,),
        )
        return [CanonicalRow(scope.scope_id, row["row_hash"], json.loads(row["data_json"])) for row in rows]

    async def list_existing_hashes(self, scope: DatasetScope) -> List[str]:
        rows = await self._fetchall(
            "SELECT row_hash FROM data_records WHERE dataset_id = ? ORDER BY id",
            (scope.dataset_id,),
        )
        return [row["row_hash"] for row in rows]

    async def insert_rows(
        self,
        scope: Scope,
        columns: Sequence[str],
        rows: Sequence[CanonicalRow],
        allow_existing: bool = False,
        confirmed_hashes: AbstractSet[str] = frozenset(),
    ) -> int:
        """
        Append rows to a dataset or to the owner's upload history in one transaction.

        Raises:
            DuplicateConflictError: a non-confirmed row is already stored
            StorageError: any other database failure
        """
        if not rows:
            return 0
        if isinstance(scope, HistoryScope):
            return await self._insert_upload(scope, columns, rows)

        try:
            async with self._transaction() as conn:
                cursor = await conn.execute(
                    "SELECT row_hash, MAX(occurrence) + 1 FROM data_records WHERE dataset_id = ? GROUP BY row_hash",
                    (scope.dataset_id,),
                )
                next_free: Dict[str, int] = {row[0]: row[1] for row in await cursor.fetchall()}

                seen: Counter = Counter()
                values = []
                for row in rows:
                    base = 0
                    if allow_existing or row.content_hash in confirmed_hashes:
                        base = next_free.get(row.content_hash, 0)
                    occurrence = base + seen[row.content_hash]
                    seen[row.content_hash] += 1
                    values.append((scope.dataset_id, row.content_hash, occurrence, json.dumps(row.payload)))

                await conn.executemany(
                    "INSERT INTO data_records (dataset_id, row_hash, occurrence, data_json) VALUES (?, ?, ?, ?)",
                    values,
                )
        except sqlite3.IntegrityError as e:
            logger.warning("Dataset insert violated uniqueness", dataset_id=scope.dataset_id, error=str(e))
            raise DuplicateConflictError() from e
        except sqlite3.Error as e:
            logger.error("Dataset insert failed", dataset_id=scope.dataset_id, error=str(e), exc_info=True)
            raise StorageError() from e

        return len(rows)

    # ------------------------------------------------------------------
    # Legacy upload history
    # ------------------------------------------------------------------

    async def _insert_upload(self, scope: HistoryScope, columns: Sequence[str], rows: Sequence[CanonicalRow]) -> int:
        try:
            async with self._transaction() as conn:
                await conn.execute(
                    "INSERT INTO uploads (owner_id, source_name, columns_json, data_json, row_count, column_count) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        scope.owner_id,
                        scope.source_name,
                        json.dumps(list(columns)),
                        json.dumps([row.payload for row in rows]),
                        len(rows),
                        len(columns),
                    ),
                )
        except sqlite3.Error as e:
            logger.error("Upload insert failed", owner_id=scope.owner_id, error=str(e), exc_info=True)
            raise StorageError() from e
        return len(rows)

    async def list_uploads(self, owner_id: str) -> List[UploadRecord]:
        rows = await self._fetchall(
            "SELECT id, owner_id, source_name, columns_json, data_json, created_at FROM uploads "
            "WHERE owner_id = ? ORDER BY id",
            (owner_id,),
        )
        return [_upload_from_row(row) for row in rows]

    async def get_upload(self, owner_id: str, upload_id: int) -> Optional[UploadRecord]:
        rows = await self._fetchall(
            "SELECT id, owner_id, source_name, columns_json, data_json, created_at FROM uploads "
            "WHERE id = ? AND owner_id = ?",
            (upload_id, owner_id),
        )
        return _upload_from_row(rows[0]) if rows else None

    # ------------------------------------------------------------------
    # Log batches
    # ------------------------------------------------------------------

    async def list_batch_history(self, owner_id: str, before_timestamp: int) -> List[LogRecord]:
        rows = await self._fetchall(
            "SELECT * FROM log_records WHERE owner_id = ? AND batch_timestamp < ? ORDER BY batch_timestamp, id",
            (owner_id, before_timestamp),
        )
        return [_log_record_from_row(row) for row in rows]

    async def batch_exists(self, owner_id: str, batch_timestamp: int, source_name: str) -> bool:
        rows = await self._fetchall(
            "SELECT 1 FROM log_records WHERE owner_id = ? AND batch_timestamp = ? AND source_name = ? LIMIT 1",
            (owner_id, batch_timestamp, source_name),
        )
        return bool(rows)

    async def insert_log_records(self, batch: LogBatch, records: Sequence[Row]) -> int:
        if not records:
            return 0
        values = [
            (batch.owner_id, batch.batch_timestamp, batch.source_name, json.dumps(record)) for record in records
        ]
        try:
            async with self._transaction() as conn:
                await conn.executemany(
                    "INSERT INTO log_records (owner_id, batch_timestamp, source_name, payload_json) "
                    "VALUES (?, ?, ?, ?)",
                    values,
                )
        except sqlite3.Error as e:
            logger.error("Log record insert failed", source_name=batch.source_name, error=str(e), exc_info=True)
            raise StorageError() from e
        return len(values)

    async def count_log_records(self, owner_id: str, filters: Optional[Mapping[str, RowValue]] = None) -> int:
        where, params = _log_filter_clause(owner_id, filters)
        rows = await self._fetchall(f"SELECT COUNT(*) FROM log_records WHERE {where}", params)
        return rows[0][0]

    async def list_log_records(
        self,
        owner_id: str,
        filters: Optional[Mapping[str, RowValue]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[LogRecord]:
        where, params = _log_filter_clause(owner_id, filters)
        sql = f"SELECT * FROM log_records WHERE {where} ORDER BY uploaded_at DESC, id DESC"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        return [_log_record_from_row(row) for row in await self._fetchall(sql, params)]

    async def log_statistics(self, owner_id: str, recent_limit: int = 10) -> LogStatistics:
        """Totals, per-weapon and per-challenge breakdowns, and the most recently imported files."""
        totals = (
            await self._fetchall(
                "SELECT COUNT(*) AS records, "
                f"COALESCE(SUM({_json_field('total_shots')}), 0) AS shots, "
                f"COALESCE(SUM({_json_field('shots_hit')}), 0) AS hits, "
                f"COALESCE(SUM({_json_field('damage')}), 0) AS damage, "
                f"COALESCE(SUM({_json_field('critical_shots')}), 0) AS crits, "
                f"COALESCE(AVG({_json_field('accuracy')}), 0) AS accuracy "
                "FROM log_records WHERE owner_id = ?",
                (owner_id,),
            )
        )[0]
        if not totals["records"]:
            return LogStatistics()

        recent = await self._fetchall(
            "SELECT source_name, batch_timestamp, COUNT(*) AS record_count, MAX(uploaded_at) AS uploaded_at "
            "FROM log_records WHERE owner_id = ? GROUP BY source_name, batch_timestamp "
            "ORDER BY MAX(id) DESC LIMIT ?",
            (owner_id, recent_limit),
        )
        return LogStatistics(
            total_records=totals["records"],
            total_shots=int(totals["shots"]),
            total_hits=int(totals["hits"]),
            total_damage=int(totals["damage"]),
            total_crits=int(totals["crits"]),
            avg_accuracy=float(totals["accuracy"]),
            weapons=await self._group_statistics(owner_id, "weapon"),
            challenges=await self._group_statistics(owner_id, "challenge_name"),
            recent_batches=[
                BatchSummary(
                    source_name=row["source_name"],
                    batch_timestamp=row["batch_timestamp"],
                    record_count=row["record_count"],
                    uploaded_at=_parse_timestamp(row["uploaded_at"]),
                )
                for row in recent
            ],
        )

    async def _group_statistics(self, owner_id: str, field_name: str) -> List[GroupStatistics]:
        rows = await self._fetchall(
            f"SELECT {_json_field(field_name)} AS group_name, COUNT(*) AS record_count, "
            f"COALESCE(AVG({_json_field('accuracy')}), 0) AS accuracy "
            "FROM log_records WHERE owner_id = ? "
            "GROUP BY group_name ORDER BY record_count DESC, group_name",
            (owner_id,),
        )
        return [
            GroupStatistics(
                name="" if row["group_name"] is None else str(row["group_name"]),
                count=row["record_count"],
                avg_accuracy=float(row["accuracy"]),
            )
            for row in rows
        ]

    async def delete_log_record(self, owner_id: str, record_id: int) -> bool:
        try:
            async with self._transaction() as conn:
                cursor = await conn.execute(
                    "DELETE FROM log_records WHERE id = ? AND owner_id = ?",
                    (record_id, owner_id),
                )
                deleted = cursor.rowcount
        except sqlite3.Error as e:
            logger.error("Log record deletion failed", record_id=record_id, error=str(e), exc_info=True)
            raise StorageError() from e
        return deleted > 0

    # ------------------------------------------------------------------
    # Datasets
    # ------------------------------------------------------------------

    async def create_dataset(
        self, owner_id: str, name: str, columns: Sequence[str], description: Optional[str] = None
    ) -> Dataset:
        try:
            async with self._transaction() as conn:
                cursor = await conn.execute(
                    "INSERT INTO datasets (owner_id, name, description, columns_json) VALUES (?, ?, ?, ?)",
                    (owner_id, name, description, json.dumps(list(columns))),
                )
                dataset_id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise DatasetNameConflictError(name) from e
        except sqlite3.Error as e:
            logger.error("Dataset creation failed", owner_id=owner_id, error=str(e), exc_info=True)
            raise StorageError() from e

        dataset = await self.get_dataset(owner_id, dataset_id)
        if dataset is None:
            raise StorageError("dataset disappeared after creation")
        return dataset

    async def get_dataset(self, owner_id: str, dataset_id: int) -> Optional[Dataset]:
        rows = await self._fetchall(
            "SELECT * FROM datasets WHERE id = ? AND owner_id = ?",
            (dataset_id, owner_id),
        )
        return _dataset_from_row(rows[0]) if rows else None

    async def list_datasets(self, owner_id: str) -> List[Dataset]:
        rows = await self._fetchall(
            "SELECT * FROM datasets WHERE owner_id = ? ORDER BY created_at DESC, id DESC",
            (owner_id,),
        )
        return [_dataset_from_row(row) for row in rows]

    async def find_datasets_by_columns(self, owner_id: str, columns: Sequence[str]) -> List[Dataset]:
        wanted = columns_signature(columns)
        return [ds for ds in await self.list_datasets(owner_id) if columns_signature(ds.columns) == wanted]

    async def update_dataset(
        self, owner_id: str, dataset_id: int, name: Optional[str] = None, description: Optional[str] = None
    ) -> Optional[Dataset]:
        try:
            async with self._transaction() as conn:
                cursor = await conn.execute(
                    "UPDATE datasets SET name = COALESCE(?, name), description = COALESCE(?, description), "
                    "updated_at = CURRENT_TIMESTAMP WHERE id = ? AND owner_id = ?",
                    (name, description, dataset_id, owner_id),
                )
                updated = cursor.rowcount
        except sqlite3.IntegrityError as e:
            raise DatasetNameConflictError(name or "") from e
        except sqlite3.Error as e:
            logger.error("Dataset update failed", dataset_id=dataset_id, error=str(e), exc_info=True)
            raise StorageError() from e

        if not updated:
            return None
        return await self.get_dataset(owner_id, dataset_id)

    async def delete_dataset(self, owner_id: str, dataset_id: int) -> bool:
        """Delete a dataset and, through the cascade, all of its rows."""
        try:
            async with self._transaction() as conn:
                cursor = await conn.execute(
                    "DELETE FROM datasets WHERE id = ? AND owner_id = ?",
                    (dataset_id, owner_id),
                )
                deleted = cursor.rowcount
        except sqlite3.Error as e:
            logger.error("Dataset deletion failed", dataset_id=dataset_id, error=str(e), exc_info=True)
            raise StorageError() from e
        return deleted > 0
