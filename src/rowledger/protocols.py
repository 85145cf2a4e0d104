"""
Core contracts and dataclasses for RowLedger.

This module defines the data structures shared by every component of the
reconciliation engine, and the ``CorpusStore`` port the engine reads from
and appends to:

- Rows are plain mappings of column name to a scalar ``RowValue``
- Canonical rows pair a normalized payload with its content hash
- Log batches carry a time-ordered series of records from one source file
- Scopes select which corpus model (dataset or whole upload history) applies
- Ephemeral results (duplicate checks, reconciliation decisions, commit outcomes)
  are returned to the caller and never persisted
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import AbstractSet, Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple, Union

# ============================================================================
# Row Types
# ============================================================================

RowValue = Union[str, int, float, None]
Row = Dict[str, RowValue]


# ============================================================================
# Enums
# ============================================================================


class ReconciliationAction(Enum):
    """What to do with a log batch after comparing it to history."""

    IMPORT_ALL = "import_all"
    DEDUPE_AGAINST_HISTORY = "dedupe_against_history"


class CommitState(Enum):
    """States of one two-phase upload attempt."""

    CHECKING = "checking"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    COMMITTED = "committed"
    DISCARDED = "discarded"
    FAILED = "failed"


# ============================================================================
# Scopes
# ============================================================================


@dataclass(frozen=True)
class DatasetScope:
    """Rows of one schema-fixed dataset, deduplicated through the hash index."""

    owner_id: str
    dataset_id: int

    @property
    def scope_id(self) -> str:
        return f"dataset:{self.dataset_id}"


@dataclass(frozen=True)
class HistoryScope:
    """An owner's whole legacy upload history, compared by full scan."""

    owner_id: str
    source_name: str = "upload"

    @property
    def scope_id(self) -> str:
        return f"history:{self.owner_id}"


Scope = Union[DatasetScope, HistoryScope]


# ============================================================================
# Core Dataclasses
# ============================================================================


@dataclass(frozen=True)
class Dataset:
    """A named, schema-fixed collection of rows owned by one user."""

    id: int
    owner_id: str
    name: str
    columns: Tuple[str, ...]
    description: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "name": self.name,
            "columns": list(self.columns),
            "description": self.description,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class CanonicalRow:
    """A row's normalized payload together with its content hash."""

    scope_id: str
    content_hash: str
    payload: Row


@dataclass
class UploadRecord:
    """One upload in an owner's legacy history."""

    id: int
    owner_id: str
    source_name: str
    columns: Tuple[str, ...]
    rows: List[Row]
    created_at: Optional[datetime] = None

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sourceName": self.source_name,
            "rowCount": len(self.rows),
            "columnCount": len(self.columns),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class LogBatch:
    """All records extracted from one time-stamped log file."""

    owner_id: str
    batch_timestamp: int
    source_name: str
    records: List[Row] = field(default_factory=list)


@dataclass(frozen=True)
class LogRecord:
    """A stored log record tagged with the batch it was imported from."""

    owner_id: str
    batch_timestamp: int
    source_name: str
    payload: Row
    id: Optional[int] = None
    uploaded_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "batchTimestamp": self.batch_timestamp,
            "sourceName": self.source_name,
            "uploadedAt": self.uploaded_at.isoformat() if self.uploaded_at else None,
            **self.payload,
        }


@dataclass
class LogRecordPage:
    """One page of an owner's stored log records, newest first."""

    records: List[LogRecord]
    total: int
    page: int
    limit: Optional[int]

    @property
    def offset(self) -> int:
        return 0 if self.limit is None else (self.page - 1) * self.limit

    @property
    def total_pages(self) -> int:
        if self.limit is None:
            return 1
        return -(-self.total // self.limit)

    @property
    def has_next(self) -> bool:
        return self.limit is not None and self.offset + self.limit < self.total

    @property
    def has_prev(self) -> bool:
        return self.limit is not None and self.page > 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": [record.to_dict() for record in self.records],
            "pagination": {
                "total": self.total,
                "page": self.page,
                "limit": self.total if self.limit is None else self.limit,
                "offset": self.offset,
                "totalPages": self.total_pages,
                "hasNext": self.has_next,
                "hasPrev": self.has_prev,
                "isAll": self.limit is None,
            },
        }


@dataclass(frozen=True)
class GroupStatistics:
    """Record count and mean accuracy for one weapon or challenge."""

    name: str
    count: int
    avg_accuracy: float

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "count": self.count, "avgAccuracy": self.avg_accuracy}


@dataclass(frozen=True)
class BatchSummary:
    """An imported log file and how many of its records were stored."""

    source_name: str
    batch_timestamp: int
    record_count: int
    uploaded_at: Optional[datetime] = None


@dataclass
class LogStatistics:
    """Aggregates over every stored log record of one owner."""

    total_records: int = 0
    total_shots: int = 0
    total_hits: int = 0
    total_damage: int = 0
    total_crits: int = 0
    avg_accuracy: float = 0.0
    weapons: List[GroupStatistics] = field(default_factory=list)
    challenges: List[GroupStatistics] = field(default_factory=list)
    recent_batches: List[BatchSummary] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalRecords": self.total_records,
            "totalShots": self.total_shots,
            "totalHits": self.total_hits,
            "totalDamage": self.total_damage,
            "totalCrits": self.total_crits,
            "avgAccuracy": self.avg_accuracy,
            "weapons": [group.to_dict() for group in self.weapons],
            "challenges": [group.to_dict() for group in self.challenges],
            "recentUploads": [
                {
                    "sourceName": batch.source_name,
                    "batchTimestamp": batch.batch_timestamp,
                    "recordCount": batch.record_count,
                    "uploadedAt": batch.uploaded_at.isoformat() if batch.uploaded_at else None,
                }
                for batch in self.recent_batches
            ],
        }


@dataclass(frozen=True)
class ReconciliationDecision:
    """Outcome of the overlap-threshold heuristic for one log batch."""

    overlap_count: int
    threshold: int
    action: ReconciliationAction


@dataclass
class DuplicateCheckResult:
    """Which rows of an incoming batch already exist in the target corpus."""

    has_duplicates: bool
    duplicate_rows: List[Row]
    duplicate_count: int
    existing_corpus_size: int
    duplicate_indices: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hasDuplicates": self.has_duplicates,
            "duplicateCount": self.duplicate_count,
            "duplicateRows": list(self.duplicate_rows),
            "duplicateIndices": list(self.duplicate_indices),
            "existingDataCount": self.existing_corpus_size,
        }


@dataclass
class CommitOutcome:
    """Result of one call to the commit protocol."""

    state: CommitState
    inserted_count: int = 0
    duplicate_check: Optional[DuplicateCheckResult] = None
    error: Optional[Exception] = None

    @property
    def awaiting_confirmation(self) -> bool:
        return self.state is CommitState.AWAITING_CONFIRMATION

    def raise_for_failure(self) -> None:
        """Re-raise the storage error that failed this commit, if any."""
        if self.state is CommitState.FAILED and self.error is not None:
            raise self.error

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"state": self.state.value, "insertedCount": self.inserted_count}
        if self.duplicate_check is not None:
            data["duplicateCheck"] = self.duplicate_check.to_dict()
        if self.error is not None:
            data["error"] = str(self.error)
        return data


@dataclass
class ReconcileResult:
    """Statistics for one reconciled log batch."""

    source_name: str
    batch_timestamp: int
    imported_count: int = 0
    skipped_as_already_processed: bool = False
    skipped_no_new_records: bool = False
    intra_batch_duplicates_removed: int = 0
    history_duplicates_removed: int = 0
    decision: Optional[ReconciliationDecision] = None

    @property
    def skipped(self) -> bool:
        return self.skipped_as_already_processed or self.skipped_no_new_records

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sourceName": self.source_name,
            "batchTimestamp": self.batch_timestamp,
            "importedCount": self.imported_count,
            "skippedAsAlreadyProcessed": self.skipped_as_already_processed,
            "skippedNoNewRecords": self.skipped_no_new_records,
            "intraBatchDuplicatesRemoved": self.intra_batch_duplicates_removed,
            "historyDuplicatesRemoved": self.history_duplicates_removed,
            "action": self.decision.action.value if self.decision else None,
            "overlapCount": self.decision.overlap_count if self.decision else None,
        }


@dataclass
class LogImportSummary:
    """Totals for a multi-file log import."""

    total_files: int = 0
    processed_files: int = 0
    skipped_files: int = 0
    total_records: int = 0
    duplicates_removed: int = 0
    new_records: int = 0
    results: List[ReconcileResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalFiles": self.total_files,
            "processedFiles": self.processed_files,
            "skippedFiles": self.skipped_files,
            "totalRecords": self.total_records,
            "duplicatesRemoved": self.duplicates_removed,
            "newRecords": self.new_records,
            "errors": list(self.errors),
        }


# ============================================================================
# Corpus Store Port
# ============================================================================


class CorpusStore(Protocol):
    """
    Persistence port consumed by the engine.

    Implementations own every stored row. The engine only reads and appends;
    ``insert_rows`` and ``insert_log_records`` must be all-or-nothing per call.
    """

    async def list_existing_rows(self, scope: DatasetScope) -> List[CanonicalRow]:
        ...

    async def list_existing_hashes(self, scope: DatasetScope) -> List[str]:
        ...

    async def list_uploads(self, owner_id: str) -> List[UploadRecord]:
        ...

    async def list_batch_history(self, owner_id: str, before_timestamp: int) -> List[LogRecord]:
        ...

    async def batch_exists(self, owner_id: str, batch_timestamp: int, source_name: str) -> bool:
        ...

    async def insert_rows(
        self,
        scope: Scope,
        columns: Sequence[str],
        rows: Sequence[CanonicalRow],
        allow_existing: bool = False,
        confirmed_hashes: AbstractSet[str] = frozenset(),
    ) -> int:
        """
        Append rows to a scope.

        For a dataset, a row whose content is already stored is rejected with
        DuplicateConflictError unless ``allow_existing`` is set or its hash is
        in ``confirmed_hashes``.
        """
        ...

    async def insert_log_records(self, batch: LogBatch, records: Sequence[Row]) -> int:
        ...

    async def get_upload(self, owner_id: str, upload_id: int) -> Optional[UploadRecord]:
        ...

    async def count_log_records(self, owner_id: str, filters: Optional[Mapping[str, RowValue]] = None) -> int:
        ...

    async def list_log_records(
        self,
        owner_id: str,
        filters: Optional[Mapping[str, RowValue]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[LogRecord]:
        """Stored log records, newest first; ``filters`` match payload fields exactly."""
        ...

    async def log_statistics(self, owner_id: str, recent_limit: int = 10) -> LogStatistics:
        ...

    async def delete_log_record(self, owner_id: str, record_id: int) -> bool:
        ...

    async def create_dataset(
        self, owner_id: str, name: str, columns: Sequence[str], description: Optional[str] = None
    ) -> Dataset:
        ...

    async def get_dataset(self, owner_id: str, dataset_id: int) -> Optional[Dataset]:
        ...

    async def list_datasets(self, owner_id: str) -> List[Dataset]:
        ...

    async def find_datasets_by_columns(self, owner_id: str, columns: Sequence[str]) -> List[Dataset]:
        ...

    async def update_dataset(
        self, owner_id: str, dataset_id: int, name: Optional[str] = None, description: Optional[str] = None
    ) -> Optional[Dataset]:
        ...

    async def delete_dataset(self, owner_id: str, dataset_id: int) -> bool:
        ...
