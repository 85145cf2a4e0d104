"""
Public facade of the reconciliation engine.

Every method is one independent request: the owner and scope are bound to
the structlog context for its duration, and nothing is retained between
calls apart from what the corpus store persists.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence

import structlog
from structlog.contextvars import bound_contextvars

from rowledger.config import Config
from rowledger.dedup import (
    CommitCoordinator,
    FullScanDetector,
    HashIndexedDetector,
    IncrementalReconciler,
    RowCanonicalizer,
    SchemaRegistry,
)
from rowledger.errors import (
    DatasetNotFoundError,
    LogRecordNotFoundError,
    RowLedgerError,
    UploadNotFoundError,
    ValidationError,
)
from rowledger.protocols import (
    CanonicalRow,
    CommitOutcome,
    CorpusStore,
    Dataset,
    DatasetScope,
    DuplicateCheckResult,
    LogBatch,
    LogImportSummary,
    LogRecordPage,
    LogStatistics,
    ReconcileResult,
    Row,
    RowValue,
    Scope,
    UploadRecord,
)

logger = structlog.get_logger(__name__)


class ImportEngine:
    """Deduplicates uploads and reconciles log batches against an injected corpus store."""

    def __init__(self, store: CorpusStore, config: Optional[Config] = None) -> None:
        self.config = config or Config()
        self.store = store

        dedup = self.config.dedup
        self.canonicalizer = RowCanonicalizer(dedup.hash_algorithm)
        self.registry = SchemaRegistry(store, self.config.limits)
        self.hash_detector = HashIndexedDetector(store, self.canonicalizer)
        self.full_scan_detector = FullScanDetector(store, self.canonicalizer, dedup.full_scan_timeout_seconds)
        self.coordinator = CommitCoordinator(
            store, self.registry, self.canonicalizer, self.hash_detector, self.full_scan_detector
        )
        self.reconciler = IncrementalReconciler(
            store,
            self.canonicalizer,
            threshold=dedup.duplicate_overlap_threshold,
            key_fields=self.config.log_batches.key_fields,
        )

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    async def check_duplicates(self, scope: Scope, columns: Sequence[str], rows: Sequence[Row]) -> DuplicateCheckResult:
        """Report which incoming rows already exist, without writing anything."""
        with bound_contextvars(owner_id=scope.owner_id, scope=scope.scope_id):
            return await self.coordinator.check(scope, columns, rows)

    async def commit(
        self,
        scope: Scope,
        columns: Sequence[str],
        rows: Sequence[Row],
        force_upload: bool = False,
        selected_subset: Optional[Sequence[Row]] = None,
    ) -> CommitOutcome:
        """Run the check/confirm/persist protocol for one submission."""
        with bound_contextvars(owner_id=scope.owner_id, scope=scope.scope_id):
            return await self.coordinator.commit(
                scope, columns, rows, force_upload=force_upload, selected_subset=selected_subset
            )

    # ------------------------------------------------------------------
    # Log batches
    # ------------------------------------------------------------------

    async def reconcile_log_batch(self, owner_id: str, batch: LogBatch) -> ReconcileResult:
        with bound_contextvars(owner_id=owner_id, scope=f"logs:{owner_id}"):
            return await self.reconciler.reconcile(owner_id, batch)

    async def reconcile_log_batches(self, owner_id: str, batches: Iterable[LogBatch]) -> LogImportSummary:
        """
        Reconcile several log batches, oldest first.

        A batch that fails is recorded in ``errors`` and the remaining batches
        are still processed.
        """
        ordered = sorted(batches, key=lambda b: (b.batch_timestamp, b.source_name))
        summary = LogImportSummary(total_files=len(ordered))

        for batch in ordered:
            try:
                result = await self.reconcile_log_batch(owner_id, batch)
            except RowLedgerError as e:
                logger.error("Log batch failed", owner_id=owner_id, source_name=batch.source_name, error=str(e))
                summary.errors.append(f"{batch.source_name}: {e}")
                continue

            summary.results.append(result)
            if not result.skipped_as_already_processed:
                summary.total_records += len(batch.records)
            summary.duplicates_removed += result.intra_batch_duplicates_removed + result.history_duplicates_removed
            if result.skipped:
                summary.skipped_files += 1
            else:
                summary.processed_files += 1
                summary.new_records += result.imported_count

        logger.info(
            "Log import finished",
            owner_id=owner_id,
            files=summary.total_files,
            processed=summary.processed_files,
            skipped=summary.skipped_files,
            new_records=summary.new_records,
            errors=len(summary.errors),
        )
        return summary

    # ------------------------------------------------------------------
    # Datasets
    # ------------------------------------------------------------------

    async def create_dataset(
        self, owner_id: str, name: str, columns: Sequence[str], description: Optional[str] = None
    ) -> Dataset:
        """
        Register a new dataset for ``owner_id``.

        Raises:
            ValidationError: blank name or invalid columns
            DatasetNameConflictError: the owner already has a dataset with this name
        """
        with bound_contextvars(owner_id=owner_id):
            name = name.strip() if name else ""
            if not name:
                raise ValidationError(["dataset name must not be blank"])
            columns = [col.strip() for col in columns]
            self.registry.validate_columns(columns)
            dataset = await self.store.create_dataset(owner_id, name, columns, description)
            logger.info("Dataset created", dataset_id=dataset.id, name=name, columns=len(columns))
            return dataset

    async def list_datasets(self, owner_id: str) -> List[Dataset]:
        return await self.store.list_datasets(owner_id)

    async def get_dataset(self, owner_id: str, dataset_id: int) -> Dataset:
        dataset = await self.store.get_dataset(owner_id, dataset_id)
        if dataset is None:
            raise DatasetNotFoundError(dataset_id)
        return dataset

    async def find_datasets_matching_columns(self, owner_id: str, columns: Sequence[str]) -> List[Dataset]:
        """Datasets whose registered columns equal ``columns`` in any order."""
        return await self.registry.find_datasets_matching_columns(owner_id, columns)

    async def update_dataset(
        self, owner_id: str, dataset_id: int, name: Optional[str] = None, description: Optional[str] = None
    ) -> Dataset:
        if name is not None:
            name = name.strip()
            if not name:
                raise ValidationError(["dataset name must not be blank"])
        with bound_contextvars(owner_id=owner_id, scope=f"dataset:{dataset_id}"):
            dataset = await self.store.update_dataset(owner_id, dataset_id, name=name, description=description)
            if dataset is None:
                raise DatasetNotFoundError(dataset_id)
            logger.info("Dataset updated", dataset_id=dataset_id)
            return dataset

    async def delete_dataset(self, owner_id: str, dataset_id: int) -> None:
        """Delete a dataset together with its rows."""
        with bound_contextvars(owner_id=owner_id, scope=f"dataset:{dataset_id}"):
            if not await self.store.delete_dataset(owner_id, dataset_id):
                raise DatasetNotFoundError(dataset_id)
            logger.info("Dataset deleted", dataset_id=dataset_id)

    async def list_dataset_rows(self, owner_id: str, dataset_id: int) -> List[CanonicalRow]:
        dataset = await self.get_dataset(owner_id, dataset_id)
        return await self.store.list_existing_rows(DatasetScope(owner_id, dataset.id))

    # ------------------------------------------------------------------
    # Stored log records and uploads
    # ------------------------------------------------------------------

    async def list_log_records(
        self,
        owner_id: str,
        page: int = 1,
        limit: Optional[int] = None,
        fetch_all: bool = False,
        weapon: Optional[str] = None,
        challenge_name: Optional[str] = None,
    ) -> LogRecordPage:
        """
        One page of the owner's stored log records, newest first.

        ``limit`` defaults to the configured page size and is capped at the
        configured maximum; ``fetch_all`` returns every matching record.

        Raises:
            ValidationError: page or limit below 1
        """
        violations: List[str] = []
        if page < 1:
            violations.append("page must be at least 1")
        if limit is not None and limit < 1:
            violations.append("limit must be at least 1")
        if violations:
            raise ValidationError(violations)

        filters: Dict[str, RowValue] = {}
        if weapon:
            filters["weapon"] = weapon
        if challenge_name:
            filters["challenge_name"] = challenge_name

        settings = self.config.log_batches
        page_size = None if fetch_all else min(limit or settings.default_page_size, settings.max_page_size)
        if page_size is None:
            page = 1

        total = await self.store.count_log_records(owner_id, filters)
        offset = 0 if page_size is None else (page - 1) * page_size
        records = await self.store.list_log_records(owner_id, filters, limit=page_size, offset=offset)
        return LogRecordPage(records=records, total=total, page=page, limit=page_size)

    async def log_statistics(self, owner_id: str) -> LogStatistics:
        return await self.store.log_statistics(owner_id, self.config.log_batches.recent_batches)

    async def delete_log_record(self, owner_id: str, record_id: int) -> None:
        """
        Delete one stored log record.

        Later batches are reconciled against the remaining history, so a deleted
        record is no longer treated as already seen.
        """
        with bound_contextvars(owner_id=owner_id, scope=f"logs:{owner_id}"):
            if not await self.store.delete_log_record(owner_id, record_id):
                raise LogRecordNotFoundError(record_id)
            logger.info("Log record deleted", record_id=record_id)

    async def list_uploads(self, owner_id: str) -> List[UploadRecord]:
        """The owner's history uploads, newest first."""
        uploads = await self.store.list_uploads(owner_id)
        return list(reversed(uploads))

    async def get_upload(self, owner_id: str, upload_id: int) -> UploadRecord:
        upload = await self.store.get_upload(owner_id, upload_id)
        if upload is None:
            raise UploadNotFoundError(upload_id)
        return upload
