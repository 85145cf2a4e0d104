"""
Two-phase commit protocol: detect duplicates, let the caller choose, persist.

Per upload attempt:

    CHECKING -> COMMITTED                 (no duplicates, persisted right away)
    CHECKING -> AWAITING_CONFIRMATION     (duplicates returned, nothing written)
    AWAITING_CONFIRMATION -> COMMITTED    (force_upload, or a selected subset)
    AWAITING_CONFIRMATION -> DISCARDED    (nothing left to write)
    any -> FAILED                         (storage error; never retried here)

No state is kept between the phases. A confirming call resubmits the batch,
and the duplicate set is recomputed against the corpus as it is then.
"""

from __future__ import annotations

from collections import Counter
from typing import AbstractSet, List, Optional, Sequence, Tuple

import structlog

from rowledger.errors import DatasetNotFoundError, DuplicateConflictError, StorageError, ValidationError
from rowledger.observability import increment
from rowledger.protocols import (
    CanonicalRow,
    CommitOutcome,
    CommitState,
    CorpusStore,
    DatasetScope,
    DuplicateCheckResult,
    Row,
    Scope,
)

from .canonical import RowCanonicalizer
from .detector import FullScanDetector, HashIndexedDetector, detector_for
from .schema_registry import SchemaRegistry

logger = structlog.get_logger(__name__)


def _scope_label(scope: Scope) -> str:
    return "dataset" if isinstance(scope, DatasetScope) else "history"


class CommitCoordinator:
    """Orchestrates validation, detection and persistence for one scope at a time."""

    def __init__(
        self,
        store: CorpusStore,
        registry: SchemaRegistry,
        canonicalizer: RowCanonicalizer,
        hash_detector: HashIndexedDetector,
        full_scan_detector: FullScanDetector,
    ) -> None:
        self.store = store
        self.registry = registry
        self.canonicalizer = canonicalizer
        self.hash_detector = hash_detector
        self.full_scan_detector = full_scan_detector

    async def _validate(self, scope: Scope, columns: Sequence[str], rows: Sequence[Row]) -> None:
        """Limits first, then the dataset's registered schema."""
        self.registry.validate_batch(columns, rows)
        if isinstance(scope, DatasetScope):
            dataset = await self.store.get_dataset(scope.owner_id, scope.dataset_id)
            if dataset is None:
                raise DatasetNotFoundError(scope.dataset_id)
            self.registry.validate_schema(dataset, columns)

    async def _detect(self, scope: Scope, columns: Sequence[str], rows: Sequence[Row]) -> DuplicateCheckResult:
        detector = detector_for(scope, self.hash_detector, self.full_scan_detector)
        return await detector.detect(scope, columns, rows)

    async def check(self, scope: Scope, columns: Sequence[str], rows: Sequence[Row]) -> DuplicateCheckResult:
        """
        Phase 1 without side effects.

        Raises:
            ValidationError, SchemaMismatchError, DatasetNotFoundError, StorageError
        """
        await self._validate(scope, columns, rows)
        return await self._detect(scope, columns, rows)

    async def commit(
        self,
        scope: Scope,
        columns: Sequence[str],
        rows: Sequence[Row],
        force_upload: bool = False,
        selected_subset: Optional[Sequence[Row]] = None,
    ) -> CommitOutcome:
        """
        Run the commit protocol for one submission.

        Args:
            scope: Target dataset or legacy history
            columns: Column names of the submission
            rows: Every row of the submission
            force_upload: Commit every row, duplicates included
            selected_subset: Flagged duplicates the caller chose to keep; the
                non-duplicate rows are committed alongside them and every other
                duplicate is discarded

        Returns:
            CommitOutcome; storage failures are reported as state FAILED

        Raises:
            ValidationError, SchemaMismatchError, DatasetNotFoundError
        """
        log = logger.bind(scope=scope.scope_id, owner_id=scope.owner_id, rows=len(rows))

        if force_upload and selected_subset is not None:
            raise ValidationError(["force_upload and selected_subset are mutually exclusive"])

        try:
            await self._validate(scope, columns, rows)

            if force_upload:
                log.info("Force upload requested, committing all rows")
                chosen = self.canonicalizer.canonicalize_many(rows, columns, scope.scope_id)
                return await self._persist(scope, columns, chosen, allow_existing=True)

            check = await self._detect(scope, columns, rows)

            if selected_subset is not None:
                chosen, confirmed = self._select(scope, columns, rows, check, selected_subset)
                if not chosen:
                    log.info("Nothing selected, upload discarded", duplicates=check.duplicate_count)
                    return self._finish(CommitOutcome(state=CommitState.DISCARDED, duplicate_check=check))
                return await self._persist(scope, columns, chosen, confirmed_hashes=confirmed)

            if check.has_duplicates:
                log.info(
                    "Duplicates found, awaiting confirmation",
                    duplicates=check.duplicate_count,
                    existing=check.existing_corpus_size,
                )
                return self._finish(CommitOutcome(state=CommitState.AWAITING_CONFIRMATION, duplicate_check=check))

            chosen = self.canonicalizer.canonicalize_many(rows, columns, scope.scope_id)
            return await self._persist(scope, columns, chosen)

        except StorageError as e:
            log.error("Commit failed", error=str(e), cause=repr(e.__cause__), exc_info=e.__cause__ is not None)
            return self._finish(CommitOutcome(state=CommitState.FAILED, error=e))

    def _select(
        self,
        scope: Scope,
        columns: Sequence[str],
        rows: Sequence[Row],
        check: DuplicateCheckResult,
        selected_subset: Sequence[Row],
    ) -> Tuple[List[CanonicalRow], AbstractSet[str]]:
        """Non-duplicate rows plus the selected duplicates, in submission order."""
        canonical = self.canonicalizer.canonicalize_many(rows, columns, scope.scope_id)
        selected = Counter(self.canonicalizer.content_hash(row, columns) for row in selected_subset)

        submitted = Counter(row.content_hash for row in canonical)
        unknown = [h for h, count in selected.items() if submitted[h] < count]
        if unknown:
            raise ValidationError([f"{len(unknown)} selected rows are not part of the submitted batch"])

        duplicate_indices = set(check.duplicate_indices)
        chosen: List[CanonicalRow] = []
        confirmed = set()
        for index, row in enumerate(canonical):
            if index not in duplicate_indices:
                chosen.append(row)
            elif selected[row.content_hash] > 0:
                selected[row.content_hash] -= 1
                confirmed.add(row.content_hash)
                chosen.append(row)
        return chosen, confirmed

    async def _persist(
        self,
        scope: Scope,
        columns: Sequence[str],
        rows: Sequence[CanonicalRow],
        allow_existing: bool = False,
        confirmed_hashes: AbstractSet[str] = frozenset(),
    ) -> CommitOutcome:
        try:
            inserted = await self.store.insert_rows(
                scope, columns, rows, allow_existing=allow_existing, confirmed_hashes=confirmed_hashes
            )
        except DuplicateConflictError:
            logger.warning("Insert rejected by uniqueness constraint", scope=scope.scope_id, rows=len(rows))
            raise

        increment("rows_committed", inserted, {"scope": _scope_label(scope)})
        logger.info("Rows committed", scope=scope.scope_id, inserted=inserted)
        return self._finish(CommitOutcome(state=CommitState.COMMITTED, inserted_count=inserted))

    @staticmethod
    def _finish(outcome: CommitOutcome) -> CommitOutcome:
        increment("commit_outcomes", labels={"state": outcome.state.value})
        return outcome
