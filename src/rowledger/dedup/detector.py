"""
Duplicate detection strategies.

Two strategies sit behind one interface, one per corpus model:

1. HashIndexedDetector: dataset-scoped, compares content hashes against a
   hash set of the stored rows. O(existing + incoming).
2. FullScanDetector: legacy whole-history model, compares every incoming row
   field by field against every stored row of every upload with the same
   column set. O(uploads x stored x incoming), with no early exit.

Both are pure reads and never mutate the corpus.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, List, Protocol, Sequence

import structlog

from rowledger.errors import StorageError
from rowledger.observability import increment, observe
from rowledger.protocols import (
    CanonicalRow,
    CorpusStore,
    DatasetScope,
    DuplicateCheckResult,
    HistoryScope,
    Row,
    Scope,
)

from .canonical import RowCanonicalizer
from .schema_registry import same_column_set

logger = structlog.get_logger(__name__)


class DuplicateDetector(Protocol):
    """Common interface of the detection strategies."""

    strategy: str

    async def detect(self, scope: Any, columns: Sequence[str], rows: Sequence[Row]) -> DuplicateCheckResult:
        ...


def _build_result(
    payloads: Sequence[Row], duplicate_indices: List[int], existing_corpus_size: int
) -> DuplicateCheckResult:
    duplicate_rows = [payloads[i] for i in duplicate_indices]
    return DuplicateCheckResult(
        has_duplicates=bool(duplicate_indices),
        duplicate_rows=duplicate_rows,
        duplicate_count=len(duplicate_indices),
        existing_corpus_size=existing_corpus_size,
        duplicate_indices=duplicate_indices,
    )


class HashIndexedDetector:
    """Dataset-scoped detection through a set of stored content hashes."""

    strategy = "hash_indexed"

    def __init__(self, store: CorpusStore, canonicalizer: RowCanonicalizer) -> None:
        self.store = store
        self.canonicalizer = canonicalizer

    async def detect(self, scope: DatasetScope, columns: Sequence[str], rows: Sequence[Row]) -> DuplicateCheckResult:
        canonical = self.canonicalizer.canonicalize_many(rows, columns, scope.scope_id)
        return await self.detect_canonical(scope, canonical)

    async def detect_canonical(self, scope: DatasetScope, canonical: Sequence[CanonicalRow]) -> DuplicateCheckResult:
        """
        Flag every incoming row whose content hash is already stored.

        Args:
            scope: Target dataset
            canonical: Canonicalized incoming rows, in submission order

        Returns:
            DuplicateCheckResult over the incoming rows
        """
        start_time = time.perf_counter()

        stored_hashes = await self.store.list_existing_hashes(scope)
        existing = set(stored_hashes)

        # Repeated incoming hashes are looked up once
        distinct = {row.content_hash for row in canonical}
        duplicate_hashes = distinct & existing
        duplicate_indices = [i for i, row in enumerate(canonical) if row.content_hash in duplicate_hashes]

        result = _build_result([row.payload for row in canonical], duplicate_indices, len(stored_hashes))

        elapsed = time.perf_counter() - start_time
        increment("rows_checked", len(canonical), {"strategy": self.strategy})
        increment("duplicates_found", result.duplicate_count, {"strategy": self.strategy})
        observe("detect_latency_seconds", elapsed, {"strategy": self.strategy})
        logger.debug(
            "Hash-indexed duplicate check",
            dataset_id=scope.dataset_id,
            incoming=len(canonical),
            distinct=len(distinct),
            stored=len(stored_hashes),
            duplicates=result.duplicate_count,
            latency_ms=round(elapsed * 1000, 3),
        )
        return result


class FullScanDetector:
    """
    Legacy detection over an owner's whole upload history.

    Only uploads whose column set equals the incoming set are compared. There
    is no uniqueness backstop for this model, so concurrent uploads of the
    same content can both be stored.
    """

    strategy = "full_scan"

    def __init__(self, store: CorpusStore, canonicalizer: RowCanonicalizer, timeout_seconds: float = 30.0) -> None:
        self.store = store
        self.canonicalizer = canonicalizer
        self.timeout_seconds = timeout_seconds

    async def _load_history(self, owner_id: str):
        try:
            return await asyncio.wait_for(self.store.list_uploads(owner_id), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as e:
            logger.error("Upload history read timed out", owner_id=owner_id, timeout_seconds=self.timeout_seconds)
            raise StorageError("corpus read timed out") from e

    async def detect(self, scope: HistoryScope, columns: Sequence[str], rows: Sequence[Row]) -> DuplicateCheckResult:
        start_time = time.perf_counter()

        uploads = await self._load_history(scope.owner_id)
        matching = [upload for upload in uploads if same_column_set(upload.columns, columns)]
        stored_rows = [stored for upload in matching for stored in upload.rows]

        duplicate_indices: List[int] = []
        for index, row in enumerate(rows):
            for stored in stored_rows:
                if self.canonicalizer.rows_equivalent(row, stored, columns):
                    duplicate_indices.append(index)
                    break

        payloads = [self.canonicalizer.project(row, columns) for row in rows]
        result = _build_result(payloads, duplicate_indices, len(stored_rows))

        elapsed = time.perf_counter() - start_time
        increment("rows_checked", len(rows), {"strategy": self.strategy})
        increment("duplicates_found", result.duplicate_count, {"strategy": self.strategy})
        observe("detect_latency_seconds", elapsed, {"strategy": self.strategy})
        logger.debug(
            "Full-scan duplicate check",
            owner_id=scope.owner_id,
            uploads_compared=len(matching),
            uploads_total=len(uploads),
            stored=len(stored_rows),
            incoming=len(rows),
            duplicates=result.duplicate_count,
            latency_ms=round(elapsed * 1000, 3),
        )
        return result


def detector_for(scope: Scope, hash_indexed: HashIndexedDetector, full_scan: FullScanDetector) -> DuplicateDetector:
    """Pick the strategy matching the scope's corpus model."""
    if isinstance(scope, DatasetScope):
        return hash_indexed
    if isinstance(scope, HistoryScope):
        return full_scan
    raise TypeError(f"unsupported scope: {scope!r}")
