"""
Incremental reconciliation of time-ordered log batches.

Log exporters typically re-export everything recorded so far, so consecutive
files mostly overlap while independent sessions mostly do not. Instead of an
exact per-row dedup across unbounded history, each batch is compared to the
records stored from earlier batches:

- fewer overlaps than the threshold: the batch is an independent series and
  is imported as-is (an incidental match or two is not treated as a re-export)
- at least the threshold: the batch continues earlier data and every
  overlapping record is dropped

The threshold is empirical. It can produce false negatives (a real re-export
sharing a single record is imported whole) and false positives (an independent
series sharing two incidental records loses them).
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Set, Tuple

import structlog

from rowledger.errors import ValidationError
from rowledger.observability import increment
from rowledger.protocols import (
    CorpusStore,
    LogBatch,
    LogRecord,
    ReconciliationAction,
    ReconciliationDecision,
    ReconcileResult,
    Row,
)

from .canonical import RowCanonicalizer

logger = structlog.get_logger(__name__)

# Never part of a composite key, even when present in a record
EXCLUDED_KEY_FIELDS = ("batch_timestamp",)

CompositeKey = Tuple[Tuple[str, str], ...]


class IncrementalReconciler:
    """Decides, per log batch, whether to dedupe against earlier batches."""

    def __init__(
        self,
        store: CorpusStore,
        canonicalizer: RowCanonicalizer,
        threshold: int = 2,
        key_fields: Optional[Sequence[str]] = None,
    ) -> None:
        if threshold < 1:
            raise ValueError("threshold must be at least 1")
        self.store = store
        self.canonicalizer = canonicalizer
        self.threshold = threshold
        self.key_fields = list(key_fields) if key_fields is not None else None

    def key_of(self, record: Row) -> CompositeKey:
        return self.canonicalizer.composite_key(record, exclude=EXCLUDED_KEY_FIELDS, key_fields=self.key_fields)

    def collapse(self, records: Iterable[Row]) -> Tuple[List[Row], int]:
        """Drop records repeating an earlier composite key within the batch; first one wins."""
        seen: Set[CompositeKey] = set()
        unique: List[Row] = []
        removed = 0
        for record in records:
            key = self.key_of(record)
            if key in seen:
                removed += 1
                continue
            seen.add(key)
            unique.append(record)
        return unique, removed

    def decide(self, records: Sequence[Row], history: Sequence[LogRecord]) -> Tuple[ReconciliationDecision, List[Row]]:
        """
        Apply the overlap threshold.

        Args:
            records: Batch records, already collapsed within the batch
            history: Stored records from strictly earlier batches

        Returns:
            The decision and the records to import
        """
        if not history:
            return ReconciliationDecision(0, self.threshold, ReconciliationAction.IMPORT_ALL), list(records)

        history_keys = {self.key_of(stored.payload) for stored in history}
        overlapping = [key in history_keys for key in (self.key_of(record) for record in records)]
        overlap_count = sum(overlapping)

        if overlap_count < self.threshold:
            return (
                ReconciliationDecision(overlap_count, self.threshold, ReconciliationAction.IMPORT_ALL),
                list(records),
            )

        survivors = [record for record, overlaps in zip(records, overlapping) if not overlaps]
        return (
            ReconciliationDecision(overlap_count, self.threshold, ReconciliationAction.DEDUPE_AGAINST_HISTORY),
            survivors,
        )

    async def reconcile(self, owner_id: str, batch: LogBatch) -> ReconcileResult:
        """
        Reconcile one log batch against the owner's stored history and persist the survivors.

        Args:
            owner_id: Authenticated owner
            batch: Records parsed from one log file

        Returns:
            ReconcileResult with counts and the threshold decision
        """
        if batch.owner_id != owner_id:
            raise ValidationError([f"batch belongs to owner '{batch.owner_id}', not '{owner_id}'"])

        log = logger.bind(owner_id=owner_id, source_name=batch.source_name, batch_timestamp=batch.batch_timestamp)
        result = ReconcileResult(source_name=batch.source_name, batch_timestamp=batch.batch_timestamp)

        if await self.store.batch_exists(owner_id, batch.batch_timestamp, batch.source_name):
            log.info("Log batch already processed, skipping")
            result.skipped_as_already_processed = True
            increment("log_batches", labels={"outcome": "already_processed"})
            return result

        unique, result.intra_batch_duplicates_removed = self.collapse(batch.records)

        history = await self.store.list_batch_history(owner_id, batch.batch_timestamp)
        decision, survivors = self.decide(unique, history)
        result.decision = decision
        result.history_duplicates_removed = len(unique) - len(survivors)
        increment("reconciliation_decisions", labels={"action": decision.action.value})

        log.info(
            "Reconciliation decision",
            action=decision.action.value,
            overlap_count=decision.overlap_count,
            threshold=decision.threshold,
            history_records=len(history),
            records=len(batch.records),
        )

        if not survivors:
            log.info("No new records after deduplication, skipping")
            result.skipped_no_new_records = True
            increment("log_batches", labels={"outcome": "no_new_records"})
            return result

        result.imported_count = await self.store.insert_log_records(batch, survivors)
        increment("log_batches", labels={"outcome": "imported"})
        log.info("Log batch imported", imported=result.imported_count)
        return result
