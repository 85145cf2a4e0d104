"""
Unit tests for the hash-indexed and full-scan duplicate detectors.
"""

import asyncio

import pytest

from rowledger.dedup.canonical import RowCanonicalizer
from rowledger.dedup.detector import FullScanDetector, HashIndexedDetector, detector_for
from rowledger.errors import StorageError
from rowledger.observability import METRICS
from rowledger.protocols import DatasetScope, HistoryScope
from tests.helpers import InMemoryCorpusStore, histogram_observes, metric_delta

COLUMNS = ["name", "age"]


@pytest.fixture
def corpus():
    return InMemoryCorpusStore()


@pytest.fixture
def canonicalizer():
    return RowCanonicalizer()


async def _seed_dataset(corpus, canonicalizer, rows):
    dataset = await corpus.create_dataset("u1", "people", COLUMNS)
    scope = DatasetScope("u1", dataset.id)
    await corpus.insert_rows(scope, COLUMNS, canonicalizer.canonicalize_many(rows, COLUMNS, scope.scope_id))
    return scope


@pytest.mark.unit
class TestHashIndexedDetector:
    async def test_no_duplicates_against_empty_dataset(self, corpus, canonicalizer):
        dataset = await corpus.create_dataset("u1", "people", COLUMNS)
        detector = HashIndexedDetector(corpus, canonicalizer)

        result = await detector.detect(DatasetScope("u1", dataset.id), COLUMNS, [{"name": "John", "age": "30"}])

        assert result.has_duplicates is False
        assert result.duplicate_count == 0
        assert result.existing_corpus_size == 0

    async def test_flags_exactly_the_stored_rows(self, corpus, canonicalizer):
        scope = await _seed_dataset(corpus, canonicalizer, [{"name": "John", "age": "30"}])
        detector = HashIndexedDetector(corpus, canonicalizer)

        incoming = [{"name": "Jane", "age": "25"}, {"age": 30, "name": " John "}]
        result = await detector.detect(scope, COLUMNS, incoming)

        assert result.has_duplicates is True
        assert result.duplicate_indices == [1]
        assert result.duplicate_rows == [{"name": "John", "age": 30}]
        assert result.existing_corpus_size == 1

    async def test_repeated_incoming_rows_are_all_flagged(self, corpus, canonicalizer):
        scope = await _seed_dataset(corpus, canonicalizer, [{"name": "John", "age": "30"}])
        detector = HashIndexedDetector(corpus, canonicalizer)

        incoming = [{"name": "John", "age": "30"}, {"name": "John", "age": "30"}]
        result = await detector.detect(scope, COLUMNS, incoming)

        assert result.duplicate_indices == [0, 1]
        assert result.duplicate_count == 2

    async def test_reads_the_hash_index_once(self, corpus, canonicalizer):
        scope = await _seed_dataset(corpus, canonicalizer, [{"name": "John", "age": "30"}])
        detector = HashIndexedDetector(corpus, canonicalizer)

        await detector.detect(scope, COLUMNS, [{"name": "A", "age": str(i)} for i in range(50)])

        assert corpus.calls["list_existing_hashes"] == 1
        assert corpus.calls["list_existing_rows"] == 0

    async def test_metrics_are_recorded(self, corpus, canonicalizer):
        scope = await _seed_dataset(corpus, canonicalizer, [{"name": "John", "age": "30"}])
        detector = HashIndexedDetector(corpus, canonicalizer)

        with metric_delta(METRICS["rows_checked"].labels(strategy="hash_indexed"), 2):
            with metric_delta(METRICS["duplicates_found"].labels(strategy="hash_indexed"), 1):
                with histogram_observes(METRICS["detect_latency_seconds"].labels(strategy="hash_indexed")):
                    await detector.detect(scope, COLUMNS, [{"name": "John", "age": "30"}, {"name": "X", "age": "1"}])


@pytest.mark.unit
class TestFullScanDetector:
    async def test_compares_only_uploads_with_the_same_columns(self, corpus, canonicalizer):
        history = HistoryScope("u1")
        same = canonicalizer.canonicalize_many([{"name": "John", "age": "30"}], COLUMNS)
        other = canonicalizer.canonicalize_many([{"name": "Jane", "email": "j@x"}], ["name", "email"])
        await corpus.insert_rows(history, COLUMNS, same)
        await corpus.insert_rows(history, ["name", "email"], other)
        detector = FullScanDetector(corpus, canonicalizer)

        result = await detector.detect(history, ["age", "name"], [{"name": "John", "age": 30}, {"name": "Jane"}])

        assert result.duplicate_indices == [0]
        assert result.existing_corpus_size == 1

    async def test_other_owners_are_invisible(self, corpus, canonicalizer):
        rows = [{"name": "John", "age": "30"}]
        await corpus.insert_rows(HistoryScope("u2"), COLUMNS, canonicalizer.canonicalize_many(rows, COLUMNS))
        detector = FullScanDetector(corpus, canonicalizer)

        result = await detector.detect(HistoryScope("u1"), COLUMNS, rows)

        assert result.has_duplicates is False
        assert result.existing_corpus_size == 0

    async def test_slow_history_read_times_out(self, canonicalizer):
        class SlowStore(InMemoryCorpusStore):
            async def list_uploads(self, owner_id):
                await asyncio.sleep(5)
                return []

        detector = FullScanDetector(SlowStore(), canonicalizer, timeout_seconds=0.01)

        with pytest.raises(StorageError, match="timed out"):
            await detector.detect(HistoryScope("u1"), COLUMNS, [{"name": "John", "age": "30"}])


@pytest.mark.unit
def test_detector_for_picks_strategy_by_scope(corpus, canonicalizer):
    hash_indexed = HashIndexedDetector(corpus, canonicalizer)
    full_scan = FullScanDetector(corpus, canonicalizer)

    assert detector_for(DatasetScope("u1", 1), hash_indexed, full_scan) is hash_indexed
    assert detector_for(HistoryScope("u1"), hash_indexed, full_scan) is full_scan
    with pytest.raises(TypeError):
        detector_for("dataset:1", hash_indexed, full_scan)
