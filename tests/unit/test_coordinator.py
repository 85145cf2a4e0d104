"""
Unit tests for the two-phase commit protocol.
"""

import pytest

from rowledger.config import LimitsConfig
from rowledger.dedup import CommitCoordinator, FullScanDetector, HashIndexedDetector, RowCanonicalizer, SchemaRegistry
from rowledger.errors import DatasetNotFoundError, SchemaMismatchError, StorageError, ValidationError
from rowledger.observability import METRICS
from rowledger.protocols import CommitState, DatasetScope, HistoryScope
from tests.helpers import InMemoryCorpusStore, metric_delta

COLUMNS = ["name", "age"]
JOHN = {"name": "John", "age": "30"}
JANE = {"name": "Jane", "age": "25"}
BOB = {"name": "Bob", "age": "40"}


@pytest.fixture
def corpus():
    return InMemoryCorpusStore()


@pytest.fixture
def coordinator(corpus):
    canonicalizer = RowCanonicalizer()
    return CommitCoordinator(
        corpus,
        SchemaRegistry(corpus, LimitsConfig()),
        canonicalizer,
        HashIndexedDetector(corpus, canonicalizer),
        FullScanDetector(corpus, canonicalizer),
    )


@pytest.fixture
async def scope(corpus):
    dataset = await corpus.create_dataset("u1", "people", COLUMNS)
    return DatasetScope("u1", dataset.id)


def _stored(corpus, scope):
    return [row.payload for row, _ in corpus.rows.get(scope.dataset_id, [])]


@pytest.mark.unit
class TestCommitProtocol:
    async def test_clean_batch_commits_immediately(self, coordinator, corpus, scope):
        outcome = await coordinator.commit(scope, COLUMNS, [JOHN, JANE])

        assert outcome.state is CommitState.COMMITTED
        assert outcome.inserted_count == 2
        assert _stored(corpus, scope) == [JOHN, JANE]

    async def test_duplicates_wait_for_confirmation_without_writing(self, coordinator, corpus, scope):
        await coordinator.commit(scope, COLUMNS, [JOHN])

        outcome = await coordinator.commit(scope, COLUMNS, [JOHN, BOB])

        assert outcome.state is CommitState.AWAITING_CONFIRMATION
        assert outcome.awaiting_confirmation
        assert outcome.inserted_count == 0
        assert outcome.duplicate_check.duplicate_rows == [JOHN]
        assert _stored(corpus, scope) == [JOHN]

    async def test_force_upload_keeps_duplicates(self, coordinator, corpus, scope):
        await coordinator.commit(scope, COLUMNS, [JOHN])

        outcome = await coordinator.commit(scope, COLUMNS, [JOHN, BOB], force_upload=True)

        assert outcome.state is CommitState.COMMITTED
        assert outcome.inserted_count == 2
        assert _stored(corpus, scope) == [JOHN, JOHN, BOB]

    async def test_selected_subset_commits_new_rows_and_chosen_duplicates(self, coordinator, corpus, scope):
        await coordinator.commit(scope, COLUMNS, [JOHN, JANE])

        outcome = await coordinator.commit(scope, COLUMNS, [JOHN, JANE, BOB], selected_subset=[JANE])

        assert outcome.state is CommitState.COMMITTED
        assert outcome.inserted_count == 2
        assert _stored(corpus, scope) == [JOHN, JANE, JANE, BOB]

    async def test_empty_selection_of_all_duplicates_is_discarded(self, coordinator, corpus, scope):
        await coordinator.commit(scope, COLUMNS, [JOHN])

        outcome = await coordinator.commit(scope, COLUMNS, [JOHN], selected_subset=[])

        assert outcome.state is CommitState.DISCARDED
        assert outcome.duplicate_check.duplicate_count == 1
        assert _stored(corpus, scope) == [JOHN]

    async def test_empty_selection_still_commits_new_rows(self, coordinator, corpus, scope):
        await coordinator.commit(scope, COLUMNS, [JOHN])

        outcome = await coordinator.commit(scope, COLUMNS, [JOHN, JANE], selected_subset=[])

        assert outcome.state is CommitState.COMMITTED
        assert outcome.inserted_count == 1
        assert _stored(corpus, scope) == [JOHN, JANE]

    async def test_selection_outside_the_batch_is_rejected(self, coordinator, scope):
        with pytest.raises(ValidationError, match="not part of the submitted batch"):
            await coordinator.commit(scope, COLUMNS, [JOHN], selected_subset=[BOB])

    async def test_force_and_selection_are_exclusive(self, coordinator, scope):
        with pytest.raises(ValidationError):
            await coordinator.commit(scope, COLUMNS, [JOHN], force_upload=True, selected_subset=[JOHN])

    async def test_repeats_within_one_batch_are_kept(self, coordinator, corpus, scope):
        outcome = await coordinator.commit(scope, COLUMNS, [JOHN, JOHN])

        assert outcome.state is CommitState.COMMITTED
        assert _stored(corpus, scope) == [JOHN, JOHN]

    async def test_commit_is_idempotent_after_confirmation(self, coordinator, scope):
        first = await coordinator.commit(scope, COLUMNS, [JOHN, JANE])
        second = await coordinator.commit(scope, COLUMNS, [JOHN, JANE])

        assert first.state is CommitState.COMMITTED
        assert second.state is CommitState.AWAITING_CONFIRMATION
        assert second.duplicate_check.duplicate_count == 2


@pytest.mark.unit
class TestCommitErrors:
    async def test_schema_mismatch_is_raised(self, coordinator, scope):
        with pytest.raises(SchemaMismatchError):
            await coordinator.commit(scope, ["name", "email"], [{"name": "John", "email": "j@x"}])

    async def test_unknown_dataset(self, coordinator):
        with pytest.raises(DatasetNotFoundError):
            await coordinator.check(DatasetScope("u1", 999), COLUMNS, [JOHN])

    async def test_other_owners_dataset_is_not_found(self, coordinator, scope):
        with pytest.raises(DatasetNotFoundError):
            await coordinator.commit(DatasetScope("intruder", scope.dataset_id), COLUMNS, [JOHN])

    async def test_storage_failure_becomes_failed_outcome(self, coordinator, corpus, scope):
        async def broken_insert(*args, **kwargs):
            raise StorageError()

        corpus.insert_rows = broken_insert

        with metric_delta(METRICS["commit_outcomes"].labels(state="failed")):
            outcome = await coordinator.commit(scope, COLUMNS, [JOHN])

        assert outcome.state is CommitState.FAILED
        assert isinstance(outcome.error, StorageError)
        with pytest.raises(StorageError):
            outcome.raise_for_failure()

    async def test_concurrent_insert_of_same_content_fails(self, coordinator, corpus, scope):
        canonicalizer = RowCanonicalizer()
        original_insert = corpus.insert_rows

        async def racing_insert(target, columns, rows, **kwargs):
            # Another upload stores the same row between detection and insert
            await original_insert(target, columns, canonicalizer.canonicalize_many([JOHN], columns))
            return await original_insert(target, columns, rows, **kwargs)

        corpus.insert_rows = racing_insert

        outcome = await coordinator.commit(scope, COLUMNS, [JOHN, BOB])

        assert outcome.state is CommitState.FAILED
        assert _stored(corpus, scope) == [JOHN]


@pytest.mark.unit
class TestHistoryScope:
    async def test_history_commit_and_recheck(self, coordinator, corpus):
        history = HistoryScope("u1")

        first = await coordinator.commit(history, COLUMNS, [JOHN])
        second = await coordinator.commit(history, ["age", "name"], [JOHN, JANE])

        assert first.state is CommitState.COMMITTED
        assert second.state is CommitState.AWAITING_CONFIRMATION
        assert second.duplicate_check.duplicate_indices == [0]
        assert len(corpus.uploads) == 1

    async def test_history_selection(self, coordinator, corpus):
        history = HistoryScope("u1")
        await coordinator.commit(history, COLUMNS, [JOHN])

        outcome = await coordinator.commit(history, COLUMNS, [JOHN, JANE], selected_subset=[])

        assert outcome.state is CommitState.COMMITTED
        assert outcome.inserted_count == 1
        assert corpus.uploads[-1].rows == [JANE]
