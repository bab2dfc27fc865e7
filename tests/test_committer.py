import pytest

from autolot.data.repositories import RecordOutcome
from autolot.exceptions import StorageError, ThresholdExceededError
from autolot.imports.committer import BatchCommitter, ErrorBudget
from autolot.imports.resolver import Intent

from conftest import DEALER, vin


class FakeStore:
    """Records batches; fails whole batches containing a poisoned row."""

    def __init__(self, poisoned=(), reject_batches=False):
        self.poisoned = set(poisoned)
        self.reject_batches = reject_batches
        self.batches = []

    def upsert_batch(self, dealer_id, intents):
        if self.reject_batches and len(intents) > 1:
            raise StorageError("disk I/O error")
        if any(i.row_number in self.poisoned for i in intents):
            raise StorageError(f"row {intents[0].row_number} rejected")
        self.batches.append([i.row_number for i in intents])
        return [RecordOutcome(i.row_number, i.action, True) for i in intents]


def _intents(*actions):
    return [Intent(action, {"vin": vin(n)}, n) for n, action in enumerate(actions, start=1)]


def test_counts_by_action():
    store = FakeStore()

    result = BatchCommitter(store, DEALER).commit(_intents("insert", "update", "replace", "skip", "insert"))

    assert (result.inserted, result.updated, result.skipped, result.errored) == (2, 2, 1, 0)
    assert store.batches == [[1, 2, 3, 4, 5]]


def test_empty_batch_is_noop():
    store = FakeStore()

    assert BatchCommitter(store, DEALER).commit([]).errored == 0
    assert store.batches == []


def test_rejected_batch_retried_per_record():
    store = FakeStore(poisoned={2}, reject_batches=True)
    budget = ErrorBudget(max_errors=5)

    result = BatchCommitter(store, DEALER, budget).commit(_intents("insert", "insert", "insert"))

    assert result.inserted == 2
    assert [(e.row_number, e.kind) for e in result.errors] == [(2, "storage")]
    assert store.batches == [[1], [3]]
    assert budget.errored == 1


def test_record_level_failure_outcome():
    class PartialStore(FakeStore):
        def upsert_batch(self, dealer_id, intents):
            return [RecordOutcome(i.row_number, i.action, i.row_number != 1, error="UNIQUE constraint failed") for i in intents]

    result = BatchCommitter(PartialStore(), DEALER).commit(_intents("insert", "insert"))

    assert result.inserted == 1
    assert result.errors[0].message == "UNIQUE constraint failed"


def test_error_budget():
    budget = ErrorBudget(max_errors=3)
    budget.charge(3)
    budget.check()
    assert not budget.exceeded

    budget.charge()
    assert budget.exceeded
    with pytest.raises(ThresholdExceededError) as info:
        budget.check()
    assert (info.value.errored, info.value.max_errors) == (4, 3)


def test_zero_budget_aborts_on_first_error():
    budget = ErrorBudget(max_errors=0)
    budget.charge()

    with pytest.raises(ThresholdExceededError):
        budget.check()
