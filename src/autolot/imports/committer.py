import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

from autolot.data.repositories import RecordOutcome
from autolot.exceptions import StorageError, ThresholdExceededError
from autolot.imports.models import RowIssue
from autolot.imports.resolver import Intent

logger = logging.getLogger(__name__)


class VehicleStore(Protocol):
    def upsert_batch(self, dealer_id: str, intents: List[Intent]) -> List[RecordOutcome]:
        ...


@dataclass
class BatchResult:
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    errors: List[RowIssue] = field(default_factory=list)

    @property
    def errored(self) -> int:
        return len(self.errors)


class ErrorBudget:
    """Run-wide count of errored rows against max_errors."""

    def __init__(self, max_errors: int):
        self.max_errors = max_errors
        self.errored = 0

    def charge(self, count: int = 1) -> None:
        self.errored += count

    @property
    def exceeded(self) -> bool:
        return self.errored > self.max_errors

    def check(self) -> None:
        if self.exceeded:
            raise ThresholdExceededError(self.errored, self.max_errors)


class BatchCommitter:
    """
    Commits one batch of intents as an atomic unit.
    When the storage rejects a whole batch, each intent is retried alone and
    those that still fail are reported as row errors.
    """

    def __init__(self, store: VehicleStore, dealer_id: str, budget: Optional[ErrorBudget] = None):
        self.store = store
        self.dealer_id = dealer_id
        self.budget = budget

    def commit(self, intents: List[Intent]) -> BatchResult:
        if not intents:
            return BatchResult()
        try:
            outcomes = self.store.upsert_batch(self.dealer_id, intents)
        except StorageError as exc:
            logger.warning(
                "batch commit failed, retrying records individually",
                extra={"dealer_id": self.dealer_id, "batch_size": len(intents), "error": str(exc)},
            )
            outcomes = self._commit_individually(intents)

        result = BatchResult()
        for outcome in outcomes:
            if not outcome.ok:
                result.errors.append(
                    RowIssue(row_number=outcome.row_number, field="vin", kind="storage", message=outcome.error or "storage failure")
                )
            elif outcome.action == "insert":
                result.inserted += 1
            elif outcome.action in ("update", "replace"):
                result.updated += 1
            else:
                result.skipped += 1
        if self.budget is not None:
            self.budget.charge(result.errored)
        return result

    def _commit_individually(self, intents: List[Intent]) -> List[RecordOutcome]:
        outcomes: List[RecordOutcome] = []
        for intent in intents:
            try:
                outcomes.extend(self.store.upsert_batch(self.dealer_id, [intent]))
            except StorageError as exc:
                outcomes.append(RecordOutcome(intent.row_number, intent.action, False, error=str(exc)))
        return outcomes
