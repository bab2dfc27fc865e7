from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Literal, Optional, Protocol

from autolot.imports.models import ProcessingPolicy

Action = Literal["insert", "update", "replace", "skip"]


class ExistingLookup(Protocol):
    def find_id(self, dealer_id: str, vin: str) -> Optional[int]:
        ...


@dataclass
class Intent:
    action: Action
    record: Dict[str, Any] = field(default_factory=dict)
    row_number: int = 0
    existing_id: Optional[int] = None

    @property
    def vin(self) -> Optional[str]:
        return self.record.get("vin")


def vin_key(vin: Any) -> str:
    return str(vin or "").strip().upper()


def resolve(
    record: Dict[str, Any],
    policy: ProcessingPolicy,
    lookup: ExistingLookup,
    dealer_id: str,
    row_number: int = 0,
) -> Intent:
    """
    Classifies a mapped record against existing inventory keyed by (dealer_id, VIN).
    Never writes; the committer performs the matching storage operation.
    """
    existing_id = lookup.find_id(dealer_id, vin_key(record.get("vin")))
    if existing_id is None:
        return Intent("insert", record, row_number)
    if policy.duplicate_handling == "skip":
        return Intent("skip", record, row_number, existing_id)
    return Intent(policy.duplicate_handling, record, row_number, existing_id)


class PendingBatchLookup:
    """
    Storage lookup that also sees VINs queued in the not-yet-committed batch,
    so a VIN repeated within one batch resolves as existing.
    """

    PENDING = -1

    def __init__(self, find_id: Callable[[str, str], Optional[int]]):
        self._find_id = find_id
        self._pending: set[tuple[str, str]] = set()

    def find_id(self, dealer_id: str, vin: str) -> Optional[int]:
        existing = self._find_id(dealer_id, vin)
        if existing is None and (dealer_id, vin) in self._pending:
            return self.PENDING
        return existing

    def add(self, dealer_id: str, intent: Intent) -> None:
        if intent.action != "skip":
            self._pending.add((dealer_id, vin_key(intent.vin)))

    def clear(self) -> None:
        self._pending.clear()
