import pytest

from autolot.imports.models import ProcessingPolicy
from autolot.imports.resolver import Intent, PendingBatchLookup, resolve, vin_key

from conftest import DEALER, vin


class FakeLookup:
    def __init__(self, known=None):
        self.known = dict(known or {})
        self.calls = []

    def find_id(self, dealer_id, vin):
        self.calls.append((dealer_id, vin))
        return self.known.get((dealer_id, vin))


def test_new_vin_is_insert():
    intent = resolve({"vin": vin(1)}, ProcessingPolicy(), FakeLookup(), DEALER, row_number=3)

    assert intent == Intent("insert", {"vin": vin(1)}, 3)


@pytest.mark.parametrize("policy", ["skip", "update", "replace"])
def test_existing_vin_follows_policy(policy):
    lookup = FakeLookup({(DEALER, vin(1)): 42})

    intent = resolve({"vin": vin(1)}, ProcessingPolicy(duplicate_handling=policy), lookup, DEALER)

    assert intent.action == policy
    assert intent.existing_id == 42


def test_lookup_is_keyed_by_dealer_and_normalized_vin():
    lookup = FakeLookup({("dealer-2", vin(1)): 9})

    intent = resolve({"vin": f" {vin(1).lower()}"}, ProcessingPolicy(), lookup, DEALER)

    assert intent.action == "insert"
    assert lookup.calls == [(DEALER, vin(1))]


def test_vin_key():
    assert vin_key("  abc ") == "ABC"
    assert vin_key(None) == ""


def test_pending_batch_sees_queued_vins():
    lookup = PendingBatchLookup(FakeLookup().find_id)
    policy = ProcessingPolicy(duplicate_handling="update")

    first = resolve({"vin": vin(1)}, policy, lookup, DEALER, 1)
    lookup.add(DEALER, first)
    second = resolve({"vin": vin(1)}, policy, lookup, DEALER, 2)

    assert first.action == "insert"
    assert second.action == "update"
    assert second.existing_id == PendingBatchLookup.PENDING

    lookup.clear()
    assert lookup.find_id(DEALER, vin(1)) is None


def test_pending_batch_ignores_skips():
    lookup = PendingBatchLookup(FakeLookup().find_id)
    lookup.add(DEALER, Intent("skip", {"vin": vin(1)}, 1, existing_id=5))

    assert lookup.find_id(DEALER, vin(1)) is None
