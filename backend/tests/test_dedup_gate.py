from typing import Optional

from expense_pipeline.services.cache import InMemoryCacheService
from expense_pipeline.services.dedup import (
    DUPLICATE_FINGERPRINT,
    DUPLICATE_FINGERPRINT_DB,
    DeduplicationGate,
    dedup_cache_key,
)
from expense_pipeline.services.expense_store import ExpenseStore, PersistedExpense


class MemoryExpenseStore(ExpenseStore):
    def __init__(self, fingerprints: Optional[set] = None) -> None:
        self.fingerprints = set(fingerprints or ())
        self.lookups: list[str] = []

    def exists_by_fingerprint(self, fingerprint: str) -> bool:
        self.lookups.append(fingerprint)
        return fingerprint in self.fingerprints

    def upsert(self, record: PersistedExpense) -> None:
        self.fingerprints.add(record.fingerprint)


class RecordingCache(InMemoryCacheService):
    def __init__(self) -> None:
        super().__init__()
        self.writes: list[tuple] = []

    def set(self, key, value, ttl_seconds=None):
        self.writes.append((key, value, ttl_seconds))
        super().set(key, value, ttl_seconds)


def test_cache_key_is_scoped_when_scope_given():
    assert dedup_cache_key("proc-1", "abc") == "proc-1:abc"
    assert dedup_cache_key(None, "abc") == "abc"
    assert dedup_cache_key("  ", "abc") == "abc"


def test_first_delivery_is_admitted_and_marked_with_ttl():
    cache = RecordingCache()
    gate = DeduplicationGate(cache, MemoryExpenseStore(), ttl_seconds=120)

    decision = gate.admit("proc-1", "fp")

    assert decision.admitted is True
    assert decision.reason is None
    assert decision.cache_key == "proc-1:fp"
    assert cache.writes == [("proc-1:fp", "1", 120)]


def test_second_delivery_in_same_scope_hits_cache():
    store = MemoryExpenseStore()
    gate = DeduplicationGate(InMemoryCacheService(), store)

    assert gate.admit("proc-1", "fp").admitted is True
    decision = gate.admit("proc-1", "fp")

    assert decision.admitted is False
    assert decision.reason == DUPLICATE_FINGERPRINT
    assert decision.source == "cache"
    # Store is only consulted on the first (cache-miss) delivery.
    assert store.lookups == ["fp"]


def test_other_scope_with_durable_record_is_db_duplicate():
    cache = RecordingCache()
    gate = DeduplicationGate(cache, MemoryExpenseStore({"fp"}))

    decision = gate.admit("proc-2", "fp")

    assert decision.admitted is False
    assert decision.reason == DUPLICATE_FINGERPRINT_DB
    assert decision.source == "db"
    assert cache.writes == []


def test_atomic_mode_uses_set_if_absent():
    class LosingRaceCache(InMemoryCacheService):
        def exists(self, key):
            # Another worker writes the marker between exists() and set().
            return False

        def set_if_absent(self, key, value, ttl_seconds=None):
            return False

    gate = DeduplicationGate(LosingRaceCache(), MemoryExpenseStore(), atomic=True)
    decision = gate.admit(None, "fp")

    assert decision.admitted is False
    assert decision.reason == DUPLICATE_FINGERPRINT


def test_atomic_mode_admits_when_marker_written():
    cache = InMemoryCacheService()
    gate = DeduplicationGate(cache, MemoryExpenseStore(), atomic=True, ttl_seconds=60)

    assert gate.admit(None, "fp").admitted is True
    assert cache.get("fp") == "1"
    assert gate.admit(None, "fp").admitted is False
