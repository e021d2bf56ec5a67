"""
Tests for object id minting and the sequence counter.
"""

import pytest
import tempfile
import threading
import time
from dataclasses import replace
from unittest.mock import Mock
from datetime import datetime, timezone

from ..error_tracker import ConcurrencyConflictError, MissingCoordinateError
from ..identity import IdentityResolver
from ..minter import CLAIM_KEY_PREFIX, ObjectIdMinter, SequenceCounter
from ..models import ObjectIdentifiers
from ..resilience import RetryPolicy
from ..table_store import IdentityTable, SettingsTable, TableStore
from .mock_repository import MockRepositoryClient

FIXED_CLOCK = lambda: datetime(2024, 5, 17, 9, 30, tzinfo=timezone.utc)
CONTENDED = RetryPolicy(max_attempts=200, base_delay_seconds=0.001, max_delay_seconds=0.02,
                        retry_on_exceptions=(ConcurrencyConflictError,))


class LockstepIdentityTable(IdentityTable):
    """Holds every thread at its first natural-key lookup until all of them have missed."""

    def __init__(self, store, parties):
        super().__init__(store)
        self.barrier = threading.Barrier(parties, timeout=10)
        self.local = threading.local()

    def find_by_natural_key(self, natural_key):
        record = super().find_by_natural_key(natural_key)
        if not getattr(self.local, "waited", False):
            self.local.waited = True
            self.barrier.wait()
        return record


class RacingIdentityTable(IdentityTable):
    """Registers a competing record for the same document right before the first insert."""

    def __init__(self, store, competing_object_id):
        super().__init__(store)
        self.competing_object_id = competing_object_id
        self.raced = False

    def insert(self, ids):
        if not self.raced:
            self.raced = True
            super().insert(replace(ids, object_id=self.competing_object_id))
        super().insert(ids)


@pytest.fixture
def store():
    with tempfile.TemporaryDirectory() as temp_dir:
        yield TableStore(storage_directory=temp_dir)


@pytest.fixture
def repository():
    repo = MockRepositoryClient()
    repo.add_drive("site", "list", "drive")
    for n in range(1, 21):
        repo.add_document("drive", f"item-{n}", str(n))
    return repo


def _minter(repository, store, identities=None, counter=None):
    identities = identities or IdentityTable(store)
    resolver = IdentityResolver(repository, identities)
    counter = counter or SequenceCounter(SettingsTable(store), retry_policy=CONTENDED)
    return ObjectIdMinter(resolver, identities, counter, prefix="ZLD", clock=FIXED_CLOCK, claim_policy=CONTENDED)


def _doc(n):
    return ObjectIdentifiers(site_id="site", list_id="list", list_item_id=str(n))


class TestSequenceCounter:
    def test_initial_value(self, store):
        counter = SequenceCounter(SettingsTable(store), initial_value=100)
        assert counter.current() == 100
        assert counter.increment() == 101
        assert counter.current() == 101

    def test_monotonic(self, store):
        counter = SequenceCounter(SettingsTable(store))
        values = [counter.increment() for _ in range(5)]
        assert values == [1, 2, 3, 4, 5]

    def test_concurrent_increments_are_unique(self, store):
        counter = SequenceCounter(SettingsTable(store), retry_policy=CONTENDED)
        values = []
        lock = threading.Lock()

        def work():
            for _ in range(5):
                value = counter.increment()
                with lock:
                    values.append(value)

        threads = [threading.Thread(target=work) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(values) == list(range(1, 31))


class TestObjectIdMinter:
    """Minting, idempotence and convergence."""

    def test_format_with_prior_sequence(self, repository, store):
        SettingsTable(store).set("SequenceNumber", "100")
        minter = _minter(repository, store)

        assert minter.mint(_doc(1)) == "ZLD2024-101"
        record = IdentityTable(store).get("ZLD2024-101")
        assert record.drive_id == "drive"
        assert record.drive_item_id == "item-1"

    def test_registered_document_keeps_its_id(self, repository, store):
        minter = _minter(repository, store)
        first = minter.mint(_doc(1))

        assert minter.mint(_doc(1)) == first
        assert minter.mint(ObjectIdentifiers(drive_id="drive", drive_item_id="item-1")) == first
        assert minter.counter.current() == 1

    def test_ids_increase(self, repository, store):
        minter = _minter(repository, store)
        assert [minter.mint(_doc(n)) for n in (1, 2, 3)] == ["ZLD2024-1", "ZLD2024-2", "ZLD2024-3"]

    def test_missing_coordinate(self, repository, store):
        repository.add_drive("site", "empty-list", "empty-drive")
        minter = _minter(repository, store)

        with pytest.raises(MissingCoordinateError) as exc_info:
            minter.mint(ObjectIdentifiers(site_id="site", list_id="empty-list"))
        assert exc_info.value.field_name == "list_item_id"
        assert IdentityTable(store).count() == 0

    def test_lost_insert_race_converges(self, repository, store):
        identities = RacingIdentityTable(store, "ZLD2024-50")
        minter = _minter(repository, store, identities=identities)

        assert minter.mint(_doc(1)) == "ZLD2024-50"
        assert identities.count() == 1

    def test_concurrent_minting_of_distinct_documents(self, repository, store):
        minter = _minter(repository, store)
        results = {}
        lock = threading.Lock()

        def work(n):
            object_id = minter.mint(_doc(n))
            with lock:
                results[n] = object_id

        threads = [threading.Thread(target=work, args=(n,)) for n in range(1, 11)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 10
        assert len(set(results.values())) == 10

    def test_concurrent_minting_of_same_document_converges(self, repository, store):
        minter = _minter(repository, store)
        results = []
        lock = threading.Lock()

        def work():
            object_id = minter.mint(_doc(7))
            with lock:
                results.append(object_id)

        threads = [threading.Thread(target=work) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(set(results)) == 1
        assert IdentityTable(store).count() == 1
        assert minter.counter.current() == 1

    def test_racers_that_all_missed_the_lookup_consume_one_value(self, repository, store):
        identities = LockstepIdentityTable(store, parties=8)
        minter = _minter(repository, store, identities=identities)
        results = []
        lock = threading.Lock()

        def work():
            object_id = minter.mint(_doc(7))
            with lock:
                results.append(object_id)

        threads = [threading.Thread(target=work) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results == ["ZLD2024-1"] * 8
        assert minter.counter.current() == 1
        assert SettingsTable(store).get_versioned(CLAIM_KEY_PREFIX + "sitelist7") == (None, 0)


class TestMintClaims:
    def test_claim_is_released_when_minting_fails(self, repository, store):
        counter = Mock(settings=SettingsTable(store))
        counter.increment.side_effect = ConcurrencyConflictError("busy")
        minter = _minter(repository, store, counter=counter)
        minter.claim_policy = RetryPolicy(max_attempts=1, retry_on_exceptions=(ConcurrencyConflictError,))

        with pytest.raises(ConcurrencyConflictError):
            minter.mint(_doc(3))

        assert SettingsTable(store).get_versioned(CLAIM_KEY_PREFIX + "sitelist3") == (None, 0)

    def test_held_claim_blocks_a_second_registration(self, repository, store):
        settings = SettingsTable(store)
        settings.set(CLAIM_KEY_PREFIX + "sitelist4", str(time.time()))
        minter = _minter(repository, store)
        minter.claim_policy = RetryPolicy(max_attempts=2, base_delay_seconds=0, jitter=False,
                                          retry_on_exceptions=(ConcurrencyConflictError,))

        with pytest.raises(ConcurrencyConflictError):
            minter.mint(_doc(4))
        assert minter.counter.current() == 0

    def test_stale_claim_is_taken_over(self, repository, store):
        settings = SettingsTable(store)
        settings.set(CLAIM_KEY_PREFIX + "sitelist5", str(time.time() - 3600))
        minter = _minter(repository, store)

        assert minter.mint(_doc(5)) == "ZLD2024-1"
        assert settings.get_versioned(CLAIM_KEY_PREFIX + "sitelist5") == (None, 0)
