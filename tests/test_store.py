"""
Tests for the record store.

Covers the record lifecycle, index/record consistency, tolerant listing and
guarded updates.
"""

import json
import threading
from unittest.mock import patch

import pytest

from chronogenomics.backends import FileBackend, MemoryBackend
from chronogenomics.errors import InvalidState, NotFound, StorageUnavailable
from chronogenomics.models import INDEX_KEY, AnalysisRecord, AnalysisStatus, record_key
from chronogenomics.store import RecordStore


def read_index(backend):
    raw = backend.get_data(INDEX_KEY)
    return json.loads(raw.decode('utf-8')) if raw else []


class TestCreateAndGet:
    """Test record creation and lookup."""

    def test_new_record_is_pending_with_empty_results(self, store):
        """A created record starts Pending with empty result fields."""
        record_id = store.create("0xABC", "seq1")

        record = store.get(record_id)
        assert record.id == record_id
        assert record.owner == "0xABC"
        assert record.encoded_payload == "seq1"
        assert record.status is AnalysisStatus.PENDING
        assert record.category == ""
        assert record.schedule_start == ""
        assert record.schedule_end == ""
        assert record.peak_window == ""

    def test_created_at_comes_from_clock(self, store, clock):
        """Creation time is the clock's epoch seconds."""
        record_id = store.create("0xABC", "seq1")
        assert store.get(record_id).created_at == int(clock.now)

    def test_id_has_millisecond_prefix(self, store, clock):
        """Ids combine the millisecond time with a random suffix."""
        record_id = store.create("0xABC", "seq1")
        prefix, suffix = record_id.split("-")
        assert prefix == str(int(clock.now * 1000))
        assert len(suffix) == 7

    def test_get_unknown_id_raises_not_found(self, store):
        """Unknown ids raise NotFound."""
        with pytest.raises(NotFound):
            store.get("nonexistent")

    def test_create_appends_to_index(self, store, backend):
        """Every created id is appended to the index exactly once."""
        first = store.create("0xA", "p1")
        second = store.create("0xB", "p2")
        assert read_index(backend) == [first, second]

    def test_ids_unique_within_same_millisecond(self, store):
        """A frozen clock still yields distinct ids."""
        ids = [store.create(f"0x{i}", "payload") for i in range(200)]
        assert len(set(ids)) == len(ids)

    def test_concurrent_creates_never_collide(self, store, backend):
        """Concurrent creates from different owners get distinct, indexed ids."""
        results = []
        barrier = threading.Barrier(8)

        def worker(owner):
            barrier.wait()
            for _ in range(10):
                results.append(store.create(owner, "payload"))

        threads = [threading.Thread(target=worker, args=(f"0x{n}",)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(results) == 80
        assert len(set(results)) == 80
        assert sorted(read_index(backend)) == sorted(results)
        assert store.audit().is_consistent

    def test_suffix_collision_is_regenerated(self, store):
        """A generated id already in use is replaced by a fresh one."""
        existing = store.create("0xA", "p1")
        with patch.object(store, "_generate_id", side_effect=[existing, "1-fresh00"]):
            new_id = store.create("0xB", "p2")
        assert new_id == "1-fresh00"

    def test_create_fails_when_backend_down(self, store, backend):
        """Backend failures surface as StorageUnavailable."""
        with patch.object(backend, "set_data", side_effect=StorageUnavailable("down")):
            with pytest.raises(StorageUnavailable):
                store.create("0xA", "p1")
        assert read_index(backend) == []

    def test_index_write_failure_rolls_back_record(self, store, backend):
        """If the index cannot be written, the new record is removed again."""
        real_set = backend.set_data

        def fail_on_index(key, value):
            if key == INDEX_KEY:
                raise StorageUnavailable("index down")
            real_set(key, value)

        with patch.object(backend, "set_data", side_effect=fail_on_index):
            with pytest.raises(StorageUnavailable):
                store.create("0xA", "p1")

        assert backend.keys() == []

    def test_create_refuses_to_overwrite_unreadable_index(self, store, backend):
        """A corrupt index is never replaced by create."""
        backend.set_data(INDEX_KEY, b"not json")
        with pytest.raises(StorageUnavailable):
            store.create("0xA", "p1")
        assert backend.get_data(INDEX_KEY) == b"not json"


class TestListAll:
    """Test listing and ordering."""

    def test_newest_first(self, store, clock):
        """Records are listed by creation time, newest first."""
        old = store.create("0xA", "p1")
        clock.advance(10)
        new = store.create("0xB", "p2")
        assert [r.id for r in store.list_all()] == [new, old]

    def test_ties_keep_index_order(self, store):
        """Records created in the same second keep index order."""
        ids = [store.create("0xA", f"p{i}") for i in range(5)]
        assert [r.id for r in store.list_all()] == ids

    def test_listing_is_idempotent(self, store, clock):
        """Two listings without writes in between are identical."""
        for i in range(5):
            store.create(f"0x{i}", "p")
            clock.advance(i % 2)
        assert store.list_all() == store.list_all()

    def test_malformed_record_is_skipped_and_logged(self, store, backend, caplog):
        """An unparseable record is left out of the listing and logged."""
        good = store.create("0xA", "p1")
        bad = store.create("0xB", "p2")
        backend.set_data(record_key(bad), b"{broken")

        records = store.list_all()

        assert [r.id for r in records] == [good]
        assert bad in caplog.text

    def test_record_missing_fields_is_skipped(self, store, backend, caplog):
        """A JSON record without required fields counts as malformed."""
        good = store.create("0xA", "p1")
        bad = store.create("0xB", "p2")
        backend.set_data(record_key(bad), json.dumps({"status": "pending"}).encode())

        assert [r.id for r in store.list_all()] == [good]
        assert "missing field" in caplog.text

    def test_orphan_index_entry_is_skipped(self, store, backend, caplog):
        """Index entries without a record are skipped and logged."""
        good = store.create("0xA", "p1")
        backend.set_data(INDEX_KEY, json.dumps([good, "ghost"]).encode())

        assert [r.id for r in store.list_all()] == [good]
        assert "ghost" in caplog.text

    def test_duplicate_index_entries_listed_once(self, store, backend):
        """A duplicated id in the index is only listed once."""
        good = store.create("0xA", "p1")
        backend.set_data(INDEX_KEY, json.dumps([good, good]).encode())
        assert [r.id for r in store.list_all()] == [good]

    def test_unreadable_index_reads_as_empty(self, store, backend, caplog):
        """A corrupt index yields an empty listing instead of an error."""
        store.create("0xA", "p1")
        backend.set_data(INDEX_KEY, b"\xff\xfe")
        assert store.list_all() == []
        assert "Error parsing analysis keys" in caplog.text

    def test_storage_errors_propagate(self, store, backend):
        """Transient storage failures are not swallowed by listing."""
        store.create("0xA", "p1")
        with patch.object(backend, "get_data", side_effect=StorageUnavailable("down")):
            with pytest.raises(StorageUnavailable):
                store.list_all()

    def test_get_malformed_record_is_not_found(self, store, backend, caplog):
        """get treats an unparseable record as missing."""
        record_id = store.create("0xA", "p1")
        backend.set_data(record_key(record_id), b"[]")
        with pytest.raises(NotFound):
            store.get(record_id)
        assert record_id in caplog.text


class TestLegacyRecords:
    """Test records written in the original on-chain layout."""

    def test_analyzed_record_missing_results_gets_defaults(self, store, backend):
        """Analysed records without result fields read with the display defaults."""
        backend.set_data(record_key("1-legacy0"), json.dumps({
            "data": "FHE-DNA-e30=",
            "timestamp": 1,
            "owner": "0xA",
            "status": "analyzed",
        }).encode())
        backend.set_data(INDEX_KEY, json.dumps(["1-legacy0"]).encode())

        record = store.get("1-legacy0")
        assert record.category == "Unknown"
        assert record.schedule_start == "22:00"
        assert record.schedule_end == "06:00"
        assert record.peak_window == "10:00-14:00"

    def test_missing_status_reads_as_pending(self, store, backend):
        backend.set_data(record_key("1-legacy1"), json.dumps({
            "data": "x", "timestamp": 1, "owner": "0xA",
        }).encode())
        record = store.get("1-legacy1")
        assert record.status is AnalysisStatus.PENDING
        assert record.category == ""


class TestUpdate:
    """Test full replacement and guarded updates."""

    def test_update_unknown_id_raises_not_found(self, store):
        record = AnalysisRecord(id="nope", encoded_payload="x", created_at=1, owner="0xA")
        with pytest.raises(NotFound):
            store.update("nope", record)

    def test_update_replaces_record(self, store):
        record_id = store.create("0xA", "p1")
        record = store.get(record_id)
        store.update(record_id, record.model_copy(update={"status": AnalysisStatus.ERRORED, "error": "x"}))
        assert store.get(record_id).status is AnalysisStatus.ERRORED

    def test_update_keeps_immutable_fields(self, store):
        """id, owner, creation time and payload cannot be rewritten."""
        record_id = store.create("0xA", "p1")
        forged = store.get(record_id).model_copy(update={
            "owner": "0xEVIL",
            "created_at": 5,
            "encoded_payload": "other",
            "status": AnalysisStatus.ANALYZED,
            "category": "Wolf",
        })
        store.update(record_id, forged)

        stored = store.get(record_id)
        assert stored.owner == "0xA"
        assert stored.created_at != 5
        assert stored.encoded_payload == "p1"
        assert stored.category == "Wolf"

    def test_pending_record_cannot_carry_results(self, store):
        """Results are only written together with the move to Analyzed."""
        record_id = store.create("0xA", "p1")
        pending = store.get(record_id)

        with pytest.raises(InvalidState):
            store.update(record_id, pending.model_copy(update={"category": "Wolf"}))
        with pytest.raises(InvalidState):
            store.compare_and_set(
                record_id,
                AnalysisStatus.PENDING,
                pending.model_copy(update={"status": AnalysisStatus.ERRORED, "peak_window": "05:00-10:00"}),
            )
        assert store.get(record_id).category == ""
        assert store.get(record_id).status is AnalysisStatus.PENDING

    def test_analyzed_results_are_written_once(self, store):
        record_id = store.create("0xA", "p1")
        analysed = store.get(record_id).model_copy(update={
            "status": AnalysisStatus.ANALYZED,
            "category": "Bear",
            "schedule_start": "22:30",
        })
        store.update(record_id, analysed)

        with pytest.raises(InvalidState):
            store.update(record_id, analysed.model_copy(update={"category": "Lion"}))
        with pytest.raises(InvalidState):
            store.compare_and_set(
                record_id,
                AnalysisStatus.ANALYZED,
                analysed.model_copy(update={"schedule_start": "21:00"}),
            )

        stored = store.get(record_id)
        assert stored.category == "Bear"
        assert stored.schedule_start == "22:30"

    def test_terminal_rewrite_with_same_results_is_allowed(self, store):
        record_id = store.create("0xA", "p1")
        analysed = store.get(record_id).model_copy(update={"status": AnalysisStatus.ANALYZED, "category": "Bear"})
        store.update(record_id, analysed)

        store.update(record_id, analysed)
        assert store.get(record_id).category == "Bear"

    def test_update_cannot_reset_terminal_record(self, store):
        """A terminal record never goes back to Pending."""
        record_id = store.create("0xA", "p1")
        pending = store.get(record_id)
        store.update(record_id, pending.model_copy(update={"status": AnalysisStatus.ANALYZED}))

        with pytest.raises(InvalidState):
            store.update(record_id, pending)
        assert store.get(record_id).status is AnalysisStatus.ANALYZED

    def test_compare_and_set_checks_expected_status(self, store):
        record_id = store.create("0xA", "p1")
        pending = store.get(record_id)
        analysed = pending.model_copy(update={"status": AnalysisStatus.ANALYZED, "category": "Bear"})

        stored = store.compare_and_set(record_id, AnalysisStatus.PENDING, analysed)
        assert stored.category == "Bear"

        with pytest.raises(InvalidState):
            store.compare_and_set(record_id, AnalysisStatus.PENDING, analysed)

    def test_compare_and_set_rejects_regression(self, store):
        record_id = store.create("0xA", "p1")
        pending = store.get(record_id)
        store.compare_and_set(
            record_id,
            AnalysisStatus.PENDING,
            pending.model_copy(update={"status": AnalysisStatus.ERRORED}),
        )

        with pytest.raises(InvalidState):
            store.compare_and_set(record_id, AnalysisStatus.ERRORED, pending)


class TestAudit:
    """Test consistency audits."""

    def test_clean_store_is_consistent(self, store):
        for i in range(3):
            store.create(f"0x{i}", "p")
        report = store.audit()
        assert report.is_consistent
        assert report.indexed_count == 3

    def test_audit_finds_problems(self, store, backend):
        good = store.create("0xA", "p1")
        bad = store.create("0xB", "p2")
        backend.set_data(record_key(bad), b"oops")
        backend.set_data(record_key("9-unindexed"), b"{}")
        backend.set_data(INDEX_KEY, json.dumps([good, bad, good, "ghost"]).encode())

        report = store.audit()

        assert not report.is_consistent
        assert report.orphan_ids == ["ghost"]
        assert report.malformed_ids == [bad]
        assert report.duplicate_ids == [good]
        assert report.unindexed_ids == ["9-unindexed"]

    def test_unreadable_index(self, store, backend):
        backend.set_data(INDEX_KEY, b"{")
        report = store.audit()
        assert not report.index_readable
        assert not report.is_consistent


class TestFileBackedStore:
    """Test the store on top of the file backend."""

    def test_records_survive_reopen(self, tmp_path, clock):
        """A second store over the same directory sees earlier records."""
        first = RecordStore(FileBackend(tmp_path / "store"), clock=clock)
        record_id = first.create("0xABC", "seq1")

        second = RecordStore(FileBackend(tmp_path / "store"), clock=clock)
        assert second.get(record_id).owner == "0xABC"
        assert [r.id for r in second.list_all()] == [record_id]
        assert second.audit().is_consistent

    def test_memory_and_file_backends_agree(self, tmp_path, clock):
        for backend in (MemoryBackend(), FileBackend(tmp_path / "agree")):
            store = RecordStore(backend, clock=clock)
            record_id = store.create("0xA", "p")
            assert store.get(record_id).status is AnalysisStatus.PENDING


class TestSharedBackend:
    """Test several stores writing through one backend."""

    @staticmethod
    def create_in_parallel(stores, per_store):
        created = []
        created_lock = threading.Lock()

        def worker(store):
            for _ in range(per_store):
                record_id = store.create("0xA", "p")
                with created_lock:
                    created.append(record_id)

        threads = [threading.Thread(target=worker, args=(s,)) for s in stores]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return created

    def test_two_stores_on_one_directory_keep_every_id(self, tmp_path):
        """Stores opened separately on one directory never drop index entries."""
        directory = tmp_path / "shared"
        first = RecordStore(FileBackend(directory))
        second = RecordStore(FileBackend(directory))

        created = self.create_in_parallel([first, second], 50)

        assert len(set(created)) == 100
        assert sorted(read_index(first.backend)) == sorted(created)
        report = second.audit()
        assert report.is_consistent
        assert report.indexed_count == 100

    def test_stores_on_one_memory_backend_share_its_lock(self, backend):
        stores = [RecordStore(backend) for _ in range(3)]

        created = self.create_in_parallel(stores, 30)

        assert sorted(read_index(backend)) == sorted(created)
        assert stores[0].audit().is_consistent

    def test_lock_file_is_not_a_key(self, tmp_path):
        backend = FileBackend(tmp_path / "store")
        store = RecordStore(backend)
        record_id = store.create("0xA", "p")

        assert backend.keys() == sorted([INDEX_KEY, record_key(record_id)])
