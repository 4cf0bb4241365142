"""Tests for the local mutation log."""

import json
import threading
import time

import pytest

from aigenda.sync import ChangeAction, MemoryStorage, MutationLog, StorageError
from aigenda.sync.storage import PENDING_CHANGES_KEY

ONE_HOUR_MS = 60 * 60 * 1000


class FlakyStorage(MemoryStorage):
    """Storage whose writes fail until ``healthy`` is set."""

    def __init__(self):
        super().__init__()
        self.healthy = False
        self.write_attempts = 0

    def set(self, key, value):
        self.write_attempts += 1
        if not self.healthy:
            raise StorageError("disk full")
        super().set(key, value)


class GatedStorage(MemoryStorage):
    """Storage whose first write blocks until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()
        self._gated = True

    def set(self, key, value):
        if self._gated:
            self._gated = False
            self.entered.set()
            self.release.wait(timeout=5)
        super().set(key, value)


class TestEnqueue:
    """Appending pending changes."""

    def test_create_without_id_gets_local_id(self, mutation_log, clock):
        entity_id = mutation_log.enqueue("tasks", "create", {"title": "Call Acme"})

        assert entity_id.startswith(f"local_{clock.now}_")
        entries = mutation_log.entries("tasks")
        assert len(entries) == 1
        assert entries[0].data == {"title": "Call Acme", "id": entity_id}
        assert entries[0].synced is False
        assert entries[0].timestamp == clock.now

    def test_create_keeps_supplied_id(self, mutation_log):
        assert mutation_log.enqueue("tasks", "create", {"id": "srv-1"}) == "srv-1"

    def test_update_without_id_does_not_generate_one(self, mutation_log):
        assert mutation_log.enqueue("tasks", "update", {"title": "x"}) is None

    def test_caller_payload_is_not_mutated(self, mutation_log):
        payload = {"title": "Call Acme"}
        mutation_log.enqueue("tasks", "create", payload)
        assert payload == {"title": "Call Acme"}

    def test_local_ids_are_unique(self, mutation_log):
        ids = {mutation_log.enqueue("tasks", "create", {}) for _ in range(50)}
        assert len(ids) == 50

    def test_custom_prefix(self, storage, clock):
        log = MutationLog(storage, clock=clock, local_id_prefix="tmp-")
        entity_id = log.enqueue("tasks", ChangeAction.CREATE, {})
        assert entity_id.startswith("tmp-")
        assert log.is_local_id(entity_id)
        assert not log.is_local_id("42")

    def test_rejects_unknown_action(self, mutation_log):
        with pytest.raises(ValueError):
            mutation_log.enqueue("tasks", "upsert", {})

    def test_rejects_empty_entity_type(self, mutation_log):
        with pytest.raises(ValueError):
            mutation_log.enqueue("", "create", {})

    def test_persists_full_store(self, mutation_log, storage):
        entity_id = mutation_log.enqueue("tasks", "create", {"title": "a"})
        blob = json.loads(storage.get(PENDING_CHANGES_KEY))
        assert blob["tasks"][0]["data"]["id"] == entity_id
        assert blob["tasks"][0]["action"] == "create"
        assert blob["tasks"][0]["synced"] is False

    def test_entries_stay_in_timestamp_order(self, mutation_log, clock):
        mutation_log.enqueue("tasks", "create", {"id": "b"})
        clock.now -= 500
        mutation_log.enqueue("tasks", "create", {"id": "a"})

        assert [e.entity_id for e in mutation_log.entries("tasks")] == ["a", "b"]


class TestGetUnsynced:
    """Snapshots of unacknowledged changes."""

    def test_empty_log_returns_empty_mapping(self, mutation_log):
        assert mutation_log.get_unsynced() == {}

    def test_fully_synced_types_are_omitted(self, mutation_log):
        mutation_log.enqueue("tasks", "create", {"id": "t1"})
        mutation_log.enqueue("activities", "create", {"id": "a1"})
        mutation_log.mark_synced({"tasks": ["t1"]})

        unsynced = mutation_log.get_unsynced()
        assert list(unsynced) == ["activities"]
        assert unsynced["activities"][0].entity_id == "a1"

    def test_snapshot_is_detached(self, mutation_log):
        mutation_log.enqueue("tasks", "create", {"id": "t1", "title": "a"})
        snapshot = mutation_log.get_unsynced()
        snapshot["tasks"][0].data["title"] = "changed"
        snapshot["tasks"][0].synced = True

        entry = mutation_log.entries("tasks")[0]
        assert entry.data["title"] == "a"
        assert entry.synced is False


class TestMarkSynced:
    """Acknowledgement and retention sweeping."""

    def test_marks_every_matching_entry(self, mutation_log):
        mutation_log.enqueue("tasks", "create", {"id": "t1"})
        mutation_log.enqueue("tasks", "update", {"id": "t1", "title": "b"})
        mutation_log.enqueue("tasks", "create", {"id": "t2"})

        assert mutation_log.mark_synced({"tasks": ["t1"]}) == 2
        assert [e.entity_id for e in mutation_log.get_unsynced()["tasks"]] == ["t2"]

    def test_second_call_is_noop(self, mutation_log, storage):
        mutation_log.enqueue("tasks", "create", {"id": "t1"})
        assert mutation_log.mark_synced({"tasks": ["t1"]}) == 1
        before = storage.get(PENDING_CHANGES_KEY)

        assert mutation_log.mark_synced({"tasks": ["t1"]}) == 0
        assert storage.get(PENDING_CHANGES_KEY) == before

    def test_unknown_entity_type_is_ignored(self, mutation_log):
        mutation_log.enqueue("tasks", "create", {"id": "t1"})
        assert mutation_log.mark_synced({"notes": ["t1"]}) == 0

    def test_clears_stale_error(self, mutation_log):
        mutation_log.enqueue("tasks", "create", {"id": "t1"})
        mutation_log.attach_error("tasks", "t1", "INVALID_DATA", "bad")
        mutation_log.mark_synced({"tasks": ["t1"]})

        entry = mutation_log.entries("tasks")[0]
        assert entry.synced is True
        assert entry.error is None

    def test_old_synced_entries_are_swept(self, mutation_log, clock):
        mutation_log.enqueue("tasks", "create", {"id": "old"})
        mutation_log.mark_synced({"tasks": ["old"]})
        clock.advance(ONE_HOUR_MS + 1)

        mutation_log.enqueue("tasks", "create", {"id": "new"})

        assert [e.entity_id for e in mutation_log.entries("tasks")] == ["new"]

    def test_recent_synced_entries_are_kept(self, mutation_log, clock):
        mutation_log.enqueue("tasks", "create", {"id": "t1"})
        mutation_log.mark_synced({"tasks": ["t1"]})
        clock.advance(ONE_HOUR_MS - 1)
        mutation_log.enqueue("tasks", "create", {"id": "t2"})

        assert [e.entity_id for e in mutation_log.entries("tasks")] == ["t1", "t2"]

    def test_unsynced_entries_are_never_swept(self, mutation_log, clock):
        mutation_log.enqueue("tasks", "create", {"id": "ancient"})
        clock.advance(100 * ONE_HOUR_MS)
        mutation_log.enqueue("activities", "create", {"id": "a1"})
        mutation_log.mark_synced({"activities": ["a1"]})

        assert [e.entity_id for e in mutation_log.get_unsynced()["tasks"]] == ["ancient"]

    def test_retention_measured_from_entry_timestamp(self, mutation_log, clock):
        mutation_log.enqueue("tasks", "create", {"id": "t1"})
        clock.advance(ONE_HOUR_MS + 5)
        # Marked long after creation, so the very same call sweeps it
        mutation_log.mark_synced({"tasks": ["t1"]})

        assert mutation_log.entries("tasks") == []


class TestConflictsAndErrors:
    """Server-driven entry updates."""

    def test_resolve_conflict_takes_server_version(self, mutation_log):
        mutation_log.enqueue("tasks", "create", {"id": "t1", "title": "mine"})
        resolved = mutation_log.resolve_conflict("tasks", "t1", {"id": "t1", "title": "theirs"})

        assert resolved.data == {"id": "t1", "title": "theirs"}
        entry = mutation_log.entries("tasks")[0]
        assert entry.synced is True
        assert entry.data["title"] == "theirs"

    def test_resolve_conflict_only_touches_first_unsynced(self, mutation_log):
        mutation_log.enqueue("tasks", "create", {"id": "t1", "title": "a"})
        mutation_log.enqueue("tasks", "update", {"id": "t1", "title": "b"})
        mutation_log.resolve_conflict("tasks", "t1", {"id": "t1", "title": "server"})

        entries = mutation_log.entries("tasks")
        assert entries[0].synced is True
        assert entries[1].synced is False
        assert entries[1].data["title"] == "b"

    def test_resolve_unknown_conflict_returns_none(self, mutation_log):
        assert mutation_log.resolve_conflict("tasks", "nope", {}) is None

    def test_attach_error_leaves_entry_unsynced(self, mutation_log):
        mutation_log.enqueue("tasks", "create", {"id": "t1"})
        errored = mutation_log.attach_error("tasks", "t1", "PERMISSION_DENIED", "not yours")

        assert errored.error.code == "PERMISSION_DENIED"
        entry = mutation_log.entries("tasks")[0]
        assert entry.synced is False
        assert entry.error.message == "not yours"
        assert mutation_log.errored_count() == 1
        assert "tasks" in mutation_log.get_unsynced()

    def test_discard_removes_pending_entries(self, mutation_log):
        mutation_log.enqueue("tasks", "create", {"id": "t1"})
        mutation_log.enqueue("tasks", "update", {"id": "t1"})
        mutation_log.enqueue("tasks", "create", {"id": "t2"})

        assert mutation_log.discard("tasks", "t1") == 2
        assert [e.entity_id for e in mutation_log.entries("tasks")] == ["t2"]

    def test_discard_errored(self, mutation_log):
        mutation_log.enqueue("tasks", "create", {"id": "t1"})
        mutation_log.enqueue("activities", "create", {"id": "a1"})
        mutation_log.attach_error("tasks", "t1", "INVALID_DATA")

        assert mutation_log.discard_errored() == 1
        assert mutation_log.get_errored() == {}
        assert list(mutation_log.get_unsynced()) == ["activities"]


class TestPersistence:
    """Round-trips and storage failures."""

    def test_reload_round_trips_entries(self, mutation_log, storage, clock):
        mutation_log.enqueue("tasks", "create", {"id": "t1", "title": "a"})
        mutation_log.enqueue("tasks", "delete", {"id": "t0"})
        mutation_log.attach_error("tasks", "t0", "INVALID_DATA", "gone")

        reloaded = MutationLog(storage, clock=clock)
        reloaded.load()

        entries = reloaded.entries("tasks")
        assert [e.entity_id for e in entries] == ["t1", "t0"]
        assert entries[1].action == ChangeAction.DELETE
        assert entries[1].error.code == "INVALID_DATA"

    def test_corrupt_blob_is_ignored(self, storage, clock):
        storage.set(PENDING_CHANGES_KEY, "{not json")
        log = MutationLog(storage, clock=clock)

        assert log.load() == {}
        assert log.pending_count() == 0

    def test_write_failure_is_reported_not_raised(self, clock):
        flaky = FlakyStorage()
        log = MutationLog(flaky, clock=clock)

        entity_id = log.enqueue("tasks", "create", {"title": "a"})

        assert entity_id is not None
        assert isinstance(log.last_persist_error, StorageError)
        assert log.pending_count() == 1

    def test_write_failure_is_retried_on_next_mutation(self, clock):
        flaky = FlakyStorage()
        log = MutationLog(flaky, clock=clock)
        log.enqueue("tasks", "create", {"id": "t1"})

        flaky.healthy = True
        log.enqueue("tasks", "create", {"id": "t2"})

        assert log.last_persist_error is None
        blob = json.loads(flaky.get(PENDING_CHANGES_KEY))
        assert [e["data"]["id"] for e in blob["tasks"]] == ["t1", "t2"]

    def test_clear_removes_storage_key(self, mutation_log, storage):
        mutation_log.enqueue("tasks", "create", {})
        mutation_log.clear()

        assert storage.get(PENDING_CHANGES_KEY) is None
        assert mutation_log.pending_count() == 0

    def test_concurrent_writes_never_leave_stale_store(self, clock):
        gated = GatedStorage()
        log = MutationLog(gated, clock=clock)

        first = threading.Thread(target=log.enqueue, args=("tasks", "create", {"id": "A"}))
        first.start()
        assert gated.entered.wait(timeout=5)

        second = threading.Thread(target=log.enqueue, args=("tasks", "create", {"id": "B"}))
        second.start()
        time.sleep(0.05)
        gated.release.set()
        first.join(timeout=5)
        second.join(timeout=5)

        durable = json.loads(gated.get(PENDING_CHANGES_KEY))
        assert [e["data"]["id"] for e in durable["tasks"]] == ["A", "B"]
        assert [e.entity_id for e in log.entries("tasks")] == ["A", "B"]
