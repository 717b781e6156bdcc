"""Tests for the entry registry lifecycle."""

import threading
from collections import Counter
from datetime import timedelta

import pytest

from mcp_diary.audit import AuditLog
from mcp_diary.models import AuditStatus, EntryState, EntryType, format_timestamp
from mcp_diary.registry import (
    EntryNotFoundError,
    EntryRegistry,
    InvalidTransitionError,
    UndoHandle,
    ValidationError,
)
from mcp_diary.storage import PersistenceError

from conftest import START


def _persisted(store):
    return {r["id"]: r for r in store.load("journal-entries") or []}


def _records_for(audit, action):
    return list(reversed(list(audit.query(actions=[action]))))


class TestCreateEntry:
    """Tests for create_entry."""

    def test_create_starts_active(self, registry, clock):
        entry = registry.create_entry("Morning", "Coffee and rain", tags=["weather"])

        assert entry.state is EntryState.ACTIVE
        assert entry.created_at == entry.updated_at == clock.now()
        assert entry.deleted_at is None
        assert entry.type is EntryType.JOURNAL
        assert entry.tags == ("weather",)

    def test_create_persists_immediately(self, registry, store):
        entry = registry.create_entry("Title", "Body", type="memory", mood="calm")

        saved = _persisted(store)[entry.id]
        assert saved["state"] == "active"
        assert saved["type"] == "memory"
        assert saved["mood"] == "calm"
        assert "deletedAt" not in saved

    def test_ids_unique(self, registry):
        ids = {registry.create_entry(f"t{i}", "").id for i in range(25)}
        assert len(ids) == 25

    def test_tags_cleaned_and_deduplicated(self, registry):
        entry = registry.create_entry("t", "c", tags=[" a ", "b", "a", ""])
        assert entry.tags == ("a", "b")

    def test_title_or_content_required(self, registry):
        with pytest.raises(ValidationError, match="title or content"):
            registry.create_entry("  ", "")
        assert registry.list_entries() == []

    @pytest.mark.parametrize("kwargs", [
        {"title": 3, "content": "x"},
        {"title": "x", "content": None},
        {"title": "x", "content": "y", "type": "dream"},
        {"title": "x", "content": "y", "tags": "not-a-list"},
        {"title": "x", "content": "y", "tags": ["ok", 5]},
        {"title": "x", "content": "y", "mood": 7},
    ])
    def test_malformed_fields_rejected(self, registry, kwargs):
        with pytest.raises(ValidationError):
            registry.create_entry(**kwargs)
        assert registry.list_entries() == []

    def test_create_audited_as_pair(self, registry, audit):
        entry = registry.create_entry("Audited", "yes")

        pending, success = _records_for(audit, "create_entry")
        assert pending.status is AuditStatus.PENDING
        assert success.status is AuditStatus.SUCCESS
        assert pending.operation_id == success.operation_id
        assert success.details["entryId"] == entry.id


class TestUpdateEntry:
    """Tests for update_entry."""

    def test_update_changes_fields_and_timestamp(self, registry, clock):
        entry = registry.create_entry("Old", "old body")
        clock.advance(minutes=5)

        updated = registry.update_entry(entry.id, title="New", tags=["x"])

        assert updated.title == "New"
        assert updated.content == "old body"
        assert updated.tags == ("x",)
        assert updated.created_at == entry.created_at
        assert updated.updated_at == clock.now()
        assert registry.get_entry(entry.id) == updated

    def test_updated_at_never_goes_backwards(self, registry, clock):
        entry = registry.create_entry("t", "c")
        clock.advance(minutes=-10)

        updated = registry.update_entry(entry.id, content="edited")

        assert updated.updated_at == entry.updated_at

    @pytest.mark.parametrize("field", ["id", "type", "created_at", "state", "deleted_at"])
    def test_immutable_fields_rejected(self, registry, field):
        entry = registry.create_entry("t", "c")
        with pytest.raises(ValidationError, match="cannot be changed"):
            registry.update_entry(entry.id, **{field: "x"})
        assert registry.get_entry(entry.id) == entry

    def test_unknown_field_rejected(self, registry):
        entry = registry.create_entry("t", "c")
        with pytest.raises(ValidationError, match="Unknown fields"):
            registry.update_entry(entry.id, color="blue")

    def test_empty_update_rejected(self, registry):
        entry = registry.create_entry("t", "c")
        with pytest.raises(ValidationError, match="No fields"):
            registry.update_entry(entry.id)

    def test_update_missing_entry(self, registry):
        with pytest.raises(EntryNotFoundError):
            registry.update_entry("missing", title="x")

    def test_update_keeps_lifecycle_state(self, registry):
        entry = registry.create_entry("t", "c")
        registry.soft_delete_entry(entry.id)

        updated = registry.update_entry(entry.id, content="edited while deleted")

        assert updated.state is EntryState.RECENTLY_DELETED
        assert updated.deleted_at is not None

    def test_concurrent_updates_with_disjoint_fields(self, registry, store, clock):
        entry = registry.create_entry("t", "c")
        clock.advance(minutes=1)
        changes = [{"title": "T"}, {"content": "C"}, {"tags": ["a"]}, {"mood": "calm"}]
        barrier = threading.Barrier(len(changes))
        errors = []

        def worker(fields):
            barrier.wait()
            try:
                registry.update_entry(entry.id, **fields)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(c,)) for c in changes]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        final = registry.get_entry(entry.id)
        assert (final.title, final.content, final.tags, final.mood) == ("T", "C", ("a",), "calm")
        assert final.updated_at == clock.now()
        persisted = _persisted(store)[entry.id]
        assert (persisted["title"], persisted["content"], persisted["tags"], persisted["mood"]) == (
            "T", "C", ["a"], "calm",
        )

    def test_clear_mood(self, registry):
        entry = registry.create_entry("t", "c", mood="happy")
        assert registry.update_entry(entry.id, mood=None).mood is None


class TestSoftDeleteAndUndo:
    """Tests for soft_delete_entry and undo."""

    def test_soft_delete(self, registry, clock, store):
        entry = registry.create_entry("t", "c")
        clock.advance(minutes=1)

        handle = registry.soft_delete_entry(entry.id)

        deleted = registry.get_entry(entry.id)
        assert deleted.state is EntryState.RECENTLY_DELETED
        assert deleted.deleted_at == clock.now()
        assert deleted.updated_at == clock.now()
        assert isinstance(handle, UndoHandle)
        assert handle.snapshot == entry
        assert handle.expires_at == clock.now() + timedelta(seconds=7)
        assert _persisted(store)[entry.id]["deletedAt"] == format_timestamp(clock.now())

    def test_soft_delete_notifies_with_undo(self, registry, notifier):
        entry = registry.create_entry("t", "c")
        handle = registry.soft_delete_entry(entry.id)

        message, level, undo = notifier.messages[-1]
        assert "recently deleted" in message
        assert level == "info"
        assert undo is handle

    @pytest.mark.parametrize("prepare", ["soft_delete", "hide"])
    def test_soft_delete_only_from_active(self, registry, prepare):
        entry = registry.create_entry("t", "c")
        registry.soft_delete_entry(entry.id)
        if prepare == "hide":
            registry.hide_entry(entry.id)
        before = registry.get_entry(entry.id)

        with pytest.raises(InvalidTransitionError):
            registry.soft_delete_entry(entry.id)

        assert registry.get_entry(entry.id) == before

    def test_undo_within_window(self, registry, clock):
        entry = registry.create_entry("t", "c")
        handle = registry.soft_delete_entry(entry.id)
        clock.advance(seconds=5)

        assert registry.undo(handle) is True

        restored = registry.get_entry(entry.id)
        assert restored.state is EntryState.ACTIVE
        assert restored.deleted_at is None

    def test_undo_by_token(self, registry):
        entry = registry.create_entry("t", "c")
        handle = registry.soft_delete_entry(entry.id)

        assert registry.undo(handle.token) is True
        assert registry.get_entry(entry.id).is_active

    def test_undo_after_window_is_noop(self, registry, clock, audit):
        entry = registry.create_entry("t", "c")
        handle = registry.soft_delete_entry(entry.id)
        clock.advance(seconds=8)

        assert registry.undo(handle) is False
        assert registry.get_entry(entry.id).state is EntryState.RECENTLY_DELETED
        assert _records_for(audit, "restore_entry") == []

    def test_undo_only_once(self, registry):
        entry = registry.create_entry("t", "c")
        handle = registry.soft_delete_entry(entry.id)

        assert registry.undo(handle) is True
        registry.soft_delete_entry(entry.id)
        assert registry.undo(handle) is False
        assert registry.get_entry(entry.id).state is EntryState.RECENTLY_DELETED

    def test_undo_after_restore_is_noop(self, registry):
        entry = registry.create_entry("t", "c")
        handle = registry.soft_delete_entry(entry.id)
        registry.restore_entry(entry.id)

        assert registry.undo(handle) is False

    def test_undo_unknown_token(self, registry):
        assert registry.undo("no-such-token") is False

    def test_undo_audited_as_restore(self, registry, audit):
        entry = registry.create_entry("t", "c")
        registry.undo(registry.soft_delete_entry(entry.id))

        pending, success = _records_for(audit, "restore_entry")
        assert pending.details["via"] == "undo"
        assert success.status is AuditStatus.SUCCESS


class TestRestoreHideDelete:
    """Tests for restore_entry, hide_entry and permanently_delete_entry."""

    def test_restore_from_recently_deleted(self, registry):
        entry = registry.create_entry("t", "c")
        registry.soft_delete_entry(entry.id)

        restored = registry.restore_entry(entry.id)

        assert restored.state is EntryState.ACTIVE
        assert restored.deleted_at is None

    def test_restore_from_hidden(self, registry):
        entry = registry.create_entry("t", "c")
        registry.soft_delete_entry(entry.id)
        registry.hide_entry(entry.id)

        assert registry.restore_entry(entry.id).state is EntryState.ACTIVE

    def test_restore_active_rejected(self, registry, audit):
        entry = registry.create_entry("t", "c")

        with pytest.raises(InvalidTransitionError):
            registry.restore_entry(entry.id)

        pending, failure = _records_for(audit, "restore_entry")
        assert failure.status is AuditStatus.FAILURE
        assert failure.operation_id == pending.operation_id

    def test_hide_keeps_deleted_at(self, registry, clock):
        entry = registry.create_entry("t", "c")
        registry.soft_delete_entry(entry.id)
        deleted_at = clock.now()
        clock.advance(days=2)

        hidden = registry.hide_entry(entry.id)

        assert hidden.state is EntryState.HIDDEN
        assert hidden.deleted_at == deleted_at
        assert hidden.updated_at == clock.now()

    def test_hide_active_rejected(self, registry):
        entry = registry.create_entry("t", "c")
        with pytest.raises(InvalidTransitionError):
            registry.hide_entry(entry.id)
        assert registry.get_entry(entry.id).is_active

    @pytest.mark.parametrize("target", ["active", "recently_deleted", "hidden"])
    def test_permanent_delete_from_any_state(self, registry, store, target):
        entry = registry.create_entry("t", "c")
        if target != "active":
            registry.soft_delete_entry(entry.id)
        if target == "hidden":
            registry.hide_entry(entry.id)

        registry.permanently_delete_entry(entry.id)

        with pytest.raises(EntryNotFoundError):
            registry.get_entry(entry.id)
        assert entry.id not in _persisted(store)

    def test_permanent_delete_missing(self, registry, notifier):
        with pytest.raises(EntryNotFoundError):
            registry.permanently_delete_entry("ghost")
        assert notifier.errors == ["Failed to permanently delete entry: Entry not found: ghost"]

    def test_operations_on_missing_entry(self, registry):
        for op in (registry.soft_delete_entry, registry.restore_entry, registry.hide_entry,
                   registry.get_entry):
            with pytest.raises(EntryNotFoundError) as exc_info:
                op("ghost")
            assert exc_info.value.entry_id == "ghost"


class TestExpiry:
    """Tests for retention expiry through the sweep."""

    def test_entry_hidden_after_retention(self, registry, clock, notifier):
        entry = registry.create_entry("t", "c")
        registry.soft_delete_entry(entry.id)
        clock.advance(days=31)

        assert registry.check_deleted_entries() == [entry.id]
        assert registry.get_entry(entry.id).state is EntryState.HIDDEN
        assert any("hidden after retention" in m for m, _, _ in notifier.messages)

    def test_not_hidden_before_retention(self, registry, clock):
        entry = registry.create_entry("t", "c")
        registry.soft_delete_entry(entry.id)
        clock.advance(days=29, hours=23)

        assert registry.check_deleted_entries() == []
        assert registry.get_entry(entry.id).state is EntryState.RECENTLY_DELETED

    def test_sweep_is_idempotent(self, registry, clock):
        entry = registry.create_entry("t", "c")
        registry.soft_delete_entry(entry.id)
        clock.advance(days=31)

        registry.check_deleted_entries()
        hidden_once = registry.get_entry(entry.id)
        assert registry.check_deleted_entries() == []
        assert registry.get_entry(entry.id) == hidden_once

    def test_sweep_ignores_active_and_hidden(self, registry, clock):
        active = registry.create_entry("a", "")
        hidden = registry.create_entry("h", "")
        registry.soft_delete_entry(hidden.id)
        registry.hide_entry(hidden.id)
        clock.advance(days=60)

        assert registry.check_deleted_entries() == []
        assert registry.get_entry(active.id).is_active

    def test_expire_after_restore_is_noop(self, registry, clock):
        entry = registry.create_entry("t", "c")
        registry.soft_delete_entry(entry.id)
        registry.restore_entry(entry.id)
        clock.advance(days=31)

        assert registry.expire_entry(entry.id) is False
        assert registry.get_entry(entry.id).is_active

    def test_expire_releases_lock_during_audit_flush(self, registry, store, clock, monkeypatch):
        entry = registry.create_entry("t", "c")
        registry.soft_delete_entry(entry.id)
        clock.advance(days=31)
        held_during_flush = []
        original_save = store.save

        def lock_held_elsewhere():
            result = []

            def attempt():
                acquired = registry._lock.acquire(blocking=False)
                if acquired:
                    registry._lock.release()
                result.append(not acquired)

            t = threading.Thread(target=attempt)
            t.start()
            t.join()
            return result[0]

        def save(key, value):
            if key == "app-logs":
                held_during_flush.append(lock_held_elsewhere())
            original_save(key, value)

        monkeypatch.setattr(store, "save", save)

        assert registry.expire_entry(entry.id) is True
        assert held_during_flush == [False, False]

    def test_expire_missing_entry_is_noop(self, registry):
        assert registry.expire_entry("ghost") is False

    def test_sweep_audit_records(self, registry, clock, audit):
        entry = registry.create_entry("t", "c")
        registry.soft_delete_entry(entry.id)
        clock.advance(days=31)
        registry.check_deleted_entries()

        sweep = _records_for(audit, "check_deleted_entries")[-1]
        assert sweep.status is AuditStatus.SUCCESS
        assert sweep.details["hidden"] == [entry.id]
        assert [r.status for r in _records_for(audit, "expire_entry")] == [
            AuditStatus.PENDING, AuditStatus.SUCCESS,
        ]

    def test_sweep_reports_persistence_failure(self, registry, clock, store, notifier):
        entry = registry.create_entry("t", "c")
        registry.soft_delete_entry(entry.id)
        clock.advance(days=31)
        store.failing = True
        store.fail_keys = {"journal-entries"}

        assert registry.check_deleted_entries() == []
        assert registry.get_entry(entry.id).state is EntryState.RECENTLY_DELETED
        assert any("Failed to hide expired entry" in m for m in notifier.errors)

        store.failing = False
        assert registry.check_deleted_entries() == [entry.id]


class TestSoftDeleteScenario:
    """Create, soft delete, wait out retention, restore."""

    def test_full_cycle(self, registry, clock, store):
        entry = registry.create_entry("Trip", "Mountains", type=EntryType.MEMORY)
        assert _persisted(store)[entry.id]["state"] == "active"

        clock.advance(hours=1)
        registry.soft_delete_entry(entry.id)
        assert [e.id for e in registry.list_recently_deleted()] == [entry.id]
        assert registry.list_active() == []

        clock.advance(days=31)
        registry.check_deleted_entries()
        assert [e.id for e in registry.list_hidden()] == [entry.id]
        assert _persisted(store)[entry.id]["state"] == "hidden"

        restored = registry.restore_entry(entry.id)
        assert restored.state is EntryState.ACTIVE
        assert restored.deleted_at is None
        assert restored.created_at == START
        assert _persisted(store)[entry.id]["state"] == "active"
        assert "deletedAt" not in _persisted(store)[entry.id]


class TestPersistenceFailure:
    """A failed write leaves the pre-transition state observable."""

    def test_create_rolls_back(self, registry, store, audit, notifier):
        store.failing = True

        with pytest.raises(PersistenceError):
            registry.create_entry("t", "c")

        assert registry.list_entries() == []
        pending, failure = _records_for(audit, "create_entry")
        assert failure.status is AuditStatus.FAILURE
        assert "Simulated write failure" in failure.error
        assert any("Failed to create entry" in m for m in notifier.errors)

    def test_soft_delete_rolls_back(self, registry, store):
        entry = registry.create_entry("t", "c")
        store.failing = True

        with pytest.raises(PersistenceError):
            registry.soft_delete_entry(entry.id)

        assert registry.get_entry(entry.id) == entry
        store.failing = False
        assert _persisted(store)[entry.id]["state"] == "active"

    def test_restore_rolls_back(self, registry, store):
        entry = registry.create_entry("t", "c")
        registry.soft_delete_entry(entry.id)
        deleted = registry.get_entry(entry.id)
        store.failing = True

        with pytest.raises(PersistenceError):
            registry.restore_entry(entry.id)

        assert registry.get_entry(entry.id) == deleted

    def test_permanent_delete_rolls_back(self, registry, store):
        entry = registry.create_entry("t", "c")
        store.failing = True

        with pytest.raises(PersistenceError):
            registry.permanently_delete_entry(entry.id)

        assert registry.get_entry(entry.id) == entry

    def test_undo_failure_keeps_handle_for_retry(self, registry, store, audit, notifier, clock):
        entry = registry.create_entry("t", "c")
        handle = registry.soft_delete_entry(entry.id)
        store.failing = True

        with pytest.raises(PersistenceError):
            registry.undo(handle)

        assert registry.get_entry(entry.id).state is EntryState.RECENTLY_DELETED
        assert _records_for(audit, "restore_entry")[-1].status is AuditStatus.FAILURE
        assert any("Failed to restore entry" in m for m in notifier.errors)

        store.failing = False
        clock.advance(seconds=3)
        assert registry.undo(handle) is True
        assert registry.get_entry(entry.id).state is EntryState.ACTIVE
        assert registry.undo(handle) is False

    def test_audit_flush_failure_does_not_break_operation(self, registry, store, audit):
        store.failing = True
        store.fail_keys = {"app-logs"}

        entry = registry.create_entry("t", "c")

        assert registry.get_entry(entry.id) == entry
        assert audit.flush_failures >= 2
        assert len(_records_for(audit, "create_entry")) == 2


class TestAuditPairing:

    def test_every_pending_has_one_terminal(self, registry, clock, audit):
        a = registry.create_entry("a", "")
        b = registry.create_entry("b", "")
        registry.update_entry(a.id, content="x")
        handle = registry.soft_delete_entry(a.id)
        registry.undo(handle)
        registry.soft_delete_entry(b.id)
        clock.advance(days=31)
        registry.check_deleted_entries()
        registry.restore_entry(b.id)
        registry.permanently_delete_entry(a.id)
        with pytest.raises(EntryNotFoundError):
            registry.hide_entry("ghost")

        by_operation = Counter()
        for record in audit.records():
            assert record.operation_id is not None
            by_operation[(record.operation_id, record.status is AuditStatus.PENDING)] += 1

        operation_ids = {op_id for op_id, _ in by_operation}
        for op_id in operation_ids:
            assert by_operation[(op_id, True)] == 1
            assert by_operation[(op_id, False)] == 1


class TestInitialize:
    """Tests for loading and normalizing persisted entries."""

    def _fresh(self, store, clock, notifier, **kwargs):
        registry = EntryRegistry(store, AuditLog(store=store, clock=clock), clock=clock,
                                 notifier=notifier, **kwargs)
        registry.initialize()
        return registry

    def test_reload_round_trip(self, registry, store, clock, notifier):
        a = registry.create_entry("a", "body", tags=["t"], mood="ok")
        b = registry.create_entry("b", "")
        registry.soft_delete_entry(b.id)

        reloaded = self._fresh(store, clock, notifier)

        assert reloaded.get_entry(a.id) == registry.get_entry(a.id)
        assert reloaded.get_entry(b.id) == registry.get_entry(b.id)

    def test_legacy_records_normalized_and_persisted(self, store, clock, notifier):
        ts = format_timestamp(START - timedelta(days=1))
        store.save("journal-entries", [
            {"id": "plain", "title": "t", "content": "c", "createdAt": ts, "updatedAt": ts},
            {"id": "legacy-hidden", "title": "t", "content": "c", "createdAt": ts,
             "updatedAt": ts, "hidden": True},
            {"id": "legacy-is-hidden", "title": "t", "content": "c", "createdAt": ts,
             "updatedAt": ts, "isHidden": True},
            {"id": "deleted", "title": "t", "content": "c", "createdAt": ts,
             "updatedAt": ts, "deletedAt": ts},
            {"id": "visible-flag", "title": "t", "content": "c", "createdAt": ts,
             "updatedAt": ts, "hidden": False},
        ])

        registry = self._fresh(store, clock, notifier)

        states = {e.id: e.state for e in registry.list_entries()}
        assert states == {
            "plain": EntryState.ACTIVE,
            "legacy-hidden": EntryState.HIDDEN,
            "legacy-is-hidden": EntryState.HIDDEN,
            "deleted": EntryState.RECENTLY_DELETED,
            "visible-flag": EntryState.ACTIVE,
        }
        saved = store.load("journal-entries")
        assert all("hidden" not in r and "isHidden" not in r for r in saved)
        assert all(r["state"] in {"active", "recently_deleted", "hidden"} for r in saved)

    def test_canonical_collection_not_rewritten(self, registry, store, clock, notifier):
        registry.create_entry("t", "c")
        store.save_calls.clear()

        self._fresh(store, clock, notifier)

        assert "journal-entries" not in store.save_calls

    def test_malformed_records_repaired(self, store, clock, notifier):
        store.save("journal-entries", [
            {"title": 5, "createdAt": "yesterday"},
            "not an object",
            {"id": "dup", "title": "a", "content": ""},
            {"id": "dup", "title": "b", "content": ""},
        ])

        registry = self._fresh(store, clock, notifier)

        entries = registry.list_entries()
        assert len(entries) == 2
        repaired = [e for e in entries if e.id != "dup"][0]
        assert repaired.title == "Untitled Entry"
        assert repaired.created_at == clock.now()
        assert registry.get_entry("dup").title == "a"

    def test_overdue_entries_hidden_on_start(self, store, clock, notifier):
        old = format_timestamp(START - timedelta(days=45))
        store.save("journal-entries", [
            {"id": "old", "title": "t", "content": "", "createdAt": old, "updatedAt": old,
             "state": "recently_deleted", "deletedAt": old},
        ])

        registry = self._fresh(store, clock, notifier)

        assert registry.get_entry("old").state is EntryState.HIDDEN

    def test_corrupt_collection_raises(self, store, clock, notifier):
        store.root.mkdir(parents=True, exist_ok=True)
        (store.root / "journal-entries.json").write_text("[{", encoding="utf-8")

        with pytest.raises(PersistenceError):
            self._fresh(store, clock, notifier)
        assert notifier.errors

    def test_collection_not_a_list_raises(self, store, clock, notifier):
        store.save("journal-entries", {"id": "x"})
        with pytest.raises(PersistenceError, match="not a list"):
            self._fresh(store, clock, notifier)


class TestPerEntryRecords:

    def test_records_written_and_removed(self, registry_factory, store):
        registry = registry_factory(per_entry_records=True)
        entry = registry.create_entry("t", "c")
        assert store.load(f"entry-{entry.id}")["id"] == entry.id

        registry.soft_delete_entry(entry.id)
        assert store.load(f"entry-{entry.id}")["state"] == "recently_deleted"

        registry.permanently_delete_entry(entry.id)
        assert store.load(f"entry-{entry.id}") is None

    def test_per_entry_failure_is_not_fatal(self, registry_factory, store):
        registry = registry_factory(per_entry_records=True)
        store.failing = True
        store.fail_keys = set()

        def fail_entry_keys_only(key):
            return store.failing and key.startswith("entry-")

        store._should_fail = fail_entry_keys_only
        entry = registry.create_entry("t", "c")

        assert entry.id in _persisted(store)
        assert store.load(f"entry-{entry.id}") is None


class TestAnalysis:
    """Tests for analyze_entry."""

    def test_analysis_stored(self, registry_factory):
        registry = registry_factory(analyzer=lambda e: {"words": len(e.content.split())})
        entry = registry.create_entry("t", "one two three")

        assert registry.analyze_entry(entry.id) == {"words": 3}
        assert registry.get_entry(entry.id).ai_analysis == {"words": 3}

    def test_analyzer_failure_swallowed(self, registry_factory, audit):
        def broken(entry):
            raise RuntimeError("service unavailable")

        registry = registry_factory(analyzer=broken)
        entry = registry.create_entry("t", "c")

        assert registry.analyze_entry(entry.id) is None
        assert registry.get_entry(entry.id).ai_analysis is None
        failure = _records_for(audit, "analyze_entry")[-1]
        assert failure.category == "ai"
        assert failure.status is AuditStatus.FAILURE
        assert "service unavailable" in failure.error

    def test_analyzer_must_return_dict(self, registry_factory):
        registry = registry_factory(analyzer=lambda e: "positive")
        entry = registry.create_entry("t", "c")
        assert registry.analyze_entry(entry.id) is None

    def test_no_analyzer(self, registry):
        entry = registry.create_entry("t", "c")
        assert registry.analyze_entry(entry.id) is None


class TestQueries:

    def test_search_text_and_tags(self, registry):
        a = registry.create_entry("Beach day", "Sun", tags=["summer", "family"])
        registry.create_entry("Snow", "Cold", tags=["winter"])
        c = registry.create_entry("Notes", "beach cleanup", tags=["summer"])

        assert {e.id for e in registry.search_entries(text="BEACH")} == {a.id, c.id}
        assert [e.id for e in registry.search_entries(tags=["summer", "family"])] == [a.id]
        assert [e.id for e in registry.search_entries(text="family")] == [a.id]

    def test_search_state_filter(self, registry):
        a = registry.create_entry("gone", "")
        registry.soft_delete_entry(a.id)

        assert registry.search_entries(text="gone") == []
        assert len(registry.search_entries(text="gone", state=None)) == 1
        assert len(registry.search_entries(state=EntryState.RECENTLY_DELETED)) == 1

    def test_stats(self, registry):
        registry.create_entry("a", "", type="memory")
        b = registry.create_entry("b", "")
        registry.soft_delete_entry(b.id)

        stats = registry.stats()

        assert stats["total"] == 2
        assert stats["by_state"] == {"active": 1, "recently_deleted": 1, "hidden": 0}
        assert stats["by_type"] == {"journal": 1, "memory": 1, "mindfulness": 0}

    def test_list_preserves_insertion_order(self, registry):
        ids = [registry.create_entry(f"t{i}", "").id for i in range(5)]
        assert [e.id for e in registry.list_active()] == ids


class TestNotifier:

    def test_notifier_errors_do_not_break_operations(self, registry_factory):
        class Exploding:
            def notify(self, message, *, level="info", undo=None):
                raise RuntimeError("toast failed")

        registry = registry_factory(notifier=Exploding())
        entry = registry.create_entry("t", "c")
        registry.soft_delete_entry(entry.id)

        assert registry.get_entry(entry.id).state is EntryState.RECENTLY_DELETED
