"""Entry registry - lifecycle state machine with write-through persistence.

Every operation follows the same protocol:

1. append a ``pending`` audit record,
2. under the registry lock, compute the next collection by value and
   persist it; the in-memory collection is swapped only after the store
   accepted it, so a failed write leaves the caller observing the
   pre-transition state,
3. append the terminal ``success`` or ``failure`` audit record.

Lifecycle::

    active --soft_delete--> recently_deleted --expire/hide--> hidden
       ^                          |                              |
       +--------restore/undo------+-----------restore------------+

``permanently_delete`` removes an entry from any state.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Optional

from .audit import AuditLog, AuditOperation
from .models import (
    AuditCategory,
    Clock,
    EntryState,
    EntryType,
    JournalEntry,
    SystemClock,
    format_timestamp,
    generate_id,
    normalize_entry_dict,
)
from .notify import NullNotifier, Notifier
from .scheduler import ExpiryScheduler
from .storage import JsonStore, PersistenceError

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30
DEFAULT_UNDO_WINDOW = 7.0  # seconds
ENTRIES_KEY = "journal-entries"
ENTRY_KEY_PREFIX = "entry-"

UPDATABLE_FIELDS = ("title", "content", "tags", "mood", "ai_analysis")
IMMUTABLE_FIELDS = ("id", "type", "created_at", "updated_at", "deleted_at", "state")

Analyzer = Callable[[JournalEntry], dict]


class DiaryError(Exception):
    """Base exception for diary operations."""
    pass


class EntryNotFoundError(DiaryError):
    """Raised when an operation references an id that does not exist."""

    def __init__(self, entry_id: str):
        super().__init__(f"Entry not found: {entry_id}")
        self.entry_id = entry_id


class ValidationError(DiaryError):
    """Raised when input fields are malformed. Nothing has been changed."""
    pass


class InvalidTransitionError(ValidationError):
    """Raised when an operation is not allowed from the entry's current state."""

    def __init__(self, entry_id: str, state: EntryState, operation: str):
        super().__init__(f"Cannot {operation} entry {entry_id} in state '{state.value}'")
        self.entry_id = entry_id
        self.state = state
        self.operation = operation


@dataclass(frozen=True)
class UndoHandle:
    """Stored pre-delete snapshot plus the time window in which undo works."""
    token: str
    entry_id: str
    snapshot: JournalEntry
    expires_at: datetime

    def is_open(self, now: datetime) -> bool:
        return now < self.expires_at


class EntryRegistry:
    """Single owner of the in-memory entry collection."""

    def __init__(
        self,
        store: JsonStore,
        audit: AuditLog,
        clock: Optional[Clock] = None,
        notifier: Optional[Notifier] = None,
        scheduler: Optional[ExpiryScheduler] = None,
        analyzer: Optional[Analyzer] = None,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        undo_window: float = DEFAULT_UNDO_WINDOW,
        per_entry_records: bool = False,
        entries_key: str = ENTRIES_KEY,
    ):
        self.store = store
        self.audit = audit
        self.clock = clock or SystemClock()
        self.notifier = notifier or NullNotifier()
        self.scheduler = scheduler
        self.analyzer = analyzer
        self.retention = timedelta(days=retention_days)
        self.undo_window = timedelta(seconds=undo_window)
        self.per_entry_records = per_entry_records
        self.entries_key = entries_key

        self._entries: dict[str, JournalEntry] = {}
        self._undo: dict[str, UndoHandle] = {}
        self._lock = threading.RLock()
        self.initialized = False

    # ========== Audit and notification helpers ==========

    def begin_operation(self, action: str, message: str, details: Optional[dict[str, Any]] = None,
                        category: str = AuditCategory.JOURNAL) -> Optional[AuditOperation]:
        """Append the pending record of an operation. Audit failures are logged, never raised."""
        try:
            return self.audit.operation(category, action, message, details)
        except Exception:
            logger.warning("Audit append failed for %s (pending)", action, exc_info=True)
            return None

    def finish_success(self, op: Optional[AuditOperation], message: str,
                       details: Optional[dict[str, Any]] = None) -> None:
        if op is None:
            return
        try:
            op.succeed(message, details)
        except Exception:
            logger.warning("Audit append failed for %s (success)", op.action, exc_info=True)

    def finish_failure(self, op: Optional[AuditOperation], message: str, error: BaseException) -> None:
        if op is None:
            return
        try:
            op.fail(message, error, {"errorType": type(error).__name__})
        except Exception:
            logger.warning("Audit append failed for %s (failure)", op.action, exc_info=True)

    def _notify(self, message: str, level: str = "info", undo: Optional[UndoHandle] = None) -> None:
        try:
            self.notifier.notify(message, level=level, undo=undo)
        except Exception:
            logger.warning("Notifier failed for message %r", message, exc_info=True)

    # ========== Persistence ==========

    def _write_through(self, entries: dict[str, JournalEntry], changed: Iterable[str] = ()) -> None:
        """Persist a candidate collection. Caller holds the lock.

        Raises:
            PersistenceError: If the collection record cannot be written.
        """
        self.store.save(self.entries_key, [e.to_dict() for e in entries.values()])

        if not self.per_entry_records:
            return
        for entry_id in changed:
            key = f"{ENTRY_KEY_PREFIX}{entry_id}"
            try:
                if entry_id in entries:
                    self.store.save(key, entries[entry_id].to_dict())
                else:
                    self.store.remove(key)
            except PersistenceError as e:
                # Redundant copy only; the collection record is authoritative.
                logger.warning("Per-entry record %s not updated: %s", key, e)

    def _commit(self, entry_id: str, new: Optional[JournalEntry]) -> None:
        """Replace (or remove, when ``new`` is None) one entry by value."""
        candidate = dict(self._entries)
        if new is None:
            candidate.pop(entry_id, None)
        else:
            candidate[entry_id] = new
        self._write_through(candidate, changed=[entry_id])
        self._entries = candidate

    def _require(self, entry_id: str) -> JournalEntry:
        entry = self._entries.get(entry_id)
        if entry is None:
            raise EntryNotFoundError(entry_id)
        return entry

    def _bump(self, entry: JournalEntry, now: datetime) -> datetime:
        # updatedAt never moves backwards, even if the clock does.
        return max(now, entry.updated_at)

    def _run(
        self,
        action: str,
        message: str,
        details: dict[str, Any],
        fn: Callable[[], Any],
        failure_notice: Optional[str] = None,
    ) -> Any:
        op = self.begin_operation(action, message, details)
        try:
            with self._lock:
                result = fn()
        except (DiaryError, PersistenceError) as e:
            self.finish_failure(op, f"{action} failed: {e}", e)
            if failure_notice:
                self._notify(f"{failure_notice}: {e}", level="error")
            raise
        self.finish_success(op, f"{action} succeeded", self._result_details(result))
        return result

    @staticmethod
    def _result_details(result: Any) -> dict[str, Any]:
        if isinstance(result, JournalEntry):
            return {"entryId": result.id, "state": result.state.value}
        if isinstance(result, UndoHandle):
            return {"entryId": result.entry_id, "undoExpiresAt": format_timestamp(result.expires_at)}
        return {}

    # ========== Initialization ==========

    def initialize(self) -> int:
        """Load, normalize and admit persisted entries, then catch up on expiry.

        Legacy or malformed records are normalized to the three-state model
        and the normalized collection is persisted once.

        Returns:
            Number of entries loaded.

        Raises:
            PersistenceError: If the collection record cannot be read.
        """
        op = self.begin_operation("initialize", "Loading journal entries", {"key": self.entries_key})
        try:
            with self._lock:
                loaded, fixes = self._load_entries()
                if fixes:
                    self._write_through(loaded, changed=loaded.keys())
                self._entries = loaded
                self.initialized = True
        except PersistenceError as e:
            self.finish_failure(op, "Failed to load journal entries", e)
            self._notify(f"Could not load journal entries: {e}", level="error")
            raise
        self.finish_success(op, f"Loaded {len(loaded)} journal entries",
                            {"count": len(loaded), "fixes": fixes[:50], "fixCount": len(fixes)})

        self.check_deleted_entries()
        self._rearm_timers()
        return len(loaded)

    def _load_entries(self) -> tuple[dict[str, JournalEntry], list[str]]:
        raw = self.store.load(self.entries_key)
        now = self.clock.now()
        entries: dict[str, JournalEntry] = {}
        fixes: list[str] = []

        if raw is None:
            return entries, fixes
        if not isinstance(raw, list):
            raise PersistenceError(f"Record '{self.entries_key}' is not a list", key=self.entries_key)

        for position, item in enumerate(raw):
            if not isinstance(item, dict):
                fixes.append(f"dropped non-object record at position {position}")
                continue
            record, entry_fixes = normalize_entry_dict(item, now)
            if record["id"] in entries:
                fixes.append(f"dropped duplicate id {record['id']}")
                continue
            entries[record["id"]] = JournalEntry.from_dict(record)
            fixes.extend(f"{record['id']}: {fix}" for fix in entry_fixes)
        return entries, fixes

    def _rearm_timers(self) -> None:
        if self.scheduler is None:
            return
        with self._lock:
            pending = [e for e in self._entries.values() if e.state is EntryState.RECENTLY_DELETED]
        for entry in pending:
            self._schedule_expiry(entry)

    # ========== Timers ==========

    def _schedule_expiry(self, entry: JournalEntry) -> None:
        if self.scheduler is None or entry.deleted_at is None:
            return
        due = entry.deleted_at + self.retention
        delay = (due - self.clock.now()).total_seconds()
        self.scheduler.schedule(entry.id, delay, self.expire_entry)

    def _cancel_expiry(self, entry_id: str) -> None:
        if self.scheduler is not None:
            self.scheduler.cancel(entry_id)

    def _drop_undo(self, entry_id: str) -> None:
        for token in [t for t, h in self._undo.items() if h.entry_id == entry_id]:
            del self._undo[token]

    def _prune_undo(self, now: datetime) -> None:
        for token in [t for t, h in self._undo.items() if not h.is_open(now)]:
            del self._undo[token]

    # ========== Lifecycle operations ==========

    def create_entry(
        self,
        title: str,
        content: str,
        type: EntryType | str = EntryType.JOURNAL,
        tags: Optional[Iterable[str]] = None,
        mood: Optional[str] = None,
    ) -> JournalEntry:
        """Create a new active entry.

        Raises:
            ValidationError: If fields are malformed.
            PersistenceError: If the entry could not be saved.
        """
        def create() -> JournalEntry:
            entry_type = _validate_type(type)
            _validate_text("title", title)
            _validate_text("content", content)
            if not title.strip() and not content.strip():
                raise ValidationError("An entry needs a title or content")
            if mood is not None:
                _validate_text("mood", mood)

            now = self.clock.now()
            entry = JournalEntry(
                id=self._new_id(),
                title=title,
                content=content,
                type=entry_type,
                tags=_clean_tags(tags),
                created_at=now,
                updated_at=now,
                mood=mood,
            )
            self._commit(entry.id, entry)
            return entry

        return self._run("create_entry", "Creating journal entry",
                         {"title": title if isinstance(title, str) else None}, create,
                         failure_notice="Failed to create entry")

    def _new_id(self) -> str:
        entry_id = generate_id()
        while entry_id in self._entries:
            entry_id = generate_id()
        return entry_id

    def update_entry(self, entry_id: str, **fields: Any) -> JournalEntry:
        """Apply a field diff to an entry in any state.

        Accepted fields: ``title``, ``content``, ``tags``, ``mood``,
        ``ai_analysis``.

        Raises:
            EntryNotFoundError, ValidationError, PersistenceError
        """
        def update() -> JournalEntry:
            changes = _validate_update(fields)
            entry = self._require(entry_id)
            updated = entry.evolve(**changes, updated_at=self._bump(entry, self.clock.now()))
            self._commit(entry_id, updated)
            return updated

        return self._run("update_entry", f"Updating entry {entry_id}",
                         {"entryId": entry_id, "fields": sorted(fields)}, update,
                         failure_notice="Failed to update entry")

    def soft_delete_entry(self, entry_id: str) -> UndoHandle:
        """Move an active entry to ``recently_deleted``.

        Returns:
            Undo handle, valid for the configured undo window.

        Raises:
            EntryNotFoundError, InvalidTransitionError, PersistenceError
        """
        def soft_delete() -> UndoHandle:
            entry = self._require(entry_id)
            if entry.state is not EntryState.ACTIVE:
                raise InvalidTransitionError(entry_id, entry.state, "soft-delete")
            now = self.clock.now()
            deleted = entry.evolve(
                state=EntryState.RECENTLY_DELETED,
                deleted_at=now,
                updated_at=self._bump(entry, now),
            )
            self._commit(entry_id, deleted)

            self._prune_undo(now)
            handle = UndoHandle(
                token=generate_id(),
                entry_id=entry_id,
                snapshot=entry,
                expires_at=now + self.undo_window,
            )
            self._undo[handle.token] = handle
            self._schedule_expiry(deleted)
            return handle

        handle = self._run("soft_delete_entry", f"Moving entry {entry_id} to recently deleted",
                           {"entryId": entry_id}, soft_delete,
                           failure_notice="Failed to delete entry")
        self._notify("Entry moved to recently deleted", undo=handle)
        return handle

    def undo(self, handle: UndoHandle | str) -> bool:
        """Reverse a soft delete while its undo window is open.

        After the window elapses, or once the entry has left
        ``recently_deleted``, this is a no-op.

        Returns:
            True if the entry was restored, False if there was nothing to undo.

        Raises:
            PersistenceError: If the restore cannot be written. The handle
                stays valid, so the caller may retry while the window is open.
        """
        token = handle.token if isinstance(handle, UndoHandle) else handle
        with self._lock:
            self._prune_undo(self.clock.now())
            stored = self._undo.get(token)
            if stored is None:
                return False
            current = self._entries.get(stored.entry_id)
            if current is None or current.state is not EntryState.RECENTLY_DELETED:
                del self._undo[token]
                return False

        try:
            self._restore(stored.entry_id, via="undo", expected=EntryState.RECENTLY_DELETED)
        except (EntryNotFoundError, InvalidTransitionError):
            # The entry moved on between the check and the restore.
            return False
        return True

    def restore_entry(self, entry_id: str) -> JournalEntry:
        """Bring a recently deleted or hidden entry back to ``active``.

        Raises:
            EntryNotFoundError, InvalidTransitionError, PersistenceError
        """
        return self._restore(entry_id, via="restore")

    def _restore(self, entry_id: str, via: str,
                 expected: Optional[EntryState] = None) -> JournalEntry:
        def restore() -> JournalEntry:
            entry = self._require(entry_id)
            if entry.state is EntryState.ACTIVE or (expected is not None and entry.state is not expected):
                raise InvalidTransitionError(entry_id, entry.state, "restore")
            restored = entry.evolve(
                state=EntryState.ACTIVE,
                deleted_at=None,
                updated_at=self._bump(entry, self.clock.now()),
            )
            self._commit(entry_id, restored)
            self._cancel_expiry(entry_id)
            self._drop_undo(entry_id)
            return restored

        entry = self._run("restore_entry", f"Restoring entry {entry_id}",
                          {"entryId": entry_id, "via": via}, restore,
                          failure_notice="Failed to restore entry")
        self._notify("Entry restored")
        return entry

    def hide_entry(self, entry_id: str) -> JournalEntry:
        """Manually move a recently deleted entry to ``hidden``.

        Raises:
            EntryNotFoundError, InvalidTransitionError, PersistenceError
        """
        def hide() -> JournalEntry:
            entry = self._require(entry_id)
            if entry.state is not EntryState.RECENTLY_DELETED:
                raise InvalidTransitionError(entry_id, entry.state, "hide")
            return self._to_hidden(entry)

        entry = self._run("hide_entry", f"Hiding entry {entry_id}",
                          {"entryId": entry_id}, hide,
                          failure_notice="Failed to hide entry")
        self._notify("Entry hidden")
        return entry

    def _to_hidden(self, entry: JournalEntry) -> JournalEntry:
        # deletedAt is kept: hidden counts as a later stage of deletion.
        hidden = entry.evolve(
            state=EntryState.HIDDEN,
            updated_at=self._bump(entry, self.clock.now()),
        )
        self._commit(entry.id, hidden)
        self._cancel_expiry(entry.id)
        self._drop_undo(entry.id)
        return hidden

    def expire_entry(self, entry_id: str) -> bool:
        """Timer callback: hide an entry if it is still recently deleted.

        Returns:
            True if the entry transitioned, False if it was a no-op.
        """
        with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None or entry.state is not EntryState.RECENTLY_DELETED:
                return False

        def expire() -> Optional[JournalEntry]:
            # Re-checked under the lock: a restore may have won the race.
            current = self._entries.get(entry_id)
            if current is None or current.state is not EntryState.RECENTLY_DELETED:
                return None
            return self._to_hidden(current)

        hidden = self._run("expire_entry", f"Expiring entry {entry_id}",
                           {"entryId": entry_id}, expire,
                           failure_notice="Failed to hide expired entry")
        if hidden is None:
            return False
        self._notify("Entry moved to hidden after retention period")
        return True

    def permanently_delete_entry(self, entry_id: str) -> None:
        """Remove an entry from the collection, from any state.

        Raises:
            EntryNotFoundError, PersistenceError
        """
        def remove() -> None:
            entry = self._require(entry_id)
            self._commit(entry_id, None)
            self._cancel_expiry(entry_id)
            self._drop_undo(entry_id)
            logger.info("Entry %s permanently deleted from state %s", entry_id, entry.state.value)

        self._run("permanently_delete_entry", f"Permanently deleting entry {entry_id}",
                  {"entryId": entry_id}, remove,
                  failure_notice="Failed to permanently delete entry")
        self._notify("Entry permanently deleted")

    def check_deleted_entries(self, now: Optional[datetime] = None) -> list[str]:
        """Hide every recently deleted entry older than the retention window.

        Safe to run repeatedly; entries already moved are skipped.

        Returns:
            Ids of entries that were hidden by this sweep.
        """
        now = now or self.clock.now()
        cutoff = now - self.retention
        with self._lock:
            due = [
                e.id for e in self._entries.values()
                if e.state is EntryState.RECENTLY_DELETED
                and e.deleted_at is not None
                and e.deleted_at < cutoff
            ]

        op = self.begin_operation("check_deleted_entries", "Sweeping recently deleted entries",
                                  {"cutoff": format_timestamp(cutoff), "candidates": len(due)})
        hidden: list[str] = []
        failed: list[str] = []
        for entry_id in due:
            try:
                if self.expire_entry(entry_id):
                    hidden.append(entry_id)
            except PersistenceError:
                failed.append(entry_id)

        details = {"hidden": hidden, "failed": failed}
        if failed:
            self.finish_failure(op, f"Sweep could not hide {len(failed)} entries",
                                PersistenceError(f"{len(failed)} entries not persisted"))
        else:
            self.finish_success(op, f"Sweep hid {len(hidden)} entries", details)
        return hidden

    # ========== Analysis ==========

    def analyze_entry(self, entry_id: str) -> Optional[dict]:
        """Run the external analyzer and store its result on the entry.

        Analyzer failures are audited and logged, never raised.

        Returns:
            The analysis, or None if no analyzer is configured or it failed.

        Raises:
            EntryNotFoundError: If the entry does not exist.
        """
        entry = self.get_entry(entry_id)
        if self.analyzer is None:
            return None

        op = self.begin_operation("analyze_entry", f"Analyzing entry {entry_id}",
                                  {"entryId": entry_id}, category=AuditCategory.AI)
        try:
            analysis = self.analyzer(entry)
            if not isinstance(analysis, dict):
                raise TypeError(f"Analyzer returned {type(analysis).__name__}, expected dict")
        except Exception as e:
            logger.warning("Analysis of entry %s failed: %s", entry_id, e)
            self.finish_failure(op, "Entry analysis failed", e)
            return None
        self.finish_success(op, "Entry analysis completed", {"entryId": entry_id})

        self.update_entry(entry_id, ai_analysis=analysis)
        return analysis

    # ========== Queries ==========

    def get_entry(self, entry_id: str) -> JournalEntry:
        with self._lock:
            return self._require(entry_id)

    def list_entries(self) -> list[JournalEntry]:
        with self._lock:
            return list(self._entries.values())

    def _by_state(self, state: EntryState) -> list[JournalEntry]:
        with self._lock:
            return [e for e in self._entries.values() if e.state is state]

    def list_active(self) -> list[JournalEntry]:
        return self._by_state(EntryState.ACTIVE)

    def list_recently_deleted(self) -> list[JournalEntry]:
        return self._by_state(EntryState.RECENTLY_DELETED)

    def list_hidden(self) -> list[JournalEntry]:
        return self._by_state(EntryState.HIDDEN)

    def search_entries(
        self,
        text: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        state: Optional[EntryState] = EntryState.ACTIVE,
    ) -> list[JournalEntry]:
        """Case-insensitive search over title, content and tags.

        Args:
            text: Substring to look for
            tags: Every tag listed must be present on the entry
            state: Restrict to one state; None searches all states
        """
        needle = text.lower() if text else None
        wanted = set(tags or ())
        results = []
        for entry in self.list_entries():
            if state is not None and entry.state is not state:
                continue
            if wanted and not wanted.issubset(entry.tags):
                continue
            if needle:
                haystacks = [entry.title, entry.content, *entry.tags]
                if not any(needle in h.lower() for h in haystacks):
                    continue
            results.append(entry)
        return results

    def stats(self) -> dict[str, Any]:
        """Entry counts per state and per type."""
        entries = self.list_entries()
        return {
            "total": len(entries),
            "by_state": {s.value: sum(1 for e in entries if e.state is s) for s in EntryState},
            "by_type": {t.value: sum(1 for e in entries if e.type is t) for t in EntryType},
        }

    def close(self) -> None:
        """Stop timers and the sweep thread."""
        if self.scheduler is not None:
            self.scheduler.stop()


def _validate_text(name: str, value: Any) -> None:
    if not isinstance(value, str):
        raise ValidationError(f"Field '{name}' must be a string")


def _validate_type(value: EntryType | str) -> EntryType:
    if isinstance(value, EntryType):
        return value
    try:
        return EntryType(value)
    except ValueError:
        allowed = [t.value for t in EntryType]
        raise ValidationError(f"Invalid entry type {value!r}. Allowed: {allowed}")


def _clean_tags(tags: Optional[Iterable[str]]) -> tuple[str, ...]:
    if tags is None:
        return ()
    if isinstance(tags, str):
        raise ValidationError("Field 'tags' must be a list of strings")
    cleaned: list[str] = []
    for tag in tags:
        if not isinstance(tag, str):
            raise ValidationError("Field 'tags' must be a list of strings")
        tag = tag.strip()
        if tag and tag not in cleaned:
            cleaned.append(tag)
    return tuple(cleaned)


def _validate_update(fields: dict[str, Any]) -> dict[str, Any]:
    if not fields:
        raise ValidationError("No fields to update")
    immutable = sorted(set(fields) & set(IMMUTABLE_FIELDS))
    if immutable:
        raise ValidationError(f"Fields cannot be changed: {immutable}")
    unknown = sorted(set(fields) - set(UPDATABLE_FIELDS))
    if unknown:
        raise ValidationError(f"Unknown fields: {unknown}")

    changes: dict[str, Any] = {}
    for name, value in fields.items():
        if name in ("title", "content"):
            _validate_text(name, value)
            changes[name] = value
        elif name == "tags":
            changes[name] = _clean_tags(value)
        elif name == "mood":
            if value is not None:
                _validate_text(name, value)
            changes[name] = value
        elif name == "ai_analysis":
            if value is not None and not isinstance(value, dict):
                raise ValidationError("Field 'ai_analysis' must be an object")
            changes[name] = value
    return changes
