"""Append-only audit log with capacity eviction and retention sweep.

Records are kept newest-first in memory and flushed to the store after
every append. The log never raises from ``append`` because of its own
flush: a failed flush is reported through :mod:`logging` and the record
stays queryable for the rest of the session.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Iterator, Optional

from .models import (
    AuditLevel,
    AuditRecord,
    AuditStatus,
    Clock,
    SystemClock,
    format_timestamp,
    generate_id,
    parse_timestamp,
)
from .storage import JsonStore, StoreError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ENTRIES = 1000
DEFAULT_RETENTION_DAYS = 7
DEFAULT_STORAGE_KEY = "app-logs"


def _as_set(values: Optional[Iterable[Any]]) -> Optional[frozenset]:
    if values is None:
        return None
    if isinstance(values, (str, AuditLevel, AuditStatus)):
        values = [values]
    return frozenset(v.value if isinstance(v, (AuditLevel, AuditStatus)) else v for v in values)


@dataclass(frozen=True)
class AuditFilter:
    """Predicates for :meth:`AuditLog.query`. Unset fields match everything.

    All set predicates must match (logical AND). Set-valued predicates
    match when the record's value is any member of the set.
    """
    levels: Optional[frozenset] = None
    categories: Optional[frozenset] = None
    statuses: Optional[frozenset] = None
    actions: Optional[frozenset] = None
    search: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None

    @classmethod
    def build(
        cls,
        levels: Optional[Iterable[Any]] = None,
        categories: Optional[Iterable[str]] = None,
        statuses: Optional[Iterable[Any]] = None,
        actions: Optional[Iterable[str]] = None,
        search: Optional[str] = None,
        since: Optional[datetime | str] = None,
        until: Optional[datetime | str] = None,
    ) -> AuditFilter:
        """Build a filter from loosely-typed arguments (enums or strings)."""
        if isinstance(since, str):
            since = parse_timestamp(since)
        if isinstance(until, str):
            until = parse_timestamp(until)
        return cls(
            levels=_as_set(levels) or None,
            categories=_as_set(categories) or None,
            statuses=_as_set(statuses) or None,
            actions=_as_set(actions) or None,
            search=search.lower() if search else None,
            since=since,
            until=until,
        )

    def matches(self, record: AuditRecord) -> bool:
        if self.levels is not None and record.level.value not in self.levels:
            return False
        if self.categories is not None and record.category not in self.categories:
            return False
        if self.statuses is not None and record.status.value not in self.statuses:
            return False
        if self.actions is not None and record.action not in self.actions:
            return False
        if self.search:
            haystacks = [record.message, record.action, record.error or ""]
            if not any(self.search in h.lower() for h in haystacks):
                return False
        if self.since is not None and record.timestamp < self.since:
            return False
        if self.until is not None and record.timestamp > self.until:
            return False
        return True


class AuditLog:
    """Bounded, queryable, append-only record of operation attempts."""

    def __init__(
        self,
        store: Optional[JsonStore] = None,
        clock: Optional[Clock] = None,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        storage_key: str = DEFAULT_STORAGE_KEY,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.store = store
        self.clock = clock or SystemClock()
        self.max_entries = max_entries
        self.retention_days = retention_days
        self.storage_key = storage_key
        self.flush_failures = 0
        self._records: list[AuditRecord] = []  # newest first
        self._lock = threading.Lock()
        self._flush_lock = threading.Lock()
        self._loaded = False

    def __len__(self) -> int:
        return len(self._records)

    def load(self) -> int:
        """Restore persisted records. Only the first call has any effect.

        Returns:
            Number of records restored.
        """
        # Held across the read so no flush can overwrite the file before it is merged.
        with self._flush_lock:
            if self._loaded or self.store is None:
                self._loaded = True
                return 0
            self._loaded = True

            try:
                raw = self.store.load(self.storage_key)
            except StoreError as e:
                logger.error("Cannot load audit log '%s', starting empty: %s", self.storage_key, e)
                return 0
            if not isinstance(raw, list):
                return 0

            restored = []
            for item in raw:
                try:
                    restored.append(AuditRecord.from_dict(item))
                except (KeyError, TypeError, ValueError, AttributeError) as e:
                    logger.warning("Skipping malformed audit record: %s", e)

            restored.sort(key=lambda r: r.timestamp, reverse=True)
            with self._lock:
                # Anything appended before load() is newer than what was on disk.
                self._records = (self._records + restored)[: self.max_entries]
            return len(restored)

    def append(
        self,
        level: AuditLevel | str,
        category: str,
        action: str,
        message: str,
        status: AuditStatus | str,
        details: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
        operation_id: Optional[str] = None,
    ) -> AuditRecord:
        """Append a record, generating its id and timestamp.

        Returns:
            The materialized record.
        """
        status = AuditStatus(status)
        record = AuditRecord(
            id=generate_id(),
            timestamp=self.clock.now(),
            level=AuditLevel(level),
            category=category,
            action=action,
            message=message,
            status=status,
            details=dict(details or {}),
            error=error if status is AuditStatus.FAILURE else None,
            operation_id=operation_id,
        )
        self._insert(record)
        return record

    def append_record(self, record: AuditRecord) -> AuditRecord:
        """Append a record supplied by a collaborator.

        The id and timestamp are always regenerated by the log.
        """
        return self.append(
            level=record.level,
            category=record.category,
            action=record.action,
            message=record.message,
            status=record.status,
            details=record.details,
            error=record.error,
            operation_id=record.operation_id,
        )

    def _insert(self, record: AuditRecord) -> None:
        if not self._loaded:
            # The first flush would otherwise overwrite what is on disk.
            self.load()
        with self._lock:
            self._records.insert(0, record)
            if len(self._records) > self.max_entries:
                del self._records[self.max_entries:]
        self._flush()

    def _flush(self) -> None:
        if self.store is None:
            return
        # Snapshot under the flush lock so a later flush never writes older state.
        with self._flush_lock:
            with self._lock:
                snapshot = [r.to_dict() for r in self._records]
            self._save(snapshot)

    def _save(self, snapshot: list[dict[str, Any]]) -> None:
        try:
            self.store.save(self.storage_key, snapshot)
        except Exception as e:
            # Reported through logging only: re-appending here would recurse.
            self.flush_failures += 1
            logger.warning("Audit log flush failed (%d so far): %s", self.flush_failures, e)

    def query(self, filter: Optional[AuditFilter] = None, **criteria: Any) -> Iterator[AuditRecord]:
        """Yield matching records, newest first.

        Either pass an :class:`AuditFilter` or keyword criteria accepted by
        :meth:`AuditFilter.build`. The iteration runs over a snapshot taken
        at call time.
        """
        if filter is None:
            filter = AuditFilter.build(**criteria)
        with self._lock:
            snapshot = list(self._records)
        return (r for r in snapshot if filter.matches(r))

    def records(self) -> list[AuditRecord]:
        with self._lock:
            return list(self._records)

    def cleanup(self, now: Optional[datetime] = None) -> int:
        """Drop records older than the retention window.

        Returns:
            Number of records removed.
        """
        cutoff = (now or self.clock.now()) - timedelta(days=self.retention_days)
        with self._lock:
            kept = [r for r in self._records if r.timestamp > cutoff]
            removed = len(self._records) - len(kept)
            self._records = kept
        if removed:
            self._flush()
        return removed

    def clear(self) -> None:
        with self._lock:
            self._records = []
        self._flush()

    def export(self) -> str:
        """Export all records as a JSON array (newest first)."""
        return json.dumps([r.to_dict() for r in self.records()], indent=2, ensure_ascii=False)

    def export_bundle(self) -> dict[str, Any]:
        """Export records together with summary metadata."""
        records = self.records()
        return {
            "timestamp": format_timestamp(self.clock.now()),
            "entries": [r.to_dict() for r in records],
            "metadata": {
                "totalEntries": len(records),
                "dateRange": {
                    "start": format_timestamp(records[-1].timestamp) if records else None,
                    "end": format_timestamp(records[0].timestamp) if records else None,
                },
            },
        }

    def operation(
        self,
        category: str,
        action: str,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> AuditOperation:
        """Start a logged operation by appending its ``pending`` record."""
        op = AuditOperation(self, category, action, details)
        op.begin(message)
        return op


class AuditOperation:
    """Pairs one ``pending`` record with exactly one terminal record."""

    def __init__(self, log: AuditLog, category: str, action: str, details: Optional[dict[str, Any]] = None):
        self.log = log
        self.category = category
        self.action = action
        self.details = dict(details or {})
        self.operation_id = generate_id()
        self.finished = False

    def begin(self, message: str) -> AuditRecord:
        return self.log.append(
            AuditLevel.INFO, self.category, self.action, message,
            AuditStatus.PENDING, self.details, operation_id=self.operation_id,
        )

    def succeed(self, message: str, details: Optional[dict[str, Any]] = None,
                level: AuditLevel = AuditLevel.INFO) -> Optional[AuditRecord]:
        return self._finish(level, message, AuditStatus.SUCCESS, details, None)

    def fail(self, message: str, error: BaseException | str,
             details: Optional[dict[str, Any]] = None) -> Optional[AuditRecord]:
        return self._finish(AuditLevel.ERROR, message, AuditStatus.FAILURE, details, str(error))

    def _finish(self, level, message, status, details, error) -> Optional[AuditRecord]:
        if self.finished:
            return None
        self.finished = True
        merged = {**self.details, **(details or {})}
        return self.log.append(
            level, self.category, self.action, message, status, merged,
            error=error, operation_id=self.operation_id,
        )
