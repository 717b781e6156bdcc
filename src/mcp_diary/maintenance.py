"""Integrity checks and backups of the entry collection."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .models import AuditCategory, EntryState, format_timestamp, parse_timestamp
from .registry import EntryRegistry
from .storage import PersistenceError

logger = logging.getLogger(__name__)

BACKUP_PREFIX = "backup-"
BACKUP_VERSION = "1.0"
DEFAULT_MAX_BACKUPS = 5
DEFAULT_BACKUP_INTERVAL_HOURS = 24.0
DEFAULT_INTEGRITY_INTERVAL_HOURS = 24.0

REQUIRED_FIELDS = ("id", "title", "content", "type", "createdAt", "updatedAt", "state", "tags")


@dataclass
class IntegrityReport:
    """Result of an integrity check over the persisted collection."""
    passed: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    checked_entries: int = 0
    timestamp: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "errors": self.errors,
            "warnings": self.warnings,
            "checked_entries": self.checked_entries,
            "timestamp": format_timestamp(self.timestamp) if self.timestamp else None,
        }


@dataclass
class BackupStatus:
    """Outcome of one backup run."""
    key: str
    timestamp: datetime
    entry_count: int
    passed: bool
    mismatches: list[str] = field(default_factory=list)
    pruned: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "timestamp": format_timestamp(self.timestamp),
            "entry_count": self.entry_count,
            "passed": self.passed,
            "mismatches": self.mismatches,
            "pruned": self.pruned,
        }


def _check_record(record: Any, seen: set[str]) -> list[str]:
    if not isinstance(record, dict):
        return ["record is not an object"]

    problems = [f"missing required field: {name}" for name in REQUIRED_FIELDS if name not in record]

    entry_id = record.get("id")
    if not isinstance(entry_id, str):
        problems.append("invalid id type")
    elif entry_id in seen:
        problems.append("duplicate id")
    else:
        seen.add(entry_id)

    for name in ("title", "content"):
        if name in record and not isinstance(record[name], str):
            problems.append(f"invalid {name} type")
    if "tags" in record and not isinstance(record["tags"], list):
        problems.append("invalid tags type")

    stamps: dict[str, datetime] = {}
    for name in ("createdAt", "updatedAt", "deletedAt"):
        if record.get(name) is None:
            continue
        try:
            stamps[name] = parse_timestamp(record[name])
        except (TypeError, ValueError, AttributeError):
            problems.append(f"invalid {name} date")
    if "createdAt" in stamps and "updatedAt" in stamps and stamps["updatedAt"] < stamps["createdAt"]:
        problems.append("updatedAt earlier than createdAt")

    state = record.get("state")
    if state not in {s.value for s in EntryState}:
        problems.append("invalid state")
    elif state == EntryState.RECENTLY_DELETED.value and "deletedAt" not in stamps:
        problems.append("recently deleted entry without deletedAt")
    elif state == EntryState.ACTIVE.value and "deletedAt" in stamps:
        problems.append("active entry with deletedAt")

    return problems


def check_integrity(registry: EntryRegistry) -> IntegrityReport:
    """Check the persisted collection against the in-memory one.

    Every persisted record is validated; records missing from disk or
    differing from the registry's view are reported as warnings.
    """
    op = registry.begin_operation("integrity_check", "Starting journal entries integrity check",
                                  category=AuditCategory.SYSTEM)
    try:
        raw = registry.store.load(registry.entries_key) or []
    except PersistenceError as e:
        registry.finish_failure(op, "Failed to perform integrity check", e)
        raise

    report = IntegrityReport(passed=True, timestamp=registry.clock.now())
    if not isinstance(raw, list):
        report.errors.append("entry collection is not a list")
        raw = []

    seen: set[str] = set()
    for position, record in enumerate(raw):
        problems = _check_record(record, seen)
        if problems:
            label = record.get("id", f"#{position}") if isinstance(record, dict) else f"#{position}"
            report.errors.append(f"Entry {label}: {', '.join(problems)}")
    report.checked_entries = len(raw)

    in_memory = {e.id: e.to_dict() for e in registry.list_entries()}
    persisted = {r["id"]: r for r in raw if isinstance(r, dict) and isinstance(r.get("id"), str)}
    for entry_id in in_memory.keys() - persisted.keys():
        report.warnings.append(f"Entry {entry_id} is not persisted")
    for entry_id in persisted.keys() - in_memory.keys():
        report.warnings.append(f"Entry {entry_id} is persisted but not loaded")
    for entry_id in in_memory.keys() & persisted.keys():
        if in_memory[entry_id] != persisted[entry_id]:
            report.warnings.append(f"Entry {entry_id} differs from its persisted copy")

    report.passed = not report.errors
    if report.passed:
        registry.finish_success(op, "Journal entries integrity check completed", report.to_dict())
    else:
        registry.finish_failure(op, "Journal entries integrity check found problems",
                                ValueError(f"{len(report.errors)} invalid entries"))
    return report


def backup_key(timestamp: datetime) -> str:
    """Key for a backup taken at ``timestamp``, always expressed in UTC."""
    if timestamp.tzinfo is not None:
        timestamp = timestamp.astimezone(timezone.utc)
    return f"{BACKUP_PREFIX}{timestamp.strftime('%Y%m%dT%H%M%S%fZ')}"


def _unused_backup_key(registry: EntryRegistry, timestamp: datetime) -> str:
    # Keys sort oldest first; a suffix sorts after the bare key of the same instant.
    base = backup_key(timestamp)
    key, n = base, 0
    while registry.store.exists(key):
        n += 1
        key = f"{base}-{n}"
    return key


def list_backups(registry: EntryRegistry) -> list[str]:
    """Backup keys, oldest first."""
    return registry.store.keys(prefix=BACKUP_PREFIX)


def create_backup(registry: EntryRegistry, max_backups: int = DEFAULT_MAX_BACKUPS) -> BackupStatus:
    """Write a verified backup of the current collection and prune old ones.

    Raises:
        PersistenceError: If the backup cannot be written.
    """
    now = registry.clock.now()
    entries = registry.list_entries()
    key = _unused_backup_key(registry, now)
    op = registry.begin_operation("create_backup", "Starting backup creation", {"key": key},
                                  category=AuditCategory.BACKUP)

    payload = {
        "timestamp": format_timestamp(now),
        "version": BACKUP_VERSION,
        "entries": [e.to_dict() for e in entries],
        "metadata": {
            "entryCount": len(entries),
            "activeEntries": sum(1 for e in entries if e.state is EntryState.ACTIVE),
            "deletedEntries": sum(1 for e in entries if e.state is EntryState.RECENTLY_DELETED),
            "hiddenEntries": sum(1 for e in entries if e.state is EntryState.HIDDEN),
        },
    }
    try:
        registry.store.save(key, payload)
    except PersistenceError as e:
        registry.finish_failure(op, "Backup creation failed", e)
        raise

    mismatches = verify_backup(registry, key, [e.id for e in entries])
    status = BackupStatus(
        key=key,
        timestamp=now,
        entry_count=len(entries),
        passed=not mismatches,
        mismatches=mismatches,
    )
    status.pruned = prune_backups(registry, max_backups)

    if status.passed:
        registry.finish_success(op, "Backup created successfully", status.to_dict())
    else:
        registry.finish_failure(op, "Backup verification failed",
                                ValueError(f"{len(mismatches)} mismatches"))
    return status


def verify_backup(registry: EntryRegistry, key: str, expected_ids: list[str]) -> list[str]:
    """Reload a backup and compare its entry ids with ``expected_ids``.

    Returns:
        Human-readable mismatches; empty when the backup is faithful.
    """
    try:
        data = registry.store.load(key)
    except PersistenceError as e:
        return [f"backup unreadable: {e}"]
    if not isinstance(data, dict) or not isinstance(data.get("entries"), list):
        return ["backup missing entries"]

    backed_up = [e.get("id") for e in data["entries"] if isinstance(e, dict)]
    mismatches = []
    if len(backed_up) != len(expected_ids):
        mismatches.append(f"entry count {len(backed_up)} != {len(expected_ids)}")
    for entry_id in sorted(set(expected_ids) - set(backed_up)):
        mismatches.append(f"missing entry {entry_id}")
    return mismatches


def prune_backups(registry: EntryRegistry, max_backups: int = DEFAULT_MAX_BACKUPS) -> list[str]:
    """Remove all but the newest ``max_backups`` backups.

    Returns:
        Keys that were removed.
    """
    keys = list_backups(registry)
    excess = keys[: max(len(keys) - max_backups, 0)]
    removed = []
    for key in excess:
        try:
            registry.store.remove(key)
            removed.append(key)
        except PersistenceError as e:
            logger.warning("Could not prune backup %s: %s", key, e)
    return removed


def schedule_maintenance(
    registry: EntryRegistry,
    backup_interval_hours: float = DEFAULT_BACKUP_INTERVAL_HOURS,
    integrity_interval_hours: float = DEFAULT_INTEGRITY_INTERVAL_HOURS,
    max_backups: int = DEFAULT_MAX_BACKUPS,
) -> list[str]:
    """Register periodic backups and integrity checks on the registry's scheduler.

    A backup is taken as soon as the scheduler starts and then every
    ``backup_interval_hours``; the first integrity check runs after one
    interval. An interval of 0 disables that job.

    Returns:
        Names of the jobs registered.
    """
    scheduler = registry.scheduler
    if scheduler is None:
        return []

    def backup_job() -> None:
        status = create_backup(registry, max_backups=max_backups)
        if not status.passed:
            logger.warning("Scheduled backup %s failed verification: %s",
                           status.key, "; ".join(status.mismatches))

    def integrity_job() -> None:
        report = check_integrity(registry)
        if not report.passed:
            logger.warning("Scheduled integrity check found %d problems", len(report.errors))

    names = []
    if backup_interval_hours > 0:
        names.append(scheduler.add_job("Scheduled backup", backup_job,
                                       backup_interval_hours * 3600).name)
    if integrity_interval_hours > 0:
        names.append(scheduler.add_job("Scheduled integrity check", integrity_job,
                                       integrity_interval_hours * 3600, run_at_start=False).name)
    return names
