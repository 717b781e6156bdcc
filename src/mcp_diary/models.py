"""Data models for diary entries and audit records."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Protocol


class EntryType(Enum):
    """Classification of a diary entry. Fixed at creation."""
    JOURNAL = "journal"
    MEMORY = "memory"
    MINDFULNESS = "mindfulness"


class EntryState(Enum):
    """Lifecycle state of a diary entry."""
    ACTIVE = "active"
    RECENTLY_DELETED = "recently_deleted"
    HIDDEN = "hidden"


class AuditLevel(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    DEBUG = "debug"


class AuditStatus(Enum):
    """Outcome of a logged operation attempt."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"


class AuditCategory:
    """Well-known audit categories. Categories are free strings; these are the common ones."""
    STORAGE = "storage"
    JOURNAL = "journal"
    NAVIGATION = "navigation"
    AI = "ai"
    PERFORMANCE = "performance"
    SYSTEM = "system"
    BACKUP = "backup"


DEFAULT_TITLE = "Untitled Entry"

LEGACY_HIDDEN_FLAGS = ("hidden", "isHidden")


def utc_now() -> datetime:
    """Get current UTC time with timezone info."""
    return datetime.now(timezone.utc)


def generate_id() -> str:
    """Generate an opaque unique identifier."""
    return str(uuid.uuid4())


def format_timestamp(dt: datetime) -> str:
    """Format datetime as ISO 8601 with timezone."""
    return dt.isoformat(timespec='milliseconds')


def parse_timestamp(s: str) -> datetime:
    """Parse ISO 8601 timestamp string.

    Accepts a trailing ``Z``. Naive values are taken to be UTC.

    Raises:
        ValueError: If ``s`` is not a string or not an ISO 8601 timestamp.
    """
    if not isinstance(s, str):
        raise ValueError(f"Timestamp must be a string, got {type(s).__name__}")
    dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class Clock(Protocol):
    """Source of the current time. Injected so tests can move time."""

    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in UTC."""

    def now(self) -> datetime:
        return utc_now()


@dataclass(frozen=True)
class JournalEntry:
    """A single diary entry.

    Instances are immutable; transitions build a new value with
    :meth:`evolve` and replace the stored one.
    """
    id: str
    title: str
    content: str
    created_at: datetime
    updated_at: datetime
    type: EntryType = EntryType.JOURNAL
    tags: tuple[str, ...] = ()
    state: EntryState = EntryState.ACTIVE
    deleted_at: Optional[datetime] = None
    mood: Optional[str] = None
    ai_analysis: Optional[dict[str, Any]] = None

    def evolve(self, **changes: Any) -> JournalEntry:
        """Return a copy with ``changes`` applied."""
        return replace(self, **changes)

    @property
    def is_active(self) -> bool:
        return self.state is EntryState.ACTIVE

    def to_dict(self) -> dict[str, Any]:
        """Convert entry to its persisted JSON form."""
        data: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "type": self.type.value,
            "tags": list(self.tags),
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
            "state": self.state.value,
        }
        if self.deleted_at is not None:
            data["deletedAt"] = format_timestamp(self.deleted_at)
        if self.mood is not None:
            data["mood"] = self.mood
        if self.ai_analysis is not None:
            data["aiAnalysis"] = self.ai_analysis
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JournalEntry:
        """Build an entry from a canonical persisted record.

        Raises:
            KeyError, ValueError: If the record is not canonical. Run
                :func:`normalize_entry_dict` first on untrusted data.
        """
        deleted_at = data.get("deletedAt")
        return cls(
            id=data["id"],
            title=data["title"],
            content=data["content"],
            type=EntryType(data.get("type", EntryType.JOURNAL.value)),
            tags=tuple(data.get("tags", ())),
            created_at=parse_timestamp(data["createdAt"]),
            updated_at=parse_timestamp(data["updatedAt"]),
            state=EntryState(data["state"]),
            deleted_at=parse_timestamp(deleted_at) if deleted_at else None,
            mood=data.get("mood"),
            ai_analysis=data.get("aiAnalysis"),
        )


def _valid_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        return parse_timestamp(value)
    except ValueError:
        return None


def normalize_entry_dict(data: dict[str, Any], now: datetime) -> tuple[dict[str, Any], list[str]]:
    """Bring a persisted entry record into the canonical three-state form.

    Handles records written before lifecycle states existed (no ``state``),
    records using the boolean ``hidden`` flag, and records with missing or
    malformed fields.

    Args:
        data: Raw record as loaded from JSON
        now: Timestamp used for any field that has to be regenerated

    Returns:
        Tuple of (normalized record, list of human-readable fixes applied).
        An empty fix list means the record was already canonical.
    """
    record = dict(data)
    fixes: list[str] = []

    if not isinstance(record.get("id"), str) or not record.get("id"):
        record["id"] = generate_id()
        fixes.append("generated new id")

    if not isinstance(record.get("title"), str):
        record["title"] = DEFAULT_TITLE
        fixes.append("set default title")

    if not isinstance(record.get("content"), str):
        record["content"] = ""
        fixes.append("set empty content")

    if record.get("type") not in {t.value for t in EntryType}:
        record["type"] = EntryType.JOURNAL.value
        fixes.append("set type to journal")

    tags = record.get("tags")
    if not isinstance(tags, list) or not all(isinstance(t, str) for t in tags):
        record["tags"] = [t for t in tags if isinstance(t, str)] if isinstance(tags, list) else []
        fixes.append("reset tags")

    created = _valid_timestamp(record.get("createdAt"))
    if created is None:
        created = now
        record["createdAt"] = format_timestamp(now)
        fixes.append("fixed createdAt")

    updated = _valid_timestamp(record.get("updatedAt"))
    if updated is None or updated < created:
        record["updatedAt"] = record["createdAt"]
        fixes.append("fixed updatedAt")

    if "deletedAt" in record:
        if record["deletedAt"] is None:
            del record["deletedAt"]
        elif _valid_timestamp(record["deletedAt"]) is None:
            del record["deletedAt"]
            fixes.append("dropped malformed deletedAt")

    legacy_hidden = None
    for flag in LEGACY_HIDDEN_FLAGS:
        if flag in record:
            legacy_hidden = bool(record.pop(flag)) or bool(legacy_hidden)
            fixes.append(f"dropped legacy '{flag}' flag")

    state = record.get("state")
    if state not in {s.value for s in EntryState}:
        if legacy_hidden:
            record["state"] = EntryState.HIDDEN.value
        elif "deletedAt" in record:
            record["state"] = EntryState.RECENTLY_DELETED.value
        else:
            record["state"] = EntryState.ACTIVE.value
        fixes.append(f"set state to {record['state']}")
    elif legacy_hidden and state == EntryState.ACTIVE.value:
        record["state"] = EntryState.HIDDEN.value
        fixes.append("set state to hidden")

    if record["state"] == EntryState.RECENTLY_DELETED.value and "deletedAt" not in record:
        record["deletedAt"] = record["updatedAt"]
        fixes.append("set missing deletedAt")
    elif record["state"] == EntryState.ACTIVE.value and "deletedAt" in record:
        del record["deletedAt"]
        fixes.append("cleared deletedAt on active entry")

    return record, fixes


@dataclass(frozen=True)
class AuditRecord:
    """One logged operation attempt. Immutable once appended."""
    id: str
    timestamp: datetime
    level: AuditLevel
    category: str
    action: str
    message: str
    status: AuditStatus
    details: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    operation_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert record to dictionary for JSON serialization."""
        data: dict[str, Any] = {
            "id": self.id,
            "timestamp": format_timestamp(self.timestamp),
            "level": self.level.value,
            "category": self.category,
            "action": self.action,
            "message": self.message,
            "status": self.status.value,
            "details": self.details,
        }
        if self.error is not None:
            data["error"] = self.error
        if self.operation_id is not None:
            data["operationId"] = self.operation_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditRecord:
        return cls(
            id=data["id"],
            timestamp=parse_timestamp(data["timestamp"]),
            level=AuditLevel(data["level"]),
            category=data["category"],
            action=data["action"],
            message=data.get("message", ""),
            status=AuditStatus(data["status"]),
            details=data.get("details") or {},
            error=data.get("error"),
            operation_id=data.get("operationId"),
        )
