"""Durable key-value JSON store.

Each key maps to one ``<key>.json`` file under the store root. Writes go
through a temp file and an atomic rename, so a reader sees either the old
value or the new one, never a partial file.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Optional

import portalocker

from .locking import KeyLocks, file_lock, locked_atomic_write
from .models import AuditCategory

if TYPE_CHECKING:
    from .audit import AuditLog

logger = logging.getLogger(__name__)

KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
SUFFIX = ".json"

# action -> (pending verb, past tense, infinitive)
_MESSAGES = {
    "save": ("Saving", "saved", "save"),
    "load": ("Loading", "loaded", "load"),
    "remove": ("Removing", "removed", "remove"),
}


class StoreError(Exception):
    """Base exception for store operations."""
    pass


class InvalidKeyError(StoreError):
    """Raised when a record key cannot be mapped to a file name."""
    pass


class PersistenceError(StoreError):
    """Raised when a record cannot be written, read, or removed."""

    def __init__(self, message: str, key: Optional[str] = None):
        super().__init__(message)
        self.key = key


class JsonStore:
    """Key-value persistence of JSON documents in a directory.

    When an audit log is attached, every save, load and remove is recorded
    as a pending record plus one terminal record under category
    ``storage``. The audit log's own key is excluded, so flushing the log
    never produces further records.
    """

    def __init__(self, root: Path, lock_timeout: float = 10.0, audit: Optional[AuditLog] = None):
        self.root = Path(root)
        self.lock_timeout = lock_timeout
        self._locks = KeyLocks()
        self.audit: Optional[AuditLog] = None
        self.unaudited_keys: set[str] = set()
        if audit is not None:
            self.attach_audit(audit)

    def attach_audit(self, audit: AuditLog) -> None:
        self.audit = audit
        self.unaudited_keys.add(audit.storage_key)

    def _path(self, key: str) -> Path:
        if not isinstance(key, str) or not KEY_PATTERN.match(key):
            raise InvalidKeyError(f"Invalid record key: {key!r}")
        return self.root / f"{key}{SUFFIX}"

    def _audited(
        self,
        action: str,
        key: str,
        fn: Callable[[], Any],
        success_details: Optional[Callable[[Any], dict[str, Any]]] = None,
    ) -> Any:
        if self.audit is None or key in self.unaudited_keys:
            return fn()

        doing, done, verb = _MESSAGES[action]
        try:
            op = self.audit.operation(AuditCategory.STORAGE, action, f"{doing} data for key: {key}", {"key": key})
        except Exception:
            logger.warning("Audit append failed for storage %s of %s", action, key, exc_info=True)
            return fn()

        try:
            result = fn()
        except PersistenceError as e:
            try:
                op.fail(f"Failed to {verb} data for key: {key}", e)
            except Exception:
                logger.warning("Audit append failed for storage %s of %s", action, key, exc_info=True)
            raise

        try:
            op.succeed(f"Successfully {done} data for key: {key}",
                       success_details(result) if success_details else None)
        except Exception:
            logger.warning("Audit append failed for storage %s of %s", action, key, exc_info=True)
        return result

    def save(self, key: str, value: Any) -> None:
        """Serialize ``value`` and store it under ``key``.

        Raises:
            PersistenceError: If serialization or the write fails. The
                previously stored value is left intact.
        """
        path = self._path(key)
        self._audited("save", key, lambda: self._write(key, path, value),
                      lambda size: {"dataSize": size})

    def _write(self, key: str, path: Path, value: Any) -> int:
        try:
            payload = json.dumps(value, indent=2, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Cannot serialize record '{key}': {e}", key=key) from e

        with self._locks.hold(key):
            try:
                with locked_atomic_write(path, timeout=self.lock_timeout) as f:
                    f.write(payload)
            except (OSError, portalocker.LockException) as e:
                raise PersistenceError(f"Failed to save record '{key}': {e}", key=key) from e

        logger.debug("Saved record %s (%d bytes)", key, len(payload))
        return len(payload)

    def load(self, key: str) -> Optional[Any]:
        """Load the value stored under ``key``.

        Returns:
            The decoded value, or None if no record exists.

        Raises:
            PersistenceError: If the record exists but cannot be read or decoded.
        """
        path = self._path(key)
        return self._audited("load", key, lambda: self._read(key, path),
                             lambda value: {"found": value is not None})

    def _read(self, key: str, path: Path) -> Optional[Any]:
        with self._locks.hold(key):
            try:
                content = path.read_text(encoding="utf-8")
            except FileNotFoundError:
                return None
            except OSError as e:
                raise PersistenceError(f"Failed to read record '{key}': {e}", key=key) from e

        try:
            return json.loads(content)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Corrupt record '{key}': {e}", key=key) from e

    def remove(self, key: str) -> None:
        """Remove the record stored under ``key``. Missing keys are ignored."""
        path = self._path(key)
        self._audited("remove", key, lambda: self._unlink(key, path))

    def _unlink(self, key: str, path: Path) -> None:
        with self._locks.hold(key):
            try:
                with file_lock(path, timeout=self.lock_timeout):
                    path.unlink(missing_ok=True)
            except (OSError, portalocker.LockException) as e:
                raise PersistenceError(f"Failed to remove record '{key}': {e}", key=key) from e

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def keys(self, prefix: str = "") -> list[str]:
        """List stored keys, sorted, optionally restricted to a prefix."""
        if not self.root.exists():
            return []
        return sorted(
            p.name[: -len(SUFFIX)]
            for p in self.root.glob(f"{prefix}*{SUFFIX}")
            if p.is_file()
        )
