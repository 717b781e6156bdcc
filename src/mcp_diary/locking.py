"""Locking and atomic-write utilities for the JSON store."""

from __future__ import annotations

import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, TextIO

import portalocker


class KeyLocks:
    """One in-process lock per record key.

    File locks serialize separate processes; these serialize threads of
    this process so that two writers of the same key never interleave.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def get(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, key: str) -> Generator[None, None, None]:
        with self.get(key):
            yield


@contextmanager
def file_lock(path: Path, timeout: float = 10.0) -> Generator[None, None, None]:
    """Acquire an exclusive lock on a file.

    Creates a .lock file alongside the target file.

    Args:
        path: File to lock
        timeout: Seconds to wait for lock

    Raises:
        portalocker.LockException: If lock cannot be acquired
    """
    lock_path = path.with_suffix(path.suffix + ".lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_path.touch(exist_ok=True)

    with portalocker.Lock(lock_path, timeout=timeout):
        yield


@contextmanager
def atomic_write(path: Path, encoding: str = "utf-8") -> Generator[TextIO, None, None]:
    """Write a text file atomically.

    Writes to a temporary file, flushes it to disk, then renames it over
    the target. A failure at any point leaves the previous file untouched.

    Yields:
        File handle for writing
    """
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    path.parent.mkdir(parents=True, exist_ok=True)

    try:
        with open(tmp_path, "w", encoding=encoding) as f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        if tmp_path.exists():
            tmp_path.unlink()
        raise


@contextmanager
def locked_atomic_write(path: Path, encoding: str = "utf-8", timeout: float = 10.0) -> Generator[TextIO, None, None]:
    """Combine file lock with atomic write for full safety."""
    with file_lock(path, timeout=timeout):
        with atomic_write(path, encoding=encoding) as f:
            yield f
