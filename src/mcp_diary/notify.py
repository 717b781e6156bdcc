"""Notification sinks for user-facing messages (toast equivalents)."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Optional, Protocol

if TYPE_CHECKING:
    from .registry import UndoHandle

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Receives human-readable messages about lifecycle operations.

    ``undo`` is set for soft deletes and can be passed back to
    ``EntryRegistry.undo`` while its window is open.
    """

    def notify(self, message: str, *, level: str = "info", undo: Optional[UndoHandle] = None) -> None:
        ...


class NullNotifier:
    """Discards every notification."""

    def notify(self, message: str, *, level: str = "info", undo: Optional[UndoHandle] = None) -> None:
        pass


class LoggingNotifier:
    """Writes notifications to the ``mcp_diary.notify`` logger."""

    def notify(self, message: str, *, level: str = "info", undo: Optional[UndoHandle] = None) -> None:
        if undo is not None:
            message = f"{message} (undo token: {undo.token})"
        logger.log(logging.ERROR if level == "error" else logging.INFO, message)


class CallbackNotifier:
    """Adapts a plain function, e.g. a ``hook_notify`` from a Python config."""

    def __init__(self, callback: Callable[..., None]):
        self.callback = callback

    def notify(self, message: str, *, level: str = "info", undo: Optional[UndoHandle] = None) -> None:
        self.callback(message, level=level, undo=undo)
