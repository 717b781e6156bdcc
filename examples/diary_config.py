"""MCP Diary Configuration - Advanced Python Example

Copy to your diary root as diary_config.py to wire notifications and
entry analysis.

Convention:
- CONFIG dict for static configuration (same structure as TOML)
- Functions named hook_* become hooks (hook_notify, hook_analyze)
"""

import logging
import re
from collections import Counter

logger = logging.getLogger("diary_config")

# =============================================================================
# Static Configuration (same structure as TOML)
# =============================================================================

CONFIG = {
    "project": {
        "name": "my-diary",
    },
    "storage": {
        "data_dir": "data",
        "per_entry_records": True,
        "lock_timeout": 10.0,
    },
    "lifecycle": {
        "retention_days": 30,
        "undo_window_seconds": 7.0,
        "sweep_interval_seconds": 3600.0,
    },
    "audit": {
        "max_entries": 1000,
        "retention_days": 7,
        "track_storage": True,
    },
    "backups": {
        "max_backups": 5,
        "interval_hours": 24.0,
    },
    "integrity": {
        "interval_hours": 24.0,
    },
}


# =============================================================================
# Hooks
# =============================================================================

def hook_notify(message, *, level="info", undo=None):
    """Called for every user-facing notification.

    Args:
        message: Human-readable text
        level: "info" or "error"
        undo: UndoHandle for soft deletes, else None. Pass ``undo.token``
            to the entry_undo tool before ``undo.expires_at``.
    """
    if undo is not None:
        message = f"{message} - undo with token {undo.token} before {undo.expires_at:%H:%M:%S}"
    logger.log(logging.ERROR if level == "error" else logging.INFO, message)


_WORD = re.compile(r"[a-z']+")
_STOPWORDS = {"the", "and", "a", "to", "of", "i", "it", "in", "was", "is", "that", "my"}


def hook_analyze(entry) -> dict:
    """Called by EntryRegistry.analyze_entry. Must return a dict.

    This stand-in only counts words; point it at a real analysis service
    in your own config.
    """
    words = [w for w in _WORD.findall(entry.content.lower()) if w not in _STOPWORDS]
    return {
        "wordCount": len(words),
        "keywords": [w for w, _ in Counter(words).most_common(5)],
    }
