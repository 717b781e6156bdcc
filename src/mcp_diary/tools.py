"""MCP tool definitions wrapping the entry registry."""

from __future__ import annotations

import json
from typing import Any, Optional

from .maintenance import DEFAULT_MAX_BACKUPS, check_integrity, create_backup, list_backups
from .models import EntryState, EntryType, JournalEntry, format_timestamp
from .registry import (
    DiaryError,
    EntryNotFoundError,
    EntryRegistry,
    InvalidTransitionError,
    ValidationError,
)
from .storage import PersistenceError

_ENTRY_ID = {
    "type": "object",
    "properties": {
        "entry_id": {
            "type": "string",
            "description": "Id of the entry",
        },
    },
    "required": ["entry_id"],
}

_STRING_LIST = {"type": "array", "items": {"type": "string"}}


def make_tools(registry: EntryRegistry) -> dict[str, dict]:
    """Create MCP tool definitions for the entry registry.

    Returns:
        Dict mapping tool names to their definitions.
    """

    tools = {}

    # ========== entry_create ==========
    tools["entry_create"] = {
        "name": "entry_create",
        "description": "Create a new diary entry. New entries start in the 'active' state.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "title": {"type": "string", "description": "Entry title"},
                "content": {"type": "string", "description": "Entry body text"},
                "type": {
                    "type": "string",
                    "enum": [t.value for t in EntryType],
                    "description": "Kind of entry (fixed after creation)",
                },
                "tags": {**_STRING_LIST, "description": "Tags, in display order"},
                "mood": {"type": "string", "description": "Optional mood label"},
            },
            "required": ["title", "content"],
        },
    }

    # ========== entry_update ==========
    tools["entry_update"] = {
        "name": "entry_update",
        "description": "Edit fields of an entry in any state. Only the given fields change.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "entry_id": {"type": "string", "description": "Id of the entry"},
                "title": {"type": "string"},
                "content": {"type": "string"},
                "tags": _STRING_LIST,
                "mood": {"type": "string"},
            },
            "required": ["entry_id"],
        },
    }

    tools["entry_soft_delete"] = {
        "name": "entry_soft_delete",
        "description": (
            "Move an active entry to 'recently deleted'. Returns an undo token valid for a "
            "short window. Recently deleted entries become hidden after the retention period."
        ),
        "inputSchema": _ENTRY_ID,
    }

    tools["entry_undo"] = {
        "name": "entry_undo",
        "description": (
            "Undo a soft delete using its undo token. Does nothing once the window has passed. "
            "If the restore cannot be saved, the same token can be retried while the window is open."
        ),
        "inputSchema": {
            "type": "object",
            "properties": {
                "undo_token": {"type": "string", "description": "Token returned by entry_soft_delete"},
            },
            "required": ["undo_token"],
        },
    }

    tools["entry_restore"] = {
        "name": "entry_restore",
        "description": "Restore a recently deleted or hidden entry to 'active'.",
        "inputSchema": _ENTRY_ID,
    }

    tools["entry_hide"] = {
        "name": "entry_hide",
        "description": "Move a recently deleted entry to 'hidden' without waiting for the retention period.",
        "inputSchema": _ENTRY_ID,
    }

    tools["entry_permanent_delete"] = {
        "name": "entry_permanent_delete",
        "description": "Remove an entry for good, from any state. Cannot be undone.",
        "inputSchema": _ENTRY_ID,
    }

    tools["entry_get"] = {
        "name": "entry_get",
        "description": "Read one entry by id.",
        "inputSchema": _ENTRY_ID,
    }

    tools["entry_list"] = {
        "name": "entry_list",
        "description": "List entries in one lifecycle state.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "state": {
                    "type": "string",
                    "enum": [s.value for s in EntryState],
                    "description": "Lifecycle state (default: active)",
                },
                "limit": {"type": "integer", "description": "Maximum entries (default: 50)"},
                "offset": {"type": "integer", "description": "Entries to skip (default: 0)"},
            },
        },
    }

    tools["entry_search"] = {
        "name": "entry_search",
        "description": "Search entries by text (title, content, tags) and required tags.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "query": {"type": "string", "description": "Case-insensitive substring"},
                "tags": {**_STRING_LIST, "description": "Entries must carry all of these tags"},
                "state": {
                    "type": "string",
                    "enum": [s.value for s in EntryState] + ["any"],
                    "description": "Lifecycle state to search (default: active)",
                },
            },
        },
    }

    tools["entries_sweep"] = {
        "name": "entries_sweep",
        "description": "Hide every recently deleted entry older than the retention period. Safe to repeat.",
        "inputSchema": {"type": "object", "properties": {}},
    }

    tools["entry_stats"] = {
        "name": "entry_stats",
        "description": "Count entries per lifecycle state and per type.",
        "inputSchema": {"type": "object", "properties": {}},
    }

    # ========== audit ==========
    tools["audit_query"] = {
        "name": "audit_query",
        "description": "Query the audit log, newest first. All filters combine with AND.",
        "inputSchema": {
            "type": "object",
            "properties": {
                "levels": {**_STRING_LIST, "description": "info, warning, error, debug"},
                "categories": {**_STRING_LIST, "description": "e.g. journal, storage, ai, backup"},
                "statuses": {**_STRING_LIST, "description": "pending, success, failure"},
                "actions": {**_STRING_LIST, "description": "Operation names, e.g. soft_delete_entry"},
                "search": {"type": "string", "description": "Substring of message, action or error"},
                "since": {"type": "string", "description": "ISO 8601 lower bound (inclusive)"},
                "until": {"type": "string", "description": "ISO 8601 upper bound (inclusive)"},
                "limit": {"type": "integer", "description": "Maximum records (default: 100)"},
            },
        },
    }

    tools["audit_cleanup"] = {
        "name": "audit_cleanup",
        "description": "Drop audit records older than the audit retention period.",
        "inputSchema": {"type": "object", "properties": {}},
    }

    tools["audit_export"] = {
        "name": "audit_export",
        "description": "Export the whole audit log with summary metadata.",
        "inputSchema": {"type": "object", "properties": {}},
    }

    # ========== maintenance ==========
    tools["integrity_check"] = {
        "name": "integrity_check",
        "description": "Validate the persisted entry collection and compare it with the loaded one.",
        "inputSchema": {"type": "object", "properties": {}},
    }

    tools["backup_create"] = {
        "name": "backup_create",
        "description": "Write a verified backup of all entries and prune old backups.",
        "inputSchema": {"type": "object", "properties": {}},
    }

    tools["backup_list"] = {
        "name": "backup_list",
        "description": "List stored backups, oldest first.",
        "inputSchema": {"type": "object", "properties": {}},
    }

    return tools


def entry_summary(entry: JournalEntry) -> dict[str, Any]:
    """Short form of an entry for list results."""
    return {
        "id": entry.id,
        "title": entry.title,
        "type": entry.type.value,
        "state": entry.state.value,
        "tags": list(entry.tags),
        "updatedAt": format_timestamp(entry.updated_at),
    }


def _state_arg(value: Optional[str], default: Optional[EntryState] = EntryState.ACTIVE) -> Optional[EntryState]:
    if value is None:
        return default
    if value == "any":
        return None
    try:
        return EntryState(value)
    except ValueError:
        raise ValidationError(f"Invalid state {value!r}. Allowed: {[s.value for s in EntryState]}")


async def execute_tool(
    registry: EntryRegistry,
    name: str,
    arguments: dict[str, Any],
    max_backups: int = DEFAULT_MAX_BACKUPS,
) -> dict[str, Any]:
    """Execute a diary tool and return the result.

    Args:
        registry: EntryRegistry instance
        name: Tool name
        arguments: Tool arguments
        max_backups: Backups kept by backup_create

    Returns:
        Result dict with success status and data or error
    """
    try:
        if name == "entry_create":
            entry = registry.create_entry(
                title=arguments["title"],
                content=arguments["content"],
                type=arguments.get("type", EntryType.JOURNAL.value),
                tags=arguments.get("tags"),
                mood=arguments.get("mood"),
            )
            return {
                "success": True,
                "entry": entry.to_dict(),
                "message": f"Entry {entry.id} created",
            }

        elif name == "entry_update":
            fields = {k: v for k, v in arguments.items() if k != "entry_id"}
            entry = registry.update_entry(arguments["entry_id"], **fields)
            return {
                "success": True,
                "entry": entry.to_dict(),
                "message": f"Entry {entry.id} updated",
            }

        elif name == "entry_soft_delete":
            handle = registry.soft_delete_entry(arguments["entry_id"])
            return {
                "success": True,
                "entry_id": handle.entry_id,
                "state": EntryState.RECENTLY_DELETED.value,
                "undo_token": handle.token,
                "undo_expires_at": format_timestamp(handle.expires_at),
                "message": "Entry moved to recently deleted",
            }

        elif name == "entry_undo":
            restored = registry.undo(arguments["undo_token"])
            return {
                "success": True,
                "restored": restored,
                "message": "Entry restored" if restored else "Undo window has passed; nothing changed",
            }

        elif name == "entry_restore":
            entry = registry.restore_entry(arguments["entry_id"])
            return {"success": True, "entry": entry.to_dict(), "message": "Entry restored"}

        elif name == "entry_hide":
            entry = registry.hide_entry(arguments["entry_id"])
            return {"success": True, "entry": entry.to_dict(), "message": "Entry hidden"}

        elif name == "entry_permanent_delete":
            registry.permanently_delete_entry(arguments["entry_id"])
            return {
                "success": True,
                "entry_id": arguments["entry_id"],
                "message": "Entry permanently deleted",
            }

        elif name == "entry_get":
            entry = registry.get_entry(arguments["entry_id"])
            return {"success": True, "entry": entry.to_dict()}

        elif name == "entry_list":
            state = _state_arg(arguments.get("state"))
            entries = registry.search_entries(state=state)
            offset = arguments.get("offset", 0)
            limit = arguments.get("limit", 50)
            page = entries[offset:offset + limit]
            return {
                "success": True,
                "state": state.value if state else "any",
                "total": len(entries),
                "count": len(page),
                "entries": [entry_summary(e) for e in page],
            }

        elif name == "entry_search":
            entries = registry.search_entries(
                text=arguments.get("query"),
                tags=arguments.get("tags"),
                state=_state_arg(arguments.get("state")),
            )
            return {
                "success": True,
                "count": len(entries),
                "entries": [entry_summary(e) for e in entries],
            }

        elif name == "entries_sweep":
            hidden = registry.check_deleted_entries()
            return {
                "success": True,
                "hidden": hidden,
                "count": len(hidden),
                "message": f"{len(hidden)} entries moved to hidden",
            }

        elif name == "entry_stats":
            return {"success": True, **registry.stats()}

        elif name == "audit_query":
            limit = arguments.get("limit", 100)
            criteria = {
                k: arguments[k]
                for k in ("levels", "categories", "statuses", "actions", "search", "since", "until")
                if arguments.get(k)
            }
            records = []
            for record in registry.audit.query(**criteria):
                if len(records) >= limit:
                    break
                records.append(record.to_dict())
            return {"success": True, "count": len(records), "records": records}

        elif name == "audit_cleanup":
            removed = registry.audit.cleanup()
            return {
                "success": True,
                "removed": removed,
                "remaining": len(registry.audit),
            }

        elif name == "audit_export":
            return {"success": True, **registry.audit.export_bundle()}

        elif name == "integrity_check":
            report = check_integrity(registry)
            return {"success": True, **report.to_dict()}

        elif name == "backup_create":
            status = create_backup(registry, max_backups=max_backups)
            return {"success": status.passed, **status.to_dict()}

        elif name == "backup_list":
            backups = list_backups(registry)
            return {"success": True, "count": len(backups), "backups": backups}

        else:
            return {
                "success": False,
                "error": f"Unknown tool: {name}",
                "error_type": "unknown_tool",
            }

    except EntryNotFoundError as e:
        return {"success": False, "error": str(e), "error_type": "not_found"}
    except InvalidTransitionError as e:
        return {"success": False, "error": str(e), "error_type": "invalid_transition"}
    except ValidationError as e:
        return {"success": False, "error": str(e), "error_type": "validation_error"}
    except PersistenceError as e:
        return {"success": False, "error": str(e), "error_type": "persistence_error"}
    except DiaryError as e:
        return {"success": False, "error": str(e), "error_type": "diary_error"}
    except KeyError as e:
        return {"success": False, "error": f"Missing required argument: {e}", "error_type": "missing_argument"}
    except Exception as e:
        return {"success": False, "error": str(e), "error_type": "unexpected_error"}


def dumps_result(result: dict[str, Any]) -> str:
    return json.dumps(result, indent=2, default=str, ensure_ascii=False)
