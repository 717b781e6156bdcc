"""MCP Diary - personal journal with entry lifecycle, write-through persistence and audit log."""

__version__ = "0.1.0"
