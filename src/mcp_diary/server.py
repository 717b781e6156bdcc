"""MCP Diary Server - Main entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

import structlog

# MCP imports are optional - only needed when running the server
try:
    from mcp.server import Server  # pragma: no cover
    from mcp.server.stdio import stdio_server  # pragma: no cover
    from mcp.types import Tool, TextContent  # pragma: no cover
    HAS_MCP = True  # pragma: no cover
except ImportError:
    HAS_MCP = False
    Server = None  # type: ignore
    Tool = None  # type: ignore
    TextContent = None  # type: ignore

from .config import DiaryConfig, build_registry, load_config
from .maintenance import check_integrity, create_backup
from .registry import EntryRegistry
from .storage import PersistenceError
from .tools import dumps_result, execute_tool, make_tools

log = structlog.get_logger(__name__)

_logging_configured = False


def configure_logging(verbose: bool = False) -> None:
    """Route stdlib and structlog output to stderr. Only the first call has any effect.

    stdout is left alone because the MCP stdio transport owns it.
    """
    global _logging_configured
    if _logging_configured:
        return
    _logging_configured = True

    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def create_server(config: DiaryConfig, registry: EntryRegistry | None = None) -> "Server":
    """Create and configure the MCP server.

    Args:
        config: Diary configuration
        registry: Pre-built registry (built from config when omitted)

    Returns:
        Configured MCP Server instance

    Raises:
        ImportError: If MCP package is not installed
    """
    if not HAS_MCP:
        raise ImportError(
            "MCP package not installed. Install with: pip install mcp-diary[mcp]"
        )

    server = Server("mcp-diary")
    if registry is None:
        registry = build_registry(config)
    tool_defs = make_tools(registry)

    @server.list_tools()
    async def list_tools() -> list[Tool]:
        """Return list of available tools."""
        return [
            Tool(
                name=t["name"],
                description=t["description"],
                inputSchema=t["inputSchema"],
            )
            for t in tool_defs.values()
        ]

    @server.call_tool()
    async def call_tool(name: str, arguments: dict[str, Any]) -> list[TextContent]:
        """Handle tool invocation."""
        result = await execute_tool(registry, name, arguments, max_backups=config.max_backups)
        return [TextContent(type="text", text=dumps_result(result))]

    return server


async def run_server(config: DiaryConfig) -> None:
    """Run the MCP server with stdio transport and the background sweep."""
    if not HAS_MCP:
        raise ImportError(
            "MCP package not installed. Install with: pip install mcp-diary[mcp]"
        )

    registry = build_registry(config)  # pragma: no cover
    server = create_server(config, registry)  # pragma: no cover
    registry.scheduler.start()  # pragma: no cover
    log.info("server_started", project=config.project_name,
             data_dir=str(config.get_data_path()), tools=len(make_tools(registry)),
             jobs=registry.scheduler.jobs())

    try:  # pragma: no cover
        async with stdio_server() as (read_stream, write_stream):
            await server.run(
                read_stream,
                write_stream,
                server.create_initialization_options(),
            )
    finally:  # pragma: no cover
        registry.close()
        log.info("server_stopped", project=config.project_name)


def run_maintenance(config: DiaryConfig, args: argparse.Namespace) -> int:
    """Run one-shot maintenance commands. Returns a process exit code."""
    registry = build_registry(config)
    exit_code = 0
    log.info("maintenance_started", project=config.project_name, sweep=args.sweep,
             check=args.check, backup=args.backup, export_logs=bool(args.export_logs))
    try:
        if args.sweep:
            hidden = registry.check_deleted_entries()
            removed = registry.audit.cleanup()
            print(f"Sweep: {len(hidden)} entries moved to hidden, {removed} old audit records removed")

        if args.check:
            report = check_integrity(registry)
            print(f"Integrity check: {'passed' if report.passed else 'FAILED'} "
                  f"({report.checked_entries} entries)")
            for error in report.errors:
                print(f"  error: {error}")
            for warning in report.warnings:
                print(f"  warning: {warning}")
            if not report.passed:
                exit_code = 1

        if args.backup:
            status = create_backup(registry, max_backups=config.max_backups)
            print(f"Backup {status.key}: {status.entry_count} entries, "
                  f"{'verified' if status.passed else 'verification FAILED'}")
            if status.pruned:
                print(f"  pruned: {', '.join(status.pruned)}")
            if not status.passed:
                exit_code = 1

        if args.export_logs:
            bundle = registry.audit.export_bundle()
            args.export_logs.write_text(json.dumps(bundle, indent=2, ensure_ascii=False), encoding="utf-8")
            print(f"Exported {bundle['metadata']['totalEntries']} audit records to {args.export_logs}")
    finally:
        registry.close()
    return exit_code


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="MCP Diary Server - Personal journal with lifecycle, persistence and audit log"
    )
    parser.add_argument(
        "--project-root",
        "-p",
        type=Path,
        default=Path.cwd(),
        help="Diary root directory (default: current directory)",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=Path,
        help="Path to config file (default: auto-detect in project root)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging on stderr",
    )
    parser.add_argument(
        "--init",
        action="store_true",
        help="Initialize the data directory in project root",
    )

    maintenance_group = parser.add_argument_group("maintenance", "One-shot commands (do not start the server)")
    maintenance_group.add_argument(
        "--sweep",
        action="store_true",
        help="Hide expired deleted entries and drop old audit records",
    )
    maintenance_group.add_argument(
        "--check",
        action="store_true",
        help="Run the integrity check on stored entries",
    )
    maintenance_group.add_argument(
        "--backup",
        action="store_true",
        help="Create a verified backup of all entries",
    )
    maintenance_group.add_argument(
        "--export-logs",
        type=Path,
        metavar="FILE",
        help="Write the audit log with metadata to FILE",
    )

    args = parser.parse_args()
    configure_logging(args.verbose)

    project_root = args.project_root.resolve()

    try:
        config = load_config(project_root, args.config)
    except Exception as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    if args.init:
        config.get_data_path().mkdir(parents=True, exist_ok=True)
        print(f"Initialized diary data directory in {project_root}")
        print(f"  - {config.data_dir}/")
        return

    if args.sweep or args.check or args.backup or args.export_logs:
        try:
            sys.exit(run_maintenance(config, args))
        except PersistenceError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)

    # Check for MCP before starting the server
    if not HAS_MCP:
        print("Error: MCP package not installed.", file=sys.stderr)
        print("Install with: pip install mcp-diary[mcp]", file=sys.stderr)
        sys.exit(1)

    asyncio.run(run_server(config))


if __name__ == "__main__":  # pragma: no cover
    main()
