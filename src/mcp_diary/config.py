"""Configuration loading for MCP Diary.

Supports three tiers:
1. Simple config via .toml or .json - most users
2. Python config via .py - power users wiring notification/analysis hooks
3. Direct construction of DiaryConfig - tests and embedding applications
"""

from __future__ import annotations

import importlib.util
import json
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

from .audit import DEFAULT_MAX_ENTRIES, AuditLog
from .audit import DEFAULT_RETENTION_DAYS as DEFAULT_AUDIT_RETENTION_DAYS
from .maintenance import (
    DEFAULT_BACKUP_INTERVAL_HOURS,
    DEFAULT_INTEGRITY_INTERVAL_HOURS,
    DEFAULT_MAX_BACKUPS,
    schedule_maintenance,
)
from .models import Clock, SystemClock
from .notify import CallbackNotifier, LoggingNotifier, Notifier
from .registry import DEFAULT_RETENTION_DAYS, DEFAULT_UNDO_WINDOW, EntryRegistry
from .scheduler import DEFAULT_SWEEP_INTERVAL, ExpiryScheduler
from .storage import JsonStore


class ConfigError(ValueError):
    """Raised when a configuration value is invalid."""
    pass


@dataclass
class DiaryConfig:
    """Configuration for a diary."""

    # Identification
    project_name: str = "diary"
    project_root: Path = field(default_factory=Path.cwd)

    # Storage (relative to project_root)
    data_dir: str = "data"
    per_entry_records: bool = False
    lock_timeout: float = 10.0

    # Lifecycle
    retention_days: int = DEFAULT_RETENTION_DAYS
    undo_window_seconds: float = DEFAULT_UNDO_WINDOW
    sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL

    # Audit log
    audit_max_entries: int = DEFAULT_MAX_ENTRIES
    audit_retention_days: int = DEFAULT_AUDIT_RETENTION_DAYS
    audit_storage: bool = True

    # Backups
    max_backups: int = DEFAULT_MAX_BACKUPS
    backup_interval_hours: float = DEFAULT_BACKUP_INTERVAL_HOURS

    # Integrity
    integrity_interval_hours: float = DEFAULT_INTEGRITY_INTERVAL_HOURS

    # Hooks (populated from Python config): "notify", "analyze"
    hooks: dict[str, Callable] = field(default_factory=dict)

    def get_data_path(self) -> Path:
        return self.project_root / self.data_dir

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigError: On the first invalid value found
        """
        if self.retention_days < 1:
            raise ConfigError("lifecycle.retention_days must be at least 1")
        if self.undo_window_seconds < 0:
            raise ConfigError("lifecycle.undo_window_seconds must not be negative")
        if self.sweep_interval_seconds <= 0:
            raise ConfigError("lifecycle.sweep_interval_seconds must be positive")
        if self.audit_max_entries < 1:
            raise ConfigError("audit.max_entries must be at least 1")
        if self.audit_retention_days < 1:
            raise ConfigError("audit.retention_days must be at least 1")
        if self.max_backups < 1:
            raise ConfigError("backups.max_backups must be at least 1")
        if self.backup_interval_hours < 0:
            raise ConfigError("backups.interval_hours must not be negative")
        if self.integrity_interval_hours < 0:
            raise ConfigError("integrity.interval_hours must not be negative")
        if self.lock_timeout <= 0:
            raise ConfigError("storage.lock_timeout must be positive")


def load_toml_config(path: Path) -> dict[str, Any]:
    """Load configuration from TOML file."""
    with open(path, "rb") as f:
        return tomllib.load(f)


def load_json_config(path: Path) -> dict[str, Any]:
    """Load configuration from JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def load_python_config(path: Path) -> tuple[dict[str, Any], dict[str, Callable]]:
    """Load configuration from Python file.

    Returns:
        Tuple of (config_dict, hooks_dict)

    Convention:
        - CONFIG dict or config dict for static configuration
        - Functions named hook_* become hooks (hook_notify, hook_analyze)
    """
    spec = importlib.util.spec_from_file_location("diary_config", path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load Python config from {path}")

    module = importlib.util.module_from_spec(spec)
    sys.modules["diary_config"] = module
    spec.loader.exec_module(module)

    config_dict = {}
    if hasattr(module, "CONFIG"):
        config_dict = module.CONFIG
    elif hasattr(module, "config"):
        config_dict = module.config

    hooks = {}
    for name in dir(module):
        if name.startswith("hook_"):
            hooks[name[5:]] = getattr(module, name)

    return config_dict, hooks


# section -> {key in file: attribute on DiaryConfig}
_SECTIONS: dict[str, dict[str, str]] = {
    "project": {"name": "project_name"},
    "storage": {
        "data_dir": "data_dir",
        "per_entry_records": "per_entry_records",
        "lock_timeout": "lock_timeout",
    },
    "lifecycle": {
        "retention_days": "retention_days",
        "undo_window_seconds": "undo_window_seconds",
        "sweep_interval_seconds": "sweep_interval_seconds",
    },
    "audit": {
        "max_entries": "audit_max_entries",
        "retention_days": "audit_retention_days",
        "track_storage": "audit_storage",
    },
    "backups": {
        "max_backups": "max_backups",
        "interval_hours": "backup_interval_hours",
    },
    "integrity": {"interval_hours": "integrity_interval_hours"},
}


def dict_to_config(data: dict[str, Any], project_root: Path) -> DiaryConfig:
    """Convert dictionary to DiaryConfig.

    Raises:
        ConfigError: If a value has the wrong type or is out of range.
    """
    config = DiaryConfig(project_root=project_root)

    for section, keys in _SECTIONS.items():
        values = data.get(section)
        if values is None:
            continue
        if not isinstance(values, dict):
            raise ConfigError(f"Section [{section}] must be a table")
        for key, attr in keys.items():
            if key not in values:
                continue
            value = values[key]
            expected = type(getattr(config, attr))
            if expected is float and isinstance(value, int) and not isinstance(value, bool):
                value = float(value)
            if not isinstance(value, expected) or (expected is not bool and isinstance(value, bool)):
                raise ConfigError(
                    f"{section}.{key} must be {expected.__name__}, got {type(value).__name__}"
                )
            setattr(config, attr, value)

    config.validate()
    return config


def find_config_file(project_root: Path) -> Optional[Path]:
    """Find configuration file in project root.

    Search order:
    1. diary_config.py (most flexible)
    2. diary_config.toml
    3. diary_config.json
    4. .diary.toml
    5. .diary.json
    """
    candidates = [
        "diary_config.py",
        "diary_config.toml",
        "diary_config.json",
        ".diary.toml",
        ".diary.json",
    ]

    for name in candidates:
        path = project_root / name
        if path.exists():
            return path

    return None


def load_config(project_root: Path, config_path: Optional[Path] = None) -> DiaryConfig:
    """Load diary configuration.

    Args:
        project_root: Root directory of the diary
        config_path: Optional explicit path to config file

    Returns:
        DiaryConfig instance
    """
    if config_path is None:
        config_path = find_config_file(project_root)

    if config_path is None:
        return DiaryConfig(project_root=project_root)

    suffix = config_path.suffix.lower()

    if suffix == ".py":
        config_dict, hooks = load_python_config(config_path)
        config = dict_to_config(config_dict, project_root)
        config.hooks = hooks
        return config

    elif suffix == ".toml":
        return dict_to_config(load_toml_config(config_path), project_root)

    elif suffix == ".json":
        return dict_to_config(load_json_config(config_path), project_root)

    else:
        raise ValueError(f"Unsupported config file type: {suffix}")


def build_registry(
    config: DiaryConfig,
    clock: Optional[Clock] = None,
    notifier: Optional[Notifier] = None,
    initialize: bool = True,
) -> EntryRegistry:
    """Wire store, audit log, scheduler and hooks into a registry.

    Args:
        config: Diary configuration
        clock: Time source (defaults to the system clock)
        notifier: Notification sink; defaults to the ``notify`` hook if the
            config defines one, else to logging
        initialize: Load the audit log and entries immediately

    Returns:
        EntryRegistry ready for use. Call ``scheduler.start()`` to run the
        periodic sweep, backups and integrity checks in the background.
    """
    clock = clock or SystemClock()
    if notifier is None:
        hook = config.hooks.get("notify")
        notifier = CallbackNotifier(hook) if hook else LoggingNotifier()

    store = JsonStore(config.get_data_path(), lock_timeout=config.lock_timeout)
    audit = AuditLog(
        store=store,
        clock=clock,
        max_entries=config.audit_max_entries,
        retention_days=config.audit_retention_days,
    )
    scheduler = ExpiryScheduler(sweep_interval=config.sweep_interval_seconds)
    registry = EntryRegistry(
        store=store,
        audit=audit,
        clock=clock,
        notifier=notifier,
        scheduler=scheduler,
        analyzer=config.hooks.get("analyze"),
        retention_days=config.retention_days,
        undo_window=config.undo_window_seconds,
        per_entry_records=config.per_entry_records,
    )
    scheduler.sweep_fn = registry.check_deleted_entries
    schedule_maintenance(
        registry,
        backup_interval_hours=config.backup_interval_hours,
        integrity_interval_hours=config.integrity_interval_hours,
        max_backups=config.max_backups,
    )

    if config.audit_storage:
        store.attach_audit(audit)

    if initialize:
        audit.load()
        registry.initialize()
    return registry
