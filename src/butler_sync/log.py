"""Structured NDJSON debug log.

Modules log an event name as the message and pass structured fields via
``extra={"data": {...}}``. The file handler renders one JSON object per
line::

    {"ts": "...", "level": "info", "cat": "cursor-ok", "subcommand": "after-edit"}

Reserved keys are ``ts``, ``level`` and ``cat``; data fields are spread at
top level. The file lives at ``<workspace>/.opencode/plugin/debug.log`` and
rotates to ``debug.log.1`` once it reaches ``log_max_bytes``.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from butler_sync.config import PluginConfig

LOG_PATH_SUFFIX = ".opencode/plugin/debug.log"
PACKAGE_LOGGER = "butler_sync"

_RESERVED = frozenset({"ts", "level", "cat"})


class NdjsonFormatter(logging.Formatter):
    """Render a record as a single JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": _level_name(record.levelno),
            "cat": record.getMessage(),
        }
        data = getattr(record, "data", None)
        if isinstance(data, dict):
            for key, value in data.items():
                if key not in _RESERVED:
                    entry[key] = value
        if record.exc_info and record.exc_info[1] is not None:
            entry["error"] = str(record.exc_info[1])
        return json.dumps(entry, default=str)


def _level_name(levelno: int) -> str:
    if levelno >= logging.ERROR:
        return "error"
    if levelno >= logging.WARNING:
        return "warn"
    return "info"


class _WorkspaceHandler(RotatingFileHandler):
    """Rotating NDJSON handler bound to one workspace."""

    def __init__(self, path: Path, max_bytes: int) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(path, maxBytes=max_bytes, backupCount=1, encoding="utf-8", delay=True)
        self.workspace_log = path
        self.setFormatter(NdjsonFormatter())


def log_path(workspace: str | Path) -> Path:
    return Path(workspace) / LOG_PATH_SUFFIX


def configure_logging(workspace: str | Path, config: PluginConfig) -> logging.Handler | None:
    """Attach the NDJSON file handler for a workspace.

    Idempotent per workspace: a second call for the same path returns the
    handler already attached. Returns None when logging is disabled or the
    log directory cannot be created.
    """
    if not config.log_enabled:
        return None

    root = logging.getLogger(PACKAGE_LOGGER)
    path = log_path(workspace).resolve()
    for handler in root.handlers:
        if isinstance(handler, _WorkspaceHandler) and handler.workspace_log == path:
            return handler

    try:
        handler = _WorkspaceHandler(path, config.log_max_bytes)
    except OSError as exc:
        logging.getLogger(__name__).warning(
            "log-setup-failed", extra={"data": {"path": str(path), "error": str(exc)}}
        )
        return None

    root.addHandler(handler)
    if root.level == logging.NOTSET or root.level > logging.INFO:
        root.setLevel(logging.INFO)
    return handler


def detach_logging(handler: logging.Handler | None) -> None:
    """Remove and close a handler returned by configure_logging()."""
    if handler is None:
        return
    logging.getLogger(PACKAGE_LOGGER).removeHandler(handler)
    handler.close()
