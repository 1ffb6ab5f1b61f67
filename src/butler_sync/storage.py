"""JSON persistence for the session map and plugin state.

Both documents live under ``<workspace>/.opencode/plugin/``. A missing or
corrupt document loads as empty. Writes are atomic (temp file + replace);
a failed write is logged and reported as False, never raised, since the
in-memory state remains authoritative for the process lifetime.
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path

from pydantic import ValidationError

from butler_sync.models.state import PluginState, PluginStateDocument, SessionMapDocument

logger = logging.getLogger(__name__)

PLUGIN_DIR = ".opencode/plugin"
SESSION_MAP_FILE = "session-map.json"
PLUGIN_STATE_FILE = "plugin-state.json"


class StateStore:
    """Reads and writes the two durable documents of one workspace."""

    def __init__(self, workspace: str | Path) -> None:
        self.directory = Path(workspace) / PLUGIN_DIR
        self.session_map_path = self.directory / SESSION_MAP_FILE
        self.plugin_state_path = self.directory / PLUGIN_STATE_FILE

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load_session_map(self) -> dict[str, str]:
        text = self._read(self.session_map_path)
        if text is None:
            return {}
        try:
            return dict(SessionMapDocument.model_validate_json(text).root)
        except ValidationError as exc:
            logger.warning(
                "session-map-load-failed",
                extra={"data": {"path": str(self.session_map_path), "error": str(exc)}},
            )
            return {}

    def load_plugin_state(self) -> PluginState:
        text = self._read(self.plugin_state_path)
        if text is None:
            return PluginState.empty()
        try:
            doc = PluginStateDocument.model_validate_json(text)
        except ValidationError as exc:
            logger.warning(
                "plugin-state-load-failed",
                extra={"data": {"path": str(self.plugin_state_path), "error": str(exc)}},
            )
            return PluginState.empty()
        return PluginState.from_document(doc)

    def _read(self, path: Path) -> str | None:
        try:
            return path.read_text("utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("state-read-failed", extra={"data": {"path": str(path), "error": str(exc)}})
            return None

    # ------------------------------------------------------------------
    # Saving
    # ------------------------------------------------------------------

    @staticmethod
    def dump_session_map(mapping: dict[str, str]) -> str:
        return SessionMapDocument(dict(mapping)).model_dump_json(indent=2) + "\n"

    @staticmethod
    def dump_plugin_state(state: PluginState) -> str:
        return state.to_document().model_dump_json(indent=2, by_alias=True) + "\n"

    def write(self, path: Path, text: str) -> bool:
        """Atomically replace *path* with *text*. Returns False on failure."""
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(text)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            logger.warning("state-save-failed", extra={"data": {"path": str(path), "error": str(exc)}})
            return False
        return True

    async def save_session_map(self, mapping: dict[str, str]) -> bool:
        text = self.dump_session_map(mapping)
        return await asyncio.to_thread(self.write, self.session_map_path, text)

    async def save_plugin_state(self, state: PluginState) -> bool:
        text = self.dump_plugin_state(state)
        return await asyncio.to_thread(self.write, self.plugin_state_path, text)
