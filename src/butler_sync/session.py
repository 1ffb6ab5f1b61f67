"""Session resolver: maps any sub-agent session onto its root session.

A sub-agent is visible under two ids over its lifetime: the tool call id
seen when the parent spawns it, and the execution (session) id seen on
its later events. Both are recorded against the same parent so either id
resolves to the same root.

The parent map is persisted after every mutation (last write wins).
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from butler_sync.events import SessionCreated, ToolCall

logger = logging.getLogger(__name__)

# Seed used when the host supplies no session id at all.
DEFAULT_SESSION = "opencode-default"

SUBAGENT_TOOLS = frozenset({"agent", "task", "delegate_task"})


class SessionResolver:
    """Owns the child -> parent session map for one workspace.

    Args:
        on_change: Called with a snapshot of the map after every mutation.
            The engine uses it to schedule a background save.
    """

    def __init__(
        self,
        parents: Mapping[str, str] | None = None,
        *,
        on_change: Callable[[dict[str, str]], None] | None = None,
    ) -> None:
        self._parents: dict[str, str] = dict(parents or {})
        self._on_change = on_change

    def __len__(self) -> int:
        return len(self._parents)

    @property
    def parents(self) -> dict[str, str]:
        """Copy of the current child -> parent map."""
        return dict(self._parents)

    def parent_of(self, session_id: str) -> str | None:
        return self._parents.get(session_id)

    def resolve_root(self, session_id: str | None) -> str:
        """Walk parent links to the root.

        Terminates in O(depth): a repeated node means a cycle was
        introduced, and that node is treated as its own root.
        """
        if not session_id:
            return DEFAULT_SESSION

        seen: set[str] = set()
        current = session_id
        while True:
            if current in seen:
                logger.warning(
                    "session-cycle", extra={"data": {"session": session_id, "at": current}}
                )
                return current
            seen.add(current)
            parent = self._parents.get(current)
            if not parent:
                return current
            current = parent

    def link(self, child_id: str, parent_id: str, *, source: str) -> bool:
        """Record ``child_id -> parent_id``. Returns True if the map changed."""
        if not child_id or not parent_id or child_id == parent_id:
            return False
        if self._parents.get(child_id) == parent_id:
            return False
        self._parents[child_id] = parent_id
        logger.info(
            "session-map-" + source,
            extra={"data": {"session": child_id, "parent": parent_id}},
        )
        if self._on_change is not None:
            self._on_change(dict(self._parents))
        return True

    def track_spawn(
        self,
        parent_id: str,
        call_id: str,
        execution_id: str | None = None,
    ) -> None:
        """Record a sub-agent spawn under its call id and, once known, its execution id."""
        self.link(call_id, parent_id, source="subagent")
        if execution_id:
            self.link(execution_id, parent_id, source="execution")

    def track_tool_call(self, call: ToolCall, execution_id: str | None = None) -> None:
        """Spawn tracking from a tool hook; ignores tools that do not spawn agents."""
        if call.tool not in SUBAGENT_TOOLS:
            return
        if not call.session_id or not call.call_id:
            return
        self.track_spawn(call.session_id, call.call_id, execution_id)

    def track_session_created(self, event: SessionCreated) -> None:
        """Alternate population path: a session-created event naming its parent."""
        if event.parent_id:
            self.link(event.session_id, event.parent_id, source="created")
