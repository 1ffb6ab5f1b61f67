"""Short-TTL memos in front of the branch CLI.

AssignmentCache remembers which branch a file was last attached to, so a
burst of edits to one file does not re-query ``but status`` every time.
Entries are keyed by ``(conversation_id, file_path)``: two root sessions
editing the same path never see each other's entry.

StatusCache keeps the last status snapshot for the prompt-context helpers,
which run on every model turn.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from butler_sync.models.state import AssignmentCacheEntry
from butler_sync.models.status import WorkspaceStatus

logger = logging.getLogger(__name__)

CacheKey = tuple[str, str]


def cache_key(conversation_id: str, file_path: str) -> CacheKey:
    return (conversation_id, file_path)


class AssignmentCache:
    """TTL cache of file -> branch assignments, scoped per conversation."""

    def __init__(self, *, ttl: float = 30.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[CacheKey, AssignmentCacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def keys(self) -> list[CacheKey]:
        return list(self._entries)

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    def get(self, conversation_id: str, file_path: str) -> AssignmentCacheEntry | None:
        """Entry for the key if younger than the TTL. Expired entries are dropped."""
        key = cache_key(conversation_id, file_path)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.timestamp >= self.ttl:
            del self._entries[key]
            logger.debug("Assignment cache expired: %s", file_path)
            return None
        return entry

    def put(self, conversation_id: str, file_path: str, branch_id: str) -> AssignmentCacheEntry:
        entry = AssignmentCacheEntry(
            branch_id=branch_id,
            conversation_id=conversation_id,
            timestamp=self._clock(),
        )
        self._entries[cache_key(conversation_id, file_path)] = entry
        return entry

    def clear(self) -> None:
        size = len(self._entries)
        self._entries.clear()
        if size > 0:
            logger.debug("Assignment cache cleared (%d entries)", size)


class StatusCache:
    """Single-slot TTL memo of the last workspace status snapshot."""

    def __init__(self, *, ttl: float = 10.0, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._clock = clock
        self._snapshot: WorkspaceStatus | None = None
        self._stored_at = 0.0

    def get(self) -> WorkspaceStatus | None:
        if self._snapshot is None:
            return None
        if self._clock() - self._stored_at >= self.ttl:
            self._snapshot = None
            return None
        return self._snapshot

    def put(self, snapshot: WorkspaceStatus) -> None:
        self._snapshot = snapshot
        self._stored_at = self._clock()

    def clear(self) -> None:
        self._snapshot = None
