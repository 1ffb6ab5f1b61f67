"""Operator-facing notifications, queued per root session.

Messages produced by background work (rewords, renames, cleanups) are
queued against the root session and injected into that session's next
model turn. Delivery is at-most-once: consume() drains the queue before
rendering, so a block that never reaches the model is not re-queued.
Entries older than the TTL are dropped, never delivered.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from butler_sync.models.state import PendingNotification

logger = logging.getLogger(__name__)

_HEADER = (
    "<system-reminder>",
    "[GITBUTLER STATE UPDATE]",
    "The following happened automatically since your last response:",
    "",
)
_FOOTER = (
    "",
    "This is informational, no action needed unless relevant to your current task.",
    "</system-reminder>",
)


def render_notifications(messages: list[str]) -> str:
    lines = [*_HEADER, *(f"- {message}" for message in messages), *_FOOTER]
    return "\n".join(lines)


class NotificationManager:
    """Per-root queues of pending notifications.

    Args:
        resolve_root: Maps any session id (or None) onto its root session.
        ttl: Seconds after which a pending entry expires.
        clock: Time source, in seconds.
    """

    def __init__(
        self,
        resolve_root: Callable[[str | None], str],
        *,
        ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._resolve_root = resolve_root
        self.ttl = ttl
        self._clock = clock
        self._pending: dict[str, list[PendingNotification]] = {}

    def pending(self, session_id: str | None) -> list[PendingNotification]:
        return list(self._pending.get(self._resolve_root(session_id), ()))

    def _expired(self, entry: PendingNotification, now: float) -> bool:
        return now - entry.timestamp > self.ttl

    def reap(self) -> int:
        """Drop expired entries across every root. Returns how many were dropped."""
        now = self._clock()
        dropped = 0
        for root_id in list(self._pending):
            queue = self._pending[root_id]
            kept = [entry for entry in queue if not self._expired(entry, now)]
            dropped += len(queue) - len(kept)
            if kept:
                self._pending[root_id] = kept
            else:
                del self._pending[root_id]
        return dropped

    def enqueue(self, session_id: str | None, message: str) -> None:
        root_id = self._resolve_root(session_id)
        self.reap()
        self._pending.setdefault(root_id, []).append(
            PendingNotification(message=message, timestamp=self._clock())
        )
        logger.info("notification-queued", extra={"data": {"rootID": root_id, "message": message}})

    def consume(self, session_id: str | None) -> str | None:
        """Drain the root's queue and render what is still fresh.

        Returns:
            One ``<system-reminder>`` block, or None when nothing survives.
        """
        root_id = self._resolve_root(session_id)
        queue = self._pending.pop(root_id, None)
        if not queue:
            return None

        now = self._clock()
        fresh = [entry for entry in queue if not self._expired(entry, now)]
        if len(fresh) < len(queue):
            logger.info(
                "notification-expired",
                extra={"data": {"rootID": root_id, "dropped": len(queue) - len(fresh)}},
            )
        if not fresh:
            return None
        return render_notifications([entry.message for entry in fresh])
