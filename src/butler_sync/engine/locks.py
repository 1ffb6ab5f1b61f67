"""Per-file soft locks between concurrent edit handlers.

A lock only orders two handlers touching the same path. A waiter polls
until the lock frees, is reclaimed by its own session, or goes stale; at
the timeout it proceeds anyway and logs the timeout. Locks older than the
staleness threshold are overridden immediately and are also dropped by
reap().
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from butler_sync.models.state import FileLock

logger = logging.getLogger(__name__)


class LockCoordinator:
    """In-memory soft mutex keyed by workspace-relative file path.

    Args:
        stale_after: Seconds after which a lock is considered leaked.
        timeout: Seconds a waiter polls before proceeding anyway.
        poll_interval: Seconds between polls.
        clock: Monotonic time source.
        sleep: Awaitable sleep used while polling.
    """

    def __init__(
        self,
        *,
        stale_after: float = 300.0,
        timeout: float = 60.0,
        poll_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.stale_after = stale_after
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep
        self._locks: dict[str, FileLock] = {}
        self.timeouts = 0
        self.contentions = 0

    def __contains__(self, file_path: str) -> bool:
        return file_path in self._locks

    def get(self, file_path: str) -> FileLock | None:
        return self._locks.get(file_path)

    def _age(self, lock: FileLock) -> float:
        return self._clock() - lock.acquired_at

    def _is_stale(self, lock: FileLock) -> bool:
        return self._age(lock) > self.stale_after

    async def acquire(self, file_path: str, session_id: str, operation: str) -> FileLock:
        """Take the lock on *file_path* for *session_id*, waiting if another session holds it."""
        existing = self._locks.get(file_path)
        if existing is not None:
            if self._is_stale(existing):
                logger.warning(
                    "lock-stale",
                    extra={"data": {
                        "file": file_path,
                        "owner": existing.owner_session,
                        "ageMs": int(self._age(existing) * 1000),
                        "ownerOperation": existing.operation,
                    }},
                )
            elif existing.owner_session != session_id:
                await self._wait_for(file_path, existing, session_id, operation)

        previous = self._locks.get(file_path)
        lock = FileLock(owner_session=session_id, acquired_at=self._clock(), operation=operation)
        self._locks[file_path] = lock
        data: dict[str, object] = {"file": file_path, "session": session_id, "operation": operation}
        if previous is not None:
            data["previousAgeMs"] = int(self._age(previous) * 1000)
        logger.info("lock-acquired", extra={"data": data})
        return lock

    async def _wait_for(
        self, file_path: str, held: FileLock, session_id: str, operation: str
    ) -> None:
        self.contentions += 1
        logger.info(
            "lock-contention",
            extra={"data": {
                "file": file_path,
                "owner": held.owner_session,
                "ownerOperation": held.operation,
                "ownerAgeMs": int(self._age(held) * 1000),
                "waiter": session_id,
                "waiterOperation": operation,
            }},
        )
        deadline = self._clock() + self.timeout
        while self._clock() < deadline:
            await self._sleep(self.poll_interval)
            current = self._locks.get(file_path)
            if current is None or current.owner_session == session_id or self._is_stale(current):
                return

        current = self._locks.get(file_path)
        if current is not None and current.owner_session != session_id and not self._is_stale(current):
            self.timeouts += 1
            logger.error(
                "lock-timeout",
                extra={"data": {
                    "file": file_path,
                    "owner": current.owner_session,
                    "ownerOperation": current.operation,
                    "ownerAgeMs": int(self._age(current) * 1000),
                    "waiter": session_id,
                    "waiterOperation": operation,
                }},
            )

    def release(self, file_path: str, session_id: str | None = None) -> None:
        lock = self._locks.pop(file_path, None)
        data: dict[str, object] = {"file": file_path, "session": session_id}
        if lock is not None:
            data["heldMs"] = int(self._age(lock) * 1000)
        logger.info("lock-released", extra={"data": data})

    def release_session(self, session_id: str) -> int:
        """Drop every lock held by *session_id*. Returns how many were dropped."""
        owned = [path for path, lock in self._locks.items() if lock.owner_session == session_id]
        for path in owned:
            del self._locks[path]
        return len(owned)

    def reap(self) -> int:
        """Drop locks older than the staleness threshold. Returns how many were dropped."""
        stale = [(path, lock) for path, lock in self._locks.items() if self._is_stale(lock)]
        for path, lock in stale:
            del self._locks[path]
            logger.info(
                "lock-reaped",
                extra={"data": {
                    "file": path,
                    "owner": lock.owner_session,
                    "ageMs": int(self._age(lock) * 1000),
                    "operation": lock.operation,
                }},
            )
        return len(stale)

    @asynccontextmanager
    async def hold(self, file_path: str, session_id: str, operation: str) -> AsyncIterator[FileLock]:
        """Hold the lock for the duration of the block, releasing on every exit path."""
        lock = await self.acquire(file_path, session_id, operation)
        try:
            yield lock
        finally:
            self.release(file_path, session_id)
