"""Facade over the ``but`` branch CLI and the few git queries the engine needs.

Helpers here never raise: a failed command becomes None/False/a result
value plus a log entry. The one exception-raising path, ``but cursor``,
lives in CommandExecutor.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

import tenacity
from pydantic import ValidationError

from butler_sync.engine.classifier import CleanupFailure, classify_cleanup_failure
from butler_sync.engine.executor import CommandResult, CommandRunner
from butler_sync.models.status import WorkspaceStatus

logger = logging.getLogger(__name__)

WORKSPACE_BRANCH = "gitbutler/workspace"


class CleanupResult(str, enum.Enum):
    """Outcome of removing an empty branch from the workspace."""

    CLEANED = "cleaned"
    GONE = "gone"  # branch already disappeared
    SKIPPED = "skipped"  # branch gained commits meanwhile
    FAILED = "failed"
    RETRY = "retry"  # internal: attempt failed, try again

    @property
    def removed(self) -> bool:
        return self in (CleanupResult.CLEANED, CleanupResult.GONE)


class ButlerCli:
    """Branch CLI commands for one workspace root."""

    def __init__(
        self,
        workspace: str | Path,
        runner: CommandRunner,
        *,
        binary: str = "but",
        cleanup_max_retries: int = 4,
        cleanup_base_seconds: float = 0.5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.workspace = Path(workspace).resolve()
        self._runner = runner
        self._binary = binary
        self._cleanup_max_retries = cleanup_max_retries
        self._cleanup_base_seconds = cleanup_base_seconds
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def is_workspace_mode(self) -> bool:
        """True when HEAD is the branch tool's workspace branch."""
        result = await self._runner(["git", "symbolic-ref", "--short", "HEAD"])
        return result.ok and result.stdout.strip() == WORKSPACE_BRANCH

    async def status(self) -> WorkspaceStatus | None:
        """Full status snapshot, or None if the command or its JSON fails."""
        result = await self._runner([self._binary, "status", "--json", "-f"])
        if not result.ok:
            logger.info(
                "status-failed",
                extra={"data": {"exitCode": result.exit_code, "stderr": result.stderr.strip()[:200]}},
            )
            return None
        try:
            return WorkspaceStatus.model_validate_json(result.stdout)
        except ValidationError as exc:
            logger.warning("status-parse-failed", extra={"data": {"error": str(exc)[:500]}})
            return None

    async def commit_diff(self, commit_id: str) -> str | None:
        result = await self._runner(["git", "show", commit_id, "--format=", "--no-color"])
        if not result.ok:
            return None
        return result.stdout.strip() or None

    def to_relative_path(self, path: str) -> str:
        """Workspace-relative form of *path*; paths outside the workspace are returned as given."""
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.workspace / candidate
        rel = os.path.relpath(os.path.normpath(candidate), self.workspace)
        if rel == ".." or rel.startswith(".." + os.sep):
            return path
        return Path(rel).as_posix()

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def rub(self, source: str, dest: str) -> bool:
        """Move change *source* onto branch *dest*."""
        result = await self._runner([self._binary, "rub", source, dest])
        return result.ok

    async def reword(self, target: str, message: str) -> CommandResult:
        """Reword a commit message, or rename a branch when *target* is a branch id."""
        return await self._runner([self._binary, "reword", target, "-m", message])

    async def unapply(self, branch_id: str) -> CommandResult:
        return await self._runner([self._binary, "unapply", branch_id])

    async def unapply_with_retry(self, branch_id: str, branch_name: str) -> CleanupResult:
        """Remove an empty branch, retrying contention with exponential backoff.

        Every retry first re-checks status: a branch that disappeared
        counts as cleaned, one that gained commits is skipped.
        """
        attempt_no = 0

        async def attempt_once() -> CleanupResult:
            nonlocal attempt_no
            attempt_no += 1
            return await self._cleanup_attempt(branch_id, branch_name, attempt_no)

        def give_up(state: tenacity.RetryCallState) -> CleanupResult:
            logger.error(
                "cleanup-failed",
                extra={"data": {"branch": branch_name, "attempts": state.attempt_number}},
            )
            return CleanupResult.FAILED

        retryer = tenacity.AsyncRetrying(
            retry=tenacity.retry_if_result(lambda result: result is CleanupResult.RETRY),
            wait=tenacity.wait_exponential(multiplier=self._cleanup_base_seconds, min=0, max=60),
            stop=tenacity.stop_after_attempt(self._cleanup_max_retries + 1),
            sleep=self._sleep,
            retry_error_callback=give_up,
        )
        return await retryer(attempt_once)

    async def _cleanup_attempt(self, branch_id: str, branch_name: str, attempt: int) -> CleanupResult:
        retries = attempt - 1
        if retries > 0:
            status = await self.status()
            if status is not None:
                branch = status.find_branch(branch_id)
                if branch is None:
                    logger.info(
                        "cleanup-ok",
                        extra={"data": {"branch": branch_name, "retries": retries, "reason": "branch-gone"}},
                    )
                    return CleanupResult.GONE
                if branch.commits:
                    logger.info(
                        "cleanup-skipped",
                        extra={"data": {
                            "branch": branch_name,
                            "retries": retries,
                            "reason": "branch-has-commits",
                            "commitCount": len(branch.commits),
                        }},
                    )
                    return CleanupResult.SKIPPED

        result = await self.unapply(branch_id)
        if result.ok:
            logger.info("cleanup-ok", extra={"data": {"branch": branch_name, "retries": retries}})
            return CleanupResult.CLEANED

        reason = classify_cleanup_failure(result.stderr)
        if reason is CleanupFailure.NOT_FOUND:
            logger.info(
                "cleanup-ok",
                extra={"data": {"branch": branch_name, "retries": retries, "reason": "not-found"}},
            )
            return CleanupResult.GONE

        logger.info(
            "cleanup-retry",
            extra={"data": {
                "branch": branch_name,
                "attempt": attempt,
                "reason": reason.value,
                "stderr": result.stderr.strip()[:200],
            }},
        )
        return CleanupResult.RETRY
