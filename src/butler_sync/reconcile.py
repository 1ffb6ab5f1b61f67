"""Idle-time reconciliation of a conversation's branches.

Runs once a session goes idle and its turn has been finalized:

1. Reap stale file locks.
2. Sweep the files edited this turn: re-infer each one and move an
   unassigned change onto its branch when the destination is unambiguous
   and no other branch owns hunks of the same file.
3. Fetch the root session's latest user message. Without it nothing
   else can run.
4. Reword the first commit of every local-only branch not reworded
   before. A message that is already conventional is kept. Otherwise a
   language model is raced against a timeout, falling back to a
   deterministic message. Auto-named branches are renamed to a slug of
   the user message.
5. Push the most relevant branch name as the session title.
6. Remove auto-named branches left with no commits and no changes.

Every step is best effort: failures are logged and counted, never raised.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from butler_sync.config import PluginConfig
from butler_sync.engine.butler import ButlerCli, CleanupResult
from butler_sync.engine.inference import has_multi_branch_hunks, infer_file_branch
from butler_sync.engine.locks import LockCoordinator
from butler_sync.exceptions import HostClientError
from butler_sync.host.protocols import HostClient, first_text_part
from butler_sync.messages import clean_llm_message, is_conventional, to_branch_slug, to_commit_message
from butler_sync.models.state import PluginState
from butler_sync.models.status import BranchStatus, WorkspaceStatus
from butler_sync.notifications import NotificationManager
from butler_sync.prompts.commit_message import COMMIT_MESSAGE_SYSTEM, build_commit_message_prompt
from butler_sync.session import SessionResolver
from butler_sync.tasks import BackgroundTasks

logger = logging.getLogger(__name__)

PROMPT_LOOKBACK = 5
TEMP_SESSION_TITLE = "commit-msg-gen"


@dataclass
class ReconcileSummary:
    """Counts of what one reconciliation pass did."""

    swept: int = 0
    reworded: int = 0
    renamed: int = 0
    cleaned: int = 0
    failed: int = 0
    title: str | None = None
    prompt_found: bool = False

    def to_log(self) -> dict[str, Any]:
        return {
            "swept": self.swept,
            "reworded": self.reworded,
            "renamed": self.renamed,
            "cleanedUp": self.cleaned,
            "failed": self.failed,
            "title": self.title,
        }


class Reconciler:
    """Reword, rename and clean up branches after a turn.

    All collaborators belong to the owning engine; the reconciler holds
    references, not copies, so its mutations are the engine's state.
    """

    def __init__(
        self,
        *,
        cli: ButlerCli,
        host: HostClient | None,
        config: PluginConfig,
        state: PluginState,
        sessions: SessionResolver,
        notifications: NotificationManager,
        locks: LockCoordinator,
        edited_files: Mapping[str, set[str]],
        internal_sessions: set[str],
        tasks: BackgroundTasks,
        save_state: Callable[[], None],
    ) -> None:
        self._cli = cli
        self._host = host
        self._config = config
        self._state = state
        self._sessions = sessions
        self._notifications = notifications
        self._locks = locks
        self._edited_files = edited_files
        self._internal_sessions = internal_sessions
        self._tasks = tasks
        self._save_state = save_state
        self._default_branch = config.default_branch_regex

    # ------------------------------------------------------------------
    # Host lookups
    # ------------------------------------------------------------------

    async def fetch_user_prompt(self, session_id: str) -> str | None:
        """Text of the most recent user message among the session's last few."""
        if self._host is None:
            return None
        try:
            messages = await self._host.session_messages(session_id, limit=PROMPT_LOOKBACK)
        except HostClientError as exc:
            logger.warning(
                "user-prompt-fetch-failed",
                extra={"data": {"sessionID": session_id, "error": str(exc)}},
            )
            return None
        for message in reversed(messages):
            info = message.get("info")
            if not isinstance(info, dict) or info.get("role") != "user":
                continue
            text = first_text_part(message.get("parts"))
            if text:
                return text
        return None

    async def generate_llm_message(self, commit_id: str, user_prompt: str) -> str | None:
        """Ask the model for a conventional message for one commit.

        The prompt runs in a temporary session that hooks ignore and that
        is deleted afterwards. Returns None on timeout, host failure or an
        unusable reply.
        """
        if self._host is None:
            return None
        try:
            return await self._generate_llm_message(self._host, commit_id, user_prompt)
        except Exception as exc:
            logger.error("llm-error", extra={"data": {"commitId": commit_id, "error": str(exc)}}, exc_info=True)
            return None

    async def _generate_llm_message(self, host: HostClient, commit_id: str, user_prompt: str) -> str | None:
        logger.info("llm-start", extra={"data": {"commitId": commit_id, "promptLength": len(user_prompt)}})

        diff = await self._cli.commit_diff(commit_id)
        if diff is None:
            return None
        text = build_commit_message_prompt(user_prompt, diff, self._config.max_diff_chars)

        try:
            temp_id = await host.create_session(TEMP_SESSION_TITLE)
        except HostClientError as exc:
            logger.warning("llm-session-failed", extra={"data": {"commitId": commit_id, "error": str(exc)}})
            return None
        if temp_id is None:
            return None

        self._internal_sessions.add(temp_id)
        try:
            reply = await asyncio.wait_for(
                host.prompt(
                    temp_id,
                    provider=self._config.commit_message_provider,
                    model=self._config.commit_message_model,
                    system=COMMIT_MESSAGE_SYSTEM,
                    text=text,
                ),
                timeout=self._config.llm_timeout_ms / 1000,
            )
        except asyncio.TimeoutError:
            logger.warning("llm-timeout-or-empty", extra={"data": {"commitId": commit_id, "reason": "timeout"}})
            return None
        except HostClientError as exc:
            logger.warning("llm-timeout-or-empty", extra={"data": {"commitId": commit_id, "error": str(exc)}})
            return None
        finally:
            self._internal_sessions.discard(temp_id)
            self._tasks.spawn(host.delete_session(temp_id), name=f"delete-session-{temp_id}")

        if not reply:
            logger.warning("llm-timeout-or-empty", extra={"data": {"commitId": commit_id, "reason": "empty"}})
            return None
        message = clean_llm_message(reply)
        if message is None:
            logger.warning("llm-invalid-format", extra={"data": {"commitId": commit_id, "message": reply[:200]}})
            return None
        logger.info("llm-success", extra={"data": {"commitId": commit_id, "message": message}})
        return message

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(
        self,
        session_id: str | None,
        conversation_id: str,
        stop_failed: bool = False,
    ) -> ReconcileSummary:
        summary = ReconcileSummary()
        if not session_id:
            return summary

        root_id = self._sessions.resolve_root(session_id)
        logger.info("post-stop-start", extra={"data": {"sessionID": session_id, "rootSessionID": root_id}})
        if stop_failed:
            logger.warning(
                "post-stop-degraded",
                extra={"data": {
                    "sessionID": session_id,
                    "rootSessionID": root_id,
                    "reason": "stop command failed, attempting recovery",
                }},
            )

        self._locks.reap()
        summary.swept = await self._sweep(conversation_id)

        prompt = await self.fetch_user_prompt(root_id)
        if not prompt:
            logger.info("post-stop-no-prompt", extra={"data": {"rootSessionID": root_id}})
            return summary
        summary.prompt_found = True

        status = await self._cli.status()
        if status is None:
            return summary

        latest: str | None = None
        for branch in status.all_branches():
            if not branch.is_local_only or not branch.commits:
                continue
            if branch.cli_id in self._state.reworded_branches:
                continue
            try:
                if not await self._reword_branch(session_id, branch, prompt, summary):
                    continue
                latest = await self._rename_branch(session_id, branch, prompt, summary)
            except Exception as exc:
                logger.error(
                    "reword-error",
                    extra={"data": {"branch": branch.name, "error": str(exc)}},
                    exc_info=True,
                )
                summary.failed += 1

        if latest is None:
            latest = self._fallback_title(status)
        if latest is not None:
            summary.title = latest
            self._push_title(root_id, latest)
            self._notifications.enqueue(session_id, f"Session title updated to `{latest}`")

        await self._cleanup(session_id, status, summary)

        logger.info(
            "post-stop-summary",
            extra={"data": {
                "sessionID": session_id,
                "rootSessionID": root_id,
                "stopFailed": stop_failed,
                **summary.to_log(),
            }},
        )
        return summary

    async def _sweep(self, conversation_id: str) -> int:
        files = sorted(self._edited_files.get(conversation_id, ()))
        if not files:
            return 0
        status = await self._cli.status()
        if status is None:
            return 0

        rubbed = 0
        for file_path in files:
            inference = infer_file_branch(
                file_path,
                status,
                enabled=self._config.inference_enabled,
                min_score=self._config.inference_min_score,
                min_margin=self._config.inference_min_margin,
            )
            source, dest = inference.unassigned_id, inference.branch_id
            if not inference.can_move or source is None or dest is None:
                continue
            if has_multi_branch_hunks(file_path, status):
                logger.warning("rub-skip-multi-branch", extra={"data": {"file": file_path}})
                continue
            if await self._cli.rub(source, dest):
                rubbed += 1
                logger.info(
                    "post-stop-sweep-rub",
                    extra={"data": {
                        "file": file_path,
                        "source": source,
                        "dest": dest,
                    }},
                )
                # A rub rewrites change ids.
                status = await self._cli.status()
                if status is None:
                    break
        if rubbed:
            logger.info(
                "post-stop-sweep-summary",
                extra={"data": {"conversationId": conversation_id, "filesChecked": len(files), "rubbed": rubbed}},
            )
        return rubbed

    async def _reword_branch(
        self,
        session_id: str,
        branch: BranchStatus,
        prompt: str,
        summary: ReconcileSummary,
    ) -> bool:
        """Reword the branch's first commit. Returns False if the reword failed."""
        commit = branch.commits[0]
        existing = commit.message.strip()
        if is_conventional(existing):
            logger.info(
                "reword-skipped-existing",
                extra={"data": {"branch": branch.name, "commit": commit.cli_id, "existingMessage": existing}},
            )
            self._state.reworded_branches.add(branch.cli_id)
            self._save_state()
            summary.reworded += 1
            return True

        llm_message = await self.generate_llm_message(commit.commit_id, prompt)
        message = llm_message or to_commit_message(prompt)
        result = await self._cli.reword(commit.cli_id, message)
        if not result.ok:
            logger.warning(
                "reword-failed",
                extra={"data": {
                    "branch": branch.name,
                    "commit": commit.cli_id,
                    "message": message,
                    "stderr": result.stderr.strip()[:200],
                }},
            )
            summary.failed += 1
            return False

        self._state.reworded_branches.add(branch.cli_id)
        self._save_state()
        self._notifications.enqueue(
            session_id, f'Commit on branch `{branch.name}` reworded to: "{message}"'
        )
        logger.info(
            "reword",
            extra={"data": {
                "branch": branch.name,
                "commit": commit.cli_id,
                "message": message,
                "source": "llm" if llm_message else "deterministic",
                "multi": len(branch.commits) > 1,
            }},
        )
        summary.reworded += 1
        return True

    async def _rename_branch(
        self,
        session_id: str,
        branch: BranchStatus,
        prompt: str,
        summary: ReconcileSummary,
    ) -> str:
        """Rename an auto-named branch. Returns the branch's resulting name."""
        if not self._default_branch.search(branch.name):
            logger.info(
                "branch-rename",
                extra={"data": {"status": "skipped", "branch": branch.name, "reason": "user-named"}},
            )
            return branch.name

        slug = to_branch_slug(
            prompt,
            self._config.branch_slug_max_length,
            self._config.branch_slug_max_words,
        )
        result = await self._cli.reword(branch.cli_id, slug)
        if not result.ok:
            logger.warning(
                "branch-rename",
                extra={"data": {"status": "failed", "from": branch.name, "to": slug}},
            )
            summary.failed += 1
            return branch.name

        logger.info("branch-rename", extra={"data": {"status": "ok", "from": branch.name, "to": slug}})
        self._notifications.enqueue(session_id, f"Branch renamed from `{branch.name}` to `{slug}`")
        summary.renamed += 1
        return slug

    def _fallback_title(self, status: WorkspaceStatus) -> str | None:
        named = [
            branch
            for branch in status.all_branches()
            if branch.commits and not self._default_branch.search(branch.name)
        ]
        return named[-1].name if named else None

    def _push_title(self, root_id: str, title: str) -> None:
        if self._host is None:
            return
        self._tasks.spawn(
            self._host.update_session_title(root_id, title),
            name=f"update-title-{root_id}",
        )

    async def _cleanup(self, session_id: str, status: WorkspaceStatus, summary: ReconcileSummary) -> None:
        for stack in status.stacks:
            if stack.assigned_changes:
                continue
            for branch in stack.branches:
                if branch.commits or not self._default_branch.search(branch.name):
                    continue
                result = await self._cli.unapply_with_retry(branch.cli_id, branch.name)
                if result.removed:
                    self._notifications.enqueue(session_id, f"Empty branch `{branch.name}` cleaned up")
                    summary.cleaned += 1
                elif result is CleanupResult.FAILED:
                    summary.failed += 1
