"""ButlerSyncEngine -- the per-workspace event adapter.

Bridges host hooks to the branch CLI:

- tool hook, before (edit/write)  -> soft file lock
- tool hook, after  (edit/write)  -> branch inference / ``but cursor after-edit``
- session idle                    -> ``but cursor stop`` + reconciliation
- message transform               -> pending notifications injected into the next turn
- compaction / system prompt      -> workspace state summaries

One engine owns all mutable state of one workspace root. Every handler
swallows its own failures: the host must never be crashed by this engine.

Usage::

    engine = await ButlerSyncEngine.open("/path/to/repo", host)
    await engine.after_tool({"tool": "edit", "sessionID": "ses_1"}, output)
    await engine.handle_event({"type": "session.idle", "properties": {"sessionID": "ses_1"}})
    await engine.aclose()
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from butler_sync.config import PluginConfig, load_config
from butler_sync.engine.butler import ButlerCli
from butler_sync.engine.cache import AssignmentCache, StatusCache
from butler_sync.engine.executor import CommandExecutor, CommandRunner, SubprocessRunner
from butler_sync.engine.hashing import branch_seed, conversation_id
from butler_sync.engine.inference import has_multi_branch_hunks, infer_file_branch
from butler_sync.engine.locks import LockCoordinator
from butler_sync.events import (
    SessionCreated,
    SessionIdle,
    ToolCall,
    ToolOutput,
    decode_event,
    file_path_from_args,
)
from butler_sync.exceptions import CommandFatalError
from butler_sync.host.client import HttpHostClient
from butler_sync.host.protocols import HostClient
from butler_sync.log import configure_logging, detach_logging
from butler_sync.models.state import BranchOwnership, PluginState
from butler_sync.models.status import NOT_IN_BRANCH, BranchInference, WorkspaceStatus
from butler_sync.notifications import NotificationManager
from butler_sync.reconcile import Reconciler, ReconcileSummary
from butler_sync.session import SessionResolver
from butler_sync.storage import StateStore
from butler_sync.tasks import BackgroundTasks

logger = logging.getLogger(__name__)

UNKNOWN_SESSION = "unknown"


class ButlerSyncEngine:
    """Session-scoped assignment and reconciliation engine for one workspace.

    Prefer ``await ButlerSyncEngine.open(...)``, which loads configuration
    and persisted state. The constructor wires already-loaded pieces and
    exposes the clocks and sleep for tests.
    """

    def __init__(
        self,
        workspace: str | Path,
        *,
        host: HostClient | None = None,
        config: PluginConfig | None = None,
        runner: CommandRunner | None = None,
        store: StateStore | None = None,
        parents: dict[str, str] | None = None,
        state: PluginState | None = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.workspace = Path(workspace).resolve()
        self.config = config or PluginConfig()
        self.host = host
        self.store = store or StateStore(self.workspace)
        self.state = state or PluginState.empty()
        self._wall_clock = wall_clock
        self._owns_host = False
        self._log_handler: logging.Handler | None = None

        runner = runner or SubprocessRunner(self.workspace)
        cfg = self.config
        self.tasks = BackgroundTasks()
        self.sessions = SessionResolver(parents, on_change=self._schedule_session_map_save)
        self.locks = LockCoordinator(
            stale_after=cfg.stale_lock_ms / 1000,
            timeout=cfg.lock_timeout_ms / 1000,
            poll_interval=cfg.lock_poll_ms / 1000,
            clock=clock,
            sleep=sleep,
        )
        self.assignments = AssignmentCache(ttl=cfg.assignment_cache_ttl_ms / 1000, clock=clock)
        self.status_cache = StatusCache(ttl=cfg.status_cache_ttl_ms / 1000, clock=clock)
        self.notifications = NotificationManager(
            self.sessions.resolve_root, ttl=cfg.notification_ttl_ms / 1000, clock=clock
        )
        self.executor = CommandExecutor(runner, binary=cfg.but_binary, sleep=sleep)
        self.cli = ButlerCli(
            self.workspace,
            runner,
            binary=cfg.but_binary,
            cleanup_max_retries=cfg.cleanup_max_retries,
            cleanup_base_seconds=cfg.cleanup_base_delay_ms / 1000,
            sleep=sleep,
        )

        # Files edited per conversation since its last reconciliation.
        self.edited_files: dict[str, set[str]] = {}
        # Temporary sessions created for message generation; hooks ignore them.
        self.internal_sessions: set[str] = set()
        # Conversations whose idle processing is in flight (single-flight guard).
        self.active_reconciliations: set[str] = set()
        # Edits recorded per conversation; a change during a pass means new work.
        self.edit_counts: dict[str, int] = {}
        # Conversations reconciled with no edit since.
        self.reconciled: set[str] = set()
        self.main_session_id: str | None = None

        self._state_lock = asyncio.Lock()
        self._session_map_lock = asyncio.Lock()

        self.reconciler = Reconciler(
            cli=self.cli,
            host=host,
            config=cfg,
            state=self.state,
            sessions=self.sessions,
            notifications=self.notifications,
            locks=self.locks,
            edited_files=self.edited_files,
            internal_sessions=self.internal_sessions,
            tasks=self.tasks,
            save_state=self.save_state,
        )

    @classmethod
    async def open(
        cls,
        workspace: str | Path,
        host: HostClient | None = None,
        config: PluginConfig | None = None,
        runner: CommandRunner | None = None,
        **kwargs: Any,
    ) -> ButlerSyncEngine:
        """Load configuration, logging and persisted state for *workspace*.

        When no host client is given and ``host_url`` is configured, an
        HttpHostClient is created and closed by aclose().
        """
        config = config or load_config(workspace)
        log_handler = configure_logging(workspace, config)

        store = StateStore(workspace)
        parents = await asyncio.to_thread(store.load_session_map)
        state = await asyncio.to_thread(store.load_plugin_state)

        owns_host = False
        if host is None and config.host_url:
            host = HttpHostClient(config.host_url)
            owns_host = True

        engine = cls(
            workspace,
            host=host,
            config=config,
            runner=runner,
            store=store,
            parents=parents,
            state=state,
            **kwargs,
        )
        engine._owns_host = owns_host
        engine._log_handler = log_handler

        logger.info(
            "state-loaded",
            extra={"data": {
                "conversations": len(state.conversations_with_edits),
                "reworded": len(state.reworded_branches),
                "logEnabled": config.log_enabled,
                "commitModel": config.commit_message_model,
            }},
        )
        logger.info(
            "plugin-init",
            extra={"data": {
                "workspaceMode": await engine.cli.is_workspace_mode(),
                "sessionMapSize": len(engine.sessions),
            }},
        )
        return engine

    async def aclose(self) -> None:
        """Wait for outstanding background work and release resources."""
        await self.tasks.drain()
        if self._owns_host and self.host is not None:
            await self.host.aclose()
        detach_logging(self._log_handler)
        self._log_handler = None

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def conversation_for(self, session_id: str | None) -> str:
        """Conversation id of the root session behind *session_id*."""
        root = self.sessions.resolve_root(session_id)
        return conversation_id(branch_seed(root, self.config.branch_target))

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save_state(self) -> None:
        """Schedule a background write of the plugin state."""
        self.tasks.spawn(self._write_state(), name="save-plugin-state")

    async def _write_state(self) -> None:
        async with self._state_lock:
            await self.store.save_plugin_state(self.state)

    def _schedule_session_map_save(self, mapping: dict[str, str]) -> None:
        self.tasks.spawn(self._write_session_map(mapping), name="save-session-map")

    async def _write_session_map(self, mapping: dict[str, str]) -> None:
        async with self._session_map_lock:
            await self.store.save_session_map(mapping)

    # ------------------------------------------------------------------
    # Tool hooks
    # ------------------------------------------------------------------

    async def before_tool(self, call: ToolCall | dict[str, Any], args: Any) -> None:
        """Take the file lock before an edit/write tool runs."""
        try:
            call = call if isinstance(call, ToolCall) else ToolCall.decode(call)
            if call.session_id in self.internal_sessions or not call.is_edit:
                return
            raw_path = file_path_from_args(args)
            if raw_path is None:
                return
            await self.locks.acquire(
                self.cli.to_relative_path(raw_path),
                call.session_id or UNKNOWN_SESSION,
                call.tool or "unknown",
            )
        except Exception:
            logger.error("before-tool-error", exc_info=True)

    async def after_tool(self, call: ToolCall | dict[str, Any], output: Any) -> None:
        """Attach a finished edit to its branch and record it for reconciliation."""
        try:
            call = call if isinstance(call, ToolCall) else ToolCall.decode(call)
            if call.session_id in self.internal_sessions:
                return
            result = ToolOutput.decode(output)
            self.sessions.track_tool_call(call, result.execution_id)
            if not call.is_edit:
                return

            session_id = call.session_id or UNKNOWN_SESSION
            if not await self.cli.is_workspace_mode():
                self.locks.release_session(session_id)
                return

            if result.file_path is None:
                released = self.locks.release_session(session_id)
                logger.info(
                    "after-edit-no-filepath",
                    extra={"data": {"sessionID": session_id, "tool": call.tool, "locksReleased": released}},
                )
                return

            relative_path = self.cli.to_relative_path(result.file_path)
            try:
                await self._record_edit(call, relative_path, result)
            finally:
                self.locks.release(relative_path, call.session_id)
        except Exception:
            logger.error("after-tool-error", exc_info=True)

    async def _record_edit(self, call: ToolCall, relative_path: str, result: ToolOutput) -> None:
        conv_id = self.conversation_for(call.session_id)
        cached = self.assignments.get(conv_id, relative_path)

        if cached is None:
            status = await self.cli.status()
            inference = self._infer(relative_path, status) if status is not None else NOT_IN_BRANCH
            if inference.in_branch:
                await self._attach_to_branch(relative_path, call, inference, status)
                return
        else:
            logger.info(
                "assignment-cache-hit",
                extra={"data": {"file": relative_path, "branchCliId": cached.branch_id}},
            )

        logger.info(
            "after-edit",
            extra={"data": {"file": relative_path, "sessionID": call.session_id, "conversationId": conv_id}},
        )
        try:
            await self.executor.run(
                "after-edit",
                {
                    "conversation_id": conv_id,
                    "generation_id": str(uuid.uuid4()),
                    "file_path": relative_path,
                    "edits": [edit.to_payload() for edit in result.edits],
                    "hook_event_name": "afterFileEdit",
                    "workspace_roots": [str(self.workspace)],
                },
            )
        except CommandFatalError as exc:
            logger.error(
                "cursor-after-edit-error",
                extra={"data": {"file": relative_path, "error": str(exc)}},
            )
        else:
            self.assignments.put(conv_id, relative_path, conv_id)

        self.state.conversations_with_edits.add(conv_id)
        self.edited_files.setdefault(conv_id, set()).add(relative_path)
        self.edit_counts[conv_id] = self.edit_counts.get(conv_id, 0) + 1
        self.reconciled.discard(conv_id)
        self._claim_ownership(conv_id, self.sessions.resolve_root(call.session_id))
        self.save_state()

    def _infer(self, relative_path: str, status: WorkspaceStatus) -> BranchInference:
        return infer_file_branch(
            relative_path,
            status,
            enabled=self.config.inference_enabled,
            min_score=self.config.inference_min_score,
            min_margin=self.config.inference_min_margin,
        )

    async def _attach_to_branch(
        self,
        relative_path: str,
        call: ToolCall,
        inference: BranchInference,
        status: WorkspaceStatus | None,
    ) -> None:
        source, dest = inference.unassigned_id, inference.branch_id
        if not inference.can_move or source is None or dest is None:
            logger.info(
                "after-edit-already-assigned",
                extra={"data": {
                    "file": relative_path,
                    "sessionID": call.session_id,
                    "branch": inference.branch_name,
                    "confidence": inference.confidence.value if inference.confidence else None,
                }},
            )
            return
        if status is not None and has_multi_branch_hunks(relative_path, status):
            logger.warning("rub-skip-multi-branch", extra={"data": {"file": relative_path}})
            return

        logger.info(
            "rub-check",
            extra={"data": {"file": relative_path, "multiBranch": False, "source": source, "dest": dest}},
        )
        if await self.cli.rub(source, dest):
            logger.info("rub-ok", extra={"data": {"source": source, "dest": dest, "file": relative_path}})
        else:
            logger.error("rub-failed", extra={"data": {"source": source, "dest": dest, "file": relative_path}})

    def _claim_ownership(self, conv_id: str, root_id: str) -> None:
        existing = self.state.branch_ownership.get(conv_id)
        if existing is None:
            self.state.branch_ownership[conv_id] = BranchOwnership(
                root_session_id=root_id,
                branch_name=f"conversation-{conv_id[:8]}",
                first_seen=int(self._wall_clock() * 1000),
            )
        elif existing.root_session_id != root_id:
            logger.error(
                "branch-collision",
                extra={"data": {
                    "conversationId": conv_id,
                    "existingOwner": existing.root_session_id,
                    "newOwner": root_id,
                    "existingBranch": existing.branch_name,
                }},
            )

    # ------------------------------------------------------------------
    # Lifecycle events
    # ------------------------------------------------------------------

    async def handle_event(self, event: Any) -> ReconcileSummary | None:
        """Dispatch a host lifecycle event. Returns the reconciliation summary on idle."""
        try:
            decoded = decode_event(event)
            if decoded.session_id in self.internal_sessions:
                return None
            if isinstance(decoded, SessionCreated):
                self.sessions.track_session_created(decoded)
                if decoded.parent_id is None:
                    self.main_session_id = decoded.session_id
                return None
            if isinstance(decoded, SessionIdle):
                return await self.on_idle(decoded.session_id)
        except Exception:
            logger.error("event-error", exc_info=True)
        return None

    async def on_idle(self, session_id: str | None) -> ReconcileSummary | None:
        """Finalize the turn and reconcile, at most once per conversation at a time."""
        if not await self.cli.is_workspace_mode():
            return None

        conv_id = self.conversation_for(session_id)
        if conv_id not in self.state.conversations_with_edits:
            return None
        if conv_id in self.reconciled:
            logger.info("idle-skip-no-new-edits", extra={"data": {"conversationId": conv_id}})
            return None
        if conv_id in self.active_reconciliations:
            logger.info("idle-skip-in-flight", extra={"data": {"conversationId": conv_id}})
            return None

        self.active_reconciliations.add(conv_id)
        edits_before = self.edit_counts.get(conv_id, 0)
        try:
            logger.info("session-stop", extra={"data": {"sessionID": session_id, "conversationId": conv_id}})
            stop_failed = False
            try:
                await self.executor.run(
                    "stop",
                    {
                        "conversation_id": conv_id,
                        "generation_id": str(uuid.uuid4()),
                        "status": "completed",
                        "hook_event_name": "stop",
                        "workspace_roots": [str(self.workspace)],
                    },
                )
            except CommandFatalError as exc:
                stop_failed = True
                logger.error("cursor-stop-error", extra={"data": {"conversationId": conv_id, "error": str(exc)}})

            summary = await self.reconciler.reconcile(session_id, conv_id, stop_failed)
            if self.edit_counts.get(conv_id, 0) == edits_before:
                self.edited_files.pop(conv_id, None)
                self.reconciled.add(conv_id)
            else:
                # Keep every file; the next idle sweeps them again.
                logger.info("idle-edits-during-reconcile", extra={"data": {"conversationId": conv_id}})
            self.assignments.clear()
            self.status_cache.clear()
            return summary
        finally:
            self.active_reconciliations.discard(conv_id)

    # ------------------------------------------------------------------
    # Prompt context
    # ------------------------------------------------------------------

    async def _cached_status(self) -> WorkspaceStatus | None:
        status = self.status_cache.get()
        if status is None:
            status = await self.cli.status()
            if status is not None:
                self.status_cache.put(status)
        return status

    def transform_messages(self, messages: list[dict[str, Any]]) -> bool:
        """Inject pending notifications into the last user message, in place.

        Returns True when a notification block was injected.
        """
        try:
            return self._inject_notifications(messages)
        except Exception:
            logger.error("messages-transform-error", exc_info=True)
            return False

    def _inject_notifications(self, messages: list[dict[str, Any]]) -> bool:
        last_user = next(
            (
                message
                for message in reversed(messages)
                if isinstance(message.get("info"), dict) and message["info"].get("role") == "user"
            ),
            None,
        )
        if last_user is None:
            return False

        info = last_user["info"]
        session_id = info.get("sessionID") or self.main_session_id
        if not session_id:
            return False

        notification = self.notifications.consume(session_id)
        if notification is None:
            return False

        parts = last_user.get("parts")
        if not isinstance(parts, list):
            return False
        index = next(
            (
                i
                for i, part in enumerate(parts)
                if isinstance(part, dict) and part.get("type") == "text" and part.get("text")
            ),
            None,
        )
        if index is None:
            return False

        parts.insert(index, {
            "id": f"gitbutler_ctx_{int(self._wall_clock() * 1000)}",
            "messageID": info.get("id"),
            "sessionID": session_id,
            "type": "text",
            "text": notification,
            "synthetic": True,
        })
        logger.info(
            "context-injected",
            extra={"data": {"sessionID": session_id, "contentLength": len(notification)}},
        )
        return True

    async def compaction_context(self, session_id: str) -> str | None:
        """``<gitbutler-state>`` block preserved across context compaction."""
        try:
            conv_id = self.conversation_for(session_id)
            parts: list[str] = []

            status = await self._cached_status()
            if status is not None:
                active = [
                    branch
                    for stack in status.stacks
                    for branch in stack.branches
                    if branch.commits or stack.assigned_changes
                ]
                if active:
                    listing = "\n".join(f"- `{b.name}` ({len(b.commits)} commits)" for b in active)
                    parts.append(f"Active GitButler branches:\n{listing}")

            if self.state.reworded_branches:
                parts.append(
                    "Reworded branches (commit messages updated): "
                    f"{len(self.state.reworded_branches)} branches"
                )
            if conv_id in self.state.conversations_with_edits:
                parts.append(
                    "This session has active edits tracked in GitButler "
                    f"(conversation: {conv_id[:8]})"
                )
            ownership = self.state.branch_ownership.get(conv_id)
            if ownership is not None:
                parts.append(
                    f"Session branch ownership: root={ownership.root_session_id[:8]}, "
                    f"branch={ownership.branch_name}"
                )

            if not parts:
                return None
            logger.info(
                "compacting-context-injected",
                extra={"data": {"sessionID": session_id, "contextItems": len(parts)}},
            )
            return "<gitbutler-state>\n" + "\n\n".join(parts) + "\n</gitbutler-state>"
        except Exception:
            logger.error("compacting-error", exc_info=True)
            return None

    async def system_context(self) -> str | None:
        """One-line workspace summary for the system prompt."""
        try:
            if not await self.cli.is_workspace_mode():
                return None
            status = await self._cached_status()
            if status is None:
                return None
            active = [branch for branch in status.all_branches() if branch.commits]
            unassigned = len(status.unassigned_changes)
            if not active and not unassigned:
                return None
            names = ", ".join(branch.name for branch in active)
            return (
                f"[GitButler] Workspace mode active. {len(active)} branch(es): {names}. "
                f"{unassigned} unassigned change(s)."
            )
        except Exception:
            logger.error("system-transform-error", exc_info=True)
            return None
