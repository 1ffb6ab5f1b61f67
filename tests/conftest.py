"""Shared test fixtures for butler-sync.

Provides a scripted command runner, an in-memory host client, a manual
clock, and builders for ``but status --json`` snapshots.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence
from typing import Any

import pytest

from butler_sync.engine.executor import CommandResult

WORKSPACE_HEAD = CommandResult(0, "gitbutler/workspace\n")
OTHER_HEAD = CommandResult(0, "main\n")


# ---------------------------------------------------------------------------
# Command runner
# ---------------------------------------------------------------------------

class ScriptedRunner:
    """CommandRunner fake answering argv prefixes with scripted results.

    A prefix maps to a list of results consumed in order; the last one is
    sticky. Unscripted commands succeed with empty output. Every call is
    recorded as ``(argv, stdin)``.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[tuple[str, ...], str | None]] = []
        self._scripts: dict[tuple[str, ...], list[Any]] = {}

    def on(self, prefix: Sequence[str], *results: Any) -> ScriptedRunner:
        self._scripts[tuple(prefix)] = list(results)
        return self

    def _match(self, argv: tuple[str, ...]) -> list[Any] | None:
        best: tuple[str, ...] | None = None
        for prefix in self._scripts:
            if argv[: len(prefix)] == prefix and (best is None or len(prefix) > len(best)):
                best = prefix
        return self._scripts[best] if best is not None else None

    async def __call__(self, argv: Sequence[str], *, stdin: str | None = None) -> CommandResult:
        key = tuple(argv)
        self.calls.append((key, stdin))
        await asyncio.sleep(0)
        queue = self._match(key)
        if not queue:
            return CommandResult(0)
        result = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(result):
            result = result(key, stdin)
        return result

    def calls_to(self, *prefix: str) -> list[tuple[tuple[str, ...], str | None]]:
        return [call for call in self.calls if call[0][: len(prefix)] == prefix]

    def payloads(self, subcommand: str) -> list[dict[str, Any]]:
        """Decoded stdin payloads of ``but cursor <subcommand>`` calls."""
        return [
            json.loads(stdin)
            for argv, stdin in self.calls_to("but", "cursor", subcommand)
            if stdin is not None
        ]


# ---------------------------------------------------------------------------
# Host client
# ---------------------------------------------------------------------------

def user_message(text: str, session_id: str | None = None, message_id: str = "msg_1") -> dict[str, Any]:
    info: dict[str, Any] = {"role": "user", "id": message_id}
    if session_id is not None:
        info["sessionID"] = session_id
    return {"info": info, "parts": [{"type": "text", "text": text}]}


def assistant_message(text: str) -> dict[str, Any]:
    return {"info": {"role": "assistant"}, "parts": [{"type": "text", "text": text}]}


class FakeHost:
    """In-memory HostClient recording every call."""

    def __init__(self, reply: str | None = None, prompt_delay: float = 0.0) -> None:
        self.messages: dict[str, list[dict[str, Any]]] = {}
        self.reply = reply
        self.prompt_delay = prompt_delay
        self.created: list[str] = []
        self.deleted: list[str] = []
        self.titles: list[tuple[str, str]] = []
        self.prompts: list[dict[str, Any]] = []
        self.closed = False

    async def session_messages(self, session_id: str, *, limit: int = 5) -> list[dict[str, Any]]:
        return self.messages.get(session_id, [])[-limit:]

    async def create_session(self, title: str) -> str | None:
        session_id = f"tmp_{len(self.created) + 1}"
        self.created.append(session_id)
        return session_id

    async def prompt(self, session_id: str, *, provider: str, model: str, system: str, text: str) -> str | None:
        self.prompts.append({
            "session_id": session_id,
            "provider": provider,
            "model": model,
            "system": system,
            "text": text,
        })
        if self.prompt_delay:
            await asyncio.sleep(self.prompt_delay)
        return self.reply

    async def delete_session(self, session_id: str) -> None:
        self.deleted.append(session_id)

    async def update_session_title(self, session_id: str, title: str) -> None:
        self.titles.append((session_id, title))

    async def aclose(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Time
# ---------------------------------------------------------------------------

class ManualClock:
    """Monotonic clock advanced by hand (or by ``sleep``)."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Status snapshots
# ---------------------------------------------------------------------------

def change(cli_id: str | None, path: str) -> dict[str, Any]:
    return {"cliId": cli_id, "filePath": path}


def commit(cli_id: str, message: str = "", files: Sequence[str] = (), commit_id: str | None = None) -> dict[str, Any]:
    return {
        "cliId": cli_id,
        "commitId": commit_id or f"sha-{cli_id}",
        "message": message,
        "changes": [change(None, path) for path in files],
    }


def branch(
    cli_id: str,
    name: str,
    commits: Sequence[dict[str, Any]] = (),
    branch_status: str = "completelyUnpushed",
) -> dict[str, Any]:
    return {"cliId": cli_id, "name": name, "branchStatus": branch_status, "commits": list(commits)}


def stack(branches: Sequence[dict[str, Any]], assigned: Sequence[str] = ()) -> dict[str, Any]:
    return {
        "assignedChanges": [change(f"a-{path}", path) for path in assigned],
        "branches": list(branches),
    }


def status_json(stacks: Sequence[dict[str, Any]] = (), unassigned: Sequence[tuple[str, str]] = ()) -> str:
    return json.dumps({
        "unassignedChanges": [change(cli_id, path) for cli_id, path in unassigned],
        "stacks": list(stacks),
    })


def status_result(stacks: Sequence[dict[str, Any]] = (), unassigned: Sequence[tuple[str, str]] = ()) -> CommandResult:
    return CommandResult(0, status_json(stacks, unassigned))


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def runner() -> ScriptedRunner:
    return ScriptedRunner()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def host() -> FakeHost:
    return FakeHost()
