"""Tests for the branch CLI facade (ButlerCli)."""

from __future__ import annotations

import asyncio

import pytest

from butler_sync.engine.butler import ButlerCli, CleanupResult
from butler_sync.engine.executor import CommandResult
from tests.conftest import (
    OTHER_HEAD,
    WORKSPACE_HEAD,
    ManualClock,
    ScriptedRunner,
    branch,
    commit,
    stack,
    status_result,
)

UNAPPLY = ("but", "unapply")
STATUS = ("but", "status")


def _cli(tmp_path, runner: ScriptedRunner, clock: ManualClock, **kwargs) -> ButlerCli:
    return ButlerCli(tmp_path, runner, sleep=clock.sleep, **kwargs)


class TestQueries:
    def test_workspace_mode(self, tmp_path, runner, clock):
        runner.on(("git", "symbolic-ref"), WORKSPACE_HEAD)
        assert asyncio.run(_cli(tmp_path, runner, clock).is_workspace_mode())

    def test_not_workspace_mode(self, tmp_path, runner, clock):
        runner.on(("git", "symbolic-ref"), OTHER_HEAD)
        assert not asyncio.run(_cli(tmp_path, runner, clock).is_workspace_mode())

    def test_detached_head(self, tmp_path, runner, clock):
        runner.on(("git", "symbolic-ref"), CommandResult(128, "", "fatal: ref HEAD is not a symbolic ref"))
        assert not asyncio.run(_cli(tmp_path, runner, clock).is_workspace_mode())

    def test_status_parses_snapshot(self, tmp_path, runner, clock):
        runner.on(STATUS, status_result(
            [stack([branch("b1", "feature", [commit("c1", "feat: x", ["src/a.py"])])], assigned=["src/b.py"])],
            unassigned=[("u1", "src/c.py")],
        ))
        status = asyncio.run(_cli(tmp_path, runner, clock).status())
        assert status is not None
        assert status.unassigned_changes[0].cli_id == "u1"
        feature = status.find_branch("b1")
        assert feature is not None
        assert feature.is_local_only
        assert feature.committed_paths() == ["src/a.py"]
        assert status.stacks[0].assigned_changes[0].file_path == "src/b.py"
        assert runner.calls[0][0] == ("but", "status", "--json", "-f")

    def test_status_tolerates_missing_fields(self, tmp_path, runner, clock):
        runner.on(STATUS, CommandResult(0, '{"stacks": [{"branches": [{"name": "x"}]}]}'))
        status = asyncio.run(_cli(tmp_path, runner, clock).status())
        assert status is not None
        assert status.all_branches()[0].commits == []

    def test_status_failure_is_none(self, tmp_path, runner, clock):
        runner.on(STATUS, CommandResult(1, "", "not a repo"))
        assert asyncio.run(_cli(tmp_path, runner, clock).status()) is None

    def test_status_garbage_is_none(self, tmp_path, runner, clock):
        runner.on(STATUS, CommandResult(0, "not json"))
        assert asyncio.run(_cli(tmp_path, runner, clock).status()) is None

    def test_commit_diff(self, tmp_path, runner, clock):
        runner.on(("git", "show"), CommandResult(0, "diff --git a/x b/x\n"))
        cli = _cli(tmp_path, runner, clock)
        assert asyncio.run(cli.commit_diff("abc")) == "diff --git a/x b/x"
        assert runner.calls[0][0] == ("git", "show", "abc", "--format=", "--no-color")

    def test_empty_diff_is_none(self, tmp_path, runner, clock):
        runner.on(("git", "show"), CommandResult(0, "  \n"))
        assert asyncio.run(_cli(tmp_path, runner, clock).commit_diff("abc")) is None


class TestRelativePath:
    def test_absolute_inside(self, tmp_path, runner, clock):
        cli = _cli(tmp_path, runner, clock)
        assert cli.to_relative_path(str(tmp_path / "src" / "a.py")) == "src/a.py"

    def test_relative_kept(self, tmp_path, runner, clock):
        assert _cli(tmp_path, runner, clock).to_relative_path("src/a.py") == "src/a.py"

    def test_outside_returned_as_given(self, tmp_path, runner, clock):
        cli = _cli(tmp_path / "repo", runner, clock)
        outside = str(tmp_path / "elsewhere" / "a.py")
        assert cli.to_relative_path(outside) == outside


class TestMutations:
    def test_rub(self, tmp_path, runner, clock):
        assert asyncio.run(_cli(tmp_path, runner, clock).rub("u1", "b1"))
        assert runner.calls[0][0] == ("but", "rub", "u1", "b1")

    def test_rub_failure(self, tmp_path, runner, clock):
        runner.on(("but", "rub"), CommandResult(1, "", "nope"))
        assert not asyncio.run(_cli(tmp_path, runner, clock).rub("u1", "b1"))

    def test_reword(self, tmp_path, runner, clock):
        result = asyncio.run(_cli(tmp_path, runner, clock).reword("c1", "feat: x"))
        assert result.ok
        assert runner.calls[0][0] == ("but", "reword", "c1", "-m", "feat: x")


class TestUnapplyWithRetry:
    """Cleanup retries re-check status before every retry."""

    def test_first_try(self, tmp_path, runner, clock):
        result = asyncio.run(_cli(tmp_path, runner, clock).unapply_with_retry("b1", "ge-branch-1"))
        assert result is CleanupResult.CLEANED
        assert result.removed
        assert runner.calls_to(*STATUS) == []

    def test_not_found_counts_as_removed(self, tmp_path, runner, clock):
        runner.on(UNAPPLY, CommandResult(1, "", "Branch not found"))
        result = asyncio.run(_cli(tmp_path, runner, clock).unapply_with_retry("b1", "ge-branch-1"))
        assert result is CleanupResult.GONE
        assert result.removed

    def test_contention_then_success(self, tmp_path, runner, clock):
        runner.on(UNAPPLY, CommandResult(1, "", "database is locked"), CommandResult(0))
        runner.on(STATUS, status_result([stack([branch("b1", "ge-branch-1")])]))
        result = asyncio.run(_cli(tmp_path, runner, clock).unapply_with_retry("b1", "ge-branch-1"))
        assert result is CleanupResult.CLEANED
        assert len(runner.calls_to(*UNAPPLY)) == 2
        assert clock.sleeps == pytest.approx([0.5])

    def test_branch_disappears_between_attempts(self, tmp_path, runner, clock):
        runner.on(UNAPPLY, CommandResult(1, "", "database is locked"))
        runner.on(STATUS, status_result([stack([branch("b2", "other")])]))
        result = asyncio.run(_cli(tmp_path, runner, clock).unapply_with_retry("b1", "ge-branch-1"))
        assert result is CleanupResult.GONE
        assert len(runner.calls_to(*UNAPPLY)) == 1

    def test_branch_gains_commit_between_attempts(self, tmp_path, runner, clock):
        runner.on(UNAPPLY, CommandResult(1, "", "database is locked"))
        runner.on(STATUS, status_result([stack([branch("b1", "ge-branch-1", [commit("c1")])])]))
        result = asyncio.run(_cli(tmp_path, runner, clock).unapply_with_retry("b1", "ge-branch-1"))
        assert result is CleanupResult.SKIPPED
        assert not result.removed

    def test_budget_exhausted(self, tmp_path, runner, clock):
        runner.on(UNAPPLY, CommandResult(1, "", "SQLITE_BUSY"))
        runner.on(STATUS, status_result([stack([branch("b1", "ge-branch-1")])]))
        cli = _cli(tmp_path, runner, clock, cleanup_max_retries=4)
        result = asyncio.run(cli.unapply_with_retry("b1", "ge-branch-1"))
        assert result is CleanupResult.FAILED
        assert len(runner.calls_to(*UNAPPLY)) == 5
        assert clock.sleeps == pytest.approx([0.5, 1.0, 2.0, 4.0])

    def test_unknown_failure_is_retried(self, tmp_path, runner, clock):
        runner.on(UNAPPLY, CommandResult(1, "", "weird"), CommandResult(0))
        runner.on(STATUS, status_result([stack([branch("b1", "ge-branch-1")])]))
        result = asyncio.run(_cli(tmp_path, runner, clock).unapply_with_retry("b1", "ge-branch-1"))
        assert result is CleanupResult.CLEANED
