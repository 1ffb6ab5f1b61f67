"""Tests for the JSON state store and background task tracking."""

from __future__ import annotations

import asyncio
import json

from butler_sync.models.state import BranchOwnership, PluginState
from butler_sync.storage import StateStore
from butler_sync.tasks import BackgroundTasks


def _state() -> PluginState:
    return PluginState(
        conversations_with_edits={"conv-b", "conv-a"},
        reworded_branches={"b1"},
        branch_ownership={
            "conv-a": BranchOwnership(
                root_session_id="ses_a", branch_name="conversation-conv-a", first_seen=1_700_000_000_000
            ),
        },
    )


class TestStateStore:
    def test_missing_documents_load_empty(self, tmp_path):
        store = StateStore(tmp_path)
        assert store.load_session_map() == {}
        assert store.load_plugin_state() == PluginState.empty()

    def test_plugin_state_round_trip(self, tmp_path):
        store = StateStore(tmp_path)
        assert asyncio.run(store.save_plugin_state(_state()))
        loaded = store.load_plugin_state()
        assert loaded.conversations_with_edits == {"conv-a", "conv-b"}
        assert loaded.reworded_branches == {"b1"}
        assert loaded.branch_ownership["conv-a"].root_session_id == "ses_a"

    def test_plugin_state_wire_shape(self, tmp_path):
        store = StateStore(tmp_path)
        asyncio.run(store.save_plugin_state(_state()))
        doc = json.loads(store.plugin_state_path.read_text("utf-8"))
        assert doc["conversationsWithEdits"] == ["conv-a", "conv-b"]
        assert doc["rewordedBranches"] == ["b1"]
        assert doc["branchOwnership"]["conv-a"] == {
            "rootSessionID": "ses_a",
            "branchName": "conversation-conv-a",
            "firstSeen": 1_700_000_000_000,
        }

    def test_session_map_round_trip(self, tmp_path):
        store = StateStore(tmp_path)
        assert asyncio.run(store.save_session_map({"ses_child": "ses_root"}))
        assert json.loads(store.session_map_path.read_text("utf-8")) == {"ses_child": "ses_root"}
        assert store.load_session_map() == {"ses_child": "ses_root"}

    def test_corrupt_documents_load_empty(self, tmp_path):
        store = StateStore(tmp_path)
        store.directory.mkdir(parents=True)
        store.session_map_path.write_text("{oops", encoding="utf-8")
        store.plugin_state_path.write_text('{"conversationsWithEdits": 5}', encoding="utf-8")
        assert store.load_session_map() == {}
        assert store.load_plugin_state() == PluginState.empty()

    def test_no_temp_files_left_behind(self, tmp_path):
        store = StateStore(tmp_path)
        asyncio.run(store.save_plugin_state(_state()))
        assert sorted(p.name for p in store.directory.iterdir()) == ["plugin-state.json"]

    def test_write_failure_reported(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory", encoding="utf-8")
        store = StateStore(blocker)
        assert not asyncio.run(store.save_session_map({"a": "b"}))


class TestBackgroundTasks:
    def test_drain_waits_for_all(self):
        done: list[str] = []

        async def work(name: str) -> None:
            await asyncio.sleep(0)
            done.append(name)

        async def scenario():
            tasks = BackgroundTasks()
            tasks.spawn(work("a"), name="a")
            tasks.spawn(work("b"), name="b")
            assert tasks.pending == 2
            await tasks.drain()
            return tasks.pending

        assert asyncio.run(scenario()) == 0
        assert sorted(done) == ["a", "b"]

    def test_failures_do_not_propagate(self):
        async def fail() -> None:
            raise RuntimeError("disk full")

        async def scenario():
            tasks = BackgroundTasks()
            tasks.spawn(fail(), name="save")
            await tasks.drain()
            return tasks.pending

        assert asyncio.run(scenario()) == 0

    def test_tasks_spawned_while_draining(self):
        done: list[str] = []

        async def scenario():
            tasks = BackgroundTasks()

            async def child() -> None:
                done.append("child")

            async def parent() -> None:
                tasks.spawn(child(), name="child")
                done.append("parent")

            tasks.spawn(parent(), name="parent")
            await tasks.drain()

        asyncio.run(scenario())
        assert done == ["parent", "child"]
