"""Tests for per-root notification queues."""

from __future__ import annotations

from butler_sync.notifications import NotificationManager, render_notifications
from butler_sync.session import SessionResolver


def _manager(clock, ttl: float = 300.0) -> tuple[NotificationManager, SessionResolver]:
    sessions = SessionResolver({"ses_child": "ses_root", "call_1": "ses_root"})
    return NotificationManager(sessions.resolve_root, ttl=ttl, clock=clock), sessions


class TestRender:
    def test_block_shape(self):
        block = render_notifications(["Branch renamed", "Commit reworded"])
        lines = block.split("\n")
        assert lines[0] == "<system-reminder>"
        assert lines[1] == "[GITBUTLER STATE UPDATE]"
        assert "- Branch renamed" in lines
        assert "- Commit reworded" in lines
        assert lines.index("- Branch renamed") < lines.index("- Commit reworded")
        assert lines[-1] == "</system-reminder>"


class TestNotificationManager:
    def test_queued_under_root(self, clock):
        manager, _ = _manager(clock)
        manager.enqueue("ses_child", "Commit reworded")
        assert [entry.message for entry in manager.pending("ses_root")] == ["Commit reworded"]

    def test_consumed_via_any_session_of_the_tree(self, clock):
        manager, _ = _manager(clock)
        manager.enqueue("ses_root", "Commit reworded")
        block = manager.consume("call_1")
        assert block is not None
        assert "- Commit reworded" in block

    def test_second_consume_is_empty(self, clock):
        manager, _ = _manager(clock)
        manager.enqueue("ses_root", "Commit reworded")
        assert manager.consume("ses_root") is not None
        assert manager.consume("ses_root") is None

    def test_consume_empty(self, clock):
        manager, _ = _manager(clock)
        assert manager.consume("ses_other") is None

    def test_expired_entries_dropped_on_consume(self, clock):
        manager, _ = _manager(clock)
        manager.enqueue("ses_root", "old news")
        clock.advance(200)
        manager.enqueue("ses_root", "fresh news")
        clock.advance(150)
        block = manager.consume("ses_root")
        assert block is not None
        assert "fresh news" in block
        assert "old news" not in block

    def test_all_expired_is_none(self, clock):
        manager, _ = _manager(clock)
        manager.enqueue("ses_root", "old news")
        clock.advance(301)
        assert manager.consume("ses_root") is None
        assert manager.pending("ses_root") == []

    def test_entry_at_exact_ttl_survives(self, clock):
        manager, _ = _manager(clock)
        manager.enqueue("ses_root", "boundary")
        clock.advance(300)
        assert manager.consume("ses_root") is not None

    def test_enqueue_reaps_other_roots(self, clock):
        manager, _ = _manager(clock)
        manager.enqueue("ses_a", "stale")
        clock.advance(400)
        manager.enqueue("ses_b", "fresh")
        assert manager.pending("ses_a") == []
        assert len(manager.pending("ses_b")) == 1

    def test_roots_are_isolated(self, clock):
        manager, _ = _manager(clock)
        manager.enqueue("ses_a", "for a")
        manager.enqueue("ses_b", "for b")
        block = manager.consume("ses_a")
        assert "for a" in block
        assert "for b" not in block
        assert len(manager.pending("ses_b")) == 1
