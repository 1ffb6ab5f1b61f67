"""Data models for butler-sync."""

from butler_sync.models.state import (
    AssignmentCacheEntry,
    BranchOwnership,
    FileLock,
    PendingNotification,
    PluginState,
    PluginStateDocument,
    SessionMapDocument,
)
from butler_sync.models.status import (
    NOT_IN_BRANCH,
    BranchInference,
    BranchStatus,
    CommitSummary,
    Confidence,
    FileChange,
    StackStatus,
    WorkspaceStatus,
)

__all__ = [
    "AssignmentCacheEntry",
    "BranchInference",
    "BranchOwnership",
    "BranchStatus",
    "CommitSummary",
    "Confidence",
    "FileChange",
    "FileLock",
    "NOT_IN_BRANCH",
    "PendingNotification",
    "PluginState",
    "PluginStateDocument",
    "SessionMapDocument",
    "StackStatus",
    "WorkspaceStatus",
]
