"""Persisted and in-memory state records.

Provides:
- BranchOwnership / PluginStateDocument: the plugin-state JSON document
- SessionMapDocument: the child -> parent session map document
- FileLock, AssignmentCacheEntry, PendingNotification: transient records
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, ConfigDict, Field, RootModel


class BranchOwnership(BaseModel):
    """Which root session claimed a conversation id, and when."""

    model_config = ConfigDict(populate_by_name=True)

    root_session_id: str = Field(alias="rootSessionID")
    branch_name: str = Field(alias="branchName")
    first_seen: int = Field(alias="firstSeen")  # epoch milliseconds


class PluginStateDocument(BaseModel):
    """On-disk form of plugin-state.json.

    Sets are stored as arrays and maps as plain objects.
    """

    model_config = ConfigDict(populate_by_name=True)

    conversations_with_edits: list[str] = Field(default=[], alias="conversationsWithEdits")
    reworded_branches: list[str] = Field(default=[], alias="rewordedBranches")
    branch_ownership: dict[str, BranchOwnership] = Field(default={}, alias="branchOwnership")


class SessionMapDocument(RootModel[dict[str, str]]):
    """On-disk form of session-map.json (child id -> parent id)."""

    root: dict[str, str] = {}


@dataclass
class PluginState:
    """Live, mutable counterpart of PluginStateDocument."""

    conversations_with_edits: set[str]
    reworded_branches: set[str]
    branch_ownership: dict[str, BranchOwnership]

    @classmethod
    def empty(cls) -> PluginState:
        return cls(set(), set(), {})

    @classmethod
    def from_document(cls, doc: PluginStateDocument) -> PluginState:
        return cls(
            conversations_with_edits=set(doc.conversations_with_edits),
            reworded_branches=set(doc.reworded_branches),
            branch_ownership=dict(doc.branch_ownership),
        )

    def to_document(self) -> PluginStateDocument:
        return PluginStateDocument(
            conversations_with_edits=sorted(self.conversations_with_edits),
            reworded_branches=sorted(self.reworded_branches),
            branch_ownership=dict(self.branch_ownership),
        )


@dataclass
class FileLock:
    owner_session: str
    acquired_at: float  # seconds, coordinator clock
    operation: str


@dataclass(frozen=True)
class AssignmentCacheEntry:
    branch_id: str
    conversation_id: str
    timestamp: float  # seconds, cache clock


@dataclass(frozen=True)
class PendingNotification:
    message: str
    timestamp: float  # seconds, manager clock
