"""Workspace status snapshot models.

Mirror the JSON printed by ``but status --json -f``. Every field is
optional on the wire; missing values degrade to empty defaults so a
partially shaped snapshot never fails to parse.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class _StatusModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class FileChange(_StatusModel):
    """One changed file as reported by the branch tool."""

    cli_id: Optional[str] = None
    file_path: Optional[str] = None


class CommitSummary(_StatusModel):
    cli_id: str = ""
    commit_id: str = ""
    message: str = ""
    changes: list[FileChange] = []


class BranchStatus(_StatusModel):
    """A virtual branch and its local commits."""

    cli_id: str = ""
    name: str = ""
    branch_status: str = ""
    commits: list[CommitSummary] = []

    @property
    def is_local_only(self) -> bool:
        """True when none of the branch's commits has been pushed."""
        return self.branch_status == "completelyUnpushed"

    def committed_paths(self) -> list[str]:
        return [
            change.file_path
            for commit in self.commits
            for change in commit.changes
            if change.file_path
        ]


class StackStatus(_StatusModel):
    assigned_changes: list[FileChange] = []
    branches: list[BranchStatus] = []


class WorkspaceStatus(_StatusModel):
    """Full status snapshot of the workspace."""

    unassigned_changes: list[FileChange] = []
    stacks: list[StackStatus] = []

    def all_branches(self) -> list[BranchStatus]:
        return [branch for stack in self.stacks for branch in stack.branches]

    def find_branch(self, cli_id: str) -> BranchStatus | None:
        for branch in self.all_branches():
            if branch.cli_id == cli_id:
                return branch
        return None


class Confidence(str, enum.Enum):
    """Certainty of an automatic branch inference."""

    HIGH = "high"
    MEDIUM = "medium"
    AMBIGUOUS = "ambiguous"


@dataclass(frozen=True)
class BranchInference:
    """Result of inferring which branch a file belongs to.

    Attributes:
        in_branch: False when the file is new/unassigned in every branch.
        branch_id: CLI id of the inferred branch (None when ambiguous).
        branch_name: Display name of the inferred branch.
        unassigned_id: CLI id of the file's unassigned change, if any.
        confidence: None when ``in_branch`` is False.
    """

    in_branch: bool
    branch_id: str | None = None
    branch_name: str | None = None
    unassigned_id: str | None = None
    confidence: Confidence | None = None

    @property
    def can_move(self) -> bool:
        """An unassigned change exists and has an unambiguous destination."""
        return (
            self.unassigned_id is not None
            and self.branch_id is not None
            and self.confidence in (Confidence.HIGH, Confidence.MEDIUM)
        )


NOT_IN_BRANCH = BranchInference(in_branch=False)
