"""Branch inference over a workspace status snapshot.

Decides which branch a changed file belongs to, with an explicit
confidence level. Checked in priority order:

1. The file is in a branch's committed changes: HIGH, that branch.
2. The file is staged in stacks whose branches number exactly one: HIGH.
3. Otherwise every branch of the containing stacks is scored by the
   longest shared directory prefix between the file and the files that
   branch already committed. A best score of at least ``min_score`` that
   leads the runner-up by at least ``min_margin`` is MEDIUM; anything
   else is AMBIGUOUS and no branch is returned.
4. The file is in no stack at all: not in a branch.

Ambiguous results are never acted on automatically.
"""

from __future__ import annotations

import logging

from butler_sync.models.status import (
    NOT_IN_BRANCH,
    BranchInference,
    BranchStatus,
    Confidence,
    WorkspaceStatus,
)

logger = logging.getLogger(__name__)

DEFAULT_MIN_SCORE = 2
DEFAULT_MIN_MARGIN = 1


def path_segments(file_path: str) -> list[str]:
    return [part for part in file_path.replace("\\", "/").split("/") if part]


def shared_prefix_depth(a: list[str], b: list[str]) -> int:
    depth = 0
    for left, right in zip(a, b):
        if left != right:
            break
        depth += 1
    return depth


def score_branch(file_path: str, branch: BranchStatus) -> int:
    """Deepest directory prefix *file_path* shares with any file the branch committed."""
    target = path_segments(file_path)
    return max(
        (shared_prefix_depth(target, path_segments(path)) for path in branch.committed_paths()),
        default=0,
    )


def infer_file_branch(
    file_path: str,
    status: WorkspaceStatus,
    *,
    enabled: bool = True,
    min_score: int = DEFAULT_MIN_SCORE,
    min_margin: int = DEFAULT_MIN_MARGIN,
) -> BranchInference:
    """Infer the branch of a workspace-relative *file_path*.

    Args:
        file_path: Workspace-relative path, as the branch tool reports it.
        status: Status snapshot to evaluate.
        enabled: When False, only files already committed on a branch
            resolve; any other file a stack holds is ambiguous.
        min_score: Minimum shared-prefix depth for a MEDIUM match.
        min_margin: Minimum lead of the best score over the runner-up.

    Returns:
        A BranchInference. ``NOT_IN_BRANCH`` when no stack holds the file.
    """
    unassigned_id = next(
        (change.cli_id for change in status.unassigned_changes if change.file_path == file_path),
        None,
    )

    for branch in status.all_branches():
        if file_path in branch.committed_paths():
            return BranchInference(
                in_branch=True,
                branch_id=branch.cli_id,
                branch_name=branch.name,
                unassigned_id=unassigned_id,
                confidence=Confidence.HIGH,
            )

    containing = [
        stack
        for stack in status.stacks
        if any(change.file_path == file_path for change in stack.assigned_changes)
    ]
    if not containing:
        return NOT_IN_BRANCH

    candidates: list[BranchStatus] = []
    seen: set[str] = set()
    for stack in containing:
        for branch in stack.branches:
            if branch.cli_id in seen:
                continue
            seen.add(branch.cli_id)
            candidates.append(branch)

    ambiguous = BranchInference(
        in_branch=True, unassigned_id=unassigned_id, confidence=Confidence.AMBIGUOUS
    )

    if not enabled:
        logger.info(
            "inference-disabled",
            extra={"data": {"file": file_path, "branchCount": len(candidates)}},
        )
        return ambiguous

    if not candidates:
        logger.warning("inference-no-branches", extra={"data": {"file": file_path}})
        return ambiguous

    if len(candidates) == 1:
        (branch,) = candidates
        logger.info(
            "inference-single-branch",
            extra={"data": {"file": file_path, "branchCliId": branch.cli_id, "branchName": branch.name}},
        )
        return BranchInference(
            in_branch=True,
            branch_id=branch.cli_id,
            branch_name=branch.name,
            unassigned_id=unassigned_id,
            confidence=Confidence.HIGH,
        )

    scored = sorted(
        ((score_branch(file_path, branch), branch) for branch in candidates),
        key=lambda pair: pair[0],
        reverse=True,
    )
    (best_score, best), (second_score, _) = scored[0], scored[1]
    if best_score >= min_score and best_score - second_score >= min_margin:
        logger.info(
            "inference-directory-match",
            extra={"data": {
                "file": file_path,
                "branchCliId": best.cli_id,
                "branchName": best.name,
                "score": best_score,
                "margin": best_score - second_score,
                "branchCount": len(candidates),
                "stackCount": len(containing),
            }},
        )
        return BranchInference(
            in_branch=True,
            branch_id=best.cli_id,
            branch_name=best.name,
            unassigned_id=unassigned_id,
            confidence=Confidence.MEDIUM,
        )

    logger.warning(
        "inference-ambiguous",
        extra={"data": {
            "file": file_path,
            "branchCount": len(candidates),
            "stackCount": len(containing),
            "scores": [{"branchCliId": branch.cli_id, "score": score} for score, branch in scored],
        }},
    )
    return ambiguous


def has_multi_branch_hunks(file_path: str, status: WorkspaceStatus) -> bool:
    """True when more than one branch holds committed changes to *file_path*.

    Split ownership vetoes automatic reassignment regardless of inference
    confidence.
    """
    owners = 0
    for branch in status.all_branches():
        if file_path in branch.committed_paths():
            owners += 1
            if owners > 1:
                return True
    return False
