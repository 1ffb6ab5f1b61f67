"""Deterministic classification of branch CLI failures.

Classes are checked in a fixed order against the captured stderr: a
"nothing to do" signature wins over a race signature, which wins over a
contention signature. Anything unrecognized is fatal.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


class FailureClass(str, enum.Enum):
    SUCCESS = "success"
    EXPECTED_BENIGN = "expected_benign"
    RECOVERABLE_RACE = "recoverable_race"
    RETRYABLE_TRANSIENT = "retryable_transient"
    FATAL = "fatal"


_EXPECTED_BENIGN_PATTERNS: tuple[str, ...] = (
    "not in workspace mode",
    "not initialized",
    "No such file or directory",
    "No hunk headers",
    "no changes",
    "checkout gitbutler/workspace",
)
_RECOVERABLE_RACE_PATTERNS: tuple[str, ...] = (
    "Stack not found",
    "reference mismatch",
    "Branch not found",
    "workspace reference",
)
_RETRYABLE_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "database is locked",
    "SQLITE_BUSY",
    "failed to lock file",
)

# Cleanup (unapply) failure reasons.
_CONTENTION_PATTERNS: tuple[str, ...] = ("locked", "SQLITE_BUSY", "database is locked")
_NOT_FOUND_PATTERNS: tuple[str, ...] = ("not found", "Branch not found")


@dataclass(frozen=True, slots=True)
class CommandClassification:
    """Normalized classification result."""

    failure_class: FailureClass
    matched_pattern: str | None = None


def classify_command_failure(exit_code: int, stderr: str) -> CommandClassification:
    """Classify a finished command into a retry class."""

    if exit_code == 0:
        return CommandClassification(FailureClass.SUCCESS)

    pattern = _first_match(stderr, _EXPECTED_BENIGN_PATTERNS)
    if pattern is not None:
        return CommandClassification(FailureClass.EXPECTED_BENIGN, pattern)

    pattern = _first_match(stderr, _RECOVERABLE_RACE_PATTERNS)
    if pattern is not None:
        return CommandClassification(FailureClass.RECOVERABLE_RACE, pattern)

    pattern = _first_match(stderr, _RETRYABLE_TRANSIENT_PATTERNS)
    if pattern is not None:
        return CommandClassification(FailureClass.RETRYABLE_TRANSIENT, pattern)

    return CommandClassification(FailureClass.FATAL)


class CleanupFailure(str, enum.Enum):
    CONTENTION = "locked"
    NOT_FOUND = "not-found"
    UNKNOWN = "unknown"


def classify_cleanup_failure(stderr: str) -> CleanupFailure:
    """Reason an unapply failed: contention, branch already gone, or unknown."""
    if _first_match(stderr, _NOT_FOUND_PATTERNS) is not None:
        return CleanupFailure.NOT_FOUND
    if _first_match(stderr, _CONTENTION_PATTERNS) is not None:
        return CleanupFailure.CONTENTION
    return CleanupFailure.UNKNOWN


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
