"""Deterministic commit messages and branch names derived from a user prompt.

Used directly when no language model is available, and to validate what
a language model produces.
"""

from __future__ import annotations

import re

MAX_COMMIT_LENGTH = 72
DEFAULT_DESCRIPTION = "OpenCode session changes"
DEFAULT_BRANCH_SLUG = "opencode-session"

COMMIT_PREFIX_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\b(fix|bug|broken|repair|patch)\b", re.IGNORECASE), "fix"),
    (re.compile(r"\b(add|create|implement|new|feature)\b", re.IGNORECASE), "feat"),
    (re.compile(r"\b(refactor|clean|restructure|reorganize)\b", re.IGNORECASE), "refactor"),
    (re.compile(r"\b(test|spec|coverage)\b", re.IGNORECASE), "test"),
    (re.compile(r"\b(doc|readme|documentation)\b", re.IGNORECASE), "docs"),
    (re.compile(r"\b(style|css|design|ui|layout)\b", re.IGNORECASE), "style"),
    (re.compile(r"\b(perf|performance|optimize|speed)\b", re.IGNORECASE), "perf"),
)

CONVENTIONAL_RE = re.compile(r"^(feat|fix|refactor|test|docs|style|perf|chore|ci|build)(\(.+?\))?:\s")
_EXISTING_PREFIX_RE = re.compile(
    r"^(fix|feat|refactor|test|docs|style|perf|chore)(\(.+?\))?:\s*", re.IGNORECASE
)

# Descriptions the branch tool writes on its own; a commit carrying one
# still needs a real message.
DEFAULT_PLACEHOLDERS = (
    "session changes",
    "opencode session changes",
    "cursor session changes",
)


def first_line(text: str) -> str:
    return text.split("\n", 1)[0].strip()


def detect_commit_prefix(text: str) -> str:
    """Conventional-commit type suggested by keywords in *text*; ``chore`` if none."""
    for pattern, prefix in COMMIT_PREFIX_PATTERNS:
        if pattern.search(text):
            return prefix
    return "chore"


def to_commit_message(prompt: str) -> str:
    """Build a one-line conventional commit message from a user prompt."""
    line = first_line(prompt)
    if not line:
        return f"chore: {DEFAULT_DESCRIPTION}"
    prefix = detect_commit_prefix(line)
    description = _EXISTING_PREFIX_RE.sub("", line, count=1).strip()
    max_len = MAX_COMMIT_LENGTH - len(prefix) - 2
    if len(description) > max_len:
        description = description[: max_len - 3] + "..."
    return f"{prefix}: {description or DEFAULT_DESCRIPTION}"


def to_branch_slug(prompt: str, max_length: int = 50, max_words: int = 6) -> str:
    """Lowercase, dash-joined slug of the prompt's first words."""
    cleaned = re.sub(r"[^a-zA-Z0-9\s-]", "", prompt).strip().lower()
    slug = "-".join(cleaned.split()[:max_words])[:max_length]
    return slug or DEFAULT_BRANCH_SLUG


def is_conventional(message: str) -> bool:
    """True for a well-formed conventional message that is not a placeholder."""
    text = message.strip()
    if not CONVENTIONAL_RE.match(text):
        return False
    lowered = text.lower()
    return not any(placeholder in lowered for placeholder in DEFAULT_PLACEHOLDERS)


def truncate_message(message: str) -> str:
    if len(message) > MAX_COMMIT_LENGTH:
        return message[: MAX_COMMIT_LENGTH - 3] + "..."
    return message


def clean_llm_message(text: str) -> str | None:
    """Reduce raw model output to one conventional line, or None if unusable."""
    stripped = text.strip().strip("\"'`")
    line = first_line(stripped)
    if not line or not CONVENTIONAL_RE.match(line):
        return None
    return truncate_message(line)
