"""Commit message generation prompts.

Provides the system prompt and user prompt builder for LLM-based
generation of one-line conventional commit messages from a commit diff.
"""

from __future__ import annotations

COMMIT_MESSAGE_SYSTEM: str = (
    "You are a commit message generator. "
    "Output ONLY a single-line conventional commit message. "
    "No explanation, no markdown, no quotes, no code fences."
)

_MAX_INTENT_CHARS = 200


def truncate_diff(diff: str, max_chars: int) -> str:
    if len(diff) > max_chars:
        return diff[:max_chars] + "\n... (truncated)"
    return diff


def build_commit_message_prompt(user_prompt: str, diff: str, max_diff_chars: int = 4000) -> str:
    """Build the user prompt for commit message generation.

    Args:
        user_prompt: What the user asked for; only its first line is used.
        diff: The commit's diff.
        max_diff_chars: Diff characters kept before truncation.

    Returns:
        The formatted user prompt string.
    """
    intent = user_prompt.split("\n", 1)[0].strip()[:_MAX_INTENT_CHARS]
    return "\n".join([
        "Generate a one-line conventional commit message for this diff.",
        "Format: type: description (max 72 chars total).",
        "Types: feat, fix, refactor, test, docs, style, perf, chore.",
        f'User intent: "{intent}"',
        "",
        "Diff:",
        truncate_diff(diff, max_diff_chars),
        "",
        "Reply with ONLY the commit message, nothing else.",
    ])
