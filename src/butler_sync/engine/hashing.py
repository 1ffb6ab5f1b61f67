"""Deterministic conversation ids.

A conversation id is the SHA-256 digest of a branch seed rendered in
UUID shape (``xxxxxxxx-xxxx-4xxx-8xxx-xxxxxxxxxxxx``), which is what the
branch tool accepts as a session key. Same seed always produces the same
id; distinct seeds collide only with negligible probability.
"""

from __future__ import annotations

import hashlib
import re

_CONVERSATION_ID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-8[0-9a-f]{3}-[0-9a-f]{12}$"
)


def branch_seed(root_session_id: str, override: str | None = None) -> str:
    """Return the seed for a root session.

    Args:
        root_session_id: The resolved root session id.
        override: Configured branch target. When set, every session maps
            onto it and therefore onto the same conversation id.
    """
    return override if override else root_session_id


def conversation_id(seed: str) -> str:
    """Derive the conversation id for a branch seed.

    Args:
        seed: Root session id or configured override.

    Returns:
        Lowercase UUID-shaped string with version nibble 4 and variant nibble 8.
    """
    digest = hashlib.sha256(seed.encode("utf-8")).hexdigest()
    return "-".join((
        digest[0:8],
        digest[8:12],
        "4" + digest[12:15],
        "8" + digest[15:18],
        digest[18:30],
    ))


def is_conversation_id(value: str) -> bool:
    """Check that *value* has the shape produced by conversation_id()."""
    return bool(_CONVERSATION_ID_RE.match(value))
