"""Host platform protocol.

The engine talks to the coding-assistant host through this interface:
reading a session's recent messages, running a one-off model prompt in a
temporary session, and updating a session's display title. The built-in
HttpHostClient implements it over the host's HTTP API; tests use an
in-memory fake.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class HostClient(Protocol):
    """Protocol for host platform clients.

    Implementations raise HostClientError (or HostTimeoutError) on
    failure; callers reduce those to None.
    """

    async def session_messages(self, session_id: str, *, limit: int = 5) -> list[dict[str, Any]]:
        """Most recent messages of a session, each ``{"info": {...}, "parts": [...]}``."""
        ...

    async def create_session(self, title: str) -> str | None:
        """Create a session and return its id."""
        ...

    async def prompt(
        self,
        session_id: str,
        *,
        provider: str,
        model: str,
        system: str,
        text: str,
    ) -> str | None:
        """Send one prompt with tools disabled; return the first text part of the reply."""
        ...

    async def delete_session(self, session_id: str) -> None:
        ...

    async def update_session_title(self, session_id: str, title: str) -> None:
        ...

    async def aclose(self) -> None:
        """Release underlying resources."""
        ...


def first_text_part(parts: Any) -> str | None:
    """Text of the first ``{"type": "text"}`` part, if any."""
    if not isinstance(parts, list):
        return None
    for part in parts:
        if isinstance(part, dict) and part.get("type") == "text":
            text = part.get("text")
            return text if isinstance(text, str) and text else None
    return None
