"""Host event decoding.

Host hooks deliver loosely shaped dicts. They are decoded at the boundary
into a small closed set of frozen variants; missing or mistyped fields
degrade to None instead of raising.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Union

EDIT_TOOLS = frozenset({"edit", "write"})


def _str(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None


def _dict(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


@dataclass(frozen=True)
class ToolCall:
    """Input side of a tool hook."""

    tool: str | None
    session_id: str | None
    call_id: str | None

    @property
    def is_edit(self) -> bool:
        return self.tool in EDIT_TOOLS

    @classmethod
    def decode(cls, payload: Any) -> ToolCall:
        data = _dict(payload)
        return cls(
            tool=_str(data.get("tool")),
            session_id=_str(data.get("sessionID")) or _str(data.get("session_id")),
            call_id=_str(data.get("callID")) or _str(data.get("call_id")),
        )


@dataclass(frozen=True)
class Edit:
    old_string: str
    new_string: str

    def to_payload(self) -> dict[str, str]:
        return {"old_string": self.old_string, "new_string": self.new_string}


@dataclass(frozen=True)
class ToolOutput:
    """Output side of a tool hook, reduced to what the engine needs.

    Attributes:
        file_path: Edited file (``metadata.filediff.file`` or ``metadata.filepath``).
        edits: Before/after pair from ``metadata.filediff``.
        execution_id: Session id of a spawned sub-agent, when the tool reports it.
    """

    file_path: str | None = None
    edits: tuple[Edit, ...] = ()
    execution_id: str | None = None

    @classmethod
    def decode(cls, payload: Any) -> ToolOutput:
        metadata = _dict(_dict(payload).get("metadata"))
        filediff = _dict(metadata.get("filediff"))

        before = filediff.get("before")
        after = filediff.get("after")
        edits: tuple[Edit, ...] = ()
        if isinstance(before, str) and isinstance(after, str):
            edits = (Edit(before, after),)

        return cls(
            file_path=_str(filediff.get("file")) or _str(metadata.get("filepath")),
            edits=edits,
            execution_id=(
                _str(metadata.get("sessionId"))
                or _str(metadata.get("sessionID"))
                or _str(metadata.get("session_id"))
            ),
        )


def file_path_from_args(args: Any) -> str | None:
    """File path from a tool's call arguments (before-hook)."""
    data = _dict(args)
    return _str(data.get("filePath")) or _str(data.get("file_path")) or _str(data.get("path"))


@dataclass(frozen=True)
class SessionCreated:
    session_id: str
    parent_id: str | None = None
    type: str = field(default="session.created", init=False)


@dataclass(frozen=True)
class SessionIdle:
    session_id: str | None
    type: str = field(default="session.idle", init=False)


@dataclass(frozen=True)
class UnknownEvent:
    type: str | None
    session_id: str | None = None


HostEvent = Union[SessionCreated, SessionIdle, UnknownEvent]


def decode_event(payload: Any) -> HostEvent:
    """Decode a host event payload into one of the known variants."""
    data = _dict(payload)
    event_type = _str(data.get("type"))
    props = _dict(data.get("properties"))
    session_id = _str(props.get("sessionID"))

    if event_type == "session.created":
        created_id = _str(props.get("id")) or _str(_dict(props.get("info")).get("id"))
        if created_id is not None:
            parent_id = (
                _str(props.get("parentSessionID"))
                or _str(props.get("parent_session_id"))
                or _str(_dict(props.get("info")).get("parentID"))
            )
            return SessionCreated(session_id=created_id, parent_id=parent_id)

    if event_type == "session.idle":
        return SessionIdle(session_id=session_id)

    if event_type == "session.status" and _dict(props.get("status")).get("type") == "idle":
        return SessionIdle(session_id=session_id)

    return UnknownEvent(type=event_type, session_id=session_id)
