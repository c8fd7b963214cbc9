"""Core records: sessions, messages and the append-only conversation log.

Session and Message are frozen dataclasses so read views can hand them
out without exposing mutable state. A rename produces a new Session
record (dataclasses.replace) instead of editing the old one.

Conversation is the per-session log:
- append is O(1) amortized
- iteration order == append order == display order
- there is no remove, edit or reorder operation
"""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator

from omnisession.errors import ValidationError


def new_session_id() -> str:
    return f"sess-{uuid.uuid4().hex}"


def new_message_id() -> str:
    return f"msg-{uuid.uuid4().hex}"


class MessageRole(str, Enum):
    """Who authored a message. Closed set."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"

    @classmethod
    def parse(cls, value: "MessageRole | str") -> "MessageRole":
        """Coerce a string to a role, rejecting anything outside the set."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            allowed = ", ".join(r.value for r in cls)
            raise ValidationError(
                f"Unknown message role {value!r} (expected one of: {allowed})"
            ) from None


@dataclass(frozen=True)
class Session:
    """A conversation thread scoped to a project and a tool runtime."""
    id: str
    project_id: str
    runtime_id: str
    title: str
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    tags: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "runtime_id": self.runtime_id,
            "title": self.title,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "tags": list(self.tags),
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Session":
        created_at = d.get("created_at", time.time())
        return cls(
            id=d["id"],
            project_id=d["project_id"],
            runtime_id=d["runtime_id"],
            title=d.get("title", ""),
            created_at=created_at,
            updated_at=d.get("updated_at", created_at),
            tags=tuple(d.get("tags") or ()),
        )


@dataclass(frozen=True)
class Message:
    """A single chat message. Immutable once appended."""
    id: str
    role: MessageRole
    content: str
    timestamp: float
    seq: int = 0  # Ordering key, strictly increasing within a conversation
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
            "seq": self.seq,
        }
        if self.metadata:
            d["metadata"] = self.metadata
        return d

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Message":
        return cls(
            id=d["id"],
            role=MessageRole.parse(d["role"]),
            content=d["content"],
            timestamp=d["timestamp"],
            seq=d.get("seq", 0),
            metadata=d.get("metadata") or {},
        )


class Conversation:
    """Ordered, append-only message log owned by exactly one session."""

    def __init__(self, session_id: str, messages: list[Message] | None = None):
        self.session_id = session_id
        self._messages: list[Message] = []
        self._ids: set[str] = set()
        for message in messages or []:
            self.append(message)

    def append(self, message: Message) -> Message:
        """Append a message at the end of the log.

        Rejects duplicate ids, timestamps that would go backwards and
        sequence numbers that do not increase. Gaps in seq are allowed:
        a stored log may be missing a message whose save failed.
        """
        if message.id in self._ids:
            raise ValidationError(
                f"Duplicate message id {message.id} in session {self.session_id}")
        last = self.last
        if message.seq < 0 or (last is not None and message.seq <= last.seq):
            raise ValidationError(
                f"Message {message.id} has seq {message.seq}, "
                f"expected at least {self.next_seq}")
        if last is not None and message.timestamp < last.timestamp:
            raise ValidationError(
                f"Message {message.id} timestamp goes backwards in session {self.session_id}")

        self._messages.append(message)
        self._ids.add(message.id)
        return message

    def next_timestamp(self, now: float | None = None) -> float:
        """Timestamp for the next append, never below the last one."""
        now = time.time() if now is None else now
        last = self.last
        if last is not None and now < last.timestamp:
            return last.timestamp
        return now

    @property
    def next_seq(self) -> int:
        last = self.last
        return last.seq + 1 if last is not None else 0

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def last(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def get(self, message_id: str) -> Message | None:
        if message_id not in self._ids:
            return None
        for message in self._messages:
            if message.id == message_id:
                return message
        return None

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._ids

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))


@dataclass
class SessionSnapshot:
    """A session plus its messages, as loaded from a gateway."""
    session: Session
    messages: list[Message] = field(default_factory=list)


@dataclass
class SearchHit:
    """A full-text match returned by a gateway."""
    session_id: str
    message_id: str
    content: str
    timestamp: float
    highlight: str


@dataclass
class SearchResult:
    """A search match enriched with the loaded session, if any.

    Title matches carry an empty message_id.
    """
    session_id: str
    message_id: str
    content: str
    timestamp: float
    highlight: str
    session: Session | None = None

    @property
    def is_title_match(self) -> bool:
        return not self.message_id
