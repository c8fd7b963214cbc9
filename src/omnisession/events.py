"""Change notifications and persistence outcomes.

Mutating store calls return their optimistic result immediately.
Whether the write later became durable is reported here, on a
separate channel:

    store.subscribe(on_event)
    store.create_session("proj", "claude")
    # ... later, from the persistence worker:
    # on_event(StoreEvent(kind=EventKind.PERSIST_FAILED, outcome=...))

Subscribers are plain callables. A subscriber that raises is logged
and skipped; delivery to the others continues.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    SESSIONS_LOADED = "sessions_loaded"
    SESSION_CREATED = "session_created"
    SESSION_RENAMED = "session_renamed"
    SESSION_DELETED = "session_deleted"
    SESSION_RETRACTED = "session_retracted"
    MESSAGE_ADDED = "message_added"
    CURRENT_CHANGED = "current_changed"
    PERSIST_SUCCEEDED = "persist_succeeded"
    PERSIST_FAILED = "persist_failed"


class PersistOp(str, Enum):
    """Gateway calls issued in the background."""
    SAVE_SESSION = "save_session"
    SAVE_MESSAGE = "save_message"
    DELETE_SESSION = "delete_session"


@dataclass
class PersistenceOutcome:
    """Result of one background gateway call."""
    operation: PersistOp
    session_id: str
    success: bool
    message_id: str | None = None
    error: Exception | None = None
    finished_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "operation": self.operation.value,
            "session_id": self.session_id,
            "message_id": self.message_id,
            "success": self.success,
            "error": str(self.error) if self.error else None,
            "finished_at": self.finished_at,
        }


@dataclass
class StoreEvent:
    kind: EventKind
    session_id: str | None = None
    message_id: str | None = None
    outcome: PersistenceOutcome | None = None


EventCallback = Callable[[StoreEvent], None]


class EventBus:
    """Fan-out of store events to subscribers."""

    def __init__(self) -> None:
        self._subscribers: list[EventCallback] = []

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        self._subscribers.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: EventCallback) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def emit(self, event: StoreEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Event subscriber failed on {event.kind.value}: {e}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)
