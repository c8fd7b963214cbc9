"""Active session tracking.

Two states, no terminal state:

    NO_SESSION  --select(id)-->  HAS_ACTIVE_SESSION
    HAS_ACTIVE_SESSION  --on_deleted(active id) / clear()-->  NO_SESSION

Deleting a session that is not active leaves the selection alone.
The selector does not know which sessions exist; SessionStore checks
existence before calling select().
"""

from enum import Enum
from typing import Iterable


class SelectorState(str, Enum):
    NO_SESSION = "no_session"
    HAS_ACTIVE_SESSION = "has_active_session"


class ActiveSessionSelector:
    """Holds at most one current session id."""

    def __init__(self) -> None:
        self._current_id: str | None = None

    @property
    def current_id(self) -> str | None:
        return self._current_id

    @property
    def state(self) -> SelectorState:
        if self._current_id is None:
            return SelectorState.NO_SESSION
        return SelectorState.HAS_ACTIVE_SESSION

    def select(self, session_id: str) -> bool:
        """Make a session current. Returns True if the selection changed."""
        changed = session_id != self._current_id
        self._current_id = session_id
        return changed

    def clear(self) -> bool:
        """Drop the selection. Returns True if something was selected."""
        changed = self._current_id is not None
        self._current_id = None
        return changed

    def on_deleted(self, session_id: str) -> bool:
        """No automatic fallback: deleting the active session deselects."""
        if session_id == self._current_id:
            return self.clear()
        return False

    def on_reloaded(self, session_ids: Iterable[str]) -> bool:
        """Keep the selection only if the session survived a reload."""
        if self._current_id is not None and self._current_id not in set(session_ids):
            return self.clear()
        return False
