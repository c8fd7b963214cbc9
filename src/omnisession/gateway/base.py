"""Persistence gateway interface.

The session store never touches storage directly; everything durable
goes through this narrow async interface. Every call may fail, and a
raised exception is the only failure signal: implementations must not
hang silently or swallow errors.

Backends:
- SQLiteGateway: single-file database with FTS5 message search
- JsonlGateway: one append-only JSONL file per session
- InMemoryGateway: process-local dicts, for ephemeral use and tests
"""

from abc import ABC, abstractmethod

from omnisession.models import Message, SearchHit, Session, SessionSnapshot


class PersistenceGateway(ABC):
    """Async durable storage for sessions and their messages."""

    name: str = "base"

    @abstractmethod
    async def init_database(self) -> None:
        """Prepare storage (create schema, directories). Safe to repeat."""
        ...

    @abstractmethod
    async def load_sessions(self, scope: str | None = None) -> list[SessionSnapshot]:
        """Load sessions with their messages, most recently updated first.

        Args:
            scope: Project id to restrict to, or None for all projects.
        """
        ...

    @abstractmethod
    async def save_session(self, session: Session) -> None:
        """Insert or replace a session record."""
        ...

    @abstractmethod
    async def save_message(self, session_id: str, message: Message) -> None:
        """Store a message. Re-saving an already stored id is a no-op.

        Raises:
            NotFoundError: The backend does not know the session.
        """
        ...

    @abstractmethod
    async def delete_session(self, session_id: str) -> None:
        """Delete a session and its messages. Unknown ids are a no-op."""
        ...

    @abstractmethod
    async def search_messages(self, query: str, limit: int = 50) -> list[SearchHit]:
        """Full-text search over message content."""
        ...

    async def close(self) -> None:
        """Release resources held by the backend."""
        return None
