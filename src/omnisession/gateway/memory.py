"""In-memory gateway.

Keeps copies of everything in dicts. Nothing survives the process;
useful for ephemeral sessions and as a baseline in tests.
"""

from omnisession.errors import NotFoundError
from omnisession.gateway.base import PersistenceGateway
from omnisession.models import Message, SearchHit, Session, SessionSnapshot
from omnisession.search import highlight_text


class InMemoryGateway(PersistenceGateway):
    name = "memory"

    def __init__(self) -> None:
        self.sessions: dict[str, Session] = {}
        self.messages: dict[str, list[Message]] = {}
        self.initialized = False

    async def init_database(self) -> None:
        self.initialized = True

    async def load_sessions(self, scope: str | None = None) -> list[SessionSnapshot]:
        sessions = [
            s for s in self.sessions.values()
            if scope is None or s.project_id == scope
        ]
        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        return [
            SessionSnapshot(
                session=s,
                messages=sorted(self.messages.get(s.id, []), key=lambda m: m.seq),
            )
            for s in sessions
        ]

    async def save_session(self, session: Session) -> None:
        self.sessions[session.id] = session
        self.messages.setdefault(session.id, [])

    async def save_message(self, session_id: str, message: Message) -> None:
        if session_id not in self.sessions:
            raise NotFoundError(f"Session not found: {session_id}", session_id)
        stored = self.messages[session_id]
        if any(m.id == message.id for m in stored):
            return
        stored.append(message)

    async def delete_session(self, session_id: str) -> None:
        self.sessions.pop(session_id, None)
        self.messages.pop(session_id, None)

    async def search_messages(self, query: str, limit: int = 50) -> list[SearchHit]:
        if not query.strip():
            return []
        needle = query.lower()
        hits = []
        for session_id, messages in self.messages.items():
            for m in messages:
                if needle in m.content.lower():
                    hits.append(SearchHit(
                        session_id=session_id,
                        message_id=m.id,
                        content=m.content,
                        timestamp=m.timestamp,
                        highlight=highlight_text(m.content, query),
                    ))
        hits.sort(key=lambda h: h.timestamp, reverse=True)
        return hits[:limit]
