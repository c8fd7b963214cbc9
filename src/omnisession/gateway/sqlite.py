"""SQLite-backed persistence gateway.

Schema:
- sessions: one row per session
- messages: one row per message, ordered by (session_id, seq)
- messages_fts: FTS5 index over message content for search

Each call opens its own connection and runs in a worker thread via
asyncio.to_thread, so the event loop never blocks on disk I/O.
sqlite3 errors are re-raised as PersistenceError.
"""

import asyncio
import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Callable, TypeVar

from omnisession.errors import NotFoundError, PersistenceError
from omnisession.gateway.base import PersistenceGateway
from omnisession.models import Message, MessageRole, SearchHit, Session, SessionSnapshot
from omnisession.search import MARK_CLOSE, MARK_OPEN, fts_query

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SQLiteGateway(PersistenceGateway):
    """Sessions and messages in a single SQLite file."""

    name = "sqlite"

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or (Path.home() / ".omnisession" / "conversations.db")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    async def _run(self, operation: str, fn: Callable[[sqlite3.Connection], T]) -> T:
        def work() -> T:
            conn = self._connect()
            try:
                result = fn(conn)
                conn.commit()
                return result
            finally:
                conn.close()

        try:
            return await asyncio.to_thread(work)
        except sqlite3.Error as e:
            raise PersistenceError(f"{operation} failed: {e}", operation) from e

    async def init_database(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PersistenceError(
                f"Cannot create database directory: {e}", "init_database") from e

        def work(conn: sqlite3.Connection) -> None:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id TEXT PRIMARY KEY,
                    project_id TEXT NOT NULL,
                    runtime_id TEXT NOT NULL,
                    title TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    tags TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    timestamp REAL NOT NULL,
                    metadata TEXT,
                    FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id, seq)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project_id)")
            conn.execute("""
                CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts
                USING fts5(content, message_id UNINDEXED, session_id UNINDEXED)
            """)

        await self._run("init_database", work)
        logger.debug(f"SQLite schema ready at {self.db_path}")

    async def load_sessions(self, scope: str | None = None) -> list[SessionSnapshot]:
        def work(conn: sqlite3.Connection) -> list[SessionSnapshot]:
            sql = "SELECT * FROM sessions"
            params: list[Any] = []
            if scope is not None:
                sql += " WHERE project_id = ?"
                params.append(scope)
            sql += " ORDER BY updated_at DESC, id"

            snapshots = []
            for row in conn.execute(sql, params).fetchall():
                session = _row_to_session(row)
                message_rows = conn.execute(
                    "SELECT * FROM messages WHERE session_id = ? ORDER BY seq ASC",
                    (session.id,),
                ).fetchall()
                snapshots.append(SessionSnapshot(
                    session=session,
                    messages=[_row_to_message(r) for r in message_rows],
                ))
            return snapshots

        return await self._run("load_sessions", work)

    async def save_session(self, session: Session) -> None:
        def work(conn: sqlite3.Connection) -> None:
            conn.execute(
                """INSERT INTO sessions
                   (id, project_id, runtime_id, title, created_at, updated_at, tags)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(id) DO UPDATE SET
                       title = excluded.title,
                       updated_at = excluded.updated_at,
                       tags = excluded.tags""",
                (
                    session.id, session.project_id, session.runtime_id,
                    session.title, session.created_at, session.updated_at,
                    json.dumps(list(session.tags)) if session.tags else None,
                ),
            )

        await self._run("save_session", work)

    async def save_message(self, session_id: str, message: Message) -> None:
        def work(conn: sqlite3.Connection) -> bool:
            exists = conn.execute(
                "SELECT 1 FROM sessions WHERE id = ?", (session_id,)).fetchone()
            if not exists:
                return False

            cursor = conn.execute(
                """INSERT OR IGNORE INTO messages
                   (id, session_id, seq, role, content, timestamp, metadata)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    message.id, session_id, message.seq, message.role.value,
                    message.content, message.timestamp,
                    json.dumps(message.metadata) if message.metadata else None,
                ),
            )
            if cursor.rowcount == 1:
                conn.execute(
                    "INSERT INTO messages_fts (content, message_id, session_id) VALUES (?, ?, ?)",
                    (message.content, message.id, session_id),
                )
                conn.execute(
                    "UPDATE sessions SET updated_at = MAX(updated_at, ?) WHERE id = ?",
                    (message.timestamp, session_id),
                )
            return True

        if not await self._run("save_message", work):
            raise NotFoundError(f"Session not found: {session_id}", session_id)

    async def delete_session(self, session_id: str) -> None:
        def work(conn: sqlite3.Connection) -> None:
            conn.execute(
                "DELETE FROM messages_fts WHERE session_id = ?", (session_id,))
            conn.execute(
                "DELETE FROM messages WHERE session_id = ?", (session_id,))
            conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))

        await self._run("delete_session", work)

    async def search_messages(self, query: str, limit: int = 50) -> list[SearchHit]:
        match = fts_query(query)
        if not match:
            return []

        def work(conn: sqlite3.Connection) -> list[SearchHit]:
            rows = conn.execute(
                f"""SELECT m.session_id, m.id, m.content, m.timestamp,
                          snippet(messages_fts, 0, '{MARK_OPEN}', '{MARK_CLOSE}', '...', 64)
                              AS highlight
                   FROM messages_fts
                   JOIN messages m ON m.id = messages_fts.message_id
                   WHERE messages_fts MATCH ?
                   ORDER BY rank
                   LIMIT ?""",
                (match, limit),
            ).fetchall()
            return [
                SearchHit(
                    session_id=r["session_id"],
                    message_id=r["id"],
                    content=r["content"],
                    timestamp=r["timestamp"],
                    highlight=r["highlight"],
                )
                for r in rows
            ]

        return await self._run("search_messages", work)


def _row_to_session(row: sqlite3.Row) -> Session:
    tags = json.loads(row["tags"]) if row["tags"] else []
    return Session(
        id=row["id"],
        project_id=row["project_id"],
        runtime_id=row["runtime_id"],
        title=row["title"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        tags=tuple(tags),
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        role=MessageRole.parse(row["role"]),
        content=row["content"],
        timestamp=row["timestamp"],
        seq=row["seq"],
        metadata=json.loads(row["metadata"]) if row["metadata"] else {},
    )
