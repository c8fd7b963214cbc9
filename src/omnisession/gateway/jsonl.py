"""JSONL-based persistence gateway.

Design decisions:
1. One file per session: {session_id}.jsonl in the sessions directory.
   Deleting a session is deleting its file.

2. Append-only: each save_session appends a session_meta line, each
   save_message appends one message line. Nothing is rewritten in
   place, so a crash mid-write loses at most the line being written.

3. Last meta wins: a rename appends a fresh session_meta line; loading
   keeps the last one seen.

File format:
- {"_type": "session_meta", "id": ..., "project_id": ..., ...}
- {"id": "msg-...", "role": "user", "content": "...", "timestamp": ..., "seq": 0}
"""

import asyncio
import json
import logging
import re
from pathlib import Path
from typing import Any

from omnisession.errors import NotFoundError, PersistenceError, ValidationError
from omnisession.gateway.base import PersistenceGateway
from omnisession.models import Message, SearchHit, Session, SessionSnapshot
from omnisession.search import highlight_text

logger = logging.getLogger(__name__)

META_TYPE = "session_meta"


class JsonlGateway(PersistenceGateway):
    """Sessions persisted as append-only JSONL files."""

    name = "jsonl"

    def __init__(self, sessions_dir: Path | None = None):
        self.sessions_dir = sessions_dir or (
            Path.home() / ".omnisession" / "sessions")
        # session_id -> stored message ids, filled lazily per file
        self._message_ids: dict[str, set[str]] = {}

    def _get_session_path(self, session_id: str) -> Path:
        safe = re.sub(r"[^\w\-]", "_", session_id)
        return self.sessions_dir / f"{safe}.jsonl"

    async def _io(self, operation: str, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except OSError as e:
            raise PersistenceError(f"{operation} failed: {e}", operation) from e

    async def init_database(self) -> None:
        await self._io(
            "init_database",
            lambda: self.sessions_dir.mkdir(parents=True, exist_ok=True),
        )

    async def load_sessions(self, scope: str | None = None) -> list[SessionSnapshot]:
        snapshots = await self._io("load_sessions", self._load_all, scope)
        snapshots.sort(key=lambda s: s.session.updated_at, reverse=True)
        return snapshots

    async def save_session(self, session: Session) -> None:
        line = {"_type": META_TYPE, **session.to_dict()}
        await self._io("save_session", self._append, session.id, line, True)

    async def save_message(self, session_id: str, message: Message) -> None:
        path = self._get_session_path(session_id)
        exists = await self._io("save_message", path.exists)
        if not exists:
            raise NotFoundError(f"Session not found: {session_id}", session_id)

        known = self._message_ids.get(session_id)
        if known is None:
            snapshot = await self._io("save_message", self._read, path)
            known = {m.id for m in snapshot.messages} if snapshot else set()
            self._message_ids[session_id] = known
        if message.id in known:
            return

        await self._io("save_message", self._append, session_id, message.to_dict(), False)
        known.add(message.id)

    async def delete_session(self, session_id: str) -> None:
        path = self._get_session_path(session_id)
        self._message_ids.pop(session_id, None)
        await self._io("delete_session", lambda: path.unlink(missing_ok=True))

    async def search_messages(self, query: str, limit: int = 50) -> list[SearchHit]:
        if not query.strip():
            return []
        snapshots = await self._io("search_messages", self._load_all, None)
        needle = query.lower()
        hits = []
        for snap in snapshots:
            for m in snap.messages:
                if needle in m.content.lower():
                    hits.append(SearchHit(
                        session_id=snap.session.id,
                        message_id=m.id,
                        content=m.content,
                        timestamp=m.timestamp,
                        highlight=highlight_text(m.content, query),
                    ))
        hits.sort(key=lambda h: h.timestamp, reverse=True)
        return hits[:limit]

    # ── File I/O (runs in a worker thread) ────────────────

    def _append(self, session_id: str, record: dict[str, Any], create: bool) -> None:
        path = self._get_session_path(session_id)
        if not create and not path.exists():
            raise FileNotFoundError(path)
        with open(path, "a") as f:
            f.write(json.dumps(record) + "\n")

    def _load_all(self, scope: str | None) -> list[SessionSnapshot]:
        if not self.sessions_dir.exists():
            return []
        snapshots = []
        for path in self.sessions_dir.glob("*.jsonl"):
            snapshot = self._read(path)
            if snapshot is None:
                continue
            if scope is not None and snapshot.session.project_id != scope:
                continue
            snapshots.append(snapshot)
        return snapshots

    def _read(self, path: Path) -> SessionSnapshot | None:
        meta: dict[str, Any] | None = None
        messages: dict[str, Message] = {}

        with open(path) as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    data = json.loads(line)
                    if data.get("_type") == META_TYPE:
                        meta = data
                    else:
                        message = Message.from_dict(data)
                        messages.setdefault(message.id, message)
                except (json.JSONDecodeError, KeyError, AttributeError, ValidationError) as e:
                    logger.warning(f"Skipping corrupted line {line_num} in {path.name}: {e}")

        if meta is None:
            logger.warning(f"No session metadata in {path.name}, skipping")
            return None

        session = Session.from_dict(meta)
        ordered = sorted(messages.values(), key=lambda m: m.seq)
        if ordered and ordered[-1].timestamp > session.updated_at:
            session = Session.from_dict({**meta, "updated_at": ordered[-1].timestamp})
        return SessionSnapshot(session=session, messages=ordered)
