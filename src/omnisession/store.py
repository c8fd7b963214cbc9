"""Session store - the single owner of session and conversation state.

All reads and writes of sessions go through SessionStore. Mutations are
optimistic:

1. Validate input (ValidationError / NotFoundError raised right away,
   nothing changed).
2. Apply the change to in-memory state synchronously.
3. Queue exactly one gateway call on the session's persistence queue.
4. Return the optimistic result.

The durable outcome arrives later as a StoreEvent on the event bus.
A failed write is reported, not rolled back: in-memory state is what
the user sees and keeps working with. The one configurable exception is
a failed create (see CreateFailurePolicy).

Usage:
    store = SessionStore(SQLiteGateway(db_path))
    await store.load_sessions()
    session = store.create_session("proj-1", "claude-code")
    store.add_message(session.id, "user", "Hello AI")
    await store.drain()    # wait for durability, e.g. before exit
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Iterable, Mapping, TypeVar

from omnisession.config import Backend, CreateFailurePolicy, Settings
from omnisession.dispatch import PersistenceDispatcher, PersistJob
from omnisession.errors import NotFoundError, PersistenceError, ValidationError
from omnisession.events import (
    EventBus,
    EventCallback,
    EventKind,
    PersistenceOutcome,
    PersistOp,
    StoreEvent,
)
from omnisession.export import ExportFormat, export_session
from omnisession.gateway import (
    InMemoryGateway,
    JsonlGateway,
    PersistenceGateway,
    SQLiteGateway,
)
from omnisession.models import (
    Conversation,
    Message,
    MessageRole,
    SearchResult,
    Session,
    new_message_id,
    new_session_id,
)
from omnisession.search import highlight_text
from omnisession.selector import ActiveSessionSelector, SelectorState

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SyncStatus(str, Enum):
    SYNCED = "synced"    # Everything known to be durable
    PENDING = "pending"  # Writes queued or in flight
    FAILED = "failed"    # At least one write failed; see resync()


@dataclass
class _SyncState:
    durable: bool = False  # Session record has been saved at least once
    in_flight: int = 0
    session_failed: bool = False
    failed_messages: list[str] = field(default_factory=list)


def build_gateway(settings: Settings) -> PersistenceGateway:
    """Instantiate the backend named in settings."""
    if settings.backend is Backend.SQLITE:
        return SQLiteGateway(settings.db_path)
    if settings.backend is Backend.JSONL:
        return JsonlGateway(settings.sessions_dir)
    return InMemoryGateway()


def _require_text(value: Any, name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} must be a non-empty string")
    return value


class SessionStore:
    """Authoritative in-memory collection of sessions and conversations."""

    def __init__(
        self,
        gateway: PersistenceGateway,
        *,
        persist_timeout: float | None = None,
        create_failure_policy: CreateFailurePolicy = CreateFailurePolicy.KEEP,
        events: EventBus | None = None,
    ):
        self.gateway = gateway
        self.persist_timeout = persist_timeout
        self.create_failure_policy = create_failure_policy
        self.events = events or EventBus()

        self._sessions: dict[str, Session] = {}
        self._conversations: dict[str, Conversation] = {}
        self._sync: dict[str, _SyncState] = {}
        self._selector = ActiveSessionSelector()
        self._dispatcher = PersistenceDispatcher(self._execute)

        self._initialized = False
        self._init_lock: asyncio.Lock | None = None
        self.last_error: Exception | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionStore":
        return cls(
            build_gateway(settings),
            persist_timeout=settings.persist_timeout,
            create_failure_policy=settings.create_failure_policy,
        )

    # ── Lifecycle ───────────────────────────────────────

    async def initialize(self) -> None:
        """Run gateway.init_database() once. A failure can be retried."""
        if self._initialized:
            return
        if self._init_lock is None:
            self._init_lock = asyncio.Lock()
        async with self._init_lock:
            if self._initialized:
                return
            try:
                await self._call("init_database", self.gateway.init_database)
            except PersistenceError as e:
                logger.error(f"Failed to initialize {self.gateway.name} storage: {e}")
                raise
            self._initialized = True

    async def drain(self) -> None:
        """Wait until every queued persistence call has finished."""
        await self._dispatcher.drain()

    async def close(self) -> None:
        """Flush pending writes, stop the workers and close the gateway."""
        await self._dispatcher.close()
        await self.gateway.close()

    @property
    def pending_writes(self) -> int:
        return self._dispatcher.pending()

    # ── Loading ─────────────────────────────────────────

    async def load_sessions(self, project_id: str | None = None) -> list[Session]:
        """Replace the in-memory collection with what the gateway holds.

        Pending writes are flushed first so the load sees them. The swap
        is all-or-nothing: if the gateway call fails, PersistenceError is
        raised and the previous collection stays as it was. A session
        whose stored data does not form a valid conversation (duplicate
        ids, seq or timestamps going backwards) is logged and left out;
        the rest still load.

        Args:
            project_id: Only load this project's sessions (None = all).

        Returns:
            The loaded sessions, in gateway order.
        """
        await self.initialize()
        await self._dispatcher.drain()

        snapshots = await self._call(
            "load_sessions", lambda: self.gateway.load_sessions(project_id))

        sessions: dict[str, Session] = {}
        conversations: dict[str, Conversation] = {}
        for snap in snapshots:
            session_id = snap.session.id
            try:
                if session_id in sessions:
                    raise ValidationError(f"Duplicate session id {session_id}")
                conversation = Conversation(session_id, snap.messages)
            except ValidationError as e:
                self.last_error = e
                logger.warning(f"Skipping inconsistent session {session_id}: {e}")
                continue
            sessions[session_id] = snap.session
            conversations[session_id] = conversation

        self._sessions = sessions
        self._conversations = conversations
        self._sync = {sid: _SyncState(durable=True) for sid in sessions}
        selection_cleared = self._selector.on_reloaded(sessions)

        logger.info(
            f"Loaded {len(sessions)} sessions"
            + (f" for project {project_id}" if project_id else ""))
        self.events.emit(StoreEvent(EventKind.SESSIONS_LOADED))
        if selection_cleared:
            self.events.emit(StoreEvent(EventKind.CURRENT_CHANGED))
        return list(sessions.values())

    # ── Mutations ───────────────────────────────────────

    def create_session(
        self,
        project_id: str,
        runtime_id: str,
        title: str | None = None,
        tags: Iterable[str] = (),
    ) -> Session:
        """Create a session, make it current and queue its save.

        The session is visible in the store before this returns; the
        save outcome is reported through the event bus.
        """
        self._require_loop()
        _require_text(project_id, "project_id")
        _require_text(runtime_id, "runtime_id")
        if title is not None:
            title = _require_text(title, "title").strip()

        session_id = new_session_id()
        while session_id in self._sessions:
            session_id = new_session_id()

        now = time.time()
        session = Session(
            id=session_id,
            project_id=project_id,
            runtime_id=runtime_id,
            title=title or f"Session {len(self._sessions) + 1}",
            created_at=now,
            updated_at=now,
            tags=tuple(tags),
        )

        self._sessions[session_id] = session
        self._conversations[session_id] = Conversation(session_id)
        self._sync[session_id] = _SyncState()
        self._selector.select(session_id)

        self.events.emit(StoreEvent(EventKind.SESSION_CREATED, session_id))
        self.events.emit(StoreEvent(EventKind.CURRENT_CHANGED, session_id))

        self._enqueue(
            PersistOp.SAVE_SESSION, session_id,
            lambda: self.gateway.save_session(session))
        logger.debug(f"Created session {session_id} for project {project_id}")
        return session

    def add_message(
        self,
        session_id: str,
        role: MessageRole | str,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        """Append a message to a session's conversation and queue its save.

        Raises:
            ValidationError: Unknown role, non-string content or bad metadata.
            NotFoundError: The session is not loaded.
        """
        self._require_loop()
        conversation = self._require_conversation(session_id)
        role = MessageRole.parse(role)
        if content is None or not isinstance(content, str):
            raise ValidationError("content must be a string")
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("metadata must be a dict")

        message_id = new_message_id()
        while message_id in conversation:
            message_id = new_message_id()

        message = Message(
            id=message_id,
            role=role,
            content=content,
            timestamp=conversation.next_timestamp(),
            seq=conversation.next_seq,
            metadata=dict(metadata or {}),
        )
        conversation.append(message)

        session = self._sessions[session_id]
        if message.timestamp > session.updated_at:
            self._sessions[session_id] = replace(session, updated_at=message.timestamp)

        self.events.emit(StoreEvent(EventKind.MESSAGE_ADDED, session_id, message.id))
        self._enqueue(
            PersistOp.SAVE_MESSAGE, session_id,
            lambda: self.gateway.save_message(session_id, message),
            message_id=message.id)
        return message

    def set_current_session(self, session_id: str) -> None:
        """Make a loaded session the active one. In-memory only."""
        self._require_session(session_id)
        if self._selector.select(session_id):
            self.events.emit(StoreEvent(EventKind.CURRENT_CHANGED, session_id))

    def clear_current_session(self) -> None:
        if self._selector.clear():
            self.events.emit(StoreEvent(EventKind.CURRENT_CHANGED))

    def rename_session(self, session_id: str, title: str) -> Session:
        """Change a session's title and queue the save."""
        self._require_loop()
        session = self._require_session(session_id)
        title = _require_text(title, "title").strip()

        renamed = replace(
            session, title=title, updated_at=max(time.time(), session.updated_at))
        self._sessions[session_id] = renamed

        self.events.emit(StoreEvent(EventKind.SESSION_RENAMED, session_id))
        self._enqueue(
            PersistOp.SAVE_SESSION, session_id,
            lambda: self.gateway.save_session(renamed))
        return renamed

    def delete_session(self, session_id: str) -> None:
        """Remove a session and queue its deletion.

        The delete runs after the session's already-queued writes. If it
        was the active session, the selection is cleared (no fallback to
        another session). A failed delete is reported, not reverted.
        """
        self._require_loop()
        self._require_session(session_id)

        del self._sessions[session_id]
        del self._conversations[session_id]
        self._sync.pop(session_id, None)
        selection_cleared = self._selector.on_deleted(session_id)

        self._enqueue(
            PersistOp.DELETE_SESSION, session_id,
            lambda: self.gateway.delete_session(session_id))
        self._dispatcher.retire(session_id)

        logger.info(f"Deleted session {session_id}")
        self.events.emit(StoreEvent(EventKind.SESSION_DELETED, session_id))
        if selection_cleared:
            self.events.emit(StoreEvent(EventKind.CURRENT_CHANGED))

    def resync(self, session_id: str) -> int:
        """Re-queue writes that failed for a session.

        The session record goes first, then failed messages in
        conversation order.

        Returns:
            Number of gateway calls queued.
        """
        self._require_loop()
        session = self._require_session(session_id)
        state = self._sync[session_id]
        queued = 0

        if state.session_failed:
            state.session_failed = False
            self._enqueue(
                PersistOp.SAVE_SESSION, session_id,
                lambda: self.gateway.save_session(session))
            queued += 1

        failed = set(state.failed_messages)
        state.failed_messages.clear()
        for message in self._conversations[session_id]:
            if message.id in failed:
                self._enqueue(
                    PersistOp.SAVE_MESSAGE, session_id,
                    lambda m=message: self.gateway.save_message(session_id, m),
                    message_id=message.id)
                queued += 1

        if queued:
            logger.info(f"Resyncing {queued} writes for session {session_id}")
        return queued

    # ── Read views ──────────────────────────────────────

    @property
    def sessions(self) -> Mapping[str, Session]:
        return MappingProxyType(dict(self._sessions))

    @property
    def session_list(self) -> list[Session]:
        return list(self._sessions.values())

    @property
    def current_session_id(self) -> str | None:
        return self._selector.current_id

    @property
    def selector_state(self) -> SelectorState:
        return self._selector.state

    @property
    def current_session(self) -> Session | None:
        current = self._selector.current_id
        return self._sessions.get(current) if current else None

    @property
    def current_conversation(self) -> tuple[Message, ...] | None:
        current = self._selector.current_id
        if current is None or current not in self._conversations:
            return None
        return self._conversations[current].messages

    @property
    def sessions_by_project(self) -> dict[str, list[Session]]:
        grouped: dict[str, list[Session]] = {}
        for session in self._sessions.values():
            grouped.setdefault(session.project_id, []).append(session)
        return grouped

    def get_session(self, session_id: str) -> Session:
        return self._require_session(session_id)

    def get_conversation(self, session_id: str) -> tuple[Message, ...]:
        return self._require_conversation(session_id).messages

    def filter_sessions(
        self,
        project_id: str | None = None,
        runtime_id: str | None = None,
    ) -> list[Session]:
        return [
            s for s in self._sessions.values()
            if (not project_id or s.project_id == project_id)
            and (not runtime_id or s.runtime_id == runtime_id)
        ]

    def sync_status(self, session_id: str) -> SyncStatus:
        self._require_session(session_id)
        state = self._sync[session_id]
        if state.session_failed or state.failed_messages:
            return SyncStatus.FAILED
        if state.in_flight:
            return SyncStatus.PENDING
        return SyncStatus.SYNCED

    async def search_sessions(self, query: str, limit: int = 50) -> list[SearchResult]:
        """Search message content (via the gateway) and session titles.

        Returns matches newest first; title matches have no message_id.
        """
        if not query or not query.strip():
            return []
        query = query.strip()

        await self.initialize()
        await self._dispatcher.drain()
        hits = await self._call(
            "search_messages", lambda: self.gateway.search_messages(query, limit))

        results = [
            SearchResult(
                session_id=h.session_id,
                message_id=h.message_id,
                content=h.content,
                timestamp=h.timestamp,
                highlight=h.highlight,
                session=self._sessions.get(h.session_id),
            )
            for h in hits
        ]

        matched = {r.session_id for r in results}
        needle = query.lower()
        for session in self._sessions.values():
            if needle in session.title.lower() and session.id not in matched:
                results.append(SearchResult(
                    session_id=session.id,
                    message_id="",
                    content=session.title,
                    timestamp=session.updated_at,
                    highlight=highlight_text(session.title, query),
                    session=session,
                ))

        results.sort(key=lambda r: r.timestamp, reverse=True)
        return results

    def export_session(
        self,
        session_id: str,
        fmt: ExportFormat | str = ExportFormat.MARKDOWN,
    ) -> str:
        session = self._require_session(session_id)
        return export_session(session, self._conversations[session_id], fmt)

    # ── Events ──────────────────────────────────────────

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        return self.events.subscribe(callback)

    def unsubscribe(self, callback: EventCallback) -> None:
        self.events.unsubscribe(callback)

    # ── Internals ───────────────────────────────────────

    @staticmethod
    def _require_loop() -> None:
        # Mutations queue background writes; check before touching state.
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            raise RuntimeError(
                "SessionStore mutations must run inside an asyncio event loop") from None

    def _require_session(self, session_id: str) -> Session:
        _require_text(session_id, "session_id")
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Session not found: {session_id}", session_id)
        return session

    def _require_conversation(self, session_id: str) -> Conversation:
        self._require_session(session_id)
        return self._conversations[session_id]

    def _enqueue(
        self,
        operation: PersistOp,
        session_id: str,
        call: Callable[[], Awaitable[None]],
        message_id: str | None = None,
    ) -> None:
        state = self._sync.get(session_id)
        if state is not None:
            state.in_flight += 1
        self._dispatcher.submit(PersistJob(
            operation=operation,
            session_id=session_id,
            call=call,
            message_id=message_id,
        ))

    async def _call(self, operation: str, factory: Callable[[], Awaitable[T]]) -> T:
        """Run one gateway call; any failure comes out as PersistenceError.

        NotFoundError from the gateway (unknown session on the backend)
        passes through unchanged.
        """
        try:
            if self.persist_timeout:
                return await asyncio.wait_for(factory(), self.persist_timeout)
            return await factory()
        except (PersistenceError, NotFoundError):
            raise
        except asyncio.TimeoutError as e:
            raise PersistenceError(
                f"{operation} timed out after {self.persist_timeout}s", operation) from e
        except Exception as e:
            raise PersistenceError(f"{operation} failed: {e}", operation) from e

    async def _execute(self, job: PersistJob) -> None:
        """Run a queued job and report its outcome."""
        try:
            await self.initialize()
            await self._call(job.operation.value, job.call)
        except (PersistenceError, NotFoundError) as e:
            self._on_failure(job, e)
        else:
            self._on_success(job)
        finally:
            state = self._sync.get(job.session_id)
            if state is not None and state.in_flight > 0:
                state.in_flight -= 1

    def _on_success(self, job: PersistJob) -> None:
        state = self._sync.get(job.session_id)
        if state is not None:
            if job.operation is PersistOp.SAVE_SESSION:
                state.durable = True
                state.session_failed = False
            elif job.operation is PersistOp.SAVE_MESSAGE and job.message_id in state.failed_messages:
                state.failed_messages.remove(job.message_id)

        outcome = PersistenceOutcome(
            operation=job.operation,
            session_id=job.session_id,
            message_id=job.message_id,
            success=True,
        )
        self.events.emit(StoreEvent(
            EventKind.PERSIST_SUCCEEDED, job.session_id, job.message_id, outcome))

    def _on_failure(self, job: PersistJob, error: Exception) -> None:
        self.last_error = error
        logger.warning(
            f"Failed to {job.operation.value} for session {job.session_id}: {error}")

        state = self._sync.get(job.session_id)
        if state is not None:
            if job.operation is PersistOp.SAVE_SESSION:
                state.session_failed = True
            elif job.operation is PersistOp.SAVE_MESSAGE and job.message_id not in state.failed_messages:
                state.failed_messages.append(job.message_id)

        outcome = PersistenceOutcome(
            operation=job.operation,
            session_id=job.session_id,
            message_id=job.message_id,
            success=False,
            error=error,
        )
        self.events.emit(StoreEvent(
            EventKind.PERSIST_FAILED, job.session_id, job.message_id, outcome))

        if (
            job.operation is PersistOp.SAVE_SESSION
            and state is not None
            and not state.durable
            and self.create_failure_policy is CreateFailurePolicy.RETRACT
        ):
            self._retract(job.session_id)

    def _retract(self, session_id: str) -> None:
        """Undo an optimistic create whose first save failed."""
        if session_id not in self._sessions:
            return
        dropped = self._dispatcher.discard(session_id)
        del self._sessions[session_id]
        del self._conversations[session_id]
        self._sync.pop(session_id, None)
        selection_cleared = self._selector.on_deleted(session_id)

        logger.warning(
            f"Retracted session {session_id} after failed save ({dropped} queued writes dropped)")
        self.events.emit(StoreEvent(EventKind.SESSION_RETRACTED, session_id))
        if selection_cleared:
            self.events.emit(StoreEvent(EventKind.CURRENT_CHANGED))
