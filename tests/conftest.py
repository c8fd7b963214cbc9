"""Shared fixtures and a controllable gateway for store tests."""

import asyncio
from collections import deque

import pytest

from omnisession.errors import PersistenceError
from omnisession.gateway.memory import InMemoryGateway
from omnisession.models import Message, Session


class FlakyGateway(InMemoryGateway):
    """In-memory gateway with injectable latency and failures.

    - delays: queue of sleeps (seconds) consumed by save/delete calls in
      call order
    - fail_ops: operation names that always fail
    - fail_once: operation names that fail on their next call only
    - calls: log of (operation, session_id, message_id) in completion order
    """

    def __init__(self) -> None:
        super().__init__()
        self.delays: deque[float] = deque()
        self.fail_ops: set[str] = set()
        self.fail_once: set[str] = set()
        self.hang_ops: set[str] = set()
        self.calls: list[tuple[str, str | None, str | None]] = []

    async def _gate(self, op: str, delayed: bool = True) -> None:
        if delayed and self.delays:
            await asyncio.sleep(self.delays.popleft())
        if op in self.hang_ops:
            await asyncio.sleep(3600)
        if op in self.fail_once:
            self.fail_once.discard(op)
            raise PersistenceError(f"{op} rejected", op)
        if op in self.fail_ops:
            raise PersistenceError(f"{op} rejected", op)

    async def init_database(self) -> None:
        await self._gate("init_database", delayed=False)
        await super().init_database()

    async def load_sessions(self, scope=None):
        await self._gate("load_sessions", delayed=False)
        return await super().load_sessions(scope)

    async def save_session(self, session: Session) -> None:
        await self._gate("save_session")
        await super().save_session(session)
        self.calls.append(("save_session", session.id, None))

    async def save_message(self, session_id: str, message: Message) -> None:
        await self._gate("save_message")
        await super().save_message(session_id, message)
        self.calls.append(("save_message", session_id, message.id))

    async def delete_session(self, session_id: str) -> None:
        await self._gate("delete_session")
        await super().delete_session(session_id)
        self.calls.append(("delete_session", session_id, None))


@pytest.fixture
def gateway():
    return FlakyGateway()


@pytest.fixture
def events():
    """Collects every StoreEvent emitted by a store it is subscribed to."""
    return []
