"""Tests for the persistence backends (SQLite, JSONL, in-memory).

Every backend must honour the same contract, so most tests run against
all three through the parametrized `backend` fixture.
"""

import asyncio
import json

import pytest

from omnisession.errors import NotFoundError, PersistenceError
from omnisession.gateway import InMemoryGateway, JsonlGateway, SQLiteGateway
from omnisession.models import Message, MessageRole, Session
from omnisession.store import SessionStore


def make_session(sid: str = "sess-1", project: str = "P", updated: float = 10.0, **kw) -> Session:
    return Session(
        id=sid, project_id=project, runtime_id="claude",
        title=kw.pop("title", "Session"), created_at=1.0, updated_at=updated, **kw,
    )


def make_message(seq: int, content: str = "hello", ts: float | None = None) -> Message:
    return Message(
        id=f"msg-{seq}",
        role=MessageRole.USER if seq % 2 == 0 else MessageRole.ASSISTANT,
        content=content,
        timestamp=ts if ts is not None else 100.0 + seq,
        seq=seq,
    )


@pytest.fixture(params=["sqlite", "jsonl", "memory"])
def backend(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteGateway(tmp_path / "db" / "conversations.db")
    if request.param == "jsonl":
        return JsonlGateway(tmp_path / "sessions")
    return InMemoryGateway()


# ═══════════════════════════════════════════════════════════════
# SHARED CONTRACT
# ═══════════════════════════════════════════════════════════════

class TestGatewayContract:
    """Behaviour every backend must share."""

    def test_init_is_repeatable(self, backend):
        """init_database can run twice on a fresh store."""
        async def scenario():
            await backend.init_database()
            await backend.init_database()
            return await backend.load_sessions()

        assert asyncio.run(scenario()) == []

    def test_save_and_load_in_seq_order(self, backend):
        """Messages come back in seq order with their roles."""
        async def scenario():
            await backend.init_database()
            await backend.save_session(make_session(tags=("x",)))
            for seq in (0, 1, 2):
                await backend.save_message("sess-1", make_message(seq, f"m{seq}"))
            return await backend.load_sessions()

        snapshots = asyncio.run(scenario())
        assert len(snapshots) == 1
        assert snapshots[0].session.tags == ("x",)
        assert [m.content for m in snapshots[0].messages] == ["m0", "m1", "m2"]
        assert [m.role for m in snapshots[0].messages] == [
            MessageRole.USER, MessageRole.ASSISTANT, MessageRole.USER]

    def test_save_message_is_idempotent(self, backend):
        """Saving the same message twice stores it once."""
        async def scenario():
            await backend.init_database()
            await backend.save_session(make_session())
            await backend.save_message("sess-1", make_message(0))
            await backend.save_message("sess-1", make_message(0))
            return await backend.load_sessions()

        assert len(asyncio.run(scenario())[0].messages) == 1

    def test_save_message_unknown_session(self, backend):
        """A message for a session the backend never saw is NotFoundError."""
        async def scenario():
            await backend.init_database()
            await backend.save_message("sess-nope", make_message(0))

        with pytest.raises(NotFoundError):
            asyncio.run(scenario())

    def test_save_session_updates_title(self, backend):
        """Saving a session again updates it in place."""
        async def scenario():
            await backend.init_database()
            await backend.save_session(make_session(title="Old"))
            await backend.save_session(make_session(title="New", updated=20.0))
            return await backend.load_sessions()

        snapshots = asyncio.run(scenario())
        assert len(snapshots) == 1
        assert snapshots[0].session.title == "New"

    def test_load_orders_by_recent_update_and_scopes(self, backend):
        """Most recently updated first; a scope keeps one project."""
        async def scenario():
            await backend.init_database()
            await backend.save_session(make_session("sess-a", "A", updated=10.0))
            await backend.save_session(make_session("sess-b", "A", updated=30.0))
            await backend.save_session(make_session("sess-c", "B", updated=20.0))
            return (
                await backend.load_sessions(),
                await backend.load_sessions("A"),
            )

        everything, scoped = asyncio.run(scenario())
        assert [s.session.id for s in everything] == ["sess-b", "sess-c", "sess-a"]
        assert [s.session.id for s in scoped] == ["sess-b", "sess-a"]

    def test_delete_removes_session_and_messages(self, backend):
        """Delete removes messages from loads and search; repeating it is harmless."""
        async def scenario():
            await backend.init_database()
            await backend.save_session(make_session())
            await backend.save_message("sess-1", make_message(0, "secret plan"))
            await backend.delete_session("sess-1")
            await backend.delete_session("sess-1")  # unknown id is a no-op
            return await backend.load_sessions(), await backend.search_messages("secret")

        snapshots, hits = asyncio.run(scenario())
        assert snapshots == []
        assert hits == []

    def test_search_messages(self, backend):
        """Only matching messages are returned, with the match highlighted."""
        async def scenario():
            await backend.init_database()
            await backend.save_session(make_session())
            await backend.save_message("sess-1", make_message(0, "the login page is broken"))
            await backend.save_message("sess-1", make_message(1, "unrelated reply"))
            return await backend.search_messages("login")

        hits = asyncio.run(scenario())
        assert [h.message_id for h in hits] == ["msg-0"]
        assert "<mark>login</mark>" in hits[0].highlight
        assert hits[0].session_id == "sess-1"

    def test_message_metadata_survives(self, backend):
        """Message metadata is stored and loaded unchanged."""
        async def scenario():
            await backend.init_database()
            await backend.save_session(make_session())
            m = Message(id="msg-0", role=MessageRole.SYSTEM, content="c",
                        timestamp=1.0, metadata={"model": "x"})
            await backend.save_message("sess-1", m)
            return await backend.load_sessions()

        assert asyncio.run(scenario())[0].messages[0].metadata == {"model": "x"}


# ═══════════════════════════════════════════════════════════════
# BACKEND SPECIFICS
# ═══════════════════════════════════════════════════════════════

class TestSQLiteGateway:
    """SQLite-only behaviour."""

    def test_message_bumps_session_updated_at(self, tmp_path):
        """A newer message moves the session's updated_at forward."""
        gw = SQLiteGateway(tmp_path / "c.db")

        async def scenario():
            await gw.init_database()
            await gw.save_session(make_session(updated=10.0))
            await gw.save_message("sess-1", make_message(0, ts=50.0))
            return await gw.load_sessions()

        assert asyncio.run(scenario())[0].session.updated_at == 50.0

    def test_punctuation_only_query(self, tmp_path):
        """A query with no words returns nothing instead of an FTS5 error."""
        gw = SQLiteGateway(tmp_path / "c.db")

        async def scenario():
            await gw.init_database()
            return await gw.search_messages("?!*")

        assert asyncio.run(scenario()) == []

    def test_sqlite_errors_become_persistence_errors(self, tmp_path):
        """Raw sqlite3 errors are wrapped as PersistenceError."""
        gw = SQLiteGateway(tmp_path / "c.db")

        async def scenario():
            # Schema never created
            await gw.save_session(make_session())

        with pytest.raises(PersistenceError):
            asyncio.run(scenario())


class TestJsonlGateway:
    """JSONL-only behaviour."""

    def test_file_is_append_only(self, tmp_path):
        """Renames and messages append lines; nothing is rewritten."""
        gw = JsonlGateway(tmp_path)

        async def scenario():
            await gw.init_database()
            await gw.save_session(make_session(title="One"))
            await gw.save_message("sess-1", make_message(0))
            await gw.save_session(make_session(title="Two"))

        asyncio.run(scenario())
        lines = (tmp_path / "sess-1.jsonl").read_text().splitlines()
        assert len(lines) == 3
        assert json.loads(lines[0])["_type"] == "session_meta"
        assert json.loads(lines[1])["id"] == "msg-0"
        assert json.loads(lines[2])["title"] == "Two"

    def test_corrupted_lines_are_skipped(self, tmp_path):
        """Bad lines and files without metadata are skipped."""
        gw = JsonlGateway(tmp_path)

        async def scenario():
            await gw.init_database()
            await gw.save_session(make_session())
            await gw.save_message("sess-1", make_message(0))
            with open(tmp_path / "sess-1.jsonl", "a") as f:
                f.write("{not json\n")
            (tmp_path / "orphan.jsonl").write_text(json.dumps(make_message(0).to_dict()) + "\n")
            return await gw.load_sessions()

        snapshots = asyncio.run(scenario())
        assert [s.session.id for s in snapshots] == ["sess-1"]
        assert len(snapshots[0].messages) == 1


class TestStoreRoundTrip:
    """A store writing through a real backend and a fresh store reading it back."""

    @pytest.mark.parametrize("kind", ["sqlite", "jsonl"])
    def test_conversation_survives_restart(self, kind, tmp_path):
        """Messages and a rename written by one store load in the next."""
        def gateway():
            if kind == "sqlite":
                return SQLiteGateway(tmp_path / "c.db")
            return JsonlGateway(tmp_path / "sessions")

        async def write():
            store = SessionStore(gateway())
            await store.load_sessions()
            s = store.create_session("P", "claude")
            store.add_message(s.id, "user", "Hello AI")
            store.add_message(s.id, "assistant", "Hi there")
            store.rename_session(s.id, "Greetings")
            await store.close()
            return s.id

        async def read(session_id):
            store = SessionStore(gateway())
            await store.load_sessions()
            return store.get_session(session_id), store.get_conversation(session_id)

        session_id = asyncio.run(write())
        session, messages = asyncio.run(read(session_id))
        assert session.title == "Greetings"
        assert [(m.role.value, m.content) for m in messages] == [
            ("user", "Hello AI"), ("assistant", "Hi there")]

    def test_corrupted_middle_line_still_loads(self, tmp_path):
        """A damaged message line in the middle of a JSONL file drops only that message."""
        sessions_dir = tmp_path / "sessions"

        async def write():
            store = SessionStore(JsonlGateway(sessions_dir))
            await store.load_sessions()
            s = store.create_session("P", "claude")
            other = store.create_session("P", "codex")
            for text in ("one", "two", "three"):
                store.add_message(s.id, "user", text)
            store.add_message(other.id, "user", "untouched")
            await store.close()
            return s.id, other.id

        async def read():
            store = SessionStore(JsonlGateway(sessions_dir))
            await store.load_sessions()
            return store

        session_id, other_id = asyncio.run(write())
        path = sessions_dir / f"{session_id}.jsonl"
        lines = path.read_text().splitlines()
        # meta, one, two, three
        lines[2] = "{not json"
        path.write_text("\n".join(lines) + "\n")

        store = asyncio.run(read())
        assert {s.id for s in store.session_list} == {session_id, other_id}
        messages = store.get_conversation(session_id)
        assert [m.content for m in messages] == ["one", "three"]
        assert [m.seq for m in messages] == [0, 2]
