"""Tests for Markdown/JSON export."""

import json

import pytest

from omnisession.errors import ValidationError
from omnisession.export import ExportFormat, export_session, format_timestamp
from omnisession.models import Message, MessageRole, Session

SESSION = Session(
    id="sess-1", project_id="proj", runtime_id="claude-code", title="Login bug",
    created_at=0.0, updated_at=60.0, tags=("auth", "urgent"),
)
MESSAGES = [
    Message(id="msg-0", role=MessageRole.USER, content="Why does login fail?",
            timestamp=10.0, seq=0),
    Message(id="msg-1", role=MessageRole.ASSISTANT, content="The token expired.",
            timestamp=20.0, seq=1, metadata={"model": "x"}),
]


class TestExport:
    """Markdown and JSON rendering of a session."""

    def test_format_timestamp_is_utc(self):
        """Timestamps render in UTC regardless of local time zone."""
        assert format_timestamp(0) == "1970-01-01 00:00:00 UTC"

    def test_markdown(self):
        """Markdown has the header fields, tags and role-labelled messages in order."""
        out = export_session(SESSION, MESSAGES, "markdown")
        assert out.startswith("# Login bug\n")
        assert "**Session ID:** sess-1" in out
        assert "**Tags:** auth, urgent" in out
        assert "## 👤 User - 1970-01-01 00:00:10 UTC" in out
        assert "## 🤖 Assistant - 1970-01-01 00:00:20 UTC" in out
        assert out.index("Why does login fail?") < out.index("The token expired.")

    def test_markdown_without_tags(self):
        """The tags line is left out when there are none."""
        untagged = Session(id="s", project_id="p", runtime_id="r", title="T",
                           created_at=0.0, updated_at=0.0)
        assert "**Tags:**" not in export_session(untagged, [])

    def test_json(self):
        """JSON export holds the session record and every message."""
        data = json.loads(export_session(SESSION, MESSAGES, ExportFormat.JSON))
        assert data["session"]["id"] == "sess-1"
        assert data["session"]["tags"] == ["auth", "urgent"]
        assert [m["id"] for m in data["messages"]] == ["msg-0", "msg-1"]
        assert data["messages"][1]["metadata"] == {"model": "x"}

    def test_unknown_format(self):
        """Formats other than markdown and json are rejected."""
        with pytest.raises(ValidationError):
            export_session(SESSION, MESSAGES, "pdf")
