"""Export a session's conversation to Markdown or JSON."""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable

from omnisession.errors import ValidationError
from omnisession.models import Message, MessageRole, Session


class ExportFormat(str, Enum):
    MARKDOWN = "markdown"
    JSON = "json"

    @classmethod
    def parse(cls, value: "ExportFormat | str") -> "ExportFormat":
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(
                f"Unsupported export format: {value} (use markdown or json)") from None


ROLE_LABELS = {
    MessageRole.USER: "👤 User",
    MessageRole.ASSISTANT: "🤖 Assistant",
    MessageRole.SYSTEM: "⚙️ System",
}


def format_timestamp(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


def to_markdown(session: Session, messages: Iterable[Message]) -> str:
    lines = [
        f"# {session.title}",
        "",
        f"**Session ID:** {session.id}",
        f"**Project ID:** {session.project_id}",
        f"**Runtime ID:** {session.runtime_id}",
        f"**Created:** {format_timestamp(session.created_at)}",
        f"**Updated:** {format_timestamp(session.updated_at)}",
        "",
    ]
    if session.tags:
        lines += [f"**Tags:** {', '.join(session.tags)}", ""]
    lines += ["---", ""]

    for message in messages:
        lines += [
            f"## {ROLE_LABELS[message.role]} - {format_timestamp(message.timestamp)}",
            "",
            message.content,
            "",
            "---",
            "",
        ]
    return "\n".join(lines)


def to_json(session: Session, messages: Iterable[Message]) -> str:
    data = {
        "session": session.to_dict(),
        "messages": [m.to_dict() for m in messages],
    }
    return json.dumps(data, indent=2, ensure_ascii=False)


def export_session(
    session: Session,
    messages: Iterable[Message],
    fmt: ExportFormat | str = ExportFormat.MARKDOWN,
) -> str:
    """Render a session and its messages in the requested format."""
    fmt = ExportFormat.parse(fmt)
    if fmt is ExportFormat.JSON:
        return to_json(session, messages)
    return to_markdown(session, messages)
