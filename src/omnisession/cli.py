"""CLI interface for omnisession.

Settings come from ~/.omnisession/config.yaml (see omnisession.config).

Quick start:
    omnisession new my-project claude-code          # new session
    omnisession say <session-id> user "Hello AI"    # append a message
    omnisession list --project my-project           # list sessions
    omnisession show <session-id>                   # print conversation
    omnisession search "login bug"                  # full-text search
    omnisession export <session-id> -f json -o out.json
"""

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from omnisession import __version__
from omnisession.config import get_config_path, get_settings
from omnisession.errors import OmniSessionError
from omnisession.events import EventKind, StoreEvent
from omnisession.export import format_timestamp
from omnisession.models import MessageRole
from omnisession.store import SessionStore

T = TypeVar("T")

app = typer.Typer(
    name="omnisession",
    help="Manage persisted AI chat sessions",
    no_args_is_help=True,
)

console = Console()

ROLE_STYLES = {
    MessageRole.USER: "bold cyan",
    MessageRole.ASSISTANT: "bold green",
    MessageRole.SYSTEM: "bold magenta",
}


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
) -> None:
    """omnisession - session and conversation storage."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)],
        )


def _run(action: Callable[[SessionStore], Awaitable[T]]) -> T:
    """Open the configured store, run an action, flush and report failures."""

    async def runner() -> T:
        store = SessionStore.from_settings(get_settings())
        failures: list[StoreEvent] = []
        store.subscribe(
            lambda e: failures.append(e) if e.kind is EventKind.PERSIST_FAILED else None)
        try:
            await store.load_sessions()
            return await action(store)
        finally:
            await store.close()
            for event in failures:
                console.print(f"[yellow]⚠ Not saved: {event.outcome.error}[/yellow]")

    try:
        return asyncio.run(runner())
    except OmniSessionError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def version() -> None:
    """Show version."""
    console.print(f"omnisession {__version__}")


@app.command("list")
def list_sessions(
    project: str | None = typer.Option(None, "--project", "-p", help="Filter by project id"),
    runtime: str | None = typer.Option(None, "--runtime", "-r", help="Filter by runtime id"),
) -> None:
    """List stored sessions."""

    async def action(store: SessionStore):
        return [
            (s, len(store.get_conversation(s.id)))
            for s in store.filter_sessions(project_id=project, runtime_id=runtime)
        ]

    rows = _run(action)
    if not rows:
        console.print("[dim]No sessions found[/dim]")
        return

    table = Table(title="Sessions")
    table.add_column("ID", style="cyan")
    table.add_column("Title")
    table.add_column("Project")
    table.add_column("Runtime")
    table.add_column("Messages", justify="right")
    table.add_column("Updated", style="dim")
    for session, count in rows:
        table.add_row(
            session.id,
            session.title,
            session.project_id,
            session.runtime_id,
            str(count),
            format_timestamp(session.updated_at),
        )
    console.print(table)


@app.command()
def new(
    project: str = typer.Argument(..., help="Project id"),
    runtime: str = typer.Argument(..., help="Runtime/tool id"),
    title: str | None = typer.Option(None, "--title", "-t", help="Session title"),
) -> None:
    """Create a new session."""

    async def action(store: SessionStore):
        return store.create_session(project, runtime, title=title)

    session = _run(action)
    console.print(f"[green]✓[/green] Created [cyan]{session.id}[/cyan] ({session.title})")


@app.command()
def say(
    session_id: str = typer.Argument(..., help="Session id"),
    role: str = typer.Argument(..., help="user | assistant | system"),
    content: str = typer.Argument(..., help="Message text"),
) -> None:
    """Append a message to a session."""

    async def action(store: SessionStore):
        store.add_message(session_id, role, content)
        return len(store.get_conversation(session_id))

    count = _run(action)
    console.print(f"[green]✓[/green] Added message {count} to {session_id}")


@app.command()
def show(
    session_id: str = typer.Argument(..., help="Session id"),
) -> None:
    """Print a session's conversation."""

    async def action(store: SessionStore):
        return store.get_session(session_id), store.get_conversation(session_id)

    session, messages = _run(action)
    console.print(Panel(
        f"[bold]{session.title}[/bold]\n"
        f"[dim]{session.project_id} · {session.runtime_id} · "
        f"created {format_timestamp(session.created_at)}[/dim]",
        border_style="cyan",
    ))
    if not messages:
        console.print("[dim]No messages yet[/dim]")
    for message in messages:
        style = ROLE_STYLES[message.role]
        console.print(
            f"[{style}]{message.role.value}[/{style}] "
            f"[dim]{format_timestamp(message.timestamp)}[/dim]")
        console.print(message.content, markup=False)
        console.print()


@app.command()
def rename(
    session_id: str = typer.Argument(..., help="Session id"),
    title: str = typer.Argument(..., help="New title"),
) -> None:
    """Rename a session."""

    async def action(store: SessionStore):
        return store.rename_session(session_id, title)

    session = _run(action)
    console.print(f"[green]✓[/green] Renamed {session.id} to {session.title!r}")


@app.command()
def delete(
    session_id: str = typer.Argument(..., help="Session id"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete a session and its messages."""
    if not yes and not typer.confirm(f"Delete session {session_id}?"):
        raise typer.Abort()

    async def action(store: SessionStore):
        store.delete_session(session_id)

    _run(action)
    console.print(f"[green]✓[/green] Deleted {session_id}")


@app.command()
def search(
    query: str = typer.Argument(..., help="Text to search for"),
    limit: int = typer.Option(20, "--limit", "-n", help="Max results"),
) -> None:
    """Search message content and session titles."""

    async def action(store: SessionStore):
        return await store.search_sessions(query, limit=limit)

    results = _run(action)[:limit]
    if not results:
        console.print("[dim]No matches[/dim]")
        return

    table = Table(title=f"Results for {query!r}")
    table.add_column("Session", style="cyan")
    table.add_column("Title")
    table.add_column("Match")
    for r in results:
        snippet = r.highlight.replace("<mark>", "[bold yellow]").replace("</mark>", "[/bold yellow]")
        table.add_row(
            r.session_id,
            r.session.title if r.session else "-",
            ("[dim](title)[/dim] " if r.is_title_match else "") + snippet,
        )
    console.print(table)


@app.command()
def export(
    session_id: str = typer.Argument(..., help="Session id"),
    fmt: str = typer.Option("markdown", "--format", "-f", help="markdown | json"),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write to file"),
) -> None:
    """Export a session to Markdown or JSON."""

    async def action(store: SessionStore):
        return store.export_session(session_id, fmt)

    content = _run(action)
    if output:
        output.write_text(content)
        console.print(f"[green]✓[/green] Exported to {output}")
    else:
        console.print(content, markup=False, highlight=False)


@app.command()
def config() -> None:
    """Show the active configuration."""
    try:
        settings = get_settings()
    except OmniSessionError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Setting", style="bold")
    table.add_column("Value")
    table.add_row("Config file", str(get_config_path()))
    table.add_row("Backend", settings.backend.value)
    table.add_row("Database", str(settings.db_path))
    table.add_row("Sessions dir", str(settings.sessions_dir))
    table.add_row("Persist timeout", f"{settings.persist_timeout}s" if settings.persist_timeout else "none")
    table.add_row("Create failure policy", settings.create_failure_policy.value)
    console.print(table)


if __name__ == "__main__":
    app()
