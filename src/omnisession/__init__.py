"""omnisession - Session and conversation state sync for AI chat workspaces.

Modules:
    - models: Session, Message, Conversation (append-only log)
    - store: SessionStore, the single owner of in-memory session state
    - selector: Active session tracking
    - dispatch: Per-session sequential persistence queues
    - events: Change and persistence-outcome notifications
    - gateway: Persistence backends (SQLite, JSONL, in-memory)
    - config: ~/.omnisession/config.yaml settings
    - export / search: Markdown/JSON export and search highlighting
    - cli: Command-line interface
"""

__version__ = "0.3.0"
