"""Search helpers: snippet highlighting and FTS5 query cleanup."""

import re

CONTEXT_CHARS = 64
MARK_OPEN = "<mark>"
MARK_CLOSE = "</mark>"

_FTS5_RESERVED = {"AND", "OR", "NOT", "NEAR"}


def highlight_text(text: str, query: str, context: int = CONTEXT_CHARS) -> str:
    """Cut a snippet around the first case-insensitive match and mark it.

    Up to `context` characters are kept on each side; truncated ends get
    an ellipsis. Returns the text unchanged when there is no match.
    """
    if not query or not text:
        return text

    index = text.lower().find(query.lower())
    if index == -1:
        return text

    start = max(0, index - context)
    end = min(len(text), index + len(query) + context)

    snippet = text[start:end]
    if start > 0:
        snippet = "..." + snippet
    if end < len(text):
        snippet = snippet + "..."

    match_start = snippet.lower().find(query.lower())
    if match_start != -1:
        match_end = match_start + len(query)
        snippet = (
            snippet[:match_start]
            + MARK_OPEN + snippet[match_start:match_end] + MARK_CLOSE
            + snippet[match_end:]
        )
    return snippet


def fts_query(query: str) -> str:
    """Convert free text into a safe FTS5 MATCH expression.

    Punctuation and FTS5 operators are stripped; remaining words are
    quoted and OR-ed together.
    """
    cleaned = re.sub(r"[^\w\s]", " ", query)
    words = [
        w for w in cleaned.split()
        if w.upper() not in _FTS5_RESERVED
    ]
    if not words:
        return ""
    return " OR ".join(f'"{w}"' for w in words)
