"""Error types raised by the session store and persistence gateways.

Three kinds, matching how they reach the caller:
- ValidationError: malformed input (unknown role, empty identifiers).
  Raised synchronously, before any state changes.
- NotFoundError: an operation referenced a session that is not loaded
  (or, from a gateway, not known to the backend).
- PersistenceError: a gateway call failed. Raised directly from
  load/search/initialize; reported as an event for background writes.
"""


class OmniSessionError(Exception):
    """Base class for all omnisession errors."""


class ValidationError(OmniSessionError, ValueError):
    """Input failed validation."""


class NotFoundError(OmniSessionError, LookupError):
    """Referenced session (or message) does not exist."""

    def __init__(self, message: str, session_id: str | None = None):
        super().__init__(message)
        self.session_id = session_id


class PersistenceError(OmniSessionError):
    """The persistence gateway rejected or failed a call."""

    def __init__(self, message: str, operation: str = ""):
        super().__init__(message)
        self.operation = operation
