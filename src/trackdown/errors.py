"""Exception types raised by the trackdown core.

The command layer turns these into ``Error: <message>`` output and a
non-zero exit code; library code never prints.
"""

from __future__ import annotations


class TrackdownError(Exception):
    """Base class for all trackdown errors."""


class ConfigurationError(TrackdownError):
    """Project configuration is missing or incomplete."""


class NotFoundError(TrackdownError):
    """Unknown ticket id or remote resource."""

    def __init__(self, item_id: str, what: str = "item") -> None:
        self.item_id = item_id
        super().__init__(f"{what} not found: {item_id}")


class ValidationError(TrackdownError):
    """Illegal transition or malformed input."""


class TransitionNotAllowedError(ValidationError):
    """Raised when a transition is not present in the transition table."""

    def __init__(self, from_state: str, to_state: str, allowed: list[str]) -> None:
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed
        allowed_str = ", ".join(allowed) or "none"
        super().__init__(
            f"Transition '{from_state}' -> '{to_state}' is not allowed. "
            f"Allowed from '{from_state}': {allowed_str}"
        )


class ParseError(TrackdownError):
    """A document could not be parsed. Non-fatal during indexing."""

    def __init__(self, message: str, path: str = "") -> None:
        self.path = path
        self.reason = message
        super().__init__(f"{path}: {message}" if path else message)


class ConflictError(TrackdownError):
    """A write lost a race against a concurrent edit, or a sync conflict."""


class PersistenceError(TrackdownError):
    """Writing a document or counter record failed."""


class SyncError(TrackdownError):
    """Base for errors that abort a whole sync attempt."""


class AuthenticationError(SyncError):
    """Remote rejected the credentials or lacks permissions."""


class RateLimitError(SyncError):
    """Remote rate limit exhausted."""

    def __init__(self, message: str, reset_at: str = "") -> None:
        self.reset_at = reset_at
        super().__init__(message)


class NetworkError(SyncError):
    """Remote unreachable or returned a server error."""


class RepositoryNotFoundError(SyncError):
    """The configured repository does not exist or is not visible to the token."""
