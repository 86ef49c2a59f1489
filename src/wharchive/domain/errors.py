"""Error taxonomy for the archive engine.

Every failure is attributable to a single session or message; there is no
system-wide error state.
"""


class ArchiveError(Exception):
    """Base class for all engine errors."""

    pass


class ValidationError(ArchiveError):
    """Malformed event or request. Logged and dropped, never retried."""

    pass


class AuthorizationError(ArchiveError):
    """Principal may not perform the action. Surfaced, never retried."""

    pass


class NotFoundError(ArchiveError):
    """Referenced session, contact or run does not exist."""

    pass


class ConflictError(ArchiveError):
    """Duplicate sync start, or duplicate unique key outside idempotent upserts."""

    pass


class TransientGatewayError(ArchiveError):
    """Network failure or timeout talking to the gateway. Retried with backoff."""

    pass


class DataIntegrityError(ArchiveError):
    """Hierarchy cycle, bad owner edge, or dual/absent assignment target."""

    pass


class SyncCancelledError(ArchiveError):
    """Raised inside a sync run when it is aborted."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason
