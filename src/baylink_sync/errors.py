"""Exception hierarchy for the conversation sync client."""

from __future__ import annotations


class SyncError(Exception):
    """Base exception for all sync client errors.

    ``handled`` is true when the failure has already been reported through
    another channel and callers must not surface it again.
    """

    handled = False


class ValidationError(SyncError):
    """Input rejected client-side before any network call."""


class EmptyMessageError(ValidationError):
    """Text message content is empty after trimming whitespace."""


class NotLoggedInError(SyncError):
    """An operation that needs a Session was called without one."""


class NetworkError(SyncError):
    """The request never produced an HTTP response."""


class ProtocolError(SyncError):
    """The server answered with a payload the client cannot interpret."""


class ApiError(SyncError):
    """The server rejected a request with a non-success status."""

    def __init__(self, status: int, message: str, *, path: str | None = None) -> None:
        self.status = status
        self.message = message
        self.path = path
        super().__init__(f"{status}: {message}")


class AuthenticationFailed(ApiError):
    """A login attempt was rejected; the stored credential is unaffected."""


class SessionExpiredError(ApiError):
    """The stored credential was rejected; reported via the expiry signal."""

    handled = True


class ContactShareDeclined(SyncError):
    """The user declined the confirmation gate for sharing contact details."""
