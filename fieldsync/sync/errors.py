"""
Error types raised by the request/sync subsystem.

API errors carry a human-readable message suitable for showing to the user
and a ``retryable`` flag consulted by the request orchestrator's retry loop.
"""

from typing import Optional


class ApiError(Exception):
    """Base class for every error surfaced by the request orchestrator."""

    retryable = False

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.reported = False


class TransientNetworkError(ApiError):
    """Connection reset, DNS failure, refused connection and the like."""

    retryable = True


class RequestTimeoutError(TransientNetworkError):
    """The call did not complete within its hard timeout."""


class SessionExpiredError(ApiError):
    """The access token was rejected and could not be refreshed."""


class InvalidCredentialsError(ApiError):
    """A login-style call (skip_auth) was rejected with 401."""


class PermissionDeniedError(ApiError):
    pass


class NotFoundError(ApiError):
    pass


class RateLimitedError(ApiError):
    """429 response. ``retry_after`` is the suggested wait in seconds."""

    def __init__(self, message: str, retry_after: float, status: Optional[int] = 429):
        super().__init__(message, status)
        self.retry_after = retry_after


class ServerError(ApiError):
    retryable = True


class ValidationError(ApiError):
    pass


class InvalidResponseError(ApiError):
    """The server answered 2xx with a body that is not valid JSON."""


class LocalPersistenceError(Exception):
    """Raised by key-value backends when the underlying storage fails."""


class OfflineError(Exception):
    """An operation that needs connectivity was requested while offline."""
