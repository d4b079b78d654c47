from __future__ import annotations

from typing import Any, Optional


class ServiceError(Exception):
    """Base class for errors surfaced to UI callers.

    Each class carries a stable ``error_code`` and, where one applies, the
    HTTP ``status_code`` it was derived from:
    - network_error (no status)
    - unauthorized (401) and its session_expired / authentication_failed /
      invalid_credentials refinements
    - validation_error (400)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: Optional[int] = None
    error_code: str = "request_failed"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class NetworkError(ServiceError):
    """The platform could not be reached (connection, DNS, timeout)."""
    error_code = "network_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class AuthorizationRejected(AuthenticationError):
    """A single exchange was answered with 401.

    Raised by the API client and consumed by the request gateway and the
    auth client; UI callers see one of the refinements below instead.
    """
    pass


class SessionExpiredError(AuthenticationError):
    """The session could not be renewed; the user has to sign in again."""
    error_code = "session_expired"


class AuthenticationFailedError(AuthenticationError):
    """A freshly refreshed access token was still rejected."""
    error_code = "authentication_failed"


class InvalidCredentialsError(AuthenticationError):
    """Login or registration credentials were rejected."""
    error_code = "invalid_credentials"


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """The platform failed to handle the request (5xx)."""
    status_code = 500
    error_code = "server_error"


class OptimisticRollback(ServiceError):
    """An optimistic mutation did not commit.

    ``reverted`` is False when a newer mutation for the same target already
    owns the visible state, so nothing was restored on screen.
    """

    error_code = "optimistic_rollback"

    def __init__(
        self,
        message: str,
        *,
        target: Any,
        cause: BaseException,
        restored_state: Any = None,
        reverted: bool = True,
    ) -> None:
        super().__init__(
            message,
            status_code=getattr(cause, "status_code", None),
            detail={"cause": getattr(cause, "error_code", type(cause).__name__)},
        )
        self.target = target
        self.cause = cause
        self.restored_state = restored_state
        self.reverted = reverted


class InvalidTransitionError(RuntimeError):
    """Raised when the session state machine is driven out of order."""


__all__ = [
    "ServiceError",
    "NetworkError",
    "AuthenticationError",
    "AuthorizationRejected",
    "SessionExpiredError",
    "AuthenticationFailedError",
    "InvalidCredentialsError",
    "ValidationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "OptimisticRollback",
    "InvalidTransitionError",
]
