from __future__ import annotations

from typing import Any, Optional

import httpx

from tubesession.logging import get_logger
from tubesession.service.errors import (
    AuthorizationRejected,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    ServiceError,
    ValidationError,
)

logger = get_logger(__name__)

# stable error classes keyed by HTTP status
_STATUS_TO_ERROR = {
    400: ValidationError,
    401: AuthorizationRejected,
    403: ForbiddenError,
    404: NotFoundError,
    409: ConflictError,
    422: ValidationError,
    429: RateLimitedError,
}


def _error_class_for_status(status_code: int) -> type[ServiceError]:
    if status_code >= 500:
        return ServerError
    return _STATUS_TO_ERROR.get(status_code, ServiceError)


def _error_message(body: Any, fallback: str) -> str:
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return fallback


def _request_path(response: httpx.Response) -> Optional[str]:
    try:
        return response.request.url.path
    except RuntimeError:
        return None


def error_for_response(response: httpx.Response) -> ServiceError:
    """Translate a non-2xx platform response into a ``ServiceError``."""
    body: Optional[Any]
    try:
        body = response.json()
    except ValueError:
        body = None
    status_code = response.status_code
    message = _error_message(body, response.reason_phrase or f"HTTP {status_code}")
    error_cls = _error_class_for_status(status_code)
    detail: dict = {"path": _request_path(response)}
    if isinstance(body, dict) and body.get("errors"):
        detail["errors"] = body["errors"]
    if status_code >= 500:
        logger.warning("platform_server_error", status_code=status_code, path=detail["path"])
    return error_cls(message, status_code=status_code, detail=detail)
