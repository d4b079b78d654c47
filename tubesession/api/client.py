"""HTTP client for the video platform REST API."""

from __future__ import annotations

from typing import Any, Mapping, Optional

import httpx

from tubesession.api.error_handling import error_for_response
from tubesession.api.schemas import Envelope
from tubesession.logging import get_correlation_id, get_logger
from tubesession.service.errors import NetworkError, ServerError, ServiceError

logger = get_logger(__name__)


class ApiClient:
    """Thin wrapper over ``httpx.AsyncClient`` speaking the platform envelope.

    One client lives for the whole runtime so the cookie jar survives between
    login and cookie-based token refresh.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not base_url:
            raise ValueError("api base_url must not be empty")
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout_seconds,
            transport=transport,
        )

    @property
    def cookies(self) -> httpx.Cookies:
        return self._client.cookies

    def _request_headers(self, token: Optional[str]) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Request-ID"] = correlation_id
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        token: Optional[str] = None,
        json: Any = None,
        params: Optional[Mapping[str, Any]] = None,
        data: Optional[Mapping[str, Any]] = None,
        files: Any = None,
    ) -> Envelope:
        try:
            response = await self._client.request(
                method,
                path,
                headers=self._request_headers(token),
                json=json,
                params=params,
                data=data,
                files=files,
            )
        except httpx.TransportError as exc:
            raise NetworkError(
                f"{method} {path} failed: {exc.__class__.__name__}",
                detail={"path": path},
            ) from exc

        if response.status_code >= 400:
            raise error_for_response(response)

        if not response.content:
            # 204 and other bodiless successes
            return Envelope(status_code=response.status_code, data=None)

        try:
            body = response.json()
        except ValueError as exc:
            raise ServerError(
                f"platform returned a non-JSON body for {method} {path}",
                status_code=response.status_code,
                detail={"path": path},
            ) from exc

        envelope = Envelope.model_validate(body if isinstance(body, dict) else {"data": body})
        if not envelope.success:
            raise ServiceError(
                envelope.message or f"{method} {path} was not successful",
                status_code=envelope.status_code,
                detail={"path": path},
            )
        return envelope

    async def get(self, path: str, **kwargs: Any) -> Envelope:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, **kwargs: Any) -> Envelope:
        return await self.request("POST", path, **kwargs)

    async def patch(self, path: str, **kwargs: Any) -> Envelope:
        return await self.request("PATCH", path, **kwargs)

    async def delete(self, path: str, **kwargs: Any) -> Envelope:
        return await self.request("DELETE", path, **kwargs)

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = ["ApiClient"]
