from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx

from tubesession.service.errors import (
    AuthenticationFailedError,
    AuthorizationRejected,
    SessionExpiredError,
)
from tubesession.service.refresh import RefreshCoordinator
from tubesession.service.session import SessionStatus, SessionStore

T = TypeVar("T")

RequestFn = Callable[[Optional[str]], Awaitable[T]]
AuthFailureHook = Callable[[AuthenticationFailedError], Awaitable[None]]


@dataclass
class RequestTicket:
    """One authenticated call; replayed at most once after a refresh."""

    execute: RequestFn
    attempt: int = 0
    token: Optional[str] = None


def _is_authorization_failure(result: Any) -> bool:
    return isinstance(result, httpx.Response) and result.status_code == 401


class RequestGateway:
    """Single path for authenticated platform calls.

    ``request_fn`` receives the access token and performs exactly one
    exchange. A 401, raised as ``AuthorizationRejected`` or returned as a raw
    ``httpx.Response``, triggers one refresh and one replay. Every other
    outcome goes back to the caller untouched.
    """

    def __init__(
        self,
        session: SessionStore,
        coordinator: RefreshCoordinator,
        *,
        on_authentication_failed: Optional[AuthFailureHook] = None,
    ) -> None:
        self.session = session
        self.coordinator = coordinator
        self._on_authentication_failed = on_authentication_failed

    async def authed_call(self, request_fn: RequestFn) -> Any:
        ticket = RequestTicket(execute=request_fn, token=self.session.access_token)
        while True:
            try:
                result = await ticket.execute(ticket.token)
            except AuthorizationRejected as exc:
                rejection: Optional[BaseException] = exc
            else:
                if not _is_authorization_failure(result):
                    self.session.record_activity()
                    return result
                rejection = None

            if ticket.attempt > 0:
                await self._authentication_failed(rejection)

            generation = self.session.generation
            new_token = await self.coordinator.ensure_fresh_token(stale_token=ticket.token)
            # logout or a new login while we waited makes the replay stale
            if (
                self.session.status is SessionStatus.UNAUTHENTICATED
                or self.session.generation != generation
            ):
                raise SessionExpiredError("session ended before the request could be replayed")
            ticket.attempt += 1
            ticket.token = new_token

    async def _authentication_failed(self, cause: Optional[BaseException]) -> None:
        error = AuthenticationFailedError(
            "refreshed credentials were rejected",
            detail={"generation": self.session.generation},
        )
        if self._on_authentication_failed is not None:
            await self._on_authentication_failed(error)
        if cause is not None:
            raise error from cause
        raise error


__all__ = ["RequestGateway", "RequestTicket"]
