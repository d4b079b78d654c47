from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from tubesession.api.schemas import RefreshPayload
from tubesession.logging import get_logger
from tubesession.service.errors import SessionExpiredError
from tubesession.service.session import SessionChangeReason, SessionStatus, SessionStore

logger = get_logger(__name__)

# refresher(refresh_token, include_user=...) performs the network call
Refresher = Callable[..., Awaitable[RefreshPayload]]


class RefreshCoordinator:
    """Single-flight access token renewal.

    Only one refresh call is in flight at a time; every caller that arrives
    while it runs awaits the same task and gets the same token or the same
    ``SessionExpiredError``.
    """

    def __init__(
        self,
        session: SessionStore,
        refresher: Refresher,
        *,
        requires_refresh_token: bool = True,
    ) -> None:
        self.session = session
        self._refresher = refresher
        self._requires_refresh_token = requires_refresh_token
        self._inflight: Optional[asyncio.Task] = None
        self.refresh_count = 0

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None

    async def ensure_fresh_token(self, stale_token: Optional[str] = None) -> str:
        """Return a usable access token, refreshing at most once for concurrent callers.

        ``stale_token`` is the token a failed request used; when the session
        already holds a different one, it is returned without a refresh.
        """
        status = self.session.status
        if status in (SessionStatus.UNAUTHENTICATED, SessionStatus.UNINITIALIZED):
            raise SessionExpiredError("session is not active; sign in again")

        current = self.session.access_token
        if (
            self._inflight is None
            and stale_token is not None
            and current
            and current != stale_token
            and status is SessionStatus.AUTHENTICATED
        ):
            return current

        if self._inflight is None:
            generation = self.session.begin_refresh()
            self._inflight = asyncio.create_task(self._run_refresh(generation))
        task = self._inflight
        # shield so one cancelled waiter does not cancel the shared refresh
        return await asyncio.shield(task)

    async def _run_refresh(self, generation: int) -> str:
        try:
            refresh_token = self.session.refresh_token_for_renewal()
            if self._requires_refresh_token and not refresh_token:
                await self._expire(generation, "missing_refresh_token")
                raise SessionExpiredError("no refresh credential available; sign in again")

            self.refresh_count += 1
            try:
                payload = await self._refresher(
                    refresh_token, include_user=self.session.user is None
                )
                applied = await self.session.complete_refresh(
                    payload.access_token,
                    generation=generation,
                    user=payload.user,
                    refresh_token=payload.refresh_token,
                )
            except Exception as exc:
                logger.warning(
                    "token_refresh_failed",
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                await self._expire(generation, "refresh_failed")
                raise SessionExpiredError("session expired; sign in again") from exc

            if not applied:
                logger.info("token_refresh_discarded", generation=generation)
                raise SessionExpiredError("session ended while refreshing; sign in again")
            logger.info("token_refreshed", generation=generation)
            return payload.access_token
        finally:
            self._inflight = None

    async def aclose(self) -> None:
        """Cancel a refresh still in flight without expiring the session."""
        task = self._inflight
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _expire(self, generation: int, cause: str) -> None:
        if self.session.generation != generation:
            return
        logger.info("session_expired", cause=cause)
        await self.session.clear(SessionChangeReason.EXPIRED)


__all__ = ["RefreshCoordinator"]
