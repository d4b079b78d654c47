from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from tubesession.logging import get_logger
from tubesession.service.errors import (
    InvalidTransitionError,
    NetworkError,
    ServiceError,
    SessionExpiredError,
)
from tubesession.storage.common import (
    CredentialStore,
    credential_values,
    load_credentials,
)
from tubesession.storage.errors import StorageUnavailableError
from tubesession.storage.models import StoredCredentials

logger = get_logger(__name__)


class SessionStatus(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    AUTHENTICATED = "authenticated"
    REFRESHING = "refreshing"
    UNAUTHENTICATED = "unauthenticated"


class SessionChangeReason(str, Enum):
    RESTORING = "restoring"
    INITIALIZED = "initialized"
    LOGIN = "login"
    REFRESH_STARTED = "refresh_started"
    REFRESHED = "refreshed"
    USER_UPDATED = "user_updated"
    LOGGED_OUT = "logged_out"
    EXPIRED = "expired"


_ALLOWED_TRANSITIONS = {
    SessionStatus.UNINITIALIZED: {SessionStatus.INITIALIZING, SessionStatus.UNAUTHENTICATED},
    SessionStatus.INITIALIZING: {
        SessionStatus.AUTHENTICATED,
        SessionStatus.REFRESHING,
        SessionStatus.UNAUTHENTICATED,
    },
    SessionStatus.AUTHENTICATED: {
        SessionStatus.AUTHENTICATED,
        SessionStatus.REFRESHING,
        SessionStatus.UNAUTHENTICATED,
    },
    SessionStatus.REFRESHING: {SessionStatus.AUTHENTICATED, SessionStatus.UNAUTHENTICATED},
    # leaving unauthenticated requires an explicit login
    SessionStatus.UNAUTHENTICATED: {SessionStatus.AUTHENTICATED},
}


@dataclass(frozen=True)
class SessionSnapshot:
    status: SessionStatus
    user: Optional[Dict[str, Any]]
    access_token: Optional[str]
    last_activity: Optional[datetime]
    generation: int

    @property
    def is_authenticated(self) -> bool:
        return self.status in (SessionStatus.AUTHENTICATED, SessionStatus.REFRESHING)


@dataclass(frozen=True)
class SessionChange:
    previous: SessionSnapshot
    snapshot: SessionSnapshot
    reason: SessionChangeReason


SessionListener = Callable[[SessionChange], Any]
Verifier = Callable[[], Awaitable[Mapping[str, Any]]]
# fallback(stale_token) receives the token the failed verification used
VerificationFallback = Callable[[Optional[str]], Awaitable[Any]]


class SessionStore:
    """Single source of truth for authentication state.

    The store is the only writer of the credential backend. In-memory state is
    updated and listeners are notified first; the matching backend write is
    then awaited under a lock so writes land in transition order. A failed
    write switches the store to in-memory operation for the rest of the
    process.
    """

    def __init__(self, credential_store: CredentialStore) -> None:
        self._store = credential_store
        self._status = SessionStatus.UNINITIALIZED
        self._user: Optional[Dict[str, Any]] = None
        self._access_token: Optional[str] = None
        self._refresh_token: Optional[str] = None
        self._last_activity: Optional[datetime] = None
        self._generation = 0
        self._listeners: List[SessionListener] = []
        self._persist_lock = asyncio.Lock()
        self._persistent = True
        self._verification_task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # read side

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def user(self) -> Optional[Dict[str, Any]]:
        return dict(self._user) if self._user is not None else None

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def persistent(self) -> bool:
        """False once a backend failure degraded the store to memory only."""
        return self._persistent

    @property
    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            status=self._status,
            user=self.user,
            access_token=self._access_token,
            last_activity=self._last_activity,
            generation=self._generation,
        )

    def refresh_token_for_renewal(self) -> Optional[str]:
        return self._refresh_token

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register a change listener; returns a callable that removes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    # ------------------------------------------------------------------
    # transitions

    async def initialize(
        self,
        verifier: Optional[Verifier] = None,
        on_verification_failure: Optional[VerificationFallback] = None,
    ) -> SessionSnapshot:
        """Restore the persisted session.

        With a cached user the session becomes authenticated immediately and
        ``verifier`` runs in the background. With a token but no cached user
        the verifier is awaited before the state settles. Authorization
        failures during verification go to ``on_verification_failure``
        (normally the refresh coordinator) instead of logging out.
        """
        if self._status is not SessionStatus.UNINITIALIZED:
            return self.snapshot

        self._transition(SessionStatus.INITIALIZING, SessionChangeReason.RESTORING)
        try:
            stored = await load_credentials(self._store)
        except StorageUnavailableError as exc:
            logger.warning("credential_load_failed", error=exc.message, detail=exc.detail)
            self._persistent = False
            stored = StoredCredentials()

        if not stored.access_token:
            await self.clear(SessionChangeReason.INITIALIZED)
            logger.info("session_initialized", status=self._status.value)
            return self.snapshot

        self._access_token = stored.access_token
        self._refresh_token = stored.refresh_token
        self._generation += 1
        generation = self._generation

        if stored.user is not None:
            self._user = dict(stored.user)
            self._last_activity = None
            self._transition(SessionStatus.AUTHENTICATED, SessionChangeReason.INITIALIZED)
            logger.info(
                "session_initialized",
                status=self._status.value,
                user_id=self._user.get("_id"),
                verify=verifier is not None,
            )
            if verifier is not None:
                self._verification_task = asyncio.create_task(
                    self._verify(verifier, on_verification_failure, generation)
                )
            return self.snapshot

        if verifier is None:
            # no way to recover the user without a verification call
            await self.clear(SessionChangeReason.INITIALIZED)
            logger.info("session_initialized", status=self._status.value, reason="missing_user")
            return self.snapshot

        await self._verify(verifier, on_verification_failure, generation)
        logger.info("session_initialized", status=self._status.value)
        return self.snapshot

    async def _verify(
        self,
        verifier: Verifier,
        on_failure: Optional[VerificationFallback],
        generation: int,
    ) -> None:
        token = self._access_token
        try:
            user = await verifier()
        except NetworkError as exc:
            if generation != self._generation:
                return
            logger.warning("session_verification_unreachable", error=exc.message)
            if self._user is None and self._status is SessionStatus.INITIALIZING:
                await self.clear(SessionChangeReason.INITIALIZED)
            return
        except ServiceError as exc:
            if generation != self._generation:
                return
            logger.info("session_verification_failed", error_code=exc.error_code)
            if on_failure is None:
                await self.clear(SessionChangeReason.EXPIRED)
                return
            try:
                await on_failure(token)
            except SessionExpiredError:
                # the coordinator already cleared the session
                pass
            return

        if generation != self._generation:
            return
        if self._status is SessionStatus.INITIALIZING:
            self._user = dict(user)
            self._transition(SessionStatus.AUTHENTICATED, SessionChangeReason.INITIALIZED)
        elif self._status in (SessionStatus.AUTHENTICATED, SessionStatus.REFRESHING):
            self._user = dict(user)
            self._notify(self.snapshot, SessionChangeReason.USER_UPDATED)
        else:
            return
        await self._persist_current()

    async def set_authenticated(
        self,
        user: Mapping[str, Any],
        access_token: str,
        refresh_token: Optional[str] = None,
    ) -> SessionSnapshot:
        """Enter a new session after login or registration."""
        if not access_token:
            raise ValueError("access_token is required")
        if user is None:
            raise ValueError("user is required")
        self._check_transition(SessionStatus.AUTHENTICATED)
        self._generation += 1
        self._user = dict(user)
        self._access_token = access_token
        self._refresh_token = refresh_token
        self._last_activity = _utcnow()
        self._transition(SessionStatus.AUTHENTICATED, SessionChangeReason.LOGIN)
        logger.info("session_authenticated", user_id=self._user.get("_id"))
        await self._persist_current()
        return self.snapshot

    def begin_refresh(self) -> int:
        """Enter ``refreshing`` and return the generation the refresh belongs to."""
        self._transition(SessionStatus.REFRESHING, SessionChangeReason.REFRESH_STARTED)
        return self._generation

    async def complete_refresh(
        self,
        access_token: str,
        *,
        generation: int,
        user: Optional[Mapping[str, Any]] = None,
        refresh_token: Optional[str] = None,
    ) -> bool:
        """Apply a refresh result; returns False when it belongs to a finished session."""
        if generation != self._generation or self._status is not SessionStatus.REFRESHING:
            return False
        if user is None and self._user is None:
            raise InvalidTransitionError("refresh produced no user for an unverified session")
        self._access_token = access_token
        if refresh_token:
            self._refresh_token = refresh_token
        if user is not None:
            self._user = dict(user)
        self._last_activity = _utcnow()
        self._transition(SessionStatus.AUTHENTICATED, SessionChangeReason.REFRESHED)
        await self._persist_current()
        return True

    async def update_user_fields(self, partial: Mapping[str, Any]) -> SessionSnapshot:
        if self._user is None or self._status not in (
            SessionStatus.AUTHENTICATED,
            SessionStatus.REFRESHING,
        ):
            raise InvalidTransitionError(f"no user to update while {self._status.value}")
        self._user = {**self._user, **dict(partial)}
        self._notify(self.snapshot, SessionChangeReason.USER_UPDATED)
        await self._persist_current()
        return self.snapshot

    async def clear(self, reason: SessionChangeReason = SessionChangeReason.LOGGED_OUT) -> SessionSnapshot:
        """Forget the session and wipe the credential backend.

        Safe to call repeatedly; listeners only hear about real transitions.
        """
        changed = self._status is not SessionStatus.UNAUTHENTICATED
        if changed:
            self._generation += 1
            self._user = None
            self._access_token = None
            self._refresh_token = None
            self._last_activity = None
            self._transition(SessionStatus.UNAUTHENTICATED, reason)
            if reason is not SessionChangeReason.INITIALIZED:
                logger.info("session_cleared", reason=reason.value)
        await self._wipe()
        return self.snapshot

    def record_activity(self) -> None:
        if self._status in (SessionStatus.AUTHENTICATED, SessionStatus.REFRESHING):
            self._last_activity = _utcnow()

    async def wait_for_verification(self) -> None:
        task = self._verification_task
        if task is not None:
            await task

    async def aclose(self) -> None:
        task = self._verification_task
        self._verification_task = None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._store.close()

    # ------------------------------------------------------------------
    # internals

    def _check_transition(self, target: SessionStatus) -> None:
        if target not in _ALLOWED_TRANSITIONS[self._status]:
            raise InvalidTransitionError(
                f"cannot move session from {self._status.value} to {target.value}"
            )

    def _transition(self, target: SessionStatus, reason: SessionChangeReason) -> None:
        self._check_transition(target)
        previous = self.snapshot
        self._status = target
        self._notify(previous, reason)

    def _notify(self, previous: SessionSnapshot, reason: SessionChangeReason) -> None:
        change = SessionChange(previous=previous, snapshot=self.snapshot, reason=reason)
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as exc:
                logger.error(
                    "session_listener_failed",
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    reason=reason.value,
                    error=str(exc),
                )

    async def _persist_current(self) -> None:
        values = credential_values(
            access_token=self._access_token,
            refresh_token=self._refresh_token,
            user=self._user,
        )
        async with self._persist_lock:
            if not self._persistent:
                return
            try:
                await self._store.set_many(values)
            except StorageUnavailableError as exc:
                self._persistent = False
                logger.error(
                    "credential_persist_failed",
                    error=exc.message,
                    detail=exc.detail,
                    mode="memory_only",
                )

    async def _wipe(self) -> None:
        async with self._persist_lock:
            try:
                await self._store.clear()
            except StorageUnavailableError as exc:
                self._persistent = False
                logger.error(
                    "credential_persist_failed",
                    error=exc.message,
                    detail=exc.detail,
                    operation="clear",
                    mode="memory_only",
                )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


__all__ = [
    "SessionChange",
    "SessionChangeReason",
    "SessionSnapshot",
    "SessionStatus",
    "SessionStore",
]
