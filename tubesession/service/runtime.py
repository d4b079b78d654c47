from __future__ import annotations

import functools
import threading
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import urlparse, urlunparse

import httpx

from tubesession.api.client import ApiClient
from tubesession.config import CredentialBackend, Settings, get_settings, reset_settings_cache
from tubesession.logging import get_logger
from tubesession.service.auth import AuthClient, refresh_access_token
from tubesession.service.errors import AuthenticationFailedError
from tubesession.service.gateway import RequestGateway
from tubesession.service.optimistic import (
    MutationRecord,
    MutationTarget,
    OptimisticMutationEngine,
    OptimisticState,
)
from tubesession.service.refresh import RefreshCoordinator
from tubesession.service.session import (
    SessionChange,
    SessionChangeReason,
    SessionListener,
    SessionSnapshot,
    SessionStore,
)
from tubesession.service.social import SocialActions
from tubesession.storage.common import CredentialStore
from tubesession.storage.file import FileCredentialStore
from tubesession.storage.memory import MemoryCredentialStore
from tubesession.storage.redis_cache import RedisCredentialStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


def build_credential_store(settings: Settings) -> CredentialStore:
    backend = settings.credential_backend
    if backend == CredentialBackend.MEMORY:
        return MemoryCredentialStore()
    if backend == CredentialBackend.REDIS:
        return RedisCredentialStore(
            settings.redis_url,
            namespace=settings.redis_namespace,
            ttl_seconds=settings.credential_ttl_minutes * 60,
        )
    return FileCredentialStore(
        settings.credential_file,
        encryption_key=settings.credential_encryption_key,
    )


class Runtime:
    """Holds the session services a UI embeds."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        credential_store: Optional[CredentialStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.credentials = credential_store or build_credential_store(self.settings)
        self.api = ApiClient(
            self.settings.api_base_url,
            timeout_seconds=self.settings.request_timeout_seconds,
            transport=transport,
        )
        self.session = SessionStore(self.credentials)
        self.coordinator = RefreshCoordinator(
            self.session,
            functools.partial(
                refresh_access_token, self.api, cookie_mode=self.settings.cookie_refresh
            ),
            requires_refresh_token=not self.settings.cookie_refresh,
        )
        self.gateway = RequestGateway(
            self.session,
            self.coordinator,
            on_authentication_failed=self._handle_authentication_failed,
        )
        self.state = OptimisticState()
        self.engine = OptimisticMutationEngine(self.state, self.gateway)
        self.auth = AuthClient(
            self.api,
            self.session,
            self.gateway,
            self.coordinator,
            verify_on_start=self.settings.verify_session_on_start,
        )
        self.social = SocialActions(self.api, self.gateway, self.engine)
        self.session.subscribe(self._on_session_change)

        logger.info(
            "runtime_initialized",
            api_base_url=self.settings.api_base_url,
            credential_backend=self.settings.credential_backend.value,
            redis_url=(
                _mask_url_password(self.settings.redis_url)
                if self.settings.credential_backend == CredentialBackend.REDIS
                else None
            ),
            refresh_token_transport=self.settings.refresh_token_transport.value,
        )

    def _on_session_change(self, change: SessionChange) -> None:
        if change.reason in (SessionChangeReason.LOGGED_OUT, SessionChangeReason.EXPIRED):
            self.engine.reset()

    async def _handle_authentication_failed(self, error: AuthenticationFailedError) -> None:
        logger.error(
            "authentication_anomaly",
            error_code=error.error_code,
            force_logout=self.settings.force_logout_on_auth_failure,
        )
        if self.settings.force_logout_on_auth_failure:
            await self.session.clear(SessionChangeReason.EXPIRED)

    # UI surface ---------------------------------------------------------

    def on_auth_state_change(self, listener: SessionListener) -> Callable[[], None]:
        return self.session.subscribe(listener)

    @property
    def snapshot(self) -> SessionSnapshot:
        return self.session.snapshot

    async def initialize(self) -> SessionSnapshot:
        return await self.auth.initialize()

    async def login(self, password: str, **identity: Optional[str]) -> SessionSnapshot:
        return await self.auth.login(password, **identity)

    async def logout(self) -> SessionSnapshot:
        return await self.auth.logout()

    async def authed_call(self, request_fn: Callable[[Optional[str]], Awaitable[Any]]) -> Any:
        return await self.gateway.authed_call(request_fn)

    async def apply_optimistic(
        self,
        target: MutationTarget,
        compute_next_state: Callable[[Any], Any],
        commit_fn: Callable[[Optional[str]], Awaitable[Any]],
        *,
        reconcile: Optional[Callable[[Any, Any], Any]] = None,
    ) -> MutationRecord:
        return await self.engine.apply_optimistic(
            target, compute_next_state, commit_fn, reconcile=reconcile
        )

    async def aclose(self) -> None:
        await self.coordinator.aclose()
        await self.session.aclose()
        await self.api.aclose()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the fast path skips the lock once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime


__all__ = ["Runtime", "build_credential_store", "get_runtime", "reset_runtime_for_tests"]
