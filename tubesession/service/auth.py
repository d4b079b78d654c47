from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError

from tubesession.api import endpoints
from tubesession.api.client import ApiClient
from tubesession.api.schemas import AuthPayload, RefreshPayload
from tubesession.logging import get_logger
from tubesession.service.errors import (
    AuthorizationRejected,
    InvalidCredentialsError,
    InvalidTransitionError,
    ServerError,
    ServiceError,
    SessionExpiredError,
)
from tubesession.service.gateway import RequestGateway
from tubesession.service.refresh import RefreshCoordinator
from tubesession.service.session import (
    SessionChangeReason,
    SessionListener,
    SessionSnapshot,
    SessionStatus,
    SessionStore,
)

logger = get_logger(__name__)


async def refresh_access_token(
    api: ApiClient,
    refresh_token: Optional[str],
    *,
    cookie_mode: bool = False,
    include_user: bool = False,
) -> RefreshPayload:
    """Exchange the refresh credential for a new access token.

    In cookie mode the http-only cookie set at login travels in the client's
    cookie jar and no body is sent. ``include_user`` fetches the profile with
    the new token when the platform does not return one.
    """
    body = None if cookie_mode or not refresh_token else {"refreshToken": refresh_token}
    envelope = await api.post(endpoints.REFRESH_TOKEN, json=body)
    try:
        payload = RefreshPayload.model_validate(envelope.data or {})
    except PydanticValidationError as exc:
        raise ServerError("refresh response did not include an access token") from exc
    if include_user and payload.user is None:
        current = await api.get(endpoints.CURRENT_USER, token=payload.access_token)
        payload = payload.model_copy(update={"user": _user_from(current.data)})
    return payload


def _user_from(data: Any) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ServerError("platform returned no user profile")
    return data


class AuthClient:
    """Login, registration and account calls bound to one session store."""

    def __init__(
        self,
        api: ApiClient,
        session: SessionStore,
        gateway: RequestGateway,
        coordinator: RefreshCoordinator,
        *,
        verify_on_start: bool = True,
    ) -> None:
        self.api = api
        self.session = session
        self.gateway = gateway
        self.coordinator = coordinator
        self.verify_on_start = verify_on_start

    def on_auth_state_change(self, listener: SessionListener):
        return self.session.subscribe(listener)

    async def initialize(self) -> SessionSnapshot:
        return await self.session.initialize(
            verifier=self._fetch_current_user if self.verify_on_start else None,
            on_verification_failure=self.coordinator.ensure_fresh_token,
        )

    async def _fetch_current_user(self) -> Dict[str, Any]:
        # raw call: a 401 here is handled by the session's verification fallback
        envelope = await self.api.get(endpoints.CURRENT_USER, token=self.session.access_token)
        return _user_from(envelope.data)

    async def _enter_session(self, data: Any) -> SessionSnapshot:
        try:
            payload = AuthPayload.model_validate(data or {})
        except PydanticValidationError as exc:
            raise ServerError("authentication response was incomplete") from exc
        if self.session.status is SessionStatus.UNINITIALIZED:
            await self.session.clear(SessionChangeReason.INITIALIZED)
        return await self.session.set_authenticated(
            payload.user, payload.access_token, payload.refresh_token
        )

    async def login(
        self,
        password: str,
        *,
        email: Optional[str] = None,
        username: Optional[str] = None,
    ) -> SessionSnapshot:
        if not (email or username):
            raise ValueError("username or email is required")
        body = {"password": password}
        if email:
            body["email"] = email
        if username:
            body["username"] = username
        try:
            envelope = await self.api.post(endpoints.LOGIN, json=body)
        except AuthorizationRejected as exc:
            logger.info("login_rejected", username=username, email=email)
            raise InvalidCredentialsError(exc.message or "invalid credentials") from exc
        snapshot = await self._enter_session(envelope.data)
        logger.info("login_succeeded", user_id=(snapshot.user or {}).get("_id"))
        return snapshot

    async def register(
        self,
        fields: Mapping[str, Any],
        *,
        avatar: Any = None,
        cover_image: Any = None,
    ) -> SessionSnapshot:
        """Create an account (multipart form) and sign in with it."""
        data = {
            key: str(value)
            for key, value in fields.items()
            if key not in ("avatar", "coverImage") and value is not None
        }
        files = {}
        if avatar is not None:
            files["avatar"] = avatar
        if cover_image is not None:
            files["coverImage"] = cover_image
        try:
            envelope = await self.api.post(endpoints.REGISTER, data=data, files=files or None)
        except AuthorizationRejected as exc:
            raise InvalidCredentialsError(exc.message or "registration rejected") from exc
        snapshot = await self._enter_session(envelope.data)
        logger.info("registration_succeeded", user_id=(snapshot.user or {}).get("_id"))
        return snapshot

    async def logout(self) -> SessionSnapshot:
        """Sign out locally, then tell the platform on a best-effort basis."""
        token = self.session.access_token
        snapshot = await self.session.clear(SessionChangeReason.LOGGED_OUT)
        if token:
            try:
                await self.api.post(endpoints.LOGOUT, token=token)
            except ServiceError as exc:
                logger.warning("logout_request_failed", error_code=exc.error_code, error=exc.message)
        return snapshot

    async def current_user(self) -> Dict[str, Any]:
        envelope = await self.gateway.authed_call(
            lambda token: self.api.get(endpoints.CURRENT_USER, token=token)
        )
        user = _user_from(envelope.data)
        if self.session.status in (SessionStatus.AUTHENTICATED, SessionStatus.REFRESHING):
            await self.session.update_user_fields(user)
        return user

    async def change_password(self, old_password: str, new_password: str) -> None:
        if not new_password:
            raise ValueError("new password must not be empty")
        await self.gateway.authed_call(
            lambda token: self.api.post(
                endpoints.CHANGE_PASSWORD,
                token=token,
                json={"oldPassword": old_password, "newPassword": new_password},
            )
        )
        logger.info("password_changed")

    async def update_account(self, **fields: Any) -> Dict[str, Any]:
        body = {key: value for key, value in fields.items() if value is not None}
        if not body:
            raise ValueError("no account fields to update")
        envelope = await self.gateway.authed_call(
            lambda token: self.api.patch(endpoints.UPDATE_ACCOUNT, token=token, json=body)
        )
        updated = envelope.data if isinstance(envelope.data, dict) else body
        try:
            snapshot = await self.session.update_user_fields(updated)
        except InvalidTransitionError as exc:
            raise SessionExpiredError("session ended before the account update was applied") from exc
        return snapshot.user or {}


__all__ = ["AuthClient", "refresh_access_token"]
