from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from tubesession.logging import get_logger

logger = get_logger(__name__)


class CredentialBackend(str, Enum):
    """Where the session store persists credentials."""

    MEMORY = "memory"
    FILE = "file"
    REDIS = "redis"


class RefreshTokenTransport(str, Enum):
    """How the refresh credential reaches ``/users/refresh-token``.

    - BODY: the stored refresh token is sent as ``{"refreshToken": ...}``
    - COOKIE: the platform set an http-only cookie at login; the client's
      cookie jar carries it and no local refresh token is required
    """

    BODY = "body"
    COOKIE = "cookie"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Client runtime settings."""

    api_base_url: str = env_field("http://localhost:8000/api/v1", "API_BASE_URL")
    request_timeout_seconds: float = env_field(
        30.0,
        "REQUEST_TIMEOUT_SECONDS",
        description="Transport timeout applied to every platform call",
    )
    credential_backend: CredentialBackend = env_field(
        CredentialBackend.FILE, "CREDENTIAL_BACKEND"
    )
    state_dir: str = env_field(
        str(Path.home() / ".tubesession"),
        "TUBESESSION_STATE_DIR",
        description="Directory holding the credential file for the file backend",
    )
    credential_encryption_key: str | None = env_field(
        None,
        "CREDENTIAL_ENCRYPTION_KEY",
        description="Key material used to encrypt stored tokens at rest",
    )
    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_namespace: str = env_field("tubesession", "REDIS_NAMESPACE")
    credential_ttl_minutes: int = env_field(
        10 * 24 * 60,
        "CREDENTIAL_TTL_MINUTES",
        description="Expiry applied to Redis-stored credentials; 0 disables expiry",
    )
    refresh_token_transport: RefreshTokenTransport = env_field(
        RefreshTokenTransport.BODY, "REFRESH_TOKEN_TRANSPORT"
    )
    verify_session_on_start: bool = env_field(
        True,
        "VERIFY_SESSION_ON_START",
        description="Verify a restored session against /users/current-user",
    )
    force_logout_on_auth_failure: bool = env_field(
        True,
        "FORCE_LOGOUT_ON_AUTH_FAILURE",
        description="Clear the session when a refreshed token is still rejected",
    )
    test_mode: bool = env_field(False, "TEST_MODE")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("api_base_url")
    @classmethod
    def _normalize_base_url(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("api_base_url must not be empty")
        return value.rstrip("/")

    @field_validator("request_timeout_seconds")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("request_timeout_seconds must be positive")
        return value

    @field_validator("credential_ttl_minutes")
    @classmethod
    def _non_negative_ttl(cls, value: int) -> int:
        if value < 0:
            raise ValueError("credential_ttl_minutes must be non-negative")
        return value

    @property
    def credential_file(self) -> Path:
        return Path(self.state_dir).expanduser() / "credentials.json"

    @property
    def cookie_refresh(self) -> bool:
        return self.refresh_token_transport == RefreshTokenTransport.COOKIE


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
        logger.debug(
            "settings_loaded",
            api_base_url=_settings_cache.api_base_url,
            credential_backend=_settings_cache.credential_backend.value,
        )
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
