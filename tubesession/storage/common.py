"""Credential persistence port and helpers shared by every backend.

Backends store three string values under the keys in ``CREDENTIAL_KEYS``;
the user snapshot is kept as a JSON document so every backend can treat it
the same way browser storage would.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, Mapping, Optional, Protocol

from tubesession.logging import get_logger
from tubesession.storage.models import (
    ACCESS_TOKEN_KEY,
    CREDENTIAL_KEYS,
    REFRESH_TOKEN_KEY,
    USER_KEY,
    StoredCredentials,
)

logger = get_logger(__name__)


class CredentialStore(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Optional[str]]: ...

    async def set_many(self, values: Mapping[str, Optional[str]]) -> None:
        """Apply every entry as one unit; ``None`` deletes the key."""

    async def clear(self) -> None:
        """Remove all credential keys."""

    async def close(self) -> None: ...


def validate_keys(keys: Iterable[str]) -> list[str]:
    keys = list(keys)
    unknown = [key for key in keys if key not in CREDENTIAL_KEYS]
    if unknown:
        raise KeyError(f"unknown credential keys: {unknown}")
    return keys


def encode_user(user: Optional[Mapping[str, Any]]) -> Optional[str]:
    if user is None:
        return None
    return json.dumps(dict(user), sort_keys=True, default=str)


def decode_user(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parse a stored user document; returns None for missing or corrupt data."""
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


def credential_values(
    *,
    access_token: Optional[str] = None,
    refresh_token: Optional[str] = None,
    user: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Optional[str]]:
    """Build the full three-key write used by the session store."""
    return {
        ACCESS_TOKEN_KEY: access_token,
        REFRESH_TOKEN_KEY: refresh_token,
        USER_KEY: encode_user(user),
    }


async def load_credentials(store: CredentialStore) -> StoredCredentials:
    """Read all credential keys in one call.

    A corrupt user document is removed from the store and reported as absent.
    """
    raw = await store.get_many(CREDENTIAL_KEYS)
    user_raw = raw.get(USER_KEY)
    user = decode_user(user_raw)
    if user_raw and user is None:
        logger.warning("stored_user_corrupt", action="discarding_user_snapshot")
        await store.set_many({USER_KEY: None})
    return StoredCredentials(
        access_token=raw.get(ACCESS_TOKEN_KEY) or None,
        refresh_token=raw.get(REFRESH_TOKEN_KEY) or None,
        user=user,
    )


__all__ = [
    "CredentialStore",
    "credential_values",
    "decode_user",
    "encode_user",
    "load_credentials",
    "validate_keys",
]
