from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

ACCESS_TOKEN_KEY = "accessToken"
REFRESH_TOKEN_KEY = "refreshToken"
USER_KEY = "user"

CREDENTIAL_KEYS = (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY, USER_KEY)


@dataclass(frozen=True)
class StoredCredentials:
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    user: Optional[Dict[str, Any]] = None

    @property
    def is_empty(self) -> bool:
        return self.access_token is None and self.refresh_token is None and self.user is None
