from __future__ import annotations

import threading
from typing import Dict, Iterable, Mapping, Optional

from tubesession.storage.common import validate_keys
from tubesession.storage.models import CREDENTIAL_KEYS


class MemoryCredentialStore:
    """Process-local credential storage for tests and ephemeral sessions."""

    def __init__(self, initial: Optional[Mapping[str, Optional[str]]] = None) -> None:
        self._values: Dict[str, str] = {}
        self._lock = threading.Lock()
        if initial:
            for key, value in initial.items():
                validate_keys([key])
                if value is not None:
                    self._values[key] = value

    async def get(self, key: str) -> Optional[str]:
        validate_keys([key])
        with self._lock:
            return self._values.get(key)

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Optional[str]]:
        keys = validate_keys(keys)
        with self._lock:
            return {key: self._values.get(key) for key in keys}

    async def set_many(self, values: Mapping[str, Optional[str]]) -> None:
        validate_keys(values.keys())
        with self._lock:
            for key, value in values.items():
                if value is None:
                    self._values.pop(key, None)
                else:
                    self._values[key] = value

    async def clear(self) -> None:
        with self._lock:
            for key in CREDENTIAL_KEYS:
                self._values.pop(key, None)

    async def close(self) -> None:
        return None

    def snapshot(self) -> Dict[str, str]:
        """Return a copy of the stored values."""
        with self._lock:
            return dict(self._values)


__all__ = ["MemoryCredentialStore"]
