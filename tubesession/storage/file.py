from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Iterable, Mapping, Optional

from cryptography.fernet import Fernet, InvalidToken

from tubesession.logging import get_logger
from tubesession.storage.common import validate_keys
from tubesession.storage.errors import StorageUnavailableError
from tubesession.storage.models import ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY

logger = get_logger(__name__)

_ENCRYPTED_KEYS = (ACCESS_TOKEN_KEY, REFRESH_TOKEN_KEY)


class FileCredentialStore:
    """JSON credential file shared by every process of one user.

    Each write replaces the whole document through a temp file and rename so
    readers never see a partially written set of credentials. Tokens are
    encrypted with Fernet when key material is configured.
    """

    def __init__(self, path: Path | str, *, encryption_key: str | None = None) -> None:
        self.path = Path(path).expanduser()
        self._cipher = (
            Fernet(self._derive_cipher_key(encryption_key)) if encryption_key else None
        )
        self._lock = threading.Lock()

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _encrypt(self, key: str, value: str) -> str:
        if self._cipher is None or key not in _ENCRYPTED_KEYS:
            return value
        return self._cipher.encrypt(value.encode()).decode()

    def _decrypt(self, key: str, value: Optional[str]) -> Optional[str]:
        if value is None or self._cipher is None or key not in _ENCRYPTED_KEYS:
            return value
        try:
            return self._cipher.decrypt(value.encode()).decode()
        except InvalidToken:
            # Written with another key or tampered with; treat as signed out.
            logger.warning("credential_decrypt_failed", key=key, path=str(self.path))
            return None

    def _read_document(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            raw = self.path.read_text()
        except OSError as exc:
            raise StorageUnavailableError(
                "credential file unreadable", detail={"path": str(self.path)}
            ) from exc
        try:
            document = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError:
            logger.warning("credential_file_corrupt", path=str(self.path))
            return {}
        if not isinstance(document, dict):
            return {}
        return {k: v for k, v in document.items() if isinstance(v, str)}

    def _write_document(self, document: Dict[str, str]) -> None:
        tmp_path: str | None = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=".credentials_", suffix=".tmp"
            )
            try:
                os.write(fd, json.dumps(document, sort_keys=True).encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.replace(tmp_path, str(self.path))
        except OSError as exc:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    pass
            logger.error("credential_file_write_failed", error=str(exc), path=str(self.path))
            raise StorageUnavailableError(
                "credential file not writable", detail={"path": str(self.path)}
            ) from exc

    def _get_many_sync(self, keys: list[str]) -> Dict[str, Optional[str]]:
        with self._lock:
            document = self._read_document()
        return {key: self._decrypt(key, document.get(key)) for key in keys}

    def _set_many_sync(self, values: Mapping[str, Optional[str]]) -> None:
        with self._lock:
            document = self._read_document()
            for key, value in values.items():
                if value is None:
                    document.pop(key, None)
                else:
                    document[key] = self._encrypt(key, value)
            self._write_document(document)

    def _clear_sync(self) -> None:
        with self._lock:
            if not self.path.exists():
                return
            try:
                self.path.unlink()
            except FileNotFoundError:
                return
            except OSError as exc:
                raise StorageUnavailableError(
                    "credential file not removable", detail={"path": str(self.path)}
                ) from exc

    async def get(self, key: str) -> Optional[str]:
        values = await self.get_many([key])
        return values[key]

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Optional[str]]:
        keys = validate_keys(keys)
        return await asyncio.to_thread(self._get_many_sync, keys)

    async def set_many(self, values: Mapping[str, Optional[str]]) -> None:
        validate_keys(values.keys())
        await asyncio.to_thread(self._set_many_sync, dict(values))

    async def clear(self) -> None:
        await asyncio.to_thread(self._clear_sync)

    async def close(self) -> None:
        return None


__all__ = ["FileCredentialStore"]
