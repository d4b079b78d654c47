from __future__ import annotations

from typing import Any, Dict, Iterable, Mapping, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from tubesession.storage.common import validate_keys
from tubesession.storage.errors import StorageUnavailableError
from tubesession.storage.models import CREDENTIAL_KEYS


class RedisCredentialStore:
    """Credentials kept in Redis so several client processes share one session."""

    def __init__(
        self,
        redis_url: str,
        *,
        namespace: str = "tubesession",
        ttl_seconds: int | None = None,
        socket_timeout: float = 5.0,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.namespace = namespace
        self.ttl_seconds = ttl_seconds or None
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.namespace}:credentials:{key}"

    async def get(self, key: str) -> Optional[str]:
        validate_keys([key])
        try:
            return await self.client.get(self._key(key))
        except RedisError as exc:
            raise StorageUnavailableError("redis read failed", detail={"key": key}) from exc

    async def get_many(self, keys: Iterable[str]) -> Dict[str, Optional[str]]:
        keys = validate_keys(keys)
        if not keys:
            return {}
        try:
            values = await self.client.mget([self._key(key) for key in keys])
        except RedisError as exc:
            raise StorageUnavailableError("redis read failed") from exc
        return dict(zip(keys, values))

    async def set_many(self, values: Mapping[str, Optional[str]]) -> None:
        validate_keys(values.keys())
        # MULTI/EXEC so other processes never observe a mixed credential set
        pipe = self.client.pipeline(transaction=True)
        for key, value in values.items():
            if value is None:
                pipe.delete(self._key(key))
            else:
                pipe.set(self._key(key), value, ex=self.ttl_seconds)
        try:
            await pipe.execute()
        except RedisError as exc:
            raise StorageUnavailableError("redis write failed") from exc

    async def clear(self) -> None:
        try:
            await self.client.delete(*[self._key(key) for key in CREDENTIAL_KEYS])
        except RedisError as exc:
            raise StorageUnavailableError("redis clear failed") from exc

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


__all__ = ["RedisCredentialStore"]
