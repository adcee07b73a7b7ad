from __future__ import annotations

from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from maak.logging import get_logger
from maak.storage.common import decode_value, encode_value
from maak.storage.errors import StoreUnavailable

logger = get_logger(__name__)


class RedisKVStore:
    """Redis-backed key-value store holding JSON documents."""

    DEFAULT_OPERATION_TIMEOUT = 5.0
    SCAN_BATCH_SIZE = 200

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        namespace: str = "maak:kv:",
    ):
        self.redis_url = redis_url
        self.namespace = namespace
        self._socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.namespace}{key}"

    def verify_connection(self) -> None:
        """Assert Redis connectivity with a short-lived sync client.

        The async client is bound to the event loop that first uses it, so the
        startup check uses a separate connection.
        """
        client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self._socket_timeout,
            socket_connect_timeout=self._socket_timeout,
        )
        try:
            client.ping()
        finally:
            client.close()

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self.client.get(self._key(key))
        except RedisError as exc:
            logger.error("kv_get_failed", key=key, error=str(exc))
            raise StoreUnavailable("kv read failed", {"key": key}) from exc
        return decode_value(raw)

    async def set(self, key: str, value: Any) -> None:
        payload = encode_value(value)
        try:
            await self.client.set(self._key(key), payload)
        except RedisError as exc:
            logger.error("kv_set_failed", key=key, error=str(exc))
            raise StoreUnavailable("kv write failed", {"key": key}) from exc

    async def delete(self, key: str) -> None:
        try:
            await self.client.delete(self._key(key))
        except RedisError as exc:
            logger.error("kv_delete_failed", key=key, error=str(exc))
            raise StoreUnavailable("kv delete failed", {"key": key}) from exc

    async def get_by_prefix(self, prefix: str) -> Dict[str, Any]:
        results: Dict[str, Any] = {}
        try:
            keys = [
                key
                async for key in self.client.scan_iter(
                    match=f"{self._key(prefix)}*", count=self.SCAN_BATCH_SIZE
                )
            ]
            if not keys:
                return results
            values = await self.client.mget(keys)
        except RedisError as exc:
            logger.error("kv_scan_failed", prefix=prefix, error=str(exc))
            raise StoreUnavailable("kv prefix scan failed", {"prefix": prefix}) from exc
        for full_key, raw in zip(keys, values):
            if raw is None:
                continue
            results[full_key[len(self.namespace):]] = decode_value(raw)
        return results

    async def close(self) -> None:
        await self.client.aclose()


__all__ = ["RedisKVStore"]
