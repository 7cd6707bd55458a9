from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis import Redis


class RedisCache:
    """Thin Redis wrapper for hot QR-session reads.

    Only statuses that can never change again are cached, so a stale entry
    is impossible; the store stays the source of truth.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0
    QR_STATUS_TTL_SECONDS = 600

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # A short-lived synchronous client keeps the async client off the
        # temporary startup event loop.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @staticmethod
    def _qr_key(session_id: str) -> str:
        return f"auth:qr_status:{session_id}"

    async def cache_qr_status(
        self, session_id: str, status: str, ttl_seconds: Optional[int] = None
    ) -> None:
        await self.client.set(
            self._qr_key(session_id), status, ex=ttl_seconds or self.QR_STATUS_TTL_SECONDS
        )

    async def get_qr_status(self, session_id: str) -> Optional[str]:
        return await self.client.get(self._qr_key(session_id))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
