from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ResponseError

# Atomic GET + DEL for servers that reject GETDEL (Redis < 6.2)
_GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""


def _exchange_key(code: str) -> str:
    return f"auth:exchange:{code}"


def _oauth_state_key(state: str) -> str:
    return f"auth:oauth:{state}"


def _decode_oauth_state(cached: Optional[str]) -> Optional[Tuple[str, datetime]]:
    if cached is None:
        return None
    try:
        data = json.loads(cached)
    except (json.JSONDecodeError, TypeError):
        # Corrupted data - already deleted, return None
        return None
    expires_at = datetime.now(timezone.utc)
    expires_raw = data.get("expires_at")
    if isinstance(expires_raw, str):
        try:
            expires_at = datetime.fromisoformat(expires_raw)
        except (ValueError, TypeError):
            pass  # treat as already expired
    return data.get("provider"), expires_at


class RedisCache:
    """Thin Redis wrapper for one-time exchange codes and OAuth state."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Compute a TTL from an absolute expiry, clamped to at least 1 second."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def _getdel(self, key: str) -> Optional[str]:
        try:
            return await self.client.getdel(key)
        except ResponseError:
            return await self.client.eval(_GETDEL_SCRIPT, 1, key)

    async def set_exchange_entry(self, code: str, payload: str, ttl_seconds: int) -> None:
        await self.client.set(_exchange_key(code), payload, ex=ttl_seconds)

    async def pop_exchange_entry(self, code: str) -> Optional[str]:
        """Atomically fetch and delete an exchange entry.

        Two concurrent consumers of the same code can never both see the
        payload; the loser gets ``None``.
        """
        return await self._getdel(_exchange_key(code))

    async def set_oauth_state(
        self, state: str, provider: str, expires_at: datetime
    ) -> None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        payload = {"provider": provider, "expires_at": expires_at.isoformat()}
        await self.client.set(
            _oauth_state_key(state), json.dumps(payload), ex=self._ttl_seconds(expires_at)
        )

    async def pop_oauth_state(self, state: str) -> Optional[Tuple[str, datetime]]:
        """Atomically get and delete OAuth state to prevent replay.

        Returns:
            Tuple of (provider, expires_at) or None if not found
        """
        return _decode_oauth_state(await self._getdel(_oauth_state_key(state)))

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()


class SyncRedisCache:
    """Synchronous Redis wrapper for use in tests.

    Uses a synchronous Redis client internally to avoid event loop binding
    issues in pytest, but exposes async methods so it can be awaited
    uniformly like RedisCache.
    """

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self._sync_client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity."""
        self._sync_client.ping()

    def _getdel(self, key: str) -> Optional[str]:
        try:
            return self._sync_client.getdel(key)
        except ResponseError:
            return self._sync_client.eval(_GETDEL_SCRIPT, 1, key)

    async def set_exchange_entry(self, code: str, payload: str, ttl_seconds: int) -> None:
        self._sync_client.set(_exchange_key(code), payload, ex=ttl_seconds)

    async def pop_exchange_entry(self, code: str) -> Optional[str]:
        return self._getdel(_exchange_key(code))

    async def set_oauth_state(
        self, state: str, provider: str, expires_at: datetime
    ) -> None:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        payload = {"provider": provider, "expires_at": expires_at.isoformat()}
        self._sync_client.set(
            _oauth_state_key(state),
            json.dumps(payload),
            ex=RedisCache._ttl_seconds(expires_at),
        )

    async def pop_oauth_state(self, state: str) -> Optional[Tuple[str, datetime]]:
        return _decode_oauth_state(self._getdel(_oauth_state_key(state)))

    async def close(self) -> None:
        """Close Redis connection."""
        self._sync_client.close()
