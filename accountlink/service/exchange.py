from __future__ import annotations

import json
import secrets
import threading
import time
from typing import Callable, Dict, Optional, Tuple, Union

from accountlink.config import EXCHANGE_CODE_TTL_SECONDS
from accountlink.logging import get_logger
from accountlink.service.results import AuthResult
from accountlink.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)

EXCHANGE_CODE_BYTES = 32


class ExchangeCodeStore:
    """Parks an :class:`AuthResult` under a short-lived, single-use code.

    With a Redis cache the code lives in Redis and is consumed with GETDEL,
    so any instance can redeem it. Without one, entries live in this process
    only and are popped under a lock.
    """

    def __init__(
        self,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
        *,
        ttl_seconds: int = EXCHANGE_CODE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, Tuple[str, float]] = {}

    def _purge_expired_locked(self, now: float) -> None:
        for code in [c for c, (_, exp) in self._entries.items() if exp <= now]:
            self._entries.pop(code, None)

    async def store(self, result: AuthResult) -> str:
        code = secrets.token_urlsafe(EXCHANGE_CODE_BYTES)
        payload = json.dumps(result.to_dict(), separators=(",", ":"))
        if self.cache:
            await self.cache.set_exchange_entry(code, payload, self.ttl_seconds)
        else:
            now = self._clock()
            with self._lock:
                self._purge_expired_locked(now)
                self._entries[code] = (payload, now + self.ttl_seconds)
        logger.info("exchange_code_stored", code_prefix=code[:6], user_id=result.user.id)
        return code

    async def consume(self, code: str) -> Optional[AuthResult]:
        """Return the parked result once; ``None`` for unknown, used or expired codes."""
        if not code:
            return None
        if self.cache:
            payload = await self.cache.pop_exchange_entry(code)
        else:
            now = self._clock()
            with self._lock:
                entry = self._entries.pop(code, None)
            if entry is None:
                payload = None
            else:
                payload, expires_at = entry
                if expires_at <= now:
                    payload = None
        if payload is None:
            logger.info("exchange_code_rejected", code_prefix=code[:6])
            return None
        try:
            return AuthResult.from_dict(json.loads(payload))
        except (ValueError, TypeError, KeyError) as exc:
            logger.error("exchange_payload_corrupt", code_prefix=code[:6], error=str(exc))
            return None
