from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from accountlink.config import get_settings, reset_settings_cache
from accountlink.logging import get_logger
from accountlink.service.auth import AuthService
from accountlink.service.exchange import ExchangeCodeStore
from accountlink.service.oauth import GoogleOAuthClient
from accountlink.service.passwords import Argon2PasswordHasher
from accountlink.service.refresh_tokens import RefreshTokenManager
from accountlink.service.tokens import TokenSigner
from accountlink.storage.memory import MemoryStore
from accountlink.storage.postgres import PostgresStore
from accountlink.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[Union[RedisCache, SyncRedisCache]] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to pytest's event loops
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if not self.cache:
            if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                raise RuntimeError(
                    "Redis is required for one-time exchange codes and OAuth state; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error
            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; exchange codes and "
                    "OAuth state are held in this process only."
                ),
                mode=fallback_mode,
            )

        self.signer = TokenSigner(self.settings)
        self.refresh_tokens = RefreshTokenManager(
            self.store, self.settings.refresh_token_ttl_minutes
        )
        self.exchange = ExchangeCodeStore(self.cache)
        self.auth = AuthService(
            self.store,
            self.settings,
            hasher=Argon2PasswordHasher(),
            signer=self.signer,
            refresh_tokens=self.refresh_tokens,
            exchange=self.exchange,
        )
        self.oauth = GoogleOAuthClient(self.settings, self.cache)
        logger.info("runtime_init_completed", redis=bool(self.cache))

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            if isinstance(runtime.cache, SyncRedisCache):
                asyncio.run(runtime.cache.close())
            else:
                try:
                    loop = asyncio.get_running_loop()
                    loop.create_task(runtime.cache.close())
                except RuntimeError:
                    asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
