"""Redis wrappers with the client stubbed out."""

from redis.exceptions import ResponseError

from accountlink.storage.redis_cache import _GETDEL_SCRIPT, RedisCache, SyncRedisCache


class OldServerClient:
    """Answers like a Redis server that predates GETDEL."""

    def __init__(self, values):
        self.values = values
        self.evals = []

    def getdel(self, key):
        raise ResponseError("ERR unknown command 'GETDEL'")

    def eval(self, script, numkeys, key):
        self.evals.append((script, numkeys, key))
        return self.values.pop(key, None)


class AsyncOldServerClient(OldServerClient):
    async def getdel(self, key):
        return super().getdel(key)

    async def eval(self, script, numkeys, key):
        return super().eval(script, numkeys, key)


def test_sync_pop_falls_back_to_script():
    cache = SyncRedisCache("redis://localhost:6379/0")
    client = OldServerClient({"auth:exchange:code-1": "payload"})
    cache._sync_client = client

    assert cache._getdel("auth:exchange:code-1") == "payload"
    assert cache._getdel("auth:exchange:code-1") is None
    assert client.evals[0] == (_GETDEL_SCRIPT, 1, "auth:exchange:code-1")


async def test_async_pop_falls_back_to_script():
    cache = RedisCache("redis://localhost:6379/0")
    cache.client = AsyncOldServerClient({"auth:exchange:code-1": "payload"})

    assert await cache.pop_exchange_entry("code-1") == "payload"
    assert await cache.pop_exchange_entry("code-1") is None
