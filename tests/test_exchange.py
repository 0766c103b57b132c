"""One-time OAuth exchange code store."""

import asyncio

from accountlink.config import EXCHANGE_CODE_TTL_SECONDS
from accountlink.service.exchange import ExchangeCodeStore
from accountlink.service.results import AccountSummary, AuthResult


def _result(must_link=True):
    return AuthResult(
        user=AccountSummary(
            id="acct-1",
            email="pat@example.com",
            name="Pat",
            origin="oauth",
            password_set=not must_link,
        ),
        must_link=must_link,
        access_token="access",
        refresh_token="refresh",
    )


class FakeCache:
    """Stands in for RedisCache with GETDEL semantics."""

    def __init__(self):
        self.values = {}
        self.ttls = {}

    async def set_exchange_entry(self, code, payload, ttl_seconds):
        self.values[code] = payload
        self.ttls[code] = ttl_seconds

    async def pop_exchange_entry(self, code):
        return self.values.pop(code, None)


def test_ttl_is_thirty_seconds():
    assert EXCHANGE_CODE_TTL_SECONDS == 30
    assert ExchangeCodeStore().ttl_seconds == 30


async def test_consume_returns_result_once(exchange_store):
    code = await exchange_store.store(_result())

    assert await exchange_store.consume(code) == _result()
    assert await exchange_store.consume(code) is None


async def test_codes_are_distinct_and_opaque(exchange_store):
    first = await exchange_store.store(_result())
    second = await exchange_store.store(_result())

    assert first != second
    assert "acct-1" not in first
    assert len(first) >= 43


async def test_expires_after_thirty_seconds(exchange_store, exchange_clock):
    code = await exchange_store.store(_result())
    exchange_clock.advance(30)

    assert await exchange_store.consume(code) is None


async def test_valid_just_before_expiry(exchange_store, exchange_clock):
    code = await exchange_store.store(_result())
    exchange_clock.advance(29.9)

    assert await exchange_store.consume(code) is not None


async def test_unknown_and_empty_codes(exchange_store):
    assert await exchange_store.consume("does-not-exist") is None
    assert await exchange_store.consume("") is None


async def test_store_purges_expired_entries(exchange_store, exchange_clock):
    await exchange_store.store(_result())
    exchange_clock.advance(31)
    await exchange_store.store(_result())

    assert len(exchange_store._entries) == 1


async def test_concurrent_consumers_single_winner(exchange_store):
    code = await exchange_store.store(_result())

    results = await asyncio.gather(*(exchange_store.consume(code) for _ in range(5)))

    assert sum(r is not None for r in results) == 1


async def test_redis_backend_uses_ttl_and_getdel():
    cache = FakeCache()
    store = ExchangeCodeStore(cache)
    code = await store.store(_result(must_link=False))

    assert cache.ttls[code] == 30
    restored = await store.consume(code)
    assert restored.user.password_set is True
    assert restored.token_type == "bearer"
    assert await store.consume(code) is None


async def test_corrupt_payload_returns_none():
    cache = FakeCache()
    cache.values["bad"] = "{not json"
    cache.values["partial"] = '{"must_link": true}'
    store = ExchangeCodeStore(cache)

    assert await store.consume("bad") is None
    assert await store.consume("partial") is None
