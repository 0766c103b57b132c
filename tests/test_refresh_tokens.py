"""Tests for refresh token issue, rotation, replay detection and sweeping."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from accountlink.service.refresh_tokens import (
    InvalidRefreshTokenError,
    RefreshTokenManager,
    RefreshTokenReplayError,
)
from accountlink.storage.models import Account


class UtcClock:
    def __init__(self):
        self.now = datetime(2030, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return UtcClock()


@pytest.fixture
def account(memory_store):
    return memory_store.save_account(
        Account.new_oauth("owner@example.com", "Owner", "google-sub-1")
    )


@pytest.fixture
def manager(memory_store, clock):
    return RefreshTokenManager(memory_store, ttl_minutes=60, clock=clock)


def _live_tokens(store, account_id):
    return [t for t in store.refresh_tokens.values() if t.account_id == account_id]


def test_issue_persists_with_expiry(manager, memory_store, account, clock):
    value = manager.issue(account.id)

    record = memory_store.get_refresh_token(value)
    assert record.account_id == account.id
    assert record.expires_at == clock.now + timedelta(minutes=60)
    assert len(value) >= 43  # 32 bytes, url-safe base64


def test_double_issue_leaves_one_live_token(manager, memory_store, account):
    first = manager.issue(account.id)
    second = manager.issue(account.id)

    assert first != second
    assert memory_store.get_refresh_token(first) is None
    assert [t.token for t in _live_tokens(memory_store, account.id)] == [second]


def test_rotate_consumes_exactly_once(manager, memory_store, account):
    value = manager.issue(account.id)

    assert manager.rotate(value) == account.id
    with pytest.raises(InvalidRefreshTokenError):
        manager.rotate(value)
    assert _live_tokens(memory_store, account.id) == []


def test_rotate_unknown_value(manager):
    with pytest.raises(InvalidRefreshTokenError) as excinfo:
        manager.rotate("never-issued")
    assert not isinstance(excinfo.value, RefreshTokenReplayError)


def test_rotate_expired_deletes_row(manager, memory_store, account, clock):
    value = manager.issue(account.id)
    clock.now += timedelta(minutes=61)

    with pytest.raises(InvalidRefreshTokenError):
        manager.rotate(value)
    assert memory_store.get_refresh_token(value) is None


def test_lost_race_raises_replay(memory_store, account, clock):
    """A caller that finds the row but loses the delete sees a replay."""

    class RacingStore:
        def __init__(self, inner):
            self.inner = inner

        def __getattr__(self, name):
            return getattr(self.inner, name)

        def get_refresh_token(self, token):
            record = self.inner.get_refresh_token(token)
            # someone else consumes it between lookup and delete
            self.inner.delete_refresh_token(token)
            return record

    manager = RefreshTokenManager(RacingStore(memory_store), ttl_minutes=60, clock=clock)
    value = manager.issue(account.id)

    with pytest.raises(RefreshTokenReplayError):
        manager.rotate(value)


def test_concurrent_rotation_has_single_winner(manager, memory_store, account):
    value = manager.issue(account.id)
    barrier = threading.Barrier(8)
    winners = []
    losers = []

    def attempt():
        barrier.wait()
        try:
            winners.append(manager.rotate(value))
        except InvalidRefreshTokenError as exc:
            losers.append(exc)

    threads = [threading.Thread(target=attempt) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert winners == [account.id]
    assert len(losers) == 7
    assert _live_tokens(memory_store, account.id) == []


def test_revoke_all(manager, memory_store, account):
    manager.issue(account.id)

    assert manager.revoke_all(account.id) == 1
    assert manager.revoke_all(account.id) == 0
    assert _live_tokens(memory_store, account.id) == []


def test_sweep_removes_only_expired(manager, memory_store, account, clock):
    other = memory_store.save_account(
        Account.new_oauth("other@example.com", "Other", "google-sub-2")
    )
    stale = manager.issue(account.id)
    clock.now += timedelta(minutes=90)
    fresh = manager.issue(other.id)

    assert manager.sweep_expired() == 1
    assert memory_store.get_refresh_token(stale) is None
    assert memory_store.get_refresh_token(fresh) is not None
    assert manager.sweep_expired() == 0
