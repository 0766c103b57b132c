from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from accountlink.logging import get_logger
from accountlink.storage.models import RefreshToken, utcnow

logger = get_logger(__name__)

# 32 random bytes, url-safe encoded
REFRESH_TOKEN_BYTES = 32


class RefreshTokenStore(Protocol):
    def save_refresh_token(self, token: RefreshToken) -> None: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def delete_refresh_token(self, token: str) -> int: ...

    def delete_refresh_tokens_for_account(self, account_id: str) -> int: ...

    def delete_refresh_tokens_expired_before(self, cutoff: datetime) -> int: ...


class InvalidRefreshTokenError(Exception):
    """Refresh token is unknown, expired, or already used."""


class RefreshTokenReplayError(InvalidRefreshTokenError):
    """Token was valid a moment ago but another caller consumed it first."""


class RefreshTokenManager:
    """Opaque, single-use refresh tokens with at most one live token per account."""

    def __init__(
        self,
        store: RefreshTokenStore,
        ttl_minutes: int,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.ttl = timedelta(minutes=ttl_minutes)
        self._clock = clock

    def issue(self, account_id: str) -> str:
        revoked = self.store.delete_refresh_tokens_for_account(account_id)
        now = self._clock()
        value = secrets.token_urlsafe(REFRESH_TOKEN_BYTES)
        self.store.save_refresh_token(
            RefreshToken(
                token=value,
                account_id=account_id,
                expires_at=now + self.ttl,
                created_at=now,
            )
        )
        logger.debug("refresh_token_issued", account_id=account_id, revoked=revoked)
        return value

    def rotate(self, value: str) -> str:
        """Consume ``value`` and return the account it belonged to.

        The consume step is the store's delete-by-value; only the caller that
        observes a deleted row wins. Everyone else gets a replay error.
        """
        record = self.store.get_refresh_token(value)
        if record is None:
            logger.info("refresh_token_unknown")
            raise InvalidRefreshTokenError("unknown refresh token")
        if record.is_expired(self._clock()):
            self.store.delete_refresh_token(value)
            logger.info("refresh_token_expired", account_id=record.account_id)
            raise InvalidRefreshTokenError("refresh token expired")
        if self.store.delete_refresh_token(value) == 0:
            logger.warning("refresh_token_replay_detected", account_id=record.account_id)
            raise RefreshTokenReplayError("refresh token already used")
        return record.account_id

    def revoke_all(self, account_id: str) -> int:
        return self.store.delete_refresh_tokens_for_account(account_id)

    def sweep_expired(self) -> int:
        removed = self.store.delete_refresh_tokens_expired_before(self._clock())
        if removed:
            logger.info("refresh_tokens_swept", removed=removed)
        return removed
