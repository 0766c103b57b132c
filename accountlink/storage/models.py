from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccountOrigin(str, enum.Enum):
    LOCAL = "local"
    OAUTH = "oauth"


class AccountState(str, enum.Enum):
    """Where an account sits in the linking lifecycle.

    ``LOCAL`` and ``OAUTH_LINKED`` are terminal. ``OAUTH_UNLINKED`` moves to
    ``OAUTH_LINKED`` exactly once, when the user sets a first password.
    """

    LOCAL = "local"
    OAUTH_UNLINKED = "oauth_unlinked"
    OAUTH_LINKED = "oauth_linked"


PROFILE_FIELDS = (
    "phone_country_code",
    "phone_number",
    "address_line1",
    "city",
    "state",
    "zip_code",
    "country",
)


@dataclass
class Account:
    id: str
    email: str
    name: str
    origin: AccountOrigin
    password_hash: Optional[str] = None
    provider_uid: Optional[str] = None
    role: str = "user"
    profile: Dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        if not isinstance(self.origin, AccountOrigin):
            self.origin = AccountOrigin(self.origin)
        if self.origin is AccountOrigin.LOCAL and not self.password_hash:
            raise ValueError("local accounts require a password hash")

    @property
    def password_set(self) -> bool:
        return bool(self.password_hash)

    @property
    def state(self) -> AccountState:
        if self.origin is AccountOrigin.LOCAL:
            return AccountState.LOCAL
        if self.password_set:
            return AccountState.OAUTH_LINKED
        return AccountState.OAUTH_UNLINKED

    @classmethod
    def new_local(
        cls,
        email: str,
        name: str,
        password_hash: str,
        *,
        profile: Optional[Dict[str, str]] = None,
    ) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            name=name,
            origin=AccountOrigin.LOCAL,
            password_hash=password_hash,
            profile={k: v for k, v in (profile or {}).items() if v is not None},
        )

    @classmethod
    def new_oauth(cls, email: str, name: str, provider_uid: str) -> "Account":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            name=name,
            origin=AccountOrigin.OAUTH,
            provider_uid=provider_uid,
        )


@dataclass
class RefreshToken:
    token: str
    account_id: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, token: str, account_id: str, ttl_minutes: int) -> "RefreshToken":
        now = utcnow()
        return cls(
            token=token,
            account_id=account_id,
            expires_at=now + timedelta(minutes=ttl_minutes),
            created_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())
