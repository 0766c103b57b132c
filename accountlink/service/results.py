from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from accountlink.storage.models import Account


@dataclass(frozen=True)
class AccountSummary:
    """The only account view that leaves the service; never the full profile."""

    id: str
    email: str
    name: str
    origin: str
    password_set: bool

    @classmethod
    def from_account(cls, account: Account) -> "AccountSummary":
        return cls(
            id=account.id,
            email=account.email,
            name=account.name,
            origin=account.origin.value,
            password_set=account.password_set,
        )


@dataclass(frozen=True)
class AuthResult:
    user: AccountSummary
    must_link: bool
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None

    @property
    def token_type(self) -> Optional[str]:
        return "bearer" if self.access_token else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "must_link": self.must_link,
            "user": asdict(self.user),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AuthResult":
        user = data["user"]
        return cls(
            user=AccountSummary(
                id=str(user["id"]),
                email=str(user["email"]),
                name=str(user["name"]),
                origin=str(user["origin"]),
                password_set=bool(user["password_set"]),
            ),
            must_link=bool(data["must_link"]),
            access_token=data.get("access_token"),
            refresh_token=data.get("refresh_token"),
        )
