from __future__ import annotations

import copy
import threading
from datetime import datetime
from typing import Dict, Optional

from accountlink.logging import get_logger
from accountlink.storage.errors import ConstraintViolation
from accountlink.storage.models import Account, RefreshToken, utcnow


class MemoryStore:
    """In-process credential store for tests and single-instance dev runs."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # RLock for all data operations; pops under this lock are the
        # atomic consume step for refresh rotation
        self._data_lock = threading.RLock()

    # accounts
    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return copy.deepcopy(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if a.email == email), None
            )
            return copy.deepcopy(account) if account else None

    def get_account_by_provider(self, provider_uid: str) -> Optional[Account]:
        with self._data_lock:
            account = next(
                (
                    a
                    for a in self.accounts.values()
                    if a.provider_uid and a.provider_uid == provider_uid
                ),
                None,
            )
            return copy.deepcopy(account) if account else None

    def account_exists(self, email: str) -> bool:
        with self._data_lock:
            return any(a.email == email for a in self.accounts.values())

    def save_account(self, account: Account) -> Account:
        """Insert or update ``account``; email and provider id stay unique."""
        with self._data_lock:
            for existing in self.accounts.values():
                if existing.id == account.id:
                    continue
                if existing.email == account.email:
                    raise ConstraintViolation(
                        "email already exists", {"field": "email"}
                    )
                if account.provider_uid and existing.provider_uid == account.provider_uid:
                    raise ConstraintViolation(
                        "provider subject already linked", {"field": "provider_uid"}
                    )
            if account.id in self.accounts:
                account.updated_at = utcnow()
            self.accounts[account.id] = copy.deepcopy(account)
            return copy.deepcopy(account)

    def set_password_hash_if_unset(self, account_id: str, password_hash: str) -> int:
        """Attach a first password hash; 0 if the account has one already."""
        with self._data_lock:
            account = self.accounts.get(account_id)
            if account is None or account.password_hash:
                return 0
            account.password_hash = password_hash
            account.updated_at = utcnow()
            return 1

    # refresh tokens
    def save_refresh_token(self, token: RefreshToken) -> None:
        with self._data_lock:
            if token.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account not found for refresh token",
                    {"account_id": token.account_id},
                )
            if token.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token collision", {"field": "token"})
            self.refresh_tokens[token.token] = copy.copy(token)

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            return copy.copy(record) if record else None

    def delete_refresh_token(self, token: str) -> int:
        with self._data_lock:
            return 1 if self.refresh_tokens.pop(token, None) is not None else 0

    def delete_refresh_tokens_for_account(self, account_id: str) -> int:
        with self._data_lock:
            doomed = [
                value
                for value, record in self.refresh_tokens.items()
                if record.account_id == account_id
            ]
            for value in doomed:
                self.refresh_tokens.pop(value, None)
            return len(doomed)

    def delete_refresh_tokens_expired_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            doomed = [
                value
                for value, record in self.refresh_tokens.items()
                if record.expires_at < cutoff
            ]
            for value in doomed:
                self.refresh_tokens.pop(value, None)
            return len(doomed)

    def verify_connection(self) -> None:
        return None

    def close(self) -> None:
        return None
