from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional, Protocol

from accountlink.config import Settings
from accountlink.logging import get_logger
from accountlink.service.errors import (
    AccountExistsError,
    CodeExpiredOrInvalidError,
    InvalidCredentialsError,
    PasswordAlreadySetError,
    PasswordMismatchError,
)
from accountlink.service.exchange import ExchangeCodeStore
from accountlink.service.oauth import OAuthIdentity
from accountlink.service.passwords import Argon2PasswordHasher, PasswordHasher
from accountlink.service.refresh_tokens import (
    InvalidRefreshTokenError,
    RefreshTokenManager,
)
from accountlink.service.results import AccountSummary, AuthResult
from accountlink.service.tokens import TokenError, TokenSigner
from accountlink.storage.errors import ConstraintViolation
from accountlink.storage.models import Account, RefreshToken

logger = get_logger(__name__)


class CredentialStore(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_provider(self, provider_uid: str) -> Optional[Account]: ...

    def account_exists(self, email: str) -> bool: ...

    def save_account(self, account: Account) -> Account: ...

    def set_password_hash_if_unset(self, account_id: str, password_hash: str) -> int: ...

    def save_refresh_token(self, token: RefreshToken) -> None: ...

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def delete_refresh_token(self, token: str) -> int: ...

    def delete_refresh_tokens_for_account(self, account_id: str) -> int: ...

    def delete_refresh_tokens_expired_before(self, cutoff: datetime) -> int: ...


@dataclass
class AuthContext:
    user_id: str
    role: str


def normalize_email(email: str) -> str:
    return email.strip().lower()


class AuthService:
    """Registration, login, account linking and token lifecycle."""

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
        signer: Optional[TokenSigner] = None,
        refresh_tokens: Optional[RefreshTokenManager] = None,
        exchange: Optional[ExchangeCodeStore] = None,
    ) -> None:
        self.store: CredentialStore = store
        self.settings = settings
        self.hasher: PasswordHasher = hasher or Argon2PasswordHasher()
        self.signer = signer or TokenSigner(settings)
        self.refresh_tokens = refresh_tokens or RefreshTokenManager(
            store, settings.refresh_token_ttl_minutes
        )
        self.exchange = exchange or ExchangeCodeStore()
        self.logger = logger

    def _issue(self, account: Account) -> AuthResult:
        # RefreshTokenManager.issue revokes prior tokens before minting
        refresh_token = self.refresh_tokens.issue(account.id)
        access_token = self.signer.issue(account.id, account.role)
        return AuthResult(
            user=AccountSummary.from_account(account),
            must_link=not account.password_set,
            access_token=access_token,
            refresh_token=refresh_token,
        )

    def register(
        self,
        email: str,
        password: str,
        name: str,
        profile: Optional[Dict[str, str]] = None,
    ) -> AuthResult:
        email = normalize_email(email)
        if self.store.account_exists(email):
            self.logger.info("register_conflict")
            raise AccountExistsError()
        account = Account.new_local(
            email=email,
            name=name.strip(),
            password_hash=self.hasher.hash(password),
            profile=profile,
        )
        try:
            account = self.store.save_account(account)
        except ConstraintViolation:
            self.logger.info("register_conflict", raced=True)
            raise AccountExistsError()
        self.logger.info("account_registered", user_id=account.id)
        return self._issue(account)

    def login(self, email: str, password: str) -> AuthResult:
        account = self.store.get_account_by_email(normalize_email(email))
        if not account:
            self.logger.info("login_failed", reason="unknown_account")
            raise InvalidCredentialsError()
        if not account.password_set:
            # OAuth-only account: nothing to verify against, nothing is issued
            self.logger.info("login_must_link", user_id=account.id)
            return AuthResult(user=AccountSummary.from_account(account), must_link=True)
        if not self.hasher.verify(account.password_hash, password):
            self.logger.info("login_failed", reason="bad_password", user_id=account.id)
            raise InvalidCredentialsError()
        self.logger.info("login_succeeded", user_id=account.id)
        return self._issue(account)

    def complete_oauth_login(self, identity: OAuthIdentity) -> AuthResult:
        """Find or create the account behind a provider-verified identity.

        Lookup is by provider subject first, then by email. An existing
        account found by email gets the subject attached if it has none;
        its origin and password are never touched.
        """
        if not identity.email or not identity.provider_uid:
            raise InvalidCredentialsError()
        email = normalize_email(identity.email)

        account = self.store.get_account_by_provider(identity.provider_uid)
        if account is None:
            account = self.store.get_account_by_email(email)
            if account is not None and not account.provider_uid:
                account.provider_uid = identity.provider_uid
                account = self.store.save_account(account)
                self.logger.info("oauth_subject_linked", user_id=account.id)
        if account is None:
            account = Account.new_oauth(
                email=email,
                name=(identity.name or "").strip() or email,
                provider_uid=identity.provider_uid,
            )
            try:
                account = self.store.save_account(account)
            except ConstraintViolation:
                # a concurrent callback created it first
                account = self.store.get_account_by_provider(
                    identity.provider_uid
                ) or self.store.get_account_by_email(email)
                if account is None:
                    raise
            else:
                self.logger.info("oauth_account_created", user_id=account.id)
        return self._issue(account)

    async def complete_oauth_redirect(self, identity: OAuthIdentity) -> str:
        """Run the OAuth login and park the result under a one-time code."""
        result = await asyncio.to_thread(self.complete_oauth_login, identity)
        return await self.exchange.store(result)

    def set_password(
        self, account_id: str, password: str, confirm_password: str
    ) -> AuthResult:
        if password != confirm_password:
            raise PasswordMismatchError()
        account = self.store.get_account(account_id)
        if not account:
            raise InvalidCredentialsError()
        if account.password_set:
            self.logger.info("set_password_rejected", user_id=account.id)
            raise PasswordAlreadySetError()
        # conditional write: a concurrent caller may have linked in the meantime
        if not self.store.set_password_hash_if_unset(
            account.id, self.hasher.hash(password)
        ):
            self.logger.info("set_password_rejected", user_id=account.id, raced=True)
            raise PasswordAlreadySetError()
        account = self.store.get_account(account.id)
        if not account:
            raise InvalidCredentialsError()
        self.logger.info("account_linked", user_id=account.id)
        return self._issue(account)

    def refresh(self, refresh_token: str) -> AuthResult:
        try:
            account_id = self.refresh_tokens.rotate(refresh_token)
        except InvalidRefreshTokenError:
            raise InvalidCredentialsError()
        account = self.store.get_account(account_id)
        if not account:
            self.logger.warning("refresh_account_missing", user_id=account_id)
            raise InvalidCredentialsError()
        return self._issue(account)

    async def exchange_oauth_code(self, code: str) -> AuthResult:
        result = await self.exchange.consume(code)
        if result is None:
            raise CodeExpiredOrInvalidError()
        return result

    def logout(self, account_id: str) -> None:
        revoked = self.refresh_tokens.revoke_all(account_id)
        self.logger.info("logout", user_id=account_id, revoked=revoked)

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve a ``Bearer`` header to the caller's identity."""
        if not authorization:
            raise InvalidCredentialsError()
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise InvalidCredentialsError()
        try:
            claims = self.signer.verify(token.strip())
        except TokenError as exc:
            self.logger.info("access_token_rejected", reason=type(exc).__name__)
            raise InvalidCredentialsError()
        return AuthContext(user_id=claims.account_id, role=claims.role)
