from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from accountlink.logging import get_logger
from accountlink.storage.errors import ConstraintViolation
from accountlink.storage.models import Account, AccountOrigin, RefreshToken, utcnow

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS account (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        origin TEXT NOT NULL CHECK (origin IN ('local', 'oauth')),
        password_hash TEXT,
        provider_uid TEXT UNIQUE,
        role TEXT NOT NULL DEFAULT 'user',
        profile JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT local_account_has_password
            CHECK (origin <> 'local' OR password_hash IS NOT NULL)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        token TEXT PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES account(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_account_idx ON refresh_token (account_id)",
    "CREATE INDEX IF NOT EXISTS refresh_token_expires_idx ON refresh_token (expires_at)",
)


class PostgresStore:
    """Postgres-backed credential store."""

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the ``account`` and ``refresh_token`` tables if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _account_from_row(row: Dict[str, Any]) -> Account:
        profile = row.get("profile") or {}
        if isinstance(profile, str):
            profile = json.loads(profile)
        return Account(
            id=str(row["id"]),
            email=row["email"],
            name=row["name"],
            origin=AccountOrigin(row["origin"]),
            password_hash=row.get("password_hash"),
            provider_uid=row.get("provider_uid"),
            role=row.get("role", "user"),
            profile=profile,
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _refresh_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            token=row["token"],
            account_id=str(row["account_id"]),
            expires_at=row["expires_at"],
            created_at=row.get("created_at") or utcnow(),
        )

    # accounts
    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE email = %s", (email,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_provider(self, provider_uid: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account WHERE provider_uid = %s", (provider_uid,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def account_exists(self, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM account WHERE email = %s", (email,)
            ).fetchone()
        return row is not None

    def save_account(self, account: Account) -> Account:
        account.updated_at = utcnow()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO account (id, email, name, origin, password_hash, provider_uid, role, profile, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE
                    SET email = EXCLUDED.email,
                        name = EXCLUDED.name,
                        password_hash = EXCLUDED.password_hash,
                        provider_uid = EXCLUDED.provider_uid,
                        role = EXCLUDED.role,
                        profile = EXCLUDED.profile,
                        updated_at = EXCLUDED.updated_at
                    """,
                    (
                        account.id,
                        account.email,
                        account.name,
                        account.origin.value,
                        account.password_hash,
                        account.provider_uid,
                        account.role,
                        json.dumps(account.profile) if account.profile else None,
                        account.created_at,
                        account.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            field = "provider_uid" if "provider_uid" in constraint else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return account

    def set_password_hash_if_unset(self, account_id: str, password_hash: str) -> int:
        """Attach a first password hash.

        The ``IS NULL`` guard makes concurrent callers race on the row lock;
        only one sees a rowcount of 1.
        """
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE account SET password_hash = %s, updated_at = %s
                WHERE id = %s AND password_hash IS NULL
                """,
                (password_hash, utcnow(), account_id),
            )
            return cur.rowcount

    # refresh tokens
    def save_refresh_token(self, token: RefreshToken) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (token, account_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (token.token, token.account_id, token.expires_at, token.created_at),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token collision", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account not found for refresh token", {"account_id": token.account_id}
            )

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def delete_refresh_token(self, token: str) -> int:
        """Delete one token by value and report how many rows went away.

        Concurrent callers racing on the same value see exactly one ``1``.
        """
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE token = %s", (token,))
            return cur.rowcount

    def delete_refresh_tokens_for_account(self, account_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE account_id = %s", (account_id,)
            )
            return cur.rowcount

    def delete_refresh_tokens_expired_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM refresh_token WHERE expires_at < %s", (cutoff,)
            )
            return cur.rowcount
