"""Unit tests for the in-memory credential store and the account model."""

from datetime import timedelta

import pytest

from accountlink.storage.errors import ConstraintViolation
from accountlink.storage.models import (
    Account,
    AccountOrigin,
    AccountState,
    RefreshToken,
    utcnow,
)


class TestAccountModel:
    def test_local_account_requires_hash(self):
        with pytest.raises(ValueError):
            Account(id="a", email="a@example.com", name="A", origin=AccountOrigin.LOCAL)

    def test_password_set_tracks_hash(self):
        account = Account.new_oauth("a@example.com", "A", "sub")
        assert account.password_set is False
        assert account.state is AccountState.OAUTH_UNLINKED

        account.password_hash = "$argon2id$..."
        assert account.password_set is True
        assert account.state is AccountState.OAUTH_LINKED

    def test_origin_coerced_from_string(self):
        account = Account(
            id="a", email="a@example.com", name="A", origin="local", password_hash="h"
        )
        assert account.origin is AccountOrigin.LOCAL
        assert account.state is AccountState.LOCAL

    def test_new_local_drops_empty_profile_fields(self):
        account = Account.new_local(
            "a@example.com", "A", "h", profile={"city": "Oslo", "country": None}
        )
        assert account.profile == {"city": "Oslo"}


class TestMemoryStore:
    def test_save_and_lookup(self, memory_store):
        saved = memory_store.save_account(Account.new_oauth("a@example.com", "A", "sub-1"))

        assert memory_store.get_account(saved.id).email == "a@example.com"
        assert memory_store.get_account_by_email("a@example.com").id == saved.id
        assert memory_store.get_account_by_provider("sub-1").id == saved.id
        assert memory_store.account_exists("a@example.com")
        assert not memory_store.account_exists("b@example.com")
        assert memory_store.get_account_by_provider("sub-2") is None

    def test_returned_accounts_are_copies(self, memory_store):
        saved = memory_store.save_account(Account.new_oauth("a@example.com", "A", "sub-1"))
        fetched = memory_store.get_account(saved.id)
        fetched.password_hash = "tampered"

        assert memory_store.get_account(saved.id).password_set is False

    def test_duplicate_email_rejected(self, memory_store):
        memory_store.save_account(Account.new_oauth("a@example.com", "A", "sub-1"))

        with pytest.raises(ConstraintViolation) as excinfo:
            memory_store.save_account(Account.new_local("a@example.com", "B", "h"))
        assert excinfo.value.detail == {"field": "email"}

    def test_duplicate_provider_rejected(self, memory_store):
        memory_store.save_account(Account.new_oauth("a@example.com", "A", "sub-1"))

        with pytest.raises(ConstraintViolation):
            memory_store.save_account(Account.new_oauth("b@example.com", "B", "sub-1"))

    def test_update_in_place(self, memory_store):
        saved = memory_store.save_account(Account.new_oauth("a@example.com", "A", "sub-1"))
        saved.password_hash = "h"
        memory_store.save_account(saved)

        assert memory_store.get_account(saved.id).password_set is True
        assert len(memory_store.accounts) == 1

    def test_set_password_hash_only_once(self, memory_store):
        account = memory_store.save_account(Account.new_oauth("a@example.com", "A", "s"))

        assert memory_store.set_password_hash_if_unset(account.id, "hash-1") == 1
        assert memory_store.set_password_hash_if_unset(account.id, "hash-2") == 0
        assert memory_store.set_password_hash_if_unset("missing", "hash-3") == 0
        assert memory_store.get_account(account.id).password_hash == "hash-1"

    def test_refresh_token_requires_account(self, memory_store):
        with pytest.raises(ConstraintViolation):
            memory_store.save_refresh_token(RefreshToken.new("tok", "missing", 60))

    def test_delete_refresh_token_reports_rowcount(self, memory_store):
        account = memory_store.save_account(Account.new_oauth("a@example.com", "A", "s"))
        memory_store.save_refresh_token(RefreshToken.new("tok", account.id, 60))

        assert memory_store.delete_refresh_token("tok") == 1
        assert memory_store.delete_refresh_token("tok") == 0

    def test_delete_expired_before(self, memory_store):
        account = memory_store.save_account(Account.new_oauth("a@example.com", "A", "s"))
        memory_store.save_refresh_token(RefreshToken.new("old", account.id, 1))
        memory_store.save_refresh_token(RefreshToken.new("new", account.id, 120))

        removed = memory_store.delete_refresh_tokens_expired_before(
            utcnow() + timedelta(minutes=5)
        )

        assert removed == 1
        assert memory_store.get_refresh_token("new") is not None
