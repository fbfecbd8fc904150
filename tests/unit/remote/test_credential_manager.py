"""Tests for credential stores.

Exercises the encrypted file store on a real temporary directory: round
trips, file permissions, tamper detection and listing.
"""

import stat

import pytest

from ado_review.remote.credential_manager import (
    EncryptedFileCredentialStore,
    InMemoryCredentialStore,
)
from ado_review.remote.exceptions import CredentialDecryptionError
from ado_review.remote.models import AccountKey, AccountStatus


class TestInMemoryCredentialStore:
    def test_round_trip_and_delete(self, make_account):
        store = InMemoryCredentialStore()
        account = make_account()

        store.save(account)
        assert store.load(account.key) == account
        assert store.list_accounts() == [account]

        assert store.delete(account.key) is True
        assert store.load(account.key) is None
        assert store.delete(account.key) is False


class TestEncryptedFileCredentialStore:
    @pytest.fixture
    def store(self, tmp_path):
        return EncryptedFileCredentialStore(tmp_path / "accounts")

    def test_round_trip_yields_identical_record(self, store, make_account):
        account = make_account(refresh_token="refresh-secret")

        store.save(account)
        loaded = store.load(account.key)

        assert loaded == account
        assert loaded.model_dump() == account.model_dump()

    def test_round_trip_through_a_new_store_instance(self, tmp_path, make_account):
        account = make_account()
        EncryptedFileCredentialStore(tmp_path / "accounts").save(account)

        reopened = EncryptedFileCredentialStore(tmp_path / "accounts")
        assert reopened.load(account.key) == account

    def test_tokens_are_not_stored_in_plaintext(self, store, make_account, tmp_path):
        account = make_account(access_token="very-secret-access-token")
        store.save(account)

        for path in (tmp_path / "accounts").glob("*.cred"):
            assert b"very-secret-access-token" not in path.read_bytes()

    def test_files_and_directory_are_private(self, store, make_account, tmp_path):
        store.save(make_account())
        directory = tmp_path / "accounts"

        assert stat.S_IMODE(directory.stat().st_mode) == 0o700
        for path in directory.iterdir():
            assert stat.S_IMODE(path.stat().st_mode) == 0o600

    def test_missing_account_loads_none(self, store):
        assert store.load(AccountKey("contoso", "nobody@contoso.com")) is None

    def test_replaced_record_wins(self, store, make_account):
        account = make_account()
        store.save(account)
        invalid = account.model_copy(update={"status": AccountStatus.INVALID})
        store.save(invalid)

        assert store.load(account.key).status == AccountStatus.INVALID
        assert len(store.list_accounts()) == 1

    def test_list_accounts_returns_every_account(self, store, make_account):
        alice = make_account(identity="alice@contoso.com")
        bob = make_account(identity="bob@contoso.com")
        fabrikam = make_account(organization="fabrikam")
        for account in (alice, bob, fabrikam):
            store.save(account)

        keys = {a.key for a in store.list_accounts()}
        assert keys == {alice.key, bob.key, fabrikam.key}

    def test_file_moved_to_another_accounts_slot_is_rejected(
        self, store, make_account
    ):
        alice = make_account(identity="alice@contoso.com")
        bob = make_account(identity="bob@contoso.com")
        store.save(alice)
        store.save(bob)

        store._path_for(bob.key).write_bytes(store._path_for(alice.key).read_bytes())

        with pytest.raises(CredentialDecryptionError):
            store.load(bob.key)

    def test_corrupt_file_fails_to_load_and_is_skipped_when_listing(
        self, store, make_account
    ):
        alice = make_account(identity="alice@contoso.com")
        bob = make_account(identity="bob@contoso.com")
        store.save(alice)
        store.save(bob)

        path = store._path_for(bob.key)
        data = bytearray(path.read_bytes())
        data[-1] ^= 0xFF
        data[-20] ^= 0xFF
        path.write_bytes(bytes(data))

        with pytest.raises(CredentialDecryptionError):
            store.load(bob.key)
        assert [a.key for a in store.list_accounts()] == [alice.key]

    def test_delete_removes_the_file(self, store, make_account):
        account = make_account()
        store.save(account)

        assert store.delete(account.key) is True
        assert not store._path_for(account.key).exists()
        assert store.delete(account.key) is False

    def test_listing_an_unused_directory_is_empty(self, tmp_path):
        assert EncryptedFileCredentialStore(tmp_path / "missing").list_accounts() == []
