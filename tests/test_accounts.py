"""Tests for registry/accounts.py -- AccountRegistry."""

from contextlib import asynccontextmanager
from datetime import datetime, timezone

import pytest

from docvault_sync.credentials import CredentialContext, MemoryVault
from docvault_sync.errors import DuplicateAccount
from docvault_sync.registry.accounts import AccountRegistry
from docvault_sync.registry.store import MemoryRecordStore


@pytest.fixture
def vault():
    return MemoryVault()


@pytest.fixture
def registry(vault):
    return AccountRegistry(MemoryRecordStore(), CredentialContext(vault))


class TestAddAccount:
    def test_first_account_is_active(self, registry):
        first = registry.add_account("Work", "https://docs.example.com", "a@example.com")
        second = registry.add_account("Home", "https://docs.example.com", "b@example.com")

        assert first.is_active
        assert not second.is_active
        assert registry.active.id == first.id

    def test_normalizes_url_and_email(self, registry):
        account = registry.add_account(
            "Work", " HTTPS://Docs.Example.com/ ", "User@Example.COM "
        )
        assert account.server_url == "https://docs.example.com"
        assert account.email == "user@example.com"
        assert account.key == "https://docs.example.com_user@example.com"

    def test_blank_name_falls_back_to_email(self, registry):
        account = registry.add_account("  ", "https://docs.example.com", "a@example.com")
        assert account.display_name == "a@example.com"

    def test_duplicate_rejected(self, registry):
        registry.add_account("Work", "https://docs.example.com", "a@example.com")
        with pytest.raises(DuplicateAccount):
            registry.add_account("Again", "https://docs.example.com/", "A@example.com")

    def test_same_email_on_other_server_allowed(self, registry):
        registry.add_account("Work", "https://one.example.com", "a@example.com")
        registry.add_account("Work", "https://two.example.com", "a@example.com")
        assert len(registry.list_accounts()) == 2

    @pytest.mark.parametrize(
        "url,email",
        [
            ("ftp://docs.example.com", "a@example.com"),
            ("", "a@example.com"),
            ("https://docs.example.com", "not-an-email"),
        ],
    )
    def test_invalid_input_rejected(self, registry, url, email):
        with pytest.raises(ValueError):
            registry.add_account("Work", url, email)
        assert registry.list_accounts() == []

    def test_token_is_stored(self, registry, vault):
        account = registry.add_account(
            "Work", "https://docs.example.com", "a@example.com", token="secret"
        )
        assert vault.get_token(account.key) == "secret"

    def test_records_survive_reload(self, vault):
        store = MemoryRecordStore()
        first = AccountRegistry(store, CredentialContext(vault))
        account = first.add_account("Work", "https://docs.example.com", "a@example.com")

        reloaded = AccountRegistry(store, CredentialContext(vault))

        assert reloaded.get(account.id) == account
        assert reloaded.active.id == account.id


class TestSwitchAndRemove:
    async def test_switch_active(self, registry):
        first = registry.add_account("A", "https://docs.example.com", "a@example.com")
        second = registry.add_account("B", "https://docs.example.com", "b@example.com")

        switched = await registry.switch_active(second)

        assert switched.is_active
        assert not registry.get(first.id).is_active
        assert [a.id for a in registry.list_accounts() if a.is_active] == [second.id]

    async def test_switch_enters_barrier_for_outgoing_account(self, registry):
        entered = []

        @asynccontextmanager
        async def barrier(account_id):
            entered.append(account_id)
            yield

        registry.add_switch_barrier(barrier)
        first = registry.add_account("A", "https://docs.example.com", "a@example.com")
        second = registry.add_account("B", "https://docs.example.com", "b@example.com")

        await registry.switch_active(second.id)

        assert entered == [first.id]

    async def test_switch_to_active_is_noop(self, registry):
        entered = []

        @asynccontextmanager
        async def barrier(account_id):
            entered.append(account_id)
            yield

        registry.add_switch_barrier(barrier)
        first = registry.add_account("A", "https://docs.example.com", "a@example.com")

        await registry.switch_active(first)

        assert entered == []

    async def test_remove_revokes_credential(self, registry, vault):
        account = registry.add_account(
            "A", "https://docs.example.com", "a@example.com", token="secret"
        )

        await registry.remove_account(account)

        assert registry.get(account.id) is None
        assert vault.get_token(account.key) is None
        assert registry.active is None

    async def test_remove_active_promotes_newest(self, registry):
        first = registry.add_account("A", "https://docs.example.com", "a@example.com")
        registry.add_account("B", "https://docs.example.com", "b@example.com")
        newest = registry.add_account("C", "https://docs.example.com", "c@example.com")

        await registry.remove_account(first)

        assert registry.active.id == newest.id

    async def test_remove_inactive_keeps_active(self, registry):
        first = registry.add_account("A", "https://docs.example.com", "a@example.com")
        second = registry.add_account("B", "https://docs.example.com", "b@example.com")

        await registry.remove_account(second)

        assert registry.active.id == first.id

    async def test_unknown_account(self, registry):
        with pytest.raises(KeyError):
            await registry.switch_active("missing")


def test_record_sync(registry):
    account = registry.add_account("A", "https://docs.example.com", "a@example.com")
    when = datetime(2026, 10, 19, tzinfo=timezone.utc)

    registry.record_sync(account.id, when)
    registry.record_sync("missing", when)

    assert registry.get(account.id).last_sync_at == when
