"""Tests for credentials.py -- CredentialContext and bundled vaults."""

import pytest

from docvault_sync.credentials import (
    ENV_TOKEN,
    CredentialContext,
    EnvironmentVault,
    MemoryVault,
)
from docvault_sync.errors import AuthError, NoCredential

KEY = "https://docs.example.com_a@example.com"


class TestCredentialContext:
    def test_resolve_stored_token(self):
        context = CredentialContext(MemoryVault({KEY: "secret"}))
        assert context.resolve_token(KEY) == "secret"

    def test_missing_token_raises(self):
        context = CredentialContext(MemoryVault())
        with pytest.raises(NoCredential) as exc_info:
            context.resolve_token(KEY)
        assert exc_info.value.account_key == KEY
        assert isinstance(exc_info.value, AuthError)

    def test_empty_token_counts_as_missing(self):
        context = CredentialContext(MemoryVault({KEY: ""}))
        with pytest.raises(NoCredential):
            context.resolve_token(KEY)

    def test_store_and_revoke(self):
        vault = MemoryVault()
        context = CredentialContext(vault)

        context.store_token(KEY, "secret")
        assert vault.get_token(KEY) == "secret"

        context.revoke(KEY)
        context.revoke(KEY)
        assert vault.get_token(KEY) is None


class TestEnvironmentVault:
    def test_variable_name(self):
        assert EnvironmentVault.variable_name(KEY) == (
            "DOCVAULT_TOKEN__HTTPS___DOCS_EXAMPLE_COM_A_EXAMPLE_COM"
        )

    def test_per_account_variable_wins(self):
        environ = {
            ENV_TOKEN: "fallback",
            EnvironmentVault.variable_name(KEY): "specific",
        }
        assert EnvironmentVault(environ).get_token(KEY) == "specific"

    def test_falls_back_to_catch_all(self):
        assert EnvironmentVault({ENV_TOKEN: "fallback"}).get_token(KEY) == "fallback"

    def test_missing(self):
        assert EnvironmentVault({}).get_token(KEY) is None

    def test_set_and_delete_touch_only_the_mapping(self):
        environ = {ENV_TOKEN: "fallback"}
        vault = EnvironmentVault(environ)

        vault.set_token(KEY, "secret")
        assert environ[EnvironmentVault.variable_name(KEY)] == "secret"

        vault.delete(KEY)
        assert EnvironmentVault.variable_name(KEY) not in environ
        assert environ[ENV_TOKEN] == "fallback"

    def test_revoked_key_does_not_fall_back(self):
        environ = {ENV_TOKEN: "fallback"}
        vault = EnvironmentVault(environ)

        vault.delete(KEY)
        assert vault.get_token(KEY) is None
        assert vault.get_token("https://docs.example.com_b@example.com") == "fallback"

        vault.set_token(KEY, "again")
        assert vault.get_token(KEY) == "again"

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv(EnvironmentVault.variable_name(KEY), "from-env")
        assert EnvironmentVault().get_token(KEY) == "from-env"
