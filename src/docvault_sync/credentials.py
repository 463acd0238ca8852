"""Credential resolution for accounts.

``CredentialContext`` wraps a ``CredentialVault`` and is the only place the
engine obtains bearer tokens from.  Tokens are keyed by the account key
(``f"{server_url}_{email}"``).

Two vaults are bundled:

- ``MemoryVault``: process-local dict, used by tests and embedders that
  obtain tokens themselves.
- ``EnvironmentVault``: read-only view over environment variables.
  ``DOCVAULT_TOKEN__<KEY>`` (key upper-cased, non-alphanumerics replaced
  with ``_``) takes precedence over the catch-all ``DOCVAULT_TOKEN``,
  which revoked keys no longer fall back to.
"""

from __future__ import annotations

import logging
import os
import re
import threading

from .core.interfaces import CredentialVault
from .errors import NoCredential
from .sync.models import Account

logger = logging.getLogger(__name__)

ENV_TOKEN = "DOCVAULT_TOKEN"
ENV_TOKEN_PREFIX = "DOCVAULT_TOKEN__"


class CredentialContext:
    """Resolve, store and revoke account tokens through a vault."""

    def __init__(self, vault: CredentialVault) -> None:
        self._vault = vault

    @staticmethod
    def account_key(account: Account) -> str:
        return account.key

    def resolve_token(self, account_key: str) -> str:
        """Return the token stored for *account_key*.

        Raises:
            NoCredential: If the vault holds no (non-empty) token.
        """
        token = self._vault.get_token(account_key)
        if not token:
            raise NoCredential(account_key)
        return token

    def store_token(self, account_key: str, token: str) -> None:
        self._vault.set_token(account_key, token)
        logger.debug("Stored credential for %s", account_key)

    def revoke(self, account_key: str) -> None:
        """Delete the stored token; missing tokens are ignored."""
        self._vault.delete(account_key)
        logger.info("Revoked credential for %s", account_key)


class MemoryVault:
    """In-memory ``CredentialVault``."""

    def __init__(self, tokens: dict[str, str] | None = None) -> None:
        self._tokens = dict(tokens or {})
        self._lock = threading.Lock()

    def get_token(self, key: str) -> str | None:
        with self._lock:
            return self._tokens.get(key)

    def set_token(self, key: str, token: str) -> None:
        with self._lock:
            self._tokens[key] = token

    def delete(self, key: str) -> None:
        with self._lock:
            self._tokens.pop(key, None)


class EnvironmentVault:
    """Read tokens from the process environment.

    ``set_token`` and ``delete`` only affect this process; nothing is
    written back to the shell or ``.env`` file.  A deleted key no longer
    falls back to ``DOCVAULT_TOKEN``.
    """

    def __init__(self, environ: dict[str, str] | None = None) -> None:
        self._environ = environ if environ is not None else os.environ
        self._revoked: set[str] = set()

    @staticmethod
    def variable_name(key: str) -> str:
        return ENV_TOKEN_PREFIX + re.sub(r"[^A-Za-z0-9]", "_", key).upper()

    def get_token(self, key: str) -> str | None:
        token = self._environ.get(self.variable_name(key))
        if token or key in self._revoked:
            return token
        return self._environ.get(ENV_TOKEN)

    def set_token(self, key: str, token: str) -> None:
        self._environ[self.variable_name(key)] = token
        self._revoked.discard(key)

    def delete(self, key: str) -> None:
        self._environ.pop(self.variable_name(key), None)
        self._revoked.add(key)
