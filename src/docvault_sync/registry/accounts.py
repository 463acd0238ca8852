"""Account bookkeeping.

``AccountRegistry`` owns the account records and the active-account
pointer.  The pointer only changes inside ``switch_active`` and
``remove_account``, both serialised by one registry-wide ``asyncio.Lock``.
Before flipping, the registry enters every registered *switch barrier* for
the outgoing account; the sync engine registers its checkpoint barrier so
in-flight passes of that account are parked (or finished) while the flip
happens.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import AbstractAsyncContextManager, AsyncExitStack
from datetime import datetime, timezone
from typing import Callable

from ..credentials import CredentialContext
from ..errors import DuplicateAccount
from ..sync.models import Account
from ..validators import (
    normalize_email,
    normalize_server_url,
    validate_email,
    validate_server_url,
)
from .store import RecordStore

logger = logging.getLogger(__name__)

COLLECTION = "accounts"

SwitchBarrier = Callable[[str], AbstractAsyncContextManager]


class AccountRegistry:
    """Add, switch and remove accounts.

    Args:
        store: Record store holding the ``accounts`` collection.
        credentials: Used to store tokens on add and revoke them on removal.
    """

    def __init__(
        self, store: RecordStore, credentials: CredentialContext
    ) -> None:
        self._store = store
        self._credentials = credentials
        self._accounts: dict[str, Account] = {}
        for raw in store.load_all(COLLECTION):
            account = Account.model_validate(raw)
            self._accounts[account.id] = account
        self._lock = asyncio.Lock()
        self._barriers: list[SwitchBarrier] = []

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, account_id: str) -> Account | None:
        return self._accounts.get(account_id)

    def list_accounts(self) -> list[Account]:
        """All accounts, oldest first."""
        return sorted(self._accounts.values(), key=lambda a: a.created_at)

    @property
    def active(self) -> Account | None:
        for account in self._accounts.values():
            if account.is_active:
                return account
        return None

    def find(self, server_url: str, email: str) -> Account | None:
        url = normalize_server_url(server_url)
        mail = normalize_email(email)
        for account in self._accounts.values():
            if account.server_url == url and account.email == mail:
                return account
        return None

    def add_switch_barrier(self, barrier: SwitchBarrier) -> None:
        """Register ``barrier(account_id)`` to be entered around a switch."""
        self._barriers.append(barrier)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_account(
        self,
        name: str,
        server_url: str,
        email: str,
        token: str | None = None,
    ) -> Account:
        """Create an account.  The first account added becomes active.

        Raises:
            ValueError: If the URL or email is malformed.
            DuplicateAccount: If ``(server_url, email)`` is already known.
        """
        for is_valid, error in (
            validate_server_url(server_url),
            validate_email(email),
        ):
            if not is_valid:
                raise ValueError(error)

        url = normalize_server_url(server_url)
        mail = normalize_email(email)
        if self.find(url, mail) is not None:
            raise DuplicateAccount(
                f"Account for {mail} on {url} already exists"
            )

        account = Account(
            id=str(uuid.uuid4()),
            display_name=name.strip() or mail,
            server_url=url,
            email=mail,
            is_active=not self._accounts,
            created_at=datetime.now(timezone.utc),
        )
        self._accounts[account.id] = account
        self._persist()
        if token:
            self._credentials.store_token(account.key, token)
        logger.info("Added account %s (%s)", account.display_name, account.key)
        return account

    async def switch_active(self, account: Account | str) -> Account:
        """Make *account* the active account.

        Passes of the outgoing account are parked at a checkpoint for the
        duration of the flip.
        """
        target = self._require(account)
        async with self._lock:
            current = self.active
            if current is not None and current.id == target.id:
                return current
            async with AsyncExitStack() as stack:
                if current is not None:
                    await self._enter_barriers(stack, current.id)
                self._set_active(target.id)
                self._persist()
        logger.info(
            "Switched active account from %s to %s",
            current.key if current else None,
            target.key,
        )
        return self._accounts[target.id]

    async def remove_account(self, account: Account | str) -> None:
        """Remove *account* and revoke its credential.

        If it was active, the most recently created remaining account is
        promoted; with none left, no account is active.
        """
        target = self._require(account)
        async with self._lock:
            async with AsyncExitStack() as stack:
                await self._enter_barriers(stack, target.id)
                was_active = self._accounts[target.id].is_active
                del self._accounts[target.id]
                self._credentials.revoke(target.key)
                if was_active:
                    remaining = self.list_accounts()
                    if remaining:
                        self._set_active(remaining[-1].id)
                self._persist()
        logger.info("Removed account %s", target.key)

    def record_sync(self, account_id: str, when: datetime) -> None:
        """Stamp ``last_sync_at`` after a completed pass."""
        account = self._accounts.get(account_id)
        if account is None:
            return
        self._accounts[account_id] = account.model_copy(
            update={"last_sync_at": when}
        )
        self._persist()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require(self, account: Account | str) -> Account:
        account_id = account if isinstance(account, str) else account.id
        found = self._accounts.get(account_id)
        if found is None:
            raise KeyError(f"Unknown account: {account_id}")
        return found

    async def _enter_barriers(
        self, stack: AsyncExitStack, account_id: str
    ) -> None:
        for barrier in self._barriers:
            await stack.enter_async_context(barrier(account_id))

    def _set_active(self, account_id: str) -> None:
        for key, account in list(self._accounts.items()):
            wanted = key == account_id
            if account.is_active != wanted:
                self._accounts[key] = account.model_copy(
                    update={"is_active": wanted}
                )

    def _persist(self) -> None:
        self._store.save_all(
            COLLECTION,
            [a.model_dump(mode="json") for a in self.list_accounts()],
        )
