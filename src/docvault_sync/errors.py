"""Error taxonomy for docvault_sync.

Every failure the engine reasons about is a ``SyncError`` subclass so the
per-item and per-pass boundaries can tell recoverable conditions apart:

- ``AuthError`` / ``NoCredential`` -- the account's token is missing,
  invalid or expired.  Aborts the pass for that account only.
- ``NetworkFailure`` -- transient; retried at the transfer level.
- ``NotFound`` -- the remote node vanished.
- ``PermissionDenied`` -- the node lacks a capability; the item is skipped.
- ``ChecksumMismatch`` -- downloaded content does not match the remote
  checksum after all retries.
- ``DuplicateAccount`` / ``PathCollision`` / ``DuplicateRemoteFolder`` --
  rejected synchronously by the registries.
- ``InvalidTransition`` -- an illegal folder status edge.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for all docvault_sync errors."""


class AuthError(SyncError):
    """Token invalid, expired or rejected by the service."""


class NoCredential(AuthError):
    """No token stored for the requested account key."""

    def __init__(self, account_key: str) -> None:
        super().__init__(f"No credential stored for account '{account_key}'")
        self.account_key = account_key


class NetworkFailure(SyncError):
    """Transient transport failure (connection, timeout, 5xx)."""


class NotFound(SyncError):
    """The requested remote node does not exist."""


class PermissionDenied(SyncError):
    """The node's capability set does not allow the operation."""


class ChecksumMismatch(SyncError):
    """Local content does not match the expected checksum."""

    def __init__(
        self, relative_path: str, expected: str, actual: str
    ) -> None:
        super().__init__(
            f"Checksum mismatch for '{relative_path}': "
            f"expected {expected}, got {actual}"
        )
        self.relative_path = relative_path
        self.expected = expected
        self.actual = actual


class DuplicateAccount(SyncError):
    """An account with the same server URL and email already exists."""


class PathCollision(SyncError):
    """The local path is already mirrored by another sync folder."""


class DuplicateRemoteFolder(SyncError):
    """The remote folder is already synced for this account."""


class InvalidTransition(SyncError):
    """A folder status change that the state machine does not allow."""
