"""Transfers between the document service and the local filesystem.

``TransferExecutor`` performs the side effects of a plan item:

- downloads stream into a ``.docvault-*.partial`` temp file in the
  destination directory, are verified against the remote checksum and then
  ``os.replace``-d over the destination; the temp file is removed on any
  failure, so a destination is either fully replaced or untouched;
- uploads stream the local file and compare the checksum the service
  reports back;
- ``NetworkFailure`` and ``ChecksumMismatch`` are retried with exponential
  backoff up to ``max_attempts``; ``AuthError`` and ``PermissionDenied``
  fail at once.

Each attempt runs in one worker thread, so a cancelled pass never leaves
a half-written destination behind.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

from ..core.async_utils import run_sync, run_sync_limited
from ..core.interfaces import RemoteDocumentService
from ..errors import ChecksumMismatch, NetworkFailure, NotFound
from .integrity import IntegrityValidator
from .models import RemoteNode

logger = logging.getLogger(__name__)

T = TypeVar("T")

TEMP_PREFIX = ".docvault-"
TEMP_SUFFIX = ".partial"

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE = 0.5
DEFAULT_BACKOFF_MAX = 8.0

_RETRYABLE: tuple[type[Exception], ...] = (NetworkFailure, ChecksumMismatch)


def is_temp_name(name: str) -> bool:
    """``True`` for the temp files downloads write before the final rename."""
    return name.startswith(TEMP_PREFIX) and name.endswith(TEMP_SUFFIX)


class TransferExecutor:
    """Download, upload and delete with retry and atomic local writes.

    Args:
        service: Remote document service.
        validator: Used to verify downloads and hash uploads.
        max_attempts: Attempts per transfer, including the first.
        backoff_base: Delay before the second attempt, in seconds.
        backoff_max: Upper bound for any single delay.
        is_ignored: Predicate for names that may be discarded when
            deleting a local directory.
        sleep: Coroutine used to wait between attempts.
    """

    def __init__(
        self,
        service: RemoteDocumentService,
        validator: IntegrityValidator,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: float = DEFAULT_BACKOFF_BASE,
        backoff_max: float = DEFAULT_BACKOFF_MAX,
        is_ignored: Callable[[str], bool] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._service = service
        self._validator = validator
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self._is_ignored = is_ignored or (lambda name: False)
        self._sleep = sleep

    def backoff_delay(self, attempt: int) -> float:
        """Delay after failed *attempt* (1-based)."""
        return min(self.backoff_max, self.backoff_base * 2 ** (attempt - 1))

    async def _with_retry(
        self,
        what: str,
        call: Callable[[], Awaitable[T]],
        retryable: tuple[type[Exception], ...] = _RETRYABLE,
    ) -> T:
        attempt = 1
        while True:
            try:
                return await call()
            except retryable as exc:
                if attempt >= self.max_attempts:
                    logger.error(
                        "%s failed after %d attempts: %s", what, attempt, exc
                    )
                    raise
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d): %s. Retrying in %.1fs",
                    what,
                    attempt,
                    self.max_attempts,
                    exc,
                    delay,
                )
                await self._sleep(delay)
                attempt += 1

    # ------------------------------------------------------------------
    # Downloads
    # ------------------------------------------------------------------

    async def download(
        self,
        token: str,
        remote: RemoteNode,
        destination: Path,
        relative_path: str | None = None,
    ) -> str:
        """Download *remote* to *destination*.

        Returns:
            The checksum of the written content.

        Raises:
            ChecksumMismatch: Content did not verify after all attempts.
            NetworkFailure: Transport failed after all attempts.
        """
        label = relative_path or destination.name
        checksum = await self._with_retry(
            f"Download of {label}",
            lambda: run_sync_limited(
                self._download_once, token, remote, destination, label
            ),
        )
        logger.info("Downloaded %s (%d bytes)", label, remote.size)
        return checksum

    def _download_once(
        self, token: str, remote: RemoteNode, destination: Path, label: str
    ) -> str:
        destination.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(destination.parent), prefix=TEMP_PREFIX, suffix=TEMP_SUFFIX
        )
        try:
            with os.fdopen(fd, "wb") as fh:
                for chunk in self._service.download(token, remote.id):
                    fh.write(chunk)
                fh.flush()
                os.fsync(fh.fileno())
            actual = self._validator.verify(
                Path(tmp_path), remote.checksum, label
            )
            os.replace(tmp_path, destination)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        return actual

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------

    async def upload(
        self,
        token: str,
        local_path: Path,
        folder_id: str,
        name: str,
        relative_path: str | None = None,
    ) -> tuple[RemoteNode, str]:
        """Upload *local_path* as *name* into remote folder *folder_id*.

        Returns:
            The remote node and the local content checksum.

        Raises:
            ChecksumMismatch: The service reported a different checksum
                after all attempts.
            NetworkFailure: Transport failed after all attempts.
            PermissionDenied, AuthError: Immediately, without retry.
        """
        label = relative_path or name
        result = await self._with_retry(
            f"Upload of {label}",
            lambda: run_sync_limited(
                self._upload_once, token, local_path, folder_id, name, label
            ),
        )
        logger.info("Uploaded %s", label)
        return result

    def _upload_once(
        self,
        token: str,
        local_path: Path,
        folder_id: str,
        name: str,
        label: str,
    ) -> tuple[RemoteNode, str]:
        checksum = self._validator.file_checksum(local_path)
        with local_path.open("rb") as stream:
            node = self._service.upload(token, folder_id, name, stream)
        if node.checksum and node.checksum != checksum:
            raise ChecksumMismatch(label, checksum, node.checksum)
        return node, checksum

    # ------------------------------------------------------------------
    # Folders and deletions
    # ------------------------------------------------------------------

    async def create_remote_folder(
        self, token: str, parent_id: str, name: str
    ) -> RemoteNode:
        node = await self._with_retry(
            f"Create folder {name}",
            lambda: run_sync_limited(
                self._service.create_folder, token, parent_id, name
            ),
            retryable=(NetworkFailure,),
        )
        logger.info("Created remote folder %s in %s", name, parent_id)
        return node

    async def delete_remote(self, token: str, node: RemoteNode) -> None:
        """Delete *node* remotely; a node that is already gone counts as done."""
        try:
            await self._with_retry(
                f"Delete {node.name}",
                lambda: run_sync_limited(
                    self._service.delete, token, node.id, node.kind
                ),
                retryable=(NetworkFailure,),
            )
        except NotFound:
            logger.info("Remote node %s already deleted", node.id)
            return
        logger.info("Deleted remote %s %s", node.kind.value, node.name)

    async def delete_local(self, path: Path) -> bool:
        """Delete a local file, or a directory holding only ignorable files.

        Returns:
            ``False`` if a directory still holds content and was kept.
        """
        return await run_sync(self._delete_local, path)

    def _delete_local(self, path: Path) -> bool:
        if path.is_dir() and not path.is_symlink():
            leftovers = [
                p
                for p in path.iterdir()
                if not (is_temp_name(p.name) or self._is_ignored(p.name))
            ]
            if leftovers:
                logger.warning(
                    "Keeping %s: directory not empty (%d entries)",
                    path,
                    len(leftovers),
                )
                return False
            shutil.rmtree(path)
        else:
            path.unlink(missing_ok=True)
        logger.info("Deleted local %s", path)
        return True
