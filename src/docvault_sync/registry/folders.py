"""Sync folder bookkeeping.

``SyncFolderRegistry`` persists ``SyncFolder`` records and enforces the
isolation invariants before anything is written:

- ``(account_id, remote_folder_id)`` is unique;
- no two folders mirror into the same local directory, and no folder's
  local directory encloses another's.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..errors import DuplicateRemoteFolder, PathCollision, PermissionDenied
from ..sync.models import (
    Account,
    ConflictPolicy,
    RemoteNode,
    SyncDirection,
    SyncFolder,
)
from ..sync.state import SnapshotStore
from ..validators import validate_local_path
from .store import RecordStore

logger = logging.getLogger(__name__)

COLLECTION = "folders"


def normalize_local_path(path: str | Path) -> str:
    return str(Path(path).expanduser().resolve())


def paths_overlap(a: str, b: str) -> bool:
    """``True`` if *a* and *b* are the same directory or one encloses the other."""
    pa, pb = Path(a), Path(b)
    return pa == pb or pa in pb.parents or pb in pa.parents


class SyncFolderRegistry:
    """Create, update and remove sync folders.

    Args:
        store: Record store holding the ``folders`` collection.
        snapshots: Snapshot store; a removed folder's snapshot is discarded.
    """

    def __init__(self, store: RecordStore, snapshots: SnapshotStore) -> None:
        self._store = store
        self._snapshots = snapshots
        self._folders: dict[str, SyncFolder] = {}
        for raw in store.load_all(COLLECTION):
            folder = SyncFolder.model_validate(raw)
            self._folders[folder.id] = folder

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, folder_id: str) -> SyncFolder | None:
        return self._folders.get(folder_id)

    def list_folders(self) -> list[SyncFolder]:
        return sorted(self._folders.values(), key=lambda f: f.created_at)

    def for_account(self, account_id: str) -> list[SyncFolder]:
        return [f for f in self.list_folders() if f.account_id == account_id]

    def enabled(self) -> list[SyncFolder]:
        return [f for f in self.list_folders() if f.is_enabled]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(
        self,
        account: Account,
        remote_folder: RemoteNode,
        local_path: str | Path,
        direction: SyncDirection | str = SyncDirection.BIDIRECTIONAL,
        policy: ConflictPolicy | str = ConflictPolicy.REMOTE_WINS,
        remote_folder_path: str = "",
    ) -> SyncFolder:
        """Register *remote_folder* for syncing into *local_path*.

        The folder starts paused and disabled.

        Raises:
            ValueError: If *local_path* is not usable as a directory.
            PermissionDenied: If the remote folder cannot be listed and
                downloaded from.
            DuplicateRemoteFolder: If the account already syncs it.
            PathCollision: If the local directory overlaps another folder's.
        """
        is_valid, error = validate_local_path(local_path)
        if not is_valid:
            raise ValueError(error)
        if not remote_folder.is_folder or not remote_folder.is_syncable:
            raise PermissionDenied(
                f"Remote folder '{remote_folder.name}' is not syncable "
                f"(permissions: {sorted(remote_folder.permissions)})"
            )
        for existing in self._folders.values():
            if (
                existing.account_id == account.id
                and existing.remote_folder_id == remote_folder.id
            ):
                raise DuplicateRemoteFolder(
                    f"Remote folder '{remote_folder.name}' is already synced "
                    f"to {existing.local_path}"
                )

        normalized = normalize_local_path(local_path)
        self._check_collision(normalized)

        now = datetime.now(timezone.utc)
        folder = SyncFolder(
            id=str(uuid.uuid4()),
            account_id=account.id,
            remote_folder_id=remote_folder.id,
            remote_folder_name=remote_folder.name,
            remote_folder_path=remote_folder_path,
            local_path=normalized,
            sync_direction=SyncDirection(direction),
            conflict_resolution=ConflictPolicy(policy),
            created_at=now,
            updated_at=now,
        )
        self._folders[folder.id] = folder
        self._persist()
        logger.info(
            "Created sync folder %s: %s -> %s",
            folder.id,
            folder.display_path,
            folder.local_path,
        )
        return folder

    def update(self, folder: SyncFolder | str, **mutation: Any) -> SyncFolder:
        """Apply *mutation* to the folder record and persist it.

        Raises:
            PathCollision: If a new ``local_path`` overlaps another folder's.
        """
        current = self._require(folder)
        mutation.pop("id", None)
        if "local_path" in mutation:
            is_valid, error = validate_local_path(mutation["local_path"])
            if not is_valid:
                raise ValueError(error)
            mutation["local_path"] = normalize_local_path(mutation["local_path"])
            self._check_collision(mutation["local_path"], exclude=current.id)

        data = current.model_dump()
        data.update(mutation)
        data["updated_at"] = datetime.now(timezone.utc)
        updated = SyncFolder.model_validate(data)
        self._folders[updated.id] = updated
        self._persist()
        return updated

    def remove(self, folder: SyncFolder | str) -> None:
        """Delete the record and its snapshot.  Content is never touched."""
        current = self._require(folder)
        del self._folders[current.id]
        self._persist()
        self._snapshots.discard(current.id)
        logger.info("Removed sync folder %s", current.id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _require(self, folder: SyncFolder | str) -> SyncFolder:
        folder_id = folder if isinstance(folder, str) else folder.id
        found = self._folders.get(folder_id)
        if found is None:
            raise KeyError(f"Unknown sync folder: {folder_id}")
        return found

    def _check_collision(self, local_path: str, exclude: str | None = None) -> None:
        for existing in self._folders.values():
            if existing.id == exclude:
                continue
            if paths_overlap(existing.local_path, local_path):
                raise PathCollision(
                    f"Local path {local_path} overlaps sync folder "
                    f"'{existing.remote_folder_name}' at {existing.local_path}"
                )

    def _persist(self) -> None:
        self._store.save_all(
            COLLECTION,
            [f.model_dump(mode="json") for f in self.list_folders()],
        )
