"""Three-way diff between the remote tree, the local tree and the snapshot.

``DiffPlanner`` produces a ``SyncPlan`` for one folder in five steps:

1. **Classify** every path in ``remote | local | snapshot`` against its
   snapshot entry (``_classify``).
2. **Filter by direction**: ``download_only`` demotes remote writes to
   ``NONE``; ``upload_only`` demotes local writes.
3. **Keep parents**: a folder marked for deletion is re-created instead
   when one of its descendants brings new content to that side.
4. **Protect unlisted content**: a remote folder is not deleted while it
   holds blocked or skipped nodes.
5. **Gate on capabilities**: items the remote node does not permit are
   moved to ``plan.skipped``.

Items are then ordered: unchanged paths, folder creations (shallow first),
file transfers and conflicts, deletions (deep first).
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Sequence

from ..core.async_utils import run_sync, run_sync_limited
from ..core.interfaces import RemoteDocumentService
from ..errors import PermissionDenied
from ..validators import validate_relative_path
from .integrity import IntegrityValidator
from .models import (
    CAP_CREATE,
    CAP_DELETE_DOCUMENT,
    CAP_DELETE_FOLDER,
    CAP_DOWNLOAD,
    CAP_EDIT,
    CAP_LIST,
    LOCAL_WRITES,
    REMOTE_WRITES,
    LocalNode,
    NodeKind,
    PlanAction,
    PlanItem,
    RemoteNode,
    SkippedItem,
    SnapshotEntry,
    SyncDirection,
    SyncFolder,
    SyncPlan,
)
from .transfer import is_temp_name

logger = logging.getLogger(__name__)

DEFAULT_IGNORE_PATTERNS: tuple[str, ...] = (
    ".DS_Store",
    "Thumbs.db",
    "desktop.ini",
    ".docvault-*",
)

REASON_IDENTICAL = "content identical"

_CREATIONS = frozenset({PlanAction.DOWNLOAD_NEW, PlanAction.UPLOAD_NEW})
_DELETIONS = frozenset({PlanAction.DELETE_LOCAL, PlanAction.DELETE_REMOTE})


@dataclass
class RemoteTree:
    """Flattened remote tree below a sync folder's root.

    Attributes:
        root: The sync folder's remote root node.
        nodes: ``relative_path -> RemoteNode`` for every reachable node.
        blocked: Paths excluded together with their subtree, with reason.
        skipped: Individual remote nodes that were ignored.
    """

    root: RemoteNode
    nodes: dict[str, RemoteNode] = field(default_factory=dict)
    blocked: dict[str, str] = field(default_factory=dict)
    skipped: list[SkippedItem] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def depth(relative_path: str) -> int:
    return relative_path.count("/")


def parent_path(relative_path: str) -> str:
    head, _, _ = relative_path.rpartition("/")
    return head


def is_under(relative_path: str, ancestor: str) -> bool:
    """``True`` if *relative_path* is *ancestor* or lies below it."""
    return relative_path == ancestor or relative_path.startswith(ancestor + "/")


def remote_parent(
    relative_path: str, nodes: dict[str, RemoteNode], root: RemoteNode
) -> RemoteNode:
    """Nearest existing remote ancestor of *relative_path*."""
    current = parent_path(relative_path)
    while current:
        node = nodes.get(current)
        if node is not None:
            return node
        current = parent_path(current)
    return root


def missing_capability(
    action: PlanAction,
    remote: RemoteNode | None,
    parent: RemoteNode | None,
) -> str | None:
    """Return the capability *action* needs but lacks, or ``None``."""
    if action in (PlanAction.DOWNLOAD_NEW, PlanAction.DOWNLOAD_UPDATE):
        if remote is not None and not remote.is_folder and not remote.can_download:
            return CAP_DOWNLOAD
    elif action == PlanAction.UPLOAD_NEW:
        if parent is not None and not parent.can_create:
            return CAP_CREATE
    elif action == PlanAction.UPLOAD_UPDATE:
        if remote is not None and not remote.can_edit:
            return CAP_EDIT
    elif action == PlanAction.DELETE_REMOTE:
        if remote is not None and not remote.can_delete:
            return CAP_DELETE_FOLDER if remote.is_folder else CAP_DELETE_DOCUMENT
    return None


def direction_allows(direction: SyncDirection, action: PlanAction) -> bool:
    if direction == SyncDirection.DOWNLOAD_ONLY:
        return action not in REMOTE_WRITES
    if direction == SyncDirection.UPLOAD_ONLY:
        return action not in LOCAL_WRITES
    return True


# ---------------------------------------------------------------------------
# Planner
# ---------------------------------------------------------------------------


class DiffPlanner:
    """Build sync plans for folders.

    Args:
        service: Remote document service used to fetch the remote tree.
        validator: Hashes local files.
        ignore_patterns: ``fnmatch`` patterns of names ignored on both sides.
    """

    def __init__(
        self,
        service: RemoteDocumentService,
        validator: IntegrityValidator,
        ignore_patterns: Sequence[str] = DEFAULT_IGNORE_PATTERNS,
    ) -> None:
        self._service = service
        self._validator = validator
        self._ignore = tuple(ignore_patterns)

    def is_ignored(self, name: str) -> bool:
        if is_temp_name(name):
            return True
        return any(fnmatch.fnmatch(name, pattern) for pattern in self._ignore)

    # ------------------------------------------------------------------
    # Tree acquisition
    # ------------------------------------------------------------------

    async def fetch_remote_tree(self, token: str, root_id: str) -> RemoteTree:
        """Walk the remote tree breadth-first below *root_id*.

        Folders of one level are listed concurrently (bounded by the
        request semaphore).  Folders that cannot be listed are recorded in
        ``blocked`` and not descended into.

        Raises:
            PermissionDenied: If the root itself cannot be listed.
        """
        root = await run_sync_limited(
            self._service.get_detail, token, root_id, NodeKind.FOLDER
        )
        if not root.can_traverse:
            raise PermissionDenied(
                f"Remote folder '{root.name}' lacks {CAP_LIST}"
            )

        tree = RemoteTree(root=root)
        level: list[tuple[str, str]] = [(root.id, "")]
        while level:
            listings = await asyncio.gather(
                *(
                    run_sync_limited(self._service.list_children, token, fid)
                    for fid, _ in level
                )
            )
            next_level: list[tuple[str, str]] = []
            for (_, prefix), children in zip(level, listings):
                for child in sorted(children, key=lambda n: (n.name, n.id)):
                    path = self._admit(tree, prefix, child)
                    if path is not None and child.is_folder:
                        next_level.append((child.id, path + "/"))
            level = next_level

        logger.debug(
            "Remote tree of %s: %d nodes, %d blocked",
            root_id,
            len(tree.nodes),
            len(tree.blocked),
        )
        return tree

    def _admit(
        self, tree: RemoteTree, prefix: str, child: RemoteNode
    ) -> str | None:
        """Add *child* to *tree*; return its path, or ``None`` if excluded."""
        if self.is_ignored(child.name):
            return None
        path = f"{prefix}{child.name}"
        is_valid, error = validate_relative_path(child.name)
        if not is_valid or "/" in child.name or "\\" in child.name:
            tree.skipped.append(
                SkippedItem(
                    relative_path=path,
                    reason=f"invalid remote name: {error or 'contains a separator'}",
                )
            )
            return None
        if path in tree.nodes:
            logger.warning("Duplicate remote name %s (id %s)", path, child.id)
            tree.skipped.append(
                SkippedItem(
                    relative_path=path,
                    reason=f"duplicate remote name (id {child.id})",
                )
            )
            return None
        if child.is_folder and not child.can_traverse:
            tree.blocked[path] = f"permission denied: missing {CAP_LIST}"
            return None
        tree.nodes[path] = child
        return path

    def scan_local_tree(
        self, root: Path, entries: dict[str, SnapshotEntry]
    ) -> dict[str, LocalNode]:
        """Walk *root* and return ``relative_path -> LocalNode``.

        A file whose size and mtime match its snapshot entry reuses the
        recorded checksum instead of being re-hashed.  Symlinks and ignored
        names are skipped.  Blocking; call through ``run_sync``.
        """
        nodes: dict[str, LocalNode] = {}
        if not root.is_dir():
            return nodes

        for dirpath, dirnames, filenames in os.walk(root):
            base = Path(dirpath)
            dirnames[:] = sorted(
                d
                for d in dirnames
                if not self.is_ignored(d) and not (base / d).is_symlink()
            )
            for name in dirnames:
                rel = (base / name).relative_to(root).as_posix()
                stat = (base / name).stat()
                nodes[rel] = LocalNode(
                    relative_path=rel,
                    kind=NodeKind.FOLDER,
                    modified_at=stat.st_mtime,
                )
            for name in sorted(filenames):
                full = base / name
                if self.is_ignored(name) or full.is_symlink():
                    continue
                rel = full.relative_to(root).as_posix()
                stat = full.stat()
                nodes[rel] = LocalNode(
                    relative_path=rel,
                    kind=NodeKind.FILE,
                    size=stat.st_size,
                    checksum=self._local_checksum(full, stat, entries.get(rel)),
                    modified_at=stat.st_mtime,
                )
        return nodes

    def _local_checksum(
        self, path: Path, stat: os.stat_result, entry: SnapshotEntry | None
    ) -> str:
        if (
            entry is not None
            and entry.kind == NodeKind.FILE
            and entry.checksum
            and entry.size == stat.st_size
            and entry.local_mtime == stat.st_mtime
        ):
            return entry.checksum
        return self._validator.file_checksum(path)

    async def build_plan(
        self,
        token: str,
        folder: SyncFolder,
        entries: dict[str, SnapshotEntry],
    ) -> SyncPlan:
        """Fetch both trees and plan the folder's next pass."""
        remote = await self.fetch_remote_tree(token, folder.remote_folder_id)
        local = await run_sync(
            self.scan_local_tree, Path(folder.local_path), entries
        )
        return self.plan(folder, entries, remote, local)

    # ------------------------------------------------------------------
    # Planning (pure)
    # ------------------------------------------------------------------

    def plan(
        self,
        folder: SyncFolder,
        entries: dict[str, SnapshotEntry],
        remote: RemoteTree,
        local: dict[str, LocalNode],
    ) -> SyncPlan:
        """Compute the ordered plan.  Does no I/O."""
        skipped: list[SkippedItem] = list(remote.skipped)
        skipped.extend(
            SkippedItem(relative_path=path, reason=reason)
            for path, reason in sorted(remote.blocked.items())
        )
        excluded = {s.relative_path for s in remote.skipped}

        candidates: dict[str, PlanItem] = {}
        for path in sorted(set(remote.nodes) | set(local) | set(entries)):
            blocked_by = next(
                (b for b in remote.blocked if is_under(path, b)), None
            )
            if blocked_by is not None:
                if path != blocked_by and path in local:
                    skipped.append(
                        SkippedItem(
                            relative_path=path,
                            reason="parent remote folder cannot be listed",
                        )
                    )
                continue
            if path in excluded:
                continue

            l_node, r_node, entry = (
                local.get(path),
                remote.nodes.get(path),
                entries.get(path),
            )
            if l_node and r_node and l_node.kind != r_node.kind:
                skipped.append(
                    SkippedItem(
                        relative_path=path,
                        reason=(
                            f"type mismatch: local {l_node.kind.value}, "
                            f"remote {r_node.kind.value}"
                        ),
                    )
                )
                continue

            action, reason = _classify(l_node, r_node, entry)
            item = PlanItem(
                relative_path=path,
                action=action,
                local=l_node,
                remote=r_node,
                base=entry,
                reason=reason,
            )
            candidates[path] = self._filter_by_direction(
                item, folder.sync_direction
            )

        _keep_parents(candidates)
        _protect_unlisted(candidates, remote, skipped)
        items = _gate(candidates.values(), remote, skipped)
        items.sort(key=_order_key)

        plan = SyncPlan(
            folder_id=folder.id, items=items, skipped=skipped, root=remote.root
        )
        logger.info(
            "Planned folder %s: %d actions, %d unchanged, %d skipped",
            folder.id,
            sum(1 for i in items if i.action != PlanAction.NONE),
            sum(1 for i in items if i.action == PlanAction.NONE),
            len(skipped),
        )
        return plan

    @staticmethod
    def _filter_by_direction(
        item: PlanItem, direction: SyncDirection
    ) -> PlanItem:
        """Demote actions that the folder's direction does not allow."""
        if direction_allows(direction, item.action):
            return item
        logger.info(
            "Demoting %s on %s to none (direction=%s)",
            item.action.value,
            item.relative_path,
            direction.value,
        )
        return item.model_copy(
            update={
                "action": PlanAction.NONE,
                "reason": f"{direction.value}: {item.action.value} not propagated",
                "demoted": True,
            }
        )


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def remote_changed(remote: RemoteNode, entry: SnapshotEntry) -> bool:
    """Remote change is judged by checksum when known, else by version."""
    if remote.id != entry.remote_id:
        return True
    if remote.checksum and entry.checksum:
        return remote.checksum != entry.checksum
    return remote.version != entry.remote_version


def _classify(
    local: LocalNode | None,
    remote: RemoteNode | None,
    entry: SnapshotEntry | None,
) -> tuple[PlanAction, str | None]:
    # An entry without remote id is a local-only baseline: for the remote
    # side the path was never synced.
    synced = entry if entry is not None and entry.remote_id else None
    node = local or remote

    if node is None:
        return PlanAction.NONE, "absent on both sides"

    if node.kind == NodeKind.FOLDER:
        if local and remote:
            return PlanAction.NONE, None
        if local:
            if synced:
                return PlanAction.DELETE_LOCAL, "deleted remotely"
            return PlanAction.UPLOAD_NEW, "new locally"
        if synced:
            return PlanAction.DELETE_REMOTE, "deleted locally"
        return PlanAction.DOWNLOAD_NEW, "new on remote"

    local_changed = local is not None and (
        entry is None or local.checksum != entry.checksum
    )

    if remote is None:
        if synced is None:
            return PlanAction.UPLOAD_NEW, "new locally"
        if local_changed:
            return PlanAction.UPLOAD_NEW, "changed locally, deleted remotely"
        return PlanAction.DELETE_LOCAL, "deleted remotely"

    r_changed = synced is None or remote_changed(remote, synced)

    if not local:
        if entry is None or synced is None:
            return PlanAction.DOWNLOAD_NEW, "new on remote"
        if r_changed:
            return PlanAction.DOWNLOAD_NEW, "changed remotely, deleted locally"
        return PlanAction.DELETE_REMOTE, "deleted locally"

    if synced is None:
        if local.checksum and local.checksum == remote.checksum:
            return PlanAction.NONE, REASON_IDENTICAL
        return PlanAction.CONFLICT, "created on both sides"

    if not local_changed and not r_changed:
        return PlanAction.NONE, None
    if local_changed and not r_changed:
        return PlanAction.UPLOAD_UPDATE, "changed locally"
    if r_changed and not local_changed:
        return PlanAction.DOWNLOAD_UPDATE, "changed remotely"
    if local.checksum and local.checksum == remote.checksum:
        return PlanAction.NONE, REASON_IDENTICAL
    return PlanAction.CONFLICT, "changed on both sides"


# ---------------------------------------------------------------------------
# Post-processing
# ---------------------------------------------------------------------------


def _keep_parents(candidates: dict[str, PlanItem]) -> None:
    """Turn folder deletions into re-creations when descendants need them."""
    for path, item in candidates.items():
        if not item.is_folder or item.action not in _DELETIONS:
            continue
        wanted = (
            PlanAction.UPLOAD_NEW
            if item.action == PlanAction.DELETE_LOCAL
            else PlanAction.DOWNLOAD_NEW
        )
        if any(
            other.action == wanted and is_under(other_path, path)
            for other_path, other in candidates.items()
            if other_path != path
        ):
            candidates[path] = item.model_copy(
                update={
                    "action": wanted,
                    "reason": "re-created: contains new content",
                }
            )


def _protect_unlisted(
    candidates: dict[str, PlanItem],
    remote: RemoteTree,
    skipped: list[SkippedItem],
) -> None:
    """Keep remote folders that hold nodes this client cannot see.

    Deleting such a folder would take the blocked or skipped nodes with it.
    """
    hidden = [*remote.blocked, *(s.relative_path for s in remote.skipped)]
    for path, item in list(candidates.items()):
        if not item.is_folder or item.action != PlanAction.DELETE_REMOTE:
            continue
        if any(h != path and is_under(h, path) for h in hidden):
            logger.warning(
                "Not deleting remote folder %s: it holds unlisted content", path
            )
            del candidates[path]
            skipped.append(
                SkippedItem(
                    relative_path=path,
                    reason="contains content that cannot be listed",
                )
            )


def _gate(
    items: Iterable[PlanItem],
    remote: RemoteTree,
    skipped: list[SkippedItem],
) -> list[PlanItem]:
    """Move items that lack a capability into *skipped*."""
    kept: list[PlanItem] = []
    failed_creations: list[str] = []
    for item in sorted(items, key=lambda i: (depth(i.relative_path), i.relative_path)):
        path = item.relative_path
        if item.action in _CREATIONS and any(
            is_under(path, f) for f in failed_creations
        ):
            skipped.append(
                SkippedItem(relative_path=path, reason="parent folder not created")
            )
            if item.is_folder:
                failed_creations.append(path)
            continue

        parent = remote_parent(path, remote.nodes, remote.root)
        missing = missing_capability(item.action, item.remote, parent)
        if missing is not None:
            logger.info("Skipping %s on %s: missing %s", item.action.value, path, missing)
            skipped.append(
                SkippedItem(
                    relative_path=path,
                    reason=f"permission denied: missing {missing}",
                )
            )
            if item.is_folder and item.action in _CREATIONS:
                failed_creations.append(path)
            continue
        kept.append(item)
    return kept


def _order_key(item: PlanItem) -> tuple[int, int, str]:
    path = item.relative_path
    if item.action == PlanAction.NONE:
        return (0, 0, path)
    if item.is_folder and item.action in _CREATIONS:
        return (1, depth(path), path)
    if item.action in _DELETIONS:
        return (3, -depth(path), path)
    return (2, 0, path)
