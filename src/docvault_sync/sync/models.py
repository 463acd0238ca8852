"""Pydantic models for the reconciliation engine.

Defines the core data contracts used across all sync modules:

- ``Account`` / ``SyncFolder``: registry records.
- ``RemoteNode`` / ``LocalNode``: the two current trees.
- ``SnapshotEntry``: the per-path base of the three-way diff.
- ``PlanItem`` / ``SyncPlan``: the planner's output.
- ``Resolution``: the conflict resolver's output.
- ``ItemResult`` / ``PassReport``: outcome of a pass.
- ``StatusEvent`` / ``ConflictPrompt``: notification payloads.

All models are frozen (immutable); records are changed with
``model_copy(update=...)``.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, field_validator


class SyncStatus(str, Enum):
    """Lifecycle status of a sync folder."""

    PAUSED = "paused"
    ACTIVE = "active"
    SYNCING = "syncing"
    COMPLETED = "completed"
    ERROR = "error"


class SyncDirection(str, Enum):
    """Which side's changes a folder propagates."""

    BIDIRECTIONAL = "bidirectional"
    DOWNLOAD_ONLY = "download_only"
    UPLOAD_ONLY = "upload_only"


class ConflictPolicy(str, Enum):
    """How a folder resolves paths changed on both sides."""

    REMOTE_WINS = "remote_wins"
    LOCAL_WINS = "local_wins"
    ASK_USER = "ask_user"
    CREATE_COPY = "create_copy"


class NodeKind(str, Enum):
    FOLDER = "folder"
    FILE = "file"


class PlanAction(str, Enum):
    """Possible actions for one path in a sync plan."""

    NONE = "none"
    DOWNLOAD_NEW = "download_new"
    DOWNLOAD_UPDATE = "download_update"
    UPLOAD_NEW = "upload_new"
    UPLOAD_UPDATE = "upload_update"
    DELETE_LOCAL = "delete_local"
    DELETE_REMOTE = "delete_remote"
    CONFLICT = "conflict"
    PENDING_DECISION = "pending_decision"


# Actions that write to the remote side / to the local side.
REMOTE_WRITES = frozenset(
    {PlanAction.UPLOAD_NEW, PlanAction.UPLOAD_UPDATE, PlanAction.DELETE_REMOTE}
)
LOCAL_WRITES = frozenset(
    {
        PlanAction.DOWNLOAD_NEW,
        PlanAction.DOWNLOAD_UPDATE,
        PlanAction.DELETE_LOCAL,
    }
)

# Status edges of the folder state machine.
ALLOWED_TRANSITIONS: dict[SyncStatus, frozenset[SyncStatus]] = {
    SyncStatus.PAUSED: frozenset({SyncStatus.ACTIVE}),
    SyncStatus.ACTIVE: frozenset({SyncStatus.SYNCING, SyncStatus.PAUSED}),
    SyncStatus.SYNCING: frozenset(
        {SyncStatus.COMPLETED, SyncStatus.ERROR, SyncStatus.PAUSED}
    ),
    SyncStatus.COMPLETED: frozenset({SyncStatus.ACTIVE, SyncStatus.PAUSED}),
    SyncStatus.ERROR: frozenset({SyncStatus.ACTIVE, SyncStatus.PAUSED}),
}

# Capability strings reported by the document service.
CAP_LIST = "list_folder_content"
CAP_DOWNLOAD = "download_document"
CAP_CREATE = "create_document"
CAP_EDIT = "edit_document_content"
CAP_DELETE_DOCUMENT = "delete_document"
CAP_DELETE_FOLDER = "delete_folder"


# ---------------------------------------------------------------------------
# Registry records
# ---------------------------------------------------------------------------


class Account(BaseModel):
    """A remote account.

    Attributes:
        id: Stable identifier (UUID string).
        display_name: Name shown to the user.
        server_url: Base URL of the document service.
        email: Login email.
        is_active: Whether this is the active account.
        created_at: Creation time; newest account is promoted on removal.
        last_sync_at: Time of the last completed pass of any folder.
    """

    id: str
    display_name: str
    server_url: str
    email: str
    is_active: bool = False
    created_at: datetime
    last_sync_at: datetime | None = None

    model_config = {"frozen": True}

    @property
    def key(self) -> str:
        """Identity key used for credential lookup."""
        return f"{self.server_url}_{self.email}"


class SyncFolder(BaseModel):
    """A remote folder mirrored into a local directory."""

    id: str
    account_id: str
    remote_folder_id: str
    remote_folder_name: str
    remote_folder_path: str = ""
    local_path: str
    status: SyncStatus = SyncStatus.PAUSED
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    conflict_resolution: ConflictPolicy = ConflictPolicy.REMOTE_WINS
    last_sync_at: datetime | None = None
    last_error: str | None = None
    is_enabled: bool = False
    created_at: datetime
    updated_at: datetime

    model_config = {"frozen": True}

    @property
    def display_path(self) -> str:
        if not self.remote_folder_path:
            return self.remote_folder_name
        return f"{self.remote_folder_path}/{self.remote_folder_name}"


# ---------------------------------------------------------------------------
# Tree nodes
# ---------------------------------------------------------------------------


class RemoteNode(BaseModel):
    """A folder or file as reported by the document service."""

    id: str
    name: str
    parent_id: str | None = None
    kind: NodeKind = NodeKind.FILE
    size: int = 0
    checksum: str | None = None
    version: int = 1
    permissions: frozenset[str] = frozenset()
    updated_at: datetime | None = None

    model_config = {"frozen": True}

    @field_validator("checksum")
    @classmethod
    def _lower_checksum(cls, value: str | None) -> str | None:
        return value.lower() if value else None

    @property
    def is_folder(self) -> bool:
        return self.kind == NodeKind.FOLDER

    @property
    def can_traverse(self) -> bool:
        return CAP_LIST in self.permissions

    @property
    def can_download(self) -> bool:
        return CAP_DOWNLOAD in self.permissions

    @property
    def can_create(self) -> bool:
        return CAP_CREATE in self.permissions

    @property
    def can_edit(self) -> bool:
        return CAP_EDIT in self.permissions

    @property
    def can_delete(self) -> bool:
        if self.is_folder:
            return CAP_DELETE_FOLDER in self.permissions
        return CAP_DELETE_DOCUMENT in self.permissions

    @property
    def is_syncable(self) -> bool:
        """Folder may be mirrored: it can be listed and downloaded from."""
        return self.can_traverse and self.can_download

    @property
    def is_writable(self) -> bool:
        return self.can_create or self.can_edit


class LocalNode(BaseModel):
    """A filesystem entry below a sync folder's local path."""

    relative_path: str
    kind: NodeKind = NodeKind.FILE
    size: int = 0
    checksum: str | None = None
    modified_at: float = 0.0

    model_config = {"frozen": True}

    @property
    def is_folder(self) -> bool:
        return self.kind == NodeKind.FOLDER


class SnapshotEntry(BaseModel):
    """Last reconciled state of one path.

    Attributes:
        remote_id: Remote node id, or ``None`` for a local-only baseline
            (e.g. a conflict copy that could not be uploaded).
        remote_version: Remote version at last sync.
        checksum: Content checksum both sides agreed on (files only).
        kind: File or folder.
        size: Local size at last sync (quick check).
        local_mtime: Local modification time at last sync (quick check).
        synced_at: ISO 8601 timestamp of the last successful sync.
    """

    remote_id: str | None = None
    remote_version: int | None = None
    checksum: str | None = None
    kind: NodeKind = NodeKind.FILE
    size: int | None = None
    local_mtime: float | None = None
    synced_at: str | None = None

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Plans and resolutions
# ---------------------------------------------------------------------------


class PlanItem(BaseModel):
    """One path and the action the planner chose for it.

    ``demoted`` marks an item whose change was filtered to ``NONE`` by the
    folder's sync direction; its snapshot entry must not be refreshed.
    """

    relative_path: str
    action: PlanAction
    local: LocalNode | None = None
    remote: RemoteNode | None = None
    base: SnapshotEntry | None = None
    reason: str | None = None
    demoted: bool = False

    model_config = {"frozen": True}

    @property
    def is_folder(self) -> bool:
        node = self.local or self.remote
        if node is not None:
            return node.is_folder
        return self.base is not None and self.base.kind == NodeKind.FOLDER


class SkippedItem(BaseModel):
    """A path excluded from the plan (permissions, type mismatch)."""

    relative_path: str
    reason: str

    model_config = {"frozen": True}


class SyncPlan(BaseModel):
    """Ordered plan for one pass over one folder."""

    folder_id: str
    items: list[PlanItem] = []
    skipped: list[SkippedItem] = []
    root: RemoteNode | None = None

    model_config = {"frozen": True}

    def actions(self) -> dict[str, PlanAction]:
        """Map of relative path to planned action."""
        return {item.relative_path: item.action for item in self.items}

    @property
    def is_noop(self) -> bool:
        return all(item.action == PlanAction.NONE for item in self.items)


class Resolution(BaseModel):
    """Outcome of resolving one conflict.

    Attributes:
        action: Action to perform.
        target_path: Local path receiving downloaded content.
        upload_original: Upload the local original under its own name
            (``create_copy`` only, when the direction permits).
        reason: Why this resolution was chosen.
    """

    action: PlanAction
    target_path: str
    upload_original: bool = False
    reason: str | None = None

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Results and reports
# ---------------------------------------------------------------------------


class ItemResult(BaseModel):
    """Result of applying one plan item."""

    relative_path: str
    action: PlanAction
    success: bool
    skipped: bool = False
    deferred: bool = False
    error: str | None = None
    target_path: str | None = None

    model_config = {"frozen": True}


class PassReport(BaseModel):
    """Aggregate report for one pass over one folder."""

    folder_id: str
    account_id: str
    status: SyncStatus
    started_at: str
    completed_at: str | None = None
    results: list[ItemResult] = []
    skipped: list[SkippedItem] = []
    cancelled: bool = False
    error: str | None = None

    model_config = {"frozen": True}

    def _with_action(self, *actions: PlanAction) -> list[ItemResult]:
        return [
            r
            for r in self.results
            if r.action in actions and r.success and not r.skipped
        ]

    @property
    def downloaded(self) -> list[ItemResult]:
        return self._with_action(
            PlanAction.DOWNLOAD_NEW, PlanAction.DOWNLOAD_UPDATE
        )

    @property
    def uploaded(self) -> list[ItemResult]:
        return self._with_action(
            PlanAction.UPLOAD_NEW, PlanAction.UPLOAD_UPDATE
        )

    @property
    def deleted_local(self) -> list[ItemResult]:
        return self._with_action(PlanAction.DELETE_LOCAL)

    @property
    def deleted_remote(self) -> list[ItemResult]:
        return self._with_action(PlanAction.DELETE_REMOTE)

    @property
    def conflicts(self) -> list[ItemResult]:
        return [r for r in self.results if r.action == PlanAction.CONFLICT]

    @property
    def deferred(self) -> list[ItemResult]:
        return [r for r in self.results if r.deferred]

    @property
    def failures(self) -> list[ItemResult]:
        return [r for r in self.results if not r.success]

    def summary(self) -> str:
        """Format a short human-readable summary of the pass."""
        lines = [
            f"Pass for folder '{self.folder_id}': {self.status.value}"
            + (" (cancelled)" if self.cancelled else ""),
            f"  Downloaded:     {len(self.downloaded)}",
            f"  Uploaded:       {len(self.uploaded)}",
            f"  Deleted local:  {len(self.deleted_local)}",
            f"  Deleted remote: {len(self.deleted_remote)}",
            f"  Conflicts:      {len(self.conflicts)}",
            f"  Deferred:       {len(self.deferred)}",
            f"  Skipped:        {len(self.skipped)}",
            f"  Failures:       {len(self.failures)}",
        ]
        return "\n".join(lines)


class StatusEvent(BaseModel):
    """Emitted on every folder status transition."""

    folder_id: str
    old_status: SyncStatus
    new_status: SyncStatus
    last_error: str | None = None

    model_config = {"frozen": True}


class ConflictPrompt(BaseModel):
    """Emitted for a conflict deferred to an external decision."""

    folder_id: str
    relative_path: str
    local_summary: str
    remote_summary: str
    raised_at: str | None = None

    model_config = {"frozen": True}
