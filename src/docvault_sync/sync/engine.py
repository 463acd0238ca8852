"""Sync engine: per-folder state machine and pass orchestration.

The ``SyncEngine`` ties together the registries, snapshot store, planner,
resolver and transfer executor.  A pass over one folder:

1. Acquires the folder's lock (a trigger while it is held is coalesced).
2. Moves the folder ``active -> syncing``.
3. Resolves the owning account's token.
4. Builds the plan from the remote tree, the local tree and the snapshot.
5. Applies plan items in order, consulting the resolver for conflicts,
   and saves the snapshot after every item that changed it.
6. Ends ``completed``, ``error`` (first fatal failure) or ``paused``
   (cancelled by ``disable``).

Error handling is per-item: a single path failing does not abort the
pass.  ``AuthError`` aborts the pass; within one ``sync_all`` round the
remaining passes of that account fail without issuing requests.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, AsyncIterator, Callable, ContextManager

from ..core.async_utils import init_semaphore, run_sync
from ..core.interfaces import RemoteDocumentService
from ..errors import (
    AuthError,
    InvalidTransition,
    NotFound,
    PermissionDenied,
    SyncError,
)
from .integrity import IntegrityValidator
from .models import (
    ALLOWED_TRANSITIONS,
    Account,
    ConflictPolicy,
    ConflictPrompt,
    ItemResult,
    NodeKind,
    PassReport,
    PlanAction,
    PlanItem,
    RemoteNode,
    SkippedItem,
    SnapshotEntry,
    StatusEvent,
    SyncFolder,
    SyncPlan,
    SyncStatus,
)
from .planner import (
    DEFAULT_IGNORE_PATTERNS,
    REASON_IDENTICAL,
    DiffPlanner,
    direction_allows,
    is_under,
    missing_capability,
    parent_path,
)
from .resolver import resolve, summarize_local, summarize_remote
from .state import SnapshotStore
from .transfer import TransferExecutor

if TYPE_CHECKING:
    from ..credentials import CredentialContext
    from ..registry.accounts import AccountRegistry
    from ..registry.folders import SyncFolderRegistry

logger = logging.getLogger(__name__)

StatusListener = Callable[[StatusEvent], None]
ConflictListener = Callable[[ConflictPrompt], None]

_UNSET = object()

USER_FOLDER_FIELDS = frozenset(
    {"sync_direction", "conflict_resolution", "local_path", "remote_folder_path"}
)

_DECISION_ALIASES = {
    PlanAction.DOWNLOAD_UPDATE: ConflictPolicy.REMOTE_WINS,
    PlanAction.UPLOAD_UPDATE: ConflictPolicy.LOCAL_WINS,
    PlanAction.DOWNLOAD_NEW: ConflictPolicy.CREATE_COPY,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def decision_policy(choice: ConflictPolicy | PlanAction | str) -> ConflictPolicy:
    """Map a decision (policy or equivalent action) to a ``ConflictPolicy``.

    Raises:
        ValueError: If *choice* does not settle a conflict.
    """
    policy: ConflictPolicy | None = None
    if isinstance(choice, ConflictPolicy):
        policy = choice
    elif isinstance(choice, PlanAction):
        policy = _DECISION_ALIASES.get(choice)
    else:
        try:
            policy = ConflictPolicy(choice)
        except ValueError:
            try:
                policy = _DECISION_ALIASES.get(PlanAction(choice))
            except ValueError:
                policy = None
    if policy is None or policy == ConflictPolicy.ASK_USER:
        raise ValueError(
            f"Invalid decision: '{choice}'. Choose one of remote_wins, "
            "local_wins, create_copy"
        )
    return policy


class _PassHandle:
    """Control block of one running pass."""

    def __init__(self, folder_id: str, account_id: str, held: bool) -> None:
        self.folder_id = folder_id
        self.account_id = account_id
        self.cancelled = False
        self.resume = asyncio.Event()
        if not held:
            self.resume.set()
        self.parked = asyncio.Event()
        self.done = asyncio.Event()


@dataclass
class _PassContext:
    folder: SyncFolder
    token: str
    root: Path
    state: dict
    root_node: RemoteNode
    folder_nodes: dict[str, RemoteNode] = field(default_factory=dict)
    dirty: bool = False


@dataclass
class _Outcome:
    results: list[ItemResult] = field(default_factory=list)
    skipped: list[SkippedItem] = field(default_factory=list)
    fatal: str | None = None
    cancelled: bool = False

    def fail(self, message: str) -> None:
        if self.fatal is None:
            self.fatal = message

    def add(self, result: ItemResult) -> None:
        self.results.append(result)
        if not result.success:
            self.fail(f"{result.relative_path}: {result.error}")
        elif result.skipped:
            self.skipped.append(
                SkippedItem(
                    relative_path=result.relative_path,
                    reason=result.error or "skipped",
                )
            )


class SyncEngine:
    """Schedule and run sync passes across folders and accounts.

    Args:
        accounts: Account registry; the engine registers its checkpoint
            barrier with it.
        folders: Sync folder registry.
        snapshots: Per-folder snapshot store.
        service: Remote document service.  A service with an
            ``account_scope(account)`` context manager (``ServiceDirectory``)
            is entered for each pass so calls reach the account's server.
        credentials: Token resolution.
        validator: Checksum validator (SHA-256 by default).
        max_parallel_passes: Passes running at once across all folders.
        max_parallel_requests: Concurrent calls to the service.
        max_transfer_attempts: Attempts per transfer.
        backoff_base: First retry delay in seconds.
        backoff_max: Maximum retry delay in seconds.
        ignore_patterns: Names ignored on both sides.
        transfers: Pre-built executor (tests inject one with a no-op sleep).
    """

    def __init__(
        self,
        accounts: AccountRegistry,
        folders: SyncFolderRegistry,
        snapshots: SnapshotStore,
        service: RemoteDocumentService,
        credentials: CredentialContext,
        validator: IntegrityValidator | None = None,
        max_parallel_passes: int = 2,
        max_parallel_requests: int = 4,
        max_transfer_attempts: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 8.0,
        ignore_patterns: tuple[str, ...] = DEFAULT_IGNORE_PATTERNS,
        transfers: TransferExecutor | None = None,
    ) -> None:
        self._accounts = accounts
        self._folders = folders
        self._snapshots = snapshots
        self._credentials = credentials
        self._service = service
        self._validator = validator or IntegrityValidator()
        self._planner = DiffPlanner(service, self._validator, ignore_patterns)
        self._transfers = transfers or TransferExecutor(
            service,
            self._validator,
            max_attempts=max_transfer_attempts,
            backoff_base=backoff_base,
            backoff_max=backoff_max,
            is_ignored=self._planner.is_ignored,
        )

        init_semaphore(max_parallel_requests)
        self._pass_slots = asyncio.Semaphore(max_parallel_passes)
        self._locks: dict[str, asyncio.Lock] = {}
        self._handles: dict[str, _PassHandle] = {}
        self._held: dict[str, int] = {}
        self._cancel_requests: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._status_listeners: list[StatusListener] = []
        self._conflict_listeners: list[ConflictListener] = []

        accounts.add_switch_barrier(self.checkpoint_barrier)
        self._recover_interrupted()

    @property
    def planner(self) -> DiffPlanner:
        return self._planner

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def subscribe(
        self,
        on_status: StatusListener | None = None,
        on_conflict: ConflictListener | None = None,
    ) -> Callable[[], None]:
        """Register listeners; returns a callable that unregisters them."""
        if on_status is not None:
            self._status_listeners.append(on_status)
        if on_conflict is not None:
            self._conflict_listeners.append(on_conflict)

        def unsubscribe() -> None:
            if on_status in self._status_listeners:
                self._status_listeners.remove(on_status)
            if on_conflict in self._conflict_listeners:
                self._conflict_listeners.remove(on_conflict)

        return unsubscribe

    def _emit(self, listeners: list, event: StatusEvent | ConflictPrompt) -> None:
        for listener in list(listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Listener failed for %s", type(event).__name__)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _transition(
        self,
        folder: SyncFolder,
        new_status: SyncStatus,
        last_error: object = _UNSET,
        **extra: object,
    ) -> SyncFolder:
        old_status = folder.status
        if new_status not in ALLOWED_TRANSITIONS[old_status]:
            raise InvalidTransition(
                f"Folder {folder.id}: {old_status.value} -> "
                f"{new_status.value} is not allowed"
            )
        update = dict(extra)
        update["status"] = new_status
        if last_error is not _UNSET:
            update["last_error"] = last_error
        updated = self._folders.update(folder, **update)
        logger.info(
            "Folder %s: %s -> %s", folder.id, old_status.value, new_status.value
        )
        self._emit(
            self._status_listeners,
            StatusEvent(
                folder_id=folder.id,
                old_status=old_status,
                new_status=new_status,
                last_error=updated.last_error,
            ),
        )
        return updated

    def _recover_interrupted(self) -> None:
        """Mark folders left ``syncing`` by a previous process as failed."""
        for folder in self._folders.list_folders():
            if folder.status == SyncStatus.SYNCING:
                logger.warning("Folder %s was interrupted mid-pass", folder.id)
                self._transition(
                    folder, SyncStatus.ERROR, last_error="pass interrupted"
                )

    def _service_scope(self, account: Account) -> ContextManager[None]:
        scope = getattr(self._service, "account_scope", None)
        return scope(account) if scope is not None else nullcontext()

    def _lock_for(self, folder_id: str) -> asyncio.Lock:
        lock = self._locks.get(folder_id)
        if lock is None:
            lock = self._locks[folder_id] = asyncio.Lock()
        return lock

    def _require(self, folder: SyncFolder | str) -> SyncFolder:
        folder_id = folder if isinstance(folder, str) else folder.id
        found = self._folders.get(folder_id)
        if found is None:
            raise KeyError(f"Unknown sync folder: {folder_id}")
        return found

    # ------------------------------------------------------------------
    # User operations
    # ------------------------------------------------------------------

    async def enable(self, folder: SyncFolder | str) -> SyncFolder:
        """Enable the folder (``paused -> active``)."""
        folder_id = self._require(folder).id
        async with self._lock_for(folder_id):
            current = self._require(folder_id)
            if current.status == SyncStatus.PAUSED:
                return self._transition(current, SyncStatus.ACTIVE, is_enabled=True)
            if not current.is_enabled:
                return self._folders.update(current, is_enabled=True)
            return current

    async def disable(self, folder: SyncFolder | str) -> SyncFolder:
        """Disable the folder (any state ``-> paused``).

        A running pass is cancelled at its next checkpoint; this waits for
        it to end before recording the change.
        """
        folder_id = self._require(folder).id
        handle = self._handles.get(folder_id)
        if handle is not None:
            handle.cancelled = True
            logger.info("Cancelling running pass for folder %s", folder_id)
        elif self._lock_for(folder_id).locked():
            self._cancel_requests.add(folder_id)
        async with self._lock_for(folder_id):
            self._cancel_requests.discard(folder_id)
            current = self._require(folder_id)
            if current.status != SyncStatus.PAUSED:
                current = self._transition(current, SyncStatus.PAUSED)
            if current.is_enabled:
                current = self._folders.update(current, is_enabled=False)
            return current

    async def update_folder(
        self, folder: SyncFolder | str, **mutation: object
    ) -> SyncFolder:
        """Change the folder's direction, conflict policy or local path.

        Waits for a running pass of the folder to end, so the change takes
        effect with the next pass.  Moving ``local_path`` discards the
        snapshot: the new directory is merged like a first sync.

        Raises:
            ValueError: For fields outside ``USER_FOLDER_FIELDS``; status
                changes go through ``enable`` and ``disable``.
        """
        refused = sorted(set(mutation) - USER_FOLDER_FIELDS)
        if refused:
            raise ValueError(
                f"Cannot change {', '.join(refused)} of a sync folder; "
                "use enable/disable for its status"
            )
        folder_id = self._require(folder).id
        async with self._lock_for(folder_id):
            current = self._require(folder_id)
            updated = self._folders.update(current, **mutation)
            if updated.local_path != current.local_path:
                await run_sync(self._snapshots.discard, folder_id)
                logger.info(
                    "Folder %s moved to %s; snapshot reset",
                    folder_id,
                    updated.local_path,
                )
        logger.info("Updated folder %s: %s", folder_id, ", ".join(sorted(mutation)))
        return updated

    async def remove_folder(self, folder: SyncFolder | str) -> None:
        """Disable, then remove the folder and its snapshot."""
        folder_id = self._require(folder).id
        await self.disable(folder_id)
        async with self._lock_for(folder_id):
            self._folders.remove(folder_id)
        self._locks.pop(folder_id, None)

    async def decide(
        self,
        folder: SyncFolder | str,
        relative_path: str,
        choice: ConflictPolicy | PlanAction | str,
    ) -> None:
        """Record the decision for a deferred conflict.

        The decision is applied by the folder's next pass.

        Raises:
            ValueError: If *choice* is not a resolving policy.
            KeyError: If no decision is pending for *relative_path*.
        """
        policy = decision_policy(choice)
        folder_id = self._require(folder).id
        async with self._lock_for(folder_id):
            state = await run_sync(self._snapshots.load, folder_id)
            if relative_path not in self._snapshots.pending(state):
                raise KeyError(
                    f"No pending decision for '{relative_path}' in folder {folder_id}"
                )
            self._snapshots.record_decision(state, relative_path, policy.value)
            await run_sync(self._snapshots.save, folder_id, state)
        logger.info(
            "Recorded decision %s for %s in folder %s",
            policy.value,
            relative_path,
            folder_id,
        )

    def pending_decisions(self, folder: SyncFolder | str) -> list[ConflictPrompt]:
        """Conflicts of *folder* awaiting a decision."""
        folder_id = self._require(folder).id
        state = self._snapshots.load(folder_id)
        return [
            ConflictPrompt.model_validate(raw)
            for _, raw in sorted(self._snapshots.pending(state).items())
        ]

    async def preview(self, folder: SyncFolder | str) -> SyncPlan:
        """Build the folder's next plan without applying it."""
        current = self._require(folder)
        account = self._accounts.get(current.account_id)
        if account is None:
            raise AuthError(f"Account {current.account_id} does not exist")
        token = self._credentials.resolve_token(account.key)
        state = await run_sync(self._snapshots.load, current.id)
        with self._service_scope(account):
            return await self._planner.build_plan(
                token, current, self._snapshots.entries(state)
            )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def trigger(self, folder: SyncFolder | str) -> asyncio.Task:
        """Schedule a pass as an independent task."""
        folder_id = self._require(folder).id
        task = asyncio.create_task(
            self.run_pass(folder_id), name=f"sync-pass-{folder_id}"
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def run_pass(
        self,
        folder: SyncFolder | str,
        failed_accounts: set[str] | None = None,
    ) -> PassReport | None:
        """Run one pass over *folder*.

        Returns:
            The pass report, or ``None`` if the trigger was coalesced with a
            running pass or the folder is disabled.
        """
        folder_id = self._require(folder).id
        lock = self._lock_for(folder_id)
        if lock.locked():
            logger.info("Pass for folder %s already running; coalesced", folder_id)
            return None
        async with lock:
            current = self._require(folder_id)
            if not current.is_enabled:
                logger.info("Folder %s is disabled; no pass", folder_id)
                return None
            async with self._pass_slots:
                return await self._run_pass(
                    current, failed_accounts if failed_accounts is not None else set()
                )

    async def sync_all(self) -> list[PassReport]:
        """Run one pass over every enabled folder, concurrently."""
        failed_accounts: set[str] = set()
        folders = self._folders.enabled()
        logger.info("Sync round over %d folders", len(folders))
        reports = await asyncio.gather(
            *(self.run_pass(f, failed_accounts) for f in folders)
        )
        return [r for r in reports if r is not None]

    async def drain(self) -> None:
        """Wait for every pass scheduled with ``trigger``."""
        tasks = list(self._tasks)
        if not tasks:
            return
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                logger.error("Scheduled pass failed: %s", result)

    @asynccontextmanager
    async def checkpoint_barrier(self, account_id: str) -> AsyncIterator[None]:
        """Park every pass of *account_id* at its next checkpoint.

        Entered by ``AccountRegistry`` around an account switch or removal.
        Passes that start while the barrier is held park at their first
        checkpoint, before any request is made.
        """
        self._held[account_id] = self._held.get(account_id, 0) + 1
        handles = [h for h in self._handles.values() if h.account_id == account_id]
        for handle in handles:
            handle.resume.clear()
        try:
            for handle in handles:
                await _wait_parked_or_done(handle)
            logger.debug(
                "Barrier for account %s holds %d passes", account_id, len(handles)
            )
            yield
        finally:
            self._held[account_id] -= 1
            if self._held[account_id] == 0:
                del self._held[account_id]
                for handle in self._handles.values():
                    if handle.account_id == account_id:
                        handle.resume.set()

    async def _checkpoint(self, handle: _PassHandle) -> None:
        if not handle.resume.is_set():
            handle.parked.set()
            await handle.resume.wait()
            handle.parked.clear()
        if self._accounts.get(handle.account_id) is None:
            raise AuthError(f"Account {handle.account_id} was removed")

    # ------------------------------------------------------------------
    # Pass
    # ------------------------------------------------------------------

    async def _run_pass(
        self, folder: SyncFolder, failed_accounts: set[str]
    ) -> PassReport:
        started_at = _now().isoformat()
        if folder.status in (SyncStatus.COMPLETED, SyncStatus.ERROR, SyncStatus.PAUSED):
            folder = self._transition(folder, SyncStatus.ACTIVE)
        folder = self._transition(folder, SyncStatus.SYNCING)

        handle = _PassHandle(
            folder.id, folder.account_id, held=folder.account_id in self._held
        )
        handle.cancelled = folder.id in self._cancel_requests
        self._handles[folder.id] = handle
        outcome = _Outcome()
        try:
            await self._execute(folder, handle, outcome, failed_accounts)
        except AuthError as exc:
            failed_accounts.add(folder.account_id)
            logger.error("Pass for folder %s: authentication failed: %s", folder.id, exc)
            outcome.fail(f"authentication failed: {exc}")
        except (SyncError, OSError) as exc:
            logger.error("Pass for folder %s failed: %s", folder.id, exc)
            outcome.fail(str(exc))
        except Exception as exc:
            logger.exception("Pass for folder %s failed", folder.id)
            outcome.fail(str(exc))
        finally:
            self._handles.pop(folder.id, None)
            handle.done.set()

        return self._finish(folder.id, outcome, started_at)

    async def _execute(
        self,
        folder: SyncFolder,
        handle: _PassHandle,
        outcome: _Outcome,
        failed_accounts: set[str],
    ) -> None:
        await self._checkpoint(handle)
        if handle.cancelled:
            outcome.cancelled = True
            return
        if folder.account_id in failed_accounts:
            raise AuthError(
                f"Account {folder.account_id} failed authentication in this round"
            )
        account = self._accounts.get(folder.account_id)
        if account is None:
            raise AuthError(f"Account {folder.account_id} was removed")
        token = self._credentials.resolve_token(account.key)
        with self._service_scope(account):
            await self._apply_plan(folder, handle, outcome, token)

    async def _apply_plan(
        self,
        folder: SyncFolder,
        handle: _PassHandle,
        outcome: _Outcome,
        token: str,
    ) -> None:
        state = await run_sync(self._snapshots.load, folder.id)
        entries = self._snapshots.entries(state)
        root = Path(folder.local_path)
        await run_sync(_prepare_root, root, bool(entries))

        plan = await self._planner.build_plan(token, folder, entries)
        outcome.skipped.extend(plan.skipped)
        ctx = _PassContext(
            folder=folder,
            token=token,
            root=root,
            state=state,
            root_node=plan.root or RemoteNode(
                id=folder.remote_folder_id,
                name=folder.remote_folder_name,
                kind=NodeKind.FOLDER,
            ),
            folder_nodes={
                i.relative_path: i.remote
                for i in plan.items
                if i.remote is not None and i.remote.is_folder
            },
        )

        conflicts: set[str] = set()
        for item in plan.items:
            await self._checkpoint(handle)
            if handle.cancelled:
                outcome.cancelled = True
                logger.info("Pass for folder %s cancelled", folder.id)
                break
            if item.action == PlanAction.CONFLICT:
                conflicts.add(item.relative_path)
            for result in await self._apply_item(ctx, item, outcome):
                outcome.add(result)
            await self._save_if_dirty(ctx)
        else:
            for path in self._snapshots.pending(state):
                if path not in conflicts:
                    self._snapshots.clear_conflict(state, path)
                    ctx.dirty = True
            await self._save_if_dirty(ctx)

    async def _save_if_dirty(self, ctx: _PassContext) -> None:
        if ctx.dirty:
            await run_sync(self._snapshots.save, ctx.folder.id, ctx.state)
            ctx.dirty = False

    def _finish(
        self, folder_id: str, outcome: _Outcome, started_at: str
    ) -> PassReport:
        folder = self._require(folder_id)
        finished = _now()
        if outcome.cancelled:
            if outcome.fatal is not None:
                folder = self._transition(
                    folder, SyncStatus.PAUSED, last_error=outcome.fatal
                )
            else:
                folder = self._transition(folder, SyncStatus.PAUSED)
        elif outcome.fatal is not None:
            folder = self._transition(
                folder, SyncStatus.ERROR, last_error=outcome.fatal
            )
        else:
            folder = self._transition(
                folder,
                SyncStatus.COMPLETED,
                last_error=None,
                last_sync_at=finished,
            )
            self._accounts.record_sync(folder.account_id, finished)

        report = PassReport(
            folder_id=folder.id,
            account_id=folder.account_id,
            status=folder.status,
            started_at=started_at,
            completed_at=finished.isoformat(),
            results=outcome.results,
            skipped=outcome.skipped,
            cancelled=outcome.cancelled,
            error=outcome.fatal,
        )
        logger.info(
            "Pass for folder %s ended %s: %d downloaded, %d uploaded, "
            "%d failures",
            folder.id,
            folder.status.value,
            len(report.downloaded),
            len(report.uploaded),
            len(report.failures),
        )
        return report

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    async def _apply_item(
        self, ctx: _PassContext, item: PlanItem, outcome: _Outcome
    ) -> list[ItemResult]:
        path = item.relative_path
        try:
            if item.action == PlanAction.NONE:
                self._settle_unchanged(ctx, item, outcome)
                return []
            if item.action == PlanAction.CONFLICT:
                return await self._apply_conflict(ctx, item)
            result = await self._apply_transfer(ctx, item.action, item)
            self._clear_pending(ctx, path)
            return [result]
        except AuthError:
            raise
        except PermissionDenied as exc:
            logger.warning("Skipping %s: %s", path, exc)
            return [
                ItemResult(
                    relative_path=path,
                    action=item.action,
                    success=True,
                    skipped=True,
                    error=str(exc),
                )
            ]
        except (SyncError, OSError) as exc:
            logger.error("Error applying %s to %s: %s", item.action.value, path, exc)
            return [_failure(path, item.action, exc)]
        except Exception as exc:
            logger.exception("Error applying %s to %s", item.action.value, path)
            return [_failure(path, item.action, exc)]

    def _settle_unchanged(
        self, ctx: _PassContext, item: PlanItem, outcome: _Outcome
    ) -> None:
        """Keep the snapshot entry of an unchanged path current."""
        path, local, remote, base = (
            item.relative_path,
            item.local,
            item.remote,
            item.base,
        )
        if item.demoted:
            outcome.skipped.append(
                SkippedItem(relative_path=path, reason=item.reason or "demoted")
            )
            return
        self._clear_pending(ctx, path)
        if local is None and remote is None:
            if base is not None:
                self._snapshots.remove_entry(ctx.state, path)
                ctx.dirty = True
            return
        if local is None or remote is None:
            return
        if local.is_folder:
            if base is None or base.remote_id != remote.id:
                self._record(ctx, path, NodeKind.FOLDER, remote.id, remote.version, None)
            return
        if (
            base is None
            or item.reason == REASON_IDENTICAL
            or base.remote_id != remote.id
            or base.remote_version != remote.version
            or base.size != local.size
            or base.local_mtime != local.modified_at
        ):
            self._record(
                ctx, path, NodeKind.FILE, remote.id, remote.version, local.checksum
            )

    async def _apply_transfer(
        self, ctx: _PassContext, action: PlanAction, item: PlanItem
    ) -> ItemResult:
        path = item.relative_path
        local_path = ctx.root / path
        remote = item.remote

        if action in (PlanAction.DOWNLOAD_NEW, PlanAction.DOWNLOAD_UPDATE):
            if remote is None:
                raise SyncError(f"{path}: nothing to download")
            if remote.is_folder:
                await run_sync(local_path.mkdir, parents=True, exist_ok=True)
                self._record(ctx, path, NodeKind.FOLDER, remote.id, remote.version, None)
            else:
                checksum = await self._transfers.download(
                    ctx.token, remote, local_path, path
                )
                self._record(
                    ctx, path, NodeKind.FILE, remote.id, remote.version, checksum
                )

        elif action in (PlanAction.UPLOAD_NEW, PlanAction.UPLOAD_UPDATE):
            parent_id = self._remote_parent_id(ctx, path)
            name = PurePosixPath(path).name
            if item.local is not None and item.local.is_folder:
                node = await self._transfers.create_remote_folder(
                    ctx.token, parent_id, name
                )
                ctx.folder_nodes[path] = node
                self._record(ctx, path, NodeKind.FOLDER, node.id, node.version, None)
            else:
                node, checksum = await self._transfers.upload(
                    ctx.token, local_path, parent_id, name, path
                )
                self._record(ctx, path, NodeKind.FILE, node.id, node.version, checksum)

        elif action == PlanAction.DELETE_LOCAL:
            if not await self._transfers.delete_local(local_path):
                return ItemResult(
                    relative_path=path,
                    action=action,
                    success=True,
                    skipped=True,
                    error="directory not empty",
                )
            self._forget(ctx, path)

        elif action == PlanAction.DELETE_REMOTE:
            if remote is None:
                raise SyncError(f"{path}: nothing to delete remotely")
            await self._transfers.delete_remote(ctx.token, remote)
            self._forget(ctx, path)

        return ItemResult(relative_path=path, action=action, success=True)

    async def _apply_conflict(
        self, ctx: _PassContext, item: PlanItem
    ) -> list[ItemResult]:
        path = item.relative_path
        local, remote = item.local, item.remote
        if local is None or remote is None:
            raise SyncError(f"{path}: a conflict needs both sides")

        decision = self._snapshots.decision(ctx.state, path)
        policy = (
            ConflictPolicy(decision) if decision else ctx.folder.conflict_resolution
        )
        resolution = resolve(local, remote, item.base, policy)

        if resolution.action == PlanAction.NONE:
            self._record(
                ctx, path, NodeKind.FILE, remote.id, remote.version, local.checksum
            )
            self._clear_pending(ctx, path)
            return [ItemResult(relative_path=path, action=PlanAction.CONFLICT, success=True)]

        if resolution.action == PlanAction.PENDING_DECISION:
            prompt = ConflictPrompt(
                folder_id=ctx.folder.id,
                relative_path=path,
                local_summary=summarize_local(local),
                remote_summary=summarize_remote(remote),
                raised_at=_now().isoformat(),
            )
            self._snapshots.mark_pending(ctx.state, path, prompt.model_dump(mode="json"))
            ctx.dirty = True
            logger.info("Conflict on %s deferred for a decision", path)
            self._emit(self._conflict_listeners, prompt)
            return [
                ItemResult(
                    relative_path=path,
                    action=PlanAction.PENDING_DECISION,
                    success=True,
                    deferred=True,
                )
            ]

        results: list[ItemResult] = []
        if resolution.upload_original:
            results = await self._keep_both(ctx, item, resolution.target_path)
        else:
            blocked = self._blocked(ctx, resolution.action, item)
            if blocked is not None:
                return [
                    ItemResult(
                        relative_path=path,
                        action=PlanAction.CONFLICT,
                        success=True,
                        skipped=True,
                        error=blocked,
                    )
                ]
            if resolution.action == PlanAction.DOWNLOAD_UPDATE:
                logger.info(
                    "Conflict on %s: remote wins, overwriting local content %s",
                    path,
                    local.checksum,
                )
            results.append(await self._apply_transfer(ctx, resolution.action, item))

        self._clear_pending(ctx, path)
        results.insert(
            0,
            ItemResult(
                relative_path=path,
                action=PlanAction.CONFLICT,
                success=True,
                target_path=resolution.target_path,
            ),
        )
        return results

    async def _keep_both(
        self, ctx: _PassContext, item: PlanItem, copy_path: str
    ) -> list[ItemResult]:
        """Download the remote side next to the original; upload the original."""
        path = item.relative_path
        local, remote = item.local, item.remote
        if local is None or remote is None:
            raise SyncError(f"{path}: a conflict needs both sides")
        results: list[ItemResult] = []

        downloaded = False
        if self._blocked(ctx, PlanAction.DOWNLOAD_NEW, item) is None:
            checksum = await self._transfers.download(
                ctx.token, remote, ctx.root / copy_path, copy_path
            )
            downloaded = True
            results.append(
                ItemResult(
                    relative_path=copy_path,
                    action=PlanAction.DOWNLOAD_NEW,
                    success=True,
                    target_path=copy_path,
                )
            )
            copy_item = PlanItem(
                relative_path=copy_path, action=PlanAction.UPLOAD_NEW
            )
            if self._blocked(ctx, PlanAction.UPLOAD_NEW, copy_item) is None:
                node, checksum = await self._transfers.upload(
                    ctx.token,
                    ctx.root / copy_path,
                    self._remote_parent_id(ctx, copy_path),
                    PurePosixPath(copy_path).name,
                    copy_path,
                )
                self._record(
                    ctx, copy_path, NodeKind.FILE, node.id, node.version, checksum
                )
                results.append(
                    ItemResult(
                        relative_path=copy_path,
                        action=PlanAction.UPLOAD_NEW,
                        success=True,
                    )
                )
            else:
                self._record(ctx, copy_path, NodeKind.FILE, None, None, checksum)

        if self._blocked(ctx, PlanAction.UPLOAD_UPDATE, item) is None:
            results.append(
                await self._apply_transfer(ctx, PlanAction.UPLOAD_UPDATE, item)
            )
        elif downloaded:
            # Original keeps its local content; its base is the remote side.
            self._record(
                ctx,
                path,
                NodeKind.FILE,
                remote.id,
                remote.version,
                remote.checksum,
                stat_local=False,
            )
        else:
            results.append(
                ItemResult(
                    relative_path=path,
                    action=PlanAction.CONFLICT,
                    success=True,
                    skipped=True,
                    error="neither side may be written",
                )
            )
        return results

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _blocked(
        self, ctx: _PassContext, action: PlanAction, item: PlanItem
    ) -> str | None:
        """Why *action* may not run for *item* in this folder, if it may not."""
        direction = ctx.folder.sync_direction
        if not direction_allows(direction, action):
            return f"{direction.value}: {action.value} not propagated"
        parent = self._remote_parent_node(ctx, item.relative_path)
        missing = missing_capability(action, item.remote, parent)
        if missing is not None:
            return f"permission denied: missing {missing}"
        return None

    def _remote_parent_node(self, ctx: _PassContext, path: str) -> RemoteNode:
        current = parent_path(path)
        while current:
            node = ctx.folder_nodes.get(current)
            if node is not None:
                return node
            current = parent_path(current)
        return ctx.root_node

    def _remote_parent_id(self, ctx: _PassContext, path: str) -> str:
        parent = parent_path(path)
        if not parent:
            return ctx.folder.remote_folder_id
        node = ctx.folder_nodes.get(parent)
        if node is not None:
            return node.id
        entry = self._snapshots.get_entry(ctx.state, parent)
        if entry is not None and entry.remote_id:
            return entry.remote_id
        raise NotFound(f"Remote folder for '{parent}' does not exist")

    def _record(
        self,
        ctx: _PassContext,
        path: str,
        kind: NodeKind,
        remote_id: str | None,
        remote_version: int | None,
        checksum: str | None,
        stat_local: bool = True,
    ) -> None:
        size = mtime = None
        full = ctx.root / path
        if stat_local and kind == NodeKind.FILE and full.is_file():
            stat = full.stat()
            size, mtime = stat.st_size, stat.st_mtime
        self._snapshots.update_entry(
            ctx.state,
            path,
            SnapshotEntry(
                remote_id=remote_id,
                remote_version=remote_version,
                checksum=checksum,
                kind=kind,
                size=size,
                local_mtime=mtime,
                synced_at=_now().isoformat(),
            ),
        )
        ctx.dirty = True

    def _forget(self, ctx: _PassContext, path: str) -> None:
        for entry_path in list(ctx.state.get("entries", {})):
            if is_under(entry_path, path):
                self._snapshots.remove_entry(ctx.state, entry_path)
        ctx.dirty = True

    def _clear_pending(self, ctx: _PassContext, path: str) -> None:
        if path in ctx.state.get("pending", {}) or path in ctx.state.get(
            "decisions", {}
        ):
            self._snapshots.clear_conflict(ctx.state, path)
            ctx.dirty = True


# ---------------------------------------------------------------------------
# Module helpers
# ---------------------------------------------------------------------------


def _prepare_root(root: Path, has_snapshot: bool) -> None:
    """Create the local root for a first pass; refuse a vanished one."""
    if root.is_dir():
        return
    if has_snapshot:
        raise SyncError(
            f"Local folder {root} is missing; not propagating deletions"
        )
    root.mkdir(parents=True, exist_ok=True)


def _failure(path: str, action: PlanAction, exc: Exception) -> ItemResult:
    return ItemResult(
        relative_path=path, action=action, success=False, error=str(exc)
    )


async def _wait_parked_or_done(handle: _PassHandle) -> None:
    waiters = [
        asyncio.ensure_future(handle.parked.wait()),
        asyncio.ensure_future(handle.done.wait()),
    ]
    try:
        await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()
