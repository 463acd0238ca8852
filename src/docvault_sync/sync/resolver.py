"""Conflict resolution strategies for the sync engine.

A conflict is a path changed on both sides since the last snapshot.  The
folder's ``ConflictPolicy`` picks a strategy:

- ``RemoteWinsResolver``: download the remote content over the local copy.
- ``LocalWinsResolver``: upload the local content over the remote copy.
- ``CreateCopyResolver``: download the remote content next to the local
  original under a disambiguated name; keep (and upload) the original.
- ``AskUserResolver``: defer the path until a decision is recorded.

``resolve()`` is the pure entry point the engine calls.  Identical content
on both sides collapses to ``NONE`` before any strategy is consulted.
None of the resolvers do I/O.
"""

from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import Protocol

from .models import (
    ConflictPolicy,
    LocalNode,
    PlanAction,
    RemoteNode,
    Resolution,
    SnapshotEntry,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class ConflictStrategy(Protocol):
    """Protocol that all conflict strategies must satisfy."""

    def resolve(
        self,
        local: LocalNode,
        remote: RemoteNode,
        entry: SnapshotEntry | None,
    ) -> Resolution:
        ...  # pragma: no cover


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


class RemoteWinsResolver:
    """Always resolve in favour of the remote content."""

    def resolve(
        self,
        local: LocalNode,
        remote: RemoteNode,
        entry: SnapshotEntry | None,
    ) -> Resolution:
        return Resolution(
            action=PlanAction.DOWNLOAD_UPDATE,
            target_path=local.relative_path,
            reason="remote wins",
        )


class LocalWinsResolver:
    """Always resolve in favour of the local content."""

    def resolve(
        self,
        local: LocalNode,
        remote: RemoteNode,
        entry: SnapshotEntry | None,
    ) -> Resolution:
        return Resolution(
            action=PlanAction.UPLOAD_UPDATE,
            target_path=local.relative_path,
            reason="local wins",
        )


class CreateCopyResolver:
    """Keep both versions.

    The remote content is downloaded into a sibling path derived from the
    remote node's timestamp (or version), so the result only depends on the
    inputs.  The local original stays where it is and is uploaded under its
    own name when the folder's direction permits.
    """

    def resolve(
        self,
        local: LocalNode,
        remote: RemoteNode,
        entry: SnapshotEntry | None,
    ) -> Resolution:
        return Resolution(
            action=PlanAction.DOWNLOAD_NEW,
            target_path=conflict_copy_path(local.relative_path, remote),
            upload_original=True,
            reason="kept both versions",
        )


class AskUserResolver:
    """Defer the conflict to an external decision."""

    def resolve(
        self,
        local: LocalNode,
        remote: RemoteNode,
        entry: SnapshotEntry | None,
    ) -> Resolution:
        return Resolution(
            action=PlanAction.PENDING_DECISION,
            target_path=local.relative_path,
            reason="awaiting decision",
        )


# ---------------------------------------------------------------------------
# Factory and entry point
# ---------------------------------------------------------------------------

_STRATEGY_MAP: dict[ConflictPolicy, type] = {
    ConflictPolicy.REMOTE_WINS: RemoteWinsResolver,
    ConflictPolicy.LOCAL_WINS: LocalWinsResolver,
    ConflictPolicy.CREATE_COPY: CreateCopyResolver,
    ConflictPolicy.ASK_USER: AskUserResolver,
}


def create_resolver(policy: ConflictPolicy | str) -> ConflictStrategy:
    """Create the strategy for *policy*.

    Raises:
        ValueError: If the policy is not recognised.
    """
    try:
        key = ConflictPolicy(policy)
    except ValueError:
        raise ValueError(
            f"Unknown conflict policy: '{policy}'. Valid policies: "
            f"{sorted(p.value for p in ConflictPolicy)}"
        ) from None
    return _STRATEGY_MAP[key]()  # type: ignore[return-value]


def resolve(
    local: LocalNode,
    remote: RemoteNode,
    entry: SnapshotEntry | None,
    policy: ConflictPolicy | str,
) -> Resolution:
    """Decide how to resolve a conflicting path.

    Args:
        local: Current local node.
        remote: Current remote node.
        entry: Snapshot entry for the path, if any.
        policy: The folder's conflict policy (or a recorded decision).

    Returns:
        A ``Resolution``.  Equal checksums always yield ``NONE``.
    """
    if local.checksum and remote.checksum and local.checksum == remote.checksum:
        return Resolution(
            action=PlanAction.NONE,
            target_path=local.relative_path,
            reason="content identical",
        )
    resolution = create_resolver(policy).resolve(local, remote, entry)
    logger.debug(
        "Resolved conflict on %s with policy %s -> %s",
        local.relative_path,
        ConflictPolicy(policy).value,
        resolution.action.value,
    )
    return resolution


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def conflict_copy_path(relative_path: str, remote: RemoteNode) -> str:
    """Return the sibling path that holds the remote side of a conflict.

    ``reports/q3.xlsx`` becomes
    ``reports/q3 (conflicted copy 2026-10-19 120500).xlsx``, or
    ``reports/q3 (conflicted copy v7).xlsx`` when the service reported no
    timestamp.
    """
    path = PurePosixPath(relative_path)
    if remote.updated_at is not None:
        stamp = remote.updated_at.strftime("%Y-%m-%d %H%M%S")
    else:
        stamp = f"v{remote.version}"
    return str(path.with_name(f"{path.stem} (conflicted copy {stamp}){path.suffix}"))


def summarize_local(local: LocalNode | None) -> str:
    """One-line description of the local side for a conflict prompt."""
    if local is None:
        return "deleted locally"
    checksum = (local.checksum or "")[:12]
    return f"local: {local.size} bytes, mtime {local.modified_at:.0f}, checksum {checksum}"


def summarize_remote(remote: RemoteNode | None) -> str:
    """One-line description of the remote side for a conflict prompt."""
    if remote is None:
        return "deleted remotely"
    checksum = (remote.checksum or "")[:12]
    updated = remote.updated_at.isoformat() if remote.updated_at else "unknown"
    return (
        f"remote: {remote.size} bytes, version {remote.version}, "
        f"updated {updated}, checksum {checksum}"
    )
