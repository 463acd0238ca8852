"""Snapshot persistence layer.

Manages the JSON snapshot files that record, per sync folder, the last
reconciled state of every path (the base of the three-way diff), the
conflicts deferred to the user and the decisions recorded for them.  Each
folder gets its own file (``snapshot_{folder_id}.json``).

Key design choices:

* **Atomic writes** -- ``save()`` writes to a temp file then calls
  ``os.replace()`` so readers never see partial data.
* **Dict-based state** -- state is a plain ``dict`` so the engine can
  mutate it during a pass and persist after every applied item.
* **Typed entries** -- ``get_entry()`` returns ``SnapshotEntry`` models;
  ``entries()`` returns the whole mapping for the planner.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from .models import SnapshotEntry

logger = logging.getLogger(__name__)

STATE_VERSION = 1


class SnapshotStore:
    """Load, save, and query per-folder snapshots.

    Args:
        state_dir: Directory where snapshot files are stored.
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = state_dir

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self, folder_id: str) -> dict:
        """Load the snapshot state for *folder_id*.

        Returns:
            The state dict.  If no file exists an empty state is returned.
        """
        path = self._state_path(folder_id)
        if not path.exists():
            return {
                "version": STATE_VERSION,
                "folder_id": folder_id,
                "last_sync": None,
                "entries": {},
                "pending": {},
                "decisions": {},
            }
        with open(path, encoding="utf-8") as fh:
            state = json.load(fh)
        state.setdefault("entries", {})
        state.setdefault("pending", {})
        state.setdefault("decisions", {})
        return state

    def save(self, folder_id: str, state: dict) -> None:
        """Persist snapshot state atomically.

        Sets ``last_sync`` to the current UTC time, writes to a temporary
        file in the same directory and replaces the target.
        """
        self._state_dir.mkdir(parents=True, exist_ok=True)
        state["last_sync"] = datetime.now(timezone.utc).isoformat()

        target = self._state_path(folder_id)
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self._state_dir), suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(state, fh, indent=2)
            os.replace(tmp_path, target)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise

    def discard(self, folder_id: str) -> None:
        """Delete the snapshot file for *folder_id*, if any."""
        path = self._state_path(folder_id)
        try:
            path.unlink()
            logger.info("Discarded snapshot for folder %s", folder_id)
        except FileNotFoundError:
            pass

    # ------------------------------------------------------------------
    # Entry helpers
    # ------------------------------------------------------------------

    def entries(self, state: dict) -> dict[str, SnapshotEntry]:
        """Return all entries as ``SnapshotEntry`` models."""
        return {
            path: SnapshotEntry.model_validate(raw)
            for path, raw in state.get("entries", {}).items()
        }

    def get_entry(
        self, state: dict, relative_path: str
    ) -> SnapshotEntry | None:
        raw = state.get("entries", {}).get(relative_path)
        if raw is None:
            return None
        return SnapshotEntry.model_validate(raw)

    def update_entry(
        self, state: dict, relative_path: str, entry: SnapshotEntry
    ) -> None:
        """Upsert *entry* under *relative_path*.  Mutates *state*."""
        state.setdefault("entries", {})[relative_path] = entry.model_dump(
            mode="json"
        )

    def remove_entry(self, state: dict, relative_path: str) -> None:
        """Remove *relative_path*; no-op if absent."""
        state.get("entries", {}).pop(relative_path, None)

    # ------------------------------------------------------------------
    # Deferred conflicts
    # ------------------------------------------------------------------

    def mark_pending(
        self, state: dict, relative_path: str, prompt: dict
    ) -> None:
        state.setdefault("pending", {})[relative_path] = prompt

    def pending(self, state: dict) -> dict[str, dict]:
        return dict(state.get("pending", {}))

    def record_decision(
        self, state: dict, relative_path: str, choice: str
    ) -> None:
        state.setdefault("decisions", {})[relative_path] = choice

    def decision(self, state: dict, relative_path: str) -> str | None:
        return state.get("decisions", {}).get(relative_path)

    def clear_conflict(self, state: dict, relative_path: str) -> None:
        """Drop the pending prompt and decision for *relative_path*."""
        state.get("pending", {}).pop(relative_path, None)
        state.get("decisions", {}).pop(relative_path, None)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _state_path(self, folder_id: str) -> Path:
        return self._state_dir / f"snapshot_{folder_id}.json"
