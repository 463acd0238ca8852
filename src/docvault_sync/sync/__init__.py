"""Folder synchronization engine.

Reconciles a remote document-service folder with a local directory.

Architecture
------------
Every pass is a **three-way comparison**: the current remote tree and the
current local tree are each compared against the folder's snapshot, the
record of what both sides looked like after the last successful transfer
of each path.  A side "changed" when it differs from the snapshot, so an
edit on one side is never mistaken for a deletion on the other.

Modules:

- ``engine``     -- ``SyncEngine``: folder state machine, scheduling,
  cancellation and account-switch barriers.
- ``planner``    -- ``DiffPlanner``: remote/local tree walks and the
  per-path classification into plan actions.
- ``resolver``   -- conflict policies (remote wins, local wins, keep both).
- ``transfer``   -- ``TransferExecutor``: atomic downloads, uploads,
  deletions, retries with backoff.
- ``integrity``  -- ``IntegrityValidator``: streaming checksums.
- ``state``      -- ``SnapshotStore``: per-folder snapshot JSON files.
- ``models``     -- records, nodes, plans, reports and events.
- ``reporter``   -- human-readable and JSON report formatting.

Public exports
--------------
``SyncEngine``, ``DiffPlanner``, ``TransferExecutor``,
``IntegrityValidator``, ``SnapshotStore``, ``SyncPlan``, ``PassReport``,
``format_pass_report``, ``format_plan_preview``, ``report_to_json``.

Usage example
-------------
::

    from docvault_sync.app import app_lifespan, load_app_config
    from docvault_sync.sync import format_pass_report

    async with app_lifespan(load_app_config()) as app:
        for report in await app.engine.sync_all():
            print(format_pass_report(report))
"""

from .engine import SyncEngine
from .integrity import IntegrityValidator
from .models import PassReport, SyncPlan
from .planner import DiffPlanner
from .reporter import format_pass_report, format_plan_preview, report_to_json
from .state import SnapshotStore
from .transfer import TransferExecutor

__all__ = [
    "DiffPlanner",
    "IntegrityValidator",
    "PassReport",
    "SnapshotStore",
    "SyncEngine",
    "SyncPlan",
    "TransferExecutor",
    "format_pass_report",
    "format_plan_preview",
    "report_to_json",
]
