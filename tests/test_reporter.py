"""Tests for sync/reporter.py -- pass report formatting."""

from __future__ import annotations

import json

from docvault_sync.sync.models import (
    ConflictPrompt,
    ItemResult,
    PassReport,
    PlanAction,
    PlanItem,
    SkippedItem,
    SyncPlan,
    SyncStatus,
)
from docvault_sync.sync.reporter import (
    format_conflict_prompt,
    format_pass_report,
    format_plan_preview,
    report_to_json,
)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _report(**overrides) -> PassReport:
    data = dict(
        folder_id="f1",
        account_id="a1",
        status=SyncStatus.COMPLETED,
        started_at="2026-10-19T12:00:00+00:00",
        completed_at="2026-10-19T12:00:05+00:00",
        results=[
            ItemResult(relative_path="a.txt", action=PlanAction.DOWNLOAD_NEW, success=True),
            ItemResult(relative_path="b.txt", action=PlanAction.UPLOAD_UPDATE, success=True),
            ItemResult(
                relative_path="c.txt",
                action=PlanAction.CONFLICT,
                success=True,
                target_path="c (conflicted copy v2).txt",
            ),
            ItemResult(
                relative_path="d.txt",
                action=PlanAction.PENDING_DECISION,
                success=True,
                deferred=True,
            ),
            ItemResult(
                relative_path="e.txt",
                action=PlanAction.DOWNLOAD_NEW,
                success=False,
                error="connection reset",
            ),
        ],
        skipped=[SkippedItem(relative_path="f.txt", reason="permission denied")],
    )
    data.update(overrides)
    return PassReport(**data)


# ---------------------------------------------------------------------------
# PassReport helpers
# ---------------------------------------------------------------------------


class TestPassReport:
    def test_groupings(self):
        report = _report()
        assert [r.relative_path for r in report.downloaded] == ["a.txt"]
        assert [r.relative_path for r in report.uploaded] == ["b.txt"]
        assert [r.relative_path for r in report.conflicts] == ["c.txt"]
        assert [r.relative_path for r in report.deferred] == ["d.txt"]
        assert [r.relative_path for r in report.failures] == ["e.txt"]

    def test_skipped_results_do_not_count_as_transfers(self):
        report = _report(
            results=[
                ItemResult(
                    relative_path="a.txt",
                    action=PlanAction.DELETE_LOCAL,
                    success=True,
                    skipped=True,
                    error="directory not empty",
                )
            ]
        )
        assert report.deleted_local == []

    def test_summary(self):
        summary = _report(cancelled=True, status=SyncStatus.PAUSED).summary()
        assert summary.startswith("Pass for folder 'f1': paused (cancelled)")
        assert "Downloaded:     1" in summary
        assert "Failures:       1" in summary


# ---------------------------------------------------------------------------
# format_pass_report
# ---------------------------------------------------------------------------


class TestFormatPassReport:
    def test_sections(self):
        text = format_pass_report(_report(), folder_name="Shared")

        assert text.startswith("Sync pass for 'Shared': completed")
        assert "1 downloaded, 1 uploaded, 0 deleted, 1 conflicts, 1 errors" in text
        assert "  c.txt (remote copy: c (conflicted copy v2).txt)" in text
        assert "Awaiting decision:\n  d.txt" in text
        assert "Errors:\n  e.txt: connection reset" in text
        assert "Skipped: 1\n  f.txt: permission denied" in text

    def test_empty_sections_omitted(self):
        text = format_pass_report(_report(results=[], skipped=[]))
        assert "Downloaded:" not in text
        assert "Errors:" not in text
        assert "Sync pass for 'f1'" in text

    def test_pass_level_error(self):
        report = _report(
            results=[],
            skipped=[],
            status=SyncStatus.ERROR,
            error="authentication failed: token rejected",
        )
        assert format_pass_report(report).endswith(
            "Error: authentication failed: token rejected"
        )


# ---------------------------------------------------------------------------
# format_plan_preview
# ---------------------------------------------------------------------------


class TestFormatPlanPreview:
    def test_groups_by_action(self):
        plan = SyncPlan(
            folder_id="f1",
            items=[
                PlanItem(relative_path="keep.txt", action=PlanAction.NONE),
                PlanItem(relative_path="new.txt", action=PlanAction.DOWNLOAD_NEW),
                PlanItem(relative_path="mine.txt", action=PlanAction.UPLOAD_NEW),
                PlanItem(relative_path="old.txt", action=PlanAction.DELETE_REMOTE),
            ],
            skipped=[SkippedItem(relative_path="ro.txt", reason="permission denied")],
        )

        text = format_plan_preview(plan, folder_name="Shared")

        assert text.startswith("DRY RUN -- No changes will be made\nFolder: Shared")
        assert "[DOWNLOAD NEW]\n  new.txt" in text
        assert "[UPLOAD NEW]\n  mine.txt" in text
        assert "[DELETE REMOTE]\n  old.txt" in text
        assert "Unchanged: 1" in text
        assert "Skipped: 1" in text
        assert "No changes needed." not in text
        assert text.index("[DOWNLOAD NEW]") < text.index("[DELETE REMOTE]")

    def test_noop(self):
        plan = SyncPlan(
            folder_id="f1",
            items=[PlanItem(relative_path="keep.txt", action=PlanAction.NONE)],
        )
        assert format_plan_preview(plan).endswith("No changes needed.")


def test_format_conflict_prompt():
    prompt = ConflictPrompt(
        folder_id="f1",
        relative_path="a.txt",
        local_summary="local: 3 bytes",
        remote_summary="remote: 5 bytes",
        raised_at="2026-10-19T12:00:00+00:00",
    )
    assert format_conflict_prompt(prompt) == (
        "Conflict: a.txt\n"
        "  local: 3 bytes\n"
        "  remote: 5 bytes\n"
        "  raised 2026-10-19T12:00:00+00:00"
    )


# ---------------------------------------------------------------------------
# report_to_json
# ---------------------------------------------------------------------------


class TestReportToJson:
    def test_counts_and_results(self):
        data = report_to_json(_report())

        assert data["status"] == "completed"
        assert data["counts"] == {
            "total": 5,
            "downloaded": 1,
            "uploaded": 1,
            "deleted_local": 0,
            "deleted_remote": 0,
            "conflicts": 1,
            "deferred": 1,
            "errors": 1,
            "skipped": 1,
        }
        conflict = data["results"][2]
        assert conflict["target_path"] == "c (conflicted copy v2).txt"
        assert "skipped" not in data["results"][0]
        assert data["results"][3]["deferred"] is True
        assert data["results"][4]["error"] == "connection reset"

    def test_is_json_serialisable(self):
        json.dumps(report_to_json(_report()))
