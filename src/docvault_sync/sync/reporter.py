"""Pass report formatting functions.

Provides human-readable and machine-readable output for sync passes:

- ``format_pass_report`` -- full post-pass summary.
- ``format_plan_preview`` -- dry-run preview grouped by action.
- ``format_conflict_prompt`` -- one deferred conflict awaiting a decision.
- ``report_to_json`` -- structured dict for JSON output.
"""

from __future__ import annotations

from collections import defaultdict

from .models import ConflictPrompt, PassReport, PlanAction, SyncPlan

# ------------------------------------------------------------------
# Human-readable report
# ------------------------------------------------------------------


def format_pass_report(report: PassReport, folder_name: str | None = None) -> str:
    """Format a complete pass report as human-readable text.

    Sections are only included when they contain at least one result.
    Skipped paths are listed after the failures.

    Args:
        report: The finished pass report.
        folder_name: Display name; defaults to the folder id.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []

    header = f"Sync pass for '{folder_name or report.folder_id}': {report.status.value}"
    if report.cancelled:
        header += " (cancelled)"
    lines.append(header)
    lines.append(f"Started: {report.started_at}")
    if report.completed_at:
        lines.append(f"Completed: {report.completed_at}")
    lines.append("")

    lines.append(
        f"{len(report.downloaded)} downloaded, {len(report.uploaded)} uploaded, "
        f"{len(report.deleted_local) + len(report.deleted_remote)} deleted, "
        f"{len(report.conflicts)} conflicts, {len(report.failures)} errors"
    )
    lines.append("")

    sections = [
        ("Downloaded:", report.downloaded),
        ("Uploaded:", report.uploaded),
        ("Deleted locally:", report.deleted_local),
        ("Deleted remotely:", report.deleted_remote),
    ]
    for title, results in sections:
        if results:
            lines.append(title)
            for r in results:
                lines.append(f"  {r.relative_path}")
            lines.append("")

    if report.conflicts:
        lines.append("Conflicts:")
        for r in report.conflicts:
            if r.target_path and r.target_path != r.relative_path:
                lines.append(f"  {r.relative_path} (remote copy: {r.target_path})")
            else:
                lines.append(f"  {r.relative_path}")
        lines.append("")

    if report.deferred:
        lines.append("Awaiting decision:")
        for r in report.deferred:
            lines.append(f"  {r.relative_path}")
        lines.append("")

    if report.failures:
        lines.append("Errors:")
        for r in report.failures:
            lines.append(f"  {r.relative_path}: {r.error}")
        lines.append("")

    if report.skipped:
        lines.append(f"Skipped: {len(report.skipped)}")
        for s in report.skipped:
            lines.append(f"  {s.relative_path}: {s.reason}")
        lines.append("")

    if report.error and not report.failures:
        lines.append(f"Error: {report.error}")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# Dry-run preview
# ------------------------------------------------------------------

_DISPLAY_ORDER = [
    PlanAction.DOWNLOAD_NEW,
    PlanAction.DOWNLOAD_UPDATE,
    PlanAction.UPLOAD_NEW,
    PlanAction.UPLOAD_UPDATE,
    PlanAction.DELETE_LOCAL,
    PlanAction.DELETE_REMOTE,
    PlanAction.CONFLICT,
]


def format_plan_preview(plan: SyncPlan, folder_name: str | None = None) -> str:
    """Format a plan grouped by action type, without applying it.

    Args:
        plan: The planner's output.
        folder_name: Display name; defaults to the folder id.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []
    lines.append("DRY RUN -- No changes will be made")
    lines.append(f"Folder: {folder_name or plan.folder_id}")
    lines.append("")

    groups: dict[PlanAction, list[str]] = defaultdict(list)
    for item in plan.items:
        groups[item.action].append(item.relative_path)

    for action in _DISPLAY_ORDER:
        if action not in groups:
            continue
        label = action.value.upper().replace("_", " ")
        lines.append(f"[{label}]")
        for path in groups[action]:
            lines.append(f"  {path}")
        lines.append("")

    unchanged = len(groups.get(PlanAction.NONE, []))
    if unchanged > 0:
        lines.append(f"Unchanged: {unchanged}")
        lines.append("")

    if plan.skipped:
        lines.append(f"Skipped: {len(plan.skipped)}")
        for s in plan.skipped:
            lines.append(f"  {s.relative_path}: {s.reason}")
        lines.append("")

    if plan.is_noop:
        lines.append("No changes needed.")
        lines.append("")

    return "\n".join(lines).rstrip()


def format_conflict_prompt(prompt: ConflictPrompt) -> str:
    lines = [
        f"Conflict: {prompt.relative_path}",
        f"  {prompt.local_summary}",
        f"  {prompt.remote_summary}",
    ]
    if prompt.raised_at:
        lines.append(f"  raised {prompt.raised_at}")
    return "\n".join(lines)


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def report_to_json(report: PassReport) -> dict:
    """Convert a pass report to a structured dict for JSON serialisation.

    Args:
        report: The pass report.

    Returns:
        Dict with folder info, counts, and per-result details.
    """
    results_list = []
    for r in report.results:
        entry: dict = {
            "relative_path": r.relative_path,
            "action": r.action.value,
            "success": r.success,
        }
        if r.skipped:
            entry["skipped"] = True
        if r.deferred:
            entry["deferred"] = True
        if r.target_path:
            entry["target_path"] = r.target_path
        if r.error:
            entry["error"] = r.error
        results_list.append(entry)

    return {
        "folder_id": report.folder_id,
        "account_id": report.account_id,
        "status": report.status.value,
        "cancelled": report.cancelled,
        "error": report.error,
        "started_at": report.started_at,
        "completed_at": report.completed_at,
        "counts": {
            "total": len(report.results),
            "downloaded": len(report.downloaded),
            "uploaded": len(report.uploaded),
            "deleted_local": len(report.deleted_local),
            "deleted_remote": len(report.deleted_remote),
            "conflicts": len(report.conflicts),
            "deferred": len(report.deferred),
            "errors": len(report.failures),
            "skipped": len(report.skipped),
        },
        "results": results_list,
        "skipped": [
            {"relative_path": s.relative_path, "reason": s.reason}
            for s in report.skipped
        ],
    }
