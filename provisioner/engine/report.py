"""
Provisioner - Plan and Run Reports

Human-readable renderings of plans and run summaries. The machine-readable
form of both is their JSON dump.
"""

from __future__ import annotations
from typing import Any, List
import json

from provisioner.models import ExecutionPlan, OperationStatus, PlanAction, RunSummary

SYMBOLS = {
    PlanAction.CREATE: "+",
    PlanAction.UPDATE: "~",
    PlanAction.DELETE: "-",
    PlanAction.NOOP: " ",
}


def _show(value: Any) -> str:
    if isinstance(value, str):
        return json.dumps(value)
    return json.dumps(value, sort_keys=True)


def format_plan(plan: ExecutionPlan, show_unchanged: bool = False) -> str:
    """Render a plan for review before execution."""
    lines: List[str] = [f"Plan for project '{plan.project_name}' (run {plan.run_id})", ""]

    for entry in plan.entries:
        if entry.action == PlanAction.NOOP and not show_unchanged:
            continue
        lines.append(f"  {SYMBOLS[entry.action]} {entry.action.value:<6} {entry.address}")

        if entry.action == PlanAction.CREATE:
            for name in sorted(entry.after or {}):
                lines.append(f"        {name} = {_show(entry.after[name])}")
        elif entry.action == PlanAction.UPDATE:
            before = entry.before or {}
            after = entry.after or {}
            for name in entry.changed_attributes:
                old = _show(before[name]) if name in before else "null"
                new = _show(after[name]) if name in after else "null"
                lines.append(f"        {name}: {old} -> {new}")
        elif entry.action == PlanAction.DELETE and entry.provider_id:
            lines.append(f"        id = {_show(entry.provider_id)}")

    if not plan.has_changes:
        lines.append("  No changes. Infrastructure matches the declarations.")

    counts = plan.counts
    lines.append("")
    lines.append(
        f"Plan: {counts.to_create} to add, {counts.to_update} to change, "
        f"{counts.to_delete} to delete."
    )
    return "\n".join(lines)


def format_summary(summary: RunSummary) -> str:
    """Render the outcome of a run."""
    lines: List[str] = [f"Run {summary.run_id}: {summary.status.value}", ""]

    for result in summary.results:
        if result.action == PlanAction.NOOP:
            continue
        line = f"  {result.status.value:<9} {result.action.value:<6} {result.address}"
        if result.status == OperationStatus.COMPLETED and result.provider_id:
            line += f" ({result.provider_id})"
        elif result.error_message:
            line += f" - {result.error_message}"
        lines.append(line)

    lines.append("")
    lines.append(
        f"Applied: {summary.completed_operations}, unchanged: {summary.unchanged_operations}, "
        f"failed: {summary.failed_operations}, skipped: {summary.skipped_operations}, "
        f"cancelled: {summary.cancelled_operations} "
        f"({summary.duration_seconds:.1f}s)"
    )
    return "\n".join(lines)
