"""Human-readable rendering of plans and execution results."""

from __future__ import annotations

import json
from typing import Any

from .executor import ExecutionResult, OutcomeStatus
from .models import StateSnapshot
from .planner import ACTION_SYMBOLS, Action, Plan
from .references import mask_value, redact_fields, render_value

_SUMMARY_ORDER = (Action.CREATE, Action.UPDATE, Action.REPLACE, Action.DELETE)


def _format_value(value: Any) -> str:
    return json.dumps(render_value(value), sort_keys=True, default=str)


def render_plan_text(plan: Plan, show_unchanged: bool = False) -> str:
    """Render a plan the way operators read it in a terminal.

    Example:
        + vnet (Microsoft.Network/virtualNetworks): not yet provisioned
        ~ app (Microsoft.Web/sites): field(s) changed: ['httpsOnly']
            httpsOnly: false -> true

        Plan: 1 to create, 1 to update, 0 to replace, 0 to delete.
    """
    lines: list[str] = []
    for op in plan.operations:
        if op.action == Action.NO_OP and not show_unchanged:
            continue
        symbol = ACTION_SYMBOLS[op.action]
        line = f"{symbol:>2} {op.resource} ({op.kind})"
        if op.reason:
            line += f": {op.reason}"
        lines.append(line)
        for change in op.changes:
            before, after = change.before, change.after
            if change.field in op.sensitive_fields:
                before, after = mask_value(before), mask_value(after)
            lines.append(
                f"      {change.field}: {_format_value(before)} -> {_format_value(after)}"
            )
        for deferred in op.deferred_fields:
            lines.append(f"      {deferred}: (known after apply)")

    if not plan.has_changes:
        lines.append("No changes. Infrastructure matches the declarations.")
        return "\n".join(lines)

    counts = plan.counts()
    summary = ", ".join(f"{counts[a.value]} to {a.value}" for a in _SUMMARY_ORDER)
    if lines:
        lines.append("")
    lines.append(f"Plan: {summary}.")
    return "\n".join(lines)


def render_plan_json(plan: Plan) -> str:
    return json.dumps(plan.to_dict(), indent=2, sort_keys=False, default=str)


def render_state_json(snapshot: StateSnapshot) -> str:
    """Render a snapshot with its secrets masked."""
    data = snapshot.model_dump(mode="json", by_alias=True)
    for name, entry in snapshot.resources.items():
        recorded = data["resources"][name]
        recorded["config"] = redact_fields(recorded["config"], entry.sensitive_fields)
        recorded["outputs"] = redact_fields(recorded["outputs"], entry.sensitive_outputs)
    return json.dumps(data, indent=2)


def render_result_text(result: ExecutionResult) -> str:
    """Render the partial-result report of an apply."""
    lines: list[str] = []
    for name, outcome in result.resources.items():
        match outcome.status:
            case OutcomeStatus.SUCCEEDED:
                lines.append(f"  ok      {name} ({outcome.action.value})")
            case OutcomeStatus.FAILED:
                lines.append(f"  failed  {name} ({outcome.action.value}): {outcome.error}")
            case OutcomeStatus.SKIPPED:
                lines.append(f"  skipped {name} ({outcome.action.value}): {outcome.reason}")

    status = "succeeded" if result.success else "finished with errors"
    if result.cancelled:
        status = "cancelled"
    lines.append("")
    lines.append(
        f"Apply {status}: {len(result.succeeded)} succeeded, {len(result.failed)} failed, "
        f"{len(result.skipped)} skipped in {result.duration_seconds:.1f}s."
    )
    return "\n".join(lines)
