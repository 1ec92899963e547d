"""Field diffs rendered into activity log entries."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from pydantic.alias_generators import to_camel

from task_reconciler.models.domain import Task


@dataclass(frozen=True)
class FieldDiff:
    field: str
    old: str | None
    new: str | None


def _render(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return ", ".join(str(v) for v in value)
    return str(value)


def _or_null(value: str | None) -> str:
    return "null" if value is None else value


def diff_task(task: Task, changes: dict[str, Any]) -> list[FieldDiff]:
    """Diffs between ``task`` and ``changes``, compared as rendered strings."""
    diffs = []
    for name, value in changes.items():
        old = _render(getattr(task, name))
        new = _render(value)
        if old != new:
            diffs.append(FieldDiff(field=name, old=old, new=new))
    return diffs


def format_diff_log(diffs: list[FieldDiff], large_fields: tuple[str, ...] = ()) -> str:
    """Render diffs as a "# Task updated" markdown entry.

    Example:
        >>> format_diff_log([FieldDiff("pr_state", "open", "merged")])
        '# Task updated\\n- prState: open -> merged'
    """
    lines = ["# Task updated"]
    for diff in diffs:
        name = "type" if diff.field == "issue_type" else to_camel(diff.field)
        if diff.field in large_fields:
            lines.append(f"- {name}: (changed)")
        else:
            lines.append(f"- {name}: {_or_null(diff.old)} -> {_or_null(diff.new)}")
    return "\n".join(lines)


def format_sync_summary(provider_label: str, created: int, updated: int, unchanged: int) -> str:
    """One-line summary such as "GitHub sync completed: 3 unchanged, 1 new"."""
    parts = []
    if unchanged:
        parts.append(f"{unchanged} unchanged")
    if created:
        parts.append(f"{created} new")
    if updated:
        parts.append(f"{updated} updated")
    return f"{provider_label} sync completed: {', '.join(parts) if parts else 'no changes'}"
