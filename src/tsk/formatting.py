"""Shared formatting utilities for task display (Rich markup)."""

from __future__ import annotations

from datetime import date
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tsk.models import Priority, Progress, Status, Task, TreeRow
    from tsk.sync.engine import SyncResult

MAX_DISPLAY_TAGS = 3  # Maximum tags to display in list rows

# Priority indicators (Rich markup)
PRIORITY_INDICATORS: dict[str, str] = {
    "urgent": "[red bold]!![/red bold]",
    "high": "[yellow]![/yellow]",
    "medium": "[cyan]·[/cyan]",
    "low": "[dim]↓[/dim]",
    "none": "",
}

STATUS_MARKERS: dict[str, str] = {
    "todo": "[ ]",
    "in_progress": "[yellow][~][/yellow]",
    "done": "[green][✓][/green]",
    "archived": "[dim][-][/dim]",
}


def format_priority(priority: Priority | None) -> str:
    """Format priority as a Rich markup indicator."""
    if not priority:
        return ""
    return PRIORITY_INDICATORS.get(priority.value, "")


def format_status(status: Status) -> str:
    return STATUS_MARKERS.get(status.value, "[ ]")


def format_tags(tags: tuple[str, ...] | list[str] | None, max_tags: int | None = None) -> str:
    """Format tags as dim hashtags.

    Args:
        tags: Tag strings or None
        max_tags: Override max tags to display (defaults to MAX_DISPLAY_TAGS)

    Returns:
        Rich markup string with formatted tags (space-prefixed if non-empty)
    """
    if not tags:
        return ""
    limit = max_tags if max_tags is not None else MAX_DISPLAY_TAGS
    formatted = " ".join(f"[dim]#{t}[/dim]" for t in list(tags)[:limit])
    return f" {formatted}" if formatted else ""


def format_due(due: date | None, today: date | None = None, style: str = "relative") -> str:
    """Format a due date. Overdue dates are red, today is yellow."""
    if due is None:
        return ""
    today = today or date.today()
    delta = (due - today).days

    if style == "iso":
        text = due.isoformat()
    elif style == "absolute":
        text = due.strftime("%b %d").replace(" 0", " ")
    elif delta == 0:
        text = "today"
    elif delta == 1:
        text = "tomorrow"
    elif delta == -1:
        text = "yesterday"
    elif 1 < delta < 7:
        text = due.strftime("%a")
    elif delta < 0:
        text = f"{-delta}d overdue"
    else:
        text = due.isoformat()

    if delta < 0:
        return f"[red]{text}[/red]"
    if delta == 0:
        return f"[yellow]{text}[/yellow]"
    return f"[dim]{text}[/dim]"


def format_minutes(minutes: int | None) -> str:
    """90 -> '1h 30m', 45 -> '45m'."""
    if minutes is None:
        return ""
    hours, mins = divmod(minutes, 60)
    if hours and mins:
        return f"{hours}h {mins}m"
    if hours:
        return f"{hours}h"
    return f"{mins}m"


def format_progress(progress: Progress) -> str:
    if progress.total == 0:
        return ""
    color = "green" if progress.done == progress.total else "dim"
    return f" [{color}]({progress.done}/{progress.total})[/{color}]"


def format_row(row: TreeRow, progress: Progress, blocked: bool, date_style: str = "relative") -> str:
    """One list line: tree connector, status, priority, title and metadata."""
    task = row.task
    indent = ""
    if row.depth:
        indent = "   " * (row.depth - 1) + ("└─ " if row.is_last else "├─ ")

    title = task.title
    if task.is_done:
        title = f"[dim strike]{title}[/dim strike]"

    parts = [f"{indent}{format_status(task.status)}"]
    prio = format_priority(task.priority)
    if prio:
        parts.append(prio)
    parts.append(title)
    line = " ".join(parts)

    line += format_progress(progress)
    if blocked:
        line += " [red](blocked)[/red]"
    if task.project:
        line += f" [magenta]@{task.project}[/magenta]"
    line += format_tags(task.tags)
    due = format_due(task.due_date, style=date_style)
    if due:
        line += f" {due}"
    if task.recurrence:
        line += " [dim]↻[/dim]"
    line += f" [dim]({task.id[:8]})[/dim]"
    return line


def format_task_detail(task: Task, progress: Progress, blocked: bool) -> list[str]:
    """Lines for the detail view of a single task."""
    lines = [
        f"[bold]{task.title}[/bold] [dim]({task.id})[/dim]",
        f"[bold]Status:[/bold] {task.status.value}",
        f"[bold]Priority:[/bold] {task.priority.value}",
    ]
    if task.description:
        lines.append(f"[bold]Description:[/bold] {task.description}")
    if task.project:
        lines.append(f"[bold]Project:[/bold] {task.project}")
    if task.tags:
        lines.append(f"[bold]Tags:[/bold] {', '.join(task.tags)}")
    if task.due_date:
        lines.append(f"[bold]Due:[/bold] {task.due_date.isoformat()}")
    if task.recurrence:
        rule = task.recurrence
        lines.append(f"[bold]Repeats:[/bold] every {rule.interval} {rule.frequency.value}")
    if progress.total:
        lines.append(f"[bold]Subtasks:[/bold] {progress.done}/{progress.total} done")
    if task.blocked_by:
        state = "[red]blocked[/red]" if blocked else "[green]resolved[/green]"
        lines.append(f"[bold]Blocked by:[/bold] {', '.join(task.blocked_by)} ({state})")
    if task.estimate_minutes is not None or task.actual_minutes is not None:
        lines.append(
            f"[bold]Time:[/bold] {format_minutes(task.actual_minutes) or '0m'}"
            f" / {format_minutes(task.estimate_minutes) or '-'}"
        )
    if task.external_id:
        lines.append(f"[bold]Linked:[/bold] {task.external_source} {task.external_id}")
    for note in task.notes:
        lines.append(f"  [dim]{note.created_at:%Y-%m-%d %H:%M}[/dim] {note.content}")
    return lines


def format_sync_result(result: SyncResult) -> str:
    prefix = "[yellow](dry run)[/yellow] " if result.dry_run else ""
    color = "green" if result.ok else "red"
    mark = "✓" if result.ok else "✗"
    return (
        f"{prefix}[{color}]{mark}[/{color}] {result.provider}: "
        f"{result.pulled} pulled, {result.pushed} pushed, {result.deleted} deleted, "
        f"{result.conflicts} conflicts, {len(result.errors)} errors "
        f"[dim]({result.duration_ms} ms)[/dim]"
    )
