"""CLI commands."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Annotated

import typer
from rich.console import Console

if TYPE_CHECKING:
    from tsk.config import Config
    from tsk.models import Task
    from tsk.store import TaskStore

app = typer.Typer(
    name="tsk",
    help="Terminal task manager with hierarchy, time tracking and remote sync.",
    no_args_is_help=True,
)
config_app = typer.Typer(help="Show or change configuration.", no_args_is_help=True)
app.add_typer(config_app, name="config")
console = Console()


def _get_config() -> Config:
    """Lazy import and load config."""
    from tsk.config import Config

    return Config.load()


def _open_store(cfg: Config) -> TaskStore:
    from tsk.storage import get_tasks_path
    from tsk.store import TaskStore

    try:
        store = TaskStore.load(get_tasks_path(cfg), debounce_seconds=cfg.save_debounce_ms / 1000)
    except OSError as e:
        console.print(f"[red]Error:[/red] Cannot open task data: {e}")
        raise typer.Exit(1)
    if store.quarantined_path is not None:
        console.print(
            f"[yellow]Warning:[/yellow] Invalid task file moved to {store.quarantined_path}"
        )
    return store


def _save(store: TaskStore) -> None:
    """Flush pending writes; exit 1 if the data could not be saved."""
    ok = store.flush()
    store.close()
    if not ok:
        console.print(f"[red]Error:[/red] Could not save tasks: {store.persistence_error}")
        raise typer.Exit(1)


def _find_task(store: TaskStore, partial_id: str) -> Task:
    """Find task by full or partial ID, exiting if none or ambiguous."""
    task = store.get(partial_id)
    if task:
        return task

    matches = [t for t in store.tasks if t.id.startswith(partial_id)]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        console.print(f"[red]Error:[/red] Task not found: {partial_id}")
        raise typer.Exit(1)
    console.print(f"[yellow]Ambiguous ID '{partial_id}'. Matches:[/yellow]")
    for m in matches:
        console.print(f"  - {m.id}: {m.title[:50]}")
    raise typer.Exit(1)


def _split(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


@app.callback()
def main(
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Show debug logging")] = False,
):
    """Terminal task manager."""
    if verbose:
        from rich.logging import RichHandler

        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        )


@app.command()
def add(
    title: Annotated[str, typer.Argument(help="Task title (use quotes)")],
    parent: Annotated[str | None, typer.Option("--parent", help="Parent task ID")] = None,
    priority: Annotated[
        str, typer.Option("--priority", "-P", help="Priority: none/low/medium/high/urgent")
    ] = "none",
    project: Annotated[str | None, typer.Option("--project", "-p")] = None,
    tags: Annotated[str | None, typer.Option("--tags", "-t", help="Comma-separated tags")] = None,
    due: Annotated[str | None, typer.Option("--due", help="Due date (YYYY-MM-DD)")] = None,
    estimate: Annotated[int | None, typer.Option("--estimate", help="Estimate in minutes")] = None,
    description: Annotated[str, typer.Option("--description", "-d")] = "",
):
    """Add a task."""
    cfg = _get_config()
    store = _open_store(cfg)
    parent_id = _find_task(store, parent).id if parent else None

    try:
        task = store.add_task(
            title,
            description=description,
            priority=priority.lower(),
            project=project,
            tags=_split(tags),
            due_date=due,
            parent_id=parent_id,
            estimate_minutes=estimate,
        )
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    _save(store)

    where = " [dim]under[/dim] " + parent_id[:8] if parent_id else ""
    console.print(f"[green]✓[/green] Added: {task.title} [dim]({task.id})[/dim]{where}")


@app.command(name="ls")
def list_tasks(
    status: Annotated[
        str | None, typer.Option("--status", "-s", help="Comma-separated statuses")
    ] = None,
    priority: Annotated[
        str | None, typer.Option("--priority", "-P", help="Comma-separated priorities")
    ] = None,
    project: Annotated[str | None, typer.Option("--project", "-p")] = None,
    tag: Annotated[str | None, typer.Option("--tag", "-t")] = None,
    search: Annotated[str, typer.Option("--search", "-q")] = "",
    sort: Annotated[
        str, typer.Option("--sort", help="priority/due_date/created_at/title/order")
    ] = "priority",
    desc: Annotated[bool, typer.Option("--desc/--asc", help="Sort direction")] = True,
    flat: Annotated[bool, typer.Option("--flat", help="Hide subtasks, list top level only")] = False,
    format_: Annotated[str, typer.Option("--format", "-f", help="Output: tree|json")] = "tree",
):
    """List tasks."""
    from tsk.formatting import format_row
    from tsk.models import FilterState

    cfg = _get_config()
    store = _open_store(cfg)
    try:
        filter = FilterState(
            status=_split(status) or None,
            priority=_split(priority) or None,
            project=project,
            tag=tag,
            search=search,
            sort_by=sort,
            sort_direction="desc" if desc else "asc",
            show_subtasks=not flat,
        )
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    rows = store.get_filtered_tree(filter)
    store.close()

    if format_ == "json":
        print(json.dumps([row.task.to_dict() for row in rows], indent=2))
        return
    if not rows:
        console.print("[dim]No tasks[/dim]")
        return
    for row in rows:
        console.print(
            format_row(
                row,
                store.get_progress(row.task.id),
                store.is_blocked(row.task.id),
                date_style=cfg.date_format,
            )
        )


@app.command()
def show(id: Annotated[str, typer.Argument(help="Task ID or prefix")]):
    """Show a task in detail."""
    from tsk.formatting import format_task_detail

    store = _open_store(_get_config())
    task = _find_task(store, id)
    for line in format_task_detail(task, store.get_progress(task.id), store.is_blocked(task.id)):
        console.print(line)
    store.close()


@app.command()
def done(id: Annotated[str, typer.Argument(help="Task ID or prefix")]):
    """Mark a task done. Recurring tasks get their next occurrence."""
    store = _open_store(_get_config())
    task = _find_task(store, id)
    if task.recurrence is not None:
        occurrence = store.complete_recurring(task.id)
    else:
        occurrence = None
        store.move_to_status(task.id, "done")
    unblocked = store.get_unblocked_tasks(task.id)
    _save(store)

    console.print(f"[green]✓[/green] Done: {task.title}")
    if occurrence is not None:
        console.print(f"  [dim]Next occurrence due {occurrence.due_date}[/dim] ({occurrence.id})")
    for unblocked_id in unblocked:
        other = store.get(unblocked_id)
        if other is not None:
            console.print(f"  [cyan]Unblocked:[/cyan] {other.title}")


@app.command()
def status(
    id: Annotated[str, typer.Argument(help="Task ID or prefix")],
    value: Annotated[str, typer.Argument(help="todo/in_progress/done/archived")],
):
    """Change a task's status."""
    store = _open_store(_get_config())
    task = _find_task(store, id)
    try:
        updated = store.move_to_status(task.id, value)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    _save(store)
    console.print(f"[green]✓[/green] {updated.title}: {updated.status.value}")


@app.command()
def rm(id: Annotated[str, typer.Argument(help="Task ID or prefix")]):
    """Remove a task and its subtasks."""
    store = _open_store(_get_config())
    task = _find_task(store, id)
    store.delete_task(task.id)
    _save(store)
    console.print(f"[yellow]✓[/yellow] Removed: {task.title}")


@app.command()
def indent(
    id: Annotated[str, typer.Argument(help="Task to move")],
    parent: Annotated[str, typer.Argument(help="New parent task")],
):
    """Move a task under another task."""
    store = _open_store(_get_config())
    task = _find_task(store, id)
    new_parent = _find_task(store, parent)
    if not store.indent_task(task.id, new_parent.id):
        store.close()
        console.print(f"[red]Error:[/red] Cannot move '{task.title}' under '{new_parent.title}'")
        raise typer.Exit(1)
    _save(store)
    console.print(f"[green]✓[/green] {task.title} → under {new_parent.title}")


@app.command()
def promote(id: Annotated[str, typer.Argument(help="Subtask ID or prefix")]):
    """Make a subtask top-level."""
    store = _open_store(_get_config())
    task = _find_task(store, id)
    if not store.promote_subtask(task.id):
        store.close()
        console.print(f"[red]Error:[/red] '{task.title}' is not a subtask")
        raise typer.Exit(1)
    _save(store)
    console.print(f"[green]✓[/green] Promoted: {task.title}")


@app.command()
def estimate(
    id: Annotated[str, typer.Argument(help="Task ID or prefix")],
    minutes: Annotated[int, typer.Argument(help="Estimate in minutes (0 clears)")],
):
    """Set a task's time estimate."""
    store = _open_store(_get_config())
    task = _find_task(store, id)
    try:
        store.set_estimate(task.id, minutes or None)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    _save(store)
    console.print(f"[green]✓[/green] Estimate for {task.title}: {minutes}m")


@app.command()
def log(
    id: Annotated[str, typer.Argument(help="Task ID or prefix")],
    minutes: Annotated[int, typer.Argument(help="Minutes spent")],
):
    """Log time spent on a task."""
    from tsk.formatting import format_minutes

    store = _open_store(_get_config())
    task = _find_task(store, id)
    try:
        store.log_time(task.id, minutes)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    _save(store)
    total = store.get(task.id).actual_minutes
    console.print(f"[green]✓[/green] Logged {minutes}m on {task.title} (total {format_minutes(total)})")


@app.command()
def block(
    id: Annotated[str, typer.Argument(help="Task that is blocked")],
    blocker: Annotated[str, typer.Argument(help="Task it waits on")],
):
    """Mark a task as blocked by another."""
    store = _open_store(_get_config())
    task = _find_task(store, id)
    other = _find_task(store, blocker)
    if not store.add_blocker(task.id, other.id):
        store.close()
        console.print("[yellow]Nothing to do[/yellow]")
        raise typer.Exit(1)
    _save(store)
    console.print(f"[green]✓[/green] {task.title} is blocked by {other.title}")


@app.command()
def unblock(
    id: Annotated[str, typer.Argument(help="Blocked task")],
    blocker: Annotated[str, typer.Argument(help="Blocker to remove")],
):
    """Remove a blocker from a task."""
    store = _open_store(_get_config())
    task = _find_task(store, id)
    blocker_id = next((b for b in task.blocked_by if b.startswith(blocker)), None)
    if blocker_id is None or not store.remove_blocker(task.id, blocker_id):
        store.close()
        console.print(f"[red]Error:[/red] {task.title} is not blocked by {blocker}")
        raise typer.Exit(1)
    _save(store)
    console.print(f"[green]✓[/green] Removed blocker from {task.title}")


@app.command()
def note(
    id: Annotated[str, typer.Argument(help="Task ID or prefix")],
    content: Annotated[str, typer.Argument(help="Note text")],
):
    """Attach a note to a task."""
    store = _open_store(_get_config())
    task = _find_task(store, id)
    try:
        store.add_note(task.id, content)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    _save(store)
    console.print(f"[green]✓[/green] Note added to {task.title}")


@app.command()
def sync(
    provider: Annotated[
        str | None, typer.Argument(help="Provider name (default: all connected)")
    ] = None,
    pull_only: Annotated[bool, typer.Option("--pull-only", help="Only pull remote changes")] = False,
    push_only: Annotated[bool, typer.Option("--push-only", help="Only push local changes")] = False,
    dry_run: Annotated[
        bool, typer.Option("--dry-run", help="Report what would change without changing it")
    ] = False,
    strategy: Annotated[
        str | None,
        typer.Option("--strategy", help="remote-wins/local-wins/newest-wins (default from config)"),
    ] = None,
):
    """Sync tasks with connected providers."""
    from tsk.formatting import format_sync_result
    from tsk.storage import get_sync_state_path
    from tsk.sync.engine import ConflictStrategy, SyncEngine, SyncOptions
    from tsk.sync.registry import get_connected_providers, get_provider, registered_providers
    from tsk.sync.state import SyncStateManager

    cfg = _get_config()
    if pull_only and push_only:
        console.print("[red]Error:[/red] --pull-only and --push-only are mutually exclusive")
        raise typer.Exit(1)
    try:
        conflict_strategy = ConflictStrategy(strategy or cfg.conflict_strategy)
    except ValueError:
        console.print(f"[red]Error:[/red] Invalid strategy '{strategy or cfg.conflict_strategy}'")
        raise typer.Exit(1)

    if provider:
        if provider not in registered_providers():
            console.print(f"[red]Error:[/red] Unknown provider: {provider}")
            raise typer.Exit(1)
        found = get_provider(provider, cfg)
        if found is None:
            console.print(f"[red]Error:[/red] {provider} is not connected. Run: tsk connect {provider}")
            raise typer.Exit(1)
        providers = [found]
    else:
        providers = get_connected_providers(cfg)
        if not providers:
            console.print("[yellow]No connected providers[/yellow]")
            return

    store = _open_store(cfg)
    manager = SyncStateManager(get_sync_state_path(cfg))
    state = manager.load()
    options = SyncOptions(pull_only=pull_only, push_only=push_only, dry_run=dry_run)

    failed = False
    for p in providers:
        engine = SyncEngine(store, p, state, strategy=conflict_strategy, state_manager=manager)
        result = engine.sync(options)
        console.print(format_sync_result(result))
        for error in result.errors:
            console.print(f"  [red]{error.operation}:[/red] {error.message}")
        failed = failed or not result.ok

    if dry_run:
        store.close()
    else:
        _save(store)
    if failed:
        raise typer.Exit(1)


@app.command()
def connect(
    provider: Annotated[str, typer.Argument(help="Provider name (todoist, linear)")],
    token: Annotated[str, typer.Option("--token", help="API token", prompt=True, hide_input=True)],
    project: Annotated[
        str | None, typer.Option("--project", help="Todoist project ID to sync")
    ] = None,
    team: Annotated[str | None, typer.Option("--team", help="Linear team ID to sync")] = None,
    check: Annotated[bool, typer.Option("--check", help="Verify the token now")] = False,
):
    """Store credentials for a provider."""
    from tsk.sync.registry import get_provider, registered_providers

    if provider not in registered_providers():
        console.print(f"[red]Error:[/red] Unknown provider: {provider}")
        raise typer.Exit(1)

    cfg = _get_config()
    cfg.set_integration_config(provider, "api_key", token)
    if project:
        cfg.set_integration_config(provider, "project_filter", project)
    if team:
        cfg.set_integration_config(provider, "team_id", team)

    if check:
        instance = get_provider(provider, cfg)
        status = instance.test_connection() if instance else None
        if status is None or not status.ok:
            error = status.error if status else "not connected"
            console.print(f"[red]Error:[/red] Connection check failed: {error}")
            raise typer.Exit(1)
        console.print(f"[green]✓[/green] Connected to {provider} as {status.user}")
        return
    console.print(f"[green]✓[/green] Saved {provider} credentials")


@app.command()
def disconnect(provider: Annotated[str, typer.Argument(help="Provider name")]):
    """Remove a provider's credentials."""
    cfg = _get_config()
    if not cfg.remove_integration(provider):
        console.print(f"[yellow]{provider} was not connected[/yellow]")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] Disconnected {provider}")


@config_app.command(name="show")
def config_show():
    """Print the effective configuration (secrets masked)."""
    from tsk.config import mask_secrets

    cfg = _get_config()
    console.print(f"[dim]{cfg.path}[/dim]")
    console.print_json(json.dumps(mask_secrets(cfg.as_dict())))


@config_app.command(name="set")
def config_set(
    key: Annotated[str, typer.Argument(help="Setting name")],
    value: Annotated[str, typer.Argument(help="New value")],
):
    """Change a setting."""
    from tsk.config import ConfigMeta

    if key not in ConfigMeta.SETTINGS:
        console.print(f"[red]Error:[/red] Unknown setting '{key}'")
        for name, desc in ConfigMeta.SETTINGS.items():
            console.print(f"  [bold]{name}[/bold]  [dim]{desc}[/dim]")
        raise typer.Exit(1)

    cfg = _get_config()
    try:
        cfg.set(key, value)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    console.print(f"[green]✓[/green] {key} = {getattr(cfg, key)}")
