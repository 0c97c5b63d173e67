"""Provider protocol and the provider-neutral remote task shape."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Protocol, runtime_checkable

from tsk.models import Task, format_timestamp


class ProviderError(RuntimeError):
    """A provider could not list remote tasks."""


@dataclass
class ExternalTask:
    """A task as seen by a remote tracker, after provider translation."""

    external_id: str
    title: str
    updated_at: str  # ISO-8601
    status: str = "open"  # "open" | "closed"
    description: str | None = None
    priority: int | None = None  # 0 (none) .. 4 (urgent)
    project: str | None = None
    labels: list[str] = field(default_factory=list)
    due_date: str | None = None  # YYYY-MM-DD
    parent_external_id: str | None = None
    subtask_external_ids: list[str] = field(default_factory=list)
    completed_at: str | None = None
    url: str | None = None

    @property
    def is_closed(self) -> bool:
        return self.status == "closed"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ConnectionStatus:
    ok: bool
    user: str | None = None
    error: str | None = None


@runtime_checkable
class SyncProvider(Protocol):
    """Protocol for remote task trackers.

    Implement this to add new providers. The sync engine only ever talks to
    a remote system through these methods.

    fetch_tasks raises ProviderError when the remote list cannot be read.
    Mutators return None/False on failure instead of raising. When
    incremental_fetch is True the provider honours updated_since and may omit
    unchanged tasks, so a missing task does not mean a deleted one. When
    lists_closed_tasks is False, closed tasks drop out of the listing too.
    """

    name: str
    supports_subtasks: bool
    incremental_fetch: bool
    lists_closed_tasks: bool

    def is_connected(self) -> bool:
        """Whether credentials are configured."""
        ...

    def test_connection(self) -> ConnectionStatus:
        """Check credentials against the remote API."""
        ...

    def fetch_tasks(self, updated_since: str | None = None) -> list[ExternalTask]:
        """List remote tasks."""
        ...

    def create_task(self, task: ExternalTask) -> ExternalTask | None:
        """Create a remote task. Returns it with its new external ID."""
        ...

    def update_task(self, external_id: str, updates: ExternalTask) -> ExternalTask | None:
        """Update a remote task's fields."""
        ...

    def complete_task(self, external_id: str) -> bool:
        ...

    def reopen_task(self, external_id: str) -> bool:
        ...

    def delete_task(self, external_id: str) -> bool:
        ...

    def fetch_subtasks(self, parent_external_id: str) -> list[ExternalTask]:
        """Only meaningful when supports_subtasks is True."""
        ...

    def create_subtask(self, parent_external_id: str, task: ExternalTask) -> ExternalTask | None:
        """Only meaningful when supports_subtasks is True."""
        ...

    def map_to_local(self, external: ExternalTask) -> dict[str, Any]:
        """Translate to TaskStore field values (title, status, priority, ...)."""
        ...

    def map_to_external(self, task: Task) -> ExternalTask:
        """Translate a local task to the remote shape."""
        ...


# Shared priority translation for providers using the 0 (none) .. 4 (urgent) scale
LOCAL_PRIORITY_BY_LEVEL = {0: "none", 1: "low", 2: "medium", 3: "high", 4: "urgent"}
LEVEL_BY_LOCAL_PRIORITY = {v: k for k, v in LOCAL_PRIORITY_BY_LEVEL.items()}


def local_priority(level: int | None) -> str:
    return LOCAL_PRIORITY_BY_LEVEL.get(level or 0, "none")


def priority_level(task: Task) -> int:
    return LEVEL_BY_LOCAL_PRIORITY[task.priority.value]


def default_map_to_local(external: ExternalTask) -> dict[str, Any]:
    """Field mapping shared by the built-in providers."""
    return {
        "title": external.title,
        "description": external.description or "",
        "status": "done" if external.is_closed else "todo",
        "priority": local_priority(external.priority),
        "project": external.project,
        "tags": list(external.labels),
        "due_date": external.due_date,
    }


def default_map_to_external(task: Task) -> ExternalTask:
    return ExternalTask(
        external_id=task.external_id or "",
        title=task.title,
        updated_at=format_timestamp(task.updated_at),
        status="closed" if task.is_done else "open",
        description=task.description,
        priority=priority_level(task),
        project=task.project,
        labels=list(task.tags),
        due_date=task.due_date.isoformat() if task.due_date else None,
        completed_at=format_timestamp(task.completed_at) if task.completed_at else None,
    )
