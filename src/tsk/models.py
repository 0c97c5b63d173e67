"""Data models for tsk."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

TITLE_MAX_LENGTH = 200

# Sources that may own a task's external identity
KNOWN_SOURCES = ("todoist", "linear", "asana", "claude-code", "codex", "github-issues")


class Status(Enum):
    """Task status."""

    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    ARCHIVED = "archived"

    @property
    def is_resolved(self) -> bool:
        """Done and archived tasks no longer block anything."""
        return self in (Status.DONE, Status.ARCHIVED)


class Priority(Enum):
    """Task priority levels."""

    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def weight(self) -> int:
        """Higher number = higher priority for sorting."""
        return {
            Priority.NONE: 0,
            Priority.LOW: 1,
            Priority.MEDIUM: 2,
            Priority.HIGH: 3,
            Priority.URGENT: 4,
        }[self]


class Frequency(Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a datetime as ISO-8601 UTC with microseconds and a trailing Z."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="microseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp. Naive values are taken as UTC."""
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_date(value: str) -> date:
    """Parse YYYY-MM-DD, also accepting a full ISO timestamp (date part wins)."""
    text = value.strip()
    if len(text) > 10 and text[10] in "T ":
        text = text[:10]
    return date.fromisoformat(text)


@dataclass(frozen=True)
class TaskNote:
    """A note attached to a task."""

    id: str
    content: str
    created_at: datetime
    source: str = "user"  # "user" | "sync"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "createdAt": format_timestamp(self.created_at),
            "source": self.source,
        }


@dataclass(frozen=True)
class RecurrenceRule:
    """How a recurring task repeats.

    days_of_week uses 0=Mon..6=Sun. next_due is informational: it records the
    due date the occurrence carrying this rule was created for.
    """

    frequency: Frequency
    interval: int = 1
    days_of_week: tuple[int, ...] | None = None
    day_of_month: int | None = None
    end_date: date | None = None
    next_due: date | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "frequency": self.frequency.value,
            "interval": self.interval,
        }
        if self.days_of_week is not None:
            d["daysOfWeek"] = list(self.days_of_week)
        if self.day_of_month is not None:
            d["dayOfMonth"] = self.day_of_month
        d["endDate"] = self.end_date.isoformat() if self.end_date else None
        if self.next_due is not None:
            d["nextDue"] = self.next_due.isoformat()
        return d


@dataclass(frozen=True)
class Task:
    """Immutable task record.

    The store replaces records wholesale on every mutation, which keeps undo
    snapshots cheap and makes returned tasks safe to hold on to.
    """

    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    description: str = ""
    status: Status = Status.TODO
    priority: Priority = Priority.NONE
    project: str | None = None
    tags: tuple[str, ...] = ()
    due_date: date | None = None
    completed_at: datetime | None = None
    order: int = 0
    parent_id: str | None = None
    subtask_ids: tuple[str, ...] = ()
    blocked_by: tuple[str, ...] = ()
    recurrence: RecurrenceRule | None = None
    estimate_minutes: int | None = None
    actual_minutes: int | None = None
    notes: tuple[TaskNote, ...] = ()
    external_id: str | None = None
    external_source: str | None = None

    @property
    def is_done(self) -> bool:
        return self.status == Status.DONE

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the persisted JSON shape."""
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "priority": self.priority.value,
            "project": self.project,
            "tags": list(self.tags),
            "dueDate": self.due_date.isoformat() if self.due_date else None,
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
            "completedAt": format_timestamp(self.completed_at) if self.completed_at else None,
            "order": self.order,
            "parentId": self.parent_id,
            "subtaskIds": list(self.subtask_ids),
            "blockedBy": list(self.blocked_by),
            "recurrence": self.recurrence.to_dict() if self.recurrence else None,
            "estimateMinutes": self.estimate_minutes,
            "actualMinutes": self.actual_minutes,
            "notes": [note.to_dict() for note in self.notes],
            "externalId": self.external_id,
            "externalSource": self.external_source,
        }


SORT_FIELDS = ("priority", "due_date", "created_at", "title", "order")


@dataclass(frozen=True)
class FilterState:
    """Query filter for list views.

    status/priority of None means "all" (archived tasks are hidden when the
    status filter is "all").
    """

    status: tuple[Status, ...] | None = None
    priority: tuple[Priority, ...] | None = None
    project: str | None = None
    tag: str | None = None
    search: str = ""
    sort_by: str = "priority"
    sort_direction: str = "desc"  # "asc" | "desc"
    show_subtasks: bool = True

    def __post_init__(self) -> None:
        # Accept any iterable for the multi-value filters
        if self.status is not None:
            object.__setattr__(self, "status", tuple(Status(s) for s in self.status))
        if self.priority is not None:
            object.__setattr__(self, "priority", tuple(Priority(p) for p in self.priority))
        if self.sort_by not in SORT_FIELDS:
            raise ValueError(f"Invalid sort field: {self.sort_by!r}. Valid: {', '.join(SORT_FIELDS)}")
        if self.sort_direction not in ("asc", "desc"):
            raise ValueError(f"Invalid sort direction: {self.sort_direction!r}")


DEFAULT_FILTER = FilterState()


@dataclass(frozen=True)
class TreeRow:
    """A task positioned in a flattened tree listing."""

    task: Task
    depth: int
    is_last: bool


@dataclass(frozen=True)
class Progress:
    done: int
    total: int


@dataclass(frozen=True)
class Stats:
    total: int
    todo: int
    in_progress: int
    done: int


@dataclass
class UndoEntry:
    """One invertible step: the collection as it was before the mutation."""

    description: str
    snapshot: dict[str, Task] = field(default_factory=dict)
