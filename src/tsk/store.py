"""Task store: the authoritative in-memory task collection.

All mutations go through TaskStore. Each successful mutation refreshes the
touched tasks' updated_at, pushes one undo entry, notifies subscribers and
schedules a debounced save. Not-found and structural violations return
None/False without touching state or history; invalid input raises ValueError
before anything changes.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections import defaultdict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import replace
from datetime import date, datetime
from functools import cmp_to_key
from pathlib import Path
from typing import Any

from tsk.models import (
    DEFAULT_FILTER,
    TITLE_MAX_LENGTH,
    FilterState,
    Priority,
    Progress,
    RecurrenceRule,
    Stats,
    Status,
    Task,
    TaskNote,
    TreeRow,
    parse_date,
    utc_now,
)
from tsk.persistence import DEFAULT_RETRY_DELAYS, DebouncedWriter, quarantine_file
from tsk.recurrence import compute_next_due, is_past_end
from tsk.schema import SchemaError, parse_persisted_tasks
from tsk.storage import ensure_data_dir
from tsk.undo import UndoHistory

logger = logging.getLogger("tsk.store")

UPDATABLE_FIELDS = frozenset(
    {
        "title",
        "description",
        "status",
        "priority",
        "project",
        "tags",
        "due_date",
        "recurrence",
        "estimate_minutes",
    }
)


def _to_priority(value: Priority | str) -> Priority:
    if isinstance(value, Priority):
        return value
    try:
        return Priority(value.lower())
    except ValueError:
        valid = ", ".join(p.value for p in Priority)
        raise ValueError(f"Invalid priority: {value!r}. Valid: {valid}")


def _to_status(value: Status | str) -> Status:
    if isinstance(value, Status):
        return value
    try:
        return Status(value.lower())
    except ValueError:
        valid = ", ".join(s.value for s in Status)
        raise ValueError(f"Invalid status: {value!r}. Valid: {valid}")


def _to_due(value: date | str | None) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return parse_date(value)


def _clean_title(title: str) -> str:
    title = title.strip()
    if not title:
        raise ValueError("Task title must not be empty")
    return title[:TITLE_MAX_LENGTH]


def _clean_tags(tags: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for tag in tags:
        tag = tag.strip()
        if tag:
            seen.setdefault(tag, None)
    return tuple(seen)


def _clean_minutes(minutes: int | None, allow_none: bool = True) -> int | None:
    if minutes is None:
        if allow_none:
            return None
        raise ValueError("Minutes are required")
    if minutes < 0:
        raise ValueError(f"Minutes must not be negative: {minutes}")
    return int(minutes)


def _compare_due(a: date | None, b: date | None) -> int:
    """Dated before undated, earliest first."""
    if a and b:
        return (a > b) - (a < b)
    if a:
        return -1
    if b:
        return 1
    return 0


def _compare_primary(a: Task, b: Task, sort_by: str) -> int:
    """Natural ascending order for the sort field."""
    if sort_by == "priority":
        return a.priority.weight - b.priority.weight
    if sort_by == "due_date":
        return _compare_due(a.due_date, b.due_date)
    if sort_by == "created_at":
        return (a.created_at > b.created_at) - (a.created_at < b.created_at)
    if sort_by == "title":
        ta, tb = a.title.casefold(), b.title.casefold()
        return (ta > tb) - (ta < tb)
    return a.order - b.order


def _task_sort_key(filter: FilterState) -> Callable[[Task], Any]:
    """Total order over tasks: ties on every field are broken by task ID."""
    only_done = filter.status == (Status.DONE,)
    direction = -1 if filter.sort_direction == "desc" else 1

    def compare(a: Task, b: Task) -> int:
        # Done tasks sink to the bottom unless the view is done-only
        if not only_done and a.is_done != b.is_done:
            return 1 if a.is_done else -1
        cmp = direction * _compare_primary(a, b, filter.sort_by)
        if cmp:
            return cmp
        cmp = _compare_due(a.due_date, b.due_date)
        if cmp:
            return cmp
        cmp = (a.created_at > b.created_at) - (a.created_at < b.created_at)
        if cmp:
            return cmp
        return (a.id > b.id) - (a.id < b.id)

    return cmp_to_key(compare)


class TaskStore:
    """In-memory task collection with undo/redo and durable persistence.

    Tasks are kept in an insertion-ordered id -> Task map. Mutations build a
    new map and swap it in whole, so a background save always serializes a
    consistent collection and undo snapshots never need deep copies.
    """

    def __init__(
        self,
        path: Path,
        *,
        debounce_seconds: float = 0.3,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        clock: Callable[[], datetime] = utc_now,
        timer_clock: Callable[[], float] = time.monotonic,
    ):
        self._path = path
        self._tasks: dict[str, Task] = {}
        self._history = UndoHistory()
        self._listeners: list[Callable[[], None]] = []
        self._clock = clock
        self._timer_clock = timer_clock
        self._writer = DebouncedWriter(path, self._serialize, debounce_seconds, retry_delays)
        self.quarantined_path: Path | None = None

        # Active timer (not persisted, not part of undo history)
        self.active_timer_task_id: str | None = None
        self.active_timer_start: float | None = None

    @classmethod
    def load(cls, path: Path, **kwargs: Any) -> TaskStore:
        """Factory method - create a store from the task file at path.

        A missing file starts an empty store; an invalid file is quarantined
        to a timestamped .invalid.*.bak sidecar and replaced by a fresh, valid
        file. Raises if the data directory itself is unusable.
        """
        ensure_data_dir(path.parent)
        store = cls(path, **kwargs)
        store._load()
        return store

    # CRUD

    def add_task(
        self,
        title: str,
        *,
        description: str = "",
        priority: Priority | str = Priority.NONE,
        project: str | None = None,
        tags: Iterable[str] = (),
        due_date: date | str | None = None,
        parent_id: str | None = None,
        recurrence: RecurrenceRule | None = None,
        estimate_minutes: int | None = None,
        status: Status | str = Status.TODO,
    ) -> Task | None:
        """Create a task, top-level or under parent_id.

        Returns None (and changes nothing) if parent_id is unknown.
        """
        task = self._new_task(
            title,
            description=description,
            priority=_to_priority(priority),
            project=project,
            tags=_clean_tags(tags),
            due_date=_to_due(due_date),
            recurrence=recurrence,
            estimate_minutes=_clean_minutes(estimate_minutes),
            status=_to_status(status),
        )
        if parent_id is not None and parent_id not in self._tasks:
            return None

        updates = self._insert(task, parent_id)
        self._commit("Add task", updates)
        return updates[task.id]

    def add_subtask(self, parent_id: str, title: str, **fields: Any) -> Task | None:
        if parent_id not in self._tasks:
            return None
        return self.add_task(title, parent_id=parent_id, **fields)

    def update_task(self, id: str, **changes: Any) -> Task | None:
        """Apply only the given fields. Returns the updated task or None."""
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
        task = self._tasks.get(id)
        if task is None:
            return None

        now = self._clock()
        values: dict[str, Any] = {}
        if "title" in changes:
            values["title"] = _clean_title(changes["title"])
        if "description" in changes:
            values["description"] = changes["description"] or ""
        if "priority" in changes:
            values["priority"] = _to_priority(changes["priority"])
        if "project" in changes:
            values["project"] = changes["project"] or None
        if "tags" in changes:
            values["tags"] = _clean_tags(changes["tags"] or ())
        if "due_date" in changes:
            values["due_date"] = _to_due(changes["due_date"])
        if "recurrence" in changes:
            values["recurrence"] = changes["recurrence"]
        if "estimate_minutes" in changes:
            values["estimate_minutes"] = _clean_minutes(changes["estimate_minutes"])
        if "status" in changes:
            values.update(self._status_values(task, _to_status(changes["status"]), now))

        updated = replace(task, updated_at=now, **values)
        self._commit("Update task", {id: updated})
        return updated

    def delete_task(self, id: str) -> bool:
        """Delete a task and its whole subtree, detaching it from its parent."""
        task = self._tasks.get(id)
        if task is None:
            return False

        now = self._clock()
        updates: dict[str, Task] = {}
        parent = self._tasks.get(task.parent_id) if task.parent_id else None
        if parent is not None:
            updates[parent.id] = replace(
                parent,
                subtask_ids=tuple(sid for sid in parent.subtask_ids if sid != id),
                updated_at=now,
            )

        removed = self._collect_subtree_ids(id)
        self._commit("Delete task", updates, removed)
        if self.active_timer_task_id in removed:
            self._clear_timer()
        return True

    # Status transitions

    def toggle_done(self, id: str) -> Task | None:
        task = self._tasks.get(id)
        if task is None:
            return None
        status = Status.TODO if task.is_done else Status.DONE
        return self._set_status(task, status, "Toggle done")

    def move_to_status(self, id: str, status: Status | str) -> Task | None:
        status = _to_status(status)
        task = self._tasks.get(id)
        if task is None:
            return None
        return self._set_status(task, status, "Change status")

    def complete_recurring(self, id: str) -> Task | None:
        """Mark a task done and create its next occurrence.

        Returns the new occurrence, or None if the task is unknown, has no
        recurrence rule, or the next due date falls after the rule's end date.
        The task is marked done in every case where it exists.
        """
        task = self._tasks.get(id)
        if task is None:
            return None

        now = self._clock()
        done = replace(task, updated_at=now, **self._status_values(task, Status.DONE, now))
        updates = {id: done}
        rule = task.recurrence
        if rule is None:
            self._commit("Complete task", updates)
            return None

        next_due = compute_next_due(task.due_date, rule, today=now.date())
        if is_past_end(next_due, rule):
            self._commit("Complete recurring", updates)
            return None

        occurrence = self._new_task(
            task.title,
            description=task.description,
            priority=task.priority,
            project=task.project,
            tags=task.tags,
            due_date=next_due,
            recurrence=replace(rule, next_due=next_due),
            estimate_minutes=task.estimate_minutes,
            status=Status.TODO,
        )
        parent_id = task.parent_id if task.parent_id in self._tasks else None
        updates.update(self._insert(occurrence, parent_id, base=updates))
        self._commit("Complete recurring", updates)
        return updates[occurrence.id]

    # Ordering

    def reorder(self, id: str, direction: str) -> bool:
        """Swap manual order with the neighbouring task ("up" or "down")."""
        if direction not in ("up", "down"):
            raise ValueError(f"Invalid direction: {direction!r}")
        task = self._tasks.get(id)
        if task is None:
            return False
        ordered = sorted(self._tasks.values(), key=lambda t: (t.order, t.id))
        idx = next(i for i, t in enumerate(ordered) if t.id == id)
        swap_idx = idx - 1 if direction == "up" else idx + 1
        if swap_idx < 0 or swap_idx >= len(ordered):
            return False

        other = ordered[swap_idx]
        now = self._clock()
        new_order, other_order = other.order, task.order
        if new_order == other_order:
            new_order += -1 if direction == "up" else 1
        self._commit(
            "Reorder",
            {
                task.id: replace(task, order=new_order, updated_at=now),
                other.id: replace(other, order=other_order, updated_at=now),
            },
        )
        return True

    # Subtask operations

    def remove_subtask(self, parent_id: str, subtask_id: str) -> bool:
        parent = self._tasks.get(parent_id)
        if parent is None or subtask_id not in parent.subtask_ids:
            return False
        return self.delete_task(subtask_id)

    def promote_subtask(self, id: str) -> bool:
        """Detach a subtask from its parent. False if it has none."""
        task = self._tasks.get(id)
        if task is None or task.parent_id is None:
            return False

        now = self._clock()
        updates = {id: replace(task, parent_id=None, updated_at=now)}
        parent = self._tasks.get(task.parent_id)
        if parent is not None:
            updates[parent.id] = replace(
                parent,
                subtask_ids=tuple(sid for sid in parent.subtask_ids if sid != id),
                updated_at=now,
            )
        self._commit("Promote subtask", updates)
        return True

    def indent_task(self, child_id: str, new_parent_id: str) -> bool:
        """Move child_id under new_parent_id.

        Rejected without any change if either ID is unknown, the IDs are the
        same, the task is already under that parent, or new_parent_id is a
        descendant of child_id.
        """
        task = self._tasks.get(child_id)
        new_parent = self._tasks.get(new_parent_id)
        if task is None or new_parent is None:
            return False
        if child_id == new_parent_id or task.parent_id == new_parent_id:
            return False
        if self._is_descendant(new_parent_id, child_id):
            return False

        now = self._clock()
        updates: dict[str, Task] = {}
        old_parent = self._tasks.get(task.parent_id) if task.parent_id else None
        if old_parent is not None:
            updates[old_parent.id] = replace(
                old_parent,
                subtask_ids=tuple(sid for sid in old_parent.subtask_ids if sid != child_id),
                updated_at=now,
            )
        updates[child_id] = replace(task, parent_id=new_parent_id, updated_at=now)
        updates[new_parent_id] = replace(
            new_parent,
            subtask_ids=new_parent.subtask_ids + (child_id,),
            updated_at=now,
        )
        self._commit("Indent task", updates)
        return True

    # Notes

    def add_note(self, id: str, content: str, source: str = "user") -> TaskNote | None:
        if source not in ("user", "sync"):
            raise ValueError(f"Invalid note source: {source!r}")
        task = self._tasks.get(id)
        if task is None:
            return None
        now = self._clock()
        note = TaskNote(id=str(uuid.uuid4()), content=content, created_at=now, source=source)
        self._commit("Add note", {id: replace(task, notes=task.notes + (note,), updated_at=now)})
        return note

    def delete_note(self, id: str, note_id: str) -> bool:
        task = self._tasks.get(id)
        if task is None or not any(n.id == note_id for n in task.notes):
            return False
        notes = tuple(n for n in task.notes if n.id != note_id)
        self._commit("Delete note", {id: replace(task, notes=notes, updated_at=self._clock())})
        return True

    # Recurrence

    def set_recurrence(self, id: str, rule: RecurrenceRule | None) -> bool:
        task = self._tasks.get(id)
        if task is None:
            return False
        self._commit(
            "Set recurrence", {id: replace(task, recurrence=rule, updated_at=self._clock())}
        )
        return True

    # Time tracking

    def set_estimate(self, id: str, minutes: int | None) -> bool:
        minutes = _clean_minutes(minutes)
        task = self._tasks.get(id)
        if task is None:
            return False
        self._commit(
            "Set estimate",
            {id: replace(task, estimate_minutes=minutes, updated_at=self._clock())},
        )
        return True

    def log_time(self, id: str, minutes: int) -> bool:
        """Add minutes to the task's actual time."""
        minutes = _clean_minutes(minutes, allow_none=False)
        task = self._tasks.get(id)
        if task is None:
            return False
        actual = (task.actual_minutes or 0) + minutes
        self._commit(
            "Log time", {id: replace(task, actual_minutes=actual, updated_at=self._clock())}
        )
        return True

    def start_timer(self, id: str) -> bool:
        """Start timing a task.

        A timer already running on another task is stopped first and its time
        logged. Returns False if the task is unknown or already being timed.
        A todo task moves to in_progress.
        """
        task = self._tasks.get(id)
        if task is None or self.active_timer_task_id == id:
            return False
        if self.active_timer_task_id is not None:
            self.stop_timer()
            task = self._tasks[id]

        self.active_timer_task_id = id
        self.active_timer_start = self._timer_clock()
        if task.status == Status.TODO:
            self._set_status(task, Status.IN_PROGRESS, "Start timer")
        else:
            self._notify()
        return True

    def stop_timer(self) -> int:
        """Stop the active timer. Returns elapsed whole minutes (0 if none)."""
        if self.active_timer_task_id is None or self.active_timer_start is None:
            return 0
        task_id = self.active_timer_task_id
        elapsed = round((self._timer_clock() - self.active_timer_start) / 60)
        self._clear_timer()
        if elapsed > 0 and task_id in self._tasks:
            self.log_time(task_id, elapsed)
        else:
            self._notify()
        return elapsed

    # Dependencies

    def add_blocker(self, id: str, blocker_id: str) -> bool:
        task = self._tasks.get(id)
        if task is None or blocker_id not in self._tasks or id == blocker_id:
            return False
        if blocker_id in task.blocked_by:
            return False
        self._commit(
            "Add blocker",
            {id: replace(task, blocked_by=task.blocked_by + (blocker_id,), updated_at=self._clock())},
        )
        return True

    def remove_blocker(self, id: str, blocker_id: str) -> bool:
        task = self._tasks.get(id)
        if task is None or blocker_id not in task.blocked_by:
            return False
        blocked_by = tuple(b for b in task.blocked_by if b != blocker_id)
        self._commit(
            "Remove blocker", {id: replace(task, blocked_by=blocked_by, updated_at=self._clock())}
        )
        return True

    def is_blocked(self, id: str) -> bool:
        """True if any existing blocker is neither done nor archived."""
        task = self._tasks.get(id)
        if task is None:
            return False
        for blocker_id in task.blocked_by:
            blocker = self._tasks.get(blocker_id)
            if blocker is not None and not blocker.status.is_resolved:
                return True
        return False

    def get_unblocked_tasks(self, id: str) -> list[str]:
        """IDs of tasks blocked by id that have no remaining open blocker."""
        return [
            t.id for t in self._tasks.values() if id in t.blocked_by and not self.is_blocked(t.id)
        ]

    # Sync bookkeeping

    def set_external_identity(
        self, id: str, external_id: str | None, source: str | None
    ) -> Task | None:
        """Record which remote task mirrors this one.

        Identity bookkeeping, not a user edit: updated_at is left alone and no
        undo entry is pushed.
        """
        task = self._tasks.get(id)
        if task is None:
            return None
        updated = replace(task, external_id=external_id, external_source=source)
        tasks = dict(self._tasks)
        tasks[id] = updated
        self._tasks = tasks
        self._notify()
        self._writer.schedule()
        return updated

    # Queries

    @property
    def tasks(self) -> list[Task]:
        return list(self._tasks.values())

    @property
    def path(self) -> Path:
        return self._path

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, id: object) -> bool:
        return id in self._tasks

    def get(self, id: str) -> Task | None:
        return self._tasks.get(id)

    def get_subtasks(self, id: str) -> list[Task]:
        parent = self._tasks.get(id)
        if parent is None:
            return []
        return [self._tasks[sid] for sid in parent.subtask_ids if sid in self._tasks]

    def get_progress(self, id: str) -> Progress:
        """Done/total over direct children only."""
        subtasks = self.get_subtasks(id)
        return Progress(done=sum(1 for t in subtasks if t.is_done), total=len(subtasks))

    def get_top_level_tasks(self) -> list[Task]:
        return [t for t in self._tasks.values() if t.parent_id is None]

    def get_by_project(self, project: str) -> list[Task]:
        return [t for t in self._tasks.values() if t.project == project]

    def get_by_date(self, day: date | str) -> list[Task]:
        day = _to_due(day)
        return [t for t in self._tasks.values() if t.due_date == day]

    def get_projects(self) -> list[str]:
        return sorted({t.project for t in self._tasks.values() if t.project})

    def get_tags(self) -> list[str]:
        return sorted({tag for t in self._tasks.values() for tag in t.tags})

    def get_stats(self) -> Stats:
        counts = {status: 0 for status in Status}
        for t in self._tasks.values():
            counts[t.status] += 1
        todo, in_progress, done = (
            counts[Status.TODO],
            counts[Status.IN_PROGRESS],
            counts[Status.DONE],
        )
        return Stats(total=todo + in_progress + done, todo=todo, in_progress=in_progress, done=done)

    def get_filtered(self, filter: FilterState = DEFAULT_FILTER) -> list[Task]:
        """Tasks matching filter, in a deterministic total order."""
        search = filter.search.lower()
        result = []
        for t in self._tasks.values():
            if filter.status is not None:
                if t.status not in filter.status:
                    continue
            elif t.status == Status.ARCHIVED:
                continue
            if filter.priority is not None and t.priority not in filter.priority:
                continue
            if filter.project is not None and t.project != filter.project:
                continue
            if filter.tag is not None and filter.tag not in t.tags:
                continue
            if search:
                haystack = " ".join(
                    [t.title, t.description, t.project or "", *t.tags, *(n.content for n in t.notes)]
                ).lower()
                if search not in haystack:
                    continue
            if not filter.show_subtasks and t.parent_id is not None:
                continue
            result.append(t)

        result.sort(key=_task_sort_key(filter))
        return result

    def get_filtered_tree(self, filter: FilterState = DEFAULT_FILTER) -> list[TreeRow]:
        """Filtered tasks flattened depth-first, parents before children.

        Tasks whose parent is filtered out are listed at depth 0 after the
        rooted tree, followed by their own children.
        """
        filtered = self.get_filtered(filter)
        ids = {t.id for t in filtered}
        children: dict[str | None, list[Task]] = defaultdict(list)
        for t in filtered:
            children[t.parent_id].append(t)

        rows: list[TreeRow] = []

        def visit(parent_id: str | None, depth: int) -> None:
            kids = children.get(parent_id, [])
            for i, task in enumerate(kids):
                rows.append(TreeRow(task=task, depth=depth, is_last=i == len(kids) - 1))
                visit(task.id, depth + 1)

        visit(None, 0)
        for t in filtered:
            if t.parent_id is not None and t.parent_id not in ids:
                rows.append(TreeRow(task=t, depth=0, is_last=True))
                visit(t.id, 1)
        return rows

    # Undo / Redo

    def undo(self) -> bool:
        restored = self._history.undo(self._tasks)
        if restored is None:
            return False
        self._restore(restored)
        return True

    def redo(self) -> bool:
        restored = self._history.redo(self._tasks)
        if restored is None:
            return False
        self._restore(restored)
        return True

    @property
    def undo_count(self) -> int:
        return self._history.undo_count

    @property
    def redo_count(self) -> int:
        return self._history.redo_count

    @property
    def undo_history(self) -> list[str]:
        return self._history.descriptions

    # Subscription

    def subscribe(self, listener: Callable[[], None]) -> Callable[[], None]:
        """Call listener after every change. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # Persistence

    @property
    def persistence_error(self) -> str | None:
        return self._writer.error

    @property
    def has_pending_save(self) -> bool:
        return self._writer.pending

    def flush(self) -> bool:
        """Write to disk now, superseding any pending debounced save."""
        return self._writer.flush()

    def close(self) -> None:
        """Flush pending changes and stop background timers."""
        if self._writer.pending:
            self._writer.flush()
        self._writer.close()

    # Private helpers

    def _serialize(self) -> list[dict[str, Any]]:
        return [task.to_dict() for task in list(self._tasks.values())]

    def _load(self) -> None:
        if not self._path.exists():
            self._tasks = {}
            self._writer.flush()
            return

        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            tasks = parse_persisted_tasks(data)
            by_id: dict[str, Task] = {}
            for task in tasks:
                if task.id in by_id:
                    raise SchemaError(f"duplicate task id: {task.id}")
                by_id[task.id] = task
        except (json.JSONDecodeError, UnicodeDecodeError, SchemaError) as e:
            logger.error("Could not load %s: %s", self._path, e)
            self.quarantined_path = quarantine_file(self._path)
            self._tasks = {}
            self._writer.flush()
            return

        self._tasks = self._repair_hierarchy(by_id)
        logger.debug("Loaded %d tasks from %s", len(self._tasks), self._path)

    def _repair_hierarchy(self, tasks: dict[str, Task]) -> dict[str, Task]:
        """Make parent/subtask links mutually consistent and acyclic.

        Consistent files come back unchanged.
        """
        repaired = dict(tasks)
        for task in tasks.values():
            parent_id = task.parent_id
            if parent_id is not None and parent_id not in repaired:
                logger.warning("Task %s references missing parent %s", task.id, parent_id)
                repaired[task.id] = replace(repaired[task.id], parent_id=None)

        # Break cycles in the parent chain
        for task_id in list(repaired):
            seen = {task_id}
            current = repaired[task_id]
            while current.parent_id is not None:
                if current.parent_id in seen:
                    logger.warning("Breaking parent cycle at task %s", current.id)
                    repaired[current.id] = replace(current, parent_id=None)
                    break
                seen.add(current.parent_id)
                current = repaired[current.parent_id]

        for task_id, task in list(repaired.items()):
            kids = tuple(
                sid
                for sid in dict.fromkeys(task.subtask_ids)
                if sid in repaired and repaired[sid].parent_id == task_id
            )
            missing = tuple(
                t.id for t in repaired.values() if t.parent_id == task_id and t.id not in kids
            )
            if kids + missing != task.subtask_ids:
                repaired[task_id] = replace(task, subtask_ids=kids + missing)
        return repaired

    def _new_task(self, title: str, **fields: Any) -> Task:
        now = self._clock()
        status = fields.pop("status", Status.TODO)
        return Task(
            id=str(uuid.uuid4()),
            title=_clean_title(title),
            created_at=now,
            updated_at=now,
            status=status,
            completed_at=now if status == Status.DONE else None,
            **fields,
        )

    def _insert(
        self, task: Task, parent_id: str | None, base: dict[str, Task] | None = None
    ) -> dict[str, Task]:
        """Updates that add task (with the next order key) under parent_id."""
        next_order = max((t.order for t in self._tasks.values()), default=-1) + 1
        task = replace(task, order=next_order, parent_id=parent_id)
        updates = {task.id: task}
        if parent_id is not None:
            parent = (base or {}).get(parent_id) or self._tasks[parent_id]
            updates[parent_id] = replace(
                parent, subtask_ids=parent.subtask_ids + (task.id,), updated_at=task.created_at
            )
        return updates

    def _status_values(self, task: Task, status: Status, now: datetime) -> dict[str, Any]:
        """completed_at is set on entering done and cleared on leaving it."""
        if status == Status.DONE:
            completed_at = task.completed_at if task.is_done and task.completed_at else now
        else:
            completed_at = None
        return {"status": status, "completed_at": completed_at}

    def _set_status(self, task: Task, status: Status, description: str) -> Task:
        now = self._clock()
        updated = replace(task, updated_at=now, **self._status_values(task, status, now))
        self._commit(description, {task.id: updated})
        return updated

    def _commit(
        self,
        description: str,
        updates: dict[str, Task],
        removed: Iterable[str] = (),
    ) -> None:
        before = self._tasks
        after = dict(before)
        after.update(updates)
        for task_id in removed:
            after.pop(task_id, None)
        self._history.record(description, before)
        self._tasks = after
        self._notify()
        self._writer.schedule()

    def _restore(self, tasks: dict[str, Task]) -> None:
        # External identity is sync bookkeeping and survives undo/redo
        restored = {}
        for id, task in tasks.items():
            live = self._tasks.get(id)
            if live is not None and (live.external_id, live.external_source) != (
                task.external_id,
                task.external_source,
            ):
                task = replace(
                    task, external_id=live.external_id, external_source=live.external_source
                )
            restored[id] = task
        self._tasks = restored
        if self.active_timer_task_id is not None and self.active_timer_task_id not in restored:
            self._clear_timer()
        self._notify()
        self._writer.schedule()

    def _clear_timer(self) -> None:
        self.active_timer_task_id = None
        self.active_timer_start = None

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener()

    def _collect_subtree_ids(self, id: str) -> set[str]:
        ids = {id}
        queue = [id]
        while queue:
            current = self._tasks.get(queue.pop())
            if current is None:
                continue
            for sid in current.subtask_ids:
                if sid not in ids:
                    ids.add(sid)
                    queue.append(sid)
        return ids

    def _is_descendant(self, candidate_id: str, ancestor_id: str) -> bool:
        """True if ancestor_id appears in candidate_id's parent chain."""
        current = self._tasks.get(candidate_id)
        seen: set[str] = set()
        while current is not None and current.parent_id is not None:
            if current.parent_id == ancestor_id:
                return True
            if current.parent_id in seen:
                break
            seen.add(current.parent_id)
            current = self._tasks.get(current.parent_id)
        return False
