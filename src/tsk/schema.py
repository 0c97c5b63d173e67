"""Tolerant-read parsing of the persisted task file.

Every record is validated field by field and normalized: missing optional
fields get explicit defaults, unknown keys are dropped. A field that is present
but has the wrong type (or an unknown enum value) makes the whole document
invalid, so the loader can quarantine it instead of guessing.
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Any

from tsk.models import (
    KNOWN_SOURCES,
    TITLE_MAX_LENGTH,
    Frequency,
    Priority,
    RecurrenceRule,
    Status,
    Task,
    TaskNote,
    parse_date,
    parse_timestamp,
    utc_now,
)


class SchemaError(ValueError):
    """Persisted data does not match the task schema."""


def _optional(raw: dict, key: str, kind: type | tuple[type, ...], nullable: bool = True) -> Any:
    """Return raw[key] if present and well-typed, None if absent."""
    if key not in raw:
        return None
    value = raw[key]
    if value is None:
        if nullable:
            return None
        raise SchemaError(f"{key} must not be null")
    # bool is an int subclass; never accept it where a number is expected
    if isinstance(value, bool) and bool not in (kind if isinstance(kind, tuple) else (kind,)):
        raise SchemaError(f"{key} has wrong type: bool")
    if not isinstance(value, kind):
        raise SchemaError(f"{key} has wrong type: {type(value).__name__}")
    return value


def _string_list(raw: dict, key: str) -> tuple[str, ...]:
    value = _optional(raw, key, list, nullable=False)
    if value is None:
        return ()
    if not all(isinstance(v, str) for v in value):
        raise SchemaError(f"{key} must be a list of strings")
    return tuple(value)


def _timestamp(raw: dict, key: str, nullable: bool = True) -> datetime | None:
    value = _optional(raw, key, str, nullable=nullable)
    if value is None:
        return None
    try:
        return parse_timestamp(value)
    except ValueError as e:
        raise SchemaError(f"{key} is not a valid timestamp: {value!r}") from e


def _date(raw: dict, key: str) -> date | None:
    value = _optional(raw, key, str)
    if value is None:
        return None
    try:
        return parse_date(value)
    except ValueError as e:
        raise SchemaError(f"{key} is not a valid date: {value!r}") from e


def _int(raw: dict, key: str, nullable: bool = True) -> int | None:
    value = _optional(raw, key, (int, float), nullable=nullable)
    if value is None:
        return None
    if isinstance(value, float) and not value.is_integer():
        raise SchemaError(f"{key} must be an integer")
    return int(value)


def _enum(raw: dict, key: str, enum_cls: type, default: Any) -> Any:
    value = _optional(raw, key, str, nullable=False)
    if value is None:
        return default
    try:
        return enum_cls(value)
    except ValueError as e:
        raise SchemaError(f"{key} has unknown value: {value!r}") from e


def parse_note(raw: Any) -> TaskNote:
    if not isinstance(raw, dict):
        raise SchemaError("note must be an object")
    note_id = _optional(raw, "id", str, nullable=False)
    content = _optional(raw, "content", str, nullable=False)
    created_at = _timestamp(raw, "createdAt", nullable=False)
    source = _optional(raw, "source", str, nullable=False)
    if not note_id or content is None or created_at is None or source is None:
        raise SchemaError("note requires id, content, createdAt and source")
    if source not in ("user", "sync"):
        raise SchemaError(f"note source has unknown value: {source!r}")
    return TaskNote(id=note_id, content=content, created_at=created_at, source=source)


def parse_recurrence(raw: Any) -> RecurrenceRule:
    if not isinstance(raw, dict):
        raise SchemaError("recurrence must be an object")
    if "frequency" not in raw:
        raise SchemaError("recurrence requires frequency")
    frequency = _enum(raw, "frequency", Frequency, None)
    interval = _int(raw, "interval", nullable=False)
    if interval is None:
        interval = 1
    if interval < 1:
        raise SchemaError("recurrence interval must be a positive integer")

    days_of_week = None
    if raw.get("daysOfWeek") is not None:
        days = _optional(raw, "daysOfWeek", list, nullable=False)
        if not all(isinstance(d, int) and not isinstance(d, bool) and 0 <= d <= 6 for d in days):
            raise SchemaError("daysOfWeek must hold integers 0-6")
        days_of_week = tuple(days)

    day_of_month = _int(raw, "dayOfMonth")
    if day_of_month is not None and not 1 <= day_of_month <= 31:
        raise SchemaError("dayOfMonth must be 1-31")

    return RecurrenceRule(
        frequency=frequency,
        interval=interval,
        days_of_week=days_of_week,
        day_of_month=day_of_month,
        end_date=_date(raw, "endDate"),
        next_due=_date(raw, "nextDue"),
    )


def normalize_task(raw: Any, now: datetime | None = None) -> Task:
    """Validate one persisted record and fill defaults for missing fields."""
    if not isinstance(raw, dict):
        raise SchemaError("task record must be an object")
    now = now or utc_now()

    task_id = _optional(raw, "id", str, nullable=False)
    if task_id == "":
        raise SchemaError("id must not be empty")

    external_source = _optional(raw, "externalSource", str)
    if external_source is not None and external_source not in KNOWN_SOURCES:
        raise SchemaError(f"externalSource has unknown value: {external_source!r}")

    recurrence_raw = raw.get("recurrence")
    notes_raw = _optional(raw, "notes", list, nullable=False) or []

    return Task(
        id=task_id or str(uuid.uuid4()),
        title=(_optional(raw, "title", str, nullable=False) or "")[:TITLE_MAX_LENGTH],
        description=_optional(raw, "description", str, nullable=False) or "",
        status=_enum(raw, "status", Status, Status.TODO),
        priority=_enum(raw, "priority", Priority, Priority.NONE),
        project=_optional(raw, "project", str),
        tags=_string_list(raw, "tags"),
        due_date=_date(raw, "dueDate"),
        created_at=_timestamp(raw, "createdAt", nullable=False) or now,
        updated_at=_timestamp(raw, "updatedAt", nullable=False) or now,
        completed_at=_timestamp(raw, "completedAt"),
        order=_int(raw, "order", nullable=False) or 0,
        parent_id=_optional(raw, "parentId", str),
        subtask_ids=_string_list(raw, "subtaskIds"),
        blocked_by=_string_list(raw, "blockedBy"),
        recurrence=parse_recurrence(recurrence_raw) if recurrence_raw is not None else None,
        estimate_minutes=_int(raw, "estimateMinutes"),
        actual_minutes=_int(raw, "actualMinutes"),
        notes=tuple(parse_note(n) for n in notes_raw),
        external_id=_optional(raw, "externalId", str),
        external_source=external_source,
    )


def parse_persisted_tasks(data: Any) -> list[Task]:
    """Parse the decoded task file. Raises SchemaError if anything is invalid."""
    if not isinstance(data, list):
        raise SchemaError("task file must contain a JSON array")
    now = utc_now()
    return [normalize_task(raw, now) for raw in data]
