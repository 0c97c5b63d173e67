"""Tests for data models."""

from datetime import date, datetime, timezone

import pytest

from tsk.models import (
    FilterState,
    Frequency,
    Priority,
    RecurrenceRule,
    Status,
    Task,
    TaskNote,
    format_timestamp,
    parse_date,
    parse_timestamp,
)


class TestStatus:
    def test_values(self):
        assert Status.TODO.value == "todo"
        assert Status.IN_PROGRESS.value == "in_progress"

    def test_resolved(self):
        assert Status.DONE.is_resolved
        assert Status.ARCHIVED.is_resolved
        assert not Status.TODO.is_resolved
        assert not Status.IN_PROGRESS.is_resolved


class TestPriority:
    def test_weight_ordering(self):
        weights = [p.weight for p in (Priority.NONE, Priority.LOW, Priority.MEDIUM, Priority.HIGH, Priority.URGENT)]
        assert weights == sorted(weights)
        assert Priority.URGENT.weight == 4


class TestTimestamps:
    def test_format_utc_with_z(self):
        value = datetime(2025, 1, 2, 3, 4, 5, 6000, tzinfo=timezone.utc)
        assert format_timestamp(value) == "2025-01-02T03:04:05.006000Z"

    def test_naive_treated_as_utc(self):
        assert format_timestamp(datetime(2025, 1, 1)) == "2025-01-01T00:00:00.000000Z"

    def test_parse_z_suffix(self):
        parsed = parse_timestamp("2025-06-01T00:00:00Z")
        assert parsed == datetime(2025, 6, 1, tzinfo=timezone.utc)

    def test_parse_offset_converts_to_utc(self):
        parsed = parse_timestamp("2025-06-01T02:00:00+02:00")
        assert parsed == datetime(2025, 6, 1, tzinfo=timezone.utc)

    def test_parse_invalid_raises(self):
        with pytest.raises(ValueError):
            parse_timestamp("yesterday")

    def test_parse_date_accepts_timestamp(self):
        assert parse_date("2025-01-06T10:00:00Z") == date(2025, 1, 6)
        assert parse_date("2025-01-06") == date(2025, 1, 6)


class TestTaskToDict:
    def test_camel_case_keys(self):
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        task = Task(
            id="t1",
            title="Write report",
            created_at=now,
            updated_at=now,
            tags=("work",),
            due_date=date(2025, 1, 6),
            recurrence=RecurrenceRule(Frequency.WEEKLY),
            notes=(TaskNote("n1", "hi", now),),
        )
        d = task.to_dict()
        assert d["dueDate"] == "2025-01-06"
        assert d["createdAt"] == "2025-01-01T00:00:00.000000Z"
        assert d["parentId"] is None
        assert d["subtaskIds"] == []
        assert d["tags"] == ["work"]
        assert d["recurrence"] == {"frequency": "weekly", "interval": 1, "endDate": None}
        assert d["notes"][0]["source"] == "user"
        assert d["externalSource"] is None


class TestFilterState:
    def test_defaults(self):
        f = FilterState()
        assert f.status is None
        assert f.sort_by == "priority"
        assert f.sort_direction == "desc"

    def test_coerces_strings_to_enums(self):
        f = FilterState(status=["todo", "done"], priority=["high"])
        assert f.status == (Status.TODO, Status.DONE)
        assert f.priority == (Priority.HIGH,)

    def test_rejects_unknown_sort_field(self):
        with pytest.raises(ValueError, match="Invalid sort field"):
            FilterState(sort_by="color")

    def test_rejects_unknown_direction(self):
        with pytest.raises(ValueError):
            FilterState(sort_direction="sideways")

    def test_rejects_unknown_status(self):
        with pytest.raises(ValueError):
            FilterState(status=["waiting"])
