"""Tests for persisted task parsing."""

from datetime import date, datetime, timezone

import pytest

from tsk.models import Frequency, Priority, Status
from tsk.schema import SchemaError, normalize_task, parse_persisted_tasks, parse_recurrence

NOW = datetime(2025, 3, 1, tzinfo=timezone.utc)


class TestNormalizeTask:
    def test_minimal_record_gets_defaults(self):
        task = normalize_task({"id": "a", "title": "Hello"}, now=NOW)
        assert task.status == Status.TODO
        assert task.priority == Priority.NONE
        assert task.description == ""
        assert task.tags == ()
        assert task.subtask_ids == ()
        assert task.created_at == NOW
        assert task.updated_at == NOW
        assert task.recurrence is None

    def test_missing_id_generates_one(self):
        task = normalize_task({"title": "x"}, now=NOW)
        assert task.id

    def test_unknown_keys_dropped(self):
        task = normalize_task({"id": "a", "title": "x", "color": "red"}, now=NOW)
        assert "color" not in task.to_dict()

    def test_full_record(self):
        task = normalize_task(
            {
                "id": "a",
                "title": "Review",
                "status": "in_progress",
                "priority": "high",
                "tags": ["x", "y"],
                "dueDate": "2025-01-06",
                "createdAt": "2025-01-01T00:00:00Z",
                "updatedAt": "2025-01-02T00:00:00Z",
                "parentId": None,
                "estimateMinutes": 30,
                "recurrence": {"frequency": "weekly", "interval": 2},
                "notes": [
                    {"id": "n", "content": "c", "createdAt": "2025-01-01T00:00:00Z", "source": "sync"}
                ],
                "externalId": "X1",
                "externalSource": "todoist",
            },
            now=NOW,
        )
        assert task.status == Status.IN_PROGRESS
        assert task.due_date == date(2025, 1, 6)
        assert task.recurrence.frequency == Frequency.WEEKLY
        assert task.recurrence.interval == 2
        assert task.notes[0].source == "sync"
        assert task.estimate_minutes == 30
        assert task.external_source == "todoist"

    def test_title_truncated(self):
        task = normalize_task({"id": "a", "title": "x" * 300}, now=NOW)
        assert len(task.title) == 200

    @pytest.mark.parametrize(
        "record",
        [
            {"id": "a", "title": 5},
            {"id": "a", "title": "x", "status": "waiting"},
            {"id": "a", "title": "x", "priority": 3},
            {"id": "a", "title": "x", "tags": "work"},
            {"id": "a", "title": "x", "dueDate": "next week"},
            {"id": "a", "title": "x", "estimateMinutes": True},
            {"id": "a", "title": "x", "externalSource": "jira"},
            {"id": "", "title": "x"},
        ],
    )
    def test_wrong_types_raise(self, record):
        with pytest.raises(SchemaError):
            normalize_task(record, now=NOW)

    def test_non_object_raises(self):
        with pytest.raises(SchemaError):
            normalize_task(["not", "a", "task"], now=NOW)


class TestParseRecurrence:
    def test_interval_defaults_to_one(self):
        assert parse_recurrence({"frequency": "daily"}).interval == 1

    def test_rejects_zero_interval(self):
        with pytest.raises(SchemaError):
            parse_recurrence({"frequency": "daily", "interval": 0})

    def test_rejects_bad_weekday(self):
        with pytest.raises(SchemaError):
            parse_recurrence({"frequency": "weekly", "daysOfWeek": [7]})


class TestParsePersistedTasks:
    def test_requires_array(self):
        with pytest.raises(SchemaError):
            parse_persisted_tasks({"tasks": []})

    def test_empty_array(self):
        assert parse_persisted_tasks([]) == []

    def test_schema_error_is_value_error(self):
        assert issubclass(SchemaError, ValueError)
