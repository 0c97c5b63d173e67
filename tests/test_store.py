"""Tests for the task store."""

import json
import os
from datetime import date
from pathlib import Path

import pytest

from tsk.models import FilterState, Frequency, Priority, RecurrenceRule, Status
from tsk.store import TaskStore


def _reload(path: Path) -> TaskStore:
    return TaskStore.load(path, debounce_seconds=60)


class TestAddTask:
    def test_add_top_level(self, store):
        task = store.add_task("Write tests", priority="high", tags=["dev", "dev", " "])
        assert task.title == "Write tests"
        assert task.priority == Priority.HIGH
        assert task.tags == ("dev",)
        assert task.status == Status.TODO
        assert task.parent_id is None
        assert store.get(task.id) == task

    def test_title_trimmed_and_truncated(self, store):
        task = store.add_task("  " + "x" * 250 + "  ")
        assert len(task.title) == 200

    def test_empty_title_rejected(self, store):
        with pytest.raises(ValueError):
            store.add_task("   ")
        assert len(store) == 0

    def test_invalid_priority_rejected(self, store):
        with pytest.raises(ValueError, match="Invalid priority"):
            store.add_task("x", priority="critical")

    def test_unknown_parent_returns_none(self, store):
        assert store.add_task("child", parent_id="missing") is None
        assert len(store) == 0
        assert store.undo_count == 0

    def test_order_keys_increase(self, store):
        a = store.add_task("a")
        b = store.add_task("b")
        assert b.order > a.order


class TestHierarchy:
    def test_add_subtask_links_both_sides(self, store):
        parent = store.add_task("parent")
        child = store.add_subtask(parent.id, "child")
        assert child.parent_id == parent.id
        assert store.get(parent.id).subtask_ids == (child.id,)
        assert store.get_subtasks(parent.id) == [child]

    def test_delete_removes_subtree(self, store):
        root = store.add_task("root")
        child = store.add_subtask(root.id, "child")
        grandchild = store.add_subtask(child.id, "grandchild")
        other = store.add_task("other")

        assert store.delete_task(root.id) is True
        assert root.id not in store
        assert child.id not in store
        assert grandchild.id not in store
        assert other.id in store

    def test_delete_detaches_from_parent(self, store):
        parent = store.add_task("parent")
        child = store.add_subtask(parent.id, "child")
        store.delete_task(child.id)
        assert store.get(parent.id).subtask_ids == ()

    def test_delete_unknown(self, store):
        assert store.delete_task("nope") is False

    def test_indent_moves_task(self, store):
        a = store.add_task("a")
        b = store.add_task("b")
        assert store.indent_task(b.id, a.id) is True
        assert store.get(b.id).parent_id == a.id
        assert store.get(a.id).subtask_ids == (b.id,)

    def test_indent_rejects_cycle(self, store):
        a = store.add_task("a")
        b = store.add_subtask(a.id, "b")
        c = store.add_subtask(b.id, "c")
        before = store.tasks
        history = store.undo_count

        assert store.indent_task(a.id, c.id) is False
        assert store.indent_task(a.id, a.id) is False
        assert store.indent_task(b.id, a.id) is False  # already there
        assert store.indent_task(a.id, "missing") is False
        assert store.tasks == before
        assert store.undo_count == history

    def test_indent_from_other_parent(self, store):
        p1 = store.add_task("p1")
        p2 = store.add_task("p2")
        child = store.add_subtask(p1.id, "child")
        assert store.indent_task(child.id, p2.id)
        assert store.get(p1.id).subtask_ids == ()
        assert store.get(p2.id).subtask_ids == (child.id,)

    def test_promote_subtask(self, store):
        parent = store.add_task("parent")
        child = store.add_subtask(parent.id, "child")
        assert store.promote_subtask(child.id) is True
        assert store.get(child.id).parent_id is None
        assert store.get(parent.id).subtask_ids == ()
        assert store.promote_subtask(child.id) is False

    def test_remove_subtask(self, store):
        parent = store.add_task("parent")
        child = store.add_subtask(parent.id, "child")
        other = store.add_task("other")
        assert store.remove_subtask(parent.id, other.id) is False
        assert store.remove_subtask(parent.id, child.id) is True
        assert child.id not in store

    def test_progress_counts_direct_children(self, store):
        parent = store.add_task("parent")
        a = store.add_subtask(parent.id, "a")
        b = store.add_subtask(parent.id, "b")
        store.add_subtask(b.id, "nested")
        store.toggle_done(a.id)
        progress = store.get_progress(parent.id)
        assert (progress.done, progress.total) == (1, 2)


class TestUpdateAndStatus:
    def test_update_only_given_fields(self, store, clock):
        task = store.add_task("a", project="home", priority="low")
        clock.advance(minutes=5)
        updated = store.update_task(task.id, title="b")
        assert updated.title == "b"
        assert updated.project == "home"
        assert updated.priority == Priority.LOW
        assert updated.updated_at > task.updated_at

    def test_update_unknown_field_raises(self, store):
        task = store.add_task("a")
        with pytest.raises(ValueError, match="Cannot update"):
            store.update_task(task.id, order=5)

    def test_update_unknown_task(self, store):
        assert store.update_task("missing", title="x") is None

    def test_done_sets_completed_at(self, store):
        task = store.add_task("a")
        done = store.toggle_done(task.id)
        assert done.status == Status.DONE
        assert done.completed_at is not None
        reopened = store.toggle_done(task.id)
        assert reopened.status == Status.TODO
        assert reopened.completed_at is None

    def test_move_to_status(self, store):
        task = store.add_task("a")
        assert store.move_to_status(task.id, "in_progress").status == Status.IN_PROGRESS
        with pytest.raises(ValueError):
            store.move_to_status(task.id, "waiting")


class TestRecurring:
    def test_weekly_occurrence(self, store):
        task = store.add_task("Standup notes", due_date="2025-01-06")
        store.set_recurrence(task.id, RecurrenceRule(Frequency.WEEKLY, interval=1))

        occurrence = store.complete_recurring(task.id)

        assert store.get(task.id).status == Status.DONE
        assert occurrence.status == Status.TODO
        assert occurrence.due_date == date(2025, 1, 13)
        assert occurrence.recurrence.frequency == Frequency.WEEKLY
        assert len(store) == 2

    def test_past_end_date_creates_nothing(self, store):
        task = store.add_task("x", due_date="2025-01-06")
        store.set_recurrence(
            task.id, RecurrenceRule(Frequency.WEEKLY, end_date=date(2025, 1, 10))
        )
        assert store.complete_recurring(task.id) is None
        assert store.get(task.id).status == Status.DONE
        assert len(store) == 1

    def test_non_recurring_is_just_completed(self, store):
        task = store.add_task("x")
        assert store.complete_recurring(task.id) is None
        assert store.get(task.id).is_done

    def test_single_undo_entry(self, store):
        task = store.add_task("x", due_date="2025-01-06", recurrence=RecurrenceRule(Frequency.DAILY))
        count = store.undo_count
        store.complete_recurring(task.id)
        assert store.undo_count == count + 1
        store.undo()
        assert len(store) == 1
        assert store.get(task.id).status == Status.TODO


class TestUndoRedo:
    def test_undo_then_redo_restores(self, store):
        a = store.add_task("a")
        before = store.tasks
        store.update_task(a.id, title="renamed")
        after = store.tasks

        assert store.undo() is True
        assert store.tasks == before
        assert store.redo() is True
        assert store.tasks == after

    def test_undo_every_step_returns_to_start(self, store):
        a = store.add_task("a")
        b = store.add_task("b")
        c = store.add_task("c")
        start = {t.id: t for t in store.tasks}
        count = store.undo_count

        store.update_task(a.id, title="renamed", description="details")
        store.toggle_done(b.id)
        store.add_note(a.id, "a note")
        store.add_blocker(c.id, a.id)
        store.indent_task(c.id, a.id)
        store.reorder(b.id, "up")
        store.delete_task(a.id)
        steps = store.undo_count - count
        assert steps == 7

        for _ in range(steps):
            assert store.undo() is True
        assert {t.id: t for t in store.tasks} == start

    def test_undo_keeps_external_identity(self, store):
        a = store.add_task("a")
        store.update_task(a.id, title="renamed")
        store.set_external_identity(a.id, "X1", "todoist")

        assert store.undo() is True
        restored = store.get(a.id)
        assert restored.title == "a"
        assert (restored.external_id, restored.external_source) == ("X1", "todoist")

        assert store.redo() is True
        assert store.get(a.id).external_id == "X1"

    def test_new_mutation_clears_redo(self, store):
        store.add_task("a")
        store.undo()
        assert store.redo_count == 1
        store.add_task("b")
        assert store.redo_count == 0

    def test_nothing_to_undo(self, store):
        assert store.undo() is False
        assert store.redo() is False

    def test_history_descriptions(self, store):
        task = store.add_task("a")
        store.log_time(task.id, 5)
        assert store.undo_history == ["Add task", "Log time"]

    def test_undo_is_persisted(self, store, tasks_path):
        store.add_task("a")
        store.undo()
        assert store.flush()
        assert json.loads(tasks_path.read_text()) == []


class TestOrdering:
    def _titles(self, store):
        return [t.title for t in sorted(store.tasks, key=lambda t: (t.order, t.id))]

    def test_reorder_up_and_down(self, store):
        store.add_task("a")
        b = store.add_task("b")
        c = store.add_task("c")

        assert store.reorder(c.id, "up") is True
        assert self._titles(store) == ["a", "c", "b"]
        assert store.reorder(b.id, "up") is True
        assert self._titles(store) == ["a", "b", "c"]
        assert store.reorder(b.id, "down") is True
        assert self._titles(store) == ["a", "c", "b"]

    def test_reorder_at_edges(self, store):
        a = store.add_task("a")
        b = store.add_task("b")
        count = store.undo_count
        assert store.reorder(a.id, "up") is False
        assert store.reorder(b.id, "down") is False
        assert store.undo_count == count
        assert self._titles(store) == ["a", "b"]

    def test_reorder_invalid(self, store):
        a = store.add_task("a")
        assert store.reorder("missing", "up") is False
        with pytest.raises(ValueError):
            store.reorder(a.id, "sideways")

    def test_reorder_is_undoable(self, store):
        store.add_task("a")
        b = store.add_task("b")
        store.reorder(b.id, "up")
        assert store.undo() is True
        assert self._titles(store) == ["a", "b"]

    def test_top_level_tasks(self, store):
        a = store.add_task("a")
        child = store.add_subtask(a.id, "child")
        b = store.add_task("b")
        assert {t.id for t in store.get_top_level_tasks()} == {a.id, b.id}

        store.indent_task(b.id, a.id)
        assert [t.id for t in store.get_top_level_tasks()] == [a.id]
        store.promote_subtask(child.id)
        assert {t.id for t in store.get_top_level_tasks()} == {a.id, child.id}


class TestSorting:
    def _seed(self, store, clock):
        ids = {}
        for title, prio in [("b", "low"), ("a", "high"), ("c", "high"), ("d", "none")]:
            clock.advance(seconds=1)
            ids[title] = store.add_task(title, priority=prio).id
        return ids

    def test_priority_desc_with_done_last(self, store, clock):
        ids = self._seed(store, clock)
        store.toggle_done(ids["a"])
        titles = [t.title for t in store.get_filtered()]
        assert titles == ["c", "b", "d", "a"]

    def test_title_asc(self, store, clock):
        self._seed(store, clock)
        result = store.get_filtered(FilterState(sort_by="title", sort_direction="asc"))
        assert [t.title for t in result] == ["a", "b", "c", "d"]

    def test_ties_are_deterministic(self, store):
        for _ in range(10):
            store.add_task("same")
        first = [t.id for t in store.get_filtered()]
        assert first == sorted(first)
        assert [t.id for t in store.get_filtered()] == first

    def test_due_date_sort_undated_last(self, store, clock):
        store.add_task("none")
        store.add_task("later", due_date="2025-02-01")
        store.add_task("soon", due_date="2025-01-10")
        result = store.get_filtered(FilterState(sort_by="due_date", sort_direction="asc"))
        assert [t.title for t in result] == ["soon", "later", "none"]


class TestFiltering:
    def test_archived_hidden_by_default(self, store):
        a = store.add_task("a")
        store.move_to_status(a.id, "archived")
        assert store.get_filtered() == []
        assert len(store.get_filtered(FilterState(status=["archived"]))) == 1

    def test_search_matches_notes_and_tags(self, store):
        a = store.add_task("a", tags=["garden"])
        b = store.add_task("b")
        store.add_note(b.id, "Call the Plumber")
        assert [t.id for t in store.get_filtered(FilterState(search="plumber"))] == [b.id]
        assert [t.id for t in store.get_filtered(FilterState(search="GARDEN"))] == [a.id]

    def test_project_and_tag(self, store):
        store.add_task("a", project="home", tags=["x"])
        store.add_task("b", project="work", tags=["x"])
        assert [t.title for t in store.get_filtered(FilterState(project="home", tag="x"))] == ["a"]

    def test_hide_subtasks(self, store):
        parent = store.add_task("parent")
        store.add_subtask(parent.id, "child")
        result = store.get_filtered(FilterState(show_subtasks=False))
        assert [t.title for t in result] == ["parent"]


class TestTree:
    def test_depth_first_rows(self, store, clock):
        p = store.add_task("p", priority="high")
        clock.advance(seconds=1)
        c1 = store.add_subtask(p.id, "c1", priority="high")
        clock.advance(seconds=1)
        c2 = store.add_subtask(p.id, "c2")
        clock.advance(seconds=1)
        g = store.add_subtask(c1.id, "g")
        clock.advance(seconds=1)
        q = store.add_task("q")

        rows = store.get_filtered_tree()
        assert [(r.task.id, r.depth) for r in rows] == [
            (p.id, 0),
            (c1.id, 1),
            (g.id, 2),
            (c2.id, 1),
            (q.id, 0),
        ]
        assert rows[3].is_last is True
        assert rows[1].is_last is False

    def test_orphans_of_filter_listed_at_top_level(self, store):
        parent = store.add_task("parent", project="a")
        child = store.add_subtask(parent.id, "child", project="b")
        rows = store.get_filtered_tree(FilterState(project="b"))
        assert [(r.task.id, r.depth) for r in rows] == [(child.id, 0)]


class TestTimer:
    def test_start_and_stop_logs_minutes(self, store, timer):
        task = store.add_task("a")
        assert store.start_timer(task.id) is True
        assert store.get(task.id).status == Status.IN_PROGRESS
        timer.value += 25 * 60
        assert store.stop_timer() == 25
        assert store.get(task.id).actual_minutes == 25
        assert store.active_timer_task_id is None

    def test_start_same_task_twice(self, store):
        task = store.add_task("a")
        store.start_timer(task.id)
        assert store.start_timer(task.id) is False

    def test_switching_stops_previous(self, store, timer):
        a = store.add_task("a")
        b = store.add_task("b")
        store.start_timer(a.id)
        timer.value += 10 * 60
        assert store.start_timer(b.id) is True
        assert store.get(a.id).actual_minutes == 10
        assert store.active_timer_task_id == b.id

    def test_stop_without_timer(self, store):
        assert store.stop_timer() == 0

    def test_deleting_timed_task_clears_timer(self, store):
        a = store.add_task("a")
        store.start_timer(a.id)
        store.delete_task(a.id)
        assert store.active_timer_task_id is None

    def test_log_time_accumulates(self, store):
        a = store.add_task("a")
        store.log_time(a.id, 15)
        store.log_time(a.id, 30)
        assert store.get(a.id).actual_minutes == 45

    def test_negative_minutes_rejected(self, store):
        a = store.add_task("a")
        with pytest.raises(ValueError):
            store.log_time(a.id, -5)
        with pytest.raises(ValueError):
            store.set_estimate(a.id, -1)


class TestBlockers:
    def test_blocked_until_resolved(self, store):
        a = store.add_task("a")
        b = store.add_task("b")
        assert store.add_blocker(b.id, a.id) is True
        assert store.is_blocked(b.id)
        store.toggle_done(a.id)
        assert not store.is_blocked(b.id)
        assert store.get_unblocked_tasks(a.id) == [b.id]

    def test_archived_blocker_resolves(self, store):
        a = store.add_task("a")
        b = store.add_task("b")
        store.add_blocker(b.id, a.id)
        store.move_to_status(a.id, "archived")
        assert not store.is_blocked(b.id)

    def test_deleted_blocker_does_not_block(self, store):
        a = store.add_task("a")
        b = store.add_task("b")
        store.add_blocker(b.id, a.id)
        store.delete_task(a.id)
        assert not store.is_blocked(b.id)

    def test_invalid_blockers(self, store):
        a = store.add_task("a")
        assert store.add_blocker(a.id, a.id) is False
        assert store.add_blocker(a.id, "missing") is False
        assert store.remove_blocker(a.id, "missing") is False


class TestNotes:
    def test_add_and_delete(self, store):
        a = store.add_task("a")
        note = store.add_note(a.id, "remember")
        assert store.get(a.id).notes == (note,)
        assert store.delete_note(a.id, note.id) is True
        assert store.get(a.id).notes == ()
        assert store.delete_note(a.id, note.id) is False

    def test_invalid_source(self, store):
        a = store.add_task("a")
        with pytest.raises(ValueError):
            store.add_note(a.id, "x", source="robot")


class TestQueries:
    def test_projects_tags_stats(self, store):
        a = store.add_task("a", project="home", tags=["x", "y"], due_date="2025-01-06")
        store.add_task("b", project="work", tags=["y"])
        store.move_to_status(a.id, "in_progress")
        assert store.get_projects() == ["home", "work"]
        assert store.get_tags() == ["x", "y"]
        assert [t.id for t in store.get_by_date("2025-01-06")] == [a.id]
        assert [t.title for t in store.get_by_project("work")] == ["b"]
        stats = store.get_stats()
        assert (stats.total, stats.todo, stats.in_progress, stats.done) == (2, 1, 1, 0)

    def test_subscribe(self, store):
        calls = []
        unsubscribe = store.subscribe(lambda: calls.append(1))
        store.add_task("a")
        unsubscribe()
        store.add_task("b")
        assert calls == [1]


class TestExternalIdentity:
    def test_no_undo_entry_or_timestamp_change(self, store, clock):
        a = store.add_task("a")
        clock.advance(minutes=1)
        count = store.undo_count
        updated = store.set_external_identity(a.id, "X1", "todoist")
        assert updated.external_id == "X1"
        assert updated.external_source == "todoist"
        assert updated.updated_at == a.updated_at
        assert store.undo_count == count


class TestPersistence:
    def test_missing_file_creates_empty(self, tasks_path):
        store = _reload(tasks_path)
        assert len(store) == 0
        assert json.loads(tasks_path.read_text()) == []
        store.close()

    def test_round_trip(self, store, tasks_path):
        parent = store.add_task("parent", priority="urgent", tags=["a"], due_date="2025-01-06")
        store.add_subtask(parent.id, "child")
        store.add_note(parent.id, "hi")
        assert store.flush()

        reloaded = _reload(tasks_path)
        assert reloaded.tasks == store.tasks
        reloaded.close()

    def test_corrupt_file_is_quarantined(self, tasks_path):
        tasks_path.parent.mkdir(parents=True)
        tasks_path.write_text("{not json")
        store = _reload(tasks_path)
        assert len(store) == 0
        assert store.quarantined_path is not None
        assert store.quarantined_path.read_text() == "{not json"
        assert json.loads(tasks_path.read_text()) == []
        store.close()

    def test_invalid_record_is_quarantined(self, tasks_path):
        tasks_path.parent.mkdir(parents=True)
        tasks_path.write_text(json.dumps([{"id": "a", "title": "x", "status": "waiting"}]))
        store = _reload(tasks_path)
        assert len(store) == 0
        assert store.quarantined_path is not None
        store.close()

    def test_duplicate_ids_are_quarantined(self, tasks_path):
        tasks_path.parent.mkdir(parents=True)
        tasks_path.write_text(json.dumps([{"id": "a", "title": "x"}, {"id": "a", "title": "y"}]))
        store = _reload(tasks_path)
        assert store.quarantined_path is not None
        store.close()

    def test_legacy_records_normalized(self, tasks_path):
        tasks_path.parent.mkdir(parents=True)
        tasks_path.write_text(json.dumps([{"id": "a", "title": "x"}]))
        store = _reload(tasks_path)
        task = store.get("a")
        assert task.status == Status.TODO
        assert task.tags == ()
        assert store.quarantined_path is None
        store.close()

    def test_dangling_parent_repaired(self, tasks_path):
        tasks_path.parent.mkdir(parents=True)
        tasks_path.write_text(json.dumps([{"id": "a", "title": "x", "parentId": "gone"}]))
        store = _reload(tasks_path)
        assert store.get("a").parent_id is None
        store.close()

    def test_data_dir_is_a_file(self, tmp_path):
        blocker = tmp_path / "data"
        blocker.write_text("")
        with pytest.raises(NotADirectoryError):
            TaskStore.load(blocker / "tasks.json")

    def test_write_failure_keeps_previous_file(self, store, tasks_path, monkeypatch):
        store.add_task("saved")
        assert store.flush()
        before = tasks_path.read_bytes()

        real_replace = os.replace

        def fail(*args, **kwargs):
            raise PermissionError("read-only")

        monkeypatch.setattr(os, "replace", fail)
        store.add_task("unsaved")
        assert store.flush() is False
        assert store.persistence_error is not None
        assert store.has_pending_save
        assert tasks_path.read_bytes() == before

        monkeypatch.setattr(os, "replace", real_replace)
        assert store.flush() is True
        assert store.persistence_error is None
        assert len(json.loads(tasks_path.read_text())) == 2
