"""Sync engine: reconciles the task store with one remote provider.

A pass runs as a sequence of phases: detect local deletions, pull, push,
reconcile remote deletions, finalize. Per-item provider failures are recorded
in the result and never abort the pass. Sync state is written only at the very
end, so a crash mid-pass leaves the previous state intact and the pass can
simply be retried.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from tsk.models import Status, Task, format_timestamp, parse_timestamp, utc_now
from tsk.store import TaskStore
from tsk.sync.base import ExternalTask, SyncProvider
from tsk.sync.state import SyncState, SyncStateManager
from tsk.sync.utils import content_hash, sort_parents_first

logger = logging.getLogger("tsk.sync")

# Placeholder local IDs for tasks a dry run would have created
_DRY_RUN_PREFIX = "dry-run:"


class ConflictStrategy(Enum):
    """Which side wins when a mapped task changed remotely."""

    REMOTE_WINS = "remote-wins"
    LOCAL_WINS = "local-wins"
    NEWEST_WINS = "newest-wins"


@dataclass(frozen=True)
class SyncOptions:
    pull_only: bool = False
    push_only: bool = False
    dry_run: bool = False

    def __post_init__(self) -> None:
        if self.pull_only and self.push_only:
            raise ValueError("pull_only and push_only are mutually exclusive")


@dataclass(frozen=True)
class SyncError:
    operation: str  # "pull" | "push" | "delete" | "map"
    message: str
    task_id: str | None = None
    external_id: str | None = None


@dataclass
class SyncResult:
    provider: str
    pulled: int = 0
    pushed: int = 0
    deleted: int = 0
    conflicts: int = 0
    errors: list[SyncError] = field(default_factory=list)
    timestamp: str = ""
    duration_ms: int = 0
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "pulled": self.pulled,
            "pushed": self.pushed,
            "deleted": self.deleted,
            "conflicts": self.conflicts,
            "errors": [e.__dict__ for e in self.errors],
            "timestamp": self.timestamp,
            "durationMs": self.duration_ms,
            "dryRun": self.dry_run,
        }


class _Pass:
    """Working state of one sync invocation."""

    def __init__(self, state: SyncState, options: SyncOptions, result: SyncResult):
        self.state = state
        self.options = options
        self.result = result
        self.last_sync_at: datetime | None = None
        self.remote: dict[str, ExternalTask] = {}
        self.fetched = False
        self.touched: set[str] = set()  # local ids written by this pass's pull
        self.created: set[str] = set()  # external ids created by this pass's push
        self.removed: set[str] = set()  # local ids deleted by reconciliation
        self.delete_attempted: set[str] = set()  # local ids whose remote delete ran

    @property
    def dry_run(self) -> bool:
        return self.options.dry_run


class SyncEngine:
    """Two-way sync between a TaskStore and a single SyncProvider."""

    def __init__(
        self,
        store: TaskStore,
        provider: SyncProvider,
        state: SyncState,
        *,
        strategy: ConflictStrategy | str = ConflictStrategy.NEWEST_WINS,
        state_manager: SyncStateManager | None = None,
    ):
        self._store = store
        self._provider = provider
        self._state = state
        self._strategy = ConflictStrategy(strategy)
        self._state_manager = state_manager

    @property
    def state(self) -> SyncState:
        return self._state

    def pull_only(self, dry_run: bool = False) -> SyncResult:
        return self.sync(SyncOptions(pull_only=True, dry_run=dry_run))

    def push_only(self, dry_run: bool = False) -> SyncResult:
        return self.sync(SyncOptions(push_only=True, dry_run=dry_run))

    def sync(self, options: SyncOptions | None = None) -> SyncResult:
        """Run one sync pass against the provider."""
        options = options or SyncOptions()
        started = time.monotonic()
        result = SyncResult(provider=self._provider.name, dry_run=options.dry_run)
        # A dry run works on a throwaway copy so nothing leaks into real state
        state = self._state.copy() if options.dry_run else self._state
        ctx = _Pass(state, options, result)

        last = state.last_sync_at.get(self._provider.name)
        ctx.last_sync_at = parse_timestamp(last) if last else None

        self._detect_local_deletions(ctx)
        if not options.push_only:
            self._pull(ctx)
        if not options.pull_only:
            self._push(ctx)
            self._push_deletions(ctx)
        if not options.push_only:
            self._reconcile_remote_deletions(ctx)
        self._finalize(ctx)

        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Sync %s%s: pulled=%d pushed=%d deleted=%d conflicts=%d errors=%d",
            result.provider,
            " (dry run)" if options.dry_run else "",
            result.pulled,
            result.pushed,
            result.deleted,
            result.conflicts,
            len(result.errors),
        )
        return result

    # Phases

    def _detect_local_deletions(self, ctx: _Pass) -> None:
        """Mapped tasks missing from the store are pending remote deletion."""
        state = ctx.state
        for local_id in state.id_map:
            task = self._store.get(local_id)
            # Owners of mappings that predate owner tracking
            if task is not None and task.external_source and local_id not in state.mapping_source:
                state.mapping_source[local_id] = task.external_source
        for local_id in list(state.deleted_locally):
            if local_id in self._store or local_id not in state.id_map:
                SyncStateManager.clear_deleted_locally(state, local_id)
        for local_id in list(state.id_map):
            if local_id not in self._store and self._owns(ctx, local_id):
                SyncStateManager.mark_deleted_locally(state, local_id)

    def _pull(self, ctx: _Pass) -> None:
        since = format_timestamp(ctx.last_sync_at) if ctx.last_sync_at else None
        try:
            remote_tasks = self._provider.fetch_tasks(updated_since=since)
        except Exception as e:
            self._error(ctx, "pull", f"Failed to fetch remote tasks: {e}")
            return

        ctx.fetched = True
        ctx.remote = {ext.external_id: ext for ext in remote_tasks}
        ordered = sort_parents_first(
            remote_tasks, lambda ext: ext.external_id, lambda ext: ext.parent_external_id
        )
        for ext in ordered:
            if ext.external_id in ctx.state.deleted_remotely:
                logger.debug("Ignoring %s: deleted remotely by an earlier sync", ext.external_id)
                continue
            local_id = SyncStateManager.get_local_id(ctx.state, ext.external_id)
            if local_id is None:
                self._pull_new(ctx, ext)
            elif not self._owns(ctx, local_id):
                logger.debug("Ignoring %s: mapped by another provider", ext.external_id)
            elif local_id in ctx.state.deleted_locally:
                ctx.delete_attempted.add(local_id)
                self._delete_remote(ctx, local_id, ext.external_id)
            else:
                self._pull_existing(ctx, local_id, ext)

    def _pull_new(self, ctx: _Pass, ext: ExternalTask) -> None:
        try:
            fields = self._provider.map_to_local(ext)
        except Exception as e:
            self._error(ctx, "map", f"Could not map remote task: {e}", external_id=ext.external_id)
            return

        parent_id = None
        if ext.parent_external_id:
            parent_id = SyncStateManager.get_local_id(ctx.state, ext.parent_external_id)
            if parent_id is not None and parent_id not in self._store and not ctx.dry_run:
                parent_id = None

        if ctx.dry_run:
            local_id = f"{_DRY_RUN_PREFIX}{ext.external_id}"
        else:
            try:
                task = self._store.add_task(parent_id=parent_id, **self._creatable(fields))
            except ValueError as e:
                self._error(ctx, "map", f"Invalid remote task: {e}", external_id=ext.external_id)
                return
            if task is None:
                self._error(ctx, "map", "Parent task vanished", external_id=ext.external_id)
                return
            self._store.set_external_identity(task.id, ext.external_id, self._provider.name)
            local_id = task.id

        SyncStateManager.add_mapping(ctx.state, local_id, ext.external_id, self._provider.name)
        ctx.state.last_pull_hashes[ext.external_id] = content_hash(ext)
        ctx.touched.add(local_id)
        ctx.result.pulled += 1

    def _pull_existing(self, ctx: _Pass, local_id: str, ext: ExternalTask) -> None:
        digest = content_hash(ext)
        if ctx.state.last_pull_hashes.get(ext.external_id) == digest:
            logger.debug("Remote task %s unchanged since last pull", ext.external_id)
            return

        task = self._store.get(local_id)
        if task is None:
            return  # handled as a pending local deletion
        if not self._remote_wins(task, ext):
            ctx.state.last_pull_hashes[ext.external_id] = digest
            ctx.result.conflicts += 1
            return

        try:
            fields = self._provider.map_to_local(ext)
        except Exception as e:
            self._error(
                ctx, "map", f"Could not map remote task: {e}",
                task_id=local_id, external_id=ext.external_id,
            )
            return

        if not ctx.dry_run:
            try:
                self._store.update_task(local_id, **self._updatable(task, fields))
            except ValueError as e:
                self._error(
                    ctx, "map", f"Invalid remote task: {e}",
                    task_id=local_id, external_id=ext.external_id,
                )
                return
            if task.external_source != self._provider.name or task.external_id != ext.external_id:
                self._store.set_external_identity(local_id, ext.external_id, self._provider.name)

        ctx.state.last_pull_hashes[ext.external_id] = digest
        ctx.state.mapping_source.setdefault(local_id, self._provider.name)
        ctx.touched.add(local_id)
        ctx.result.pulled += 1

    def _push(self, ctx: _Pass) -> None:
        tasks = [
            t
            for t in self._store.tasks
            if t.status != Status.ARCHIVED
            and t.id not in ctx.touched
            and self._owns(ctx, t.id)
        ]
        # Parents first so subtasks can be created under their remote parent
        for task in sort_parents_first(tasks, lambda t: t.id, lambda t: t.parent_id):
            external_id = SyncStateManager.get_external_id(ctx.state, task.id)
            if external_id is None:
                self._push_new(ctx, task)
            elif self._missing_remotely(ctx, task, external_id):
                continue  # deleted remotely; reconciliation removes it
            elif ctx.last_sync_at is None or task.updated_at > ctx.last_sync_at:
                self._push_update(ctx, task, external_id)

    def _push_new(self, ctx: _Pass, task: Task) -> None:
        payload = self._map_to_external(ctx, task)
        if payload is None:
            return
        parent_external = (
            SyncStateManager.get_external_id(ctx.state, task.parent_id) if task.parent_id else None
        )
        payload.parent_external_id = parent_external

        if ctx.dry_run:
            placeholder = f"{_DRY_RUN_PREFIX}{task.id}"
            SyncStateManager.add_mapping(ctx.state, task.id, placeholder, self._provider.name)
            ctx.created.add(placeholder)
            ctx.result.pushed += 1
            return

        try:
            if parent_external and self._provider.supports_subtasks:
                created = self._provider.create_subtask(parent_external, payload)
            else:
                created = self._provider.create_task(payload)
        except Exception as e:
            self._error(ctx, "push", f"Create failed: {e}", task_id=task.id)
            return
        if created is None or not created.external_id:
            self._error(ctx, "push", "Create failed", task_id=task.id)
            return

        SyncStateManager.add_mapping(ctx.state, task.id, created.external_id, self._provider.name)
        ctx.created.add(created.external_id)
        self._store.set_external_identity(task.id, created.external_id, self._provider.name)
        aligned = self._align_remote_status(ctx, task, created.external_id, created.is_closed)
        self._record_pushed(ctx, task, created.external_id, created, aligned)
        ctx.result.pushed += 1

    def _push_update(self, ctx: _Pass, task: Task, external_id: str) -> None:
        payload = self._map_to_external(ctx, task)
        if payload is None:
            return
        payload.external_id = external_id

        if ctx.dry_run:
            ctx.result.pushed += 1
            return

        try:
            updated = self._provider.update_task(external_id, payload)
        except Exception as e:
            self._error(ctx, "push", f"Update failed: {e}", task_id=task.id, external_id=external_id)
            return
        if updated is None:
            self._error(ctx, "push", "Update failed", task_id=task.id, external_id=external_id)
            return

        known = ctx.remote.get(external_id)
        remote_closed = known.is_closed if known is not None else None
        aligned = self._align_remote_status(ctx, task, external_id, remote_closed)
        self._record_pushed(ctx, task, external_id, updated, aligned)
        ctx.result.pushed += 1

    def _push_deletions(self, ctx: _Pass) -> None:
        """Delete remotely every pending local deletion the pull did not settle."""
        for local_id in list(ctx.state.deleted_locally):
            if local_id in ctx.delete_attempted or not self._owns(ctx, local_id):
                continue
            external_id = SyncStateManager.get_external_id(ctx.state, local_id)
            if external_id is None:
                SyncStateManager.clear_deleted_locally(ctx.state, local_id)
                continue
            if (
                ctx.fetched
                and not self._provider.incremental_fetch
                and self._provider.lists_closed_tasks
                and external_id not in ctx.remote
            ):
                continue  # already gone remotely; reconciliation drops the mapping
            self._delete_remote(ctx, local_id, external_id)

    def _reconcile_remote_deletions(self, ctx: _Pass) -> None:
        """Mapped tasks missing from a complete remote listing were deleted remotely."""
        if not ctx.fetched or self._provider.incremental_fetch:
            return

        for external_id, local_id in list(ctx.state.reverse_id_map.items()):
            if not self._owns(ctx, local_id):
                continue
            task = None if local_id in ctx.removed else self._store.get(local_id)
            if task is None:
                if external_id not in ctx.remote:
                    # Gone on both sides
                    SyncStateManager.remove_mapping(ctx.state, local_id)
                    SyncStateManager.clear_deleted_locally(ctx.state, local_id)
                continue
            if not self._missing_remotely(ctx, task, external_id):
                continue
            removed = self._subtree_ids(local_id)
            if not ctx.dry_run:
                self._store.delete_task(local_id)
            ctx.removed.update(removed)
            SyncStateManager.remove_mapping(ctx.state, local_id)
            ctx.result.deleted += 1

    def _finalize(self, ctx: _Pass) -> None:
        now = utc_now()
        ctx.result.timestamp = format_timestamp(now)
        if ctx.dry_run:
            return
        ctx.state.last_sync_at[self._provider.name] = format_timestamp(now)
        if self._state_manager is not None:
            self._state_manager.save(ctx.state)
        self._store.flush()

    # Helpers

    def _owns(self, ctx: _Pass, local_id: str) -> bool:
        """True if this provider owns the mapping (or may claim the task)."""
        source = SyncStateManager.get_mapping_source(ctx.state, local_id)
        if source is not None:
            return source == self._provider.name
        task = self._store.get(local_id)
        return task is None or task.external_source in (None, self._provider.name)

    def _missing_remotely(self, ctx: _Pass, task: Task, external_id: str) -> bool:
        """True if a complete remote listing shows the mapped task was deleted."""
        if not ctx.fetched or self._provider.incremental_fetch:
            return False
        if external_id in ctx.remote or external_id in ctx.created:
            return False
        # Closed tasks drop out of open-only listings without being deleted
        return not (task.is_done and not self._provider.lists_closed_tasks)

    def _subtree_ids(self, local_id: str) -> set[str]:
        ids = {local_id}
        queue = [local_id]
        while queue:
            for child in self._store.get_subtasks(queue.pop()):
                if child.id not in ids:
                    ids.add(child.id)
                    queue.append(child.id)
        return ids

    def _delete_remote(self, ctx: _Pass, local_id: str, external_id: str) -> None:
        if not ctx.dry_run:
            message = "Remote delete failed"
            try:
                ok = self._provider.delete_task(external_id)
            except Exception as e:
                message, ok = f"Remote delete failed: {e}", False
            if not ok:
                self._error(ctx, "delete", message, task_id=local_id, external_id=external_id)
                return
        SyncStateManager.remove_mapping(ctx.state, local_id)
        SyncStateManager.clear_deleted_locally(ctx.state, local_id)
        SyncStateManager.mark_deleted_remotely(ctx.state, external_id)
        ctx.remote.pop(external_id, None)
        ctx.result.deleted += 1

    def _align_remote_status(
        self, ctx: _Pass, task: Task, external_id: str, remote_closed: bool | None
    ) -> bool:
        """Close or reopen the remote task when its state differs from ours.

        Returns True if the remote status now matches the local one.
        """
        if remote_closed is not None and remote_closed == task.is_done:
            return True
        if remote_closed is None and not task.is_done:
            return True
        call = self._provider.complete_task if task.is_done else self._provider.reopen_task
        message = "Could not update remote status"
        try:
            ok = call(external_id)
        except Exception as e:
            message, ok = f"{message}: {e}", False
        if not ok:
            self._error(
                ctx, "push", message,
                task_id=task.id, external_id=external_id,
            )
        return ok

    def _record_pushed(
        self, ctx: _Pass, task: Task, external_id: str, written: ExternalTask, aligned: bool
    ) -> None:
        """Remember the hash of what the remote now holds so the next pull skips it."""
        if aligned:
            written = replace(written, status="closed" if task.is_done else "open")
        if written.external_id != external_id:
            written = replace(written, external_id=external_id)
        ctx.state.last_pull_hashes[external_id] = content_hash(written)

    def _map_to_external(self, ctx: _Pass, task: Task) -> ExternalTask | None:
        try:
            return self._provider.map_to_external(task)
        except Exception as e:
            self._error(ctx, "map", f"Could not map local task: {e}", task_id=task.id)
            return None

    def _remote_wins(self, task: Task, ext: ExternalTask) -> bool:
        if self._strategy == ConflictStrategy.REMOTE_WINS:
            return True
        if self._strategy == ConflictStrategy.LOCAL_WINS:
            return False
        try:
            remote_updated = parse_timestamp(ext.updated_at)
        except ValueError:
            return False
        # Remote wins ties
        return remote_updated >= task.updated_at

    @staticmethod
    def _creatable(fields: dict[str, Any]) -> dict[str, Any]:
        allowed = ("title", "description", "priority", "project", "tags", "due_date", "status")
        return {k: v for k, v in fields.items() if k in allowed}

    @staticmethod
    def _updatable(task: Task, fields: dict[str, Any]) -> dict[str, Any]:
        changes = SyncEngine._creatable(fields)
        # An open remote task does not demote local in-progress/archived work
        if changes.get("status") == Status.TODO.value and task.status in (
            Status.IN_PROGRESS,
            Status.ARCHIVED,
        ):
            del changes["status"]
        return changes

    @staticmethod
    def _error(
        ctx: _Pass,
        operation: str,
        message: str,
        task_id: str | None = None,
        external_id: str | None = None,
    ) -> None:
        logger.warning(
            "Sync %s error (task=%s, external=%s): %s", operation, task_id, external_id, message
        )
        ctx.result.errors.append(
            SyncError(operation=operation, message=message, task_id=task_id, external_id=external_id)
        )
