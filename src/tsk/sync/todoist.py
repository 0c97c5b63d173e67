"""Todoist provider (REST API v2)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from tsk.models import Task, format_timestamp, utc_now
from tsk.sync.base import (
    ConnectionStatus,
    ExternalTask,
    ProviderError,
    default_map_to_external,
    default_map_to_local,
)
from tsk.sync.http import ApiClient

logger = logging.getLogger("tsk.sync")

API_BASE = "https://api.todoist.com/rest/v2"


class TodoistProvider:
    """Syncs with Todoist.

    Todoist priorities 1 (normal) .. 4 (urgent) line up with the shared
    0..4 scale, so levels pass through unchanged. The task listing only
    contains open tasks and has no modification time, so fetched tasks are
    stamped with the fetch time.
    """

    name = "todoist"
    supports_subtasks = True
    incremental_fetch = False
    lists_closed_tasks = False

    def __init__(
        self,
        api_key: str,
        project_id: str | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
        client: ApiClient | None = None,
    ):
        self._api_key = api_key or ""
        self._project_id = project_id
        self._client = client or ApiClient(API_BASE, self._api_key, transport=transport)

    def is_connected(self) -> bool:
        return bool(self._api_key.strip())

    def test_connection(self) -> ConnectionStatus:
        if not self.is_connected():
            return ConnectionStatus(ok=False, error="Missing Todoist token")
        # Any authenticated read proves the token; /projects is the cheapest
        resp = self._client.get("/projects")
        if not resp.ok:
            return ConnectionStatus(ok=False, error=resp.error)
        return ConnectionStatus(ok=True, user="todoist")

    def fetch_tasks(self, updated_since: str | None = None) -> list[ExternalTask]:
        if not self.is_connected():
            raise ProviderError("Todoist is not connected")
        params = {"project_id": self._project_id} if self._project_id else None
        resp = self._client.get("/tasks", params=params)
        if not resp.ok:
            raise ProviderError(f"Todoist: {resp.error}")
        if not isinstance(resp.data, list):
            raise ProviderError("Todoist: unexpected task listing")
        fetched_at = format_timestamp(utc_now())
        tasks = [_parse_task(item, fetched_at) for item in resp.data if isinstance(item, dict)]
        logger.debug("Fetched %d Todoist tasks", len(tasks))
        return tasks

    def create_task(self, task: ExternalTask) -> ExternalTask | None:
        body = self._body(task)
        if self._project_id:
            body["project_id"] = self._project_id
        if task.parent_external_id:
            body["parent_id"] = task.parent_external_id
        resp = self._client.post("/tasks", json=body)
        if not resp.ok or not isinstance(resp.data, dict):
            return None
        return _parse_task(resp.data, format_timestamp(utc_now()))

    def update_task(self, external_id: str, updates: ExternalTask) -> ExternalTask | None:
        resp = self._client.post(f"/tasks/{external_id}", json=self._body(updates))
        if not resp.ok:
            return None
        if isinstance(resp.data, dict) and resp.data.get("id"):
            return _parse_task(resp.data, format_timestamp(utc_now()))
        updates.external_id = external_id
        return updates

    def complete_task(self, external_id: str) -> bool:
        return self._client.post(f"/tasks/{external_id}/close").ok

    def reopen_task(self, external_id: str) -> bool:
        return self._client.post(f"/tasks/{external_id}/reopen").ok

    def delete_task(self, external_id: str) -> bool:
        return self._client.delete(f"/tasks/{external_id}").ok

    def fetch_subtasks(self, parent_external_id: str) -> list[ExternalTask]:
        return [t for t in self.fetch_tasks() if t.parent_external_id == parent_external_id]

    def create_subtask(self, parent_external_id: str, task: ExternalTask) -> ExternalTask | None:
        task.parent_external_id = parent_external_id
        return self.create_task(task)

    def map_to_local(self, external: ExternalTask) -> dict[str, Any]:
        fields = default_map_to_local(external)
        # Todoist projects are IDs, not names; keep the local project
        del fields["project"]
        return fields

    def map_to_external(self, task: Task) -> ExternalTask:
        return default_map_to_external(task)

    def close(self) -> None:
        self._client.close()

    @staticmethod
    def _body(task: ExternalTask) -> dict[str, Any]:
        body: dict[str, Any] = {
            "content": task.title,
            "description": task.description or "",
            "labels": list(task.labels),
            "priority": max(1, min(4, task.priority or 1)),
        }
        if task.due_date:
            body["due_date"] = task.due_date
        return body


def _parse_task(data: dict[str, Any], fetched_at: str) -> ExternalTask:
    """Parse a Todoist task JSON object."""
    due = data.get("due") or {}
    priority = data.get("priority")
    return ExternalTask(
        external_id=str(data["id"]),
        title=data.get("content") or "",
        updated_at=data.get("updated_at") or fetched_at,
        status="closed" if data.get("is_completed") else "open",
        description=data.get("description") or None,
        priority=priority if isinstance(priority, int) and 1 <= priority <= 4 else None,
        labels=list(data.get("labels") or []),
        due_date=due.get("date") if isinstance(due, dict) else None,
        parent_external_id=str(data["parent_id"]) if data.get("parent_id") else None,
        url=data.get("url"),
    )
