"""Linear provider (GraphQL API)."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from tsk.models import Task
from tsk.sync.base import (
    ConnectionStatus,
    ExternalTask,
    ProviderError,
    default_map_to_external,
    default_map_to_local,
)
from tsk.sync.http import ApiClient

logger = logging.getLogger("tsk.sync")

API_URL = "https://api.linear.app/graphql"
PAGE_SIZE = 100

_ISSUE_FIELDS = """
    id identifier title description priority updatedAt completedAt dueDate url
    state { type }
    labels { nodes { name } }
    parent { id }
"""

ISSUES_QUERY = """
query Issues($filter: IssueFilter, $after: String) {
  issues(filter: $filter, first: %d, after: $after) {
    nodes { %s }
    pageInfo { hasNextPage endCursor }
  }
}
""" % (PAGE_SIZE, _ISSUE_FIELDS)

CREATE_MUTATION = """
mutation Create($input: IssueCreateInput!) {
  issueCreate(input: $input) { success issue { %s } }
}
""" % _ISSUE_FIELDS

UPDATE_MUTATION = """
mutation Update($id: String!, $input: IssueUpdateInput!) {
  issueUpdate(id: $id, input: $input) { success issue { %s } }
}
""" % _ISSUE_FIELDS

DELETE_MUTATION = """
mutation Delete($id: String!) {
  issueDelete(id: $id) { success }
}
"""

VIEWER_QUERY = "query { viewer { name email } }"
TEAMS_QUERY = "query { teams { nodes { id } } }"
STATES_QUERY = """
query States($teamId: String!) {
  team(id: $teamId) { states { nodes { id type position } } }
}
"""

# State types that count as closed
_CLOSED_STATES = ("completed", "canceled")


def level_from_linear(priority: Any) -> int:
    """Linear 1 (urgent) .. 4 (low), 0 = none -> shared 4 (urgent) .. 1 (low) scale."""
    if isinstance(priority, int) and 1 <= priority <= 4:
        return 5 - priority
    return 0


def level_to_linear(level: int | None) -> int:
    if level is None or not 1 <= level <= 4:
        return 0
    return 5 - level


class LinearProvider:
    """Syncs with Linear issues.

    Linear identifies workflow states per team, so completing or reopening
    an issue looks up the team's first state of the wanted type. Labels are
    read but not written (writing needs label IDs).
    """

    name = "linear"
    supports_subtasks = False
    incremental_fetch = False
    lists_closed_tasks = True

    def __init__(
        self,
        api_key: str,
        team_id: str | None = None,
        *,
        transport: httpx.BaseTransport | None = None,
        client: ApiClient | None = None,
    ):
        self._api_key = api_key or ""
        self._team_id = team_id
        # Linear personal API keys are sent without a scheme
        self._client = client or ApiClient(API_URL, self._api_key, auth_scheme=None, transport=transport)
        self._state_ids: dict[str, str] = {}

    def is_connected(self) -> bool:
        return bool(self._api_key.strip())

    def test_connection(self) -> ConnectionStatus:
        if not self.is_connected():
            return ConnectionStatus(ok=False, error="Missing Linear token")
        resp = self._client.graphql(VIEWER_QUERY)
        if not resp.ok:
            return ConnectionStatus(ok=False, error=resp.error)
        viewer = resp.data.get("viewer") or {}
        return ConnectionStatus(ok=True, user=viewer.get("name") or viewer.get("email"))

    def fetch_tasks(self, updated_since: str | None = None) -> list[ExternalTask]:
        if not self.is_connected():
            raise ProviderError("Linear is not connected")
        variables: dict[str, Any] = {"filter": {}}
        if self._team_id:
            variables["filter"] = {"team": {"id": {"eq": self._team_id}}}

        issues: list[ExternalTask] = []
        while True:
            resp = self._client.graphql(ISSUES_QUERY, variables)
            if not resp.ok:
                raise ProviderError(f"Linear: {resp.error}")
            page = resp.data.get("issues") or {}
            issues.extend(_parse_issue(node) for node in page.get("nodes") or [])
            info = page.get("pageInfo") or {}
            if not info.get("hasNextPage"):
                return issues
            variables["after"] = info.get("endCursor")

    def create_task(self, task: ExternalTask) -> ExternalTask | None:
        team_id = self._resolve_team_id()
        if team_id is None:
            logger.warning("Cannot create Linear issue: no team available")
            return None
        data = {"teamId": team_id, **self._input(task)}
        resp = self._client.graphql(CREATE_MUTATION, {"input": data})
        return self._mutation_issue(resp.data if resp.ok else None, "issueCreate")

    def update_task(self, external_id: str, updates: ExternalTask) -> ExternalTask | None:
        resp = self._client.graphql(UPDATE_MUTATION, {"id": external_id, "input": self._input(updates)})
        return self._mutation_issue(resp.data if resp.ok else None, "issueUpdate")

    def complete_task(self, external_id: str) -> bool:
        return self._move_to_state(external_id, "completed")

    def reopen_task(self, external_id: str) -> bool:
        return self._move_to_state(external_id, "unstarted")

    def delete_task(self, external_id: str) -> bool:
        resp = self._client.graphql(DELETE_MUTATION, {"id": external_id})
        return resp.ok and bool((resp.data.get("issueDelete") or {}).get("success"))

    def fetch_subtasks(self, parent_external_id: str) -> list[ExternalTask]:
        return []

    def create_subtask(self, parent_external_id: str, task: ExternalTask) -> ExternalTask | None:
        return None

    def map_to_local(self, external: ExternalTask) -> dict[str, Any]:
        fields = default_map_to_local(external)
        del fields["project"]
        return fields

    def map_to_external(self, task: Task) -> ExternalTask:
        return default_map_to_external(task)

    def close(self) -> None:
        self._client.close()

    @staticmethod
    def _input(task: ExternalTask) -> dict[str, Any]:
        return {
            "title": task.title,
            "description": task.description or "",
            "priority": level_to_linear(task.priority),
            "dueDate": task.due_date,
        }

    @staticmethod
    def _mutation_issue(data: dict[str, Any] | None, key: str) -> ExternalTask | None:
        payload = (data or {}).get(key) or {}
        if not payload.get("success") or not payload.get("issue"):
            return None
        return _parse_issue(payload["issue"])

    def _resolve_team_id(self) -> str | None:
        if self._team_id:
            return self._team_id
        resp = self._client.graphql(TEAMS_QUERY)
        nodes = (resp.data.get("teams") or {}).get("nodes") or [] if resp.ok else []
        if nodes:
            self._team_id = nodes[0].get("id")
        return self._team_id

    def _move_to_state(self, external_id: str, state_type: str) -> bool:
        state_id = self._state_id(state_type)
        if state_id is None:
            return False
        resp = self._client.graphql(UPDATE_MUTATION, {"id": external_id, "input": {"stateId": state_id}})
        return self._mutation_issue(resp.data if resp.ok else None, "issueUpdate") is not None

    def _state_id(self, state_type: str) -> str | None:
        if state_type in self._state_ids:
            return self._state_ids[state_type]
        team_id = self._resolve_team_id()
        if team_id is None:
            return None
        resp = self._client.graphql(STATES_QUERY, {"teamId": team_id})
        if not resp.ok:
            return None
        nodes = ((resp.data.get("team") or {}).get("states") or {}).get("nodes") or []
        for node in sorted(nodes, key=lambda n: n.get("position") or 0):
            self._state_ids.setdefault(node.get("type"), node.get("id"))
        return self._state_ids.get(state_type)


def _parse_issue(node: dict[str, Any]) -> ExternalTask:
    state = (node.get("state") or {}).get("type")
    labels = (node.get("labels") or {}).get("nodes") or []
    parent = node.get("parent") or {}
    return ExternalTask(
        external_id=node["id"],
        title=node.get("title") or "",
        updated_at=node.get("updatedAt") or "",
        status="closed" if state in _CLOSED_STATES else "open",
        description=node.get("description") or None,
        priority=level_from_linear(node.get("priority")),
        labels=[label["name"] for label in labels if label.get("name")],
        due_date=node.get("dueDate"),
        parent_external_id=parent.get("id"),
        completed_at=node.get("completedAt"),
        url=node.get("url"),
    )
