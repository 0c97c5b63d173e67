"""Shared utilities for the sync engine and providers."""

from __future__ import annotations

import hashlib
import json
from collections.abc import Callable
from typing import TypeVar

from tsk.sync.base import ExternalTask

T = TypeVar("T")

# Fields that change without the task itself changing
_VOLATILE_FIELDS = ("updated_at", "url", "completed_at")


def sort_parents_first(
    items: list[T],
    get_id: Callable[[T], str],
    get_parent_id: Callable[[T], str | None],
) -> list[T]:
    """Order items so every parent precedes its children.

    Relative order is otherwise preserved; parents outside the list are ignored.
    """
    by_id = {get_id(item): item for item in items}
    visited: set[str] = set()
    result: list[T] = []

    for item in items:
        # Walk up to the topmost unvisited ancestor, then emit downwards
        chain = []
        current: T | None = item
        while current is not None and get_id(current) not in visited:
            visited.add(get_id(current))
            chain.append(current)
            parent_id = get_parent_id(current)
            current = by_id.get(parent_id) if parent_id else None
        result.extend(reversed(chain))

    return result


def content_hash(task: ExternalTask) -> str:
    """Stable hash of a remote task's content, ignoring volatile fields."""
    data = task.to_dict()
    for key in _VOLATILE_FIELDS:
        data.pop(key, None)
    payload = json.dumps(data, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(payload.encode()).hexdigest()
