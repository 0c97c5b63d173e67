"""Sync state: local <-> external ID mappings and sync bookkeeping.

Stored in a JSON sidecar next to the task file. The state is derived and
rebuildable, so a missing or corrupt file silently resets to empty defaults.
"""

from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tsk.persistence import atomic_write_json

logger = logging.getLogger("tsk.sync")

# Remote deletions remembered to suppress re-imports from lagging listings
MAX_DELETED_REMOTELY = 500


@dataclass
class SyncState:
    last_sync_at: dict[str, str] = field(default_factory=dict)
    id_map: dict[str, str] = field(default_factory=dict)  # local id -> external id
    reverse_id_map: dict[str, str] = field(default_factory=dict)  # external id -> local id
    deleted_locally: list[str] = field(default_factory=list)  # local ids pending remote delete
    deleted_remotely: list[str] = field(default_factory=list)  # external ids we deleted remotely
    last_pull_hashes: dict[str, str] = field(default_factory=dict)  # external id -> hash
    mapping_source: dict[str, str] = field(default_factory=dict)  # local id -> provider name

    def to_dict(self) -> dict[str, Any]:
        return {
            "lastSyncAt": self.last_sync_at,
            "idMap": self.id_map,
            "reverseIdMap": self.reverse_id_map,
            "deletedLocally": self.deleted_locally,
            "deletedRemotely": self.deleted_remotely,
            "lastPullHashes": self.last_pull_hashes,
            "mappingSource": self.mapping_source,
        }

    @classmethod
    def from_dict(cls, data: Any) -> SyncState:
        """Build state from decoded JSON, ignoring malformed sections."""
        if not isinstance(data, dict):
            return cls()

        def str_map(key: str) -> dict[str, str]:
            value = data.get(key)
            if not isinstance(value, dict):
                return {}
            return {k: v for k, v in value.items() if isinstance(k, str) and isinstance(v, str)}

        def str_list(key: str) -> list[str]:
            value = data.get(key)
            if not isinstance(value, list):
                return []
            return [v for v in value if isinstance(v, str)]

        return cls(
            last_sync_at=str_map("lastSyncAt"),
            id_map=str_map("idMap"),
            reverse_id_map=str_map("reverseIdMap"),
            deleted_locally=str_list("deletedLocally"),
            deleted_remotely=str_list("deletedRemotely"),
            last_pull_hashes=str_map("lastPullHashes"),
            mapping_source=str_map("mappingSource"),
        )

    def copy(self) -> SyncState:
        return copy.deepcopy(self)


class SyncStateManager:
    """Loads, saves and edits SyncState. Keeps both ID maps consistent."""

    def __init__(self, path: Path):
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> SyncState:
        if not self._path.exists():
            return SyncState()
        try:
            text = self._path.read_text(encoding="utf-8")
            state = SyncState.from_dict(json.loads(text) if text.strip() else {})
        except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
            logger.warning("Resetting unreadable sync state %s: %s", self._path, e)
            return SyncState()
        self.rebuild_reverse_map(state)
        return state

    def save(self, state: SyncState) -> None:
        atomic_write_json(self._path, state.to_dict())

    # Mapping helpers (pure bookkeeping on a state object)

    @staticmethod
    def add_mapping(
        state: SyncState, local_id: str, external_id: str, source: str | None = None
    ) -> None:
        """Map local_id <-> external_id, replacing any previous pairing of either.

        source names the provider that owns the pairing; when omitted, any
        previously recorded owner is kept.
        """
        old_external = state.id_map.get(local_id)
        if old_external is not None and old_external != external_id:
            state.reverse_id_map.pop(old_external, None)
            state.last_pull_hashes.pop(old_external, None)
        old_local = state.reverse_id_map.get(external_id)
        if old_local is not None and old_local != local_id:
            state.id_map.pop(old_local, None)
            state.mapping_source.pop(old_local, None)
        state.id_map[local_id] = external_id
        state.reverse_id_map[external_id] = local_id
        if source is not None:
            state.mapping_source[local_id] = source

    @staticmethod
    def remove_mapping(state: SyncState, local_id: str) -> str | None:
        """Drop a mapping, its owner and its cached hash. Returns the external ID, if any."""
        external_id = state.id_map.pop(local_id, None)
        state.mapping_source.pop(local_id, None)
        if external_id is not None:
            if state.reverse_id_map.get(external_id) == local_id:
                del state.reverse_id_map[external_id]
            state.last_pull_hashes.pop(external_id, None)
        return external_id

    @staticmethod
    def get_mapping_source(state: SyncState, local_id: str) -> str | None:
        return state.mapping_source.get(local_id)

    @staticmethod
    def get_local_id(state: SyncState, external_id: str) -> str | None:
        return state.reverse_id_map.get(external_id)

    @staticmethod
    def get_external_id(state: SyncState, local_id: str) -> str | None:
        return state.id_map.get(local_id)

    @staticmethod
    def mark_deleted_locally(state: SyncState, local_id: str) -> None:
        if local_id not in state.deleted_locally:
            state.deleted_locally.append(local_id)

    @staticmethod
    def clear_deleted_locally(state: SyncState, local_id: str) -> None:
        if local_id in state.deleted_locally:
            state.deleted_locally.remove(local_id)

    @staticmethod
    def mark_deleted_remotely(state: SyncState, external_id: str) -> None:
        if external_id not in state.deleted_remotely:
            state.deleted_remotely.append(external_id)
            del state.deleted_remotely[:-MAX_DELETED_REMOTELY]

    @staticmethod
    def rebuild_reverse_map(state: SyncState) -> None:
        """Make reverse_id_map the exact inverse of id_map (id_map wins)."""
        state.reverse_id_map = {ext: local for local, ext in state.id_map.items()}
        state.mapping_source = {
            local: source for local, source in state.mapping_source.items() if local in state.id_map
        }
