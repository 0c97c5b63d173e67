"""Undo/redo history for the task store."""

from __future__ import annotations

from tsk.models import Task, UndoEntry

MAX_UNDO = 50


class UndoHistory:
    """Snapshot-based undo and redo stacks.

    Each entry holds the whole collection as it was before one mutation.
    Tasks are immutable, so a snapshot is a shallow copy of the id -> task map.
    """

    def __init__(self, limit: int = MAX_UNDO):
        self._limit = limit
        self._undo: list[UndoEntry] = []
        self._redo: list[UndoEntry] = []

    def record(self, description: str, tasks: dict[str, Task]) -> None:
        """Push the pre-mutation state. A new mutation clears the redo stack."""
        self._undo.append(UndoEntry(description, dict(tasks)))
        if len(self._undo) > self._limit:
            del self._undo[0]
        self._redo.clear()

    def undo(self, current: dict[str, Task]) -> dict[str, Task] | None:
        """Return the state to restore, or None if there is nothing to undo."""
        if not self._undo:
            return None
        entry = self._undo.pop()
        self._redo.append(UndoEntry(entry.description, dict(current)))
        return entry.snapshot

    def redo(self, current: dict[str, Task]) -> dict[str, Task] | None:
        if not self._redo:
            return None
        entry = self._redo.pop()
        self._undo.append(UndoEntry(entry.description, dict(current)))
        return entry.snapshot

    def clear(self) -> None:
        self._undo.clear()
        self._redo.clear()

    @property
    def undo_count(self) -> int:
        return len(self._undo)

    @property
    def redo_count(self) -> int:
        return len(self._redo)

    @property
    def descriptions(self) -> list[str]:
        """Undo entry descriptions, oldest first."""
        return [entry.description for entry in self._undo]
