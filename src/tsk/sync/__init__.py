"""Two-way sync with remote task trackers."""

from tsk.sync.base import ConnectionStatus, ExternalTask, ProviderError, SyncProvider
from tsk.sync.engine import ConflictStrategy, SyncEngine, SyncError, SyncOptions, SyncResult
from tsk.sync.state import SyncState, SyncStateManager

__all__ = [
    "ConflictStrategy",
    "ConnectionStatus",
    "ExternalTask",
    "ProviderError",
    "SyncEngine",
    "SyncError",
    "SyncOptions",
    "SyncProvider",
    "SyncResult",
    "SyncState",
    "SyncStateManager",
]
