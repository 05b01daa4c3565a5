from ledgersync.sync.coordinator import SyncCoordinator, TransactionFeed
from ledgersync.sync.cursor_store import CursorStore
from ledgersync.sync.guard import SyncGuard
from ledgersync.sync.reconciler import Reconciler
from ledgersync.sync.types import SyncProgress, SyncResult, SyncStage

__all__ = [
    "CursorStore",
    "Reconciler",
    "SyncCoordinator",
    "SyncGuard",
    "SyncProgress",
    "SyncResult",
    "SyncStage",
    "TransactionFeed",
]
