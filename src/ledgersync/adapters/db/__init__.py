from ledgersync.adapters.db.facade import DB, LedgerWriteError
from ledgersync.adapters.db.models import (
    Account,
    AggregatorFields,
    Base,
    CategorizationRule,
    Category,
    LedgerTransaction,
    SyncConnection,
)

__all__ = [
    "DB",
    "Account",
    "AggregatorFields",
    "Base",
    "CategorizationRule",
    "Category",
    "LedgerTransaction",
    "LedgerWriteError",
    "SyncConnection",
]
