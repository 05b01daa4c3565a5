from __future__ import annotations

from datetime import datetime

from ledgersync.adapters.db.facade import DB


class CursorStore:
    """Per-connection sync position backed by the ledger store."""

    def __init__(self, db: DB) -> None:
        self._db = db

    def get_cursor(self, connection_id: str) -> str | None:
        """Saved cursor, or None to start from the beginning of the feed."""
        return self._db.get_cursor(connection_id)

    def set_cursor(
        self,
        connection_id: str,
        token: str,
        synced_at: datetime | None = None,
    ) -> None:
        self._db.set_cursor(connection_id, token, synced_at or datetime.now())

    def reset_cursor(self, connection_id: str) -> None:
        """Forget the saved position so the next sync replays full history."""
        self._db.reset_cursor(connection_id)
