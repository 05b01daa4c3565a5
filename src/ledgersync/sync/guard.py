from __future__ import annotations

import threading


class SyncGuard:
    """Process-wide set of connections with a sync in flight."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: set[str] = set()

    def try_acquire(self, connection_id: str) -> bool:
        """Claim ``connection_id``; False when another sync already holds it."""
        with self._lock:
            if connection_id in self._active:
                return False
            self._active.add(connection_id)
            return True

    def release(self, connection_id: str) -> None:
        with self._lock:
            self._active.discard(connection_id)

    def is_active(self, connection_id: str) -> bool:
        with self._lock:
            return connection_id in self._active


DEFAULT_GUARD = SyncGuard()
