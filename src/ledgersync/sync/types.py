from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class SyncStage(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    PROCESSING = "processing"
    DEDUPLICATING = "deduplicating"
    SAVING = "saving"


@dataclass(frozen=True)
class SyncProgress:
    """Stage notification passed to progress callbacks."""

    connection_id: str
    stage: SyncStage
    progress: int = 0
    total: int = 0


@dataclass
class SyncResult:
    """Outcome of one sync call for one connection."""

    connection_id: str
    added: int = 0
    modified: int = 0
    removed: int = 0
    upgraded: int = 0
    errors: list[str] = field(default_factory=list)
    requires_reauth: bool = False

    @classmethod
    def empty(cls, connection_id: str) -> SyncResult:
        return cls(connection_id=connection_id)

    @property
    def ok(self) -> bool:
        return not self.errors and not self.requires_reauth

    def absorb(self, other: SyncResult) -> None:
        """Add the counts and errors of a page result into this one."""
        self.added += other.added
        self.modified += other.modified
        self.removed += other.removed
        self.upgraded += other.upgraded
        self.errors.extend(other.errors)
        self.requires_reauth = self.requires_reauth or other.requires_reauth

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
