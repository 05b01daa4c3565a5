"""Ephemeral dedup entities that live for a single sync pass."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from ledgersync.adapters.db.models import LedgerTransaction

MatchTier = Literal["deterministic", "verified"]


@dataclass(frozen=True)
class IncomingTransaction:
    """An aggregator transaction already converted to ledger conventions."""

    aggregator_transaction_id: str
    account_id: str
    description: str
    amount_cents: int
    posted_date: date
    authorized_date: date | None = None
    merchant_name: str | None = None
    aggregator_name: str | None = None

    @property
    def preferred_date(self) -> date:
        """Authorized date when present (matches card statements), else posted."""
        return self.authorized_date or self.posted_date


@dataclass(frozen=True)
class ExistingTransaction:
    """An unlinked ledger row considered as a duplicate candidate."""

    id: str
    account_id: str
    description: str
    amount_cents: int
    date: date

    @classmethod
    def from_row(cls, row: LedgerTransaction) -> ExistingTransaction:
        return cls(
            id=row.id,
            account_id=row.account_id,
            description=row.description,
            amount_cents=row.amount_cents,
            date=row.date,
        )


@dataclass(frozen=True)
class UncertainPair:
    """A plausible pair whose description similarity needs semantic judgment."""

    incoming: IncomingTransaction
    candidate: ExistingTransaction
    tier1_score: float

    @property
    def pair_id(self) -> str:
        return f"{self.incoming.aggregator_transaction_id}:{self.candidate.id}"


@dataclass(frozen=True)
class DuplicateMatch:
    """An incoming transaction matched to an existing unlinked ledger row."""

    incoming: IncomingTransaction
    matched_with: ExistingTransaction
    confidence: float
    match_tier: MatchTier


@dataclass
class Tier1Result:
    """Three-way partition produced by deterministic matching."""

    definite: list[DuplicateMatch] = field(default_factory=list)
    uncertain: list[UncertainPair] = field(default_factory=list)
    unmatched: list[IncomingTransaction] = field(default_factory=list)
