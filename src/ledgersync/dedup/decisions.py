"""Merge Tier 1 and Tier 2 outcomes into the writes a page needs."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from ledgersync.dedup.entities import (
    DuplicateMatch,
    IncomingTransaction,
    Tier1Result,
)


@dataclass
class Decisions:
    """Upgrades (link an existing row) and inserts (new rows) for one page."""

    upgrades: list[DuplicateMatch] = field(default_factory=list)
    inserts: list[IncomingTransaction] = field(default_factory=list)


def merge_decisions(
    tier1: Tier1Result,
    verified: Sequence[DuplicateMatch] = (),
) -> Decisions:
    """Combine definite and verified matches.

    Definite matches are taken first. A verified match is dropped when its
    incoming transaction or its existing row was already claimed; every
    incoming transaction without an accepted match becomes an insert, in
    first-seen order.
    """
    decisions = Decisions()
    matched_refs: set[str] = set()
    claimed_rows: set[str] = set()

    for match in [*tier1.definite, *verified]:
        ref = match.incoming.aggregator_transaction_id
        if ref in matched_refs or match.matched_with.id in claimed_rows:
            continue
        matched_refs.add(ref)
        claimed_rows.add(match.matched_with.id)
        decisions.upgrades.append(match)

    seen: set[str] = set()
    leftovers = [pair.incoming for pair in tier1.uncertain] + list(tier1.unmatched)
    for txn in leftovers:
        ref = txn.aggregator_transaction_id
        if ref in matched_refs or ref in seen:
            continue
        seen.add(ref)
        decisions.inserts.append(txn)
    return decisions
