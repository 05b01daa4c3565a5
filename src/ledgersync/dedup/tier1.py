"""Tier 1 (deterministic) duplicate matching.

Partitions incoming aggregator transactions into definite matches against
existing unlinked ledger rows, uncertain pairs that need semantic
verification, and unmatched transactions that become inserts.

Candidates share the account and the exact amount in cents, and fall within
``date_tolerance_days`` of the incoming preferred date. Each candidate gets:

- a description score: best ``combined_similarity`` of the normalized
  merchant names, raised to the raw Jaro-Winkler score when the descriptions
  share significant tokens;
- a date score: ``1 - days / (tolerance + 1)``;
- a pair score: ``0.85 * description + 0.15 * date``.

Definite matches are assigned greedily across the whole page in order of
(pair score desc, existing date asc, existing id asc, incoming order asc), so
every existing row and every incoming transaction is used at most once.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, timedelta

import loguru
from loguru import logger

from ledgersync.core.config import SyncConfig
from ledgersync.dedup.entities import (
    DuplicateMatch,
    ExistingTransaction,
    IncomingTransaction,
    Tier1Result,
    UncertainPair,
)
from ledgersync.dedup.merchant import (
    extract_merchant_name,
    has_significant_token_overlap,
)
from ledgersync.dedup.similarity import combined_similarity, jaro_winkler

DESCRIPTION_WEIGHT = 0.85
DATE_WEIGHT = 0.15
TOKEN_OVERLAP_MIN_JW = 0.75


@dataclass(frozen=True)
class ScoredCandidate:
    incoming_idx: int
    incoming: IncomingTransaction
    candidate: ExistingTransaction
    description_score: float
    date_score: float

    @property
    def pair_score(self) -> float:
        return DESCRIPTION_WEIGHT * self.description_score + (
            DATE_WEIGHT * self.date_score
        )

    def sort_key(self) -> tuple[float, date, str, int]:
        return (
            -self.pair_score,
            self.candidate.date,
            self.candidate.id,
            self.incoming_idx,
        )


def match_window(
    incoming: Sequence[IncomingTransaction], padding_days: int = 5
) -> tuple[date, date] | None:
    """Date window of existing rows worth comparing against ``incoming``."""
    if not incoming:
        return None
    dates = [txn.preferred_date for txn in incoming]
    padding = timedelta(days=padding_days)
    return min(dates) - padding, max(dates) + padding


def description_similarity(
    incoming: IncomingTransaction, existing_description: str
) -> float:
    """Score how likely two descriptions name the same merchant."""
    existing_merchant = extract_merchant_name(existing_description)
    sources = [incoming.description]
    if incoming.merchant_name:
        sources.append(incoming.merchant_name)

    score = 0.0
    for source in sources:
        merchant = extract_merchant_name(source)
        score = max(score, combined_similarity(merchant, existing_merchant))
        if has_significant_token_overlap(source, existing_description):
            raw = jaro_winkler(merchant, existing_merchant)
            if raw >= TOKEN_OVERLAP_MIN_JW:
                score = max(score, raw)
    return score


class Tier1MatcherLogger:
    """Handles all logging for Tier 1 matching with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def match_start(self, incoming_count: int, existing_count: int) -> None:
        self._logger.bind(incoming=incoming_count, existing=existing_count).debug(
            "Tier 1 matching {} incoming against {} unlinked ledger rows",
            incoming_count,
            existing_count,
        )

    def match_complete(self, result: Tier1Result) -> None:
        self._logger.bind(
            definite=len(result.definite),
            uncertain=len(result.uncertain),
            unmatched=len(result.unmatched),
        ).info(
            "Tier 1 complete: {} definite, {} uncertain pairs, {} unmatched",
            len(result.definite),
            len(result.uncertain),
            len(result.unmatched),
        )

    def definite_match(self, scored: ScoredCandidate) -> None:
        self._logger.bind(
            aggregator_id=scored.incoming.aggregator_transaction_id,
            ledger_id=scored.candidate.id,
            score=scored.description_score,
        ).debug(
            "Definite match {} -> {} (score {:.3f})",
            scored.incoming.aggregator_transaction_id,
            scored.candidate.id,
            scored.description_score,
        )


class Tier1Matcher:
    """Deterministic matcher over one page of incoming transactions."""

    def __init__(
        self,
        *,
        definite_threshold: float = 0.88,
        uncertain_floor: float = 0.55,
        date_tolerance_days: int = 2,
        max_candidates_per_txn: int = 5,
        matcher_logger: Tier1MatcherLogger | None = None,
    ) -> None:
        if uncertain_floor >= definite_threshold:
            raise ValueError("uncertain_floor must be below definite_threshold")
        self._definite_threshold = definite_threshold
        self._uncertain_floor = uncertain_floor
        self._date_tolerance_days = date_tolerance_days
        self._max_candidates = max_candidates_per_txn
        self._logger = matcher_logger or Tier1MatcherLogger()

    @classmethod
    def from_config(cls, config: SyncConfig) -> Tier1Matcher:
        return cls(
            definite_threshold=config.definite_threshold,
            uncertain_floor=config.uncertain_floor,
            date_tolerance_days=config.date_tolerance_days,
            max_candidates_per_txn=config.max_candidates_per_txn,
        )

    def match(
        self,
        incoming: Sequence[IncomingTransaction],
        existing_unlinked: Sequence[ExistingTransaction],
    ) -> Tier1Result:
        """Partition ``incoming`` into definite, uncertain and unmatched."""
        self._logger.match_start(len(incoming), len(existing_unlinked))

        index: dict[tuple[str, int], list[ExistingTransaction]] = defaultdict(list)
        for existing in existing_unlinked:
            index[(existing.account_id, existing.amount_cents)].append(existing)

        scored_by_incoming = [
            self._score_candidates(
                idx, txn, index.get((txn.account_id, txn.amount_cents), [])
            )
            for idx, txn in enumerate(incoming)
        ]

        definite_by_idx = self._assign_definite(scored_by_incoming)
        claimed = {scored.candidate.id for scored in definite_by_idx.values()}

        result = Tier1Result()
        for idx, txn in enumerate(incoming):
            scored_match = definite_by_idx.get(idx)
            if scored_match is not None:
                result.definite.append(
                    DuplicateMatch(
                        incoming=txn,
                        matched_with=scored_match.candidate,
                        confidence=scored_match.description_score,
                        match_tier="deterministic",
                    )
                )
                continue

            remaining = sorted(
                (
                    scored
                    for scored in scored_by_incoming[idx]
                    if scored.candidate.id not in claimed
                    and scored.description_score >= self._uncertain_floor
                ),
                key=ScoredCandidate.sort_key,
            )
            if not remaining:
                result.unmatched.append(txn)
                continue

            for scored in remaining[: self._max_candidates]:
                result.uncertain.append(
                    UncertainPair(
                        incoming=txn,
                        candidate=scored.candidate,
                        tier1_score=scored.description_score,
                    )
                )

        self._logger.match_complete(result)
        return result

    def _score_candidates(
        self,
        incoming_idx: int,
        txn: IncomingTransaction,
        same_amount: list[ExistingTransaction],
    ) -> list[ScoredCandidate]:
        scored: list[ScoredCandidate] = []
        for existing in same_amount:
            days = abs((existing.date - txn.preferred_date).days)
            if days > self._date_tolerance_days:
                continue
            scored.append(
                ScoredCandidate(
                    incoming_idx=incoming_idx,
                    incoming=txn,
                    candidate=existing,
                    description_score=description_similarity(
                        txn, existing.description
                    ),
                    date_score=1 - days / (self._date_tolerance_days + 1),
                )
            )
        return scored

    def _assign_definite(
        self, scored_by_incoming: list[list[ScoredCandidate]]
    ) -> dict[int, ScoredCandidate]:
        pool = sorted(
            (
                scored
                for candidates in scored_by_incoming
                for scored in candidates
                if scored.description_score >= self._definite_threshold
            ),
            key=ScoredCandidate.sort_key,
        )

        assigned: dict[int, ScoredCandidate] = {}
        claimed: set[str] = set()
        for scored in pool:
            if scored.incoming_idx in assigned or scored.candidate.id in claimed:
                continue
            assigned[scored.incoming_idx] = scored
            claimed.add(scored.candidate.id)
            self._logger.definite_match(scored)
        return assigned
