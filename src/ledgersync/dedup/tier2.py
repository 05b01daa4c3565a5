"""Tier 2 verification of uncertain pairs through an external service.

Pairs are sent sequentially in batches no larger than the service's hard
limit. A failed batch leaves its pairs unresolved (they are later inserted as
new transactions) and does not stop the remaining batches.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

import loguru
from loguru import logger

from ledgersync.dedup.entities import DuplicateMatch, UncertainPair
from ledgersync.infra.clients.verifier import (
    VerificationService,
    VerificationServiceError,
)

DEFAULT_BATCH_LIMIT = 100


@dataclass
class VerificationOutcome:
    matches: list[DuplicateMatch] = field(default_factory=list)
    non_matches: list[str] = field(default_factory=list)
    unresolved: list[UncertainPair] = field(default_factory=list)
    batches_sent: int = 0
    batches_failed: int = 0


class Tier2VerifierLogger:
    """Handles all logging for Tier 2 verification with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def verify_start(self, pair_count: int, batch_count: int, limit: int) -> None:
        self._logger.bind(pairs=pair_count, batches=batch_count, limit=limit).info(
            "Verifying {} uncertain pairs in {} batches (limit {})",
            pair_count,
            batch_count,
            limit,
        )

    def batch_failed(self, batch_idx: int, pair_count: int, error: Exception) -> None:
        self._logger.bind(batch=batch_idx, pairs=pair_count).warning(
            "Verification batch {} failed, {} pairs left unresolved: {}",
            batch_idx,
            pair_count,
            error,
        )

    def unknown_match(self, new_ref: str, candidate_id: str) -> None:
        self._logger.bind(new_ref=new_ref, candidate_id=candidate_id).debug(
            "Ignoring verification match for unknown pair {} -> {}",
            new_ref,
            candidate_id,
        )

    def duplicate_match(self, new_ref: str, candidate_id: str) -> None:
        self._logger.bind(new_ref=new_ref, candidate_id=candidate_id).debug(
            "Discarding extra verified candidate {} for {}",
            candidate_id,
            new_ref,
        )

    def verify_complete(self, outcome: VerificationOutcome) -> None:
        self._logger.bind(
            matches=len(outcome.matches),
            non_matches=len(outcome.non_matches),
            unresolved=len(outcome.unresolved),
        ).info(
            "Verification complete: {} matches, {} non-matches, {} unresolved",
            len(outcome.matches),
            len(outcome.non_matches),
            len(outcome.unresolved),
        )


class Tier2Verifier:
    """Batches uncertain pairs to a verification service."""

    def __init__(
        self,
        service: VerificationService,
        *,
        batch_limit: int = DEFAULT_BATCH_LIMIT,
        verifier_logger: Tier2VerifierLogger | None = None,
    ) -> None:
        if batch_limit < 1:
            raise ValueError("batch_limit must be at least 1")
        self._service = service
        self._batch_limit = batch_limit
        self._logger = verifier_logger or Tier2VerifierLogger()

    def verify(self, pairs: Sequence[UncertainPair]) -> VerificationOutcome:
        """Resolve uncertain pairs into verified matches and non-matches.

        Each incoming transaction is matched to at most one existing row; the
        first accepted match wins and later candidates are discarded.
        """
        outcome = VerificationOutcome()
        if not pairs:
            return outcome

        batches = [
            list(pairs[i : i + self._batch_limit])
            for i in range(0, len(pairs), self._batch_limit)
        ]
        self._logger.verify_start(len(pairs), len(batches), self._batch_limit)

        matched_refs: set[str] = set()
        for batch_idx, batch in enumerate(batches):
            outcome.batches_sent += 1
            try:
                response = self._service.verify_batch(batch)
            except VerificationServiceError as e:
                outcome.batches_failed += 1
                self._logger.batch_failed(batch_idx, len(batch), e)
                outcome.unresolved.extend(batch)
                continue

            by_key = {
                (pair.incoming.aggregator_transaction_id, pair.candidate.id): pair
                for pair in batch
            }
            for match in response.matches:
                pair = by_key.get((match.new_transaction_ref, match.candidate_id))
                if pair is None:
                    self._logger.unknown_match(
                        match.new_transaction_ref, match.candidate_id
                    )
                    continue
                if match.new_transaction_ref in matched_refs:
                    self._logger.duplicate_match(
                        match.new_transaction_ref, match.candidate_id
                    )
                    continue
                matched_refs.add(match.new_transaction_ref)
                outcome.matches.append(
                    DuplicateMatch(
                        incoming=pair.incoming,
                        matched_with=pair.candidate,
                        confidence=match.confidence,
                        match_tier="verified",
                    )
                )
            outcome.non_matches.extend(response.non_matches)

        self._logger.verify_complete(outcome)
        return outcome
