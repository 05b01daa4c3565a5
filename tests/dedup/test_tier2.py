"""Tests for batched semantic verification."""

from __future__ import annotations

from collections.abc import Sequence

from ledgersync.dedup.entities import UncertainPair
from ledgersync.dedup.tier2 import Tier2Verifier
from ledgersync.infra.clients.verifier import VerificationMatch, VerificationResponse
from tests.factories import (
    FakeVerificationService,
    make_existing,
    make_incoming,
    make_pairs,
)


class RepeatingService:
    """Returns a match for every candidate, including unknown pairs."""

    def verify_batch(self, pairs: Sequence[UncertainPair]) -> VerificationResponse:
        matches = [
            VerificationMatch(
                candidate_id=pair.candidate.id,
                new_transaction_ref=pair.incoming.aggregator_transaction_id,
                confidence=0.8,
            )
            for pair in pairs
        ]
        matches.append(
            VerificationMatch(
                candidate_id="ledger-unknown",
                new_transaction_ref="plaid-unknown",
                confidence=0.95,
            )
        )
        return VerificationResponse(matches=matches)


class TestTier2Verifier:
    def test_150_pairs_take_two_calls(self) -> None:
        # Input
        service = FakeVerificationService()
        pairs = make_pairs(150)

        # Act
        outcome = Tier2Verifier(service, batch_limit=100).verify(pairs)

        # Assert
        assert service.batch_sizes == [100, 50]
        assert outcome.batches_sent == 2
        assert len(outcome.non_matches) == 150

    def test_no_pairs_makes_no_calls(self) -> None:
        # Input
        service = FakeVerificationService()

        # Act
        outcome = Tier2Verifier(service).verify([])

        # Assert
        assert service.batch_sizes == []
        assert outcome.matches == []

    def test_matches_are_verified_tier(self) -> None:
        # Input
        pairs = make_pairs(3)
        service = FakeVerificationService(match_pair_ids={pairs[1].pair_id})

        # Act
        outcome = Tier2Verifier(service).verify(pairs)

        # Assert
        assert len(outcome.matches) == 1
        match = outcome.matches[0]
        assert match.incoming.aggregator_transaction_id == "plaid-1"
        assert match.matched_with.id == "ledger-1"
        assert match.match_tier == "verified"
        assert match.confidence == 0.95

    def test_failed_batch_leaves_pairs_unresolved(self) -> None:
        # Input
        pairs = make_pairs(150)
        service = FakeVerificationService(
            match_pair_ids={pairs[120].pair_id}, fail_batches={0}
        )

        # Act
        outcome = Tier2Verifier(service, batch_limit=100).verify(pairs)

        # Assert
        assert service.batch_sizes == [100, 50]
        assert outcome.batches_failed == 1
        assert outcome.unresolved == pairs[:100]
        assert [m.incoming.aggregator_transaction_id for m in outcome.matches] == [
            "plaid-120"
        ]

    def test_first_match_wins_per_incoming(self) -> None:
        """Two candidates for the same incoming transaction: keep the first."""
        # Input
        incoming = make_incoming(aggregator_transaction_id="plaid-1")
        pairs = [
            UncertainPair(
                incoming=incoming,
                candidate=make_existing(id="ledger-a"),
                tier1_score=0.7,
            ),
            UncertainPair(
                incoming=incoming,
                candidate=make_existing(id="ledger-b"),
                tier1_score=0.6,
            ),
        ]

        # Act
        outcome = Tier2Verifier(RepeatingService()).verify(pairs)

        # Assert
        assert [m.matched_with.id for m in outcome.matches] == ["ledger-a"]
