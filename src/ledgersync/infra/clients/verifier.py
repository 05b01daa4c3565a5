"""Semantic verification service for uncertain duplicate pairs.

The service receives a bounded batch of (incoming, existing) pairs and reports
which pairs name the same merchant. The concrete backend asks an OpenAI model
through the Responses API with a strict JSON schema.
"""

from __future__ import annotations

from collections.abc import Sequence
import json
import os
from typing import Literal, Protocol

from openai import OpenAI, OpenAIError
from pydantic import BaseModel, Field, ValidationError

from ledgersync.dedup.entities import UncertainPair

Confidence = Literal["high", "medium", "low"]

CONFIDENCE_SCORES: dict[Confidence, float] = {
    "high": 0.95,
    "medium": 0.8,
    "low": 0.6,
}


class VerificationServiceError(Exception):
    """A verification batch could not be completed."""


class VerificationMatch(BaseModel):
    candidate_id: str
    new_transaction_ref: str
    confidence: float = Field(..., ge=0.0, le=1.0)


class VerificationResponse(BaseModel):
    matches: list[VerificationMatch] = Field(default_factory=list)
    non_matches: list[str] = Field(default_factory=list)


class VerificationService(Protocol):
    """Anything that can judge one batch of uncertain pairs."""

    def verify_batch(self, pairs: Sequence[UncertainPair]) -> VerificationResponse:
        ...


class PairVerdict(BaseModel):
    pair_index: int
    is_same_merchant: bool
    confidence: Confidence


class PairVerdicts(BaseModel):
    matches: list[PairVerdict]


SYSTEM_PROMPT = """You are a financial transaction deduplication expert. \
Decide whether each pair of transaction descriptions refers to the SAME \
merchant/business.

- The same merchant appears differently across banks and payment processors.
- Wallet and processor prefixes (AplPay, SQ*, TST*, PAYPAL*) are not part of \
the merchant name.
- Ignore city/state suffixes, store numbers and reference IDs.
- The aggregator often provides a clean merchant name while CSV exports carry \
raw descriptions.

Matches: "AplPay CHIPOTLE 1249GAINESVILLE VA" = "Chipotle Mexican Grill"; \
"TST* ROCKWOOD GAINESVILLE" = "Rockwood".
Non-matches: "CHIPOTLE 1249" vs "Taco Bell"; "TARGET 1234" vs "Walmart".

Report one verdict per pair using its 1-based pair_index."""


def _response_schema() -> dict[str, object]:
    return {
        "type": "json_schema",
        "name": "transaction_matches",
        "schema": {
            "type": "object",
            "properties": {
                "matches": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "pair_index": {"type": "integer"},
                            "is_same_merchant": {"type": "boolean"},
                            "confidence": {
                                "type": "string",
                                "enum": ["high", "medium", "low"],
                            },
                        },
                        "required": ["pair_index", "is_same_merchant", "confidence"],
                        "additionalProperties": False,
                    },
                },
            },
            "required": ["matches"],
            "additionalProperties": False,
        },
        "strict": True,
    }


def format_pairs_for_prompt(pairs: Sequence[UncertainPair]) -> str:
    """Render pairs as a numbered list the model can reference by index."""
    lines: list[str] = []
    for idx, pair in enumerate(pairs, start=1):
        incoming = pair.incoming
        new_description = incoming.description
        if incoming.merchant_name and incoming.merchant_name != new_description:
            new_description = f"{new_description} (merchant: {incoming.merchant_name})"
        lines.append(
            f'{idx}. New: "{new_description}"\n'
            f'   Existing: "{pair.candidate.description}"\n'
            f"   Amount: ${abs(incoming.amount_cents) / 100:.2f}\n"
            f"   Date: {incoming.preferred_date.isoformat()}"
        )
    return "\n\n".join(lines)


class OpenAIVerificationService:
    """Verification backend backed by an OpenAI model."""

    def __init__(
        self,
        *,
        model: str = "gpt-5-mini",
        timeout_seconds: float = 60.0,
        client: OpenAI | None = None,
    ) -> None:
        self._model = model
        if client is None:
            api_key = os.environ.get("OPENAI_API_KEY", "").strip()
            if not api_key:
                raise VerificationServiceError(
                    "OPENAI_API_KEY is required for the verification service."
                )
            client = OpenAI(api_key=api_key, timeout=timeout_seconds)
        self._client = client

    @staticmethod
    def is_available() -> bool:
        """Whether an API key is configured for the verification service."""
        return bool(os.environ.get("OPENAI_API_KEY", "").strip())

    def verify_batch(self, pairs: Sequence[UncertainPair]) -> VerificationResponse:
        if not pairs:
            return VerificationResponse()

        prompt = (
            "Analyze these transaction pairs and determine if each pair refers "
            "to the same merchant:\n\n" + format_pairs_for_prompt(pairs)
        )
        try:
            resp = self._client.responses.create(
                model=self._model,
                instructions=SYSTEM_PROMPT,
                input=prompt,
                extra_body={"text": {"format": _response_schema()}},
            )
        except OpenAIError as e:
            raise VerificationServiceError(f"Verification request failed: {e}") from e

        verdicts = self._parse_verdicts(getattr(resp, "output_text", None))
        return self._to_response(pairs, verdicts)

    def _parse_verdicts(self, response_text: str | None) -> PairVerdicts:
        if not response_text:
            raise VerificationServiceError("Verification response had no output text")
        try:
            return PairVerdicts.model_validate(json.loads(response_text))
        except (json.JSONDecodeError, ValidationError) as e:
            raise VerificationServiceError(
                f"Failed to parse verification response: {e}"
            ) from e

    def _to_response(
        self, pairs: Sequence[UncertainPair], verdicts: PairVerdicts
    ) -> VerificationResponse:
        by_index = {verdict.pair_index: verdict for verdict in verdicts.matches}
        response = VerificationResponse()
        for idx, pair in enumerate(pairs, start=1):
            verdict = by_index.get(idx)
            # Pairs the model skipped are treated as non-matches.
            if verdict is None or not verdict.is_same_merchant:
                response.non_matches.append(pair.pair_id)
                continue
            response.matches.append(
                VerificationMatch(
                    candidate_id=pair.candidate.id,
                    new_transaction_ref=pair.incoming.aggregator_transaction_id,
                    confidence=CONFIDENCE_SCORES[verdict.confidence],
                )
            )
        return response
