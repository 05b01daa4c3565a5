from __future__ import annotations

from collections.abc import Sequence

from ledgersync.adapters.db.models import CategorizationRule
from ledgersync.dedup.entities import IncomingTransaction


def categorize_with_rules(
    txn: IncomingTransaction,
    rules: Sequence[CategorizationRule],
) -> int | None:
    """Category of the first rule whose pattern occurs in the transaction.

    ``rules`` must already be in scan order; the merchant name is tried
    before the raw description.
    """
    haystacks = [
        text.upper()
        for text in (txn.merchant_name, txn.description)
        if text
    ]
    for rule in rules:
        pattern = rule.pattern.upper()
        if any(pattern in haystack for haystack in haystacks):
            return rule.category_id
    return None
