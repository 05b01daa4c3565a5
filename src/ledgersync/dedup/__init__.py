from ledgersync.dedup.decisions import Decisions, merge_decisions
from ledgersync.dedup.entities import (
    DuplicateMatch,
    ExistingTransaction,
    IncomingTransaction,
    Tier1Result,
    UncertainPair,
)
from ledgersync.dedup.merchant import extract_merchant_name, extract_pattern
from ledgersync.dedup.tier1 import Tier1Matcher, match_window

__all__ = [
    "Decisions",
    "DuplicateMatch",
    "ExistingTransaction",
    "IncomingTransaction",
    "Tier1Matcher",
    "Tier1Result",
    "UncertainPair",
    "extract_merchant_name",
    "extract_pattern",
    "match_window",
    "merge_decisions",
]
