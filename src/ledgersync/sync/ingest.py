"""Ingestion boundary: aggregator payloads to ledger conventions.

The aggregator reports money leaving an account as a positive amount; the
ledger stores expenses as negative integer cents. That sign flip happens in
``to_ledger_amount_cents`` and nowhere else.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

import loguru
from loguru import logger

from ledgersync.dedup.entities import IncomingTransaction
from ledgersync.infra.clients.plaid import RawTransaction

UNKNOWN_DESCRIPTION = "Unknown"


def to_ledger_amount_cents(aggregator_amount: float) -> int:
    """Convert an aggregator amount (positive = outflow) to signed ledger cents."""
    cents = (Decimal(str(aggregator_amount)) * 100).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return -int(cents)


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    return date.fromisoformat(value)


def to_incoming(raw: RawTransaction, account_id: str) -> IncomingTransaction:
    """Build an IncomingTransaction for the local ``account_id``."""
    description = (
        raw.original_description or raw.name or raw.merchant_name or UNKNOWN_DESCRIPTION
    )
    posted = _parse_date(raw.date)
    if posted is None:
        raise ValueError(f"Transaction {raw.transaction_id} has no date")
    return IncomingTransaction(
        aggregator_transaction_id=raw.transaction_id,
        account_id=account_id,
        description=description,
        amount_cents=to_ledger_amount_cents(raw.amount),
        posted_date=posted,
        authorized_date=_parse_date(raw.authorized_date),
        merchant_name=raw.merchant_name,
        aggregator_name=raw.name,
    )


@dataclass
class IngestResult:
    incoming: list[IncomingTransaction] = field(default_factory=list)
    skipped_pending: int = 0
    skipped_unknown_account: int = 0
    skipped_linked: int = 0
    skipped_in_page_duplicate: int = 0
    errors: list[str] = field(default_factory=list)


class IngestLogger:
    """Handles all logging for ingestion with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def unknown_account(self, transaction_id: str, account_id: str) -> None:
        self._logger.bind(transaction_id=transaction_id, account_id=account_id).debug(
            "Skipping {}: account {} is not linked locally",
            transaction_id,
            account_id,
        )

    def already_linked(self, transaction_id: str) -> None:
        self._logger.bind(transaction_id=transaction_id).debug(
            "Skipping {}: already linked to a ledger row", transaction_id
        )

    def summary(self, result: IngestResult) -> None:
        self._logger.bind(
            incoming=len(result.incoming),
            pending=result.skipped_pending,
            unknown_account=result.skipped_unknown_account,
            linked=result.skipped_linked,
            duplicates=result.skipped_in_page_duplicate,
        ).info(
            "Ingested {} new transactions (skipped {} pending, "
            "{} unknown account, {} already linked, {} repeated)",
            len(result.incoming),
            result.skipped_pending,
            result.skipped_unknown_account,
            result.skipped_linked,
            result.skipped_in_page_duplicate,
        )


def filter_incoming(
    raw_added: Iterable[RawTransaction],
    *,
    account_map: Mapping[str, str],
    linked_ids: set[str],
    ingest_logger: IngestLogger | None = None,
) -> IngestResult:
    """Select the added transactions that still need matching.

    Drops pending transactions, transactions for accounts not linked
    locally, ids already linked to a ledger row and repeats of an id within
    the page.
    """
    log = ingest_logger or IngestLogger()
    result = IngestResult()
    seen: set[str] = set()
    for raw in raw_added:
        if raw.pending:
            result.skipped_pending += 1
            continue
        account_id = account_map.get(raw.account_id)
        if account_id is None:
            result.skipped_unknown_account += 1
            log.unknown_account(raw.transaction_id, raw.account_id)
            continue
        if raw.transaction_id in linked_ids:
            result.skipped_linked += 1
            log.already_linked(raw.transaction_id)
            continue
        if raw.transaction_id in seen:
            result.skipped_in_page_duplicate += 1
            continue
        try:
            incoming = to_incoming(raw, account_id)
        except ValueError as e:
            result.errors.append(str(e))
            continue
        seen.add(raw.transaction_id)
        result.incoming.append(incoming)
    log.summary(result)
    return result
