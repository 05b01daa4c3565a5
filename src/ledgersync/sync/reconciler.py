"""Apply one page's decisions to the ledger and advance the cursor.

Row writes are committed individually. The cursor is written last, so a
crash mid-page re-fetches the same page; already-linked ids are filtered at
ingestion and blocked by the unique constraint.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence

import loguru
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError

from ledgersync.adapters.db.facade import DB, LedgerWriteError
from ledgersync.adapters.db.models import AggregatorFields, CategorizationRule
from ledgersync.dedup.decisions import Decisions
from ledgersync.dedup.entities import DuplicateMatch, IncomingTransaction
from ledgersync.infra.clients.plaid import DeltaPage, RawTransaction
from ledgersync.sync.categorization import categorize_with_rules
from ledgersync.sync.cursor_store import CursorStore
from ledgersync.sync.ingest import to_incoming
from ledgersync.sync.types import SyncResult

TRANSFER_CATEGORY_TYPE = "transfer"


def aggregator_fields(txn: IncomingTransaction) -> AggregatorFields:
    return AggregatorFields(
        aggregator_transaction_id=txn.aggregator_transaction_id,
        description=txn.description,
        amount_cents=txn.amount_cents,
        date=txn.preferred_date,
        authorized_date=txn.authorized_date,
        posted_date=txn.posted_date,
        merchant_name=txn.merchant_name,
        aggregator_name=txn.aggregator_name,
    )


class ReconcilerLogger:
    """Handles all logging for Reconciler with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def upgraded(self, match: DuplicateMatch) -> None:
        self._logger.bind(
            ledger_id=match.matched_with.id,
            aggregator_id=match.incoming.aggregator_transaction_id,
            tier=match.match_tier,
        ).debug(
            "Linked {} to ledger row {} ({} match, confidence {:.2f})",
            match.incoming.aggregator_transaction_id,
            match.matched_with.id,
            match.match_tier,
            match.confidence,
        )

    def upgrade_fallback(self, match: DuplicateMatch) -> None:
        self._logger.bind(ledger_id=match.matched_with.id).info(
            "Ledger row {} is no longer linkable, inserting {} instead",
            match.matched_with.id,
            match.incoming.aggregator_transaction_id,
        )

    def row_failed(self, action: str, ref: str, error: Exception) -> None:
        self._logger.bind(action=action, ref=ref).warning(
            "Failed to {} {}: {}", action, ref, error
        )

    def cursor_advanced(self, connection_id: str, cursor: str) -> None:
        self._logger.bind(connection_id=connection_id).debug(
            "Cursor for {} advanced to {}", connection_id, cursor
        )

    def page_complete(self, result: SyncResult) -> None:
        self._logger.bind(
            connection_id=result.connection_id,
            added=result.added,
            modified=result.modified,
            removed=result.removed,
            upgraded=result.upgraded,
            errors=len(result.errors),
        ).info(
            "Page reconciled: {} added, {} upgraded, {} modified, {} removed, "
            "{} errors",
            result.added,
            result.upgraded,
            result.modified,
            result.removed,
            len(result.errors),
        )


class Reconciler:
    """Writes one page of decisions and then the page's cursor."""

    def __init__(
        self,
        db: DB,
        *,
        cursor_store: CursorStore | None = None,
        reconciler_logger: ReconcilerLogger | None = None,
    ) -> None:
        self._db = db
        self._cursor_store = cursor_store or CursorStore(db)
        self._logger = reconciler_logger or ReconcilerLogger()

    def reconcile(
        self,
        connection_id: str,
        page: DeltaPage,
        decisions: Decisions,
        *,
        account_map: Mapping[str, str],
    ) -> SyncResult:
        """Apply upgrades, inserts, modifications and removals, then the cursor.

        Row-level write failures are collected into ``errors`` and skipped.
        Any other exception propagates and leaves the cursor untouched.
        """
        result = SyncResult.empty(connection_id)
        rules = self._db.list_rules()
        category_types = self._db.category_types()

        for match in decisions.upgrades:
            self._apply_upgrade(match, rules, category_types, result)
        for txn in decisions.inserts:
            self._apply_insert(txn, rules, category_types, result)
        for raw in page.modified:
            self._apply_modified(raw, account_map, result)
        for aggregator_id in page.removed:
            self._apply_removed(aggregator_id, result)

        self._cursor_store.set_cursor(connection_id, page.next_cursor)
        self._logger.cursor_advanced(connection_id, page.next_cursor)
        self._logger.page_complete(result)
        return result

    def _apply_upgrade(
        self,
        match: DuplicateMatch,
        rules: Sequence[CategorizationRule],
        category_types: Mapping[int, str],
        result: SyncResult,
    ) -> None:
        ref = match.incoming.aggregator_transaction_id
        try:
            linked = self._db.link_transaction(
                match.matched_with.id, aggregator_fields(match.incoming)
            )
        except (LedgerWriteError, SQLAlchemyError) as e:
            self._record_failure("link", ref, e, result)
            return
        if linked is None:
            self._logger.upgrade_fallback(match)
            self._apply_insert(match.incoming, rules, category_types, result)
            return
        result.upgraded += 1
        self._logger.upgraded(match)

    def _apply_insert(
        self,
        txn: IncomingTransaction,
        rules: Sequence[CategorizationRule],
        category_types: Mapping[int, str],
        result: SyncResult,
    ) -> None:
        category_id = categorize_with_rules(txn, rules)
        excluded = (
            category_id is not None
            and category_types.get(category_id) == TRANSFER_CATEGORY_TYPE
        )
        try:
            self._db.insert_transaction(
                account_id=txn.account_id,
                description=txn.description,
                amount_cents=txn.amount_cents,
                date=txn.preferred_date,
                category_id=category_id,
                excluded=excluded,
                is_confirmed=False,
                aggregator=aggregator_fields(txn),
            )
        except (LedgerWriteError, SQLAlchemyError) as e:
            self._record_failure("insert", txn.aggregator_transaction_id, e, result)
            return
        result.added += 1

    def _apply_modified(
        self,
        raw: RawTransaction,
        account_map: Mapping[str, str],
        result: SyncResult,
    ) -> None:
        try:
            txn = to_incoming(raw, account_map.get(raw.account_id, raw.account_id))
            updated = self._db.update_by_aggregator_id(aggregator_fields(txn))
        except ValueError as e:
            result.errors.append(str(e))
            return
        except (LedgerWriteError, SQLAlchemyError) as e:
            self._record_failure("update", raw.transaction_id, e, result)
            return
        if updated:
            result.modified += 1

    def _apply_removed(self, aggregator_id: str, result: SyncResult) -> None:
        try:
            deleted = self._db.delete_by_aggregator_id(aggregator_id)
        except SQLAlchemyError as e:
            self._record_failure("remove", aggregator_id, e, result)
            return
        if deleted:
            result.removed += 1

    def _record_failure(
        self, action: str, ref: str, error: Exception, result: SyncResult
    ) -> None:
        self._logger.row_failed(action, ref, error)
        result.errors.append(f"Failed to {action} {ref}: {error}")
