"""Drives a sync for one bank connection from fetch to commit.

Per connection the stages run ``idle -> fetching -> processing ->
deduplicating -> saving -> idle``, one delta page at a time while the
aggregator reports ``has_more``. A second request for a connection that is
already syncing returns an empty result immediately.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
import time
from typing import Protocol

import loguru
from loguru import logger

from ledgersync.adapters.db.facade import DB
from ledgersync.adapters.db.models import SyncConnection
from ledgersync.core.config import SyncConfig
from ledgersync.dedup.decisions import merge_decisions
from ledgersync.dedup.entities import DuplicateMatch, ExistingTransaction
from ledgersync.dedup.tier1 import Tier1Matcher, match_window
from ledgersync.dedup.tier2 import Tier2Verifier
from ledgersync.infra.clients.plaid import (
    PRODUCT_NOT_READY,
    DeltaPage,
    PlaidClientError,
)
from ledgersync.sync.cursor_store import CursorStore
from ledgersync.sync.guard import DEFAULT_GUARD, SyncGuard
from ledgersync.sync.ingest import filter_incoming
from ledgersync.sync.reconciler import Reconciler
from ledgersync.sync.types import SyncProgress, SyncResult, SyncStage

ProgressCallback = Callable[[SyncProgress], None]


def stale_connections(
    db: DB, config: SyncConfig, now: datetime | None = None
) -> list[SyncConnection]:
    """Connections never synced or not synced within ``stale_after_minutes``."""
    current = now or datetime.now()
    stale_before = current - timedelta(minutes=config.stale_after_minutes)
    return db.connections_needing_sync(stale_before)


def is_enriched(page: DeltaPage) -> bool:
    """Whether the first settled transaction on a page carries its authorized date.

    A freshly linked item can answer before the aggregator has finished
    enriching history; those early pages lack ``authorized_date``. A page
    with no settled transactions counts as ready.
    """
    for raw in page.added:
        if not raw.pending:
            return raw.authorized_date is not None
    return True


class TransactionFeed(Protocol):
    """Aggregator endpoint delivering transaction deltas after a cursor."""

    def sync_transactions(
        self,
        access_token: str,
        *,
        cursor: str | None = None,
        count: int = 500,
        timeout: float | None = None,
    ) -> DeltaPage:
        ...


class SyncCoordinatorLogger:
    """Handles all logging for SyncCoordinator with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def sync_start(self, connection_id: str, cursor: str | None) -> None:
        cursor_label = cursor or "initial"
        self._logger.bind(connection_id=connection_id, cursor=cursor_label).info(
            "Starting sync for {} (cursor: {})", connection_id, cursor_label
        )

    def coalesced(self, connection_id: str) -> None:
        self._logger.bind(connection_id=connection_id).info(
            "Sync already in progress for {}, skipping", connection_id
        )

    def page_fetched(self, connection_id: str, page: DeltaPage, page_num: int) -> None:
        self._logger.bind(
            connection_id=connection_id,
            added=len(page.added),
            modified=len(page.modified),
            removed=len(page.removed),
            page=page_num,
        ).info(
            "Fetched page {}: {} added, {} modified, {} removed",
            page_num,
            len(page.added),
            len(page.modified),
            len(page.removed),
        )

    def waiting_for_readiness(
        self, connection_id: str, reason: str, attempt: int, attempts: int, delay: float
    ) -> None:
        self._logger.bind(
            connection_id=connection_id, attempt=attempt, delay=delay
        ).info(
            "Initial data for {} not ready ({}), retrying in {}s (attempt {}/{})",
            connection_id,
            reason,
            delay,
            attempt,
            attempts,
        )

    def mutation_retry(self, attempt: int, max_retries: int) -> None:
        self._logger.bind(attempt=attempt, max_retries=max_retries).warning(
            "Mutation detected, restarting from last committed cursor (attempt {}/{})",
            attempt,
            max_retries,
        )

    def fetch_failed(self, connection_id: str, error: PlaidClientError) -> None:
        self._logger.bind(
            connection_id=connection_id, error_code=error.error_code
        ).warning("Fetch failed for {}: {}", connection_id, error)

    def reauth_required(self, connection_id: str) -> None:
        self._logger.bind(connection_id=connection_id).warning(
            "Connection {} requires re-authentication", connection_id
        )

    def reconcile_failed(self, connection_id: str) -> None:
        self._logger.bind(connection_id=connection_id).exception(
            "Reconciliation failed for {}; cursor left unchanged", connection_id
        )

    def verifier_unavailable(self, pair_count: int) -> None:
        self._logger.bind(pairs=pair_count).info(
            "No verification service configured; {} uncertain pairs become inserts",
            pair_count,
        )

    def history_reset(self, connection_id: str) -> None:
        self._logger.bind(connection_id=connection_id).info(
            "Cursor reset for {}; replaying full history", connection_id
        )

    def sync_failed(self, connection_id: str) -> None:
        self._logger.bind(connection_id=connection_id).exception(
            "Sync failed for {}", connection_id
        )

    def sync_complete(self, result: SyncResult) -> None:
        self._logger.bind(**result.to_dict()).info(
            "Sync complete for {}: {} added, {} upgraded, {} modified, {} removed, "
            "{} errors",
            result.connection_id,
            result.added,
            result.upgraded,
            result.modified,
            result.removed,
            len(result.errors),
        )


class SyncCoordinator:
    """Runs fetch, dedup and reconcile for bank connections."""

    def __init__(
        self,
        db: DB,
        feed: TransactionFeed,
        *,
        verifier: Tier2Verifier | None = None,
        config: SyncConfig | None = None,
        guard: SyncGuard = DEFAULT_GUARD,
        matcher: Tier1Matcher | None = None,
        reconciler: Reconciler | None = None,
        coordinator_logger: SyncCoordinatorLogger | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._db = db
        self._feed = feed
        self._verifier = verifier
        self._config = config or SyncConfig()
        self._guard = guard
        self._matcher = matcher or Tier1Matcher.from_config(self._config)
        self._cursor_store = CursorStore(db)
        self._reconciler = reconciler or Reconciler(
            db, cursor_store=self._cursor_store
        )
        self._logger = coordinator_logger or SyncCoordinatorLogger()
        self._sleep = sleep

    def sync(
        self,
        connection_id: str,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> SyncResult:
        """Sync one connection until the aggregator has no more pages.

        Raises:
            ValueError: ``connection_id`` is empty or unknown.
        """
        return self._guarded_sync(connection_id, on_progress, reset_cursor=False)

    def refresh_history(
        self,
        connection_id: str,
        *,
        on_progress: ProgressCallback | None = None,
    ) -> SyncResult:
        """Reset the connection's cursor and sync from the start of the feed."""
        return self._guarded_sync(connection_id, on_progress, reset_cursor=True)

    def sync_all(
        self, *, on_progress: ProgressCallback | None = None
    ) -> list[SyncResult]:
        """Sync every connection in turn; one failure does not stop the rest."""
        results: list[SyncResult] = []
        for conn in self._db.list_connections():
            try:
                results.append(self.sync(conn.connection_id, on_progress=on_progress))
            except Exception as e:
                self._logger.sync_failed(conn.connection_id)
                failed = SyncResult.empty(conn.connection_id)
                failed.errors.append(f"Sync failed: {e}")
                results.append(failed)
        return results

    def connections_needing_sync(
        self, now: datetime | None = None
    ) -> list[SyncConnection]:
        """Connections never synced or not synced within ``stale_after_minutes``."""
        return stale_connections(self._db, self._config, now)

    def _guarded_sync(
        self,
        connection_id: str,
        on_progress: ProgressCallback | None,
        *,
        reset_cursor: bool,
    ) -> SyncResult:
        if not connection_id:
            raise ValueError("connection_id must not be empty")
        conn = self._db.get_connection(connection_id)
        if conn is None:
            raise ValueError(f"Unknown connection: {connection_id}")

        if not self._guard.try_acquire(connection_id):
            self._logger.coalesced(connection_id)
            return SyncResult.empty(connection_id)

        try:
            if reset_cursor:
                self._cursor_store.reset_cursor(connection_id)
                self._logger.history_reset(connection_id)
            result = self._run(conn, on_progress)
        finally:
            self._guard.release(connection_id)
            self._emit(on_progress, connection_id, SyncStage.IDLE)

        self._logger.sync_complete(result)
        return result

    def _run(
        self,
        conn: SyncConnection,
        on_progress: ProgressCallback | None,
    ) -> SyncResult:
        connection_id = conn.connection_id
        result = SyncResult.empty(connection_id)
        cursor = self._cursor_store.get_cursor(connection_id)
        self._logger.sync_start(connection_id, cursor)

        retries = 0
        page_num = 0
        while True:
            self._emit(on_progress, connection_id, SyncStage.FETCHING)
            try:
                if cursor is None and page_num == 0:
                    page = self._fetch_when_ready(conn)
                else:
                    page = self._fetch_page(conn, cursor)
            except PlaidClientError as e:
                if (
                    e.is_mutation_during_pagination
                    and retries < self._config.max_mutation_retries
                ):
                    retries += 1
                    self._logger.mutation_retry(
                        retries, self._config.max_mutation_retries
                    )
                    cursor = self._cursor_store.get_cursor(connection_id)
                    continue
                self._logger.fetch_failed(connection_id, e)
                if e.requires_reauth:
                    self._logger.reauth_required(connection_id)
                    result.requires_reauth = True
                result.errors.append(str(e))
                return result

            page_num += 1
            self._logger.page_fetched(connection_id, page, page_num)
            try:
                page_result = self._process_page(connection_id, page, on_progress)
            except Exception as e:
                self._logger.reconcile_failed(connection_id)
                result.errors.append(f"Reconciliation failed: {e}")
                return result

            result.absorb(page_result)
            cursor = page.next_cursor
            if not page.has_more:
                break

        self._db.persist()
        return result

    def _fetch_page(self, conn: SyncConnection, cursor: str | None) -> DeltaPage:
        return self._feed.sync_transactions(
            conn.access_token,
            cursor=cursor,
            count=self._config.page_size,
            timeout=self._config.aggregator_timeout_seconds,
        )

    def _fetch_when_ready(self, conn: SyncConnection) -> DeltaPage:
        """Fetch the first page of a new connection once its history is ready.

        Backs off exponentially while the aggregator answers
        ``PRODUCT_NOT_READY`` or serves settled transactions without
        authorized dates. The final attempt is returned or raised as-is.
        """
        attempts = self._config.readiness_max_attempts
        for attempt in range(1, attempts):
            try:
                page = self._fetch_page(conn, None)
            except PlaidClientError as e:
                if not e.is_product_not_ready:
                    raise
                reason = PRODUCT_NOT_READY
            else:
                if is_enriched(page):
                    return page
                reason = "missing authorized dates"
            delay = self._config.readiness_base_delay_seconds * 2 ** (attempt - 1)
            self._logger.waiting_for_readiness(
                conn.connection_id, reason, attempt, attempts, delay
            )
            self._sleep(delay)
        return self._fetch_page(conn, None)

    def _process_page(
        self,
        connection_id: str,
        page: DeltaPage,
        on_progress: ProgressCallback | None,
    ) -> SyncResult:
        self._emit(
            on_progress, connection_id, SyncStage.PROCESSING, total=len(page.added)
        )
        account_map = self._db.account_map()
        linked = self._db.linked_aggregator_ids(
            raw.transaction_id for raw in page.added
        )
        ingested = filter_incoming(
            page.added, account_map=account_map, linked_ids=linked
        )
        incoming = ingested.incoming

        self._emit(
            on_progress, connection_id, SyncStage.DEDUPLICATING, total=len(incoming)
        )
        existing: list[ExistingTransaction] = []
        window = match_window(incoming, self._config.window_padding_days)
        if window is not None:
            start, end = window
            rows = self._db.list_unlinked_in_window(
                account_ids={txn.account_id for txn in incoming},
                start=start,
                end=end,
            )
            existing = [ExistingTransaction.from_row(row) for row in rows]

        tier1 = self._matcher.match(incoming, existing)
        verified: list[DuplicateMatch] = []
        if tier1.uncertain:
            if self._verifier is None:
                self._logger.verifier_unavailable(len(tier1.uncertain))
            else:
                verified = self._verifier.verify(tier1.uncertain).matches
        decisions = merge_decisions(tier1, verified)

        self._emit(
            on_progress,
            connection_id,
            SyncStage.SAVING,
            total=len(decisions.upgrades) + len(decisions.inserts),
        )
        page_result = self._reconciler.reconcile(
            connection_id, page, decisions, account_map=account_map
        )
        page_result.errors[:0] = ingested.errors
        return page_result

    def _emit(
        self,
        on_progress: ProgressCallback | None,
        connection_id: str,
        stage: SyncStage,
        *,
        progress: int = 0,
        total: int = 0,
    ) -> None:
        if on_progress is None:
            return
        on_progress(
            SyncProgress(
                connection_id=connection_id,
                stage=stage,
                progress=progress,
                total=total,
            )
        )
