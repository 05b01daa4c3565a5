"""End-to-end tests for SyncCoordinator against a real SQLite ledger."""

from __future__ import annotations

from collections.abc import Mapping
from datetime import date, datetime, timedelta
from pathlib import Path
import http.client
import threading

import pytest

from ledgersync.adapters.db.facade import DB
from ledgersync.core.config import SyncConfig
from ledgersync.dedup.decisions import Decisions
from ledgersync.dedup.tier2 import Tier2Verifier
from ledgersync.infra.clients.plaid import DeltaPage, PlaidClient, PlaidClientError
from ledgersync.sync.coordinator import SyncCoordinator
from ledgersync.sync.cursor_store import CursorStore
from ledgersync.sync.guard import SyncGuard
from ledgersync.sync.reconciler import Reconciler
from ledgersync.sync.types import SyncProgress, SyncResult, SyncStage
from tests.factories import (
    BlockingFeed,
    FakeFeed,
    FakeVerificationService,
    create_db,
    make_raw,
)

MUTATION = "TRANSACTIONS_SYNC_MUTATION_DURING_PAGINATION"
NOT_READY = "PRODUCT_NOT_READY"


def setup_ledger(tmp_path: Path) -> tuple[DB, str]:
    db = create_db(tmp_path)
    db.save_connection(connection_id="item-1", access_token="token-1")
    account = db.create_account(
        name="Checking", connection_id="item-1", aggregator_account_id="plaid-acct-1"
    )
    return db, account.account_id


def add_manual_row(
    db: DB,
    account_id: str,
    *,
    description: str = "STARBUCKS STORE 1234",
    amount_cents: int = -575,
    on: date = date(2024, 3, 10),
) -> str:
    row = db.insert_transaction(
        account_id=account_id,
        description=description,
        amount_cents=amount_cents,
        date=on,
    )
    return row.id


class FailingReconciler(Reconciler):
    def reconcile(self, *args: object, **kwargs: object) -> SyncResult:
        raise RuntimeError("disk full")


class BrokenCursorStore(CursorStore):
    def set_cursor(self, *args: object, **kwargs: object) -> None:
        raise RuntimeError("cursor write failed")


class ExplodingFeed(FakeFeed):
    """Raises an unexpected error for one access token."""

    def __init__(self, bad_token: str) -> None:
        super().__init__([])
        self._bad_token = bad_token

    def sync_transactions(
        self,
        access_token: str,
        *,
        cursor: str | None = None,
        count: int = 500,
        timeout: float | None = None,
    ) -> DeltaPage:
        if access_token == self._bad_token:
            raise RuntimeError("connection reset")
        return super().sync_transactions(
            access_token, cursor=cursor, count=count, timeout=timeout
        )


class TestSyncUpgrades:
    def test_manual_entry_is_upgraded_not_duplicated(self, tmp_path: Path) -> None:
        # Input
        db, account_id = setup_ledger(tmp_path)
        category = db.create_category(key="coffee", name="Coffee")
        row_id = add_manual_row(db, account_id)
        db.confirm_category(row_id, category.category_id)
        feed = FakeFeed([DeltaPage(added=[make_raw()], next_cursor="c-1")])
        coordinator = SyncCoordinator(db, feed, guard=SyncGuard())

        # Act
        result = coordinator.sync("item-1")

        # Assert
        assert result.upgraded == 1
        assert result.added == 0
        assert result.ok
        rows = db.list_transactions()
        assert len(rows) == 1
        assert rows[0].id == row_id
        assert rows[0].aggregator_transaction_id == "plaid-1"
        assert rows[0].category_id == category.category_id
        assert rows[0].is_confirmed is True
        assert db.get_cursor("item-1") == "c-1"

    def test_redelivered_transaction_is_not_added_twice(self, tmp_path: Path) -> None:
        # Input
        db, _ = setup_ledger(tmp_path)
        page = DeltaPage(added=[make_raw()], next_cursor="c-1")
        coordinator = SyncCoordinator(db, FakeFeed([page, page]), guard=SyncGuard())

        # Act
        first = coordinator.sync("item-1")
        second = coordinator.sync("item-1")

        # Assert
        assert first.added == 1
        assert second.added == 0
        assert second.upgraded == 0
        assert len(db.list_transactions()) == 1

    def test_new_transaction_is_inserted(self, tmp_path: Path) -> None:
        # Input
        db, account_id = setup_ledger(tmp_path)
        add_manual_row(db, account_id, description="Corner Deli", amount_cents=-1299)
        feed = FakeFeed(
            [DeltaPage(added=[make_raw(name="Blue Bottle", merchant_name=None)])]
        )

        # Act
        result = SyncCoordinator(db, feed, guard=SyncGuard()).sync("item-1")

        # Assert
        assert result.added == 1
        assert result.upgraded == 0
        assert len(db.list_transactions()) == 2

    def test_pending_and_unknown_accounts_are_skipped(self, tmp_path: Path) -> None:
        # Input
        db, _ = setup_ledger(tmp_path)
        feed = FakeFeed(
            [
                DeltaPage(
                    added=[
                        make_raw(transaction_id="plaid-1", pending=True),
                        make_raw(transaction_id="plaid-2", account_id="elsewhere"),
                    ],
                    next_cursor="c-1",
                )
            ]
        )

        # Act
        result = SyncCoordinator(db, feed, guard=SyncGuard()).sync("item-1")

        # Assert
        assert result.added == 0
        assert db.list_transactions() == []
        assert db.get_cursor("item-1") == "c-1"


class TestSyncVerification:
    def _uncertain_setup(
        self, tmp_path: Path, count: int
    ) -> tuple[DB, list[DeltaPage]]:
        db, account_id = setup_ledger(tmp_path)
        raws = []
        for idx in range(count):
            add_manual_row(
                db,
                account_id,
                description="TST* ROCKWOOD GAINESVILLE",
                amount_cents=-(1000 + idx),
            )
            raws.append(
                make_raw(
                    transaction_id=f"plaid-{idx}",
                    name="Rockwood Bistro",
                    merchant_name=None,
                    amount=(1000 + idx) / 100,
                )
            )
        return db, [DeltaPage(added=raws, next_cursor="c-1")]

    def test_uncertain_pairs_are_verified_in_batches(self, tmp_path: Path) -> None:
        # Input
        db, pages = self._uncertain_setup(tmp_path, 150)
        service = FakeVerificationService()
        verifier = Tier2Verifier(service, batch_limit=100)
        coordinator = SyncCoordinator(
            db, FakeFeed(pages), verifier=verifier, guard=SyncGuard()
        )

        # Act
        result = coordinator.sync("item-1")

        # Assert
        assert service.batch_sizes == [100, 50]
        assert result.added == 150
        assert result.upgraded == 0

    def test_verified_match_upgrades(self, tmp_path: Path) -> None:
        # Input
        db, pages = self._uncertain_setup(tmp_path, 1)
        row = db.list_transactions()[0]
        service = FakeVerificationService(match_pair_ids={f"plaid-0:{row.id}"})
        coordinator = SyncCoordinator(
            db, FakeFeed(pages), verifier=Tier2Verifier(service), guard=SyncGuard()
        )

        # Act
        result = coordinator.sync("item-1")

        # Assert
        assert result.upgraded == 1
        assert result.added == 0
        linked = db.get_transaction(row.id)
        assert linked is not None
        assert linked.aggregator_transaction_id == "plaid-0"

    def test_without_verifier_uncertain_becomes_insert(self, tmp_path: Path) -> None:
        # Input
        db, pages = self._uncertain_setup(tmp_path, 1)

        # Act
        result = SyncCoordinator(db, FakeFeed(pages), guard=SyncGuard()).sync("item-1")

        # Assert
        assert result.added == 1
        assert result.upgraded == 0


class TestSyncPagination:
    def test_follows_has_more(self, tmp_path: Path) -> None:
        # Input
        db, _ = setup_ledger(tmp_path)
        feed = FakeFeed(
            [
                DeltaPage(
                    added=[make_raw(transaction_id="plaid-1")],
                    next_cursor="c-1",
                    has_more=True,
                ),
                DeltaPage(
                    added=[make_raw(transaction_id="plaid-2", name="Blue Bottle")],
                    next_cursor="c-2",
                ),
            ]
        )

        # Act
        result = SyncCoordinator(db, feed, guard=SyncGuard()).sync("item-1")

        # Assert
        assert feed.calls == [None, "c-1"]
        assert result.added == 2
        assert db.get_cursor("item-1") == "c-2"

    def test_mutation_restarts_from_committed_cursor(self, tmp_path: Path) -> None:
        # Input
        db, _ = setup_ledger(tmp_path)
        feed = FakeFeed(
            [
                DeltaPage(
                    added=[make_raw(transaction_id="plaid-1")],
                    next_cursor="c-1",
                    has_more=True,
                ),
                PlaidClientError("mutated", error_code=MUTATION),
                DeltaPage(next_cursor="c-2"),
            ]
        )

        # Act
        result = SyncCoordinator(db, feed, guard=SyncGuard()).sync("item-1")

        # Assert
        assert feed.calls == [None, "c-1", "c-1"]
        assert result.ok
        assert db.get_cursor("item-1") == "c-2"

    def test_mutation_retries_are_bounded(self, tmp_path: Path) -> None:
        # Input
        db, _ = setup_ledger(tmp_path)
        errors = [PlaidClientError("mutated", error_code=MUTATION) for _ in range(4)]
        feed = FakeFeed(errors)
        config = SyncConfig(max_mutation_retries=3)

        # Act
        result = SyncCoordinator(db, feed, config=config, guard=SyncGuard()).sync(
            "item-1"
        )

        # Assert
        assert len(feed.calls) == 4
        assert result.errors == ["mutated"]
        assert db.get_cursor("item-1") is None


class TestSyncReadiness:
    def test_waits_for_enriched_first_page(self, tmp_path: Path) -> None:
        # Input
        db, _ = setup_ledger(tmp_path)
        feed = FakeFeed(
            [
                DeltaPage(added=[make_raw(authorized_date=None)], next_cursor="c-1"),
                DeltaPage(added=[make_raw()], next_cursor="c-1"),
            ]
        )
        delays: list[float] = []

        # Act
        result = SyncCoordinator(
            db, feed, guard=SyncGuard(), sleep=delays.append
        ).sync("item-1")

        # Assert
        assert feed.calls == [None, None]
        assert delays == [2.0]
        assert result.added == 1
        assert db.list_transactions()[0].aggregator_authorized_date == date(2024, 3, 10)

    def test_product_not_ready_backs_off(self, tmp_path: Path) -> None:
        # Input
        db, _ = setup_ledger(tmp_path)
        feed = FakeFeed(
            [
                PlaidClientError("not ready", error_code=NOT_READY),
                PlaidClientError("not ready", error_code=NOT_READY),
                DeltaPage(added=[make_raw()], next_cursor="c-1"),
            ]
        )
        delays: list[float] = []

        # Act
        result = SyncCoordinator(
            db, feed, guard=SyncGuard(), sleep=delays.append
        ).sync("item-1")

        # Assert
        assert feed.calls == [None, None, None]
        assert delays == [2.0, 4.0]
        assert result.ok
        assert db.get_cursor("item-1") == "c-1"

    def test_unenriched_pages_are_processed_after_last_attempt(
        self, tmp_path: Path
    ) -> None:
        # Input
        db, _ = setup_ledger(tmp_path)
        pages = [
            DeltaPage(added=[make_raw(authorized_date=None)], next_cursor="c-1")
            for _ in range(3)
        ]
        feed = FakeFeed(pages)
        config = SyncConfig(readiness_max_attempts=3, readiness_base_delay_seconds=1.0)
        delays: list[float] = []

        # Act
        result = SyncCoordinator(
            db, feed, config=config, guard=SyncGuard(), sleep=delays.append
        ).sync("item-1")

        # Assert
        assert len(feed.calls) == 3
        assert delays == [1.0, 2.0]
        assert result.added == 1

    def test_product_never_ready_is_reported(self, tmp_path: Path) -> None:
        # Input
        db, _ = setup_ledger(tmp_path)
        errors = [PlaidClientError("not ready", error_code=NOT_READY) for _ in range(2)]
        config = SyncConfig(readiness_max_attempts=2)
        delays: list[float] = []

        # Act
        result = SyncCoordinator(
            db, FakeFeed(errors), config=config, guard=SyncGuard(), sleep=delays.append
        ).sync("item-1")

        # Assert
        assert result.errors == ["not ready"]
        assert delays == [2.0]
        assert db.get_cursor("item-1") is None

    def test_no_wait_once_cursor_exists(self, tmp_path: Path) -> None:
        # Input
        db, _ = setup_ledger(tmp_path)
        db.set_cursor("item-1", "c-0", datetime(2024, 3, 1))
        feed = FakeFeed(
            [DeltaPage(added=[make_raw(authorized_date=None)], next_cursor="c-1")]
        )
        delays: list[float] = []

        # Act
        result = SyncCoordinator(
            db, feed, guard=SyncGuard(), sleep=delays.append
        ).sync("item-1")

        # Assert
        assert feed.calls == ["c-0"]
        assert delays == []
        assert result.added == 1

    def test_empty_first_page_needs_no_wait(self, tmp_path: Path) -> None:
        # Input
        db, _ = setup_ledger(tmp_path)
        feed = FakeFeed([DeltaPage(next_cursor="c-1")])
        delays: list[float] = []

        # Act
        SyncCoordinator(db, feed, guard=SyncGuard(), sleep=delays.append).sync(
            "item-1"
        )

        # Assert
        assert feed.calls == [None]
        assert delays == []


class TestSyncFailures:
    def test_reauth_required(self, tmp_path: Path) -> None:
        # Input
        db, _ = setup_ledger(tmp_path)
        db.set_cursor("item-1", "c-0", datetime(2024, 3, 1))
        feed = FakeFeed(
            [PlaidClientError("login required", error_code="ITEM_LOGIN_REQUIRED")]
        )

        # Act
        result = SyncCoordinator(db, feed, guard=SyncGuard()).sync("item-1")

        # Assert
        assert result.requires_reauth is True
        assert result.ok is False
        assert db.get_cursor("item-1") == "c-0"

    def test_reconcile_failure_leaves_cursor(self, tmp_path: Path) -> None:
        # Input
        db, _ = setup_ledger(tmp_path)
        feed = FakeFeed([DeltaPage(added=[make_raw()], next_cursor="c-1")])
        coordinator = SyncCoordinator(
            db, feed, guard=SyncGuard(), reconciler=FailingReconciler(db)
        )

        # Act
        result = coordinator.sync("item-1")

        # Assert
        assert result.errors == ["Reconciliation failed: disk full"]
        assert db.get_cursor("item-1") is None
        assert db.list_transactions() == []

    def test_network_failure_is_recorded_and_releases_guard(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        # Input
        db, _ = setup_ledger(tmp_path)
        db.set_cursor("item-1", "c-0", datetime(2024, 3, 1))
        guard = SyncGuard()

        def disconnect(*args: object, **kwargs: object) -> object:
            raise http.client.RemoteDisconnected("Remote end closed connection")

        monkeypatch.setattr("urllib.request.urlopen", disconnect)
        feed = PlaidClient(client_id="client", secret="secret")

        # Act
        result = SyncCoordinator(db, feed, guard=guard).sync("item-1")

        # Assert
        assert result.errors
        assert "Connection error" in result.errors[0]
        assert db.get_cursor("item-1") == "c-0"
        assert guard.is_active("item-1") is False

    def test_cursor_failure_after_row_writes_leaves_cursor(
        self, tmp_path: Path
    ) -> None:
        # Input
        db, _ = setup_ledger(tmp_path)
        db.set_cursor("item-1", "c-0", datetime(2024, 3, 1))
        page = DeltaPage(added=[make_raw()], next_cursor="c-1")
        broken = Reconciler(db, cursor_store=BrokenCursorStore(db))

        # Act
        result = SyncCoordinator(
            db, FakeFeed([page]), guard=SyncGuard(), reconciler=broken
        ).sync("item-1")

        # Assert
        assert result.errors == ["Reconciliation failed: cursor write failed"]
        assert result.added == 0
        assert db.get_cursor("item-1") == "c-0"
        assert len(db.list_transactions()) == 1

        # Redelivery of the same page does not duplicate the committed row
        retry = SyncCoordinator(db, FakeFeed([page]), guard=SyncGuard()).sync(
            "item-1"
        )
        assert retry.added == 0
        assert len(db.list_transactions()) == 1
        assert db.get_cursor("item-1") == "c-1"

    @pytest.mark.parametrize("connection_id", ["", "missing"])
    def test_invalid_connection_raises(
        self, tmp_path: Path, connection_id: str
    ) -> None:
        db, _ = setup_ledger(tmp_path)
        coordinator = SyncCoordinator(db, FakeFeed([]), guard=SyncGuard())

        with pytest.raises(ValueError):
            coordinator.sync(connection_id)


class TestSyncCoalescing:
    def test_held_connection_returns_empty_result(self, tmp_path: Path) -> None:
        # Input
        db, _ = setup_ledger(tmp_path)
        guard = SyncGuard()
        guard.try_acquire("item-1")
        feed = FakeFeed([DeltaPage(added=[make_raw()], next_cursor="c-1")])

        # Act
        result = SyncCoordinator(db, feed, guard=guard).sync("item-1")

        # Assert
        assert result == SyncResult.empty("item-1")
        assert feed.calls == []

    def test_concurrent_sync_is_coalesced(self, tmp_path: Path) -> None:
        # Input
        db, _ = setup_ledger(tmp_path)
        feed = BlockingFeed([DeltaPage(added=[make_raw()], next_cursor="c-1")])
        coordinator = SyncCoordinator(db, feed, guard=SyncGuard())
        results: list[SyncResult] = []
        worker = threading.Thread(
            target=lambda: results.append(coordinator.sync("item-1"))
        )

        # Act
        worker.start()
        assert feed.entered.wait(timeout=5)
        second = coordinator.sync("item-1")
        feed.release.set()
        worker.join(timeout=10)

        # Assert
        assert second == SyncResult.empty("item-1")
        assert results[0].added == 1
        assert len(feed.calls) == 1


class TestSyncLifecycle:
    def test_progress_stages_in_order(self, tmp_path: Path) -> None:
        # Input
        db, _ = setup_ledger(tmp_path)
        feed = FakeFeed([DeltaPage(added=[make_raw()], next_cursor="c-1")])
        events: list[SyncProgress] = []

        # Act
        SyncCoordinator(db, feed, guard=SyncGuard()).sync(
            "item-1", on_progress=events.append
        )

        # Assert
        assert [event.stage for event in events] == [
            SyncStage.FETCHING,
            SyncStage.PROCESSING,
            SyncStage.DEDUPLICATING,
            SyncStage.SAVING,
            SyncStage.IDLE,
        ]

    def test_refresh_history_starts_from_beginning(self, tmp_path: Path) -> None:
        # Input
        db, _ = setup_ledger(tmp_path)
        db.set_cursor("item-1", "c-9", datetime(2024, 3, 1))
        feed = FakeFeed([DeltaPage(next_cursor="c-1")])

        # Act
        SyncCoordinator(db, feed, guard=SyncGuard()).refresh_history("item-1")

        # Assert
        assert feed.calls == [None]
        assert db.get_cursor("item-1") == "c-1"

    def test_sync_all_continues_past_failures(self, tmp_path: Path) -> None:
        # Input
        db, _ = setup_ledger(tmp_path)
        db.save_connection(connection_id="item-0", access_token="bad")
        coordinator = SyncCoordinator(db, ExplodingFeed("bad"), guard=SyncGuard())

        # Act
        results = coordinator.sync_all()

        # Assert
        assert [r.connection_id for r in results] == ["item-0", "item-1"]
        assert results[0].errors == ["Sync failed: connection reset"]
        assert results[1].ok

    def test_connections_needing_sync(self, tmp_path: Path) -> None:
        # Input
        db, _ = setup_ledger(tmp_path)
        now = datetime(2024, 3, 10, 12, 0)
        db.save_connection(connection_id="item-2", access_token="token-2")
        db.set_cursor("item-1", "c-1", now - timedelta(minutes=5))
        coordinator = SyncCoordinator(
            db, FakeFeed([]), config=SyncConfig(stale_after_minutes=60)
        )

        # Act
        due = coordinator.connections_needing_sync(now)

        # Assert
        assert [conn.connection_id for conn in due] == ["item-2"]


def test_decisions_are_passed_to_reconciler(tmp_path: Path) -> None:
    """The reconciler receives the merged decisions for each page."""
    # Input
    db, _ = setup_ledger(tmp_path)
    seen: list[Decisions] = []

    class RecordingReconciler(Reconciler):
        def reconcile(
            self,
            connection_id: str,
            page: DeltaPage,
            decisions: Decisions,
            *,
            account_map: Mapping[str, str],
        ) -> SyncResult:
            seen.append(decisions)
            return super().reconcile(
                connection_id, page, decisions, account_map=account_map
            )

    feed = FakeFeed([DeltaPage(added=[make_raw()], next_cursor="c-1")])

    # Act
    SyncCoordinator(
        db, feed, guard=SyncGuard(), reconciler=RecordingReconciler(db)
    ).sync("item-1")

    # Assert
    assert len(seen) == 1
    assert [t.aggregator_transaction_id for t in seen[0].inserts] == ["plaid-1"]
