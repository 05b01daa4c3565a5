from __future__ import annotations

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
import datetime as dt

from sqlalchemy import create_engine, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ledgersync.adapters.db.models import (
    Account,
    AggregatorFields,
    Base,
    CategorizationRule,
    Category,
    CategoryType,
    LedgerTransaction,
    SyncConnection,
)
from ledgersync.dedup.merchant import extract_pattern

MIN_RULE_PATTERN_LENGTH = 3


class LedgerWriteError(Exception):
    """A single ledger row could not be written."""


class DB:
    """Ledger store: ORM models plus the row-level operations sync needs."""

    def __init__(self, url: str) -> None:
        """Initialize database connection.

        Args:
            url: Database URL (e.g., "sqlite:///ledgersync.db")
        """
        self._url = url
        self._engine = create_engine(url, echo=False)
        self._session_factory = sessionmaker(bind=self._engine, class_=Session)

    @property
    def is_sqlite(self) -> bool:
        return self._engine.dialect.name == "sqlite"

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context manager for database sessions."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_schema(self) -> None:
        Base.metadata.create_all(self._engine)

    # Connections / cursor ------------------------------------------------

    def save_connection(
        self,
        *,
        connection_id: str,
        access_token: str,
        institution_name: str | None = None,
    ) -> SyncConnection:
        """Create or update a bank connection. The cursor is left untouched."""
        with self.session() as session:  # type: Session
            conn = session.get(SyncConnection, connection_id)
            if conn is None:
                conn = SyncConnection(
                    connection_id=connection_id,
                    access_token=access_token,
                    institution_name=institution_name,
                )
                session.add(conn)
            else:
                conn.access_token = access_token
                conn.institution_name = institution_name
            session.flush()
            session.refresh(conn)
            session.expunge(conn)
            return conn

    def get_connection(self, connection_id: str) -> SyncConnection | None:
        with self.session() as session:  # type: Session
            conn = session.get(SyncConnection, connection_id)
            if conn:
                session.expunge(conn)
            return conn

    def list_connections(self) -> list[SyncConnection]:
        with self.session() as session:  # type: Session
            conns = (
                session.query(SyncConnection)
                .order_by(SyncConnection.connection_id)
                .all()
            )
            for conn in conns:
                session.expunge(conn)
            return conns

    def connections_needing_sync(
        self, stale_before: dt.datetime
    ) -> list[SyncConnection]:
        """Connections never synced or last synced before ``stale_before``."""
        with self.session() as session:  # type: Session
            conns = (
                session.query(SyncConnection)
                .filter(
                    (SyncConnection.last_synced_at.is_(None))
                    | (SyncConnection.last_synced_at < stale_before)
                )
                .order_by(SyncConnection.connection_id)
                .all()
            )
            for conn in conns:
                session.expunge(conn)
            return conns

    def get_cursor(self, connection_id: str) -> str | None:
        with self.session() as session:  # type: Session
            conn = session.get(SyncConnection, connection_id)
            return conn.cursor if conn else None

    def set_cursor(
        self, connection_id: str, cursor: str, synced_at: dt.datetime
    ) -> None:
        with self.session() as session:  # type: Session
            conn = session.get(SyncConnection, connection_id)
            if conn is None:
                raise ValueError(f"Unknown connection: {connection_id}")
            conn.cursor = cursor
            conn.last_synced_at = synced_at

    def reset_cursor(self, connection_id: str) -> None:
        with self.session() as session:  # type: Session
            conn = session.get(SyncConnection, connection_id)
            if conn is None:
                raise ValueError(f"Unknown connection: {connection_id}")
            conn.cursor = None

    # Accounts / categories -----------------------------------------------

    def create_account(
        self,
        *,
        name: str,
        type: str = "checking",
        connection_id: str | None = None,
        aggregator_account_id: str | None = None,
        account_id: str | None = None,
    ) -> Account:
        with self.session() as session:  # type: Session
            account = Account(
                name=name,
                type=type,
                connection_id=connection_id,
                aggregator_account_id=aggregator_account_id,
            )
            if account_id is not None:
                account.account_id = account_id
            session.add(account)
            session.flush()
            session.refresh(account)
            session.expunge(account)
            return account

    def account_map(self) -> dict[str, str]:
        """Map of aggregator account id to local account id."""
        with self.session() as session:  # type: Session
            rows = (
                session.query(Account.aggregator_account_id, Account.account_id)
                .filter(Account.aggregator_account_id.is_not(None))
                .all()
            )
            return {agg_id: account_id for agg_id, account_id in rows}

    def create_category(
        self, *, key: str, name: str, type: CategoryType = "expense"
    ) -> Category:
        with self.session() as session:  # type: Session
            category = Category(key=key, name=name, type=type)
            session.add(category)
            session.flush()
            session.refresh(category)
            session.expunge(category)
            return category

    def category_types(self) -> dict[int, str]:
        with self.session() as session:  # type: Session
            rows = session.query(Category.category_id, Category.type).all()
            return {category_id: type_ for category_id, type_ in rows}

    def get_category(self, category_id: int) -> Category | None:
        with self.session() as session:  # type: Session
            category = session.get(Category, category_id)
            if category:
                session.expunge(category)
            return category

    # Transactions --------------------------------------------------------

    def get_transaction(self, transaction_id: str) -> LedgerTransaction | None:
        with self.session() as session:  # type: Session
            txn = session.get(LedgerTransaction, transaction_id)
            if txn:
                session.expunge(txn)
            return txn

    def get_by_aggregator_id(
        self, aggregator_transaction_id: str
    ) -> LedgerTransaction | None:
        with self.session() as session:  # type: Session
            txn = (
                session.query(LedgerTransaction)
                .filter(
                    LedgerTransaction.aggregator_transaction_id
                    == aggregator_transaction_id
                )
                .first()
            )
            if txn:
                session.expunge(txn)
            return txn

    def list_transactions(self) -> list[LedgerTransaction]:
        with self.session() as session:  # type: Session
            txns = (
                session.query(LedgerTransaction)
                .order_by(LedgerTransaction.date, LedgerTransaction.id)
                .all()
            )
            for txn in txns:
                session.expunge(txn)
            return txns

    def linked_aggregator_ids(self, aggregator_ids: Iterable[str]) -> set[str]:
        """Subset of ``aggregator_ids`` already linked to a ledger row."""
        ids = list(set(aggregator_ids))
        if not ids:
            return set()
        with self.session() as session:  # type: Session
            rows = (
                session.query(LedgerTransaction.aggregator_transaction_id)
                .filter(LedgerTransaction.aggregator_transaction_id.in_(ids))
                .all()
            )
            return {row[0] for row in rows}

    def list_unlinked_in_window(
        self,
        *,
        account_ids: Iterable[str],
        start: dt.date,
        end: dt.date,
    ) -> list[LedgerTransaction]:
        """Unlinked rows of ``account_ids`` dated within [start, end]."""
        accounts = list(set(account_ids))
        if not accounts:
            return []
        with self.session() as session:  # type: Session
            txns = (
                session.query(LedgerTransaction)
                .filter(
                    LedgerTransaction.aggregator_transaction_id.is_(None),
                    LedgerTransaction.account_id.in_(accounts),
                    LedgerTransaction.date >= start,
                    LedgerTransaction.date <= end,
                )
                .order_by(LedgerTransaction.date, LedgerTransaction.id)
                .all()
            )
            for txn in txns:
                session.expunge(txn)
            return txns

    def insert_transaction(
        self,
        *,
        account_id: str,
        description: str,
        amount_cents: int,
        date: dt.date,
        category_id: int | None = None,
        excluded: bool = False,
        is_confirmed: bool = False,
        aggregator: AggregatorFields | None = None,
    ) -> LedgerTransaction:
        """Insert a ledger row, linked when ``aggregator`` is given.

        Raises:
            LedgerWriteError: The row violates a constraint (e.g. the
                aggregator id is already linked elsewhere).
        """
        try:
            with self.session() as session:  # type: Session
                txn = LedgerTransaction(
                    account_id=account_id,
                    description=description,
                    amount_cents=amount_cents,
                    date=date,
                    category_id=category_id,
                    excluded=excluded,
                    is_confirmed=is_confirmed,
                )
                if aggregator is not None:
                    aggregator.apply_to(txn)
                session.add(txn)
                session.flush()
                session.refresh(txn)
                session.expunge(txn)
                return txn
        except IntegrityError as e:
            raise LedgerWriteError(
                f"Failed to insert transaction ({description!r}): {e.orig}"
            ) from e

    def link_transaction(
        self, transaction_id: str, aggregator: AggregatorFields
    ) -> LedgerTransaction | None:
        """Attach aggregator linkage to an existing unlinked row.

        Id, category, confirmation and exclusion are preserved. Returns None
        when the row is gone or was linked in the meantime.
        """
        try:
            with self.session() as session:  # type: Session
                txn = session.get(LedgerTransaction, transaction_id)
                if txn is None or txn.aggregator_transaction_id is not None:
                    return None
                aggregator.apply_to(txn)
                session.flush()
                session.refresh(txn)
                session.expunge(txn)
                return txn
        except IntegrityError as e:
            raise LedgerWriteError(
                f"Failed to link transaction {transaction_id}: {e.orig}"
            ) from e

    def update_by_aggregator_id(self, aggregator: AggregatorFields) -> bool:
        """Refresh the row linked to ``aggregator``; False when none exists."""
        with self.session() as session:  # type: Session
            txn = (
                session.query(LedgerTransaction)
                .filter(
                    LedgerTransaction.aggregator_transaction_id
                    == aggregator.aggregator_transaction_id
                )
                .first()
            )
            if txn is None:
                return False
            aggregator.apply_to(txn)
            return True

    def delete_by_aggregator_id(self, aggregator_transaction_id: str) -> bool:
        with self.session() as session:  # type: Session
            deleted = (
                session.query(LedgerTransaction)
                .filter(
                    LedgerTransaction.aggregator_transaction_id
                    == aggregator_transaction_id
                )
                .delete(synchronize_session=False)
            )
            return deleted > 0

    # Categorization rules ------------------------------------------------

    def list_rules(self) -> list[CategorizationRule]:
        """Rules in scan order: learned rules first, then presets."""
        with self.session() as session:  # type: Session
            rules = (
                session.query(CategorizationRule)
                .order_by(CategorizationRule.is_preset, CategorizationRule.rule_id)
                .all()
            )
            for rule in rules:
                session.expunge(rule)
            return rules

    def upsert_rule(
        self, *, pattern: str, category_id: int, is_preset: bool = False
    ) -> CategorizationRule:
        with self.session() as session:  # type: Session
            rule = (
                session.query(CategorizationRule)
                .filter(CategorizationRule.pattern == pattern)
                .first()
            )
            if rule is None:
                rule = CategorizationRule(
                    pattern=pattern, category_id=category_id, is_preset=is_preset
                )
                session.add(rule)
            else:
                rule.category_id = category_id
                rule.is_preset = is_preset
            session.flush()
            session.refresh(rule)
            session.expunge(rule)
            return rule

    def confirm_category(
        self, transaction_id: str, category_id: int
    ) -> CategorizationRule | None:
        """Confirm a transaction's category and learn a rule from it.

        Returns the learned rule, or None when the description yields no
        usable merchant pattern.
        """
        with self.session() as session:  # type: Session
            txn = session.get(LedgerTransaction, transaction_id)
            if txn is None:
                raise ValueError(f"Unknown transaction: {transaction_id}")
            txn.category_id = category_id
            txn.is_confirmed = True
            txn.updated_at = dt.datetime.now()
            description = txn.aggregator_merchant_name or txn.description

        pattern = extract_pattern(description)
        if len(pattern) < MIN_RULE_PATTERN_LENGTH:
            return None
        return self.upsert_rule(pattern=pattern, category_id=category_id)

    # Storage hooks -------------------------------------------------------

    def persist(self) -> None:
        """Flush durable state to storage (WAL checkpoint on SQLite)."""
        if not self.is_sqlite:
            return
        with self._engine.connect().execution_options(
            isolation_level="AUTOCOMMIT"
        ) as conn:
            conn.execute(text("PRAGMA wal_checkpoint(TRUNCATE)"))

    def vacuum(self) -> None:
        """Compact storage (VACUUM on SQLite)."""
        if not self.is_sqlite:
            return
        with self._engine.connect().execution_options(
            isolation_level="AUTOCOMMIT"
        ) as conn:
            conn.execute(text("VACUUM"))
