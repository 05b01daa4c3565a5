from __future__ import annotations

from dataclasses import dataclass
import datetime as dt
from typing import Literal
import uuid

from sqlalchemy import (
    TIMESTAMP,
    Boolean,
    Date,
    ForeignKey,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)

CategoryType = Literal["expense", "income", "transfer"]


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for SQLAlchemy models."""

    pass


class SyncConnection(Base):
    """A bank connection at the aggregator with its resumable sync cursor."""

    __tablename__ = "sync_connections"

    connection_id: Mapped[str] = mapped_column(String, primary_key=True)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    institution_name: Mapped[str | None] = mapped_column(String, nullable=True)
    cursor: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_synced_at: Mapped[dt.datetime | None] = mapped_column(TIMESTAMP, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    accounts: Mapped[list[Account]] = relationship(
        "Account", back_populates="connection"
    )


class Account(Base):
    """Ledger account, optionally linked to an aggregator account."""

    __tablename__ = "accounts"

    account_id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    name: Mapped[str] = mapped_column(String, nullable=False)
    type: Mapped[str] = mapped_column(String, nullable=False, default="checking")
    connection_id: Mapped[str | None] = mapped_column(
        String,
        ForeignKey("sync_connections.connection_id", ondelete="SET NULL"),
        nullable=True,
    )
    aggregator_account_id: Mapped[str | None] = mapped_column(
        String, unique=True, nullable=True
    )

    connection: Mapped[SyncConnection | None] = relationship(
        "SyncConnection", back_populates="accounts"
    )


class Category(Base):
    """Category model."""

    __tablename__ = "categories"

    category_id: Mapped[int] = mapped_column(
        Integer, primary_key=True, autoincrement=True
    )
    key: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String, nullable=False)
    type: Mapped[str] = mapped_column(String, nullable=False, default="expense")


class LedgerTransaction(Base):
    """A ledger row; linked once ``aggregator_transaction_id`` is set."""

    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=new_id)
    account_id: Mapped[str] = mapped_column(
        String, ForeignKey("accounts.account_id"), nullable=False
    )
    category_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("categories.category_id"), nullable=True
    )
    description: Mapped[str] = mapped_column(Text, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)
    excluded: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("FALSE"), default=False
    )
    is_confirmed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("FALSE"), default=False
    )
    aggregator_transaction_id: Mapped[str | None] = mapped_column(
        String, unique=True, nullable=True
    )
    aggregator_authorized_date: Mapped[dt.date | None] = mapped_column(
        Date, nullable=True
    )
    aggregator_posted_date: Mapped[dt.date | None] = mapped_column(Date, nullable=True)
    aggregator_merchant_name: Mapped[str | None] = mapped_column(
        String, nullable=True
    )
    aggregator_name: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at: Mapped[dt.datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    category: Mapped[Category | None] = relationship("Category")

    @property
    def is_linked(self) -> bool:
        return self.aggregator_transaction_id is not None


class CategorizationRule(Base):
    """Maps a canonical merchant pattern to a category."""

    __tablename__ = "categorization_rules"

    rule_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pattern: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    category_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("categories.category_id", ondelete="CASCADE"),
        nullable=False,
    )
    is_preset: Mapped[bool] = mapped_column(
        Boolean, nullable=False, server_default=text("FALSE"), default=False
    )
    created_at: Mapped[dt.datetime] = mapped_column(
        TIMESTAMP, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )


@dataclass(frozen=True)
class AggregatorFields:
    """Values an aggregator delivery writes onto a ledger row."""

    aggregator_transaction_id: str
    description: str
    amount_cents: int
    date: dt.date
    authorized_date: dt.date | None = None
    posted_date: dt.date | None = None
    merchant_name: str | None = None
    aggregator_name: str | None = None

    def apply_to(self, row: LedgerTransaction) -> None:
        row.aggregator_transaction_id = self.aggregator_transaction_id
        row.description = self.description
        row.amount_cents = self.amount_cents
        row.date = self.date
        row.aggregator_authorized_date = self.authorized_date
        row.aggregator_posted_date = self.posted_date
        row.aggregator_merchant_name = self.merchant_name
        row.aggregator_name = self.aggregator_name
        row.updated_at = dt.datetime.now()
