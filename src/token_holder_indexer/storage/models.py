"""SQLAlchemy models for persistent storage.

This module defines the database schema for the transfer event store, the
derived ownership ledger, per-contract sync status, skipped block ranges,
the snapshot cache and stored Merkle trees.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from token_holder_indexer.storage.types import Uint256


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class TransferEventModel(Base):
    """Append-only transfer event store (one row per expanded transfer)."""

    __tablename__ = "transfer_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    token_id: Mapped[int] = mapped_column(Uint256, nullable=False)
    from_address: Mapped[str] = mapped_column(String(42), nullable=False)
    to_address: Mapped[str] = mapped_column(String(42), nullable=False)
    amount: Mapped[int] = mapped_column(Uint256, nullable=False)
    operator: Mapped[str | None] = mapped_column(String(42), nullable=True)
    event_kind: Mapped[str] = mapped_column(String(10), nullable=False)

    block_number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    block_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    tx_hash: Mapped[str] = mapped_column(String(66), nullable=False)
    log_index: Mapped[int] = mapped_column(Integer, nullable=False)
    # Position inside a TransferBatch log; 0 for single transfers.
    batch_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint(
            "contract_address",
            "tx_hash",
            "log_index",
            "batch_index",
            name="uq_transfer_events_position",
        ),
        Index("idx_transfer_events_contract_block", "contract_address", "block_number", "log_index"),
        Index("idx_transfer_events_contract_token", "contract_address", "token_id"),
        Index("idx_transfer_events_from", "contract_address", "from_address"),
        Index("idx_transfer_events_to", "contract_address", "to_address"),
    )


class LedgerEntryModel(Base):
    """Derived balance per (contract, address, token id)."""

    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    address: Mapped[str] = mapped_column(String(42), nullable=False)
    token_id: Mapped[int] = mapped_column(Uint256, nullable=False)
    balance: Mapped[int] = mapped_column(Uint256, nullable=False)
    last_updated_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (
        UniqueConstraint("contract_address", "address", "token_id", name="uq_ledger_entries_holding"),
        Index("idx_ledger_entries_contract_token", "contract_address", "token_id"),
        Index("idx_ledger_entries_contract_address", "contract_address", "address"),
    )


class SyncStatusModel(Base):
    """Per-contract sync progress."""

    __tablename__ = "sync_status"

    contract_address: Mapped[str] = mapped_column(String(42), primary_key=True)
    last_synced_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )


class SkippedRangeModel(Base):
    """Block ranges the fetcher gave up on; known gaps until re-synced."""

    __tablename__ = "skipped_block_ranges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    from_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    to_block: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )

    __table_args__ = (Index("idx_skipped_block_ranges_contract", "contract_address", "from_block"),)


class SnapshotCacheModel(Base):
    """Cached snapshot payloads keyed by a hash of the request parameters."""

    __tablename__ = "snapshot_cache"

    cache_key: Mapped[str] = mapped_column(String(64), primary_key=True)
    contract_address: Mapped[str] = mapped_column(String(42), nullable=False)
    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    token_ids: Mapped[str] = mapped_column(Text, nullable=False)  # JSON array
    holder_count: Mapped[int] = mapped_column(Integer, nullable=False)
    total_supply: Mapped[int] = mapped_column(Uint256, nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)  # JSON snapshot
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_snapshot_cache_expires", "expires_at"),)


class MerkleTreeModel(Base):
    """Stored Merkle distributions (immutable once written)."""

    __tablename__ = "merkle_trees"

    root: Mapped[str] = mapped_column(String(66), primary_key=True)
    contract_address: Mapped[str | None] = mapped_column(String(42), nullable=True)
    token_id: Mapped[int | None] = mapped_column(Uint256, nullable=True)
    block_number: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    recipients_count: Mapped[int] = mapped_column(Integer, nullable=False)
    total_amount: Mapped[int] = mapped_column(Uint256, nullable=False)
    leaves_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
