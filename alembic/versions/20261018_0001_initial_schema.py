"""Initial schema: transfer events, ledger, sync status and caches.

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

from token_holder_indexer.storage.types import Uint256

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Transfer event store
    op.create_table(
        "transfer_events",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("contract_address", sa.String(42), nullable=False),
        sa.Column("token_id", Uint256(), nullable=False),
        sa.Column("from_address", sa.String(42), nullable=False),
        sa.Column("to_address", sa.String(42), nullable=False),
        sa.Column("amount", Uint256(), nullable=False),
        sa.Column("operator", sa.String(42), nullable=True),
        sa.Column("event_kind", sa.String(10), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=False),
        sa.Column("block_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tx_hash", sa.String(66), nullable=False),
        sa.Column("log_index", sa.Integer(), nullable=False),
        sa.Column("batch_index", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "contract_address", "tx_hash", "log_index", "batch_index", name="uq_transfer_events_position"
        ),
    )
    op.create_index(
        "idx_transfer_events_contract_block", "transfer_events", ["contract_address", "block_number", "log_index"]
    )
    op.create_index("idx_transfer_events_contract_token", "transfer_events", ["contract_address", "token_id"])
    op.create_index("idx_transfer_events_from", "transfer_events", ["contract_address", "from_address"])
    op.create_index("idx_transfer_events_to", "transfer_events", ["contract_address", "to_address"])

    # Ownership ledger
    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("contract_address", sa.String(42), nullable=False),
        sa.Column("address", sa.String(42), nullable=False),
        sa.Column("token_id", Uint256(), nullable=False),
        sa.Column("balance", Uint256(), nullable=False),
        sa.Column("last_updated_block", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("contract_address", "address", "token_id", name="uq_ledger_entries_holding"),
    )
    op.create_index("idx_ledger_entries_contract_token", "ledger_entries", ["contract_address", "token_id"])
    op.create_index("idx_ledger_entries_contract_address", "ledger_entries", ["contract_address", "address"])

    op.create_table(
        "sync_status",
        sa.Column("contract_address", sa.String(42), nullable=False),
        sa.Column("last_synced_block", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("contract_address"),
    )

    op.create_table(
        "skipped_block_ranges",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("contract_address", sa.String(42), nullable=False),
        sa.Column("from_block", sa.BigInteger(), nullable=False),
        sa.Column("to_block", sa.BigInteger(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_skipped_block_ranges_contract", "skipped_block_ranges", ["contract_address", "from_block"]
    )

    op.create_table(
        "snapshot_cache",
        sa.Column("cache_key", sa.String(64), nullable=False),
        sa.Column("contract_address", sa.String(42), nullable=False),
        sa.Column("block_number", sa.BigInteger(), nullable=True),
        sa.Column("token_ids", sa.Text(), nullable=False),
        sa.Column("holder_count", sa.Integer(), nullable=False),
        sa.Column("total_supply", Uint256(), nullable=False),
        sa.Column("payload", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("cache_key"),
    )
    op.create_index("idx_snapshot_cache_expires", "snapshot_cache", ["expires_at"])

    op.create_table(
        "merkle_trees",
        sa.Column("root", sa.String(66), nullable=False),
        sa.Column("contract_address", sa.String(42), nullable=True),
        sa.Column("token_id", Uint256(), nullable=True),
        sa.Column("block_number", sa.BigInteger(), nullable=True),
        sa.Column("recipients_count", sa.Integer(), nullable=False),
        sa.Column("total_amount", Uint256(), nullable=False),
        sa.Column("leaves_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("root"),
    )


def downgrade() -> None:
    op.drop_table("merkle_trees")
    op.drop_index("idx_snapshot_cache_expires", table_name="snapshot_cache")
    op.drop_table("snapshot_cache")
    op.drop_index("idx_skipped_block_ranges_contract", table_name="skipped_block_ranges")
    op.drop_table("skipped_block_ranges")
    op.drop_table("sync_status")
    op.drop_index("idx_ledger_entries_contract_address", table_name="ledger_entries")
    op.drop_index("idx_ledger_entries_contract_token", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_index("idx_transfer_events_to", table_name="transfer_events")
    op.drop_index("idx_transfer_events_from", table_name="transfer_events")
    op.drop_index("idx_transfer_events_contract_token", table_name="transfer_events")
    op.drop_index("idx_transfer_events_contract_block", table_name="transfer_events")
    op.drop_table("transfer_events")
