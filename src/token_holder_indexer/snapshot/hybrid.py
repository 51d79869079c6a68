"""Per-request choice between live contract reads and the ledger.

ERC-721 collections and single-token ERC-1155 requests are answered from
live `balanceOf`/`balanceOfBatch` calls over the holders seen in stored
events. Multi-token ERC-1155 requests close a small sync gap and read the
ledger. Any request pinned to a block is answered by event replay.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from token_holder_indexer.ingest.sync import DEFAULT_QUICK_SYNC_BLOCKS
from token_holder_indexer.models import ContractKind, normalize_address
from token_holder_indexer.snapshot.generator import (
    DEFAULT_INLINE_SYNC_TIMEOUT_SECONDS,
    Snapshot,
    SnapshotHolder,
    SnapshotRequest,
    build_snapshot,
)
from token_holder_indexer.storage.repos import TransferEventRepository

if TYPE_CHECKING:
    from token_holder_indexer.chain.contracts import LiveBalanceReader
    from token_holder_indexer.chain.provider import ProviderManager
    from token_holder_indexer.ingest.sync import SyncManager
    from token_holder_indexer.snapshot.generator import SnapshotGenerator
    from token_holder_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


class SnapshotStrategy(str, Enum):
    LEDGER_HISTORICAL = "ledger_historical"
    LIVE_OWNERSHIP = "live_ownership"
    LIVE_BATCH_BALANCE = "live_batch_balance"
    LEDGER_SYNCED = "ledger_synced"


DATA_SOURCE = {
    SnapshotStrategy.LEDGER_HISTORICAL: "database-historical",
    SnapshotStrategy.LIVE_OWNERSHIP: "rpc-realtime",
    SnapshotStrategy.LIVE_BATCH_BALANCE: "rpc-realtime",
    SnapshotStrategy.LEDGER_SYNCED: "database-synced",
}


def select_strategy(
    contract_kind: ContractKind,
    token_ids: tuple[int, ...] | list[int],
    block_number: int | None,
) -> SnapshotStrategy:
    """Pick how a snapshot request is answered."""
    if block_number is not None:
        return SnapshotStrategy.LEDGER_HISTORICAL
    if contract_kind is ContractKind.ERC721:
        return SnapshotStrategy.LIVE_OWNERSHIP
    if len(set(token_ids)) == 1:
        return SnapshotStrategy.LIVE_BATCH_BALANCE
    return SnapshotStrategy.LEDGER_SYNCED


@dataclass(frozen=True)
class HybridSnapshotOptions:
    contract_address: str
    contract_kind: ContractKind
    token_ids: tuple[int, ...] = ()
    block_number: int | None = None
    quick_sync_blocks: int = DEFAULT_QUICK_SYNC_BLOCKS

    def __post_init__(self) -> None:
        object.__setattr__(self, "contract_address", normalize_address(self.contract_address))
        object.__setattr__(self, "token_ids", tuple(sorted(set(self.token_ids))))


@dataclass(frozen=True)
class SnapshotResultMetadata:
    contract_address: str
    contract_kind: ContractKind
    token_ids: tuple[int, ...]
    block_number: int | None
    timestamp: datetime | None
    total_holders: int
    total_supply: int
    data_source: str
    last_synced_block: int | None = None
    sync_gap_blocks: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "contract_address": self.contract_address,
            "contract_kind": self.contract_kind.value,
            "token_ids": [str(t) for t in self.token_ids],
            "block_number": self.block_number,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "total_holders": self.total_holders,
            "total_supply": str(self.total_supply),
            "data_source": self.data_source,
            "last_synced_block": self.last_synced_block,
            "sync_gap_blocks": self.sync_gap_blocks,
        }


@dataclass(frozen=True)
class SnapshotResult:
    holders: list[SnapshotHolder] = field(default_factory=list)
    metadata: SnapshotResultMetadata | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "holders": [h.to_dict() for h in self.holders],
            "metadata": self.metadata.to_dict() if self.metadata else None,
        }


class HybridSnapshotGenerator:
    """Answers snapshot requests with the cheapest adequate strategy."""

    def __init__(
        self,
        db: DatabaseManager,
        provider: ProviderManager,
        balance_reader: LiveBalanceReader,
        snapshot_generator: SnapshotGenerator,
        *,
        sync_manager: SyncManager | None = None,
        inline_sync_timeout_seconds: float = DEFAULT_INLINE_SYNC_TIMEOUT_SECONDS,
    ) -> None:
        self._db = db
        self._provider = provider
        self._reader = balance_reader
        self._snapshots = snapshot_generator
        self._sync_manager = sync_manager
        self._inline_sync_timeout = inline_sync_timeout_seconds

    async def generate_snapshot(self, options: HybridSnapshotOptions) -> SnapshotResult:
        strategy = select_strategy(options.contract_kind, options.token_ids, options.block_number)
        logger.info(
            "Snapshot of %s (%s, tokens=%s) via %s",
            options.contract_address,
            options.contract_kind.value,
            list(options.token_ids) or "all",
            strategy.value,
        )

        request = SnapshotRequest(
            contract=options.contract_address,
            token_ids=options.token_ids,
            block_number=options.block_number,
            include_metadata=False,
        )
        last_synced: int | None = None
        sync_gap: int | None = None

        if strategy is SnapshotStrategy.LEDGER_HISTORICAL:
            snapshot = await self._snapshots.generate_historical_snapshot(request)
        elif strategy is SnapshotStrategy.LEDGER_SYNCED:
            await self._quick_sync(options.quick_sync_blocks)
            snapshot = await self._snapshots.generate_current_snapshot(request, sync_first=False)
            last_synced, sync_gap = await self._sync_position()
        elif strategy is SnapshotStrategy.LIVE_OWNERSHIP:
            snapshot = await self._live_erc721(request)
        else:
            snapshot = await self._live_erc1155(request, options.token_ids[0])

        return SnapshotResult(
            holders=snapshot.holders,
            metadata=SnapshotResultMetadata(
                contract_address=options.contract_address,
                contract_kind=options.contract_kind,
                token_ids=options.token_ids,
                block_number=snapshot.block_number,
                timestamp=snapshot.timestamp,
                total_holders=snapshot.holder_count,
                total_supply=snapshot.total_supply,
                data_source=DATA_SOURCE[strategy],
                last_synced_block=last_synced,
                sync_gap_blocks=sync_gap,
            ),
        )

    async def _candidate_holders(self, contract: str, token_id: int | None) -> list[str]:
        async with self._db.get_async_session() as session:
            return await TransferEventRepository(session).list_participants(contract, token_id=token_id)

    async def _live_erc721(self, request: SnapshotRequest) -> Snapshot:
        token_id = request.token_ids[0] if len(request.token_ids) == 1 else None
        holders = await self._candidate_holders(request.contract, token_id)
        head = await self._provider.get_block_number()
        logger.info("Reading balanceOf for %d candidate holders at block %d", len(holders), head)
        totals = await self._reader.erc721_balances(holders, block_identifier=head)
        return build_snapshot(request, totals=totals, block_number=head, timestamp=datetime.now(UTC))

    async def _live_erc1155(self, request: SnapshotRequest, token_id: int) -> Snapshot:
        holders = await self._candidate_holders(request.contract, token_id)
        head = await self._provider.get_block_number()
        logger.info("Reading balanceOfBatch for %d candidate holders of token %d", len(holders), token_id)
        totals = await self._reader.erc1155_balances(holders, token_id, block_identifier=head)
        breakdown = {address: {token_id: balance} for address, balance in totals.items() if balance > 0}
        return build_snapshot(
            request,
            totals=totals,
            breakdown=breakdown,
            block_number=head,
            timestamp=datetime.now(UTC),
        )

    async def _quick_sync(self, window_blocks: int) -> None:
        if self._sync_manager is None:
            return
        try:
            await asyncio.wait_for(self._sync_manager.quick_sync(window_blocks), timeout=self._inline_sync_timeout)
        except asyncio.TimeoutError:
            logger.warning("Quick sync exceeded %.1fs; using stored ledger", self._inline_sync_timeout)
        except Exception as e:
            logger.warning("Quick sync failed; using stored ledger: %s", e)

    async def _sync_position(self) -> tuple[int | None, int | None]:
        if self._sync_manager is None:
            return None, None
        status = await self._sync_manager.get_sync_status()
        try:
            head = await self._provider.get_block_number()
        except Exception as e:
            logger.warning("Could not read head block for sync gap: %s", e)
            return status.last_synced_block, None
        return status.last_synced_block, max(0, head - status.last_synced_block)

