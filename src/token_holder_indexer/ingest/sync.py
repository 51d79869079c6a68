"""Incremental ledger sync.

The sync manager owns `SyncStatus` for one contract. It walks the blocks
between the last synced block and the chain head in fixed chunks, applies
each chunk through the event processor and persists progress after every
chunk, so an interrupted sync resumes where it stopped.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING

from token_holder_indexer.chain.deployment import find_deployment_block
from token_holder_indexer.chain.provider import ProviderError
from token_holder_indexer.models import (
    CancellationToken,
    ContractInfo,
    SyncResult,
    SyncState,
)
from token_holder_indexer.storage.repos import (
    SkippedRangeRepository,
    SyncStatusDTO,
    SyncStatusRepository,
)

if TYPE_CHECKING:
    from token_holder_indexer.chain.provider import ProviderManager
    from token_holder_indexer.ingest.fetcher import EventFetcher
    from token_holder_indexer.ingest.processor import EventProcessor
    from token_holder_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_SYNC_CHUNK_BLOCKS = 1000
DEFAULT_NEEDS_SYNC_THRESHOLD_BLOCKS = 5
DEFAULT_QUICK_SYNC_BLOCKS = 100


class SyncManager:
    """Keeps one contract's ledger caught up with the chain head.

    Example:
        ```python
        sync = SyncManager(provider, fetcher, processor, db, contract=contract)
        if await sync.needs_sync():
            result = await sync.sync_missing_blocks()
        ```
    """

    def __init__(
        self,
        provider: ProviderManager,
        fetcher: EventFetcher,
        processor: EventProcessor,
        db: DatabaseManager,
        *,
        contract: ContractInfo,
        chunk_size: int = DEFAULT_SYNC_CHUNK_BLOCKS,
        needs_sync_threshold: int = DEFAULT_NEEDS_SYNC_THRESHOLD_BLOCKS,
    ) -> None:
        """Initialize the sync manager.

        Args:
            provider: RPC provider manager (head block reads).
            fetcher: Event fetcher for the contract.
            processor: Event processor for the contract.
            db: Database manager.
            contract: Contract being synced.
            chunk_size: Blocks per persisted sync step.
            needs_sync_threshold: Lag (blocks) above which `needs_sync()` is True.
        """
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        self._provider = provider
        self._fetcher = fetcher
        self._processor = processor
        self._db = db
        self._contract = contract
        self._chunk_size = chunk_size
        self._needs_sync_threshold = needs_sync_threshold
        self._deployment_block: int | None = None

    @property
    def contract(self) -> ContractInfo:
        return self._contract

    async def _initial_last_synced(self) -> int:
        """Block before the configured start block, else before the deployment block."""
        if self._contract.start_block is not None:
            return self._contract.start_block - 1
        if self._deployment_block is None:
            try:
                deployed = await find_deployment_block(self._provider, self._contract.address)
            except ProviderError as e:
                logger.warning(
                    "Deployment block lookup failed for %s, starting at genesis: %s",
                    self._contract.address,
                    e,
                )
                return -1
            self._deployment_block = deployed if deployed is not None else 0
        return self._deployment_block - 1

    async def get_sync_status(self) -> SyncStatusDTO:
        """Stored status, or a pending status positioned before the start block."""
        async with self._db.get_async_session() as session:
            status = await SyncStatusRepository(session).get(self._contract.address)
        if status is not None:
            return status
        return SyncStatusDTO(
            contract_address=self._contract.address,
            last_synced_block=await self._initial_last_synced(),
            status=SyncState.PENDING,
        )

    async def _update_status(
        self,
        state: SyncState,
        *,
        last_synced_block: int | None = None,
        error_message: str | None = None,
    ) -> None:
        if last_synced_block is None:
            async with self._db.get_async_session() as session:
                stored = await SyncStatusRepository(session).get(self._contract.address)
            if stored is None:
                last_synced_block = await self._initial_last_synced()
        async with self._db.get_async_session() as session:
            repo = SyncStatusRepository(session)
            await repo.upsert(
                self._contract.address,
                status=state,
                last_synced_block=last_synced_block,
                error_message=error_message,
            )

    async def needs_sync(self) -> bool:
        """True if the ledger lags the head by more than the threshold.

        Also True when the head cannot be read.
        """
        try:
            head = await self._provider.get_block_number()
        except Exception as e:
            logger.warning("Could not read head block for sync check: %s", e)
            return True
        status = await self.get_sync_status()
        return head - status.last_synced_block > self._needs_sync_threshold

    async def sync_missing_blocks(self, cancel: CancellationToken | None = None) -> SyncResult | None:
        """Sync (last_synced_block, head]; None when already caught up."""
        head = await self._provider.get_block_number()
        status = await self.get_sync_status()
        last = status.last_synced_block
        if last >= head - 1:
            logger.debug("Ledger for %s caught up (last %d, head %d)", self._contract.address, last, head)
            return None
        return await self._sync(last + 1, head, last_synced=last, cancel=cancel)

    async def sync_block_range(
        self,
        from_block: int,
        to_block: int,
        cancel: CancellationToken | None = None,
    ) -> SyncResult:
        """Sync an explicit range.

        `last_synced_block` only advances when the range is contiguous with it.
        """
        if from_block < 0 or to_block < from_block:
            raise ValueError(f"Invalid block range {from_block}-{to_block}")
        status = await self.get_sync_status()
        return await self._sync(from_block, to_block, last_synced=status.last_synced_block, cancel=cancel)

    async def quick_sync(self, window_blocks: int = DEFAULT_QUICK_SYNC_BLOCKS) -> SyncResult | None:
        """Close a small gap before a ledger read.

        Syncs exactly (last, head] when the gap fits in `window_blocks`;
        otherwise syncs the first `window_blocks` blocks of the gap so the
        ledger stays contiguous, and warns that a full sync is due.
        """
        if window_blocks < 1:
            raise ValueError("window_blocks must be >= 1")
        head = await self._provider.get_block_number()
        status = await self.get_sync_status()
        last = status.last_synced_block
        gap = head - last
        if gap <= 0:
            return None
        end = head
        if gap > window_blocks:
            end = last + window_blocks
            logger.warning(
                "Ledger for %s is %d blocks behind; quick sync covers %d. Run a full sync.",
                self._contract.address,
                gap,
                window_blocks,
            )
        return await self._sync(last + 1, end, last_synced=last)

    async def _sync(
        self,
        from_block: int,
        to_block: int,
        *,
        last_synced: int,
        cancel: CancellationToken | None = None,
    ) -> SyncResult:
        started = time.monotonic()
        result = SyncResult(from_block=from_block, to_block=to_block)
        advances = from_block <= last_synced + 1

        logger.info("Syncing %s blocks %d-%d", self._contract.address, from_block, to_block)
        try:
            await self._update_status(SyncState.SYNCING)
            for chunk_start in range(from_block, to_block + 1, self._chunk_size):
                if cancel is not None and cancel.cancelled:
                    result.cancelled = True
                    break
                chunk_end = min(to_block, chunk_start + self._chunk_size - 1)

                fetched = await self._fetcher.fetch_range(chunk_start, chunk_end, cancel=cancel)
                processed = await self._processor.apply_events(fetched.events)
                if fetched.skipped_ranges:
                    async with self._db.get_async_session() as session:
                        await SkippedRangeRepository(session).insert_many(
                            self._contract.address, fetched.skipped_ranges
                        )
                    result.skipped_ranges.extend(fetched.skipped_ranges)

                covered_to = fetched.last_block
                if covered_to >= chunk_start:
                    result.blocks_scanned += covered_to - chunk_start + 1
                    if advances and covered_to > last_synced:
                        last_synced = covered_to
                        await self._update_status(SyncState.SYNCING, last_synced_block=last_synced)
                result.events_found += processed.events_processed

                if fetched.cancelled:
                    result.cancelled = True
                    break
        except asyncio.CancelledError:
            logger.warning("Sync of %s cancelled at block %d", self._contract.address, last_synced + 1)
            await self._update_status(SyncState.PENDING)
            raise
        except Exception as e:
            logger.exception("Sync of %s failed at block %d", self._contract.address, last_synced + 1)
            await self._update_status(SyncState.ERROR, error_message=str(e))
            raise

        await self._update_status(SyncState.PENDING if result.cancelled else SyncState.SYNCED)
        result.duration_seconds = time.monotonic() - started
        logger.info(
            "Synced %s: %d blocks, %d events, %d skipped ranges in %.1fs",
            self._contract.address,
            result.blocks_scanned,
            result.events_found,
            len(result.skipped_ranges),
            result.duration_seconds,
        )
        return result
