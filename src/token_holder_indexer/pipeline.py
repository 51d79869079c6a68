"""Indexer orchestrator for one token contract.

This module provides the Indexer class that wires together the provider,
ingestion, snapshot, query, Merkle and validation components from settings
and manages their lifecycle.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from redis.asyncio import Redis

from token_holder_indexer.chain.contracts import LiveBalanceReader
from token_holder_indexer.chain.provider import ProviderManager
from token_holder_indexer.config import Settings, get_settings
from token_holder_indexer.ingest.fetcher import EventFetcher
from token_holder_indexer.ingest.processor import EventProcessor
from token_holder_indexer.ingest.sync import SyncManager
from token_holder_indexer.merkle.builder import MerkleDistributionBuilder
from token_holder_indexer.query.engine import HolderQueryEngine
from token_holder_indexer.snapshot.generator import SnapshotGenerator
from token_holder_indexer.snapshot.hybrid import HybridSnapshotGenerator
from token_holder_indexer.storage.database import DatabaseManager
from token_holder_indexer.validation.validator import DataValidator

if TYPE_CHECKING:
    from token_holder_indexer.models import CancellationToken, ContractInfo, SyncResult

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 12.0


def create_provider(settings: Settings, *, redis: Redis | None = None) -> ProviderManager:
    """Build a provider manager from the RPC settings."""
    return ProviderManager(
        settings.rpc.primary_url,
        fallback_url=settings.rpc.fallback_url,
        public_url=settings.rpc.public_url,
        redis=redis,
        chain_id=settings.rpc.chain_id,
        connect_timeout_seconds=settings.rpc.connect_timeout_seconds,
        max_retries=settings.rpc.max_retries,
        max_requests_per_second=settings.rpc.max_requests_per_second,
    )


class IndexerState(str, Enum):
    """Indexer lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class IndexerStats:
    """Statistics for the indexer."""

    started_at: datetime | None = None
    syncs_completed: int = 0
    blocks_scanned: int = 0
    events_found: int = 0
    errors: int = 0
    last_sync_time: datetime | None = None
    last_error: str | None = None


class Indexer:
    """Component container and lifecycle for one contract.

    Chain-facing components (provider, fetcher, sync manager, hybrid
    snapshots) are only built when an RPC endpoint is configured; the
    ledger-only components always are.

    Example:
        ```python
        from token_holder_indexer.config import get_settings
        from token_holder_indexer.models import ContractInfo, ContractKind

        contract = ContractInfo("0x...", ContractKind.ERC1155, start_block=17_000_000)
        async with Indexer(contract, get_settings()) as indexer:
            await indexer.sync()
            snapshot = await indexer.snapshot_generator.generate_snapshot(request)
        ```
    """

    def __init__(
        self,
        contract: ContractInfo,
        settings: Settings | None = None,
        *,
        db_manager: DatabaseManager | None = None,
        provider: ProviderManager | None = None,
    ) -> None:
        """Initialize the indexer.

        Args:
            contract: Contract to index.
            settings: Application settings. If not provided, uses get_settings().
            db_manager: Pre-built database manager; not disposed on stop.
            provider: Pre-built provider manager; not closed on stop.
        """
        self._contract = contract
        self._settings = settings or get_settings()
        self._state = IndexerState.STOPPED
        self._stats = IndexerStats()

        self._owns_db = db_manager is None
        self._owns_provider = provider is None
        self._db_manager = db_manager
        self._provider = provider

        # Components (initialized in start())
        self._redis: Redis | None = None
        self._processor: EventProcessor | None = None
        self._fetcher: EventFetcher | None = None
        self._sync_manager: SyncManager | None = None
        self._snapshot_generator: SnapshotGenerator | None = None
        self._hybrid_generator: HybridSnapshotGenerator | None = None
        self._query_engine: HolderQueryEngine | None = None
        self._merkle_builder: MerkleDistributionBuilder | None = None
        self._validator: DataValidator | None = None

        self._stop_event: asyncio.Event | None = None

    @property
    def state(self) -> IndexerState:
        """Current indexer state."""
        return self._state

    @property
    def stats(self) -> IndexerStats:
        """Current indexer statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == IndexerState.RUNNING

    @property
    def contract(self) -> ContractInfo:
        return self._contract

    def _require(self, component: Any, name: str) -> Any:
        if component is None:
            raise RuntimeError(f"{name} is not available (indexer state {self._state.value})")
        return component

    @property
    def db_manager(self) -> DatabaseManager:
        return self._require(self._db_manager, "database")  # type: ignore[no-any-return]

    @property
    def processor(self) -> EventProcessor:
        return self._require(self._processor, "event processor")  # type: ignore[no-any-return]

    @property
    def sync_manager(self) -> SyncManager:
        return self._require(self._sync_manager, "sync manager (RPC not configured?)")  # type: ignore[no-any-return]

    @property
    def snapshot_generator(self) -> SnapshotGenerator:
        return self._require(self._snapshot_generator, "snapshot generator")  # type: ignore[no-any-return]

    @property
    def hybrid_generator(self) -> HybridSnapshotGenerator:
        return self._require(  # type: ignore[no-any-return]
            self._hybrid_generator, "hybrid snapshot generator (RPC not configured?)"
        )

    @property
    def query_engine(self) -> HolderQueryEngine:
        return self._require(self._query_engine, "query engine")  # type: ignore[no-any-return]

    @property
    def merkle_builder(self) -> MerkleDistributionBuilder:
        return self._require(self._merkle_builder, "merkle builder")  # type: ignore[no-any-return]

    @property
    def validator(self) -> DataValidator:
        return self._require(self._validator, "validator")  # type: ignore[no-any-return]

    async def start(self) -> None:
        """Initialize all components.

        Raises:
            RuntimeError: If the indexer is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != IndexerState.STOPPED:
            raise RuntimeError(f"Cannot start indexer in state {self._state}")

        self._state = IndexerState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting indexer for %s (%s)", self._contract.address, self._contract.kind.value)

        try:
            await self._initialize_components()
            self._stats.started_at = datetime.now(UTC)
            self._state = IndexerState.RUNNING
            logger.info("Indexer started")
        except Exception as e:
            self._state = IndexerState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start indexer: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Signal a running `run()` loop to exit and release resources."""
        if self._state == IndexerState.STOPPED:
            return

        self._state = IndexerState.STOPPING
        logger.info("Stopping indexer...")
        if self._stop_event:
            self._stop_event.set()

        await self._cleanup()
        self._state = IndexerState.STOPPED
        logger.info("Indexer stopped")

    def request_stop(self) -> None:
        """Ask a running `run()` loop to exit after the current sync pass.

        Resources are released by `run()` itself once the pass finishes.
        """
        if self._stop_event is not None:
            self._stop_event.set()

    async def _initialize_components(self) -> None:
        settings = self._settings

        if self._db_manager is None:
            logger.debug("Initializing database manager...")
            self._db_manager = DatabaseManager(
                settings.database.url,
                pool_size=settings.database.pool_size,
                echo=settings.database.echo,
            )

        if self._provider is None and settings.rpc.configured:
            if settings.redis.enabled:
                logger.debug("Initializing Redis connection...")
                self._redis = Redis.from_url(settings.redis.url)
            logger.debug("Initializing RPC provider manager...")
            self._provider = create_provider(settings, redis=self._redis)

        db = self._db_manager
        self._processor = EventProcessor(db, self._contract.address)
        self._query_engine = HolderQueryEngine(db)
        self._merkle_builder = MerkleDistributionBuilder(db)
        self._validator = DataValidator(db, self._contract.address)

        if self._provider is not None:
            logger.debug("Initializing event fetcher and sync manager...")
            self._fetcher = EventFetcher(
                self._provider,
                self._contract,
                chunk_size=settings.sync.chunk_size_blocks,
                min_chunk_size=settings.sync.min_chunk_size_blocks,
                max_chunk_size=settings.sync.max_chunk_size_blocks,
            )
            self._sync_manager = SyncManager(
                self._provider,
                self._fetcher,
                self._processor,
                db,
                contract=self._contract,
                chunk_size=settings.sync.chunk_size_blocks,
                needs_sync_threshold=settings.sync.needs_sync_threshold_blocks,
            )

        self._snapshot_generator = SnapshotGenerator(
            db,
            sync_manager=self._sync_manager,
            provider=self._provider,
            cache_ttl_seconds=settings.snapshot.cache_ttl_seconds,
            inline_sync_timeout_seconds=settings.sync.inline_timeout_seconds,
        )

        if self._provider is not None:
            self._hybrid_generator = HybridSnapshotGenerator(
                db,
                self._provider,
                LiveBalanceReader(self._provider, self._contract.address),
                self._snapshot_generator,
                sync_manager=self._sync_manager,
                inline_sync_timeout_seconds=settings.sync.inline_timeout_seconds,
            )

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._provider and self._owns_provider:
            await self._provider.aclose()
            self._provider = None

        if self._db_manager and self._owns_db:
            await self._db_manager.dispose_async()
            self._db_manager = None

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")

    async def sync(self, cancel: CancellationToken | None = None) -> SyncResult | None:
        """Sync the ledger to the chain head once."""
        try:
            result = await self.sync_manager.sync_missing_blocks(cancel)
        except Exception as e:
            self._stats.errors += 1
            self._stats.last_error = str(e)
            raise
        self._stats.syncs_completed += 1
        self._stats.last_sync_time = datetime.now(UTC)
        if result is not None:
            self._stats.blocks_scanned += result.blocks_scanned
            self._stats.events_found += result.events_found
        return result

    async def run(self, poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS) -> None:
        """Start the indexer and keep syncing until stop() is called.

        Failed sync passes are logged and retried on the next tick.
        """
        if self._state == IndexerState.STOPPED:
            await self.start()
        assert self._stop_event is not None

        try:
            while not self._stop_event.is_set():
                try:
                    await self.sync()
                except Exception as e:
                    logger.error("Sync pass failed: %s", e)
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._stop_event.wait(), timeout=poll_interval_seconds)
        finally:
            await self.stop()

    async def __aenter__(self) -> Indexer:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
