"""Chunked transfer-log fetching with adaptive chunk sizing.

The fetcher walks a block interval in chunks. A chunk that keeps failing is
retried with exponential backoff, then re-tried at half the size, and once
the size floor is reached it is recorded as a skipped range so the walk
always terminates.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from web3 import AsyncWeb3

from token_holder_indexer.chain.events import (
    TRANSFER_BATCH_TOPIC,
    TRANSFER_SINGLE_TOPIC,
    TRANSFER_TOPIC,
    LogDecodeError,
    decode_transfer_log,
)
from token_holder_indexer.chain.provider import RPCError
from token_holder_indexer.models import (
    CancellationToken,
    ContractInfo,
    ContractKind,
    FetchProgress,
    SkippedRange,
    TransferEvent,
)

if TYPE_CHECKING:
    from token_holder_indexer.chain.provider import ProviderManager

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1000
MIN_CHUNK_SIZE = 100
MAX_CHUNK_SIZE = 5000
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_MAX_RETRY_DELAY_SECONDS = 10.0
DEFAULT_INTER_CHUNK_DELAY_SECONDS = 0.1
MAX_CONCURRENT_TOPIC_FETCHES = 2

PROBE_CHUNK_SIZES = (5000, 2000, 1000, 500, 100)
PROBE_TIME_BUDGET_SECONDS = 5.0
ESTIMATED_SECONDS_PER_CHUNK = 0.5

ProgressCallback = Callable[[FetchProgress], None]


class EventFetchError(Exception):
    """Raised when a chunk cannot be fetched after all attempts."""


@dataclass
class FetchResult:
    """Events and gaps produced by one `fetch_range` walk."""

    from_block: int
    to_block: int
    events: list[TransferEvent] = field(default_factory=list)
    skipped_ranges: list[SkippedRange] = field(default_factory=list)
    # Last block covered (fetched or skipped); from_block - 1 if nothing was.
    last_block: int = -1
    cancelled: bool = False
    final_chunk_size: int = DEFAULT_CHUNK_SIZE


class EventFetcher:
    """Fetches and decodes transfer logs for one contract."""

    def __init__(
        self,
        provider: ProviderManager,
        contract: ContractInfo,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        min_chunk_size: int = MIN_CHUNK_SIZE,
        max_chunk_size: int = MAX_CHUNK_SIZE,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        max_retry_delay_seconds: float = DEFAULT_MAX_RETRY_DELAY_SECONDS,
        inter_chunk_delay_seconds: float = DEFAULT_INTER_CHUNK_DELAY_SECONDS,
        resolve_timestamps: bool = True,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        if not (1 <= min_chunk_size <= max_chunk_size):
            raise ValueError("require 1 <= min_chunk_size <= max_chunk_size")
        self._provider = provider
        self._contract = contract
        self._min_chunk_size = min_chunk_size
        self._max_chunk_size = max_chunk_size
        self._chunk_size = self._clamp(chunk_size)
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay_seconds
        self._max_retry_delay = max_retry_delay_seconds
        self._inter_chunk_delay = inter_chunk_delay_seconds
        self._resolve_timestamps = resolve_timestamps
        self._topic_semaphore = asyncio.Semaphore(MAX_CONCURRENT_TOPIC_FETCHES)
        self._on_progress = on_progress

    @property
    def chunk_size(self) -> int:
        return self._chunk_size

    def _clamp(self, size: int) -> int:
        return max(self._min_chunk_size, min(self._max_chunk_size, size))

    def _topics(self) -> list[str]:
        if self._contract.kind is ContractKind.ERC721:
            return [TRANSFER_TOPIC]
        return [TRANSFER_SINGLE_TOPIC, TRANSFER_BATCH_TOPIC]

    async def _get_logs(self, topic: str, from_block: int, to_block: int) -> list[dict[str, Any]]:
        async with self._topic_semaphore:
            return await self._provider.get_logs(
                {
                    "address": AsyncWeb3.to_checksum_address(self._contract.address),
                    "topics": [topic],
                    "fromBlock": from_block,
                    "toBlock": to_block,
                }
            )

    async def _block_timestamps(self, block_numbers: set[int]) -> dict[int, datetime]:
        if not self._resolve_timestamps:
            return {}
        timestamps: dict[int, datetime] = {}
        for block_number in sorted(block_numbers):
            timestamps[block_number] = await self._provider.get_block_timestamp(block_number)
        return timestamps

    def _decode(self, logs: list[dict[str, Any]], timestamps: Mapping[int, datetime]) -> list[TransferEvent]:
        events: list[TransferEvent] = []
        for log in logs:
            try:
                events.extend(
                    decode_transfer_log(
                        log,
                        contract=self._contract.address,
                        block_timestamp=timestamps.get(int(log["blockNumber"])),
                    )
                )
            except LogDecodeError as e:
                logger.warning("Skipping undecodable log: %s", e)
        return events

    async def fetch_chunk(self, from_block: int, to_block: int) -> list[TransferEvent]:
        """Fetch one chunk; all topics concurrently, merged in canonical order."""
        per_topic = await asyncio.gather(*[self._get_logs(t, from_block, to_block) for t in self._topics()])
        logs = [log for topic_logs in per_topic for log in topic_logs]
        timestamps = await self._block_timestamps({int(log["blockNumber"]) for log in logs})
        events = self._decode(logs, timestamps)
        events.sort(key=lambda e: e.ordering)
        return events

    async def _fetch_chunk_with_retry(self, from_block: int, to_block: int) -> list[TransferEvent]:
        last_error: Exception | None = None
        for attempt in range(self._max_attempts):
            try:
                return await self.fetch_chunk(from_block, to_block)
            except RPCError as e:
                last_error = e
                logger.warning(
                    "Fetching blocks %d-%d failed (attempt %d/%d): %s",
                    from_block,
                    to_block,
                    attempt + 1,
                    self._max_attempts,
                    e,
                )
                if attempt < self._max_attempts - 1:
                    await asyncio.sleep(min(self._retry_delay * (2**attempt), self._max_retry_delay))
        raise EventFetchError(f"blocks {from_block}-{to_block}: {last_error}") from last_error

    async def fetch_range(
        self,
        from_block: int,
        to_block: int,
        *,
        chunk_size: int | None = None,
        cancel: CancellationToken | None = None,
    ) -> FetchResult:
        """Fetch all transfer events in [from_block, to_block].

        Args:
            from_block: First block (inclusive).
            to_block: Last block (inclusive).
            chunk_size: Starting chunk size; defaults to the fetcher's.
            cancel: Token checked before each chunk.

        Returns:
            FetchResult with events in canonical order and any skipped ranges.
        """
        if from_block < 0 or to_block < from_block:
            raise ValueError(f"Invalid block range {from_block}-{to_block}")

        size = self._clamp(chunk_size or self._chunk_size)
        result = FetchResult(from_block=from_block, to_block=to_block, last_block=from_block - 1)
        total_blocks = to_block - from_block + 1
        current = from_block

        while current <= to_block:
            if cancel is not None and cancel.cancelled:
                logger.info("Fetch cancelled at block %d", current)
                result.cancelled = True
                break

            end = min(to_block, current + size - 1)
            try:
                events = await self._fetch_chunk_with_retry(current, end)
            except EventFetchError as e:
                if size > self._min_chunk_size:
                    size = max(self._min_chunk_size, size // 2)
                    logger.warning("Shrinking chunk size to %d after failure: %s", size, e)
                    continue
                logger.error("Skipping blocks %d-%d at minimum chunk size: %s", current, end, e)
                result.skipped_ranges.append(SkippedRange(from_block=current, to_block=end, reason=str(e)))
            else:
                result.events.extend(events)

            result.last_block = end
            current = end + 1

            if self._on_progress is not None:
                covered = end - from_block + 1
                self._on_progress(
                    FetchProgress(
                        current_block=end,
                        total_blocks=total_blocks,
                        processed_events=len(result.events),
                        percent_complete=round(covered * 100.0 / total_blocks, 2),
                    )
                )

            if current <= to_block and self._inter_chunk_delay > 0:
                await asyncio.sleep(self._inter_chunk_delay)

        result.final_chunk_size = size
        return result

    async def fetch_recent(self, blocks: int, *, cancel: CancellationToken | None = None) -> FetchResult:
        """Fetch the most recent `blocks` blocks up to head."""
        head = await self._provider.get_block_number()
        return await self.fetch_range(max(0, head - blocks + 1), head, cancel=cancel)

    async def find_optimal_chunk_size(self) -> int:
        """Probe decreasing chunk sizes ending at head; first one answering in budget wins."""
        head = await self._provider.get_block_number()
        for size in PROBE_CHUNK_SIZES:
            start = max(0, head - size + 1)
            started = time.monotonic()
            try:
                await asyncio.wait_for(self.fetch_chunk(start, head), timeout=PROBE_TIME_BUDGET_SECONDS)
            except (RPCError, asyncio.TimeoutError) as e:
                logger.info("Chunk size %d probe failed: %s", size, e)
                continue
            logger.info("Chunk size %d answered in %.2fs", size, time.monotonic() - started)
            return self._clamp(size)
        return self._clamp(DEFAULT_CHUNK_SIZE)


def estimate_fetch_time(from_block: int, to_block: int, chunk_size: int = DEFAULT_CHUNK_SIZE) -> tuple[int, float]:
    """Rough (chunks, seconds) estimate for fetching a block range."""
    if to_block < from_block:
        return 0, 0.0
    chunks = math.ceil((to_block - from_block + 1) / max(1, chunk_size))
    return chunks, chunks * ESTIMATED_SECONDS_PER_CHUNK
