"""Tests for the chunked event fetcher."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from eth_abi import encode

from token_holder_indexer.chain.events import (
    TRANSFER_BATCH_TOPIC,
    TRANSFER_SINGLE_TOPIC,
    TRANSFER_TOPIC,
)
from token_holder_indexer.chain.provider import RPCError
from token_holder_indexer.ingest.fetcher import EventFetcher, estimate_fetch_time
from token_holder_indexer.models import NULL_ADDRESS, CancellationToken, EventKind

ALICE = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
BOB = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"


def _address_topic(address: str) -> str:
    return "0x" + "0" * 24 + address[2:]


def _uint_topic(value: int) -> str:
    return "0x" + f"{value:064x}"


def erc721_log(from_address: str, to_address: str, token_id: int, block: int, log_index: int = 0) -> dict[str, Any]:
    return {
        "topics": [TRANSFER_TOPIC, _address_topic(from_address), _address_topic(to_address), _uint_topic(token_id)],
        "data": "0x",
        "blockNumber": block,
        "transactionHash": "0x" + f"{block:064x}",
        "logIndex": log_index,
    }


def erc1155_single_log(from_address: str, to_address: str, token_id: int, amount: int, block: int) -> dict[str, Any]:
    return {
        "topics": [TRANSFER_SINGLE_TOPIC, _address_topic(ALICE), _address_topic(from_address), _address_topic(to_address)],
        "data": encode(["uint256", "uint256"], [token_id, amount]),
        "blockNumber": block,
        "transactionHash": "0x" + f"{block:064x}",
        "logIndex": 1,
    }


def erc1155_batch_log(ids: list[int], values: list[int], block: int) -> dict[str, Any]:
    return {
        "topics": [TRANSFER_BATCH_TOPIC, _address_topic(ALICE), _address_topic(NULL_ADDRESS), _address_topic(BOB)],
        "data": encode(["uint256[]", "uint256[]"], [ids, values]),
        "blockNumber": block,
        "transactionHash": "0x" + f"{block + 1:064x}",
        "logIndex": 0,
    }


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def provider() -> MagicMock:
    provider = MagicMock()
    provider.get_logs = AsyncMock(return_value=[])
    provider.get_block_number = AsyncMock(return_value=10_000)
    provider.get_block_timestamp = AsyncMock(
        side_effect=lambda n: datetime.fromtimestamp(1_700_000_000 + n * 12, tz=UTC)
    )
    return provider


def make_fetcher(provider: MagicMock, contract, **kwargs: Any) -> EventFetcher:
    options: dict[str, Any] = {
        "chunk_size": 40,
        "min_chunk_size": 10,
        "max_chunk_size": 100,
        "max_attempts": 1,
        "retry_delay_seconds": 0,
        "inter_chunk_delay_seconds": 0,
    }
    options.update(kwargs)
    return EventFetcher(provider, contract, **options)


# ============================================================================
# fetch_chunk
# ============================================================================


class TestFetchChunk:
    @pytest.mark.asyncio
    async def test_erc721_uses_transfer_topic(self, provider, erc721_contract) -> None:
        provider.get_logs.return_value = [erc721_log(NULL_ADDRESS, ALICE, 7, 120)]
        fetcher = make_fetcher(provider, erc721_contract)

        events = await fetcher.fetch_chunk(100, 139)

        assert provider.get_logs.await_count == 1
        params = provider.get_logs.await_args.args[0]
        assert params["topics"] == [TRANSFER_TOPIC]
        assert params["fromBlock"] == 100
        assert params["toBlock"] == 139
        assert len(events) == 1
        assert events[0].token_id == 7
        assert events[0].amount == 1
        assert events[0].to_address == ALICE
        assert events[0].block_timestamp == datetime.fromtimestamp(1_700_000_000 + 120 * 12, tz=UTC)

    @pytest.mark.asyncio
    async def test_topic_fetches_run_at_most_two_at_a_time(self, provider, erc1155_contract, monkeypatch) -> None:
        active = 0
        peak = 0

        async def get_logs(params: dict[str, Any]) -> list[dict[str, Any]]:
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return []

        provider.get_logs.side_effect = get_logs
        fetcher = make_fetcher(provider, erc1155_contract)
        monkeypatch.setattr(fetcher, "_topics", lambda: [TRANSFER_SINGLE_TOPIC, TRANSFER_BATCH_TOPIC] * 3)

        assert await fetcher.fetch_chunk(100, 139) == []

        assert provider.get_logs.await_count == 6
        assert peak == 2

    @pytest.mark.asyncio
    async def test_erc1155_merges_topics_in_canonical_order(self, provider, erc1155_contract) -> None:
        async def get_logs(params: dict[str, Any]) -> list[dict[str, Any]]:
            if params["topics"] == [TRANSFER_SINGLE_TOPIC]:
                return [erc1155_single_log(BOB, ALICE, 3, 2, 130)]
            return [erc1155_batch_log([1, 2], [10, 20], 110)]

        provider.get_logs.side_effect = get_logs
        fetcher = make_fetcher(provider, erc1155_contract)

        events = await fetcher.fetch_chunk(100, 139)

        assert provider.get_logs.await_count == 2
        assert [(e.block_number, e.batch_index, e.token_id, e.amount) for e in events] == [
            (110, 0, 1, 10),
            (110, 1, 2, 20),
            (130, 0, 3, 2),
        ]
        assert events[0].event_kind is EventKind.BATCH
        assert events[2].event_kind is EventKind.SINGLE
        assert events[2].operator == ALICE

    @pytest.mark.asyncio
    async def test_undecodable_logs_are_skipped(self, provider, erc721_contract) -> None:
        # ERC-20 style Transfer: token id is not indexed
        bad = erc721_log(NULL_ADDRESS, ALICE, 1, 120)
        bad["topics"] = bad["topics"][:3]
        provider.get_logs.return_value = [bad, erc721_log(NULL_ADDRESS, BOB, 2, 121)]
        fetcher = make_fetcher(provider, erc721_contract)

        events = await fetcher.fetch_chunk(100, 139)

        assert [e.to_address for e in events] == [BOB]

    @pytest.mark.asyncio
    async def test_timestamps_optional(self, provider, erc721_contract) -> None:
        provider.get_logs.return_value = [erc721_log(NULL_ADDRESS, ALICE, 7, 120)]
        fetcher = make_fetcher(provider, erc721_contract, resolve_timestamps=False)

        events = await fetcher.fetch_chunk(100, 139)

        assert events[0].block_timestamp is None
        provider.get_block_timestamp.assert_not_awaited()


# ============================================================================
# fetch_range
# ============================================================================


class TestFetchRange:
    @pytest.mark.asyncio
    async def test_walks_range_in_chunks(self, provider, erc721_contract) -> None:
        fetcher = make_fetcher(provider, erc721_contract)

        result = await fetcher.fetch_range(100, 199)

        windows = [(c.args[0]["fromBlock"], c.args[0]["toBlock"]) for c in provider.get_logs.await_args_list]
        assert windows == [(100, 139), (140, 179), (180, 199)]
        assert result.last_block == 199
        assert result.skipped_ranges == []
        assert not result.cancelled

    @pytest.mark.asyncio
    async def test_shrinks_then_skips_at_floor(self, provider, erc721_contract) -> None:
        async def get_logs(params: dict[str, Any]) -> list[dict[str, Any]]:
            if params["fromBlock"] <= 125 <= params["toBlock"]:
                raise RPCError("query returned more than 10000 results")
            return []

        provider.get_logs.side_effect = get_logs
        fetcher = make_fetcher(provider, erc721_contract)

        result = await fetcher.fetch_range(100, 199)

        assert [(r.from_block, r.to_block) for r in result.skipped_ranges] == [(120, 129)]
        assert "more than 10000 results" in result.skipped_ranges[0].reason
        assert result.final_chunk_size == 10
        assert result.last_block == 199

    @pytest.mark.asyncio
    async def test_retries_before_shrinking(self, provider, erc721_contract) -> None:
        calls = {"n": 0}

        async def flaky(params: dict[str, Any]) -> list[dict[str, Any]]:
            calls["n"] += 1
            if calls["n"] == 1:
                raise RPCError("timeout")
            return [erc721_log(NULL_ADDRESS, ALICE, 1, params["fromBlock"])]

        provider.get_logs.side_effect = flaky
        fetcher = make_fetcher(provider, erc721_contract, max_attempts=2)

        result = await fetcher.fetch_range(100, 139)

        assert result.final_chunk_size == 40
        assert len(result.events) == 1

    @pytest.mark.asyncio
    async def test_progress_reported_per_chunk(self, provider, erc721_contract) -> None:
        progress = []
        fetcher = make_fetcher(provider, erc721_contract, on_progress=progress.append)

        await fetcher.fetch_range(100, 179)

        assert [p.current_block for p in progress] == [139, 179]
        assert progress[-1].percent_complete == 100.0
        assert progress[0].total_blocks == 80

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, provider, erc721_contract) -> None:
        cancel = CancellationToken()
        cancel.cancel()
        fetcher = make_fetcher(provider, erc721_contract)

        result = await fetcher.fetch_range(100, 199, cancel=cancel)

        assert result.cancelled
        assert result.last_block == 99
        provider.get_logs.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_range_rejected(self, provider, erc721_contract) -> None:
        fetcher = make_fetcher(provider, erc721_contract)
        with pytest.raises(ValueError):
            await fetcher.fetch_range(200, 100)

    @pytest.mark.asyncio
    async def test_fetch_recent_ends_at_head(self, provider, erc721_contract) -> None:
        provider.get_block_number.return_value = 1_000
        fetcher = make_fetcher(provider, erc721_contract)

        result = await fetcher.fetch_recent(50)

        assert (result.from_block, result.to_block) == (951, 1_000)


class TestChunkSizing:
    def test_chunk_size_is_clamped(self, provider, erc721_contract) -> None:
        assert make_fetcher(provider, erc721_contract, chunk_size=5).chunk_size == 10
        assert make_fetcher(provider, erc721_contract, chunk_size=500).chunk_size == 100

    def test_invalid_bounds_rejected(self, provider, erc721_contract) -> None:
        with pytest.raises(ValueError):
            make_fetcher(provider, erc721_contract, min_chunk_size=200)

    @pytest.mark.asyncio
    async def test_find_optimal_chunk_size(self, provider, erc721_contract) -> None:
        async def get_logs(params: dict[str, Any]) -> list[dict[str, Any]]:
            if params["toBlock"] - params["fromBlock"] + 1 > 1000:
                raise RPCError("range too large")
            return []

        provider.get_logs.side_effect = get_logs
        fetcher = make_fetcher(provider, erc721_contract, max_chunk_size=5000)

        assert await fetcher.find_optimal_chunk_size() == 1000

    def test_estimate_fetch_time(self) -> None:
        assert estimate_fetch_time(0, 999, 100) == (10, 5.0)
        assert estimate_fetch_time(10, 5) == (0, 0.0)
