"""Tests for the RPC provider manager."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Any
from unittest.mock import MagicMock

import aiohttp
import pytest

from token_holder_indexer.chain.provider import (
    FALLBACK,
    PRIMARY,
    PUBLIC,
    NoProviderAvailableError,
    ProviderManager,
    RateLimiter,
    RPCError,
    is_transport_error,
)

PRIMARY_URL = "https://primary.example/rpc"
FALLBACK_URL = "https://fallback.example/rpc"
PUBLIC_URL = "https://public.example/rpc"


class FakeEth:
    """Minimal stand-in for `AsyncWeb3.eth`."""

    def __init__(self, *, head: int = 100, healthy: bool = True) -> None:
        self.head = head
        self.healthy = healthy
        self.logs_error: BaseException | None = None
        self.get_logs_calls = 0
        self.get_block_calls = 0

    async def _block_number(self) -> int:
        if not self.healthy:
            raise aiohttp.ClientConnectionError("connection refused")
        return self.head

    @property
    def block_number(self) -> Any:
        return self._block_number()

    async def get_logs(self, params: dict[str, Any]) -> list[dict[str, Any]]:
        self.get_logs_calls += 1
        if self.logs_error is not None:
            raise self.logs_error
        return [{"blockNumber": params["fromBlock"], "logIndex": 0}]

    async def get_block(self, number: int) -> dict[str, Any]:
        self.get_block_calls += 1
        return {"number": number, "timestamp": 1_000 + number * 12, "hash": b"\x01" * 32}

    async def get_code(self, address: str, block: Any) -> bytes:
        return b"\x60\x80"


class FakeClient:
    def __init__(self, **kwargs: Any) -> None:
        self.eth = FakeEth(**kwargs)
        self.provider = object()


class FakeRedis:
    def __init__(self) -> None:
        self.store: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self.store.get(key)

    async def set(self, key: str, value: str, ex: int | None = None) -> None:
        self.store[key] = value


def make_manager(clients: dict[str, FakeClient], **kwargs: Any) -> ProviderManager:
    urls = {PRIMARY: PRIMARY_URL, FALLBACK: FALLBACK_URL, PUBLIC: PUBLIC_URL}
    by_url = {urls[name]: client for name, client in clients.items()}
    options: dict[str, Any] = {
        "retry_delay_seconds": 0,
        "restore_delay_seconds": 3600,
        "max_requests_per_second": 1000,
    }
    options.update(kwargs)
    return ProviderManager(
        PRIMARY_URL if PRIMARY in clients else None,
        fallback_url=FALLBACK_URL if FALLBACK in clients else None,
        public_url=PUBLIC_URL if PUBLIC in clients else None,
        web3_factory=lambda url: by_url[url],
        **options,
    )


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
async def managed():
    """Yields a factory; every manager it builds is closed after the test."""
    managers: list[ProviderManager] = []

    def factory(clients: dict[str, FakeClient], **kwargs: Any) -> ProviderManager:
        manager = make_manager(clients, **kwargs)
        managers.append(manager)
        return manager

    yield factory
    for manager in managers:
        await manager.aclose()


# ============================================================================
# Connection management
# ============================================================================


class TestConnection:
    def test_requires_an_endpoint(self) -> None:
        with pytest.raises(ValueError):
            ProviderManager(None)

    @pytest.mark.asyncio
    async def test_primary_used_when_healthy(self, managed) -> None:
        manager = managed({PRIMARY: FakeClient(), FALLBACK: FakeClient()})

        assert await manager.get_block_number() == 100
        assert manager.active_endpoint == PRIMARY
        assert not manager.failover_active

    @pytest.mark.asyncio
    async def test_falls_back_when_primary_unreachable(self, managed) -> None:
        manager = managed({PRIMARY: FakeClient(healthy=False), FALLBACK: FakeClient(head=99)})

        assert await manager.get_block_number() == 99
        assert manager.active_endpoint == FALLBACK
        assert manager.failover_active

    @pytest.mark.asyncio
    async def test_public_endpoint_is_last_resort(self, managed) -> None:
        manager = managed(
            {
                PRIMARY: FakeClient(healthy=False),
                FALLBACK: FakeClient(healthy=False),
                PUBLIC: FakeClient(head=98),
            }
        )

        assert await manager.get_block_number() == 98
        assert manager.active_endpoint == PUBLIC

    @pytest.mark.asyncio
    async def test_no_endpoint_reachable(self, managed) -> None:
        manager = managed({PRIMARY: FakeClient(healthy=False)})

        with pytest.raises(NoProviderAvailableError):
            await manager.get_connection()

    @pytest.mark.asyncio
    async def test_primary_restored_in_background(self, managed) -> None:
        primary = FakeClient(healthy=False)
        manager = managed({PRIMARY: primary, FALLBACK: FakeClient()}, restore_delay_seconds=0.01)

        await manager.get_connection()
        assert manager.active_endpoint == FALLBACK

        primary.eth.healthy = True
        for _ in range(50):
            if manager.active_endpoint == PRIMARY:
                break
            await asyncio.sleep(0.01)

        assert manager.active_endpoint == PRIMARY
        assert not manager.failover_active


# ============================================================================
# Retries and failover
# ============================================================================


class TestExecuteWithRetry:
    @pytest.mark.asyncio
    async def test_transport_error_switches_endpoint(self, managed) -> None:
        primary = FakeClient()
        fallback = FakeClient()
        primary.eth.logs_error = aiohttp.ClientConnectionError("reset by peer")
        manager = managed({PRIMARY: primary, FALLBACK: fallback})

        logs = await manager.get_logs({"fromBlock": 5, "toBlock": 10})

        assert logs == [{"blockNumber": 5, "logIndex": 0}]
        assert manager.active_endpoint == FALLBACK
        stats = manager.get_stats()
        assert stats.retry_count == 1
        assert stats.switch_count == 1
        assert stats.failover_active

    @pytest.mark.asyncio
    async def test_request_error_retries_same_endpoint(self, managed) -> None:
        primary = FakeClient()
        fallback = FakeClient()
        primary.eth.logs_error = ValueError("query returned more than 10000 results")
        manager = managed({PRIMARY: primary, FALLBACK: fallback}, max_retries=2)

        with pytest.raises(RPCError, match="eth_getLogs failed after 3 attempts"):
            await manager.get_logs({"fromBlock": 5, "toBlock": 10})

        assert primary.eth.get_logs_calls == 3
        assert fallback.eth.get_logs_calls == 0
        assert manager.active_endpoint == PRIMARY

    @pytest.mark.asyncio
    async def test_health_check(self, managed) -> None:
        assert await managed({PRIMARY: FakeClient()}).health_check()


class TestIsTransportError:
    def test_network_errors(self) -> None:
        assert is_transport_error(asyncio.TimeoutError())
        assert is_transport_error(ConnectionResetError())
        assert is_transport_error(aiohttp.ClientConnectionError())

    def test_http_status(self) -> None:
        server = aiohttp.ClientResponseError(request_info=MagicMock(), history=(), status=503)
        client = aiohttp.ClientResponseError(request_info=MagicMock(), history=(), status=400)
        assert is_transport_error(server)
        assert not is_transport_error(client)

    def test_rpc_internal_error(self) -> None:
        assert is_transport_error(ValueError({"code": -32603, "message": "internal error"}))
        assert not is_transport_error(ValueError({"code": 3, "message": "execution reverted"}))


# ============================================================================
# Reads
# ============================================================================


class TestReads:
    @pytest.mark.asyncio
    async def test_block_cached_in_redis(self, managed) -> None:
        client = FakeClient()
        redis = FakeRedis()
        manager = managed({PRIMARY: client}, redis=redis, chain_id=5)

        first = await manager.get_block(42)
        second = await manager.get_block(42)

        assert first["timestamp"] == second["timestamp"] == 1_000 + 42 * 12
        assert client.eth.get_block_calls == 1
        assert "chain:5:block:42" in redis.store

    @pytest.mark.asyncio
    async def test_block_timestamp(self, managed) -> None:
        manager = managed({PRIMARY: FakeClient()})

        assert await manager.get_block_timestamp(10) == datetime.fromtimestamp(1_120, tz=UTC)

    @pytest.mark.asyncio
    async def test_negative_block_rejected(self, managed) -> None:
        manager = managed({PRIMARY: FakeClient()})
        with pytest.raises(ValueError):
            await manager.get_block(-1)

    @pytest.mark.asyncio
    async def test_block_at_or_before_timestamp(self, managed) -> None:
        manager = managed({PRIMARY: FakeClient(head=100)})

        exact = datetime.fromtimestamp(1_000 + 50 * 12, tz=UTC)
        between = datetime.fromtimestamp(1_000 + 50 * 12 + 5, tz=UTC)

        assert await manager.get_block_number_at_or_before(exact) == 50
        assert await manager.get_block_number_at_or_before(between) == 50
        assert await manager.get_block_number_at_or_before(datetime.fromtimestamp(0, tz=UTC)) == 0
        assert await manager.get_block_number_at_or_before(datetime.fromtimestamp(10**10, tz=UTC)) == 100

    @pytest.mark.asyncio
    async def test_naive_timestamp_rejected(self, managed) -> None:
        manager = managed({PRIMARY: FakeClient()})
        with pytest.raises(ValueError):
            await manager.get_block_number_at_or_before(datetime(2024, 1, 1))

    @pytest.mark.asyncio
    async def test_get_code(self, managed) -> None:
        manager = managed({PRIMARY: FakeClient()})
        assert await manager.get_code("0x1234567890abcdef1234567890abcdef12345678") == b"\x60\x80"


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_burst_within_capacity(self) -> None:
        limiter = RateLimiter.create(10)
        for _ in range(10):
            await limiter.acquire()
        assert limiter.tokens < 1
