"""RPC provider manager with ordered failover and background restore.

Endpoints are tried in a fixed order: primary, fallback, public. The manager
keeps one active connection; transport-class failures switch to the next
healthy endpoint and schedule a background probe that moves traffic back to
the primary once it answers again. Immutable reads (blocks) are optionally
cached in Redis.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any, TypeVar, cast

import aiohttp
from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.exceptions import ProviderConnectionError, TimeExhausted, Web3Exception
from web3.providers import AsyncHTTPProvider

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT_SECONDS = 5.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_MAX_RETRY_DELAY_SECONDS = 10.0
DEFAULT_RESTORE_DELAY_SECONDS = 60.0
DEFAULT_RESTORE_INTERVAL_SECONDS = 120.0
DEFAULT_MAX_REQUESTS_PER_SECOND = 25.0
DEFAULT_REQUEST_TIMEOUT_SECONDS = 30

BLOCK_CACHE_TTL_SECONDS = 3600

PRIMARY = "primary"
FALLBACK = "fallback"
PUBLIC = "public"

# JSON-RPC "internal error"; nodes use it for overloaded/backend failures.
_RPC_INTERNAL_ERROR = -32603

_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    Web3Exception,
    aiohttp.ClientError,
    asyncio.TimeoutError,
    OSError,
    ValueError,
)

T = TypeVar("T")
Web3Factory = Callable[[str], AsyncWeb3]


def _json_default(value: object) -> object:
    """Serialize Web3 RPC objects that stdlib json can't encode."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class ProviderError(Exception):
    """Base exception for provider errors."""


class RPCError(ProviderError):
    """Raised when an RPC call fails after all retries."""


class NoProviderAvailableError(ProviderError):
    """Raised when no configured endpoint answers."""


def is_transport_error(error: BaseException) -> bool:
    """Return True for failures that justify switching endpoints.

    Network errors, timeouts, HTTP 5xx and JSON-RPC internal errors switch;
    request-level errors (bad params, reverts) are retried on the same endpoint.
    """
    if isinstance(
        error,
        (asyncio.TimeoutError, OSError, aiohttp.ClientConnectionError, ProviderConnectionError, TimeExhausted),
    ):
        return True
    if isinstance(error, aiohttp.ClientResponseError):
        return error.status >= 500
    rpc_response = getattr(error, "rpc_response", None)
    if isinstance(rpc_response, dict):
        rpc_error = rpc_response.get("error")
        if isinstance(rpc_error, dict) and rpc_error.get("code") == _RPC_INTERNAL_ERROR:
            return True
    return str(_RPC_INTERNAL_ERROR) in str(error)


@dataclass
class RateLimiter:
    """Token bucket rate limiter."""

    max_tokens: float
    refill_rate: float
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> RateLimiter:
        return cls(
            max_tokens=max_requests_per_second,
            refill_rate=max_requests_per_second,
            tokens=max_requests_per_second,
            last_refill=time.monotonic(),
        )

    async def acquire(self, tokens: float = 1.0) -> None:
        while True:
            now = time.monotonic()
            self.tokens = min(self.max_tokens, self.tokens + (now - self.last_refill) * self.refill_rate)
            self.last_refill = now
            if self.tokens >= tokens:
                self.tokens -= tokens
                return
            await asyncio.sleep((tokens - self.tokens) / self.refill_rate)


@dataclass(frozen=True)
class ProviderStats:
    """Point-in-time view of the manager's failover state."""

    active: str | None
    primary_configured: bool
    fallback_configured: bool
    public_configured: bool
    failover_active: bool
    retry_count: int
    switch_count: int


def _new_web3_client(rpc_url: str) -> AsyncWeb3:
    return AsyncWeb3(
        AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": DEFAULT_REQUEST_TIMEOUT_SECONDS})
    )


class ProviderManager:
    """Chain RPC access with ordered failover, retries and caching.

    Example:
        ```python
        provider = ProviderManager(
            "https://mainnet.example/rpc/KEY",
            fallback_url="https://backup.example/rpc",
            public_url="https://ethereum-rpc.publicnode.com",
        )
        head = await provider.get_block_number()
        logs = await provider.get_logs({"fromBlock": head - 10, "toBlock": head})
        await provider.aclose()
        ```
    """

    def __init__(
        self,
        primary_url: str | None,
        *,
        fallback_url: str | None = None,
        public_url: str | None = None,
        redis: Redis | None = None,
        chain_id: int = 1,
        connect_timeout_seconds: float = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        max_retry_delay_seconds: float = DEFAULT_MAX_RETRY_DELAY_SECONDS,
        restore_delay_seconds: float = DEFAULT_RESTORE_DELAY_SECONDS,
        restore_interval_seconds: float = DEFAULT_RESTORE_INTERVAL_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        web3_factory: Web3Factory | None = None,
    ) -> None:
        """Initialize the provider manager.

        Args:
            primary_url: Primary RPC endpoint URL.
            fallback_url: Optional fallback endpoint.
            public_url: Optional best-effort public endpoint, tried last.
            redis: Optional Redis client for caching immutable reads.
            chain_id: Chain ID, used to namespace cache keys.
            connect_timeout_seconds: Timeout for an endpoint connectivity probe.
            max_retries: Retries after the first attempt of each call.
            retry_delay_seconds: Base delay for exponential backoff.
            max_retry_delay_seconds: Backoff cap.
            restore_delay_seconds: Delay before the first primary restore probe.
            restore_interval_seconds: Interval between later restore probes.
            max_requests_per_second: Client-side rate limit.
            web3_factory: Builds an AsyncWeb3 client for a URL.
        """
        urls = {PRIMARY: primary_url, FALLBACK: fallback_url, PUBLIC: public_url}
        self._urls = {name: url for name, url in urls.items() if url}
        if not self._urls:
            raise ValueError("At least one RPC endpoint URL is required")

        factory = web3_factory or _new_web3_client
        self._clients: dict[str, AsyncWeb3] = {name: factory(url) for name, url in self._urls.items()}
        self._order = [name for name in (PRIMARY, FALLBACK, PUBLIC) if name in self._clients]

        self._redis = redis
        self._cache_prefix = f"chain:{chain_id}:"
        self._connect_timeout = connect_timeout_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._max_retry_delay = max_retry_delay_seconds
        self._restore_delay = restore_delay_seconds
        self._restore_interval = restore_interval_seconds
        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        self._active: str | None = None
        self._failover_active = False
        self._retry_count = 0
        self._switch_count = 0
        self._switch_lock = asyncio.Lock()
        self._restore_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    @property
    def active_endpoint(self) -> str | None:
        return self._active

    @property
    def failover_active(self) -> bool:
        return self._failover_active

    async def _probe(self, name: str) -> bool:
        """Check that an endpoint answers eth_blockNumber within the connect timeout."""
        client = self._clients[name]
        try:
            await asyncio.wait_for(client.eth.block_number, timeout=self._connect_timeout)
            return True
        except Exception as e:
            logger.warning("RPC endpoint %s unreachable: %s", name, e)
            return False

    def _activate(self, name: str) -> None:
        previous = self._active
        self._active = name
        if name == PRIMARY:
            self._failover_active = False
            return
        self._failover_active = PRIMARY in self._clients
        if previous is not None and previous != name:
            self._switch_count += 1
        logger.warning("Using %s RPC endpoint (previous: %s)", name, previous or "none")
        if self._failover_active:
            self._schedule_restore()

    async def get_connection(self) -> AsyncWeb3:
        """Return a working connection, establishing one if needed.

        Raises:
            NoProviderAvailableError: If no endpoint answers.
        """
        if self._active is not None:
            return self._clients[self._active]
        async with self._switch_lock:
            if self._active is None:
                for name in self._order:
                    if await self._probe(name):
                        self._activate(name)
                        break
                else:
                    raise NoProviderAvailableError(f"No RPC endpoint reachable (tried: {', '.join(self._order)})")
        assert self._active is not None
        return self._clients[self._active]

    async def switch_provider(self) -> bool:
        """Move to the next healthy endpoint after the active one.

        Returns:
            True if a different endpoint is now active.
        """
        async with self._switch_lock:
            current = self._active
            start = self._order.index(current) + 1 if current in self._order else 0
            for name in self._order[start:]:
                if await self._probe(name):
                    self._activate(name)
                    return True
            logger.error("No healthy RPC endpoint after %s (staying on it)", current)
            return False

    def _schedule_restore(self) -> None:
        if self._restore_task is not None and not self._restore_task.done():
            return
        self._restore_task = asyncio.get_running_loop().create_task(self._restore_primary_loop())

    async def _restore_primary_loop(self) -> None:
        delay = self._restore_delay
        while True:
            await asyncio.sleep(delay)
            if await self._probe(PRIMARY):
                async with self._switch_lock:
                    self._activate(PRIMARY)
                logger.info("Primary RPC endpoint restored")
                return
            delay = self._restore_interval

    def _backoff(self, attempt: int) -> float:
        return float(min(self._retry_delay * (2**attempt), self._max_retry_delay))

    async def execute_with_retry(
        self,
        fn: Callable[[AsyncWeb3], Awaitable[T]],
        *,
        label: str = "rpc call",
    ) -> T:
        """Run `fn` against the active connection with retries and failover.

        Args:
            fn: Coroutine factory receiving the active AsyncWeb3 client.
            label: Name used in logs and errors.

        Returns:
            Result of `fn`.

        Raises:
            RPCError: If every attempt fails.
            NoProviderAvailableError: If no endpoint is reachable at all.
        """
        await self._rate_limiter.acquire()

        attempts = self._max_retries + 1
        last_error: BaseException | None = None
        for attempt in range(attempts):
            w3 = await self.get_connection()
            try:
                return await fn(w3)
            except _RETRYABLE_ERRORS as e:
                last_error = e
                self._retry_count += 1
                logger.warning(
                    "%s failed on %s endpoint (attempt %d/%d): %s",
                    label,
                    self._active,
                    attempt + 1,
                    attempts,
                    e,
                )
                if is_transport_error(e):
                    await self.switch_provider()
                if attempt < attempts - 1:
                    await asyncio.sleep(self._backoff(attempt))

        raise RPCError(f"{label} failed after {attempts} attempts: {last_error}") from last_error

    def get_stats(self) -> ProviderStats:
        return ProviderStats(
            active=self._active,
            primary_configured=PRIMARY in self._clients,
            fallback_configured=FALLBACK in self._clients,
            public_configured=PUBLIC in self._clients,
            failover_active=self._failover_active,
            retry_count=self._retry_count,
            switch_count=self._switch_count,
        )

    # ------------------------------------------------------------------
    # Cache helpers
    # ------------------------------------------------------------------

    async def _get_cached(self, key: str) -> str | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
            if isinstance(value, bytes):
                return value.decode()
            return str(value) if value is not None else None
        except Exception as e:
            logger.warning("Cache get failed: %s", e)
            return None

    async def _set_cached(self, key: str, value: str, ttl: int) -> None:
        if not self._redis:
            return
        try:
            await self._redis.set(key, value, ex=ttl)
        except Exception as e:
            logger.warning("Cache set failed: %s", e)

    # ------------------------------------------------------------------
    # Chain reads
    # ------------------------------------------------------------------

    async def get_block_number(self) -> int:
        """Get the current head block number."""

        async def call(w3: AsyncWeb3) -> int:
            return int(await w3.eth.block_number)

        return await self.execute_with_retry(call, label="eth_blockNumber")

    async def get_block(self, block_number: int) -> dict[str, Any]:
        """Get block by number (cached; blocks are immutable)."""
        if block_number < 0:
            raise ValueError("block_number must be >= 0")

        cache_key = f"{self._cache_prefix}block:{block_number}"
        cached = await self._get_cached(cache_key)
        if cached is not None:
            return cast(dict[str, Any], json.loads(cached))

        block = await self.execute_with_retry(
            lambda w3: w3.eth.get_block(block_number),
            label=f"eth_getBlockByNumber({block_number})",
        )
        block_dict = dict(block)
        block_dict["number"] = int(block_dict.get("number", block_number))
        block_dict["timestamp"] = int(block_dict["timestamp"])

        await self._set_cached(
            cache_key,
            json.dumps(block_dict, default=_json_default),
            ttl=BLOCK_CACHE_TTL_SECONDS,
        )
        return block_dict

    async def get_block_timestamp(self, block_number: int) -> datetime:
        block = await self.get_block(block_number)
        return datetime.fromtimestamp(int(block["timestamp"]), tz=UTC)

    async def get_logs(self, filter_params: dict[str, Any]) -> list[dict[str, Any]]:
        """Fetch logs via `eth_getLogs` with retry/failover semantics."""
        logs = await self.execute_with_retry(
            lambda w3: w3.eth.get_logs(filter_params),
            label="eth_getLogs",
        )
        return [dict(log) for log in logs]

    async def get_code(self, address: str, block_number: int | str = "latest") -> bytes:
        code = await self.execute_with_retry(
            lambda w3: w3.eth.get_code(AsyncWeb3.to_checksum_address(address), block_number),
            label="eth_getCode",
        )
        return bytes(code)

    async def get_block_number_at_or_before(self, ts: datetime) -> int:
        """Resolve a timestamp to the latest block at-or-before it (binary search)."""
        if ts.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")

        target = int(ts.timestamp())

        genesis = await self.get_block(0)
        if target <= int(genesis["timestamp"]):
            return 0

        latest_number = await self.get_block_number()
        latest = await self.get_block(latest_number)
        if target >= int(latest["timestamp"]):
            return latest_number

        lo = 0
        hi = latest_number
        while lo + 1 < hi:
            mid = (lo + hi) // 2
            mid_block = await self.get_block(mid)
            if int(mid_block["timestamp"]) <= target:
                lo = mid
            else:
                hi = mid
        return lo

    async def health_check(self) -> bool:
        """Check if any endpoint can serve requests."""
        try:
            await self.get_block_number()
            return True
        except ProviderError:
            return False

    async def aclose(self) -> None:
        """Cancel the restore probe and close HTTP provider sessions."""
        if self._restore_task is not None:
            self._restore_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._restore_task
            self._restore_task = None

        for name, client in self._clients.items():
            disconnect = getattr(client.provider, "disconnect", None)
            if not callable(disconnect):
                continue
            try:
                result = disconnect()
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.warning("Failed to close %s RPC provider session: %s", name, e)
