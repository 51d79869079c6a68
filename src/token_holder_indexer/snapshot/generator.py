"""Holder snapshots from the live ledger or from event replay.

A current snapshot reads the ledger (after a time-boxed opportunistic sync);
a historical snapshot replays the stored events up to the requested block
through the same `BalanceBook` the ledger is maintained with. Both rank
holders by balance, compute percentages against the full supply of the
selected tokens and optionally attach distribution metadata. Results are
cached for a TTL keyed by a hash of the request parameters.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal, localcontext
from typing import TYPE_CHECKING, Any

from token_holder_indexer.ingest.ledger import BalanceBook
from token_holder_indexer.models import LedgerKey, normalize_address
from token_holder_indexer.storage.repos import (
    LedgerRepository,
    SnapshotCacheDTO,
    SnapshotCacheRepository,
    SyncStatusRepository,
    TransferEventRepository,
)

if TYPE_CHECKING:
    from token_holder_indexer.chain.provider import ProviderManager
    from token_holder_indexer.ingest.sync import SyncManager
    from token_holder_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 15 * 60
DEFAULT_INLINE_SYNC_TIMEOUT_SECONDS = 5.0
TOP_HOLDERS_COUNT = 10
CONCENTRATION_BUCKETS = (10, 50, 100)

_PERCENT_QUANTUM = Decimal("0.0001")


class SnapshotError(Exception):
    """Raised when a snapshot cannot be produced."""


def percentage_of(part: int, whole: int) -> Decimal:
    """`part / whole * 100`, rounded to 4 places; 0 when whole is 0."""
    if whole <= 0:
        return Decimal(0)
    with localcontext() as ctx:
        ctx.prec = 100
        return (Decimal(part) * 100 / Decimal(whole)).quantize(_PERCENT_QUANTUM)


@dataclass(frozen=True)
class SnapshotRequest:
    """Parameters of a snapshot; also the cache identity."""

    contract: str
    token_ids: tuple[int, ...] = ()
    block_number: int | None = None
    include_zero_balances: bool = False
    include_metadata: bool = True
    min_balance: int | None = None
    limit: int | None = None
    offset: int = 0

    def __post_init__(self) -> None:
        object.__setattr__(self, "contract", normalize_address(self.contract))
        object.__setattr__(self, "token_ids", tuple(sorted(set(self.token_ids))))
        if self.block_number is not None and self.block_number < 0:
            raise ValueError("block_number must be >= 0")
        if self.limit is not None and self.limit < 0:
            raise ValueError("limit must be >= 0")
        if self.offset < 0:
            raise ValueError("offset must be >= 0")
        if self.min_balance is not None and self.min_balance < 0:
            raise ValueError("min_balance must be >= 0")

    def cache_key(self) -> str:
        params = {
            "contract": self.contract,
            "token_ids": [str(t) for t in self.token_ids],
            "block_number": self.block_number,
            "include_zero_balances": self.include_zero_balances,
            "include_metadata": self.include_metadata,
            "min_balance": str(self.min_balance) if self.min_balance is not None else None,
            "limit": self.limit,
            "offset": self.offset,
        }
        canonical = json.dumps(params, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()


@dataclass(frozen=True)
class SnapshotHolder:
    holder_address: str
    balance: int
    rank: int
    percentage: Decimal
    balances: dict[int, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "holder_address": self.holder_address,
            "balance": str(self.balance),
            "rank": self.rank,
            "percentage": str(self.percentage),
            "balances": {str(k): str(v) for k, v in self.balances.items()},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SnapshotHolder:
        return cls(
            holder_address=data["holder_address"],
            balance=int(data["balance"]),
            rank=int(data["rank"]),
            percentage=Decimal(data["percentage"]),
            balances={int(k): int(v) for k, v in data.get("balances", {}).items()},
        )


@dataclass(frozen=True)
class SnapshotMetadata:
    top_holders: list[SnapshotHolder]
    concentration: dict[str, Decimal]
    mean_balance: int
    median_balance: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "top_holders": [h.to_dict() for h in self.top_holders],
            "concentration": {k: str(v) for k, v in self.concentration.items()},
            "mean_balance": str(self.mean_balance),
            "median_balance": str(self.median_balance),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> SnapshotMetadata:
        return cls(
            top_holders=[SnapshotHolder.from_dict(h) for h in data["top_holders"]],
            concentration={k: Decimal(v) for k, v in data["concentration"].items()},
            mean_balance=int(data["mean_balance"]),
            median_balance=int(data["median_balance"]),
        )


@dataclass(frozen=True)
class Snapshot:
    """Ranked holder list at a block.

    `total_supply` covers every holder of the selected tokens; `holder_count`
    counts holders that pass the filters, before pagination.
    """

    contract: str
    token_ids: tuple[int, ...]
    block_number: int | None
    timestamp: datetime | None
    total_supply: int
    holder_count: int
    holders: list[SnapshotHolder]
    metadata: SnapshotMetadata | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "contract": self.contract,
            "token_ids": [str(t) for t in self.token_ids],
            "block_number": self.block_number,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "total_supply": str(self.total_supply),
            "holder_count": self.holder_count,
            "holders": [h.to_dict() for h in self.holders],
            "metadata": self.metadata.to_dict() if self.metadata else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Snapshot:
        timestamp = data.get("timestamp")
        metadata = data.get("metadata")
        return cls(
            contract=data["contract"],
            token_ids=tuple(int(t) for t in data["token_ids"]),
            block_number=data.get("block_number"),
            timestamp=datetime.fromisoformat(timestamp) if timestamp else None,
            total_supply=int(data["total_supply"]),
            holder_count=int(data["holder_count"]),
            holders=[SnapshotHolder.from_dict(h) for h in data["holders"]],
            metadata=SnapshotMetadata.from_dict(metadata) if metadata else None,
        )

    def balances_by_address(self) -> dict[str, int]:
        return {h.holder_address: h.balance for h in self.holders}


@dataclass(frozen=True)
class BalanceChange:
    address: str
    old_balance: int
    new_balance: int

    @property
    def change(self) -> int:
        return self.new_balance - self.old_balance


@dataclass(frozen=True)
class SnapshotDiff:
    holders_added: list[str]
    holders_removed: list[str]
    balance_changes: list[BalanceChange]


def _compute_metadata(ranked: list[SnapshotHolder], total_supply: int) -> SnapshotMetadata:
    concentration = {
        f"top{n}": percentage_of(sum(h.balance for h in ranked[:n]), total_supply) for n in CONCENTRATION_BUCKETS
    }
    if not ranked:
        return SnapshotMetadata(top_holders=[], concentration=concentration, mean_balance=0, median_balance=0)
    total = sum(h.balance for h in ranked)
    return SnapshotMetadata(
        top_holders=ranked[:TOP_HOLDERS_COUNT],
        concentration=concentration,
        mean_balance=total // len(ranked),
        median_balance=ranked[len(ranked) // 2].balance,
    )


def build_snapshot(
    request: SnapshotRequest,
    *,
    totals: Mapping[str, int],
    breakdown: Mapping[str, Mapping[int, int]] | None = None,
    block_number: int | None,
    timestamp: datetime | None,
) -> Snapshot:
    """Rank per-holder totals into a snapshot.

    Args:
        request: Filters, pagination and metadata switch.
        totals: Balance per holder address over the selected tokens.
        breakdown: Optional per-token balances per holder.
        block_number: Block the balances are valid at.
        timestamp: Timestamp of that block, if known.
    """
    breakdown = breakdown or {}
    total_supply = sum(totals.values())

    candidates = []
    for address in sorted(totals):
        balance = totals[address]
        if balance == 0 and not request.include_zero_balances:
            continue
        if request.min_balance is not None and balance < request.min_balance:
            continue
        candidates.append((address, balance))

    # Stable sort: equal balances keep address order.
    candidates.sort(key=lambda item: item[1], reverse=True)
    ranked = [
        SnapshotHolder(
            holder_address=address,
            balance=balance,
            rank=position + 1,
            percentage=percentage_of(balance, total_supply),
            balances=dict(sorted(breakdown.get(address, {}).items())),
        )
        for position, (address, balance) in enumerate(candidates)
    ]

    end = None if request.limit is None else request.offset + request.limit
    return Snapshot(
        contract=request.contract,
        token_ids=request.token_ids,
        block_number=block_number,
        timestamp=timestamp,
        total_supply=total_supply,
        holder_count=len(ranked),
        holders=ranked[request.offset : end],
        metadata=_compute_metadata(ranked, total_supply) if request.include_metadata else None,
    )


def aggregate_balances(balances: Mapping[LedgerKey, int]) -> tuple[dict[str, int], dict[str, dict[int, int]]]:
    """Fold `{(address, token): balance}` into per-holder totals and breakdowns."""
    totals: defaultdict[str, int] = defaultdict(int)
    breakdown: defaultdict[str, dict[int, int]] = defaultdict(dict)
    for key in sorted(balances):
        totals[key.address] += balances[key]
        breakdown[key.address][key.token_id] = balances[key]
    return dict(totals), dict(breakdown)


def compare_snapshots(before: Snapshot, after: Snapshot) -> SnapshotDiff:
    """Holders added, removed and changed between two snapshots."""
    old = {a: b for a, b in before.balances_by_address().items() if b > 0}
    new = {a: b for a, b in after.balances_by_address().items() if b > 0}
    return SnapshotDiff(
        holders_added=sorted(set(new) - set(old)),
        holders_removed=sorted(set(old) - set(new)),
        balance_changes=[
            BalanceChange(address=a, old_balance=old[a], new_balance=new[a])
            for a in sorted(set(old) & set(new))
            if old[a] != new[a]
        ],
    )


class SnapshotGenerator:
    """Produces current and historical snapshots for one database."""

    def __init__(
        self,
        db: DatabaseManager,
        *,
        sync_manager: SyncManager | None = None,
        provider: ProviderManager | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        inline_sync_timeout_seconds: float = DEFAULT_INLINE_SYNC_TIMEOUT_SECONDS,
    ) -> None:
        """Initialize the generator.

        Args:
            db: Database manager.
            sync_manager: Used for the opportunistic sync before current snapshots.
            provider: Used to resolve block timestamps of historical snapshots.
            cache_ttl_seconds: Snapshot cache TTL; 0 disables caching.
            inline_sync_timeout_seconds: Time budget of the opportunistic sync.
        """
        self._db = db
        self._sync_manager = sync_manager
        self._provider = provider
        self._cache_ttl = cache_ttl_seconds
        self._inline_sync_timeout = inline_sync_timeout_seconds

    async def generate_snapshot(self, request: SnapshotRequest) -> Snapshot:
        """Serve from cache, else build (historical if a block is given) and cache."""
        cached = await self.get_cached_snapshot(request)
        if cached is not None:
            logger.debug("Snapshot cache hit for %s", request.contract)
            return cached
        if request.block_number is not None:
            snapshot = await self.generate_historical_snapshot(request)
        else:
            snapshot = await self.generate_current_snapshot(request)
        await self.cache_snapshot(request, snapshot)
        return snapshot

    async def _opportunistic_sync(self) -> None:
        if self._sync_manager is None:
            return

        async def run() -> None:
            assert self._sync_manager is not None
            if await self._sync_manager.needs_sync():
                await self._sync_manager.sync_missing_blocks()

        try:
            await asyncio.wait_for(run(), timeout=self._inline_sync_timeout)
        except asyncio.TimeoutError:
            logger.warning("Pre-snapshot sync exceeded %.1fs; using current ledger", self._inline_sync_timeout)
        except Exception as e:
            logger.warning("Pre-snapshot sync failed; using current ledger: %s", e)

    async def generate_current_snapshot(self, request: SnapshotRequest, *, sync_first: bool = True) -> Snapshot:
        """Snapshot of the live ledger."""
        if sync_first:
            await self._opportunistic_sync()

        async with self._db.get_async_session() as session:
            entries = await LedgerRepository(session).list_entries(
                request.contract,
                token_ids=request.token_ids or None,
                include_zero=request.include_zero_balances,
            )
            status = await SyncStatusRepository(session).get(request.contract)

        totals, breakdown = aggregate_balances({e.key: e.balance for e in entries})
        return build_snapshot(
            request,
            totals=totals,
            breakdown=breakdown,
            block_number=status.last_synced_block if status else None,
            timestamp=datetime.now(UTC),
        )

    async def generate_historical_snapshot(self, request: SnapshotRequest) -> Snapshot:
        """Snapshot at `request.block_number` by replaying stored events."""
        if request.block_number is None:
            raise SnapshotError("historical snapshot requires a block number")

        async with self._db.get_async_session() as session:
            event_repo = TransferEventRepository(session)
            events = await event_repo.list_events(
                request.contract,
                to_block=request.block_number,
                token_ids=request.token_ids or None,
            )
            fallback_timestamp = await event_repo.get_latest_timestamp_at_or_before(
                request.contract, request.block_number
            )

        book = BalanceBook()
        book.apply_all(events)
        if book.anomalies:
            logger.warning(
                "Replay to block %d of %s hit %d anomalies",
                request.block_number,
                request.contract,
                len(book.anomalies),
            )
        balances = book.balances(
            token_ids=request.token_ids or None,
            include_zero=request.include_zero_balances,
        )
        totals, breakdown = aggregate_balances(balances)
        timestamp = await self._block_timestamp(request.block_number) or fallback_timestamp
        return build_snapshot(
            request,
            totals=totals,
            breakdown=breakdown,
            block_number=request.block_number,
            timestamp=timestamp,
        )

    async def _block_timestamp(self, block_number: int) -> datetime | None:
        if self._provider is None:
            return None
        try:
            return await self._provider.get_block_timestamp(block_number)
        except Exception as e:
            logger.warning("Could not resolve timestamp of block %d: %s", block_number, e)
            return None

    async def get_cached_snapshot(self, request: SnapshotRequest) -> Snapshot | None:
        if self._cache_ttl <= 0:
            return None
        async with self._db.get_async_session() as session:
            cached = await SnapshotCacheRepository(session).get_valid(request.cache_key())
        if cached is None:
            return None
        return Snapshot.from_dict(json.loads(cached.payload))

    async def cache_snapshot(self, request: SnapshotRequest, snapshot: Snapshot) -> None:
        if self._cache_ttl <= 0:
            return
        async with self._db.get_async_session() as session:
            await SnapshotCacheRepository(session).put(
                SnapshotCacheDTO(
                    cache_key=request.cache_key(),
                    contract_address=request.contract,
                    block_number=snapshot.block_number,
                    token_ids=json.dumps([str(t) for t in request.token_ids]),
                    holder_count=snapshot.holder_count,
                    total_supply=snapshot.total_supply,
                    payload=json.dumps(snapshot.to_dict()),
                    expires_at=datetime.now(UTC) + timedelta(seconds=self._cache_ttl),
                )
            )

    async def clear_expired_cache(self) -> int:
        async with self._db.get_async_session() as session:
            removed = await SnapshotCacheRepository(session).delete_expired()
        logger.info("Removed %d expired snapshot cache entries", removed)
        return removed
