"""Repository pattern implementations for data access.

This module provides data access abstractions for the transfer event store,
the ownership ledger, sync status, skipped ranges, the snapshot cache and
stored Merkle trees. Repositories never commit; the caller's session scope
(`DatabaseManager.get_async_session`) owns the transaction.
"""

from __future__ import annotations

import logging
from collections.abc import Collection, Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, TypeVar

from sqlalchemy import delete, func, select

from token_holder_indexer.models import (
    NULL_ADDRESS,
    EventKey,
    EventKind,
    LedgerKey,
    SkippedRange,
    SyncState,
    TransferEvent,
)
from token_holder_indexer.storage.models import (
    LedgerEntryModel,
    MerkleTreeModel,
    SkippedRangeModel,
    SnapshotCacheModel,
    SyncStatusModel,
    TransferEventModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Keeps IN (...) lists below SQLite's bound-parameter limit.
_IN_CLAUSE_BATCH = 500

_T = TypeVar("_T")


def _batched(items: Sequence[_T], size: int) -> Iterable[Sequence[_T]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


def event_from_model(model: TransferEventModel) -> TransferEvent:
    """Map a stored event row to the domain record."""
    return TransferEvent(
        contract=model.contract_address,
        token_id=model.token_id,
        from_address=model.from_address,
        to_address=model.to_address,
        amount=model.amount,
        block_number=model.block_number,
        tx_hash=model.tx_hash,
        log_index=model.log_index,
        batch_index=model.batch_index,
        event_kind=EventKind(model.event_kind),
        operator=model.operator,
        block_timestamp=model.block_timestamp,
    )


def _event_to_model(event: TransferEvent) -> TransferEventModel:
    return TransferEventModel(
        contract_address=event.contract,
        token_id=event.token_id,
        from_address=event.from_address,
        to_address=event.to_address,
        amount=event.amount,
        operator=event.operator,
        event_kind=event.event_kind.value,
        block_number=event.block_number,
        block_timestamp=event.block_timestamp,
        tx_hash=event.tx_hash,
        log_index=event.log_index,
        batch_index=event.batch_index,
    )


@dataclass
class LedgerEntryDTO:
    """Data transfer object for ledger entries."""

    contract_address: str
    address: str
    token_id: int
    balance: int
    last_updated_block: int

    @classmethod
    def from_model(cls, model: LedgerEntryModel) -> LedgerEntryDTO:
        return cls(
            contract_address=model.contract_address,
            address=model.address,
            token_id=model.token_id,
            balance=model.balance,
            last_updated_block=model.last_updated_block,
        )

    @property
    def key(self) -> LedgerKey:
        return LedgerKey(self.address, self.token_id)


@dataclass
class SyncStatusDTO:
    """Data transfer object for per-contract sync status."""

    contract_address: str
    last_synced_block: int
    status: SyncState
    error_message: str | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: SyncStatusModel) -> SyncStatusDTO:
        return cls(
            contract_address=model.contract_address,
            last_synced_block=model.last_synced_block,
            status=SyncState(model.status),
            error_message=model.error_message,
            updated_at=model.updated_at,
        )


@dataclass
class SnapshotCacheDTO:
    """Data transfer object for cached snapshots."""

    cache_key: str
    contract_address: str
    block_number: int | None
    token_ids: str
    holder_count: int
    total_supply: int
    payload: str
    expires_at: datetime
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: SnapshotCacheModel) -> SnapshotCacheDTO:
        return cls(
            cache_key=model.cache_key,
            contract_address=model.contract_address,
            block_number=model.block_number,
            token_ids=model.token_ids,
            holder_count=model.holder_count,
            total_supply=model.total_supply,
            payload=model.payload,
            expires_at=model.expires_at,
            created_at=model.created_at,
        )


@dataclass
class MerkleTreeDTO:
    """Data transfer object for stored Merkle trees."""

    root: str
    recipients_count: int
    total_amount: int
    leaves_json: str
    contract_address: str | None = None
    token_id: int | None = None
    block_number: int | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: MerkleTreeModel) -> MerkleTreeDTO:
        return cls(
            root=model.root,
            recipients_count=model.recipients_count,
            total_amount=model.total_amount,
            leaves_json=model.leaves_json,
            contract_address=model.contract_address,
            token_id=model.token_id,
            block_number=model.block_number,
            created_at=model.created_at,
        )


@dataclass(frozen=True)
class EventStoreStats:
    total_events: int
    first_block: int | None
    last_block: int | None


class TransferEventRepository:
    """Repository for the append-only transfer event store."""

    def __init__(self, session: AsyncSession) -> None:
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session.
        """
        self.session = session

    async def existing_keys(self, contract: str, keys: Collection[EventKey]) -> set[EventKey]:
        """Return the subset of `keys` already present in the store."""
        if not keys:
            return set()
        wanted = set(keys)
        tx_hashes = sorted({k.tx_hash for k in wanted})
        found: set[EventKey] = set()
        for batch in _batched(tx_hashes, _IN_CLAUSE_BATCH):
            result = await self.session.execute(
                select(
                    TransferEventModel.tx_hash,
                    TransferEventModel.log_index,
                    TransferEventModel.batch_index,
                ).where(
                    TransferEventModel.contract_address == contract,
                    TransferEventModel.tx_hash.in_(batch),
                )
            )
            for tx_hash, log_index, batch_index in result.all():
                key = EventKey(contract, tx_hash, log_index, batch_index)
                if key in wanted:
                    found.add(key)
        return found

    async def insert_many(self, events: Sequence[TransferEvent]) -> int:
        """Insert events. Callers must have filtered duplicates first."""
        if not events:
            return 0
        self.session.add_all([_event_to_model(e) for e in events])
        await self.session.flush()
        return len(events)

    async def list_events(
        self,
        contract: str,
        *,
        from_block: int | None = None,
        to_block: int | None = None,
        token_ids: Collection[int] | None = None,
    ) -> list[TransferEvent]:
        """List events in canonical order (block, log index, batch index)."""
        stmt = select(TransferEventModel).where(TransferEventModel.contract_address == contract)
        if from_block is not None:
            stmt = stmt.where(TransferEventModel.block_number >= from_block)
        if to_block is not None:
            stmt = stmt.where(TransferEventModel.block_number <= to_block)
        if token_ids:
            stmt = stmt.where(TransferEventModel.token_id.in_(list(token_ids)))
        stmt = stmt.order_by(
            TransferEventModel.block_number.asc(),
            TransferEventModel.log_index.asc(),
            TransferEventModel.batch_index.asc(),
        )
        result = await self.session.execute(stmt)
        return [event_from_model(m) for m in result.scalars().all()]

    async def list_participants(self, contract: str, *, token_id: int | None = None) -> list[str]:
        """Distinct non-null addresses that ever sent or received, sorted."""
        addresses: set[str] = set()
        for column in (TransferEventModel.from_address, TransferEventModel.to_address):
            stmt = select(column).distinct().where(TransferEventModel.contract_address == contract)
            if token_id is not None:
                stmt = stmt.where(TransferEventModel.token_id == token_id)
            result = await self.session.execute(stmt)
            addresses.update(result.scalars().all())
        addresses.discard(NULL_ADDRESS)
        return sorted(addresses)

    async def get_stats(self, contract: str) -> EventStoreStats:
        result = await self.session.execute(
            select(
                func.count(TransferEventModel.id),
                func.min(TransferEventModel.block_number),
                func.max(TransferEventModel.block_number),
            ).where(TransferEventModel.contract_address == contract)
        )
        count, first_block, last_block = result.one()
        return EventStoreStats(total_events=int(count or 0), first_block=first_block, last_block=last_block)

    async def get_latest_timestamp_at_or_before(self, contract: str, block_number: int) -> datetime | None:
        result = await self.session.execute(
            select(TransferEventModel.block_timestamp)
            .where(
                TransferEventModel.contract_address == contract,
                TransferEventModel.block_number <= block_number,
                TransferEventModel.block_timestamp.is_not(None),
            )
            .order_by(TransferEventModel.block_number.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def delete_for_contract(self, contract: str) -> int:
        result = await self.session.execute(
            delete(TransferEventModel).where(TransferEventModel.contract_address == contract)
        )
        return int(result.rowcount or 0)


class LedgerRepository:
    """Repository for the derived ownership ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_balances(self, contract: str, keys: Collection[LedgerKey]) -> dict[LedgerKey, int]:
        """Current balances for the given keys; missing keys are absent."""
        if not keys:
            return {}
        wanted = set(keys)
        addresses = sorted({k.address for k in wanted})
        balances: dict[LedgerKey, int] = {}
        for batch in _batched(addresses, _IN_CLAUSE_BATCH):
            result = await self.session.execute(
                select(LedgerEntryModel).where(
                    LedgerEntryModel.contract_address == contract,
                    LedgerEntryModel.address.in_(batch),
                )
            )
            for model in result.scalars().all():
                key = LedgerKey(model.address, model.token_id)
                if key in wanted:
                    balances[key] = model.balance
        return balances

    async def save_balances(
        self,
        contract: str,
        changes: Mapping[LedgerKey, tuple[int, int]],
    ) -> int:
        """Write `{key: (balance, last_updated_block)}`, inserting missing rows."""
        if not changes:
            return 0
        now = datetime.now(UTC)
        addresses = sorted({k.address for k in changes})
        existing: dict[LedgerKey, LedgerEntryModel] = {}
        for batch in _batched(addresses, _IN_CLAUSE_BATCH):
            result = await self.session.execute(
                select(LedgerEntryModel).where(
                    LedgerEntryModel.contract_address == contract,
                    LedgerEntryModel.address.in_(batch),
                )
            )
            for model in result.scalars().all():
                existing[LedgerKey(model.address, model.token_id)] = model

        for key in sorted(changes):
            balance, block_number = changes[key]
            model = existing.get(key)
            if model is None:
                self.session.add(
                    LedgerEntryModel(
                        contract_address=contract,
                        address=key.address,
                        token_id=key.token_id,
                        balance=balance,
                        last_updated_block=block_number,
                        updated_at=now,
                    )
                )
            else:
                model.balance = balance
                model.last_updated_block = block_number
                model.updated_at = now
        await self.session.flush()
        return len(changes)

    async def list_entries(
        self,
        contract: str,
        *,
        token_ids: Collection[int] | None = None,
        address: str | None = None,
        include_zero: bool = False,
    ) -> list[LedgerEntryDTO]:
        """List ledger entries sorted by (address, token id)."""
        stmt = select(LedgerEntryModel).where(LedgerEntryModel.contract_address == contract)
        if token_ids:
            stmt = stmt.where(LedgerEntryModel.token_id.in_(list(token_ids)))
        if address is not None:
            stmt = stmt.where(LedgerEntryModel.address == address.lower())
        result = await self.session.execute(stmt)
        entries = [LedgerEntryDTO.from_model(m) for m in result.scalars().all()]
        if not include_zero:
            entries = [e for e in entries if e.balance > 0]
        entries.sort(key=lambda e: e.key)
        return entries

    async def delete_for_contract(self, contract: str) -> int:
        result = await self.session.execute(
            delete(LedgerEntryModel).where(LedgerEntryModel.contract_address == contract)
        )
        return int(result.rowcount or 0)


class SyncStatusRepository:
    """Repository for per-contract sync status."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, contract: str) -> SyncStatusDTO | None:
        model = await self.session.get(SyncStatusModel, contract)
        return SyncStatusDTO.from_model(model) if model else None

    async def upsert(
        self,
        contract: str,
        *,
        status: SyncState,
        last_synced_block: int | None = None,
        error_message: str | None = None,
    ) -> SyncStatusDTO:
        """Create or update the status row.

        `last_synced_block=None` keeps the stored value (or -1 for a new row).
        """
        now = datetime.now(UTC)
        model = await self.session.get(SyncStatusModel, contract)
        if model is None:
            model = SyncStatusModel(
                contract_address=contract,
                last_synced_block=last_synced_block if last_synced_block is not None else -1,
                status=status.value,
                error_message=error_message,
                updated_at=now,
            )
            self.session.add(model)
        else:
            if last_synced_block is not None:
                model.last_synced_block = last_synced_block
            model.status = status.value
            model.error_message = error_message
            model.updated_at = now
        await self.session.flush()
        return SyncStatusDTO.from_model(model)

    async def delete(self, contract: str) -> None:
        await self.session.execute(delete(SyncStatusModel).where(SyncStatusModel.contract_address == contract))


class SkippedRangeRepository:
    """Repository for block ranges abandoned by the fetcher."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_many(self, contract: str, ranges: Sequence[SkippedRange]) -> int:
        if not ranges:
            return 0
        self.session.add_all(
            [
                SkippedRangeModel(
                    contract_address=contract,
                    from_block=r.from_block,
                    to_block=r.to_block,
                    reason=r.reason,
                )
                for r in ranges
            ]
        )
        await self.session.flush()
        return len(ranges)

    async def list_overlapping(
        self,
        contract: str,
        *,
        from_block: int | None = None,
        to_block: int | None = None,
    ) -> list[SkippedRange]:
        stmt = select(SkippedRangeModel).where(SkippedRangeModel.contract_address == contract)
        if from_block is not None:
            stmt = stmt.where(SkippedRangeModel.to_block >= from_block)
        if to_block is not None:
            stmt = stmt.where(SkippedRangeModel.from_block <= to_block)
        stmt = stmt.order_by(SkippedRangeModel.from_block.asc())
        result = await self.session.execute(stmt)
        return [
            SkippedRange(from_block=m.from_block, to_block=m.to_block, reason=m.reason)
            for m in result.scalars().all()
        ]

    async def delete_for_contract(self, contract: str) -> int:
        result = await self.session.execute(
            delete(SkippedRangeModel).where(SkippedRangeModel.contract_address == contract)
        )
        return int(result.rowcount or 0)


class SnapshotCacheRepository:
    """Repository for cached snapshot payloads."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_valid(self, cache_key: str, *, now: datetime | None = None) -> SnapshotCacheDTO | None:
        now = now or datetime.now(UTC)
        result = await self.session.execute(
            select(SnapshotCacheModel).where(
                SnapshotCacheModel.cache_key == cache_key,
                SnapshotCacheModel.expires_at > now,
            )
        )
        model = result.scalar_one_or_none()
        return SnapshotCacheDTO.from_model(model) if model else None

    async def put(self, dto: SnapshotCacheDTO) -> None:
        """Insert or replace the cache entry for `dto.cache_key`."""
        model = await self.session.get(SnapshotCacheModel, dto.cache_key)
        if model is None:
            self.session.add(
                SnapshotCacheModel(
                    cache_key=dto.cache_key,
                    contract_address=dto.contract_address,
                    block_number=dto.block_number,
                    token_ids=dto.token_ids,
                    holder_count=dto.holder_count,
                    total_supply=dto.total_supply,
                    payload=dto.payload,
                    expires_at=dto.expires_at,
                    created_at=datetime.now(UTC),
                )
            )
        else:
            model.block_number = dto.block_number
            model.token_ids = dto.token_ids
            model.holder_count = dto.holder_count
            model.total_supply = dto.total_supply
            model.payload = dto.payload
            model.expires_at = dto.expires_at
            model.created_at = datetime.now(UTC)
        await self.session.flush()

    async def delete_expired(self, *, now: datetime | None = None) -> int:
        now = now or datetime.now(UTC)
        result = await self.session.execute(
            delete(SnapshotCacheModel).where(SnapshotCacheModel.expires_at <= now)
        )
        return int(result.rowcount or 0)

    async def delete_for_contract(self, contract: str) -> int:
        result = await self.session.execute(
            delete(SnapshotCacheModel).where(SnapshotCacheModel.contract_address == contract)
        )
        return int(result.rowcount or 0)


class MerkleTreeRepository:
    """Repository for stored Merkle distributions."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_if_absent(self, dto: MerkleTreeDTO) -> bool:
        """Store a tree. Returns False if the root already exists (trees are immutable)."""
        if await self.session.get(MerkleTreeModel, dto.root) is not None:
            return False
        self.session.add(
            MerkleTreeModel(
                root=dto.root,
                contract_address=dto.contract_address,
                token_id=dto.token_id,
                block_number=dto.block_number,
                recipients_count=dto.recipients_count,
                total_amount=dto.total_amount,
                leaves_json=dto.leaves_json,
            )
        )
        await self.session.flush()
        return True

    async def get(self, root: str) -> MerkleTreeDTO | None:
        model = await self.session.get(MerkleTreeModel, root.lower())
        return MerkleTreeDTO.from_model(model) if model else None
