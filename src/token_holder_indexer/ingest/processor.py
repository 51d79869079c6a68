"""Event processor: persists transfer events and maintains the ledger.

Every `apply_events` call is one database transaction. Events already in
the store are counted as duplicates and contribute no balance changes, so
re-applying a batch is a no-op.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from token_holder_indexer.ingest.ledger import BalanceBook
from token_holder_indexer.models import (
    NULL_ADDRESS,
    CancellationToken,
    LedgerKey,
    ProcessingResult,
    TransferEvent,
)
from token_holder_indexer.storage.repos import (
    LedgerEntryDTO,
    LedgerRepository,
    SkippedRangeRepository,
    SnapshotCacheRepository,
    SyncStatusRepository,
    TransferEventRepository,
)

if TYPE_CHECKING:
    from token_holder_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EventStats:
    total_events: int
    unique_holders: int
    unique_tokens: int
    last_block_processed: int | None


def _touched_keys(event: TransferEvent) -> list[LedgerKey]:
    keys = []
    if event.from_address != NULL_ADDRESS:
        keys.append(LedgerKey(event.from_address, event.token_id))
    if event.to_address != NULL_ADDRESS:
        keys.append(LedgerKey(event.to_address, event.token_id))
    return keys


class EventProcessor:
    """Applies transfer events for one contract to the event store and ledger."""

    def __init__(self, db: DatabaseManager, contract_address: str) -> None:
        self._db = db
        self._contract = contract_address.lower()

    @property
    def contract_address(self) -> str:
        return self._contract

    async def apply_events(self, events: Sequence[TransferEvent]) -> ProcessingResult:
        """Store new events and apply their balance deltas atomically.

        Args:
            events: Events of this contract, in any order.

        Returns:
            Counts of processed events, changed rows, duplicates and anomalies.
        """
        result = ProcessingResult()
        if not events:
            return result

        ordered = sorted(events, key=lambda e: e.ordering)
        for event in ordered:
            if event.contract != self._contract:
                raise ValueError(f"Event for {event.contract} passed to processor for {self._contract}")

        async with self._db.get_async_session() as session:
            event_repo = TransferEventRepository(session)
            ledger_repo = LedgerRepository(session)

            seen = await event_repo.existing_keys(self._contract, {e.key for e in ordered})
            fresh: list[TransferEvent] = []
            for event in ordered:
                if event.key in seen:
                    result.duplicates += 1
                    continue
                seen.add(event.key)
                fresh.append(event)

            if not fresh:
                logger.debug("All %d events already stored", len(ordered))
                return result

            await event_repo.insert_many(fresh)

            touched = sorted({key for event in fresh for key in _touched_keys(event)})
            book = BalanceBook(await ledger_repo.get_balances(self._contract, touched))
            for event in fresh:
                result.state_updates += book.apply(event)
            await ledger_repo.save_balances(self._contract, book.changes())

            result.events_processed = len(fresh)
            result.anomalies = list(book.anomalies)

        logger.debug(
            "Applied %d events (%d duplicates, %d row updates, %d anomalies)",
            result.events_processed,
            result.duplicates,
            result.state_updates,
            len(result.anomalies),
        )
        return result

    async def rebuild_from_events(self, cancel: CancellationToken | None = None) -> ProcessingResult:
        """Discard the ledger and replay the whole ordered event store.

        Runs in one transaction; a cancellation observed before the write
        rolls it back and leaves the existing ledger untouched.
        """
        result = ProcessingResult()
        async with self._db.get_async_session() as session:
            event_repo = TransferEventRepository(session)
            ledger_repo = LedgerRepository(session)

            events = await event_repo.list_events(self._contract)
            book = BalanceBook()
            for event in events:
                if cancel is not None:
                    cancel.raise_if_cancelled()
                result.state_updates += book.apply(event)

            if cancel is not None:
                cancel.raise_if_cancelled()
            deleted = await ledger_repo.delete_for_contract(self._contract)
            await ledger_repo.save_balances(self._contract, book.changes())

            result.events_processed = len(events)
            result.anomalies = list(book.anomalies)

        logger.info(
            "Rebuilt ledger for %s from %d events (%d old rows replaced, %d anomalies)",
            self._contract,
            result.events_processed,
            deleted,
            len(result.anomalies),
        )
        return result

    async def get_token_holders(self, token_id: int) -> list[LedgerEntryDTO]:
        """Holders of one token id with positive balance, largest first."""
        async with self._db.get_async_session() as session:
            entries = await LedgerRepository(session).list_entries(self._contract, token_ids=[token_id])
        return sorted(entries, key=lambda e: e.balance, reverse=True)

    async def get_address_tokens(self, address: str) -> list[LedgerEntryDTO]:
        """Token ids held by one address with positive balance."""
        async with self._db.get_async_session() as session:
            return await LedgerRepository(session).list_entries(self._contract, address=address)

    async def get_holder_count(self, token_id: int | None = None) -> int:
        async with self._db.get_async_session() as session:
            entries = await LedgerRepository(session).list_entries(
                self._contract,
                token_ids=[token_id] if token_id is not None else None,
            )
        return len({e.address for e in entries})

    async def get_total_supply(self, token_id: int | None = None) -> int:
        async with self._db.get_async_session() as session:
            entries = await LedgerRepository(session).list_entries(
                self._contract,
                token_ids=[token_id] if token_id is not None else None,
            )
        return sum(e.balance for e in entries)

    async def get_event_stats(self) -> EventStats:
        async with self._db.get_async_session() as session:
            stats = await TransferEventRepository(session).get_stats(self._contract)
            entries = await LedgerRepository(session).list_entries(self._contract)
        return EventStats(
            total_events=stats.total_events,
            unique_holders=len({e.address for e in entries}),
            unique_tokens=len({e.token_id for e in entries}),
            last_block_processed=stats.last_block,
        )

    async def clear_contract_data(self) -> None:
        """Delete every stored row for this contract."""
        async with self._db.get_async_session() as session:
            await TransferEventRepository(session).delete_for_contract(self._contract)
            await LedgerRepository(session).delete_for_contract(self._contract)
            await SyncStatusRepository(session).delete(self._contract)
            await SkippedRangeRepository(session).delete_for_contract(self._contract)
            await SnapshotCacheRepository(session).delete_for_contract(self._contract)
        logger.info("Cleared all stored data for %s", self._contract)
