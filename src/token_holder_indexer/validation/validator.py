"""Consistency checks over the event store and the ledger.

Validation never raises for data problems; every finding lands in a
`ValidationResult` as an error or a warning.
"""

from __future__ import annotations

import logging
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from token_holder_indexer.ingest.ledger import BalanceBook
from token_holder_indexer.storage.repos import (
    LedgerRepository,
    SkippedRangeRepository,
    TransferEventRepository,
)

if TYPE_CHECKING:
    from token_holder_indexer.models import EventKey
    from token_holder_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

MAX_LISTED_DISCREPANCIES = 10


class DataHealth(str, Enum):
    GOOD = "GOOD"
    FAIR = "FAIR"
    POOR = "POOR"


def health_for(error_count: int) -> DataHealth:
    if error_count == 0:
        return DataHealth.GOOD
    if error_count <= 2:
        return DataHealth.FAIR
    return DataHealth.POOR


@dataclass
class ValidationResult:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": self.errors,
            "warnings": self.warnings,
            "details": self.details,
        }


@dataclass
class ValidationReport:
    contract_address: str
    block_number: int | None
    block_range: ValidationResult
    balances: ValidationResult
    generated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def total_errors(self) -> int:
        return len(self.block_range.errors) + len(self.balances.errors)

    @property
    def total_warnings(self) -> int:
        return len(self.block_range.warnings) + len(self.balances.warnings)

    @property
    def health(self) -> DataHealth:
        return health_for(self.total_errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "contract_address": self.contract_address,
            "block_number": self.block_number,
            "generated_at": self.generated_at.isoformat(),
            "health": self.health.value,
            "total_errors": self.total_errors,
            "total_warnings": self.total_warnings,
            "block_range": self.block_range.to_dict(),
            "balances": self.balances.to_dict(),
        }


class DataValidator:
    """Validates stored data of one contract."""

    def __init__(self, db: DatabaseManager, contract_address: str) -> None:
        self._db = db
        self._contract = contract_address.lower()

    async def validate_block_range(self, start_block: int, end_block: int) -> ValidationResult:
        """Check stored events in [start_block, end_block]."""
        result = ValidationResult()
        if start_block > end_block:
            result.errors.append(f"Invalid block range {start_block}-{end_block}")
            return result

        async with self._db.get_async_session() as session:
            events = await TransferEventRepository(session).list_events(
                self._contract, from_block=start_block, to_block=end_block
            )
            skipped = await SkippedRangeRepository(session).list_overlapping(
                self._contract, from_block=start_block, to_block=end_block
            )

        result.details["total_blocks"] = end_block - start_block + 1
        result.details["blocks_with_events"] = len({e.block_number for e in events})
        result.details["total_events"] = len(events)

        duplicates = [key for key, count in Counter(e.key for e in events).items() if count > 1]
        if duplicates:
            result.errors.append(f"Found {len(duplicates)} duplicate events")
            result.details["duplicate_events"] = [
                {"tx_hash": k.tx_hash, "log_index": k.log_index, "batch_index": k.batch_index}
                for k in duplicates[:MAX_LISTED_DISCREPANCIES]
            ]

        # Distinct events must not share a (block, log index, batch index) position.
        claims: defaultdict[tuple[int, int, int], set[EventKey]] = defaultdict(set)
        for event in events:
            claims[event.ordering].add(event.key)
        ordering_issues = sum(1 for keys in claims.values() if len(keys) > 1)
        if ordering_issues:
            result.errors.append(f"Found {ordering_issues} event ordering issues")
            result.details["ordering_issues"] = ordering_issues

        for gap in skipped:
            result.errors.append(f"Gap: blocks {gap.from_block}-{gap.to_block} were skipped ({gap.reason})")
        result.details["skipped_ranges"] = len(skipped)

        timed = [e for e in events if e.block_timestamp is not None]
        regressions = sum(
            1
            for prev, curr in zip(timed, timed[1:], strict=False)
            if curr.block_number > prev.block_number and curr.block_timestamp < prev.block_timestamp  # type: ignore[operator]
        )
        if regressions:
            result.warnings.append(f"Block timestamps decrease {regressions} times across the range")
        if timed:
            result.details["time_range"] = {
                "min": timed[0].block_timestamp.isoformat(),  # type: ignore[union-attr]
                "max": timed[-1].block_timestamp.isoformat(),  # type: ignore[union-attr]
            }
        return result

    async def validate_holder_balances(self, block_number: int | None = None) -> ValidationResult:
        """Replay events and compare against the ledger and supply accounting.

        Per-holder comparison against the ledger only applies to the current
        state (no `block_number`).
        """
        result = ValidationResult()
        async with self._db.get_async_session() as session:
            events = await TransferEventRepository(session).list_events(self._contract, to_block=block_number)
            entries = (
                await LedgerRepository(session).list_entries(self._contract)
                if block_number is None
                else []
            )

        book = BalanceBook()
        book.apply_all(events)
        replayed = book.balances()

        for anomaly in book.anomalies:
            result.warnings.append(f"Rejected decrement: {anomaly.describe()}")

        replay_supply = book.supply_by_token()
        if block_number is None:
            stored = {e.key: e.balance for e in entries if e.balance > 0}
            mismatched = sorted(k for k in set(stored) | set(replayed) if stored.get(k, 0) != replayed.get(k, 0))
            if mismatched:
                result.errors.append(f"{len(mismatched)} ledger balances differ from event replay")
                result.details["discrepancies"] = [
                    {
                        "address": k.address,
                        "token_id": str(k.token_id),
                        "ledger_balance": str(stored.get(k, 0)),
                        "replayed_balance": str(replayed.get(k, 0)),
                    }
                    for k in mismatched[:MAX_LISTED_DISCREPANCIES]
                ]
            ledger_total = sum(stored.values())
            replay_total = sum(replayed.values())
            if ledger_total != replay_total:
                result.errors.append(f"Total supply mismatch: ledger {ledger_total}, replay {replay_total}")
            supply_by_token: dict[int, int] = {}
            for key, balance in stored.items():
                supply_by_token[key.token_id] = supply_by_token.get(key.token_id, 0) + balance
        else:
            supply_by_token = replay_supply

        expected = book.expected_supply_by_token()
        unbalanced = sorted(
            t for t in set(expected) | set(supply_by_token) if expected.get(t, 0) != supply_by_token.get(t, 0)
        )
        if unbalanced:
            result.errors.append(f"Supply conservation fails for {len(unbalanced)} token ids")
            result.details["unbalanced_tokens"] = [str(t) for t in unbalanced[:MAX_LISTED_DISCREPANCIES]]

        result.details["events_replayed"] = len(events)
        result.details["total_holders"] = len({k.address for k in replayed})
        result.details["total_supply"] = str(sum(replayed.values()))
        return result

    async def generate_validation_report(self, block_number: int | None = None) -> ValidationReport:
        """Block-range and balance validation over all stored events up to `block_number`."""
        async with self._db.get_async_session() as session:
            stats = await TransferEventRepository(session).get_stats(self._contract)

        if stats.first_block is None or stats.last_block is None:
            block_range = ValidationResult()
            block_range.warnings.append("No events stored")
        else:
            end = stats.last_block if block_number is None else min(block_number, stats.last_block)
            block_range = await self.validate_block_range(stats.first_block, max(end, stats.first_block))

        report = ValidationReport(
            contract_address=self._contract,
            block_number=block_number,
            block_range=block_range,
            balances=await self.validate_holder_balances(block_number),
        )
        logger.info(
            "Validation of %s: %s (%d errors, %d warnings)",
            self._contract,
            report.health.value,
            report.total_errors,
            report.total_warnings,
        )
        return report
