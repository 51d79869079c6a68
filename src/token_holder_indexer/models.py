"""Domain records shared across the indexer.

Amounts and token ids are plain Python ints (uint256 range), addresses are
lower-case hex strings. Persistence rows live in `storage.models`; these
records are what crosses component boundaries.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import NamedTuple

NULL_ADDRESS = "0x0000000000000000000000000000000000000000"
UINT256_MAX = 2**256 - 1

_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


def is_address(value: str) -> bool:
    """Return True if value is a 20-byte hex address."""
    return bool(_ADDRESS_RE.match(value))


def normalize_address(value: str) -> str:
    """Lower-case an address, raising ValueError on malformed input."""
    if not is_address(value):
        raise ValueError(f"Invalid address: {value!r}")
    return value.lower()


class EventKind(str, Enum):
    """How a transfer was emitted on chain."""

    SINGLE = "single"
    BATCH = "batch"


class ContractKind(str, Enum):
    """Token standard of the indexed contract."""

    ERC721 = "erc721"
    ERC1155 = "erc1155"


class SyncState(str, Enum):
    """Sync status of a contract's ledger."""

    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"


@dataclass(frozen=True)
class ContractInfo:
    """Contract metadata supplied by the caller.

    Attributes:
        address: Contract address (normalized to lower-case).
        kind: Token standard, decides event topics and live-read strategy.
        chain_id: Chain the contract lives on.
        start_block: First block worth scanning (usually the deployment block).
    """

    address: str
    kind: ContractKind
    chain_id: int = 1
    start_block: int | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "address", normalize_address(self.address))
        if self.start_block is not None and self.start_block < 0:
            raise ValueError("start_block must be >= 0")


class EventKey(NamedTuple):
    """Natural key of a stored transfer event."""

    contract: str
    tx_hash: str
    log_index: int
    batch_index: int


class LedgerKey(NamedTuple):
    """Composite ledger key; sorts by address then token id."""

    address: str
    token_id: int


@dataclass(frozen=True)
class TransferEvent:
    """An immutable token transfer fact decoded from a chain log.

    Batch logs are expanded into one event per (id, value) pair; `batch_index`
    is the pair's position inside the log and 0 for single transfers.
    """

    contract: str
    token_id: int
    from_address: str
    to_address: str
    amount: int
    block_number: int
    tx_hash: str
    log_index: int
    batch_index: int = 0
    event_kind: EventKind = EventKind.SINGLE
    operator: str | None = None
    block_timestamp: datetime | None = None

    def __post_init__(self) -> None:
        if self.amount < 0 or self.amount > UINT256_MAX:
            raise ValueError(f"Transfer amount out of uint256 range: {self.amount}")
        if self.token_id < 0 or self.token_id > UINT256_MAX:
            raise ValueError(f"Token id out of uint256 range: {self.token_id}")

    @property
    def key(self) -> EventKey:
        return EventKey(self.contract, self.tx_hash, self.log_index, self.batch_index)

    @property
    def ordering(self) -> tuple[int, int, int]:
        """Canonical replay order."""
        return (self.block_number, self.log_index, self.batch_index)

    @property
    def is_mint(self) -> bool:
        return self.from_address == NULL_ADDRESS

    @property
    def is_burn(self) -> bool:
        return self.to_address == NULL_ADDRESS


@dataclass(frozen=True)
class LedgerAnomaly:
    """A debit rejected because it would drive a balance negative."""

    key: LedgerKey
    balance: int
    attempted_debit: int
    block_number: int
    tx_hash: str
    log_index: int

    def describe(self) -> str:
        return (
            f"negative balance rejected for {self.key.address} token {self.key.token_id}: "
            f"balance {self.balance} < debit {self.attempted_debit} "
            f"(block {self.block_number}, tx {self.tx_hash}, log {self.log_index})"
        )


@dataclass(frozen=True)
class SkippedRange:
    """Block range abandoned by the fetcher after exhausting retries."""

    from_block: int
    to_block: int
    reason: str


@dataclass(frozen=True)
class FetchProgress:
    """Progress report emitted after each fetched chunk."""

    current_block: int
    total_blocks: int
    processed_events: int
    percent_complete: float


@dataclass
class ProcessingResult:
    """Outcome of applying a batch of events to the ledger."""

    events_processed: int = 0
    state_updates: int = 0
    duplicates: int = 0
    anomalies: list[LedgerAnomaly] = field(default_factory=list)


@dataclass
class SyncResult:
    """Outcome of a sync run over [from_block, to_block]."""

    from_block: int
    to_block: int
    blocks_scanned: int = 0
    events_found: int = 0
    duration_seconds: float = 0.0
    skipped_ranges: list[SkippedRange] = field(default_factory=list)
    cancelled: bool = False


class OperationCancelledError(Exception):
    """Raised when a long operation observes a cancellation request."""


class CancellationToken:
    """Cooperative cancellation flag for long-running operations."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError("Operation cancelled")

    async def wait(self) -> None:
        await self._event.wait()
