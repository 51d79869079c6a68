"""Pytest configuration and fixtures."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from token_holder_indexer.models import NULL_ADDRESS, ContractInfo, ContractKind, EventKind, TransferEvent
from token_holder_indexer.storage.database import DatabaseManager

CONTRACT = "0x1234567890abcdef1234567890abcdef12345678"
ALICE = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
BOB = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
CAROL = "0xcccccccccccccccccccccccccccccccccccccccc"


def make_event(
    *,
    from_address: str = NULL_ADDRESS,
    to_address: str = ALICE,
    token_id: int = 1,
    amount: int = 1,
    block_number: int = 100,
    log_index: int = 0,
    batch_index: int = 0,
    tx_hash: str | None = None,
    contract: str = CONTRACT,
    timestamp: datetime | None = None,
) -> TransferEvent:
    """Build a transfer event with a tx hash derived from its position."""
    return TransferEvent(
        contract=contract,
        token_id=token_id,
        from_address=from_address,
        to_address=to_address,
        amount=amount,
        block_number=block_number,
        tx_hash=tx_hash or "0x" + f"{block_number:032x}{log_index:032x}",
        log_index=log_index,
        batch_index=batch_index,
        event_kind=EventKind.BATCH if batch_index else EventKind.SINGLE,
        block_timestamp=timestamp or datetime.fromtimestamp(1_700_000_000 + block_number * 12, tz=UTC),
    )


@pytest.fixture
def event_factory():
    """Factory for transfer events of the test contract."""
    return make_event


@pytest.fixture
def erc1155_contract() -> ContractInfo:
    return ContractInfo(address=CONTRACT, kind=ContractKind.ERC1155, start_block=100)


@pytest.fixture
def erc721_contract() -> ContractInfo:
    return ContractInfo(address=CONTRACT, kind=ContractKind.ERC721, start_block=100)


@pytest.fixture
async def db(tmp_path) -> DatabaseManager:
    """File-backed SQLite database manager with the schema created."""
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await manager.init_schema_async()
    yield manager
    await manager.dispose_async()
