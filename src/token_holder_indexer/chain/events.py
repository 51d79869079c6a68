"""Transfer event topics and log decoding.

ERC-721 `Transfer` logs and ERC-1155 `TransferSingle` logs decode to one
`TransferEvent` each; ERC-1155 `TransferBatch` logs expand to one event per
(id, value) pair. ERC-721 transfers carry an implicit amount of 1.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any

from eth_abi import decode
from eth_abi.exceptions import DecodingError
from web3 import AsyncWeb3

from token_holder_indexer.models import EventKind, TransferEvent

logger = logging.getLogger(__name__)

TRANSFER_TOPIC = AsyncWeb3.to_hex(AsyncWeb3.keccak(text="Transfer(address,address,uint256)"))
TRANSFER_SINGLE_TOPIC = AsyncWeb3.to_hex(
    AsyncWeb3.keccak(text="TransferSingle(address,address,address,uint256,uint256)")
)
TRANSFER_BATCH_TOPIC = AsyncWeb3.to_hex(
    AsyncWeb3.keccak(text="TransferBatch(address,address,address,uint256[],uint256[])")
)


class LogDecodeError(ValueError):
    """Raised when a log does not match the expected transfer layout."""


def to_hex(value: Any) -> str:
    """Normalize HexBytes / bytes / str to a lower-case 0x-prefixed string."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    text = str(value).lower()
    return text if text.startswith("0x") else "0x" + text


def to_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    text = str(value)
    if text.startswith(("0x", "0X")):
        text = text[2:]
    return bytes.fromhex(text)


def topic_to_address(topic: Any) -> str:
    return ("0x" + to_hex(topic)[-40:]).lower()


def topic_to_int(topic: Any) -> int:
    return int(to_hex(topic), 16)


def _log_position(log: Mapping[str, Any]) -> tuple[int, str, int]:
    block_number = int(log["blockNumber"])
    tx_hash = to_hex(log["transactionHash"])
    log_index = log.get("logIndex")
    if log_index is None:
        log_index = log.get("log_index", 0)
    return block_number, tx_hash, int(log_index)


def decode_transfer_log(
    log: Mapping[str, Any],
    *,
    contract: str,
    block_timestamp: datetime | None = None,
) -> list[TransferEvent]:
    """Decode one raw log into transfer events.

    Args:
        log: Raw log as returned by eth_getLogs.
        contract: Lower-case contract address the log belongs to.
        block_timestamp: Timestamp of the log's block, if known.

    Returns:
        One event for single transfers, one per (id, value) pair for batches.

    Raises:
        LogDecodeError: If the log is not a well-formed transfer log.
    """
    topics: Sequence[Any] = log.get("topics") or []
    if not topics:
        raise LogDecodeError("log has no topics")
    signature = to_hex(topics[0])
    block_number, tx_hash, log_index = _log_position(log)

    if signature == TRANSFER_TOPIC:
        # ERC-721 indexes the token id; ERC-20 style logs have only 3 topics.
        if len(topics) != 4:
            raise LogDecodeError(f"Transfer log with {len(topics)} topics is not ERC-721")
        return [
            TransferEvent(
                contract=contract,
                token_id=topic_to_int(topics[3]),
                from_address=topic_to_address(topics[1]),
                to_address=topic_to_address(topics[2]),
                amount=1,
                block_number=block_number,
                tx_hash=tx_hash,
                log_index=log_index,
                event_kind=EventKind.SINGLE,
                block_timestamp=block_timestamp,
            )
        ]

    if len(topics) != 4:
        raise LogDecodeError(f"ERC-1155 log with {len(topics)} topics")
    operator = topic_to_address(topics[1])
    from_address = topic_to_address(topics[2])
    to_address = topic_to_address(topics[3])
    data = to_bytes(log.get("data") or b"")

    if signature == TRANSFER_SINGLE_TOPIC:
        try:
            token_id, amount = decode(["uint256", "uint256"], data)
        except DecodingError as e:
            raise LogDecodeError(f"bad TransferSingle data in {tx_hash}: {e}") from e
        return [
            TransferEvent(
                contract=contract,
                token_id=int(token_id),
                from_address=from_address,
                to_address=to_address,
                amount=int(amount),
                block_number=block_number,
                tx_hash=tx_hash,
                log_index=log_index,
                event_kind=EventKind.SINGLE,
                operator=operator,
                block_timestamp=block_timestamp,
            )
        ]

    if signature == TRANSFER_BATCH_TOPIC:
        try:
            ids, values = decode(["uint256[]", "uint256[]"], data)
        except DecodingError as e:
            raise LogDecodeError(f"bad TransferBatch data in {tx_hash}: {e}") from e
        if len(ids) != len(values):
            raise LogDecodeError(f"TransferBatch ids/values length mismatch in {tx_hash}")
        return [
            TransferEvent(
                contract=contract,
                token_id=int(token_id),
                from_address=from_address,
                to_address=to_address,
                amount=int(amount),
                block_number=block_number,
                tx_hash=tx_hash,
                log_index=log_index,
                batch_index=position,
                event_kind=EventKind.BATCH,
                operator=operator,
                block_timestamp=block_timestamp,
            )
            for position, (token_id, amount) in enumerate(zip(ids, values, strict=True))
        ]

    raise LogDecodeError(f"unknown event signature {signature}")
