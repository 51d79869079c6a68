"""Batched live balance reads against the token contract.

Reads are grouped into bounded batches that are awaited one after another.
A failing call never aborts the whole read: the affected addresses (or the
whole native batch) are reported with a zero balance and a warning.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, TypeVar

from web3 import AsyncWeb3

from token_holder_indexer.chain.provider import ProviderError
from token_holder_indexer.models import NULL_ADDRESS, ContractKind

if TYPE_CHECKING:
    from token_holder_indexer.chain.provider import ProviderManager

logger = logging.getLogger(__name__)

DEFAULT_ADDRESS_BATCH_SIZE = 100
DEFAULT_NATIVE_BATCH_SIZE = 1000

ERC165_INTERFACE_ERC721 = bytes.fromhex("80ac58cd")
ERC165_INTERFACE_ERC1155 = bytes.fromhex("d9b67a26")

ERC721_ABI: list[dict[str, Any]] = [
    {
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "tokenId", "type": "uint256"}],
        "name": "ownerOf",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
]

ERC1155_ABI: list[dict[str, Any]] = [
    {
        "inputs": [
            {"name": "account", "type": "address"},
            {"name": "id", "type": "uint256"},
        ],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "accounts", "type": "address[]"},
            {"name": "ids", "type": "uint256[]"},
        ],
        "name": "balanceOfBatch",
        "outputs": [{"name": "", "type": "uint256[]"}],
        "stateMutability": "view",
        "type": "function",
    },
]

ERC165_ABI: list[dict[str, Any]] = [
    {
        "inputs": [{"name": "interfaceId", "type": "bytes4"}],
        "name": "supportsInterface",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
]

_T = TypeVar("_T")


def _chunks(items: Sequence[_T], size: int) -> list[Sequence[_T]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


class LiveBalanceReader:
    """Reads current balances straight from the contract."""

    def __init__(
        self,
        provider: ProviderManager,
        contract_address: str,
        *,
        address_batch_size: int = DEFAULT_ADDRESS_BATCH_SIZE,
        native_batch_size: int = DEFAULT_NATIVE_BATCH_SIZE,
    ) -> None:
        if address_batch_size < 1 or native_batch_size < 1:
            raise ValueError("batch sizes must be >= 1")
        self._provider = provider
        self._contract_address = contract_address.lower()
        self._checksum_address = AsyncWeb3.to_checksum_address(contract_address)
        self._address_batch_size = address_batch_size
        self._native_batch_size = native_batch_size

    def _contract(self, w3: AsyncWeb3, abi: list[dict[str, Any]]) -> Any:
        return w3.eth.contract(address=self._checksum_address, abi=abi)

    async def _erc721_balance_of(self, address: str, block_identifier: int | str) -> int:
        owner = AsyncWeb3.to_checksum_address(address)
        balance = await self._provider.execute_with_retry(
            lambda w3: self._contract(w3, ERC721_ABI).functions.balanceOf(owner).call(
                block_identifier=block_identifier
            ),
            label="balanceOf",
        )
        return int(balance)

    async def _erc721_owner_of(self, token_id: int, block_identifier: int | str) -> str:
        owner = await self._provider.execute_with_retry(
            lambda w3: self._contract(w3, ERC721_ABI).functions.ownerOf(token_id).call(
                block_identifier=block_identifier
            ),
            label="ownerOf",
        )
        return str(owner).lower()

    async def erc721_balances(
        self,
        addresses: Sequence[str],
        *,
        block_identifier: int | str = "latest",
    ) -> dict[str, int]:
        """Collection-wide `balanceOf` per address; failed calls read as 0."""
        balances: dict[str, int] = {}
        for batch in _chunks(list(addresses), self._address_batch_size):
            results = await asyncio.gather(
                *[self._erc721_balance_of(a, block_identifier) for a in batch],
                return_exceptions=True,
            )
            for address, result in zip(batch, results, strict=True):
                if isinstance(result, BaseException):
                    if not isinstance(result, ProviderError):
                        raise result
                    logger.warning("balanceOf(%s) failed, reading as 0: %s", address, result)
                    balances[address.lower()] = 0
                else:
                    balances[address.lower()] = result
        return balances

    async def erc721_owners(
        self,
        token_ids: Sequence[int],
        *,
        block_identifier: int | str = "latest",
    ) -> dict[int, str]:
        """`ownerOf` per token id; failed or burned ids are left out."""
        owners: dict[int, str] = {}
        for batch in _chunks(list(token_ids), self._address_batch_size):
            results = await asyncio.gather(
                *[self._erc721_owner_of(t, block_identifier) for t in batch],
                return_exceptions=True,
            )
            for token_id, result in zip(batch, results, strict=True):
                if isinstance(result, BaseException):
                    if not isinstance(result, ProviderError):
                        raise result
                    logger.warning("ownerOf(%d) failed, skipping: %s", token_id, result)
                elif result != NULL_ADDRESS:
                    owners[token_id] = result
        return owners

    async def erc1155_balances(
        self,
        addresses: Sequence[str],
        token_id: int,
        *,
        block_identifier: int | str = "latest",
    ) -> dict[str, int]:
        """`balanceOfBatch` for one token id; a failed batch reads as all zeros."""
        balances: dict[str, int] = {}
        for batch in _chunks(list(addresses), self._native_batch_size):
            accounts = [AsyncWeb3.to_checksum_address(a) for a in batch]
            ids = [token_id] * len(accounts)
            try:
                result = await self._provider.execute_with_retry(
                    lambda w3, accounts=accounts, ids=ids: self._contract(w3, ERC1155_ABI)
                    .functions.balanceOfBatch(accounts, ids)
                    .call(block_identifier=block_identifier),
                    label="balanceOfBatch",
                )
            except ProviderError as e:
                logger.warning(
                    "balanceOfBatch failed for %d addresses (token %d), reading as 0: %s",
                    len(batch),
                    token_id,
                    e,
                )
                result = [0] * len(batch)
            for address, balance in zip(batch, result, strict=True):
                balances[address.lower()] = int(balance)
        return balances

    async def supports_interface(self, interface_id: bytes) -> bool:
        try:
            return bool(
                await self._provider.execute_with_retry(
                    lambda w3: self._contract(w3, ERC165_ABI).functions.supportsInterface(interface_id).call(),
                    label="supportsInterface",
                )
            )
        except ProviderError as e:
            logger.info("supportsInterface(0x%s) failed: %s", interface_id.hex(), e)
            return False

    async def detect_contract_kind(self) -> ContractKind | None:
        """Probe ERC-165 interface ids; None if the contract answers neither."""
        if await self.supports_interface(ERC165_INTERFACE_ERC1155):
            return ContractKind.ERC1155
        if await self.supports_interface(ERC165_INTERFACE_ERC721):
            return ContractKind.ERC721
        return None
