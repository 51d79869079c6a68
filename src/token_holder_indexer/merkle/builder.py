"""Merkle trees for claimable distributions and whitelists.

Distribution leaf: ``keccak256(address[20] || uint256(amount)[32] || uint32(index)[4])``.
Whitelist leaf: ``keccak256(address[20])``. Interior nodes hash the sorted
pair, so a proof is a plain list of sibling hashes with no side flags. An
odd node at the end of a level is carried up unchanged.
"""

from __future__ import annotations

import json
import logging
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, NamedTuple

from web3 import Web3

from token_holder_indexer.models import UINT256_MAX, normalize_address
from token_holder_indexer.storage.repos import MerkleTreeDTO, MerkleTreeRepository

if TYPE_CHECKING:
    from token_holder_indexer.snapshot.generator import Snapshot
    from token_holder_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

CLAIM_BASE_GAS = 50_000
CLAIM_GAS_PER_PROOF_ELEMENT = 3_000
_UINT32_MAX = 2**32 - 1


class MerkleRecipient(NamedTuple):
    address: str
    amount: int


def _hex(value: bytes) -> str:
    return "0x" + value.hex()


def _unhex(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


def hash_leaf(address: str, amount: int, index: int) -> bytes:
    if not 0 <= amount <= UINT256_MAX:
        raise ValueError(f"amount out of uint256 range: {amount}")
    if not 0 <= index <= _UINT32_MAX:
        raise ValueError(f"index out of uint32 range: {index}")
    payload = _unhex(normalize_address(address)) + amount.to_bytes(32, "big") + index.to_bytes(4, "big")
    return bytes(Web3.keccak(payload))


def hash_whitelist_leaf(address: str) -> bytes:
    return bytes(Web3.keccak(_unhex(normalize_address(address))))


def hash_pair(a: bytes, b: bytes) -> bytes:
    return bytes(Web3.keccak(a + b if a <= b else b + a))


def build_levels(leaves: Sequence[bytes]) -> list[list[bytes]]:
    """All tree levels, leaves first, root level last."""
    if not leaves:
        raise ValueError("cannot build a Merkle tree without leaves")
    levels = [list(leaves)]
    while len(levels[-1]) > 1:
        current = levels[-1]
        nxt = [hash_pair(current[i], current[i + 1]) for i in range(0, len(current) - 1, 2)]
        if len(current) % 2 == 1:
            nxt.append(current[-1])
        levels.append(nxt)
    return levels


def proof_for(levels: list[list[bytes]], index: int) -> list[bytes]:
    proof = []
    for level in levels[:-1]:
        sibling = index ^ 1
        if sibling < len(level):
            proof.append(level[sibling])
        index //= 2
    return proof


def _fold(leaf: bytes, proof: Iterable[str | bytes]) -> bytes:
    node = leaf
    for sibling in proof:
        node = hash_pair(node, _unhex(sibling) if isinstance(sibling, str) else sibling)
    return node


def verify_proof(root: str, address: str, amount: int, index: int, proof: Iterable[str | bytes]) -> bool:
    """True if the proof folds the leaf of `(address, amount, index)` into `root`."""
    return _fold(hash_leaf(address, amount, index), proof) == _unhex(root)


def verify_whitelist_proof(root: str, address: str, proof: Iterable[str | bytes]) -> bool:
    return _fold(hash_whitelist_leaf(address), proof) == _unhex(root)


@dataclass(frozen=True)
class MerkleLeaf:
    index: int
    address: str
    amount: int
    hash: str


@dataclass(frozen=True)
class MerkleProof:
    address: str
    amount: int
    index: int
    proof: list[str]


@dataclass(frozen=True)
class MerkleDistribution:
    root: str
    leaves: list[MerkleLeaf]
    proofs: dict[str, MerkleProof]
    total_amount: int
    recipients_count: int
    token_id: int | None = None
    block_number: int | None = None
    contract_address: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "root": self.root,
            "total_amount": str(self.total_amount),
            "recipients_count": self.recipients_count,
            "token_id": str(self.token_id) if self.token_id is not None else None,
            "block_number": self.block_number,
            "proofs": {
                address: {"amount": str(p.amount), "index": p.index, "proof": p.proof}
                for address, p in self.proofs.items()
            },
        }


@dataclass(frozen=True)
class WhitelistTree:
    root: str
    proofs: dict[str, list[str]]


def estimate_claim_gas(recipient_count: int) -> int:
    """Rough gas cost of one claim against a tree of `recipient_count` leaves."""
    depth = math.ceil(math.log2(recipient_count)) if recipient_count > 1 else 0
    return CLAIM_BASE_GAS + CLAIM_GAS_PER_PROOF_ELEMENT * depth


class MerkleDistributionBuilder:
    """Builds distribution and whitelist trees, optionally persisting them."""

    def __init__(self, db: DatabaseManager | None = None) -> None:
        self._db = db

    async def generate_merkle_tree(
        self,
        recipients: Sequence[tuple[str, int]],
        *,
        sort_by_amount: bool = True,
        token_id: int | None = None,
        block_number: int | None = None,
        contract_address: str | None = None,
        persist: bool = True,
    ) -> MerkleDistribution:
        """Build a distribution tree.

        Args:
            recipients: `(address, amount)` pairs; addresses must be unique.
            sort_by_amount: Order leaves by amount, largest first (stable).
            token_id: Token the distribution refers to, stored with the tree.
            block_number: Snapshot block, stored with the tree.
            contract_address: Token contract, stored with the tree.
            persist: Store the tree when a database is configured.

        Raises:
            ValueError: On an empty list, duplicate addresses or bad amounts.
        """
        if not recipients:
            raise ValueError("recipients must not be empty")
        normalized = [MerkleRecipient(normalize_address(a), int(v)) for a, v in recipients]
        if len({r.address for r in normalized}) != len(normalized):
            raise ValueError("duplicate recipient address")
        if sort_by_amount:
            normalized.sort(key=lambda r: r.amount, reverse=True)

        hashes = [hash_leaf(r.address, r.amount, i) for i, r in enumerate(normalized)]
        levels = build_levels(hashes)
        root = _hex(levels[-1][0])

        leaves = [
            MerkleLeaf(index=i, address=r.address, amount=r.amount, hash=_hex(hashes[i]))
            for i, r in enumerate(normalized)
        ]
        proofs = {
            leaf.address: MerkleProof(
                address=leaf.address,
                amount=leaf.amount,
                index=leaf.index,
                proof=[_hex(p) for p in proof_for(levels, leaf.index)],
            )
            for leaf in leaves
        }
        distribution = MerkleDistribution(
            root=root,
            leaves=leaves,
            proofs=proofs,
            total_amount=sum(r.amount for r in normalized),
            recipients_count=len(normalized),
            token_id=token_id,
            block_number=block_number,
            contract_address=contract_address,
        )
        logger.info("Built Merkle tree %s over %d recipients", root, len(leaves))

        if persist and self._db is not None:
            await self._store(distribution)
        return distribution

    async def _store(self, distribution: MerkleDistribution) -> None:
        assert self._db is not None
        leaves_json = json.dumps(
            [
                {"index": leaf.index, "address": leaf.address, "amount": str(leaf.amount)}
                for leaf in distribution.leaves
            ]
        )
        async with self._db.get_async_session() as session:
            inserted = await MerkleTreeRepository(session).insert_if_absent(
                MerkleTreeDTO(
                    root=distribution.root,
                    recipients_count=distribution.recipients_count,
                    total_amount=distribution.total_amount,
                    leaves_json=leaves_json,
                    contract_address=distribution.contract_address,
                    token_id=distribution.token_id,
                    block_number=distribution.block_number,
                )
            )
        if not inserted:
            logger.debug("Merkle tree %s already stored", distribution.root)

    async def load_merkle_tree(self, root: str) -> MerkleDistribution | None:
        """Rebuild a stored tree (with proofs) from its leaves."""
        if self._db is None:
            raise RuntimeError("load_merkle_tree requires a database")
        async with self._db.get_async_session() as session:
            stored = await MerkleTreeRepository(session).get(root.lower())
        if stored is None:
            return None
        rows = sorted(json.loads(stored.leaves_json), key=lambda row: row["index"])
        distribution = await self.generate_merkle_tree(
            [(row["address"], int(row["amount"])) for row in rows],
            sort_by_amount=False,
            token_id=stored.token_id,
            block_number=stored.block_number,
            contract_address=stored.contract_address,
            persist=False,
        )
        if distribution.root != stored.root:
            raise ValueError(f"stored leaves of {stored.root} rebuild to {distribution.root}")
        return distribution

    async def generate_from_snapshot(self, snapshot: Snapshot, *, persist: bool = True) -> MerkleDistribution:
        """Distribution paying each positive-balance holder its balance."""
        recipients = [(h.holder_address, h.balance) for h in snapshot.holders if h.balance > 0]
        token_id = snapshot.token_ids[0] if len(snapshot.token_ids) == 1 else None
        return await self.generate_merkle_tree(
            recipients,
            token_id=token_id,
            block_number=snapshot.block_number,
            contract_address=snapshot.contract,
            persist=persist,
        )

    def generate_whitelist_tree(self, addresses: Sequence[str]) -> WhitelistTree:
        """Whitelist tree over unique addresses, in the order given."""
        if not addresses:
            raise ValueError("addresses must not be empty")
        unique = list(dict.fromkeys(normalize_address(a) for a in addresses))
        levels = build_levels([hash_whitelist_leaf(a) for a in unique])
        return WhitelistTree(
            root=_hex(levels[-1][0]),
            proofs={a: [_hex(p) for p in proof_for(levels, i)] for i, a in enumerate(unique)},
        )
