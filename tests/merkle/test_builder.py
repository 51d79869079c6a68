"""Tests for Merkle distribution and whitelist trees."""

from __future__ import annotations

import pytest
from web3 import Web3

from token_holder_indexer.merkle.builder import (
    MerkleDistributionBuilder,
    build_levels,
    estimate_claim_gas,
    hash_leaf,
    hash_pair,
    verify_proof,
    verify_whitelist_proof,
)
from token_holder_indexer.snapshot.generator import SnapshotRequest, build_snapshot

CONTRACT = "0x1234567890abcdef1234567890abcdef12345678"
ALICE = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
BOB = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
CAROL = "0xcccccccccccccccccccccccccccccccccccccccc"
DAVE = "0xdddddddddddddddddddddddddddddddddddddddd"
ERIN = "0xeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeeee"


# ============================================================================
# Hashing primitives
# ============================================================================


class TestHashing:
    def test_leaf_is_packed_address_amount_index(self) -> None:
        packed = bytes.fromhex(ALICE[2:]) + (100).to_bytes(32, "big") + (7).to_bytes(4, "big")
        assert hash_leaf(ALICE, 100, 7) == bytes(Web3.keccak(packed))

    def test_leaf_ignores_address_case(self) -> None:
        assert hash_leaf(ALICE.upper().replace("0X", "0x"), 1, 0) == hash_leaf(ALICE, 1, 0)

    def test_leaf_range_checks(self) -> None:
        with pytest.raises(ValueError):
            hash_leaf(ALICE, -1, 0)
        with pytest.raises(ValueError):
            hash_leaf(ALICE, 1, 2**32)

    def test_pair_is_order_independent(self) -> None:
        a, b = hash_leaf(ALICE, 1, 0), hash_leaf(BOB, 1, 1)
        assert hash_pair(a, b) == hash_pair(b, a)

    def test_odd_node_is_promoted(self) -> None:
        leaves = [hash_leaf(a, 1, i) for i, a in enumerate([ALICE, BOB, CAROL])]
        levels = build_levels(leaves)

        assert [len(level) for level in levels] == [3, 2, 1]
        assert levels[1][1] == leaves[2]

    def test_empty_levels_rejected(self) -> None:
        with pytest.raises(ValueError):
            build_levels([])

    def test_claim_gas_estimate(self) -> None:
        assert estimate_claim_gas(1) == 50_000
        assert estimate_claim_gas(2) == 53_000
        assert estimate_claim_gas(5) == 59_000


# ============================================================================
# Distribution trees
# ============================================================================


class TestGenerateMerkleTree:
    @pytest.mark.asyncio
    async def test_sorted_by_amount_and_verifiable(self) -> None:
        builder = MerkleDistributionBuilder()
        tree = await builder.generate_merkle_tree([(BOB, 50), (ALICE, 100)])

        assert tree.proofs[ALICE].index == 0
        assert tree.proofs[BOB].index == 1
        assert tree.total_amount == 150
        assert tree.recipients_count == 2
        alice = tree.proofs[ALICE]
        assert verify_proof(tree.root, ALICE, 100, alice.index, alice.proof)

    @pytest.mark.asyncio
    async def test_proof_fails_against_other_root(self) -> None:
        builder = MerkleDistributionBuilder()
        tree = await builder.generate_merkle_tree([(ALICE, 100), (BOB, 50)])
        other = await builder.generate_merkle_tree([(ALICE, 99), (BOB, 50)])

        alice = tree.proofs[ALICE]
        assert other.root != tree.root
        assert not verify_proof(other.root, ALICE, 100, alice.index, alice.proof)
        assert not verify_proof(tree.root, ALICE, 101, alice.index, alice.proof)

    @pytest.mark.asyncio
    async def test_every_proof_verifies_for_odd_sizes(self) -> None:
        builder = MerkleDistributionBuilder()
        recipients = [(ALICE, 5), (BOB, 4), (CAROL, 3), (DAVE, 2), (ERIN, 1)]
        tree = await builder.generate_merkle_tree(recipients)

        for address, amount in recipients:
            proof = tree.proofs[address]
            assert verify_proof(tree.root, address, amount, proof.index, proof.proof)

    @pytest.mark.asyncio
    async def test_single_leaf(self) -> None:
        tree = await MerkleDistributionBuilder().generate_merkle_tree([(ALICE, 10)])

        assert tree.proofs[ALICE].proof == []
        assert tree.root == "0x" + hash_leaf(ALICE, 10, 0).hex()

    @pytest.mark.asyncio
    async def test_insertion_order_without_sorting(self) -> None:
        tree = await MerkleDistributionBuilder().generate_merkle_tree([(BOB, 50), (ALICE, 100)], sort_by_amount=False)

        assert [leaf.address for leaf in tree.leaves] == [BOB, ALICE]

    @pytest.mark.asyncio
    async def test_equal_amounts_keep_input_order(self) -> None:
        tree = await MerkleDistributionBuilder().generate_merkle_tree([(CAROL, 5), (ALICE, 5), (BOB, 9)])

        assert [leaf.address for leaf in tree.leaves] == [BOB, CAROL, ALICE]

    @pytest.mark.asyncio
    async def test_empty_recipients_rejected(self) -> None:
        with pytest.raises(ValueError, match="empty"):
            await MerkleDistributionBuilder().generate_merkle_tree([])

    @pytest.mark.asyncio
    async def test_duplicate_addresses_rejected(self) -> None:
        with pytest.raises(ValueError, match="duplicate"):
            await MerkleDistributionBuilder().generate_merkle_tree(
                [(ALICE, 1), (ALICE.upper().replace("0X", "0x"), 2)]
            )

    @pytest.mark.asyncio
    async def test_to_dict(self) -> None:
        tree = await MerkleDistributionBuilder().generate_merkle_tree([(ALICE, 100)], token_id=3)
        payload = tree.to_dict()

        assert payload["total_amount"] == "100"
        assert payload["token_id"] == "3"
        assert payload["proofs"][ALICE] == {"amount": "100", "index": 0, "proof": []}


class TestPersistence:
    @pytest.mark.asyncio
    async def test_store_and_reload(self, db) -> None:
        builder = MerkleDistributionBuilder(db)
        tree = await builder.generate_merkle_tree(
            [(ALICE, 100), (BOB, 50), (CAROL, 25)], token_id=1, block_number=42, contract_address=CONTRACT
        )

        loaded = await builder.load_merkle_tree(tree.root)

        assert loaded is not None
        assert loaded.root == tree.root
        assert loaded.proofs == tree.proofs
        assert loaded.block_number == 42
        assert loaded.token_id == 1
        assert loaded.contract_address == CONTRACT

    @pytest.mark.asyncio
    async def test_storing_same_tree_twice_is_harmless(self, db) -> None:
        builder = MerkleDistributionBuilder(db)
        first = await builder.generate_merkle_tree([(ALICE, 1), (BOB, 2)])
        second = await builder.generate_merkle_tree([(ALICE, 1), (BOB, 2)])

        assert first.root == second.root
        assert await builder.load_merkle_tree(first.root) is not None

    @pytest.mark.asyncio
    async def test_unknown_root(self, db) -> None:
        assert await MerkleDistributionBuilder(db).load_merkle_tree("0x" + "00" * 32) is None

    @pytest.mark.asyncio
    async def test_load_requires_database(self) -> None:
        with pytest.raises(RuntimeError):
            await MerkleDistributionBuilder().load_merkle_tree("0x" + "00" * 32)

    @pytest.mark.asyncio
    async def test_from_snapshot_skips_zero_holders(self, db) -> None:
        snapshot = build_snapshot(
            SnapshotRequest(contract=CONTRACT, token_ids=(4,), include_zero_balances=True),
            totals={ALICE: 3, BOB: 0, CAROL: 2},
            block_number=99,
            timestamp=None,
        )

        tree = await MerkleDistributionBuilder(db).generate_from_snapshot(snapshot)

        assert set(tree.proofs) == {ALICE, CAROL}
        assert tree.token_id == 4
        assert tree.block_number == 99
        assert tree.contract_address == CONTRACT


# ============================================================================
# Whitelist trees
# ============================================================================


class TestWhitelistTree:
    def test_proofs_verify(self) -> None:
        tree = MerkleDistributionBuilder().generate_whitelist_tree([ALICE, BOB, CAROL])

        for address, proof in tree.proofs.items():
            assert verify_whitelist_proof(tree.root, address, proof)
        assert not verify_whitelist_proof(tree.root, DAVE, tree.proofs[ALICE])

    def test_duplicates_collapse(self) -> None:
        builder = MerkleDistributionBuilder()
        with_dupes = builder.generate_whitelist_tree([ALICE, BOB, ALICE])
        without = builder.generate_whitelist_tree([ALICE, BOB])

        assert with_dupes.root == without.root
        assert list(with_dupes.proofs) == [ALICE, BOB]

    def test_empty_rejected(self) -> None:
        with pytest.raises(ValueError):
            MerkleDistributionBuilder().generate_whitelist_tree([])
