"""Tests for live contract balance reads and deployment detection."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from token_holder_indexer.chain.contracts import (
    ERC165_INTERFACE_ERC721,
    ERC165_INTERFACE_ERC1155,
    LiveBalanceReader,
)
from token_holder_indexer.chain.deployment import find_deployment_block
from token_holder_indexer.chain.provider import RPCError
from token_holder_indexer.models import NULL_ADDRESS, ContractKind

CONTRACT = "0x1234567890abcdef1234567890abcdef12345678"
ALICE = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
BOB = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"
CAROL = "0xcccccccccccccccccccccccccccccccccccccccc"


def call_returning(fn):
    """A contract function whose `.call()` resolves to `fn(*args)`."""

    def bind(*args):
        bound = MagicMock()

        async def call(**kwargs):
            result = fn(*args)
            if isinstance(result, Exception):
                raise result
            return result

        bound.call = AsyncMock(side_effect=call)
        return bound

    return MagicMock(side_effect=bind)


def make_provider(functions: dict) -> MagicMock:
    """Provider whose `execute_with_retry` runs the callback on a fake client."""
    contract = MagicMock()
    for name, fn in functions.items():
        setattr(contract.functions, name, fn)
    w3 = MagicMock()
    w3.eth.contract.return_value = contract

    async def run(fn, *, label):
        try:
            return await fn(w3)
        except ValueError as e:
            raise RPCError(f"{label} failed: {e}") from e

    provider = MagicMock()
    provider.execute_with_retry = AsyncMock(side_effect=run)
    provider.w3 = w3
    return provider


# ============================================================================
# ERC-721
# ============================================================================


class TestErc721Reads:
    @pytest.mark.asyncio
    async def test_balances(self) -> None:
        held = {ALICE: 2, BOB: 0}
        provider = make_provider({"balanceOf": call_returning(lambda owner: held[owner.lower()])})
        reader = LiveBalanceReader(provider, CONTRACT, address_batch_size=1)

        balances = await reader.erc721_balances([ALICE, BOB], block_identifier=50)

        assert balances == {ALICE: 2, BOB: 0}
        assert provider.execute_with_retry.await_count == 2
        assert provider.w3.eth.contract.call_args.kwargs["address"].lower() == CONTRACT

    @pytest.mark.asyncio
    async def test_failed_balance_reads_as_zero(self) -> None:
        def balance_of(owner: str):
            if owner.lower() == BOB:
                return ValueError("execution reverted")
            return 3

        provider = make_provider({"balanceOf": call_returning(balance_of)})
        reader = LiveBalanceReader(provider, CONTRACT)

        assert await reader.erc721_balances([ALICE, BOB]) == {ALICE: 3, BOB: 0}

    @pytest.mark.asyncio
    async def test_owners_skip_burned_and_failed(self) -> None:
        owners = {1: ALICE.upper().replace("0X", "0x"), 2: NULL_ADDRESS, 3: ValueError("nonexistent token")}
        provider = make_provider({"ownerOf": call_returning(lambda token_id: owners[token_id])})
        reader = LiveBalanceReader(provider, CONTRACT)

        assert await reader.erc721_owners([1, 2, 3]) == {1: ALICE}

    def test_batch_size_validated(self) -> None:
        with pytest.raises(ValueError):
            LiveBalanceReader(MagicMock(), CONTRACT, address_batch_size=0)


# ============================================================================
# ERC-1155
# ============================================================================


class TestErc1155Reads:
    @pytest.mark.asyncio
    async def test_batches(self) -> None:
        held = {ALICE: 5, BOB: 0, CAROL: 9}
        batch_of = call_returning(lambda accounts, ids: [held[a.lower()] for a in accounts])
        provider = make_provider({"balanceOfBatch": batch_of})
        reader = LiveBalanceReader(provider, CONTRACT, native_batch_size=2)

        balances = await reader.erc1155_balances([ALICE, BOB, CAROL], 7)

        assert balances == {ALICE: 5, BOB: 0, CAROL: 9}
        assert batch_of.call_count == 2
        first_accounts, first_ids = batch_of.call_args_list[0].args
        assert [a.lower() for a in first_accounts] == [ALICE, BOB]
        assert first_ids == [7, 7]

    @pytest.mark.asyncio
    async def test_failed_batch_reads_as_zero(self) -> None:
        def batch(accounts, ids):
            if any(a.lower() == CAROL for a in accounts):
                return ValueError("out of gas")
            return [1] * len(accounts)

        provider = make_provider({"balanceOfBatch": call_returning(batch)})
        reader = LiveBalanceReader(provider, CONTRACT, native_batch_size=2)

        assert await reader.erc1155_balances([ALICE, BOB, CAROL], 1) == {ALICE: 1, BOB: 1, CAROL: 0}


# ============================================================================
# Interface detection
# ============================================================================


class TestDetectContractKind:
    @pytest.mark.parametrize(
        ("supported", "kind"),
        [
            ({ERC165_INTERFACE_ERC1155}, ContractKind.ERC1155),
            ({ERC165_INTERFACE_ERC721}, ContractKind.ERC721),
            (set(), None),
        ],
    )
    @pytest.mark.asyncio
    async def test_detect(self, supported, kind) -> None:
        provider = make_provider({"supportsInterface": call_returning(lambda interface_id: interface_id in supported)})

        assert await LiveBalanceReader(provider, CONTRACT).detect_contract_kind() is kind

    @pytest.mark.asyncio
    async def test_reverting_contract_supports_nothing(self) -> None:
        provider = make_provider({"supportsInterface": call_returning(lambda _: ValueError("revert"))})

        assert await LiveBalanceReader(provider, CONTRACT).detect_contract_kind() is None


# ============================================================================
# Deployment block
# ============================================================================


def code_provider(deployed_at: int | None, head: int = 1_000) -> MagicMock:
    async def get_code(address: str, block: int) -> bytes:
        if deployed_at is not None and block >= deployed_at:
            return b"\x60\x80"
        return b""

    provider = MagicMock()
    provider.get_block_number = AsyncMock(return_value=head)
    provider.get_code = AsyncMock(side_effect=get_code)
    return provider


class TestFindDeploymentBlock:
    @pytest.mark.parametrize("deployed_at", [0, 1, 437, 999, 1_000])
    @pytest.mark.asyncio
    async def test_finds_first_block_with_code(self, deployed_at) -> None:
        assert await find_deployment_block(code_provider(deployed_at), CONTRACT) == deployed_at

    @pytest.mark.asyncio
    async def test_no_code_at_head(self) -> None:
        assert await find_deployment_block(code_provider(None), CONTRACT) is None

    @pytest.mark.asyncio
    async def test_explicit_bounds(self) -> None:
        provider = code_provider(600)

        assert await find_deployment_block(provider, CONTRACT, low=500, high=700) == 600
        provider.get_block_number.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_inverted_bounds(self) -> None:
        with pytest.raises(ValueError):
            await find_deployment_block(code_provider(5), CONTRACT, low=10, high=5)
