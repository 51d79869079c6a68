"""Tests for the ledger transition function."""

from __future__ import annotations

from token_holder_indexer.ingest.ledger import BalanceBook
from token_holder_indexer.models import NULL_ADDRESS, LedgerKey

ALICE = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
BOB = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"


class TestBalanceBookApply:
    def test_mint_credits_receiver_only(self, event_factory) -> None:
        book = BalanceBook()
        updates = book.apply(event_factory(to_address=ALICE, amount=5))

        assert updates == 1
        assert book.balance(LedgerKey(ALICE, 1)) == 5
        assert book.balance(LedgerKey(NULL_ADDRESS, 1)) == 0
        assert book.anomalies == []

    def test_transfer_moves_balance(self, event_factory) -> None:
        book = BalanceBook()
        book.apply(event_factory(to_address=ALICE, amount=5, block_number=100))
        updates = book.apply(
            event_factory(from_address=ALICE, to_address=BOB, amount=2, block_number=101)
        )

        assert updates == 2
        assert book.balance(LedgerKey(ALICE, 1)) == 3
        assert book.balance(LedgerKey(BOB, 1)) == 2
        assert book.total_supply() == 5

    def test_burn_debits_sender_only(self, event_factory) -> None:
        book = BalanceBook()
        book.apply(event_factory(to_address=ALICE, amount=5, block_number=100))
        book.apply(event_factory(from_address=ALICE, to_address=NULL_ADDRESS, amount=5, block_number=101))

        assert book.balance(LedgerKey(ALICE, 1)) == 0
        assert book.total_supply() == 0
        assert book.expected_supply_by_token() == {1: 0}

    def test_overdraft_is_rejected_and_recorded(self, event_factory) -> None:
        book = BalanceBook()
        book.apply(event_factory(to_address=ALICE, amount=1, block_number=100))
        updates = book.apply(
            event_factory(from_address=ALICE, to_address=BOB, amount=3, block_number=101)
        )

        assert updates == 1
        assert book.balance(LedgerKey(ALICE, 1)) == 1
        assert book.balance(LedgerKey(BOB, 1)) == 3
        assert len(book.anomalies) == 1
        anomaly = book.anomalies[0]
        assert anomaly.key == LedgerKey(ALICE, 1)
        assert anomaly.balance == 1
        assert anomaly.attempted_debit == 3
        assert "negative balance rejected" in anomaly.describe()

    def test_rejected_debit_counts_toward_expected_supply(self, event_factory) -> None:
        book = BalanceBook()
        book.apply(event_factory(from_address=ALICE, to_address=BOB, amount=4))

        assert book.supply_by_token() == {1: 4}
        assert book.expected_supply_by_token() == {1: 4}

    def test_balances_never_negative(self, event_factory) -> None:
        book = BalanceBook()
        for i in range(5):
            book.apply(event_factory(from_address=ALICE, to_address=BOB, amount=2, block_number=100 + i))
            book.apply(event_factory(from_address=BOB, to_address=ALICE, amount=3, block_number=100 + i, log_index=1))

        assert all(v >= 0 for v in book.balances(include_zero=True).values())


class TestBalanceBookQueries:
    def test_apply_all_sorts_into_canonical_order(self, event_factory) -> None:
        transfer = event_factory(from_address=ALICE, to_address=BOB, amount=2, block_number=101)
        mint = event_factory(to_address=ALICE, amount=5, block_number=100)

        book = BalanceBook()
        book.apply_all([transfer, mint])

        assert book.anomalies == []
        assert book.balances() == {LedgerKey(ALICE, 1): 3, LedgerKey(BOB, 1): 2}

    def test_changes_report_last_updated_block(self, event_factory) -> None:
        book = BalanceBook({LedgerKey(ALICE, 1): 5})
        book.apply(event_factory(from_address=ALICE, to_address=BOB, amount=5, block_number=120))

        assert book.changes() == {
            LedgerKey(ALICE, 1): (0, 120),
            LedgerKey(BOB, 1): (5, 120),
        }

    def test_balances_filters_tokens_and_zero_rows(self, event_factory) -> None:
        book = BalanceBook()
        book.apply(event_factory(to_address=ALICE, token_id=1, amount=2, block_number=100))
        book.apply(event_factory(to_address=ALICE, token_id=2, amount=3, block_number=101))
        book.apply(event_factory(from_address=ALICE, to_address=NULL_ADDRESS, token_id=1, amount=2, block_number=102))

        assert book.balances() == {LedgerKey(ALICE, 2): 3}
        assert book.balances(token_ids=[1], include_zero=True) == {LedgerKey(ALICE, 1): 0}
        assert book.supply_by_token() == {1: 0, 2: 3}
        assert book.total_supply(token_id=2) == 3
