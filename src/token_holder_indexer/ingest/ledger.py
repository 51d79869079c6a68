"""Ledger transition function.

`BalanceBook` is the single place where a transfer turns into balance
changes. Incremental ingestion, full rebuilds, historical snapshots and the
validator all replay events through it, so the ledger they produce agrees by
construction.

Rules per event, applied in canonical order:
- debit `(from, token)` unless `from` is the null address; a debit larger
  than the current balance is rejected and recorded as an anomaly,
- credit `(to, token)` unless `to` is the null address.

A key that was successfully touched keeps its row even at zero balance.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Collection, Iterable, Mapping

from token_holder_indexer.models import NULL_ADDRESS, LedgerAnomaly, LedgerKey, TransferEvent

logger = logging.getLogger(__name__)


class BalanceBook:
    """In-memory balances keyed by `LedgerKey`."""

    def __init__(self, balances: Mapping[LedgerKey, int] | None = None) -> None:
        self._balances: dict[LedgerKey, int] = dict(balances or {})
        self._changed: dict[LedgerKey, int] = {}
        self._minted: defaultdict[int, int] = defaultdict(int)
        self._burned: defaultdict[int, int] = defaultdict(int)
        self._unbacked_credits: defaultdict[int, int] = defaultdict(int)
        self.anomalies: list[LedgerAnomaly] = []
        self.events_applied = 0

    def balance(self, key: LedgerKey) -> int:
        return self._balances.get(key, 0)

    def apply(self, event: TransferEvent) -> int:
        """Apply one event. Returns the number of balance rows changed."""
        updates = 0
        debit_rejected = False

        if event.from_address != NULL_ADDRESS:
            key = LedgerKey(event.from_address, event.token_id)
            current = self._balances.get(key, 0)
            if current < event.amount:
                anomaly = LedgerAnomaly(
                    key=key,
                    balance=current,
                    attempted_debit=event.amount,
                    block_number=event.block_number,
                    tx_hash=event.tx_hash,
                    log_index=event.log_index,
                )
                self.anomalies.append(anomaly)
                logger.warning("Ledger anomaly: %s", anomaly.describe())
                debit_rejected = True
            else:
                self._balances[key] = current - event.amount
                self._changed[key] = event.block_number
                updates += 1
                if event.to_address == NULL_ADDRESS:
                    self._burned[event.token_id] += event.amount

        if event.to_address != NULL_ADDRESS:
            key = LedgerKey(event.to_address, event.token_id)
            self._balances[key] = self._balances.get(key, 0) + event.amount
            self._changed[key] = event.block_number
            updates += 1
            if event.from_address == NULL_ADDRESS:
                self._minted[event.token_id] += event.amount
            elif debit_rejected:
                self._unbacked_credits[event.token_id] += event.amount

        self.events_applied += 1
        return updates

    def apply_all(self, events: Iterable[TransferEvent]) -> int:
        """Apply events in canonical order. Returns total row changes."""
        ordered = sorted(events, key=lambda e: e.ordering)
        return sum(self.apply(e) for e in ordered)

    def changes(self) -> dict[LedgerKey, tuple[int, int]]:
        """Rows changed since construction as `{key: (balance, last_updated_block)}`."""
        return {key: (self._balances[key], block) for key, block in sorted(self._changed.items())}

    def balances(
        self,
        *,
        token_ids: Collection[int] | None = None,
        include_zero: bool = False,
    ) -> dict[LedgerKey, int]:
        """Balances sorted by key, optionally narrowed to `token_ids`."""
        selected = set(token_ids) if token_ids else None
        result: dict[LedgerKey, int] = {}
        for key in sorted(self._balances):
            if selected is not None and key.token_id not in selected:
                continue
            value = self._balances[key]
            if value == 0 and not include_zero:
                continue
            result[key] = value
        return result

    def total_supply(self, token_id: int | None = None) -> int:
        return sum(v for k, v in self._balances.items() if token_id is None or k.token_id == token_id)

    def supply_by_token(self) -> dict[int, int]:
        supply: defaultdict[int, int] = defaultdict(int)
        for key, value in self._balances.items():
            supply[key.token_id] += value
        return dict(sorted(supply.items()))

    def expected_supply_by_token(self) -> dict[int, int]:
        """Minted minus burned (accepted) plus credits whose debit was rejected."""
        tokens = set(self._minted) | set(self._burned) | set(self._unbacked_credits)
        return {
            token: self._minted[token] - self._burned[token] + self._unbacked_credits[token]
            for token in sorted(tokens)
        }
