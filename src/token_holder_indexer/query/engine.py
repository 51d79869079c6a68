"""Composable holder queries over the ledger.

A query narrows ledger rows by token selection, aggregates them per holder,
applies holder filters (balance bounds, distinct token counts, complete
sets), sorts, ranks and paginates. `evaluate_query` does all of that on an
in-memory row list so it can be reused and tested without a database.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from token_holder_indexer.models import is_address, normalize_address
from token_holder_indexer.snapshot.generator import percentage_of
from token_holder_indexer.storage.repos import LedgerEntryDTO, LedgerRepository

if TYPE_CHECKING:
    from token_holder_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


class SelectionMode(str, Enum):
    ALL = "all"
    EXACT = "exact"
    ANY = "any"
    RANGE = "range"
    CUSTOM = "custom"


class SortBy(str, Enum):
    BALANCE = "balance"
    TOKEN_COUNT = "tokenCount"
    ADDRESS = "address"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


@dataclass(frozen=True)
class TokenSelection:
    mode: SelectionMode = SelectionMode.ALL
    token_ids: tuple[int, ...] = ()
    range: tuple[int, int] | None = None
    exclude_tokens: tuple[int, ...] = ()

    def matches(self, token_id: int) -> bool:
        if token_id in self.exclude_tokens and self.mode in (SelectionMode.RANGE, SelectionMode.CUSTOM):
            return False
        if self.mode is SelectionMode.ALL:
            return True
        if self.mode is SelectionMode.RANGE:
            return self.range is not None and self.range[0] <= token_id <= self.range[1]
        return token_id in self.token_ids

    def required_set(self) -> tuple[int, ...]:
        """Token ids a complete set consists of; empty when no id list is given."""
        excluded = set(self.exclude_tokens)
        return tuple(sorted(t for t in set(self.token_ids) if t not in excluded))

    def listed_ids(self) -> list[int] | None:
        """Ids to push down to the ledger read, or None to read everything."""
        if self.mode in (SelectionMode.EXACT, SelectionMode.ANY, SelectionMode.CUSTOM) and self.token_ids:
            return sorted(set(self.token_ids))
        return None


@dataclass(frozen=True)
class HolderFilters:
    min_balance: int | None = None
    max_balance: int | None = None
    min_token_count: int | None = None
    max_token_count: int | None = None
    has_complete_sets: bool = False
    min_sets_count: int | None = None


@dataclass(frozen=True)
class HolderQuery:
    contract: str
    token_selection: TokenSelection = field(default_factory=TokenSelection)
    holder_filters: HolderFilters = field(default_factory=HolderFilters)
    sort_by: SortBy = SortBy.BALANCE
    sort_order: SortOrder = SortOrder.DESC
    limit: int | None = None
    offset: int = 0


@dataclass(frozen=True)
class ValidationIssue:
    field: str
    message: str


class QueryValidationError(ValueError):
    """Raised by `execute_query` for an invalid query."""

    def __init__(self, issues: Sequence[ValidationIssue]) -> None:
        self.issues = list(issues)
        super().__init__("; ".join(f"{i.field}: {i.message}" for i in self.issues))


@dataclass(frozen=True)
class QueryHolder:
    address: str
    total_balance: int
    token_count: int
    balances: dict[int, int]
    rank: int
    percentage: Decimal
    complete_sets: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "total_balance": str(self.total_balance),
            "token_count": self.token_count,
            "balances": {str(k): str(v) for k, v in self.balances.items()},
            "rank": self.rank,
            "percentage": str(self.percentage),
            "complete_sets": self.complete_sets,
        }


@dataclass(frozen=True)
class QueryResult:
    holders: list[QueryHolder]
    total_holders: int
    total_supply: int
    unique_tokens: int
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "holders": [h.to_dict() for h in self.holders],
            "total_holders": self.total_holders,
            "total_supply": str(self.total_supply),
            "unique_tokens": self.unique_tokens,
            "timestamp": self.timestamp.isoformat(),
        }


def validate_query(query: HolderQuery) -> list[ValidationIssue]:
    """Every problem with a query; empty when it is valid."""
    issues: list[ValidationIssue] = []
    selection = query.token_selection
    filters = query.holder_filters

    if not is_address(query.contract):
        issues.append(ValidationIssue("contract", "invalid contract address"))

    if selection.mode in (SelectionMode.EXACT, SelectionMode.ANY, SelectionMode.CUSTOM) and not selection.token_ids:
        issues.append(ValidationIssue("token_selection.token_ids", f"{selection.mode.value} mode requires token ids"))
    if selection.mode is SelectionMode.RANGE:
        if selection.range is None:
            issues.append(ValidationIssue("token_selection.range", "range mode requires a range"))
        elif selection.range[0] > selection.range[1]:
            issues.append(ValidationIssue("token_selection.range", "range start must not exceed end"))

    if filters.min_balance is not None and filters.min_balance < 0:
        issues.append(ValidationIssue("holder_filters.min_balance", "must be >= 0"))
    if (
        filters.min_balance is not None
        and filters.max_balance is not None
        and filters.min_balance > filters.max_balance
    ):
        issues.append(ValidationIssue("holder_filters.max_balance", "must be >= min_balance"))
    if (
        filters.min_token_count is not None
        and filters.max_token_count is not None
        and filters.min_token_count > filters.max_token_count
    ):
        issues.append(ValidationIssue("holder_filters.max_token_count", "must be >= min_token_count"))
    if (filters.has_complete_sets or filters.min_sets_count is not None) and not selection.required_set():
        issues.append(ValidationIssue("holder_filters.has_complete_sets", "complete sets require token ids"))

    if query.limit is not None and query.limit < 0:
        issues.append(ValidationIssue("limit", "must be >= 0"))
    if query.offset < 0:
        issues.append(ValidationIssue("offset", "must be >= 0"))
    return issues


@dataclass
class _Aggregate:
    address: str
    balances: dict[int, int] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.balances.values())

    @property
    def token_count(self) -> int:
        return len(self.balances)


def _aggregate(query: HolderQuery, entries: Iterable[LedgerEntryDTO]) -> list[_Aggregate]:
    by_address: dict[str, _Aggregate] = {}
    for entry in entries:
        if entry.balance <= 0 or not query.token_selection.matches(entry.token_id):
            continue
        agg = by_address.setdefault(entry.address, _Aggregate(entry.address))
        agg.balances[entry.token_id] = entry.balance
    return [by_address[a] for a in sorted(by_address)]


def _complete_sets(agg: _Aggregate, required: tuple[int, ...]) -> int:
    return min(agg.balances.get(t, 0) for t in required)


def _passes(agg: _Aggregate, filters: HolderFilters, required: tuple[int, ...]) -> bool:
    total = agg.total
    if filters.min_balance is not None and total < filters.min_balance:
        return False
    if filters.max_balance is not None and total > filters.max_balance:
        return False
    if filters.min_token_count is not None and agg.token_count < filters.min_token_count:
        return False
    if filters.max_token_count is not None and agg.token_count > filters.max_token_count:
        return False
    if required:
        if filters.has_complete_sets and sum(1 for t in required if agg.balances.get(t, 0) > 0) < len(required):
            return False
        if filters.min_sets_count is not None and _complete_sets(agg, required) < filters.min_sets_count:
            return False
    return True


def _sort(holders: list[_Aggregate], sort_by: SortBy, order: SortOrder) -> list[_Aggregate]:
    descending = order is SortOrder.DESC
    # Input is address-ascending; stable sorts keep that as the tiebreak.
    if sort_by is SortBy.ADDRESS:
        return sorted(holders, key=lambda h: h.address, reverse=descending)
    if sort_by is SortBy.TOKEN_COUNT:
        by_balance = sorted(holders, key=lambda h: h.total, reverse=True)
        return sorted(by_balance, key=lambda h: h.token_count if not descending else -h.token_count)
    return sorted(holders, key=lambda h: h.total if not descending else -h.total)


def evaluate_query(query: HolderQuery, entries: Iterable[LedgerEntryDTO]) -> QueryResult:
    """Run a validated query over ledger rows of its contract."""
    required = query.token_selection.required_set()
    selected = [
        agg for agg in _aggregate(query, entries) if _passes(agg, query.holder_filters, required)
    ]
    ordered = _sort(selected, query.sort_by, query.sort_order)
    total_supply = sum(agg.total for agg in ordered)

    ranked = [
        QueryHolder(
            address=agg.address,
            total_balance=agg.total,
            token_count=agg.token_count,
            balances=dict(sorted(agg.balances.items())),
            rank=position + 1,
            percentage=percentage_of(agg.total, total_supply),
            complete_sets=_complete_sets(agg, required) if required else None,
        )
        for position, agg in enumerate(ordered)
    ]
    end = None if query.limit is None else query.offset + query.limit
    return QueryResult(
        holders=ranked[query.offset : end],
        total_holders=len(ranked),
        total_supply=total_supply,
        unique_tokens=len({t for agg in ordered for t in agg.balances}),
        timestamp=datetime.now(UTC),
    )


class HolderQueryEngine:
    """Executes holder queries against the ledger."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def _load(self, query: HolderQuery) -> list[LedgerEntryDTO]:
        async with self._db.get_async_session() as session:
            return await LedgerRepository(session).list_entries(
                normalize_address(query.contract),
                token_ids=query.token_selection.listed_ids(),
            )

    async def execute_query(self, query: HolderQuery) -> QueryResult:
        """Validate and run a query.

        Raises:
            QueryValidationError: If the query is invalid.
        """
        issues = validate_query(query)
        if issues:
            raise QueryValidationError(issues)
        result = evaluate_query(query, await self._load(query))
        logger.debug(
            "Query on %s matched %d holders (%d returned)",
            query.contract,
            result.total_holders,
            len(result.holders),
        )
        return result

    async def get_query_statistics(self, query: HolderQuery) -> dict[str, int]:
        """Holder, token and supply totals of a query, ignoring pagination."""
        issues = validate_query(query)
        if issues:
            raise QueryValidationError(issues)
        unpaged = HolderQuery(
            contract=query.contract,
            token_selection=query.token_selection,
            holder_filters=query.holder_filters,
            sort_by=query.sort_by,
            sort_order=query.sort_order,
        )
        result = evaluate_query(unpaged, await self._load(query))
        return {
            "estimated_holders": result.total_holders,
            "estimated_tokens": result.unique_tokens,
            "total_supply": result.total_supply,
        }
