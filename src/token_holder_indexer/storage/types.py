"""uint256 column type.

PostgreSQL stores `NUMERIC(78, 0)`, which holds the full uint256 range.
SQLite has no exact 256-bit numeric type, so values are stored as decimal
strings there. Either way the Python side always sees `int`.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from sqlalchemy import Numeric, String
from sqlalchemy.types import TypeDecorator

UINT256_DIGITS = 78


class Uint256(TypeDecorator[int]):
    impl = Numeric(UINT256_DIGITS, 0)
    cache_ok = True

    def load_dialect_impl(self, dialect: Any) -> Any:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Numeric(UINT256_DIGITS, 0))
        return dialect.type_descriptor(String(UINT256_DIGITS))

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        as_int = int(value)
        if as_int < 0 or as_int >= 2**256:
            raise ValueError(f"Value out of uint256 range: {as_int}")
        if dialect.name == "postgresql":
            return Decimal(as_int)
        return str(as_int)

    def process_result_value(self, value: Any, dialect: Any) -> int | None:  # noqa: ARG002
        if value is None:
            return None
        return int(value)
