from __future__ import annotations

from collections.abc import Callable
from typing import Any, TypeVar

from tenderflow.db.connection import ConnectionManager, Transaction
from tenderflow.db.dialects import validate_identifier

T = TypeVar("T")


class SqlRepository:
    """Shared plumbing: every public method accepts an optional caller transaction."""

    def __init__(self, *, manager: ConnectionManager, table_name: str) -> None:
        self._manager = manager
        self._table_name = validate_identifier(table_name)

    @property
    def _dialect(self) -> Any:
        return self._manager.dialect

    def _in_tx(self, fn: Callable[[Transaction], T], tx: Transaction | None) -> T:
        if tx is not None:
            return fn(tx)
        return self._manager.with_transaction(fn)
