from __future__ import annotations

import json
from typing import Any

from tenderflow.db.connection import ConnectionManager, Transaction
from tenderflow.models import BidHistoryEntry, json_safe, utcnow
from tenderflow.repositories.base import SqlRepository


def _snapshot(values: dict[str, Any] | None) -> str:
    return json.dumps(json_safe(values or {}), ensure_ascii=True, sort_keys=True)


class BidHistoryRepository(SqlRepository):
    """Append-only audit trail of bid changes.

    No update or delete methods; schema triggers abort UPDATE and DELETE
    on the table.
    """

    def __init__(self, *, manager: ConnectionManager, table_name: str = "bid_history") -> None:
        super().__init__(manager=manager, table_name=table_name)

    def record(
        self,
        bid_id: int,
        action: str,
        old_values: dict[str, Any] | None,
        new_values: dict[str, Any] | None,
        actor_id: int,
        note: str | None = None,
        *,
        tx: Transaction | None = None,
    ) -> BidHistoryEntry:
        placeholder = self._dialect.json_placeholder
        sql = f"""
            INSERT INTO {self._table_name} (
                bid_id, action, old_values, new_values, performed_by, notes, created_at
            ) VALUES (%s, %s, {placeholder}, {placeholder}, %s, %s, %s)
            RETURNING *
        """
        params = (bid_id, action, _snapshot(old_values), _snapshot(new_values), actor_id, note, utcnow())

        def _op(t: Transaction) -> BidHistoryEntry:
            row = t.fetchone(sql, params)
            if row is None:
                raise RuntimeError("bid history insert returned no row")
            return BidHistoryEntry.from_row(row)

        return self._in_tx(_op, tx)

    def list_for_bid(self, bid_id: int, *, tx: Transaction | None = None) -> list[BidHistoryEntry]:
        sql = f"""
            SELECT * FROM {self._table_name}
            WHERE bid_id = %s
            ORDER BY created_at ASC, id ASC
        """

        def _op(t: Transaction) -> list[BidHistoryEntry]:
            return [BidHistoryEntry.from_row(row) for row in t.execute(sql, (bid_id,))]

        return self._in_tx(_op, tx)
