from __future__ import annotations

import json
from typing import Any

from tenderflow.db.connection import ConnectionManager, Transaction
from tenderflow.models import as_datetime, as_json, json_safe, utcnow
from tenderflow.repositories.base import SqlRepository


def _row_to_dict(row: dict[str, Any]) -> dict[str, Any]:
    created_at = as_datetime(row.get("created_at"))
    return {
        "id": int(row["id"]),
        "user_id": int(row["user_id"]),
        "type": row["type"],
        "title": row["title"],
        "message": row["message"],
        "data": as_json(row.get("data"), default={}),
        "is_read": bool(row.get("is_read")),
        "created_at": created_at.isoformat() if created_at else None,
    }


class NotificationsRepository(SqlRepository):
    def __init__(self, *, manager: ConnectionManager, table_name: str = "notifications") -> None:
        super().__init__(manager=manager, table_name=table_name)

    def create(
        self,
        *,
        user_id: int,
        type: str,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
        tx: Transaction | None = None,
    ) -> dict[str, Any]:
        sql = f"""
            INSERT INTO {self._table_name} (user_id, type, title, message, data, is_read, created_at)
            VALUES (%s, %s, %s, %s, {self._dialect.json_placeholder}, %s, %s)
            RETURNING *
        """
        params = (
            user_id,
            type,
            title,
            message,
            json.dumps(json_safe(data or {}), ensure_ascii=True, sort_keys=True),
            False,
            utcnow(),
        )

        def _op(t: Transaction) -> dict[str, Any]:
            row = t.fetchone(sql, params)
            if row is None:
                raise RuntimeError("notification insert returned no row")
            return _row_to_dict(row)

        return self._in_tx(_op, tx)

    def list_for_user(self, user_id: int, *, limit: int = 50, tx: Transaction | None = None) -> list[dict[str, Any]]:
        sql = f"""
            SELECT * FROM {self._table_name}
            WHERE user_id = %s
            ORDER BY created_at DESC, id DESC
            LIMIT %s
        """
        return self._in_tx(lambda t: [_row_to_dict(r) for r in t.execute(sql, (user_id, max(1, int(limit))))], tx)
