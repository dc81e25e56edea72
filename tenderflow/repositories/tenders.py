from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from tenderflow.db.connection import ConnectionManager, Transaction
from tenderflow.db.dialects import validate_identifier
from tenderflow.errors import DeadlinePassed, InvalidTransition, NotFound, ValidationFailed
from tenderflow.lifecycle import TenderEvent, next_tender_status, tender_event_for
from tenderflow.models import Attachment, Tender, TenderStatus, as_datetime, as_decimal, utcnow
from tenderflow.repositories.base import SqlRepository

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = frozenset(
    {"title", "description", "category_id", "budget_min", "budget_max", "deadline", "requirements", "attachments"}
)
# Frozen for non-privileged actors once the tender has received a bid.
LOCKED_AFTER_FIRST_BID = frozenset({"budget_min", "budget_max", "deadline", "requirements"})


@dataclass
class TenderFilter:
    status: TenderStatus | None = None
    category_id: int | None = None
    created_by: int | None = None
    budget_min: Decimal | None = None
    budget_max: Decimal | None = None
    search: str | None = None
    active_only: bool = False
    include_archived: bool = False
    limit: int = 100
    offset: int = 0


def _check_budget(budget_min: Decimal | None, budget_max: Decimal | None) -> None:
    if budget_min is not None and budget_min < 0:
        raise ValidationFailed("budget_min must not be negative")
    if budget_min is not None and budget_max is not None and budget_max < budget_min:
        raise ValidationFailed("budget_max must be greater than or equal to budget_min")


def _parse_field(name: str, value: Any, parser: Callable[[Any], Any]) -> Any:
    try:
        return parser(value)
    except (TypeError, ValueError) as exc:
        raise ValidationFailed(f"invalid value for {name}") from exc


def _attachments_json(value: Any) -> str:
    try:
        items = [Attachment.from_value(x).as_dict() for x in (value or [])]
    except (TypeError, ValueError) as exc:
        raise ValidationFailed(f"invalid attachments: {exc}") from exc
    return json.dumps(items, ensure_ascii=True, sort_keys=True)


class TendersRepository(SqlRepository):
    def __init__(self, *, manager: ConnectionManager, table_name: str = "tenders", bids_table: str = "bids") -> None:
        super().__init__(manager=manager, table_name=table_name)
        self._bids_table = validate_identifier(bids_table)

    def create(self, data: dict[str, Any], *, tx: Transaction | None = None) -> Tender:
        title = str(data.get("title") or "").strip()
        if not title:
            raise ValidationFailed("title is required")
        created_by = data.get("created_by")
        if created_by is None:
            raise ValidationFailed("created_by is required")
        budget_min = _parse_field("budget_min", data.get("budget_min"), as_decimal)
        budget_max = _parse_field("budget_max", data.get("budget_max"), as_decimal)
        _check_budget(budget_min, budget_max)
        status = TenderStatus(data.get("status") or TenderStatus.DRAFT)
        if status not in {TenderStatus.DRAFT, TenderStatus.OPEN}:
            raise InvalidTransition(f"tenders cannot be created as {status.value}", code="TENDER_TRANSITION_INVALID")
        deadline = _parse_field("deadline", data.get("deadline"), as_datetime)
        now = utcnow()
        published_at = None
        if status is TenderStatus.OPEN:
            if deadline is None or deadline <= now:
                raise DeadlinePassed("valid future deadline is required to open a tender")
            published_at = now

        sql = f"""
            INSERT INTO {self._table_name} (
                title, description, category_id, budget_min, budget_max, deadline, status,
                requirements, attachments, created_by, updated_by, published_at, created_at, updated_at
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, {self._dialect.json_placeholder}, %s, %s, %s, %s, %s)
            RETURNING *
        """
        params = (
            title,
            str(data.get("description") or ""),
            data.get("category_id"),
            budget_min,
            budget_max,
            deadline,
            status,
            data.get("requirements"),
            _attachments_json(data.get("attachments")),
            int(created_by),
            int(created_by),
            published_at,
            now,
            now,
        )

        def _op(t: Transaction) -> Tender:
            row = t.fetchone(sql, params)
            if row is None:
                raise RuntimeError("tender insert returned no row")
            return Tender.from_row(row)

        tender = self._in_tx(_op, tx)
        logger.info("tender_created tender_id=%s status=%s created_by=%s", tender.id, tender.status.value, tender.created_by)
        return tender

    def find_by_id(self, tender_id: int, *, tx: Transaction | None = None, for_update: bool = False) -> Tender | None:
        sql = f"SELECT * FROM {self._table_name} WHERE id = %s"
        if for_update:
            sql += self._dialect.for_update

        def _op(t: Transaction) -> Tender | None:
            row = t.fetchone(sql, (tender_id,))
            return Tender.from_row(row) if row is not None else None

        return self._in_tx(_op, tx)

    def get(self, tender_id: int, *, tx: Transaction | None = None, for_update: bool = False) -> Tender:
        tender = self.find_by_id(tender_id, tx=tx, for_update=for_update)
        if tender is None:
            raise NotFound("tender not found", code="TENDER_NOT_FOUND")
        return tender

    def _where(self, flt: TenderFilter, now: datetime) -> tuple[str, list[Any]]:
        clauses = ["1=1"]
        params: list[Any] = []
        if flt.status is not None:
            clauses.append("status = %s")
            params.append(TenderStatus(flt.status))
        elif not flt.include_archived:
            # archived tenders are soft-hidden unless asked for
            clauses.append("status <> %s")
            params.append(TenderStatus.ARCHIVED)
        if flt.category_id is not None:
            clauses.append("category_id = %s")
            params.append(flt.category_id)
        if flt.created_by is not None:
            clauses.append("created_by = %s")
            params.append(flt.created_by)
        # Budget filters select tenders whose range overlaps the requested one.
        if flt.budget_min is not None:
            clauses.append("budget_max >= %s")
            params.append(flt.budget_min)
        if flt.budget_max is not None:
            clauses.append("budget_min <= %s")
            params.append(flt.budget_max)
        if flt.search:
            clauses.append("(LOWER(title) LIKE %s OR LOWER(description) LIKE %s)")
            pattern = f"%{flt.search.strip().lower()}%"
            params.extend([pattern, pattern])
        if flt.active_only:
            clauses.append("status = %s AND deadline > %s")
            params.extend([TenderStatus.OPEN, now])
        return " AND ".join(clauses), params

    def find_all(self, flt: TenderFilter | None = None, *, tx: Transaction | None = None) -> list[Tender]:
        flt = flt or TenderFilter()
        where, params = self._where(flt, utcnow())
        sql = f"""
            SELECT * FROM {self._table_name}
            WHERE {where}
            ORDER BY created_at DESC, id DESC
            LIMIT %s OFFSET %s
        """
        params.extend([max(1, int(flt.limit)), max(0, int(flt.offset))])

        def _op(t: Transaction) -> list[Tender]:
            return [Tender.from_row(row) for row in t.execute(sql, params)]

        return self._in_tx(_op, tx)

    def count(self, flt: TenderFilter | None = None, *, tx: Transaction | None = None) -> int:
        where, params = self._where(flt or TenderFilter(), utcnow())
        sql = f"SELECT COUNT(*) AS total FROM {self._table_name} WHERE {where}"

        def _op(t: Transaction) -> int:
            row = t.fetchone(sql, params)
            return int(row["total"]) if row else 0

        return self._in_tx(_op, tx)

    def update(
        self,
        tender_id: int,
        partial: dict[str, Any],
        *,
        actor_id: int | None = None,
        tx: Transaction | None = None,
    ) -> Tender:
        unknown = sorted(set(partial) - _UPDATABLE_FIELDS)
        if unknown:
            raise ValidationFailed(f"fields cannot be updated: {', '.join(unknown)}")

        def _op(t: Transaction) -> Tender:
            current = self.get(tender_id, tx=t, for_update=True)
            if not partial:
                return current
            values: dict[str, Any] = {}
            for key, value in partial.items():
                if key in {"budget_min", "budget_max"}:
                    values[key] = _parse_field(key, value, as_decimal)
                elif key == "deadline":
                    values[key] = _parse_field(key, value, as_datetime)
                elif key == "title":
                    title = str(value or "").strip()
                    if not title:
                        raise ValidationFailed("title is required")
                    values[key] = title
                else:
                    values[key] = value
            _check_budget(
                values.get("budget_min", current.budget_min),
                values.get("budget_max", current.budget_max),
            )
            assignments: list[str] = []
            params: list[Any] = []
            for key in sorted(values):
                if key == "attachments":
                    assignments.append(f"attachments = {self._dialect.json_placeholder}")
                    params.append(_attachments_json(values[key]))
                else:
                    assignments.append(f"{key} = %s")
                    params.append(values[key])
            assignments.extend(["updated_by = COALESCE(%s, updated_by)", "updated_at = %s"])
            params.extend([actor_id, utcnow(), tender_id])
            row = t.fetchone(
                f"UPDATE {self._table_name} SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                params,
            )
            if row is None:
                raise NotFound("tender not found", code="TENDER_NOT_FOUND")
            return Tender.from_row(row)

        return self._in_tx(_op, tx)

    def set_status(
        self,
        tender_id: int,
        status: TenderStatus | str,
        actor_id: int,
        *,
        event: TenderEvent | None = None,
        tx: Transaction | None = None,
    ) -> Tender:
        target = TenderStatus(status)

        def _op(t: Transaction) -> Tender:
            current = self.get(tender_id, tx=t, for_update=True)
            resolved_event = event or tender_event_for(current.status, target)
            if next_tender_status(current.status, resolved_event) is not target:
                raise InvalidTransition(
                    f"event {resolved_event.value} does not lead to {target.value}",
                    code="TENDER_TRANSITION_INVALID",
                )
            now = utcnow()
            published_at = now if resolved_event is TenderEvent.PUBLISH else None
            closing_date = now if current.status is TenderStatus.OPEN else None
            row = t.fetchone(
                f"""
                UPDATE {self._table_name}
                SET status = %s,
                    published_at = COALESCE(%s, published_at),
                    closing_date = COALESCE(%s, closing_date),
                    updated_by = %s,
                    updated_at = %s
                WHERE id = %s AND status = %s
                RETURNING *
                """,
                (target, published_at, closing_date, actor_id, now, tender_id, current.status),
            )
            if row is None:
                raise InvalidTransition("tender status changed concurrently", code="TENDER_TRANSITION_INVALID")
            logger.info(
                "tender_status_changed tender_id=%s from=%s to=%s actor_id=%s",
                tender_id,
                current.status.value,
                target.value,
                actor_id,
            )
            return Tender.from_row(row)

        return self._in_tx(_op, tx)

    def has_bids(self, tender_id: int, *, tx: Transaction | None = None) -> bool:
        sql = f"SELECT 1 AS present FROM {self._bids_table} WHERE tender_id = %s LIMIT 1"
        return self._in_tx(lambda t: t.fetchone(sql, (tender_id,)) is not None, tx)

    def increment_view_count(self, tender_id: int, *, tx: Transaction | None = None) -> None:
        sql = f"UPDATE {self._table_name} SET view_count = view_count + 1 WHERE id = %s"
        self._in_tx(lambda t: t.execute(sql, (tender_id,)), tx)

    def stats(self, *, tx: Transaction | None = None) -> dict[str, int]:
        sql = f"""
            SELECT
              COUNT(*) AS total,
              COUNT(CASE WHEN status = 'open' THEN 1 END) AS open,
              COUNT(CASE WHEN status = 'closed' THEN 1 END) AS closed,
              COUNT(CASE WHEN status = 'awarded' THEN 1 END) AS awarded,
              COUNT(CASE WHEN status = 'open' AND deadline > %s THEN 1 END) AS active
            FROM {self._table_name}
        """

        def _op(t: Transaction) -> dict[str, int]:
            row = t.fetchone(sql, (utcnow(),)) or {}
            return {key: int(row.get(key) or 0) for key in ("total", "open", "closed", "awarded", "active")}

        return self._in_tx(_op, tx)
