from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from tenderflow.db.connection import ConnectionManager, Transaction
from tenderflow.db.dialects import validate_identifier
from tenderflow.errors import AlreadyProcessed, DuplicateBid, NotFound, ValidationFailed
from tenderflow.lifecycle import BidEvent, bid_event_for, next_bid_status
from tenderflow.models import Attachment, Bid, BidStatus, as_decimal, utcnow
from tenderflow.repositories.base import SqlRepository

_UPDATABLE_FIELDS = frozenset({"amount", "proposal", "delivery_timeline", "attachments"})
_SORT_COLUMNS = {"submitted_at": "submitted_at", "amount": "amount", "status": "status"}


@dataclass
class BidFilter:
    tender_id: int | None = None
    vendor_id: int | None = None
    status: BidStatus | None = None
    amount_min: Decimal | None = None
    amount_max: Decimal | None = None
    sort_by: str = "submitted_at"
    sort_order: str = "desc"
    tender_owner_id: int | None = None
    limit: int = 100
    offset: int = 0


def parse_bid_amount(value: Any) -> Decimal:
    try:
        amount = as_decimal(value)
    except ValueError as exc:
        raise ValidationFailed("bid amount must be a number") from exc
    if amount is None or not amount.is_finite() or amount <= 0:
        raise ValidationFailed("bid amount must be a positive number")
    return amount


def _attachments_json(value: Any) -> str:
    try:
        items = [Attachment.from_value(x).as_dict() for x in (value or [])]
    except (TypeError, ValueError) as exc:
        raise ValidationFailed(f"invalid attachments: {exc}") from exc
    return json.dumps(items, ensure_ascii=True, sort_keys=True)


class BidsRepository(SqlRepository):
    def __init__(self, *, manager: ConnectionManager, table_name: str = "bids", tenders_table: str = "tenders") -> None:
        super().__init__(manager=manager, table_name=table_name)
        self._tenders_table = validate_identifier(tenders_table)

    def create(self, data: dict[str, Any], *, tx: Transaction | None = None) -> Bid:
        """Insert a pending bid; the duplicate check shares the insert's transaction."""
        tender_id = int(data["tender_id"])
        vendor_id = int(data["vendor_id"])
        amount = parse_bid_amount(data.get("amount"))
        now = utcnow()
        sql = f"""
            INSERT INTO {self._table_name} (
                tender_id, vendor_id, amount, proposal, delivery_timeline, attachments,
                status, submitted_at, updated_at
            ) VALUES (%s, %s, %s, %s, %s, {self._dialect.json_placeholder}, %s, %s, %s)
            RETURNING *
        """
        params = (
            tender_id,
            vendor_id,
            amount,
            str(data.get("proposal") or ""),
            data.get("delivery_timeline"),
            _attachments_json(data.get("attachments")),
            BidStatus.PENDING,
            now,
            now,
        )

        def _op(t: Transaction) -> Bid:
            if self.find_by_tender_and_vendor(tender_id, vendor_id, tx=t) is not None:
                raise DuplicateBid()
            try:
                row = t.fetchone(sql, params)
            except Exception as exc:
                if self._dialect.is_unique_violation(exc):
                    raise DuplicateBid() from exc
                raise
            if row is None:
                raise RuntimeError("bid insert returned no row")
            return Bid.from_row(row)

        return self._in_tx(_op, tx)

    def find_by_id(self, bid_id: int, *, tx: Transaction | None = None, for_update: bool = False) -> Bid | None:
        sql = f"SELECT * FROM {self._table_name} WHERE id = %s"
        if for_update:
            sql += self._dialect.for_update

        def _op(t: Transaction) -> Bid | None:
            row = t.fetchone(sql, (bid_id,))
            return Bid.from_row(row) if row is not None else None

        return self._in_tx(_op, tx)

    def get(self, bid_id: int, *, tx: Transaction | None = None, for_update: bool = False) -> Bid:
        bid = self.find_by_id(bid_id, tx=tx, for_update=for_update)
        if bid is None:
            raise NotFound("bid not found", code="BID_NOT_FOUND")
        return bid

    def find_by_tender_and_vendor(self, tender_id: int, vendor_id: int, *, tx: Transaction | None = None) -> Bid | None:
        sql = f"SELECT * FROM {self._table_name} WHERE tender_id = %s AND vendor_id = %s"

        def _op(t: Transaction) -> Bid | None:
            row = t.fetchone(sql, (tender_id, vendor_id))
            return Bid.from_row(row) if row is not None else None

        return self._in_tx(_op, tx)

    def find_all(self, flt: BidFilter | None = None, *, tx: Transaction | None = None) -> list[Bid]:
        flt = flt or BidFilter()
        clauses = ["1=1"]
        params: list[Any] = []
        if flt.tender_id is not None:
            clauses.append("tender_id = %s")
            params.append(flt.tender_id)
        if flt.vendor_id is not None:
            clauses.append("vendor_id = %s")
            params.append(flt.vendor_id)
        if flt.status is not None:
            clauses.append("status = %s")
            params.append(BidStatus(flt.status))
        if flt.tender_owner_id is not None:
            clauses.append(f"tender_id IN (SELECT id FROM {self._tenders_table} WHERE created_by = %s)")
            params.append(flt.tender_owner_id)
        if flt.amount_min is not None:
            clauses.append("amount >= %s")
            params.append(flt.amount_min)
        if flt.amount_max is not None:
            clauses.append("amount <= %s")
            params.append(flt.amount_max)
        sort_column = _SORT_COLUMNS.get(flt.sort_by, "submitted_at")
        direction = "ASC" if str(flt.sort_order).lower() == "asc" else "DESC"
        sql = f"""
            SELECT * FROM {self._table_name}
            WHERE {" AND ".join(clauses)}
            ORDER BY {sort_column} {direction}, id {direction}
            LIMIT %s OFFSET %s
        """
        params.extend([max(1, int(flt.limit)), max(0, int(flt.offset))])

        def _op(t: Transaction) -> list[Bid]:
            return [Bid.from_row(row) for row in t.execute(sql, params)]

        return self._in_tx(_op, tx)

    def update(self, bid_id: int, partial: dict[str, Any], *, tx: Transaction | None = None) -> Bid:
        unknown = sorted(set(partial) - _UPDATABLE_FIELDS)
        if unknown:
            raise ValidationFailed(f"fields cannot be updated: {', '.join(unknown)}")

        def _op(t: Transaction) -> Bid:
            current = self.get(bid_id, tx=t, for_update=True)
            if not partial:
                return current
            assignments: list[str] = []
            params: list[Any] = []
            for key in sorted(partial):
                if key == "attachments":
                    assignments.append(f"attachments = {self._dialect.json_placeholder}")
                    params.append(_attachments_json(partial[key]))
                elif key == "amount":
                    assignments.append("amount = %s")
                    params.append(parse_bid_amount(partial[key]))
                else:
                    assignments.append(f"{key} = %s")
                    params.append(partial[key])
            assignments.append("updated_at = %s")
            params.extend([utcnow(), bid_id, BidStatus.PENDING])
            row = t.fetchone(
                f"""
                UPDATE {self._table_name} SET {", ".join(assignments)}
                WHERE id = %s AND status = %s
                RETURNING *
                """,
                params,
            )
            if row is None:
                raise AlreadyProcessed(f"bid is already {current.status.value}")
            return Bid.from_row(row)

        return self._in_tx(_op, tx)

    def set_status(
        self,
        bid_id: int,
        status: BidStatus | str,
        actor_id: int,
        *,
        notes: str | None = None,
        reason: str | None = None,
        tx: Transaction | None = None,
    ) -> Bid:
        """Move a pending bid to a terminal status; a second attempt raises AlreadyProcessed."""
        target = BidStatus(status)
        event = bid_event_for(target)

        def _op(t: Transaction) -> Bid:
            current = self.get(bid_id, tx=t, for_update=True)
            next_bid_status(current.status, event)
            now = utcnow()
            evaluated = event in {BidEvent.ACCEPT, BidEvent.REJECT}
            row = t.fetchone(
                f"""
                UPDATE {self._table_name}
                SET status = %s,
                    evaluated_at = %s,
                    evaluated_by = %s,
                    evaluation_notes = COALESCE(%s, evaluation_notes),
                    rejection_reason = COALESCE(%s, rejection_reason),
                    updated_at = %s
                WHERE id = %s AND status = %s
                RETURNING *
                """,
                (
                    target,
                    now if evaluated else None,
                    actor_id if evaluated else None,
                    notes,
                    reason if target is not BidStatus.ACCEPTED else None,
                    now,
                    bid_id,
                    BidStatus.PENDING,
                ),
            )
            if row is None:
                raise AlreadyProcessed("bid was processed concurrently")
            return Bid.from_row(row)

        return self._in_tx(_op, tx)

    def reject_pending_siblings(
        self,
        tender_id: int,
        exclude_bid_id: int,
        actor_id: int,
        *,
        tx: Transaction,
        reason: str | None = None,
    ) -> list[tuple[Bid, Bid]]:
        """Reject every other pending bid of the tender; withdrawn bids are left untouched.

        Returns (before, after) pairs so the caller can audit each row.
        """
        select_sql = f"""
            SELECT * FROM {self._table_name}
            WHERE tender_id = %s AND id <> %s AND status = %s
            ORDER BY id
        """ + self._dialect.for_update
        before = [Bid.from_row(row) for row in tx.execute(select_sql, (tender_id, exclude_bid_id, BidStatus.PENDING))]
        if not before:
            return []
        now = utcnow()
        rows = tx.execute(
            f"""
            UPDATE {self._table_name}
            SET status = %s,
                evaluated_at = %s,
                evaluated_by = %s,
                rejection_reason = COALESCE(rejection_reason, %s),
                updated_at = %s
            WHERE tender_id = %s AND id <> %s AND status = %s
            RETURNING *
            """,
            (BidStatus.REJECTED, now, actor_id, reason, now, tender_id, exclude_bid_id, BidStatus.PENDING),
        )
        after = {int(row["id"]): Bid.from_row(row) for row in rows}
        return [(bid, after[bid.id]) for bid in before if bid.id in after]

    def count_accepted(self, tender_id: int, *, tx: Transaction | None = None) -> int:
        sql = f"SELECT COUNT(*) AS total FROM {self._table_name} WHERE tender_id = %s AND status = %s"

        def _op(t: Transaction) -> int:
            row = t.fetchone(sql, (tender_id, BidStatus.ACCEPTED))
            return int(row["total"]) if row else 0

        return self._in_tx(_op, tx)

    def lowest_pending(self, tender_id: int, *, tx: Transaction | None = None) -> Bid | None:
        sql = f"""
            SELECT * FROM {self._table_name}
            WHERE tender_id = %s AND status = %s
            ORDER BY amount ASC, id ASC
            LIMIT 1
        """

        def _op(t: Transaction) -> Bid | None:
            row = t.fetchone(sql, (tender_id, BidStatus.PENDING))
            return Bid.from_row(row) if row is not None else None

        return self._in_tx(_op, tx)

    def tender_stats(self, tender_id: int, *, tx: Transaction | None = None) -> dict[str, Any]:
        sql = f"""
            SELECT
              COUNT(*) AS total_bids,
              MIN(amount) AS min_amount,
              MAX(amount) AS max_amount,
              AVG(amount) AS avg_amount,
              COUNT(CASE WHEN status = 'pending' THEN 1 END) AS pending,
              COUNT(CASE WHEN status = 'accepted' THEN 1 END) AS accepted,
              COUNT(CASE WHEN status = 'rejected' THEN 1 END) AS rejected,
              COUNT(CASE WHEN status = 'withdrawn' THEN 1 END) AS withdrawn
            FROM {self._table_name}
            WHERE tender_id = %s
        """
        return self._in_tx(lambda t: _stats_row(t.fetchone(sql, (tender_id,))), tx)

    def vendor_stats(self, vendor_id: int, *, tx: Transaction | None = None) -> dict[str, Any]:
        sql = f"""
            SELECT
              COUNT(*) AS total_bids,
              COUNT(CASE WHEN status = 'accepted' THEN 1 END) AS won_bids,
              COUNT(CASE WHEN status = 'rejected' THEN 1 END) AS lost_bids,
              COUNT(CASE WHEN status = 'pending' THEN 1 END) AS pending_bids,
              AVG(amount) AS avg_amount
            FROM {self._table_name}
            WHERE vendor_id = %s
        """
        return self._in_tx(lambda t: _stats_row(t.fetchone(sql, (vendor_id,))), tx)


def _stats_row(row: dict[str, Any] | None) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in (row or {}).items():
        if key.endswith("_amount"):
            amount = as_decimal(value)
            out[key] = str(amount.quantize(Decimal("0.01"))) if amount is not None else None
        else:
            out[key] = int(value or 0)
    return out
