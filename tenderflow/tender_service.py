from __future__ import annotations

import logging
from typing import Any

from tenderflow.award import ensure_tender_owner
from tenderflow.db.connection import ConnectionManager, Transaction
from tenderflow.errors import DeadlinePassed, Forbidden, TenderLocked
from tenderflow.lifecycle import TenderEvent, next_tender_status
from tenderflow.models import Actor, Bid, Role, Tender, TenderStatus, utcnow
from tenderflow.repositories.bids import BidFilter, BidsRepository
from tenderflow.repositories.categories import CategoriesRepository
from tenderflow.repositories.tenders import LOCKED_AFTER_FIRST_BID, TenderFilter, TendersRepository

logger = logging.getLogger(__name__)


class TenderService:
    def __init__(
        self,
        *,
        manager: ConnectionManager,
        tenders: TendersRepository,
        bids: BidsRepository,
        categories: CategoriesRepository | None = None,
    ) -> None:
        self._manager = manager
        self._tenders = tenders
        self._bids = bids
        self._categories = categories

    def create_tender(self, actor: Actor, data: dict[str, Any]) -> Tender:
        if actor.role not in {Role.BUYER, Role.ADMIN}:
            raise Forbidden("only buyers and admins can create tenders")
        payload = {k: v for k, v in data.items() if k not in {"category", "created_by"}}
        payload["created_by"] = actor.user_id
        if payload.get("category_id") is None and self._categories is not None:
            payload["category_id"] = self._categories.resolve_category_id(data.get("category"))
        return self._tenders.create(payload)

    def get_tender(self, tender_id: int, *, count_view: bool = False) -> Tender:
        tender = self._tenders.get(tender_id)
        if count_view:
            self._tenders.increment_view_count(tender_id)
            tender.view_count += 1
        return tender

    def list_tenders(self, flt: TenderFilter | None = None) -> dict[str, Any]:
        flt = flt or TenderFilter()
        items = self._tenders.find_all(flt)
        return {"items": items, "total": self._tenders.count(flt), "limit": flt.limit, "offset": flt.offset}

    def update_tender(self, tender_id: int, actor: Actor, changes: dict[str, Any]) -> Tender:
        tender = self._tenders.get(tender_id)
        ensure_tender_owner(tender, actor)
        partial = dict(changes)

        def _op(tx: Transaction) -> Tender:
            current = self._tenders.get(tender_id, tx=tx, for_update=True)
            locked = sorted(LOCKED_AFTER_FIRST_BID & set(partial))
            if locked and not actor.is_privileged and self._tenders.has_bids(tender_id, tx=tx):
                raise TenderLocked(f"cannot modify {', '.join(locked)} after receiving bids")
            updated = self._tenders.update(tender_id, partial, actor_id=actor.user_id, tx=tx)
            if "deadline" in partial and current.status is TenderStatus.OPEN and updated.is_expired(utcnow()):
                raise DeadlinePassed("deadline of an open tender must be in the future")
            return updated

        updated = self._manager.with_transaction(_op)
        logger.info("tender_updated tender_id=%s actor_id=%s fields=%s", tender_id, actor.user_id, sorted(partial))
        return updated

    def publish_tender(self, tender_id: int, actor: Actor) -> Tender:
        return self._transition(tender_id, actor, TenderEvent.PUBLISH)

    def close_tender(self, tender_id: int, actor: Actor) -> Tender:
        return self._transition(tender_id, actor, TenderEvent.CLOSE)

    def cancel_tender(self, tender_id: int, actor: Actor) -> Tender:
        return self._transition(tender_id, actor, TenderEvent.CANCEL)

    def archive_tender(self, tender_id: int, actor: Actor) -> Tender:
        return self._transition(tender_id, actor, TenderEvent.ARCHIVE)

    def tender_bids(self, tender_id: int, actor: Actor) -> dict[str, Any]:
        tender = self._tenders.get(tender_id)
        ensure_tender_owner(tender, actor)
        bids: list[Bid] = self._bids.find_all(BidFilter(tender_id=tender_id, sort_by="amount", sort_order="asc"))
        return {"tender": tender, "bids": bids, "stats": self._bids.tender_stats(tender_id)}

    def stats(self) -> dict[str, int]:
        return self._tenders.stats()

    def _transition(self, tender_id: int, actor: Actor, event: TenderEvent) -> Tender:
        tender = self._tenders.get(tender_id)
        ensure_tender_owner(tender, actor)
        target = next_tender_status(tender.status, event)
        if event is TenderEvent.PUBLISH and tender.is_expired(utcnow()):
            raise DeadlinePassed("valid future deadline is required to publish a tender")

        def _op(tx: Transaction) -> Tender:
            current = self._tenders.get(tender_id, tx=tx, for_update=True)
            if event is TenderEvent.PUBLISH and current.is_expired(utcnow()):
                raise DeadlinePassed("valid future deadline is required to publish a tender")
            return self._tenders.set_status(tender_id, target, actor.user_id, event=event, tx=tx)

        return self._manager.with_transaction(_op)
