"""Award transaction coordinator.

Accepting a bid touches three tables: the winning bid, every other pending
bid of the same tender, and the tender itself, plus one audit row per bid
that changed. All of it happens inside one ConnectionManager transaction,
so a failure at any step leaves the previous state intact.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from tenderflow.db.connection import ConnectionManager, Transaction
from tenderflow.errors import AlreadyProcessed, Forbidden, InvalidTransition
from tenderflow.lifecycle import TenderEvent, tender_allows
from tenderflow.models import Actor, Bid, BidStatus, Tender, TenderStatus
from tenderflow.notifications import BID_AWARDED, BID_NOT_SELECTED, Notifier, dispatch_safely
from tenderflow.repositories.bid_history import BidHistoryRepository
from tenderflow.repositories.bids import BidsRepository
from tenderflow.repositories.tenders import TendersRepository

logger = logging.getLogger(__name__)

SIBLING_REJECTION_REASON = "another bid was awarded"


@dataclass
class AwardOutcome:
    bid: Bid
    tender: Tender
    rejected: list[Bid] = field(default_factory=list)


def ensure_tender_owner(tender: Tender, actor: Actor) -> None:
    if actor.is_privileged or tender.created_by == actor.user_id:
        return
    raise Forbidden("only the tender owner or an admin may perform this action")


def _check_tender_event(tender: Tender, event: TenderEvent) -> None:
    if tender_allows(tender.status, event):
        return
    if event is TenderEvent.AWARD and tender.status is TenderStatus.OPEN:
        raise InvalidTransition("tender must be closed before a bid can be awarded", code="TENDER_NOT_CLOSED")
    raise InvalidTransition(
        f"cannot {event.value} a bid while the tender is {tender.status.value}",
        code="TENDER_TRANSITION_INVALID",
    )


class AwardCoordinator:
    def __init__(
        self,
        *,
        manager: ConnectionManager,
        tenders: TendersRepository,
        bids: BidsRepository,
        history: BidHistoryRepository,
        notifier: Notifier | None = None,
    ) -> None:
        self._manager = manager
        self._tenders = tenders
        self._bids = bids
        self._history = history
        self._notifier = notifier

    def award_bid(self, bid_id: int, actor: Actor, *, notes: str | None = None) -> Bid:
        """Award a bid on a closed tender."""
        return self.settle(bid_id, actor, TenderEvent.AWARD, notes=notes).bid

    def accept_bid(self, bid_id: int, actor: Actor, *, notes: str | None = None) -> Bid:
        """Accept a bid directly; the tender may still be open."""
        return self.settle(bid_id, actor, TenderEvent.ACCEPT, notes=notes).bid

    def settle(self, bid_id: int, actor: Actor, event: TenderEvent, *, notes: str | None = None) -> AwardOutcome:
        if event not in {TenderEvent.AWARD, TenderEvent.ACCEPT}:
            raise ValueError(f"unsupported award event: {event}")

        # Cheap checks first; nothing below opens the exclusive transaction slot.
        bid = self._bids.get(bid_id)
        if bid.status.is_terminal:
            raise AlreadyProcessed(f"bid is already {bid.status.value}")
        tender = self._tenders.get(bid.tender_id)
        ensure_tender_owner(tender, actor)
        _check_tender_event(tender, event)

        action = "awarded" if event is TenderEvent.AWARD else "accepted"
        note = notes or ("Bid awarded" if event is TenderEvent.AWARD else "Bid accepted")

        def _op(tx: Transaction) -> tuple[Tender, list[Bid]]:
            locked = self._bids.get(bid_id, tx=tx, for_update=True)
            if locked.status.is_terminal:
                raise AlreadyProcessed(f"bid is already {locked.status.value}")
            current = self._tenders.get(locked.tender_id, tx=tx, for_update=True)
            _check_tender_event(current, event)
            if self._bids.count_accepted(current.id, tx=tx) > 0:
                raise InvalidTransition("tender already has an accepted bid", code="TENDER_ALREADY_AWARDED")

            accepted = self._bids.set_status(bid_id, BidStatus.ACCEPTED, actor.user_id, notes=notes, tx=tx)
            siblings = self._bids.reject_pending_siblings(
                current.id,
                bid_id,
                actor.user_id,
                tx=tx,
                reason=SIBLING_REJECTION_REASON,
            )
            awarded = self._tenders.set_status(current.id, TenderStatus.AWARDED, actor.user_id, event=event, tx=tx)

            self._history.record(bid_id, action, locked.as_dict(), accepted.as_dict(), actor.user_id, note, tx=tx)
            for before, after in siblings:
                self._history.record(
                    after.id,
                    "rejected",
                    before.as_dict(),
                    after.as_dict(),
                    actor.user_id,
                    SIBLING_REJECTION_REASON,
                    tx=tx,
                )
            return awarded, [after for _before, after in siblings]

        awarded_tender, rejected = self._manager.with_transaction(_op)
        fresh = self._bids.get(bid_id)
        logger.info(
            "bid_%s bid_id=%s tender_id=%s actor_id=%s rejected=%s",
            action,
            bid_id,
            awarded_tender.id,
            actor.user_id,
            len(rejected),
        )
        self._notify(awarded_tender, fresh, rejected)
        return AwardOutcome(bid=fresh, tender=awarded_tender, rejected=rejected)

    def _notify(self, tender: Tender, winner: Bid, rejected: list[Bid]) -> None:
        base: dict[str, Any] = {"tender_id": tender.id, "tender_title": tender.title}
        dispatch_safely(self._notifier, winner.vendor_id, BID_AWARDED, {**base, "bid_id": winner.id, "awarded": True})
        for bid in rejected:
            dispatch_safely(self._notifier, bid.vendor_id, BID_NOT_SELECTED, {**base, "bid_id": bid.id, "awarded": False})
