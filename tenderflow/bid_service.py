from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any

from tenderflow.award import AwardCoordinator, ensure_tender_owner
from tenderflow.db.connection import ConnectionManager, Transaction
from tenderflow.errors import (
    AlreadyProcessed,
    BudgetOutOfRange,
    DeadlinePassed,
    Forbidden,
    InvalidTransition,
    TenderNotOpen,
    ValidationFailed,
)
from tenderflow.models import Actor, Bid, BidHistoryEntry, BidStatus, Role, Tender, TenderStatus, utcnow
from tenderflow.notifications import BID_EVALUATED, BID_WITHDRAWN, NEW_BID, Notifier, dispatch_safely
from tenderflow.repositories.bid_history import BidHistoryRepository
from tenderflow.repositories.bids import BidFilter, BidsRepository, parse_bid_amount
from tenderflow.repositories.tenders import TendersRepository

logger = logging.getLogger(__name__)

# Withdrawal is blocked once evaluation has started or finished.
_NO_WITHDRAW_TENDER_STATUSES = frozenset({TenderStatus.CLOSED, TenderStatus.AWARDED, TenderStatus.ARCHIVED})
_DECISIONS = frozenset({BidStatus.ACCEPTED, BidStatus.REJECTED})


def _ensure_accepting(tender: Tender) -> None:
    if tender.status is not TenderStatus.OPEN:
        raise TenderNotOpen(f"tender is {tender.status.value}; bids are only accepted while open")
    if tender.is_expired(utcnow()):
        raise DeadlinePassed()


def _ensure_within_budget(tender: Tender, amount: Decimal) -> None:
    if tender.budget_max is not None and amount > tender.budget_max:
        raise BudgetOutOfRange("bid amount exceeds tender maximum budget")
    if tender.budget_min is not None and amount < tender.budget_min:
        raise BudgetOutOfRange("bid amount is below tender minimum budget")


def _ensure_bid_owner(bid: Bid, actor: Actor) -> None:
    if bid.vendor_id != actor.user_id:
        raise Forbidden("only the submitting vendor may change this bid")


class BidService:
    """Entry points for the bid side of the lifecycle.

    Every state change and its audit record share one transaction. Checks
    are done once up front for a cheap failure and repeated inside the
    transaction against the locked rows.
    """

    def __init__(
        self,
        *,
        manager: ConnectionManager,
        tenders: TendersRepository,
        bids: BidsRepository,
        history: BidHistoryRepository,
        coordinator: AwardCoordinator,
        notifier: Notifier | None = None,
    ) -> None:
        self._manager = manager
        self._tenders = tenders
        self._bids = bids
        self._history = history
        self._coordinator = coordinator
        self._notifier = notifier

    def submit_bid(
        self,
        tender_id: int,
        vendor: Actor,
        amount: Any,
        proposal: str,
        delivery_timeline: str | None = None,
        attachments: list[dict[str, Any]] | None = None,
    ) -> Bid:
        if vendor.role is not Role.VENDOR:
            raise Forbidden("only vendors can submit bids")
        value = parse_bid_amount(amount)
        tender = self._tenders.get(tender_id)
        _ensure_accepting(tender)
        _ensure_within_budget(tender, value)

        def _op(tx: Transaction) -> Bid:
            current = self._tenders.get(tender_id, tx=tx, for_update=True)
            _ensure_accepting(current)
            bid = self._bids.create(
                {
                    "tender_id": tender_id,
                    "vendor_id": vendor.user_id,
                    "amount": value,
                    "proposal": proposal,
                    "delivery_timeline": delivery_timeline,
                    "attachments": attachments or [],
                },
                tx=tx,
            )
            self._history.record(bid.id, "submitted", {}, bid.as_dict(), vendor.user_id, tx=tx)
            return bid

        bid = self._manager.with_transaction(_op)
        logger.info("bid_submitted bid_id=%s tender_id=%s vendor_id=%s", bid.id, tender_id, vendor.user_id)
        dispatch_safely(
            self._notifier,
            tender.created_by,
            NEW_BID,
            {"bid_id": bid.id, "tender_id": tender.id, "tender_title": tender.title},
        )
        return bid

    def update_bid(self, bid_id: int, vendor: Actor, changes: dict[str, Any]) -> Bid:
        bid = self._bids.get(bid_id)
        _ensure_bid_owner(bid, vendor)
        if bid.status.is_terminal:
            raise AlreadyProcessed("cannot update a bid that has been processed")
        tender = self._tenders.get(bid.tender_id)
        _ensure_accepting(tender)
        partial = {k: v for k, v in changes.items() if v is not None}
        if not partial:
            raise ValidationFailed("no fields to update")
        if "amount" in partial:
            partial["amount"] = parse_bid_amount(partial["amount"])
            _ensure_within_budget(tender, partial["amount"])

        def _op(tx: Transaction) -> Bid:
            before = self._bids.get(bid_id, tx=tx, for_update=True)
            if before.status.is_terminal:
                raise AlreadyProcessed("cannot update a bid that has been processed")
            _ensure_accepting(self._tenders.get(before.tender_id, tx=tx))
            after = self._bids.update(bid_id, partial, tx=tx)
            self._history.record(bid_id, "updated", before.as_dict(), after.as_dict(), vendor.user_id, tx=tx)
            return after

        updated = self._manager.with_transaction(_op)
        logger.info("bid_updated bid_id=%s vendor_id=%s fields=%s", bid_id, vendor.user_id, sorted(partial))
        return updated

    def withdraw_bid(self, bid_id: int, vendor: Actor, reason: str | None = None) -> Bid:
        bid = self._bids.get(bid_id)
        _ensure_bid_owner(bid, vendor)
        if bid.status.is_terminal:
            raise AlreadyProcessed("cannot withdraw a bid that has been processed")
        tender = self._tenders.get(bid.tender_id)
        if tender.status in _NO_WITHDRAW_TENDER_STATUSES:
            raise InvalidTransition(
                f"cannot withdraw a bid from a {tender.status.value} tender",
                code="BID_WITHDRAW_NOT_ALLOWED",
            )

        def _op(tx: Transaction) -> Bid:
            before = self._bids.get(bid_id, tx=tx, for_update=True)
            current = self._tenders.get(before.tender_id, tx=tx)
            if current.status in _NO_WITHDRAW_TENDER_STATUSES:
                raise InvalidTransition(
                    f"cannot withdraw a bid from a {current.status.value} tender",
                    code="BID_WITHDRAW_NOT_ALLOWED",
                )
            after = self._bids.set_status(bid_id, BidStatus.WITHDRAWN, vendor.user_id, tx=tx)
            self._history.record(bid_id, "withdrawn", before.as_dict(), after.as_dict(), vendor.user_id, reason, tx=tx)
            return after

        withdrawn = self._manager.with_transaction(_op)
        logger.info("bid_withdrawn bid_id=%s vendor_id=%s", bid_id, vendor.user_id)
        dispatch_safely(
            self._notifier,
            tender.created_by,
            BID_WITHDRAWN,
            {"bid_id": bid_id, "tender_id": tender.id, "tender_title": tender.title},
        )
        return withdrawn

    def evaluate_bid(self, bid_id: int, actor: Actor, decision: BidStatus | str, notes: str | None = None) -> Bid:
        """Accept or reject a single bid.

        Acceptance goes through the award coordinator so siblings are rejected
        and the tender is awarded in the same transaction.
        """
        try:
            outcome = BidStatus(decision)
        except ValueError as exc:
            raise ValidationFailed("decision must be accepted or rejected") from exc
        if outcome not in _DECISIONS:
            raise ValidationFailed("decision must be accepted or rejected")

        bid = self._bids.get(bid_id)
        if bid.status.is_terminal:
            raise AlreadyProcessed(f"bid is already {bid.status.value}")
        tender = self._tenders.get(bid.tender_id)
        ensure_tender_owner(tender, actor)

        if outcome is BidStatus.ACCEPTED:
            accepted = self._coordinator.accept_bid(bid_id, actor, notes=notes)
            dispatch_safely(
                self._notifier,
                accepted.vendor_id,
                BID_EVALUATED,
                {"bid_id": bid_id, "tender_id": tender.id, "tender_title": tender.title, "status": outcome.value},
            )
            return accepted

        if tender.status not in {TenderStatus.OPEN, TenderStatus.CLOSED}:
            raise InvalidTransition(
                f"cannot evaluate bids while the tender is {tender.status.value}",
                code="TENDER_TRANSITION_INVALID",
            )
        note = f"Bid {outcome.value}: {notes or 'No notes provided'}"

        def _op(tx: Transaction) -> Bid:
            before = self._bids.get(bid_id, tx=tx, for_update=True)
            after = self._bids.set_status(
                bid_id,
                BidStatus.REJECTED,
                actor.user_id,
                notes=notes,
                reason=notes,
                tx=tx,
            )
            self._history.record(bid_id, "evaluated", before.as_dict(), after.as_dict(), actor.user_id, note, tx=tx)
            return after

        rejected = self._manager.with_transaction(_op)
        logger.info("bid_evaluated bid_id=%s status=%s actor_id=%s", bid_id, outcome.value, actor.user_id)
        dispatch_safely(
            self._notifier,
            rejected.vendor_id,
            BID_EVALUATED,
            {"bid_id": bid_id, "tender_id": tender.id, "tender_title": tender.title, "status": outcome.value},
        )
        return rejected

    def award_bid(self, bid_id: int, actor: Actor, notes: str | None = None) -> Bid:
        return self._coordinator.award_bid(bid_id, actor, notes=notes)

    def accept_bid(self, bid_id: int, actor: Actor, notes: str | None = None) -> Bid:
        return self._coordinator.accept_bid(bid_id, actor, notes=notes)

    def get_bid(self, bid_id: int, actor: Actor) -> Bid:
        bid = self._bids.get(bid_id)
        self._ensure_can_view(bid, actor)
        return bid

    def list_bids(self, actor: Actor, flt: BidFilter | None = None) -> list[Bid]:
        flt = flt or BidFilter()
        if actor.role is Role.VENDOR:
            flt.vendor_id = actor.user_id
        elif actor.role is Role.BUYER:
            flt.tender_owner_id = actor.user_id
        return self._bids.find_all(flt)

    def bid_history(self, bid_id: int, actor: Actor) -> list[BidHistoryEntry]:
        bid = self._bids.get(bid_id)
        self._ensure_can_view(bid, actor)
        return self._history.list_for_bid(bid_id)

    def check_bid_eligibility(self, tender_id: int, vendor: Actor) -> dict[str, Any]:
        tender = self._tenders.get(tender_id)
        now = utcnow()
        is_open = tender.status is TenderStatus.OPEN
        is_active = not tender.is_expired(now)
        existing = self._bids.find_by_tender_and_vendor(tender_id, vendor.user_id)
        reasons: list[str] = []
        if not is_open:
            reasons.append("Tender is not open for bidding")
        if not is_active:
            reasons.append("Tender deadline has passed")
        if existing is not None:
            reasons.append("You have already submitted a bid for this tender")
        return {
            "can_bid": tender.accepts_bids(now) and existing is None,
            "reasons": reasons,
            "tender_status": tender.status.value,
            "deadline": tender.deadline.isoformat() if tender.deadline else None,
            "has_existing_bid": existing is not None,
            "existing_bid_id": existing.id if existing else None,
        }

    def vendor_stats(self, actor: Actor, vendor_id: int | None = None) -> dict[str, Any]:
        if actor.is_privileged and vendor_id is not None:
            target = vendor_id
        elif actor.role is Role.VENDOR:
            target = actor.user_id
        else:
            raise Forbidden("only vendors can view bid statistics")
        return {"vendor_id": target, **self._bids.vendor_stats(target)}

    def _ensure_can_view(self, bid: Bid, actor: Actor) -> None:
        if actor.is_privileged or bid.vendor_id == actor.user_id:
            return
        tender = self._tenders.get(bid.tender_id)
        if tender.created_by != actor.user_id:
            raise Forbidden("not allowed to view this bid")
