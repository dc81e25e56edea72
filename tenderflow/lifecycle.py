"""Legal status graphs for tenders and bids.

Every entry point resolves a transition through these tables, so the
graph lives in exactly one place.
"""

from __future__ import annotations

from enum import Enum

from tenderflow.errors import AlreadyProcessed, InvalidTransition
from tenderflow.models import BidStatus, TenderStatus


class TenderEvent(str, Enum):
    PUBLISH = "publish"
    CLOSE = "close"
    # award: evaluation finished, tender already closed
    AWARD = "award"
    # accept: direct acceptance, tender may still be open
    ACCEPT = "accept"
    CANCEL = "cancel"
    ARCHIVE = "archive"


class BidEvent(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    WITHDRAW = "withdraw"


# ARCHIVED is final: it takes no CANCEL, so a soft-hidden tender never reappears
# in listings as cancelled.
TENDER_TRANSITIONS: dict[tuple[TenderStatus, TenderEvent], TenderStatus] = {
    (TenderStatus.DRAFT, TenderEvent.PUBLISH): TenderStatus.OPEN,
    (TenderStatus.DRAFT, TenderEvent.CANCEL): TenderStatus.CANCELLED,
    (TenderStatus.DRAFT, TenderEvent.ARCHIVE): TenderStatus.ARCHIVED,
    (TenderStatus.OPEN, TenderEvent.CLOSE): TenderStatus.CLOSED,
    (TenderStatus.OPEN, TenderEvent.ACCEPT): TenderStatus.AWARDED,
    (TenderStatus.OPEN, TenderEvent.CANCEL): TenderStatus.CANCELLED,
    (TenderStatus.OPEN, TenderEvent.ARCHIVE): TenderStatus.ARCHIVED,
    (TenderStatus.CLOSED, TenderEvent.AWARD): TenderStatus.AWARDED,
    (TenderStatus.CLOSED, TenderEvent.ACCEPT): TenderStatus.AWARDED,
    (TenderStatus.CLOSED, TenderEvent.CANCEL): TenderStatus.CANCELLED,
    (TenderStatus.CLOSED, TenderEvent.ARCHIVE): TenderStatus.ARCHIVED,
    (TenderStatus.AWARDED, TenderEvent.CANCEL): TenderStatus.CANCELLED,
    (TenderStatus.AWARDED, TenderEvent.ARCHIVE): TenderStatus.ARCHIVED,
    (TenderStatus.CANCELLED, TenderEvent.ARCHIVE): TenderStatus.ARCHIVED,
}

BID_TRANSITIONS: dict[tuple[BidStatus, BidEvent], BidStatus] = {
    (BidStatus.PENDING, BidEvent.ACCEPT): BidStatus.ACCEPTED,
    (BidStatus.PENDING, BidEvent.REJECT): BidStatus.REJECTED,
    (BidStatus.PENDING, BidEvent.WITHDRAW): BidStatus.WITHDRAWN,
}


def next_tender_status(current: TenderStatus | str, event: TenderEvent | str) -> TenderStatus:
    status = TenderStatus(current)
    tender_event = TenderEvent(event)
    target = TENDER_TRANSITIONS.get((status, tender_event))
    if target is None:
        raise InvalidTransition(
            f"invalid tender transition: {status.value} --{tender_event.value}-->",
            code="TENDER_TRANSITION_INVALID",
        )
    return target


def next_bid_status(current: BidStatus | str, event: BidEvent | str) -> BidStatus:
    status = BidStatus(current)
    bid_event = BidEvent(event)
    if status.is_terminal:
        raise AlreadyProcessed(f"bid is already {status.value}")
    target = BID_TRANSITIONS.get((status, bid_event))
    if target is None:
        raise InvalidTransition(
            f"invalid bid transition: {status.value} --{bid_event.value}-->",
            code="BID_TRANSITION_INVALID",
        )
    return target


def tender_event_for(current: TenderStatus | str, target: TenderStatus | str) -> TenderEvent:
    """Pick the event that moves ``current`` to ``target``; ties resolve in table order."""
    status = TenderStatus(current)
    wanted = TenderStatus(target)
    for (source, event), result in TENDER_TRANSITIONS.items():
        if source is status and result is wanted:
            return event
    raise InvalidTransition(
        f"invalid tender transition: {status.value} -> {wanted.value}",
        code="TENDER_TRANSITION_INVALID",
    )


def bid_event_for(target: BidStatus | str) -> BidEvent:
    wanted = BidStatus(target)
    for (_source, event), result in BID_TRANSITIONS.items():
        if result is wanted:
            return event
    raise InvalidTransition(f"bids cannot be moved to {wanted.value}", code="BID_TRANSITION_INVALID")


def tender_allows(current: TenderStatus | str, event: TenderEvent | str) -> bool:
    return (TenderStatus(current), TenderEvent(event)) in TENDER_TRANSITIONS
