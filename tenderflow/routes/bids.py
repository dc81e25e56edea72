from __future__ import annotations

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from tenderflow.models import BidStatus
from tenderflow.repositories.bids import BidFilter
from tenderflow.routes._deps import actor_from_request, engine_from_request, trace_id_from_request
from tenderflow.schemas import (
    AwardBidRequest,
    EvaluateBidRequest,
    SubmitBidRequest,
    UpdateBidRequest,
    WithdrawBidRequest,
    success_envelope,
)

router = APIRouter(prefix="/api/v1", tags=["bids"])


@router.post("/bids")
def submit_bid(payload: SubmitBidRequest, request: Request):
    bid = engine_from_request(request).bid_service.submit_bid(
        payload.tender_id,
        actor_from_request(request),
        payload.amount,
        payload.proposal,
        delivery_timeline=payload.delivery_timeline,
        attachments=[a.model_dump() for a in payload.attachments],
    )
    return JSONResponse(
        status_code=201,
        content=success_envelope(bid.as_dict(), trace_id_from_request(request), "bid submitted"),
    )


@router.get("/bids")
def list_bids(
    request: Request,
    tender_id: int | None = Query(default=None),
    status: BidStatus | None = Query(default=None),
    sort_by: str = Query(default="submitted_at"),
    sort_order: str = Query(default="desc"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    flt = BidFilter(
        tender_id=tender_id,
        status=status,
        sort_by=sort_by,
        sort_order=sort_order,
        limit=limit,
        offset=offset,
    )
    bids = engine_from_request(request).bid_service.list_bids(actor_from_request(request), flt)
    return success_envelope([b.as_dict() for b in bids], trace_id_from_request(request))


@router.get("/bids/stats")
def vendor_stats(request: Request, vendor_id: int | None = Query(default=None)):
    data = engine_from_request(request).bid_service.vendor_stats(actor_from_request(request), vendor_id)
    return success_envelope(data, trace_id_from_request(request))


@router.get("/notifications")
def list_notifications(request: Request, limit: int = Query(default=50, ge=1, le=200)):
    actor = actor_from_request(request)
    items = engine_from_request(request).notifications.list_for_user(actor.user_id, limit=limit)
    return success_envelope(items, trace_id_from_request(request))


@router.get("/bids/{bid_id}")
def get_bid(bid_id: int, request: Request):
    bid = engine_from_request(request).bid_service.get_bid(bid_id, actor_from_request(request))
    return success_envelope(bid.as_dict(), trace_id_from_request(request))


@router.patch("/bids/{bid_id}")
def update_bid(bid_id: int, payload: UpdateBidRequest, request: Request):
    changes = payload.model_dump(exclude_none=True)
    bid = engine_from_request(request).bid_service.update_bid(bid_id, actor_from_request(request), changes)
    return success_envelope(bid.as_dict(), trace_id_from_request(request), "bid updated")


@router.post("/bids/{bid_id}/withdraw")
def withdraw_bid(bid_id: int, request: Request, payload: WithdrawBidRequest | None = None):
    reason = payload.reason if payload else None
    bid = engine_from_request(request).bid_service.withdraw_bid(bid_id, actor_from_request(request), reason)
    return success_envelope(bid.as_dict(), trace_id_from_request(request), "bid withdrawn")


@router.post("/bids/{bid_id}/evaluate")
def evaluate_bid(bid_id: int, payload: EvaluateBidRequest, request: Request):
    bid = engine_from_request(request).bid_service.evaluate_bid(
        bid_id,
        actor_from_request(request),
        payload.status,
        payload.evaluation_notes,
    )
    return success_envelope(bid.as_dict(), trace_id_from_request(request), "bid evaluated")


@router.post("/bids/{bid_id}/award")
def award_bid(bid_id: int, request: Request, payload: AwardBidRequest | None = None):
    notes = payload.notes if payload else None
    bid = engine_from_request(request).bid_service.award_bid(bid_id, actor_from_request(request), notes)
    return success_envelope(bid.as_dict(), trace_id_from_request(request), "bid awarded")


@router.post("/bids/{bid_id}/accept")
def accept_bid(bid_id: int, request: Request, payload: AwardBidRequest | None = None):
    notes = payload.notes if payload else None
    bid = engine_from_request(request).bid_service.accept_bid(bid_id, actor_from_request(request), notes)
    return success_envelope(bid.as_dict(), trace_id_from_request(request), "bid accepted")


@router.get("/bids/{bid_id}/history")
def bid_history(bid_id: int, request: Request):
    entries = engine_from_request(request).bid_service.bid_history(bid_id, actor_from_request(request))
    return success_envelope([e.as_dict() for e in entries], trace_id_from_request(request))
