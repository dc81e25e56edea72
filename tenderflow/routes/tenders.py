from __future__ import annotations

from decimal import Decimal

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from tenderflow.models import TenderStatus
from tenderflow.repositories.tenders import TenderFilter
from tenderflow.routes._deps import actor_from_request, engine_from_request, trace_id_from_request
from tenderflow.schemas import CreateTenderRequest, UpdateTenderRequest, success_envelope

router = APIRouter(prefix="/api/v1", tags=["tenders"])


@router.get("/tenders")
def list_tenders(
    request: Request,
    status: TenderStatus | None = Query(default=None),
    category_id: int | None = Query(default=None),
    created_by: int | None = Query(default=None),
    budget_min: Decimal | None = Query(default=None, ge=0),
    budget_max: Decimal | None = Query(default=None, ge=0),
    search: str | None = Query(default=None),
    active_only: bool = Query(default=False),
    include_archived: bool = Query(default=False),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    flt = TenderFilter(
        status=status,
        category_id=category_id,
        created_by=created_by,
        budget_min=budget_min,
        budget_max=budget_max,
        search=search,
        active_only=active_only,
        include_archived=include_archived,
        limit=limit,
        offset=offset,
    )
    page = engine_from_request(request).tender_service.list_tenders(flt)
    data = {**page, "items": [t.as_dict() for t in page["items"]]}
    return success_envelope(data, trace_id_from_request(request))


@router.post("/tenders")
def create_tender(payload: CreateTenderRequest, request: Request):
    actor = actor_from_request(request)
    tender = engine_from_request(request).tender_service.create_tender(actor, payload.model_dump(exclude_none=True))
    return JSONResponse(
        status_code=201,
        content=success_envelope(tender.as_dict(), trace_id_from_request(request), "tender created"),
    )


@router.get("/tenders/stats")
def tender_stats(request: Request):
    return success_envelope(engine_from_request(request).tender_service.stats(), trace_id_from_request(request))


@router.get("/categories")
def list_categories(request: Request):
    items = engine_from_request(request).categories.find_all_active()
    return success_envelope([c.as_dict() for c in items], trace_id_from_request(request))


@router.get("/tenders/{tender_id}")
def get_tender(tender_id: int, request: Request):
    tender = engine_from_request(request).tender_service.get_tender(tender_id, count_view=True)
    return success_envelope(tender.as_dict(), trace_id_from_request(request))


@router.patch("/tenders/{tender_id}")
def update_tender(tender_id: int, payload: UpdateTenderRequest, request: Request):
    actor = actor_from_request(request)
    tender = engine_from_request(request).tender_service.update_tender(
        tender_id,
        actor,
        payload.model_dump(exclude_unset=True),
    )
    return success_envelope(tender.as_dict(), trace_id_from_request(request), "tender updated")


@router.post("/tenders/{tender_id}/publish")
def publish_tender(tender_id: int, request: Request):
    tender = engine_from_request(request).tender_service.publish_tender(tender_id, actor_from_request(request))
    return success_envelope(tender.as_dict(), trace_id_from_request(request), "tender published")


@router.post("/tenders/{tender_id}/close")
def close_tender(tender_id: int, request: Request):
    tender = engine_from_request(request).tender_service.close_tender(tender_id, actor_from_request(request))
    return success_envelope(tender.as_dict(), trace_id_from_request(request), "tender closed")


@router.post("/tenders/{tender_id}/cancel")
def cancel_tender(tender_id: int, request: Request):
    tender = engine_from_request(request).tender_service.cancel_tender(tender_id, actor_from_request(request))
    return success_envelope(tender.as_dict(), trace_id_from_request(request), "tender cancelled")


@router.post("/tenders/{tender_id}/archive")
def archive_tender(tender_id: int, request: Request):
    tender = engine_from_request(request).tender_service.archive_tender(tender_id, actor_from_request(request))
    return success_envelope(tender.as_dict(), trace_id_from_request(request), "tender archived")


@router.get("/tenders/{tender_id}/bids")
def tender_bids(tender_id: int, request: Request):
    view = engine_from_request(request).tender_service.tender_bids(tender_id, actor_from_request(request))
    data = {
        "tender": view["tender"].as_dict(),
        "bids": [b.as_dict() for b in view["bids"]],
        "stats": view["stats"],
    }
    return success_envelope(data, trace_id_from_request(request))


@router.get("/tenders/{tender_id}/eligibility")
def bid_eligibility(tender_id: int, request: Request):
    data = engine_from_request(request).bid_service.check_bid_eligibility(tender_id, actor_from_request(request))
    return success_envelope(data, trace_id_from_request(request))
