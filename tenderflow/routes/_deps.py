from __future__ import annotations

import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from tenderflow.engine import Engine
from tenderflow.errors import ApiError
from tenderflow.models import Actor
from tenderflow.schemas import error_envelope


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def request_id_from_request(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    return f"req_{uuid.uuid4().hex[:12]}"


def engine_from_request(request: Request) -> Engine:
    return request.app.state.engine


def actor_from_request(request: Request) -> Actor:
    actor = getattr(request.state, "actor", None)
    if actor is None:
        raise ApiError(
            code="AUTH_UNAUTHORIZED",
            message="authentication required",
            error_class="security_sensitive",
            retryable=False,
            http_status=401,
        )
    return actor


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
        ),
    )
