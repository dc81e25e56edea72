from __future__ import annotations

import logging
import os
import signal
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from tenderflow.config import split_csv
from tenderflow.engine import Engine, create_engine_from_env
from tenderflow.errors import ApiError
from tenderflow.routes import bids as bid_routes
from tenderflow.routes import tenders as tender_routes
from tenderflow.routes._deps import error_response, request_id_from_request, trace_id_from_request
from tenderflow.schemas import success_envelope
from tenderflow.security import JwtSecurityConfig, actor_from_headers, parse_and_validate_bearer_token

logger = logging.getLogger(__name__)


def _terminate_process() -> None:
    logger.critical("database is down; shutting down the API process")
    os.kill(os.getpid(), signal.SIGTERM)


def create_app(engine: Engine | None = None) -> FastAPI:
    owns_engine = engine is None
    engine = engine or create_engine_from_env(on_down=_terminate_process)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        yield
        if owns_engine:
            engine.shutdown()

    app = FastAPI(title="Tenderflow API", version="0.1.0", lifespan=lifespan)
    app.state.engine = engine
    security_cfg = JwtSecurityConfig.from_env()
    app.state.security_cfg = security_cfg
    allow_origins = split_csv(os.environ.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:5173,http://localhost:5173"))
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def add_trace_id(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        request.state.actor = None
        try:
            path = request.url.path
            if path.startswith("/api/v1/") and path != "/api/v1/health":
                authorization = request.headers.get("Authorization")
                if security_cfg.enabled:
                    if authorization:
                        request.state.actor = parse_and_validate_bearer_token(
                            authorization=authorization,
                            cfg=security_cfg,
                        )
                elif request.headers.get("x-user-id"):
                    request.state.actor = actor_from_headers(request.headers)
            response = await call_next(request)
        except ApiError as exc:
            logger.warning("request blocked path=%s code=%s", request.url.path, exc.code)
            response = error_response(
                request,
                code=exc.code,
                message=exc.message,
                error_class=exc.error_class,
                retryable=exc.retryable,
                status_code=exc.http_status,
            )
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.http_status >= 500:
            logger.error("request failed path=%s code=%s message=%s", request.url.path, exc.code, exc.message)
        return error_response(
            request,
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            status_code=exc.http_status,
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request):
        health = engine.manager.health()
        status_code = 200 if health["connected"] else 503
        return JSONResponse(
            status_code=status_code,
            content=success_envelope(health, trace_id_from_request(request)),
        )

    app.include_router(tender_routes.router)
    app.include_router(bid_routes.router)
    return app
