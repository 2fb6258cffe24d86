from __future__ import annotations

import os
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from techflunky.config import split_csv
from techflunky.errors import ApiError, RateLimitError
from techflunky.routes import escrows, internal, listings
from techflunky.routes._deps import (
    error_response,
    log_security_event,
    request_id_from_request,
    trace_id_from_request,
)
from techflunky.schemas import success_envelope
from techflunky.security import JwtSecurityConfig, parse_and_validate_bearer_token
from techflunky.services import Services, create_services_from_env
from techflunky.tenancy import TenantContext, build_tenant, resolve_tenant

_SECURITY_CODES = frozenset(
    {"AUTH_UNAUTHORIZED", "AUTH_FORBIDDEN", "TENANT_REQUIRED", "TENANT_SCOPE_VIOLATION", "RATE_LIMITED"}
)
_UNMETERED_PATHS = frozenset({"/healthz", "/api/v1/health"})


def _tenant_from_token(request: Request, security_cfg: JwtSecurityConfig) -> TenantContext | None:
    authorization = request.headers.get("Authorization")
    if not authorization:
        return None
    auth_ctx = parse_and_validate_bearer_token(authorization=authorization, cfg=security_cfg)
    request.state.auth_subject = auth_ctx.subject
    header_tenant = request.headers.get("x-tenant-id")
    if header_tenant and header_tenant != auth_ctx.tenant_id:
        raise ApiError(
            code="TENANT_SCOPE_VIOLATION",
            message="tenant mismatch",
            error_class="security_sensitive",
            retryable=False,
            http_status=403,
        )
    tenant = build_tenant(auth_ctx.tenant_id, auth_ctx.role)
    if tenant is None:
        raise ApiError(
            code="AUTH_UNAUTHORIZED",
            message="token does not name a known tenant role",
            error_class="security_sensitive",
            retryable=False,
            http_status=401,
        )
    return tenant


def create_app(services: Services | None = None) -> FastAPI:
    app = FastAPI(title="TechFlunky Marketplace API", version="0.1.0")
    security_cfg = JwtSecurityConfig.from_env()
    app.state.security_cfg = security_cfg
    app.state.services = services if services is not None else create_services_from_env()

    allow_origins = split_csv(os.environ.get("CORS_ALLOW_ORIGINS", "http://127.0.0.1:4321,http://localhost:4321"))
    if allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def resolve_request_context(request: Request, call_next):
        incoming_trace_id = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming_trace_id or uuid.uuid4().hex
        request.state.request_id = request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")
        request.state.auth_subject = "anonymous"
        request.state.tenant = None
        rate_headers: dict[str, str] = {}
        try:
            path = request.url.path
            if path.startswith("/api/v1/") and path not in _UNMETERED_PATHS:
                if security_cfg.enabled:
                    request.state.tenant = _tenant_from_token(request, security_cfg)
                else:
                    request.state.tenant = resolve_tenant(request.headers)
                decision = app.state.services.rate_limiter.check(request.state.tenant)
                if not decision.allowed:
                    raise RateLimitError(retry_after_s=decision.retry_after_s)
                rate_headers = {
                    "x-ratelimit-limit": str(decision.limit),
                    "x-ratelimit-remaining": str(decision.remaining),
                }
            response = await call_next(request)
        except ApiError as exc:
            log_security_event(request=request, action="request_blocked", code=exc.code, detail=exc.message)
            response = error_response(request, exc)
        response.headers.update(rate_headers)
        response.headers["x-trace-id"] = trace_id_from_request(request)
        response.headers["x-request-id"] = request_id_from_request(request)
        return response

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.code in _SECURITY_CODES:
            log_security_event(request=request, action="security_blocked", code=exc.code, detail=exc.message)
        return error_response(request, exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return error_response(
            request,
            ApiError(
                code="REQ_VALIDATION_FAILED",
                message="invalid payload",
                error_class="validation",
                retryable=False,
                http_status=400,
            ),
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                ApiError(
                    code="REQ_NOT_FOUND",
                    message="resource not found",
                    error_class="validation",
                    retryable=False,
                    http_status=404,
                ),
            )
        return error_response(
            request,
            ApiError(
                code="REQ_HTTP_ERROR",
                message=str(exc.detail),
                error_class="validation",
                retryable=False,
                http_status=exc.status_code,
            ),
        )

    @app.get("/healthz")
    def healthz(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    @app.get("/api/v1/health")
    def health_api(request: Request) -> dict[str, object]:
        return success_envelope({"status": "ok"}, trace_id_from_request(request))

    app.include_router(listings.router)
    app.include_router(escrows.router)
    app.include_router(internal.router)
    return app


app = create_app()
