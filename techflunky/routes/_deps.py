from __future__ import annotations

import logging
import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from techflunky.errors import ApiError
from techflunky.schemas import error_envelope
from techflunky.security import redact_sensitive
from techflunky.services import Services
from techflunky.tenancy import TenantContext

logger = logging.getLogger("techflunky.security")


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


def tenant_from_request(request: Request) -> TenantContext | None:
    return getattr(request.state, "tenant", None)


def tenant_key(tenant: TenantContext | None) -> str:
    return tenant.id if tenant is not None else "anonymous"


def services_from_request(request: Request) -> Services:
    return request.app.state.services


def error_response(request: Request, exc: ApiError) -> JSONResponse:
    response = JSONResponse(
        status_code=exc.http_status,
        content=error_envelope(
            code=exc.code,
            message=exc.message,
            error_class=exc.error_class,
            retryable=exc.retryable,
            trace_id=trace_id_from_request(request),
            details=exc.details,
        ),
    )
    retry_after = getattr(exc, "retry_after_s", None)
    if retry_after:
        response.headers["Retry-After"] = str(retry_after)
    return response


def require_idempotency_key(idempotency_key: str | None) -> str:
    if not idempotency_key or not idempotency_key.strip():
        raise ApiError(
            code="IDEMPOTENCY_MISSING",
            message="Idempotency-Key header is required",
            error_class="validation",
            retryable=False,
            http_status=400,
        )
    return idempotency_key.strip()


def log_security_event(*, request: Request, action: str, code: str, detail: str) -> None:
    headers_obj = dict(request.headers.items())
    redaction_enabled = request.app.state.security_cfg.log_redaction_enabled
    headers_payload = redact_sensitive(headers_obj) if redaction_enabled else headers_obj
    logger.warning(
        "%s code=%s tenant=%s trace_id=%s path=%s detail=%s headers=%s",
        action,
        code,
        tenant_key(tenant_from_request(request)),
        trace_id_from_request(request),
        request.url.path,
        detail,
        headers_payload,
    )
