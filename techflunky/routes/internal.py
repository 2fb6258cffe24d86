from __future__ import annotations

from fastapi import APIRouter, Query, Request

from techflunky.errors import NotFoundError
from techflunky.routes._deps import services_from_request, tenant_from_request, trace_id_from_request
from techflunky.schemas import ResolveDisputeRequest, success_envelope
from techflunky.tenancy import require

router = APIRouter(prefix="/api/v1/internal", tags=["internal"])


@router.post("/escrows/{escrow_id}/funding-confirmed")
def confirm_escrow_funding(escrow_id: str, request: Request):
    require(tenant_from_request(request), "escrow", "confirm_funding")
    escrow = services_from_request(request).engine.confirm_funding(escrow_id=escrow_id)
    return success_envelope(escrow.to_dict(), trace_id_from_request(request))


@router.post("/escrows/{escrow_id}/disputes/{dispute_id}/resolve")
def resolve_escrow_dispute(
    escrow_id: str,
    dispute_id: str,
    payload: ResolveDisputeRequest,
    request: Request,
):
    tenant = require(tenant_from_request(request), "escrow", "resolve")
    services = services_from_request(request)
    view = services.engine.resolve_dispute(
        escrow_id=escrow_id,
        dispute_id=dispute_id,
        outcome=payload.outcome,
        resolved_by=tenant.id,
        resolution=payload.resolution,
    )
    if view.escrow.status == "cancelled":
        services.marketplace.set_offer_status(view.escrow.offer_id, "escrow_cancelled")
    elif view.escrow.status == "completed":
        services.marketplace.set_offer_status(view.escrow.offer_id, "completed")
    return success_envelope(view.to_dict(), trace_id_from_request(request))


@router.get("/outbox/events")
def list_outbox_events(
    request: Request,
    status: str | None = Query(default=None),
    event_type: str | None = Query(default=None),
):
    require(tenant_from_request(request), "operator", "read")
    items = services_from_request(request).notifications.list_events(status=status, event_type=event_type)
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.post("/outbox/events/{event_id}/publish")
def publish_outbox_event(event_id: str, request: Request):
    require(tenant_from_request(request), "operator", "read")
    event = services_from_request(request).notifications.mark_published(event_id)
    if event is None:
        raise NotFoundError("event")
    return success_envelope(event, trace_id_from_request(request))
