from __future__ import annotations

from fastapi import APIRouter, Header, Request
from fastapi.responses import JSONResponse

from techflunky.errors import NotFoundError, ValidationError
from techflunky.escrow import MilestonePlan
from techflunky.models import EscrowView
from techflunky.routes._deps import (
    require_idempotency_key,
    services_from_request,
    tenant_from_request,
    trace_id_from_request,
)
from techflunky.schemas import (
    CancelEscrowRequest,
    CompleteMilestoneRequest,
    CreateEscrowRequest,
    DisputeMilestoneRequest,
    success_envelope,
)
from techflunky.tenancy import TenantContext, require

router = APIRouter(prefix="/api/v1", tags=["escrows"])


def _visible_escrow(request: Request, tenant: TenantContext, escrow_id: str) -> EscrowView:
    # parties that cannot see the escrow get the same answer as for a missing one
    return services_from_request(request).engine.get(escrow_id=escrow_id, tenant=tenant)


@router.post("/escrows")
def create_escrow(
    payload: CreateEscrowRequest,
    request: Request,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    tenant = require(tenant_from_request(request), "escrow", "create")
    key = require_idempotency_key(idempotency_key)
    services = services_from_request(request)

    def _execute() -> dict[str, object]:
        offer = services.marketplace.get_offer(tenant, payload.offer_id)
        if offer is None:
            raise NotFoundError("offer")
        if int(offer["amount"]) != payload.total_amount:
            raise ValidationError(
                "escrow total must equal the accepted offer amount",
                details={"offer_amount": offer["amount"], "total_amount": payload.total_amount},
            )
        view = services.engine.create(
            offer_id=offer["id"],
            seller_id=offer["seller_id"],
            buyer_id=offer["buyer_id"],
            milestones=[
                MilestonePlan(description=m.description, amount=m.amount, deliverables=list(m.deliverables))
                for m in payload.milestones
            ],
            total_amount=payload.total_amount,
            currency=payload.currency,
        )
        services.marketplace.set_offer_status(offer["id"], "in_escrow")
        return view.to_dict()

    data = services.idempotency.run_idempotent(
        endpoint="POST:/api/v1/escrows",
        tenant_id=tenant.id,
        idempotency_key=key,
        payload=payload.model_dump(mode="json"),
        execute=_execute,
    )
    return JSONResponse(status_code=201, content=success_envelope(data, trace_id_from_request(request)))


@router.get("/escrows/{escrow_id}")
def get_escrow(escrow_id: str, request: Request):
    tenant = require(tenant_from_request(request), "escrow", "read")
    view = _visible_escrow(request, tenant, escrow_id)
    return success_envelope(view.to_dict(), trace_id_from_request(request))


@router.get("/offers/{offer_id}/escrow")
def get_offer_escrow(offer_id: str, request: Request):
    tenant = require(tenant_from_request(request), "escrow", "read")
    view = services_from_request(request).engine.get_for_offer(offer_id=offer_id, tenant=tenant)
    return success_envelope(view.to_dict(), trace_id_from_request(request))


@router.post("/escrows/{escrow_id}/milestones/{sequence_number}/complete")
def complete_milestone(
    escrow_id: str,
    sequence_number: int,
    request: Request,
    payload: CompleteMilestoneRequest | None = None,
):
    tenant = require(tenant_from_request(request), "escrow", "complete")
    _visible_escrow(request, tenant, escrow_id)
    services = services_from_request(request)
    release = services.engine.complete_milestone(
        escrow_id=escrow_id,
        sequence_number=sequence_number,
        completed_by=tenant.id,
        deliverables=payload.deliverables if payload is not None else (),
    )
    if release.escrow.status == "completed":
        services.marketplace.set_offer_status(release.escrow.offer_id, "completed")
    return success_envelope(release.to_dict(), trace_id_from_request(request))


@router.post("/escrows/{escrow_id}/milestones/{sequence_number}/dispute")
def dispute_milestone(
    escrow_id: str,
    sequence_number: int,
    payload: DisputeMilestoneRequest,
    request: Request,
):
    tenant = require(tenant_from_request(request), "escrow", "dispute")
    _visible_escrow(request, tenant, escrow_id)
    dispute = services_from_request(request).engine.dispute(
        escrow_id=escrow_id,
        sequence_number=sequence_number,
        initiated_by=tenant.id,
        dispute_type=payload.dispute_type,
        description=payload.description,
    )
    return JSONResponse(status_code=201, content=success_envelope(dispute.to_dict(), trace_id_from_request(request)))


@router.post("/escrows/{escrow_id}/cancel")
def cancel_escrow(escrow_id: str, payload: CancelEscrowRequest, request: Request):
    tenant = require(tenant_from_request(request), "escrow", "cancel")
    _visible_escrow(request, tenant, escrow_id)
    services = services_from_request(request)
    escrow = services.engine.cancel(escrow_id=escrow_id, reason=payload.reason)
    services.marketplace.set_offer_status(escrow.offer_id, "escrow_cancelled")
    return success_envelope(escrow.to_dict(), trace_id_from_request(request))
