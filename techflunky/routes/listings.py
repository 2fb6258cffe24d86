from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from techflunky.errors import NotFoundError
from techflunky.routes._deps import services_from_request, tenant_from_request, trace_id_from_request
from techflunky.schemas import CreateListingRequest, CreateMessageRequest, CreateOfferRequest, success_envelope

router = APIRouter(prefix="/api/v1", tags=["marketplace"])


@router.get("/listings")
def list_listings(request: Request):
    items = services_from_request(request).marketplace.list_listings(tenant_from_request(request))
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.post("/listings")
def create_listing(payload: CreateListingRequest, request: Request):
    listing = services_from_request(request).marketplace.create_listing(
        tenant_from_request(request),
        payload.model_dump(mode="json"),
    )
    return JSONResponse(status_code=201, content=success_envelope(listing, trace_id_from_request(request)))


@router.get("/offers")
def list_offers(request: Request):
    items = services_from_request(request).marketplace.list_offers(tenant_from_request(request))
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.post("/offers")
def create_offer(payload: CreateOfferRequest, request: Request):
    offer = services_from_request(request).marketplace.create_offer(
        tenant_from_request(request),
        payload.model_dump(mode="json"),
    )
    return JSONResponse(status_code=201, content=success_envelope(offer, trace_id_from_request(request)))


@router.get("/offers/{offer_id}/messages")
def list_offer_messages(offer_id: str, request: Request):
    marketplace = services_from_request(request).marketplace
    tenant = tenant_from_request(request)
    if marketplace.get_offer(tenant, offer_id) is None:
        raise NotFoundError("offer")
    items = marketplace.list_messages(tenant, offer_id)
    return success_envelope({"items": items, "total": len(items)}, trace_id_from_request(request))


@router.post("/offers/{offer_id}/messages")
def post_offer_message(offer_id: str, payload: CreateMessageRequest, request: Request):
    message = services_from_request(request).marketplace.add_message(
        tenant_from_request(request),
        offer_id=offer_id,
        body=payload.body,
    )
    return JSONResponse(status_code=201, content=success_envelope(message, trace_id_from_request(request)))
