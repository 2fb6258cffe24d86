from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field


class MilestoneInput(BaseModel):
    description: str = Field(min_length=1)
    amount: int = Field(gt=0)
    deliverables: list[str] = Field(default_factory=list)


class CreateEscrowRequest(BaseModel):
    offer_id: str = Field(min_length=1)
    total_amount: int = Field(gt=0)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    milestones: list[MilestoneInput] = Field(min_length=1)


class CompleteMilestoneRequest(BaseModel):
    deliverables: list[str] = Field(default_factory=list)


class DisputeMilestoneRequest(BaseModel):
    dispute_type: Literal["quality", "delivery", "scope", "payment", "other"]
    description: str = Field(min_length=1)


class CancelEscrowRequest(BaseModel):
    reason: str = Field(min_length=1)


class ResolveDisputeRequest(BaseModel):
    outcome: Literal["resume", "reject", "cancel"]
    resolution: str = ""


class CreateListingRequest(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    price: int = Field(gt=0)
    status: Literal["draft", "active"] = "active"
    seller_id: str | None = None


class CreateOfferRequest(BaseModel):
    listing_id: str = Field(min_length=1)
    amount: int = Field(gt=0)
    message: str = ""
    buyer_id: str | None = None


class CreateMessageRequest(BaseModel):
    body: str = Field(min_length=1, max_length=4000)


def success_envelope(data: Any, trace_id: str, message: str = "ok") -> dict[str, Any]:
    return {
        "success": True,
        "data": data,
        "message": message,
        "meta": {
            "trace_id": trace_id,
        },
    }


def error_envelope(
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    trace_id: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error: dict[str, Any] = {
        "code": code,
        "message": message,
        "retryable": retryable,
        "class": error_class,
    }
    if details is not None:
        error["details"] = details
    return {
        "success": False,
        "error": error,
        "meta": {
            "trace_id": trace_id,
        },
    }
