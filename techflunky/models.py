from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any, Literal

EscrowStatus = Literal["created", "in_progress", "completed", "disputed", "cancelled"]
MilestoneStatus = Literal["pending", "completed", "disputed"]
DisputeStatus = Literal["open", "resolved", "rejected"]
DisputeType = Literal["quality", "delivery", "scope", "payment", "other"]
DisputeOutcome = Literal["resume", "reject", "cancel"]

TERMINAL_ESCROW_STATUSES: frozenset[str] = frozenset({"completed", "cancelled"})

ALLOWED_ESCROW_TRANSITIONS: dict[str, set[str]] = {
    "created": {"in_progress", "completed", "disputed", "cancelled"},
    "in_progress": {"completed", "disputed", "cancelled"},
    "disputed": {"in_progress", "cancelled"},
    "completed": set(),
    "cancelled": set(),
}


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class EscrowTransaction:
    id: str
    offer_id: str
    seller_id: str
    buyer_id: str
    total_amount: int
    platform_fee_amount: int
    currency: str
    total_milestone_count: int
    current_milestone_index: int = 1
    status: str = "created"
    payment_authorization_id: str = ""
    captured_amount: int = 0
    fee_collected_amount: int = 0
    cancel_reason: str | None = None
    version: int = 0
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def copy(self) -> "EscrowTransaction":
        return replace(self)

    @property
    def uncaptured_amount(self) -> int:
        return self.total_amount - self.captured_amount

    def to_dict(self) -> dict[str, Any]:
        return {
            "escrow_id": self.id,
            "offer_id": self.offer_id,
            "seller_id": self.seller_id,
            "buyer_id": self.buyer_id,
            "total_amount": self.total_amount,
            "platform_fee_amount": self.platform_fee_amount,
            "currency": self.currency,
            "current_milestone_index": self.current_milestone_index,
            "total_milestone_count": self.total_milestone_count,
            "status": self.status,
            "payment_authorization_id": self.payment_authorization_id,
            "captured_amount": self.captured_amount,
            "fee_collected_amount": self.fee_collected_amount,
            "cancel_reason": self.cancel_reason,
            "version": self.version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class Milestone:
    escrow_id: str
    sequence_number: int
    description: str
    amount: int
    deliverables: list[str] = field(default_factory=list)
    status: str = "pending"
    fee_amount: int = 0
    released_amount: int = 0
    transfer_id: str | None = None
    completed_at: datetime | None = None
    completed_by: str | None = None

    def copy(self) -> "Milestone":
        return replace(self, deliverables=list(self.deliverables))

    def to_dict(self) -> dict[str, Any]:
        return {
            "escrow_id": self.escrow_id,
            "sequence_number": self.sequence_number,
            "description": self.description,
            "amount": self.amount,
            "deliverables": list(self.deliverables),
            "status": self.status,
            "fee_amount": self.fee_amount,
            "released_amount": self.released_amount,
            "transfer_id": self.transfer_id,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "completed_by": self.completed_by,
        }


@dataclass
class Dispute:
    id: str
    escrow_id: str
    milestone_sequence_number: int
    initiating_party: str
    dispute_type: str
    description: str
    status: str = "open"
    # milestone status before the freeze; restored when the dispute is dismissed
    milestone_prior_status: str = "pending"
    resolution: str | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)

    def copy(self) -> "Dispute":
        return replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dispute_id": self.id,
            "escrow_id": self.escrow_id,
            "milestone_sequence_number": self.milestone_sequence_number,
            "initiating_party": self.initiating_party,
            "dispute_type": self.dispute_type,
            "description": self.description,
            "status": self.status,
            "resolution": self.resolution,
            "resolved_by": self.resolved_by,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class LedgerEntry:
    """One money movement against an escrow's authorization."""

    id: str
    escrow_id: str
    kind: Literal["authorization", "release", "void"]
    gross_amount: int
    fee_amount: int
    net_amount: int
    reference: str
    milestone_sequence_number: int | None = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": self.id,
            "escrow_id": self.escrow_id,
            "kind": self.kind,
            "gross_amount": self.gross_amount,
            "fee_amount": self.fee_amount,
            "net_amount": self.net_amount,
            "reference": self.reference,
            "milestone_sequence_number": self.milestone_sequence_number,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class EscrowView:
    escrow: EscrowTransaction
    milestones: list[Milestone]
    disputes: list[Dispute] = field(default_factory=list)
    ledger: list[LedgerEntry] = field(default_factory=list)
    client_secret: str | None = None

    @property
    def active_milestone(self) -> Milestone | None:
        for milestone in self.milestones:
            if milestone.sequence_number == self.escrow.current_milestone_index:
                return milestone
        return None

    def to_dict(self) -> dict[str, Any]:
        data = self.escrow.to_dict()
        data["milestones"] = [m.to_dict() for m in self.milestones]
        data["disputes"] = [d.to_dict() for d in self.disputes]
        data["ledger"] = [e.to_dict() for e in self.ledger]
        if self.client_secret is not None:
            data["client_secret"] = self.client_secret
        return data
