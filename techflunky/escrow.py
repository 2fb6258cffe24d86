"""Milestone escrow engine.

An escrow holds the buyer's funds under one external authorization for the full
contract amount and releases them milestone by milestone, strictly in sequence.
Each operation runs inside one repository unit of work: state changes and ledger
entries either all take effect or none do. A milestone transfer is keyed by escrow
and sequence number, so when the commit after a transfer is lost the retried release
gets the same transfer back from the payment provider.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

from techflunky.config import EscrowConfig
from techflunky.errors import NotFoundError, PaymentAdapterError, SequenceError, StateError, ValidationError
from techflunky.events import NotificationSink, ReputationUpdater
from techflunky.models import (
    ALLOWED_ESCROW_TRANSITIONS,
    TERMINAL_ESCROW_STATUSES,
    Dispute,
    EscrowTransaction,
    EscrowView,
    LedgerEntry,
    Milestone,
    utcnow,
)
from techflunky.payments import PaymentAdapter
from techflunky.repositories.escrows import ENGINE_TENANT, EscrowUnitOfWork
from techflunky.tenancy import TenantContext

logger = logging.getLogger(__name__)

DISPUTE_TYPES: frozenset[str] = frozenset({"quality", "delivery", "scope", "payment", "other"})
DISPUTE_OUTCOMES: frozenset[str] = frozenset({"resume", "reject", "cancel"})


@dataclass(frozen=True)
class MilestonePlan:
    description: str
    amount: int
    deliverables: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class MilestoneRelease:
    escrow: EscrowTransaction
    milestone: Milestone
    gross_amount: int
    fee_amount: int
    net_amount: int
    transfer_id: str

    def to_dict(self) -> dict[str, Any]:
        is_final = self.escrow.status == "completed"
        return {
            "escrow_id": self.escrow.id,
            "milestone_completed": self.milestone.sequence_number,
            "gross_amount": self.gross_amount,
            "fee_amount": self.fee_amount,
            "released_amount": self.net_amount,
            "transfer_id": self.transfer_id,
            "escrow_status": self.escrow.status,
            "current_milestone_index": self.escrow.current_milestone_index,
            "next_milestone": None if is_final else self.escrow.current_milestone_index,
        }


class EscrowRepository(Protocol):
    def unit_of_work(self, *, escrow_id: str | None = None, offer_id: str | None = None) -> Any: ...

    def get_view(self, *, escrow_id: str, tenant: TenantContext | None) -> EscrowView | None: ...

    def find_for_offer(self, *, offer_id: str, tenant: TenantContext | None) -> EscrowView | None: ...


def round_half_up_div(numerator: int, denominator: int) -> int:
    """Integer ``round(numerator / denominator)`` with halves rounded up, for non-negative inputs."""
    return (2 * numerator + denominator) // (2 * denominator)


def fee_share(*, platform_fee_amount: int, milestone_amount: int, total_amount: int) -> int:
    return round_half_up_div(platform_fee_amount * milestone_amount, total_amount)


def fee_schedule(amounts: Sequence[int], *, total_amount: int, platform_fee_amount: int) -> list[int]:
    """Per-milestone platform fee shares.

    Every milestone but the last carries its proportional share, rounded half up;
    the last carries whatever remains, so the shares always sum to the fee.
    """
    shares = [
        fee_share(platform_fee_amount=platform_fee_amount, milestone_amount=amount, total_amount=total_amount)
        for amount in amounts[:-1]
    ]
    shares.append(platform_fee_amount - sum(shares))
    return shares


def default_platform_fee(total_amount: int, *, fee_bps: int) -> int:
    return round_half_up_div(total_amount * fee_bps, 10_000)


def release_key(escrow_id: str, sequence_number: int) -> str:
    return f"{escrow_id}:milestone:{sequence_number}:release"


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def _transition(escrow: EscrowTransaction, new_status: str, *, now: datetime) -> None:
    if new_status == escrow.status:
        return
    if new_status not in ALLOWED_ESCROW_TRANSITIONS.get(escrow.status, set()):
        raise StateError(f"invalid escrow transition: {escrow.status} -> {new_status}", status=escrow.status)
    logger.info("escrow_transition escrow_id=%s from=%s to=%s", escrow.id, escrow.status, new_status)
    escrow.status = new_status
    escrow.updated_at = now


def validate_milestones(
    milestones: Sequence[MilestonePlan],
    *,
    total_amount: int,
    platform_fee_amount: int,
) -> list[int]:
    """Check a proposed milestone plan and return its fee schedule."""
    if not milestones:
        raise ValidationError("at least one milestone is required")
    if total_amount <= 0:
        raise ValidationError("total amount must be positive", details={"total_amount": total_amount})
    if platform_fee_amount < 0 or platform_fee_amount > total_amount:
        raise ValidationError(
            "platform fee must be between 0 and the total amount",
            details={"platform_fee_amount": platform_fee_amount, "total_amount": total_amount},
        )
    for index, plan in enumerate(milestones, start=1):
        if not plan.description.strip():
            raise ValidationError("milestone description is required", details={"milestone": index})
        if isinstance(plan.amount, bool) or not isinstance(plan.amount, int) or plan.amount <= 0:
            raise ValidationError("milestone amount must be a positive integer", details={"milestone": index})
    milestones_total = sum(plan.amount for plan in milestones)
    if milestones_total != total_amount:
        raise ValidationError(
            "milestone amounts must sum to total amount",
            details={"milestones_total": milestones_total, "total_amount": total_amount},
        )
    shares = fee_schedule(
        [plan.amount for plan in milestones],
        total_amount=total_amount,
        platform_fee_amount=platform_fee_amount,
    )
    for index, (plan, share) in enumerate(zip(milestones, shares), start=1):
        if share < 0 or share > plan.amount:
            raise ValidationError(
                "platform fee share would make a milestone release negative",
                details={"milestone": index, "amount": plan.amount, "fee_share": share},
            )
    return shares


class EscrowEngine:
    def __init__(
        self,
        *,
        repository: EscrowRepository,
        payments: PaymentAdapter,
        notifications: NotificationSink | None = None,
        reputation: ReputationUpdater | None = None,
        config: EscrowConfig | None = None,
    ) -> None:
        self._repository = repository
        self._payments = payments
        self._notifications = notifications
        self._reputation = reputation
        self._config = config or EscrowConfig()

    @property
    def config(self) -> EscrowConfig:
        return self._config

    def _notify(self, event_type: str, escrow: EscrowTransaction, payload: dict[str, Any]) -> None:
        if self._notifications is None:
            return
        try:
            self._notifications.notify(
                event_type=event_type,
                recipient_ids=[escrow.buyer_id, escrow.seller_id],
                payload={"escrow_id": escrow.id, "offer_id": escrow.offer_id, **payload},
            )
        except Exception as exc:
            logger.warning(
                "escrow_notification_failed escrow_id=%s event=%s error=%s",
                escrow.id,
                event_type,
                type(exc).__name__,
            )

    def _record_reputation(self, escrow: EscrowTransaction) -> None:
        if self._reputation is None:
            return
        for identity, outcome in ((escrow.seller_id, "sale_completed"), (escrow.buyer_id, "purchase_completed")):
            try:
                self._reputation.record(identity=identity, outcome=outcome, amount=escrow.total_amount)
            except Exception as exc:
                logger.warning(
                    "escrow_reputation_update_failed escrow_id=%s identity=%s error=%s",
                    escrow.id,
                    identity,
                    type(exc).__name__,
                )

    @staticmethod
    def _load(uow: EscrowUnitOfWork, escrow_id: str) -> EscrowTransaction:
        escrow = uow.get_escrow(escrow_id)
        if escrow is None:
            raise NotFoundError("escrow")
        return escrow

    @staticmethod
    def _milestone(milestones: list[Milestone], sequence_number: int) -> Milestone:
        for milestone in milestones:
            if milestone.sequence_number == sequence_number:
                return milestone
        raise NotFoundError("milestone")

    def create(
        self,
        *,
        offer_id: str,
        seller_id: str,
        buyer_id: str,
        milestones: Sequence[MilestonePlan],
        total_amount: int,
        platform_fee_amount: int | None = None,
        currency: str | None = None,
    ) -> EscrowView:
        if not offer_id.strip() or not seller_id.strip() or not buyer_id.strip():
            raise ValidationError("offer, seller and buyer are required")
        if platform_fee_amount is None:
            platform_fee_amount = default_platform_fee(total_amount, fee_bps=self._config.platform_fee_bps)
        validate_milestones(milestones, total_amount=total_amount, platform_fee_amount=platform_fee_amount)
        currency = (currency or self._config.default_currency).lower()

        escrow_id = _new_id("esc")
        authorization = None
        try:
            with self._repository.unit_of_work(offer_id=offer_id) as uow:
                existing = uow.find_open_escrow_for_offer(offer_id)
                if existing is not None:
                    raise StateError(f"offer {offer_id} already has an escrow", status=existing.status)

                # hold the full amount first; nothing is persisted unless the hold succeeds
                authorization = self._payments.authorize(
                    amount=total_amount,
                    currency=currency,
                    metadata={
                        "escrow_id": escrow_id,
                        "offer_id": offer_id,
                        "buyer_id": buyer_id,
                        "type": "escrow_payment",
                    },
                )
                now = utcnow()
                escrow = EscrowTransaction(
                    id=escrow_id,
                    offer_id=offer_id,
                    seller_id=seller_id,
                    buyer_id=buyer_id,
                    total_amount=total_amount,
                    platform_fee_amount=platform_fee_amount,
                    currency=currency,
                    total_milestone_count=len(milestones),
                    payment_authorization_id=authorization.authorization_id,
                    created_at=now,
                    updated_at=now,
                )
                rows = [
                    Milestone(
                        escrow_id=escrow_id,
                        sequence_number=seq,
                        description=plan.description.strip(),
                        amount=plan.amount,
                        deliverables=list(plan.deliverables),
                    )
                    for seq, plan in enumerate(milestones, start=1)
                ]
                uow.add_escrow(escrow, rows)
                uow.append_ledger(
                    LedgerEntry(
                        id=_new_id("led"),
                        escrow_id=escrow_id,
                        kind="authorization",
                        gross_amount=total_amount,
                        fee_amount=0,
                        net_amount=total_amount,
                        reference=authorization.authorization_id,
                        created_at=now,
                    )
                )
        except Exception:
            if authorization is not None:
                self._void_quietly(authorization.authorization_id, escrow_id=escrow_id)
            raise

        logger.info(
            "escrow_created escrow_id=%s offer_id=%s milestones=%s total_amount=%s",
            escrow_id,
            offer_id,
            len(rows),
            total_amount,
        )
        self._notify("escrow.created", escrow, {"total_amount": total_amount, "milestones": len(rows)})
        return EscrowView(escrow=escrow, milestones=rows, client_secret=authorization.client_secret)

    def _void_quietly(self, authorization_id: str, *, escrow_id: str) -> None:
        try:
            self._payments.void_remaining(authorization_id=authorization_id)
        except PaymentAdapterError as exc:
            logger.warning("escrow_authorization_void_failed escrow_id=%s error=%s", escrow_id, exc.message)

    def confirm_funding(self, *, escrow_id: str) -> EscrowTransaction:
        with self._repository.unit_of_work(escrow_id=escrow_id) as uow:
            escrow = self._load(uow, escrow_id)
            if escrow.status != "created":
                if escrow.status == "in_progress":
                    return escrow
                raise StateError(f"escrow cannot be funded while {escrow.status}", status=escrow.status)
            _transition(escrow, "in_progress", now=utcnow())
            uow.save_escrow(escrow)
        self._notify("escrow.funded", escrow, {})
        return escrow

    def complete_milestone(
        self,
        *,
        escrow_id: str,
        sequence_number: int,
        completed_by: str,
        deliverables: Sequence[str] = (),
    ) -> MilestoneRelease:
        if not completed_by.strip():
            raise ValidationError("completing identity is required")
        transfer_id: str | None = None
        try:
            with self._repository.unit_of_work(escrow_id=escrow_id) as uow:
                escrow = self._load(uow, escrow_id)
                if escrow.status not in {"created", "in_progress"}:
                    raise StateError(
                        f"cannot complete a milestone while escrow is {escrow.status}", status=escrow.status
                    )
                if sequence_number != escrow.current_milestone_index:
                    raise SequenceError(
                        f"can only complete current milestone ({escrow.current_milestone_index})",
                        expected=escrow.current_milestone_index,
                        received=sequence_number,
                    )
                milestones = uow.list_milestones(escrow_id)
                milestone = self._milestone(milestones, sequence_number)
                if milestone.status != "pending":
                    raise StateError(f"milestone {sequence_number} is {milestone.status}", status=escrow.status)

                is_last = sequence_number == escrow.total_milestone_count
                if is_last:
                    fee = escrow.platform_fee_amount - escrow.fee_collected_amount
                else:
                    fee = fee_share(
                        platform_fee_amount=escrow.platform_fee_amount,
                        milestone_amount=milestone.amount,
                        total_amount=escrow.total_amount,
                    )
                net = milestone.amount - fee
                if net < 0:
                    raise ValidationError(
                        "milestone release would be negative",
                        details={"milestone": sequence_number, "amount": milestone.amount, "fee_share": fee},
                    )

                # one transfer per milestone however often the release is retried
                transfer_id = self._payments.capture_or_transfer(
                    authorization_id=escrow.payment_authorization_id,
                    amount=net,
                    destination=escrow.seller_id,
                    metadata={"escrow_id": escrow.id, "milestone": str(sequence_number)},
                    idempotency_key=release_key(escrow.id, sequence_number),
                )

                now = utcnow()
                milestone.status = "completed"
                milestone.completed_at = now
                milestone.completed_by = completed_by
                milestone.fee_amount = fee
                milestone.released_amount = net
                milestone.transfer_id = transfer_id
                if deliverables:
                    milestone.deliverables = list(deliverables)
                uow.save_milestone(milestone)

                escrow.captured_amount += milestone.amount
                escrow.fee_collected_amount += fee
                if is_last:
                    _transition(escrow, "completed", now=now)
                else:
                    _transition(escrow, "in_progress", now=now)
                    escrow.current_milestone_index += 1
                escrow.updated_at = now
                uow.save_escrow(escrow)
                uow.append_ledger(
                    LedgerEntry(
                        id=_new_id("led"),
                        escrow_id=escrow.id,
                        kind="release",
                        gross_amount=milestone.amount,
                        fee_amount=fee,
                        net_amount=net,
                        reference=transfer_id,
                        milestone_sequence_number=sequence_number,
                        created_at=now,
                    )
                )
        except Exception as exc:
            if transfer_id is not None:
                logger.error(
                    "escrow_release_not_recorded escrow_id=%s milestone=%s transfer_id=%s error=%s",
                    escrow_id,
                    sequence_number,
                    transfer_id,
                    type(exc).__name__,
                )
            raise

        logger.info(
            "escrow_milestone_released escrow_id=%s milestone=%s gross=%s fee=%s net=%s",
            escrow.id,
            sequence_number,
            milestone.amount,
            fee,
            net,
        )
        self._notify(
            "escrow.milestone_completed",
            escrow,
            {"milestone": sequence_number, "released_amount": net, "completed_by": completed_by},
        )
        if escrow.status == "completed":
            self._notify("escrow.completed", escrow, {"total_amount": escrow.total_amount})
            self._record_reputation(escrow)
        return MilestoneRelease(
            escrow=escrow,
            milestone=milestone,
            gross_amount=milestone.amount,
            fee_amount=fee,
            net_amount=net,
            transfer_id=transfer_id,
        )

    def dispute(
        self,
        *,
        escrow_id: str,
        sequence_number: int,
        initiated_by: str,
        dispute_type: str,
        description: str,
    ) -> Dispute:
        if not initiated_by.strip() or not description.strip():
            raise ValidationError("all dispute fields are required")
        if dispute_type not in DISPUTE_TYPES:
            raise ValidationError("unknown dispute type", details={"allowed": sorted(DISPUTE_TYPES)})
        with self._repository.unit_of_work(escrow_id=escrow_id) as uow:
            escrow = self._load(uow, escrow_id)
            if escrow.status not in {"created", "in_progress", "completed"}:
                raise StateError(f"cannot dispute while escrow is {escrow.status}", status=escrow.status)
            milestones = uow.list_milestones(escrow_id)
            milestone = self._milestone(milestones, sequence_number)
            now = utcnow()
            if milestone.status == "completed":
                if not self._within_grace_period(milestone, now=now):
                    raise SequenceError(
                        "completed milestones can no longer be disputed",
                        expected=escrow.current_milestone_index,
                        received=sequence_number,
                    )
            elif sequence_number != escrow.current_milestone_index or escrow.status == "completed":
                raise SequenceError(
                    f"only the active milestone ({escrow.current_milestone_index}) can be disputed",
                    expected=escrow.current_milestone_index,
                    received=sequence_number,
                )
            if any(d.status == "open" for d in uow.list_disputes(escrow_id)):
                raise StateError("escrow already has an open dispute", status=escrow.status)

            dispute = Dispute(
                id=_new_id("dsp"),
                escrow_id=escrow.id,
                milestone_sequence_number=sequence_number,
                initiating_party=initiated_by,
                dispute_type=dispute_type,
                description=description.strip(),
                milestone_prior_status=milestone.status,
                created_at=now,
            )
            if escrow.status == "completed":
                # a grace-period dispute reopens a finished escrow; only operators can settle it
                escrow.status = "disputed"
                escrow.updated_at = now
            else:
                _transition(escrow, "disputed", now=now)
            milestone.status = "disputed"
            uow.add_dispute(dispute)
            uow.save_milestone(milestone)
            uow.save_escrow(escrow)

        self._notify(
            "escrow.disputed",
            escrow,
            {"dispute_id": dispute.id, "milestone": sequence_number, "dispute_type": dispute_type},
        )
        return dispute

    def _within_grace_period(self, milestone: Milestone, *, now: datetime) -> bool:
        grace = self._config.dispute_grace_period_s
        if grace <= 0 or milestone.completed_at is None:
            return False
        return now - milestone.completed_at <= timedelta(seconds=grace)

    def resolve_dispute(
        self,
        *,
        escrow_id: str,
        dispute_id: str,
        outcome: str,
        resolved_by: str,
        resolution: str = "",
    ) -> EscrowView:
        if outcome not in DISPUTE_OUTCOMES:
            raise ValidationError("unknown dispute outcome", details={"allowed": sorted(DISPUTE_OUTCOMES)})
        with self._repository.unit_of_work(escrow_id=escrow_id) as uow:
            escrow = self._load(uow, escrow_id)
            disputes = uow.list_disputes(escrow_id)
            dispute = next((d for d in disputes if d.id == dispute_id), None)
            if dispute is None:
                raise NotFoundError("dispute")
            if dispute.status != "open" or escrow.status != "disputed":
                raise StateError(f"dispute is {dispute.status}", status=escrow.status)
            milestones = uow.list_milestones(escrow_id)
            milestone = self._milestone(milestones, dispute.milestone_sequence_number)

            now = utcnow()
            if outcome == "cancel":
                self._void_remaining(uow, escrow, now=now)
                _transition(escrow, "cancelled", now=now)
                escrow.cancel_reason = resolution or "dispute resolved by cancellation"
                dispute.status = "resolved"
                milestone.status = dispute.milestone_prior_status
            else:
                dispute.status = "resolved" if outcome == "resume" else "rejected"
                milestone.status = dispute.milestone_prior_status
                all_done = all(
                    (m.status if m.sequence_number != milestone.sequence_number else milestone.status) == "completed"
                    for m in milestones
                )
                if all_done:
                    escrow.status = "completed"
                    escrow.updated_at = now
                else:
                    _transition(escrow, "in_progress", now=now)
            dispute.resolution = resolution or outcome
            dispute.resolved_by = resolved_by
            dispute.resolved_at = now
            uow.save_dispute(dispute)
            uow.save_milestone(milestone)
            uow.save_escrow(escrow)

        self._notify(
            "escrow.dispute_resolved",
            escrow,
            {"dispute_id": dispute.id, "outcome": outcome, "escrow_status": escrow.status},
        )
        view = self._repository.get_view(escrow_id=escrow_id, tenant=ENGINE_TENANT)
        if view is None:
            raise NotFoundError("escrow")
        return view

    def _void_remaining(self, uow: EscrowUnitOfWork, escrow: EscrowTransaction, *, now: datetime) -> None:
        remaining = escrow.uncaptured_amount
        if remaining <= 0:
            return
        self._payments.void_remaining(authorization_id=escrow.payment_authorization_id)
        uow.append_ledger(
            LedgerEntry(
                id=_new_id("led"),
                escrow_id=escrow.id,
                kind="void",
                gross_amount=remaining,
                fee_amount=0,
                net_amount=remaining,
                reference=escrow.payment_authorization_id,
                created_at=now,
            )
        )

    def cancel(self, *, escrow_id: str, reason: str) -> EscrowTransaction:
        if not reason.strip():
            raise ValidationError("cancellation reason is required")
        with self._repository.unit_of_work(escrow_id=escrow_id) as uow:
            escrow = self._load(uow, escrow_id)
            if escrow.status in TERMINAL_ESCROW_STATUSES or escrow.status == "disputed":
                raise StateError(f"cannot cancel escrow while {escrow.status}", status=escrow.status)
            completed = sum(1 for m in uow.list_milestones(escrow_id) if m.status == "completed")
            if completed > self._config.cancel_max_completed_milestones:
                raise StateError(
                    f"cannot cancel after {completed} milestones have been paid out",
                    status=escrow.status,
                )
            now = utcnow()
            self._void_remaining(uow, escrow, now=now)
            _transition(escrow, "cancelled", now=now)
            escrow.cancel_reason = reason.strip()
            uow.save_escrow(escrow)

        self._notify("escrow.cancelled", escrow, {"reason": escrow.cancel_reason})
        return escrow

    def get(self, *, escrow_id: str, tenant: TenantContext | None) -> EscrowView:
        view = self._repository.get_view(escrow_id=escrow_id, tenant=tenant)
        if view is None:
            raise NotFoundError("escrow")
        return view

    def get_for_offer(self, *, offer_id: str, tenant: TenantContext | None) -> EscrowView:
        view = self._repository.find_for_offer(offer_id=offer_id, tenant=tenant)
        if view is None:
            raise NotFoundError("escrow")
        return view
