from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from techflunky.errors import PaymentAdapterError


@dataclass(frozen=True)
class PaymentAuthorization:
    authorization_id: str
    client_secret: str


class PaymentAdapter(Protocol):
    """Card-payments provider holding the buyer's funds for an escrow.

    Implementations raise ``PaymentAdapterError`` for declines, network errors
    and timeouts; any other exception is treated as a programming error.
    ``capture_or_transfer`` must honour ``idempotency_key``: a repeated key returns
    the transfer already made for it and moves no money.
    """

    def authorize(self, *, amount: int, currency: str, metadata: dict[str, str]) -> PaymentAuthorization: ...

    def capture_or_transfer(
        self,
        *,
        authorization_id: str,
        amount: int,
        destination: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str: ...

    def void_remaining(self, *, authorization_id: str) -> bool: ...


@dataclass
class _Hold:
    amount: int
    currency: str
    metadata: dict[str, str]
    captured: int = 0
    voided: bool = False
    transfers: list[dict[str, Any]] = field(default_factory=list)
    transfer_keys: dict[str, str] = field(default_factory=dict)


class InMemoryPaymentAdapter:
    """Payment provider double that keeps holds and transfers in memory.

    ``fail_next(operation)`` makes the next call of that operation raise
    ``PaymentAdapterError`` so callers can exercise rollback paths.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._holds: dict[str, _Hold] = {}
        self._pending_failures: dict[str, int] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def fail_next(self, operation: str, *, times: int = 1) -> None:
        with self._lock:
            self._pending_failures[operation] = self._pending_failures.get(operation, 0) + times

    def _maybe_fail(self, operation: str) -> None:
        remaining = self._pending_failures.get(operation, 0)
        if remaining > 0:
            self._pending_failures[operation] = remaining - 1
            raise PaymentAdapterError(f"simulated {operation} failure", operation=operation)

    def authorize(self, *, amount: int, currency: str, metadata: dict[str, str]) -> PaymentAuthorization:
        with self._lock:
            self.calls.append(("authorize", {"amount": amount, "currency": currency, "metadata": dict(metadata)}))
            self._maybe_fail("authorize")
            if amount <= 0:
                raise PaymentAdapterError("authorization amount must be positive", operation="authorize")
            authorization_id = f"pi_{uuid.uuid4().hex[:16]}"
            self._holds[authorization_id] = _Hold(amount=amount, currency=currency, metadata=dict(metadata))
            return PaymentAuthorization(
                authorization_id=authorization_id,
                client_secret=f"{authorization_id}_secret_{uuid.uuid4().hex[:8]}",
            )

    def capture_or_transfer(
        self,
        *,
        authorization_id: str,
        amount: int,
        destination: str,
        metadata: dict[str, str],
        idempotency_key: str,
    ) -> str:
        with self._lock:
            self.calls.append(
                (
                    "capture_or_transfer",
                    {
                        "authorization_id": authorization_id,
                        "amount": amount,
                        "destination": destination,
                        "metadata": dict(metadata),
                        "idempotency_key": idempotency_key,
                    },
                )
            )
            self._maybe_fail("capture_or_transfer")
            hold = self._holds.get(authorization_id)
            if hold is None:
                raise PaymentAdapterError("authorization not available", operation="capture_or_transfer")
            existing = hold.transfer_keys.get(idempotency_key)
            if existing is not None:
                return existing
            if hold.voided:
                raise PaymentAdapterError("authorization not available", operation="capture_or_transfer")
            if hold.captured + amount > hold.amount:
                raise PaymentAdapterError("capture exceeds authorized amount", operation="capture_or_transfer")
            hold.captured += amount
            transfer_id = f"tr_{uuid.uuid4().hex[:16]}"
            hold.transfers.append({"transfer_id": transfer_id, "amount": amount, "destination": destination})
            hold.transfer_keys[idempotency_key] = transfer_id
            return transfer_id

    def void_remaining(self, *, authorization_id: str) -> bool:
        with self._lock:
            self.calls.append(("void_remaining", {"authorization_id": authorization_id}))
            self._maybe_fail("void_remaining")
            hold = self._holds.get(authorization_id)
            if hold is None:
                raise PaymentAdapterError("authorization not found", operation="void_remaining")
            hold.voided = True
            return True

    def captured_amount(self, authorization_id: str) -> int:
        with self._lock:
            hold = self._holds.get(authorization_id)
            return hold.captured if hold is not None else 0

    def transfers(self, authorization_id: str) -> list[dict[str, Any]]:
        with self._lock:
            hold = self._holds.get(authorization_id)
            return [dict(x) for x in hold.transfers] if hold is not None else []

    def is_voided(self, authorization_id: str) -> bool:
        with self._lock:
            hold = self._holds.get(authorization_id)
            return bool(hold and hold.voided)

    def call_count(self, operation: str) -> int:
        with self._lock:
            return sum(1 for name, _ in self.calls if name == operation)
