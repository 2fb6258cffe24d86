from __future__ import annotations

import threading
import uuid
from datetime import UTC, datetime
from typing import Any, Protocol


class NotificationSink(Protocol):
    def notify(self, *, event_type: str, recipient_ids: list[str], payload: dict[str, Any]) -> None: ...


class ReputationUpdater(Protocol):
    def record(self, *, identity: str, outcome: str, amount: int) -> None: ...


class OutboxNotificationSink:
    """Keeps escrow notifications as pending outbox events for the mailer to pick up."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: dict[str, dict[str, Any]] = {}

    def notify(self, *, event_type: str, recipient_ids: list[str], payload: dict[str, Any]) -> None:
        event_id = f"evt_{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._events[event_id] = {
                "event_id": event_id,
                "event_type": event_type,
                "recipient_ids": list(recipient_ids),
                "payload": dict(payload),
                "status": "pending",
                "published_at": None,
                "created_at": datetime.now(UTC).isoformat(),
            }

    def list_events(self, *, status: str | None = None, event_type: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            items = [dict(x) for x in self._events.values()]
        if status:
            items = [x for x in items if x["status"] == status]
        if event_type:
            items = [x for x in items if x["event_type"] == event_type]
        return sorted(items, key=lambda x: x["created_at"])

    def mark_published(self, event_id: str) -> dict[str, Any] | None:
        with self._lock:
            event = self._events.get(event_id)
            if event is None:
                return None
            event["status"] = "published"
            event["published_at"] = datetime.now(UTC).isoformat()
            return dict(event)

    def reset(self) -> None:
        with self._lock:
            self._events.clear()


class InMemoryReputationLedger:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: list[dict[str, Any]] = []

    def record(self, *, identity: str, outcome: str, amount: int) -> None:
        with self._lock:
            self._entries.append(
                {
                    "identity": identity,
                    "outcome": outcome,
                    "amount": amount,
                    "recorded_at": datetime.now(UTC).isoformat(),
                }
            )

    def entries_for(self, identity: str) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(x) for x in self._entries if x["identity"] == identity]

    def reset(self) -> None:
        with self._lock:
            self._entries.clear()
