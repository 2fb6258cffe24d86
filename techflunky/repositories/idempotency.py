from __future__ import annotations

import json
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from techflunky.errors import ApiError


@dataclass
class IdempotencyRecord:
    fingerprint: str
    data: dict[str, Any]


class IdempotencyStore:
    """Replays the stored response when a tenant repeats a write with the same key.

    Records are keyed per tenant and endpoint, so two tenants may reuse a key freely.
    A failed ``execute`` stores nothing and the key stays usable.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._key_locks: dict[tuple[str, str], threading.Lock] = {}
        self._records: dict[tuple[str, str], IdempotencyRecord] = {}

    @staticmethod
    def _fingerprint(payload: dict[str, Any]) -> str:
        return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=True)

    def _lock_for(self, key: tuple[str, str]) -> threading.Lock:
        with self._lock:
            return self._key_locks.setdefault(key, threading.Lock())

    def run_idempotent(
        self,
        *,
        endpoint: str,
        tenant_id: str,
        idempotency_key: str,
        payload: dict[str, Any],
        execute: Callable[[], dict[str, Any]],
    ) -> dict[str, Any]:
        key = (f"{tenant_id}:{endpoint}", idempotency_key)
        current_fingerprint = self._fingerprint(payload)
        with self._lock_for(key):
            record = self._records.get(key)
            if record is not None:
                if record.fingerprint != current_fingerprint:
                    raise ApiError(
                        code="IDEMPOTENCY_CONFLICT",
                        message="same key with different payload",
                        error_class="validation",
                        retryable=False,
                        http_status=409,
                    )
                return record.data

            data = execute()
            self._records[key] = IdempotencyRecord(fingerprint=current_fingerprint, data=data)
            return data

    def reset(self) -> None:
        with self._lock:
            self._key_locks.clear()
            self._records.clear()
