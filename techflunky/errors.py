from __future__ import annotations

from typing import Any


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status
        self.details = details


class ValidationError(ApiError):
    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(
            code="ESCROW_VALIDATION_FAILED",
            message=message,
            error_class="validation",
            retryable=False,
            http_status=400,
            details=details,
        )


class SequenceError(ApiError):
    def __init__(self, message: str, *, expected: int, received: int) -> None:
        super().__init__(
            code="ESCROW_MILESTONE_OUT_OF_SEQUENCE",
            message=message,
            error_class="business_rule",
            retryable=False,
            http_status=409,
            details={"expected_milestone": expected, "received_milestone": received},
        )


class StateError(ApiError):
    def __init__(self, message: str, *, status: str) -> None:
        super().__init__(
            code="ESCROW_STATE_INVALID",
            message=message,
            error_class="business_rule",
            retryable=False,
            http_status=409,
            details={"status": status},
        )


class AuthorizationError(ApiError):
    def __init__(self, message: str = "access denied", *, code: str = "AUTH_FORBIDDEN", http_status: int = 403) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="security_sensitive",
            retryable=False,
            http_status=http_status,
        )


class PaymentAdapterError(ApiError):
    """Raised when the external payment provider rejects or fails a call.

    Escrow state is never advanced when this is raised, so the whole operation
    can be retried by the caller.
    """

    def __init__(self, message: str, *, operation: str) -> None:
        super().__init__(
            code="PAYMENT_ADAPTER_FAILED",
            message=message,
            error_class="transient",
            retryable=True,
            http_status=502,
            details={"operation": operation},
        )


class NotFoundError(ApiError):
    def __init__(self, resource: str) -> None:
        super().__init__(
            code=f"{resource.upper()}_NOT_FOUND",
            message=f"{resource} not found",
            error_class="validation",
            retryable=False,
            http_status=404,
        )


class RateLimitError(ApiError):
    def __init__(self, *, retry_after_s: int) -> None:
        super().__init__(
            code="RATE_LIMITED",
            message="request budget exhausted for tenant",
            error_class="transient",
            retryable=True,
            http_status=429,
            details={"retry_after_s": retry_after_s},
        )
        self.retry_after_s = retry_after_s


class ConcurrencyError(ApiError):
    def __init__(self, escrow_id: str) -> None:
        super().__init__(
            code="ESCROW_CONCURRENT_MODIFICATION",
            message=f"escrow {escrow_id} was modified concurrently",
            error_class="transient",
            retryable=True,
            http_status=409,
        )
