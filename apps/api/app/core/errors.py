from __future__ import annotations

from typing import Any


class DomainError(Exception):
    """Business rejection raised by services and rendered by the API exception handler."""

    code = "DOMAIN_ERROR"
    status_code = 400

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidTransitionError(DomainError):
    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"invalid request transition {current} -> {target}",
            details={"from_status": current, "to_status": target},
        )
        self.current = current
        self.target = target


class LimitExceededError(DomainError):
    code = "LIMIT_EXCEEDED"
    status_code = 409

    def __init__(self, active_count: int, limit: int) -> None:
        super().__init__(
            f"active request limit reached ({active_count}/{limit})",
            details={"active_count": active_count, "limit": limit},
        )
        self.active_count = active_count
        self.limit = limit


class DomainValidationError(DomainError):
    code = "VALIDATION_ERROR"
    status_code = 422


class NotFoundError(DomainError):
    code = "NOT_FOUND"
    status_code = 404


class PermissionDeniedError(DomainError):
    code = "FORBIDDEN"
    status_code = 403


class ActionExecutionError(DomainError):
    """A single workflow action failed; recorded on the execution, never surfaced to API callers."""

    code = "ACTION_FAILED"
    status_code = 500


class DeliveryError(DomainError):
    """Outbound email or webhook delivery failed."""

    code = "DELIVERY_FAILED"
    status_code = 502
