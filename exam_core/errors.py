"""Typed failures raised by the exam core and translated at the HTTP boundary.

Each error carries the status code it maps to and a JSON-safe body. Messages are
meant for the client; anything internal belongs in the server log.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class ExamError(Exception):
    status_code: int = 500
    message: str = "Internal error"

    def __init__(self, message: Optional[str] = None, **context: Any) -> None:
        super().__init__(message or self.message)
        self.message = message or self.message
        self.context: Dict[str, Any] = context

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message}
        body.update(self.context)
        return body


class ValidationError(ExamError):
    status_code = 400
    message = "Invalid body"


class AuthError(ExamError):
    status_code = 401
    message = "Unauthorized"


class ForbiddenError(ExamError):
    status_code = 403
    message = "Forbidden"


class OwnershipError(ForbiddenError):
    pass


class NotFoundError(ExamError):
    status_code = 404
    message = "Not found"


class PlanRequiredError(ExamError):
    status_code = 402
    message = "Upgrade required"

    def __init__(self, required_plan: str, current_plan: str, upgrade_url: str) -> None:
        super().__init__(
            requiredPlan=required_plan,
            currentPlan=current_plan,
            upgradeUrl=upgrade_url,
        )
        self.required_plan = required_plan
        self.current_plan = current_plan


class QuotaExceededError(ExamError):
    status_code = 402
    message = "Quota exceeded"


class LockedStateError(ExamError):
    status_code = 409
    message = "Attempt is locked"


class ServiceUnavailableError(ExamError):
    status_code = 503
    message = "Temporarily unavailable"


class InternalError(ExamError):
    status_code = 500

    def to_body(self) -> Dict[str, Any]:
        return {"error": "Internal error"}


class StorageError(InternalError):
    """Raised by the persistence layer for driver failures and busy timeouts."""


class DuplicateNotificationError(ExamError):
    status_code = 409
    message = "notification_event_duplicate"

    def __init__(self, event_id: Optional[str] = None) -> None:
        super().__init__()
        self.event_id = event_id


__all__ = [
    "ExamError",
    "ValidationError",
    "AuthError",
    "ForbiddenError",
    "OwnershipError",
    "NotFoundError",
    "PlanRequiredError",
    "QuotaExceededError",
    "LockedStateError",
    "ServiceUnavailableError",
    "InternalError",
    "StorageError",
    "DuplicateNotificationError",
]
