"""
Domain errors raised by the consent lifecycle engine.

Services raise these synchronously; nothing in the engine retries them.
The API layer maps each one to an HTTP status through ``http_status``.
"""

from typing import Any


class ConsentEngineError(Exception):
    """Base class: carries a machine-readable code and optional context."""

    http_status: int = 400
    default_code: str = "CONSENT_ERROR"

    def __init__(self, message: str, error_code: str | None = None, details: dict[str, Any] | None = None):
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.details:
            result["details"] = self.details
        return result


class NotFoundError(ConsentEngineError):
    """Unknown request or grant id (or one outside the caller's tenant)."""

    http_status = 404
    default_code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: Any):
        super().__init__(
            f"{resource} not found",
            details={"resource": resource, "id": str(resource_id)},
        )


class UnauthorizedError(ConsentEngineError):
    """Actor is not the subject patient of a patient-only operation."""

    http_status = 403
    default_code = "UNAUTHORIZED"

    def __init__(self, message: str = "Only the subject patient may perform this action", actor_id: Any = None):
        details = {"actor_id": str(actor_id)} if actor_id is not None else None
        super().__init__(message, details=details)


class InvalidTransitionError(ConsentEngineError):
    """The request (or grant) is not in a state that permits the transition."""

    http_status = 409
    default_code = "INVALID_TRANSITION"

    def __init__(self, action: str, current_status: str | None, expected: str | None = None):
        details: dict[str, Any] = {"action": action, "status": current_status}
        if expected:
            details["expected"] = expected
        super().__init__(f"Cannot {action} a request in status {current_status!r}", details=details)


class ValidationError(ConsentEngineError):
    """Input rejected before any state was touched."""

    http_status = 422
    default_code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message, details={"field": field} if field else None)
