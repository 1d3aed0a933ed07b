"""Engine error types and response helpers."""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class AppError(Exception):
    """Base application error."""

    def __init__(self, message: str, code: str, http_status: int = 400):
        """Initialize error."""
        self.message = message
        self.code = code
        self.http_status = http_status
        super().__init__(message)

    def details(self) -> Dict[str, Any]:
        """Extra fields rendered next to code and message."""
        return {}


class NotFound(AppError):
    """Referenced record, tenant or plan does not exist."""

    def __init__(self, message: str = "Not found"):
        super().__init__(message, "not_found", status.HTTP_404_NOT_FOUND)


class InvalidStateTransition(AppError):
    """Transition is not legal from the record's current state."""

    def __init__(self, entity: str, from_state: str, to_state: str, allowed: Optional[list] = None):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = sorted(allowed or [])
        message = f"Invalid transition for {entity}: '{from_state}' -> '{to_state}'"
        if self.allowed:
            message += f". Allowed from '{from_state}': {self.allowed}"
        super().__init__(message, "invalid_state_transition", status.HTTP_409_CONFLICT)

    def details(self) -> Dict[str, Any]:
        return {"from": self.from_state, "to": self.to_state, "allowed": self.allowed}


class MissingSignature(AppError):
    """Callback arrived without a signature header."""

    def __init__(self, message: str = "Missing signature header"):
        super().__init__(message, "missing_signature", status.HTTP_400_BAD_REQUEST)


class SignatureMismatch(AppError):
    """Callback signature does not match the payload."""

    def __init__(self, message: str = "Invalid signature"):
        super().__init__(message, "signature_mismatch", status.HTTP_401_UNAUTHORIZED)


class MalformedPayload(AppError):
    """Callback body cannot be read as a gateway payload."""

    def __init__(self, message: str = "Malformed payload"):
        super().__init__(message, "malformed_payload", status.HTTP_400_BAD_REQUEST)


class ReconciliationConflict(AppError):
    """Callback outcome contradicts the record's current terminal state."""

    def __init__(self, record_id: int, current_status: str, reported_status: str):
        self.record_id = record_id
        self.current_status = current_status
        self.reported_status = reported_status
        super().__init__(
            f"Callback reports {reported_status} for record {record_id} "
            f"which is already {current_status}",
            "reconciliation_conflict",
            status.HTTP_409_CONFLICT,
        )

    def details(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "current_status": self.current_status,
            "reported_status": self.reported_status,
        }


class LimitExceeded(AppError):
    """Resource creation would exceed the tenant's quota."""

    def __init__(self, resource: str, current: int, limit: Optional[int], plan: Optional[str] = None):
        self.resource = resource
        self.current = current
        self.limit = limit
        self.plan = plan
        if limit is None:
            message = f"{resource} not included in plan '{plan or 'none'}'"
        else:
            message = f"Limit exceeded: {current}/{limit} ({resource})"
        super().__init__(message, "limit_exceeded", status.HTTP_403_FORBIDDEN)

    def details(self) -> Dict[str, Any]:
        return {
            "resource": self.resource,
            "current": self.current,
            "limit": self.limit,
            "plan": self.plan,
        }


class DowngradeExceedsUsage(AppError):
    """Plan change would immediately violate the new plan's quota."""

    def __init__(self, resource: str, current: int, limit: Optional[int], plan: str):
        self.resource = resource
        self.current = current
        self.limit = limit
        self.plan = plan
        shown = "not included" if limit is None else str(limit)
        super().__init__(
            f"Cannot change to '{plan}': current {resource} usage ({current}) "
            f"exceeds new plan limit ({shown})",
            "downgrade_exceeds_usage",
            status.HTTP_409_CONFLICT,
        )

    def details(self) -> Dict[str, Any]:
        return {
            "resource": self.resource,
            "current": self.current,
            "limit": self.limit,
            "plan": self.plan,
        }


class AlreadySubscribed(AppError):
    """Tenant already holds an active entitlement on the requested plan."""

    def __init__(self, plan: str):
        self.plan = plan
        super().__init__(
            f"Already subscribed to plan '{plan}'", "already_subscribed", status.HTTP_400_BAD_REQUEST
        )


class GatewayTimeout(AppError):
    """Gateway initialization call exceeded its deadline."""

    def __init__(self, message: str = "Payment gateway timed out"):
        super().__init__(message, "gateway_timeout", status.HTTP_504_GATEWAY_TIMEOUT)


class GatewayError(AppError):
    """Gateway rejected or failed the initialization call."""

    def __init__(self, message: str = "Payment gateway error"):
        super().__init__(message, "gateway_error", status.HTTP_502_BAD_GATEWAY)


def error_response(error: AppError) -> Dict[str, Any]:
    """Create a standardized error response."""
    body = {"code": error.code, "message": error.message}
    body.update(error.details())
    return {"error": body}


def raise_app_error(error: AppError) -> None:
    """Raise an HTTPException from an AppError."""
    raise HTTPException(
        status_code=error.http_status,
        detail=error_response(error),
    )


__all__ = [
    "AppError",
    "NotFound",
    "InvalidStateTransition",
    "MissingSignature",
    "SignatureMismatch",
    "MalformedPayload",
    "ReconciliationConflict",
    "LimitExceeded",
    "DowngradeExceedsUsage",
    "AlreadySubscribed",
    "GatewayTimeout",
    "GatewayError",
    "error_response",
    "raise_app_error",
]
