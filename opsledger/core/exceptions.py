"""
Application error hierarchy.

Every error carries an HTTP status and a stable machine-readable code, and is
rendered by the exception handler in opsledger.main as:

    {"success": false, "error": {"code", "message", "timestamp", "details"?, "fields"?}}

Services raise these before mutating anything whenever the failure is a
validation or state problem.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


class AppError(Exception):
    """Base class for all operational errors."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[str] = None,
        details: Any = None,
    ):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.details = details
        self.timestamp = datetime.now(timezone.utc).isoformat()
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.details is not None:
            error["details"] = self.details
        return {"success": False, "error": error}


class BadRequestError(AppError):
    status_code = 400
    code = "BAD_REQUEST"

    def __init__(self, message: str = "Bad request"):
        super().__init__(message)


class ValidationError(AppError):
    """
    Input validation failure.

    ``details`` is a list of ``{"field": ..., "message": ...}`` entries so a
    caller can report every violation at once.
    """

    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, details: Optional[List[Dict[str, str]]] = None):
        super().__init__(message, details=details or [])

    @property
    def fields(self) -> Dict[str, List[str]]:
        fields: Dict[str, List[str]] = {}
        for detail in self.details:
            fields.setdefault(detail.get("field") or "general", []).append(detail["message"])
        return fields

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["error"]["fields"] = self.fields
        return body


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource"):
        self.resource = resource
        super().__init__(f"{resource} not found")


class ConflictError(AppError):
    """Concurrent modification or duplicate resource."""

    status_code = 409
    code = "CONFLICT_ERROR"

    def __init__(self, message: str = "Resource conflict"):
        super().__init__(message)


class InsufficientStockError(AppError):
    status_code = 409
    code = "INSUFFICIENT_STOCK"

    def __init__(self, sku: str, requested: int, available: int):
        self.sku = sku
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for {sku}. Requested: {requested}, Available: {available}",
            details={"sku": sku, "requested": requested, "available": available},
        )


class InvalidStateTransitionError(AppError):
    status_code = 400
    code = "INVALID_STATE_TRANSITION"

    def __init__(self, current_status: str, requested_status: str, message: Optional[str] = None):
        self.current_status = current_status
        self.requested_status = requested_status
        super().__init__(
            message or f"Cannot transition from '{current_status}' to '{requested_status}'",
            details={"current_status": current_status, "requested_status": requested_status},
        )


class DatabaseError(AppError):
    status_code = 500
    code = "DATABASE_ERROR"

    def __init__(self, message: str = "Database operation failed", original: Optional[Exception] = None):
        self.original = original
        super().__init__(message)
