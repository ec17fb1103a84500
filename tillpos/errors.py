"""
Error taxonomy shared by services and routes.

Every domain failure carries a stable machine-readable ``code`` and an
optional ``details`` dict. Routes translate these into JSON bodies using
``http_status``; anything that is not a TillError is a 500.
"""
from __future__ import annotations


class TillError(Exception):
    """Base class for expected, caller-actionable failures."""

    http_status = 400
    default_code = "ERROR"

    def __init__(self, message: str, code: str | None = None, details: dict | None = None):
        super().__init__(message)
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": str(self), "code": self.code, "details": self.details}


class ValidationError(TillError, ValueError):
    """400-level input problem."""

    default_code = "VALIDATION_ERROR"


class AccessDeniedError(TillError):
    """Caller lacks the business or location scope for the operation."""

    http_status = 403
    default_code = "FORBIDDEN"


class NotFoundError(TillError):
    """Row is absent or belongs to another business."""

    http_status = 404
    default_code = "NOT_FOUND"


class InsufficientStockError(TillError):
    """Stock observed under lock is below the requested quantity."""

    http_status = 409
    default_code = "INSUFFICIENT_STOCK"
