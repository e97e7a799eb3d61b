"""
Error kinds shared by every service.

Each service exception carries a message, a machine-readable kind and
optional details. Routes return them as {"error", "kind", "details"} with
the HTTP status mapped from the kind.
"""

from __future__ import annotations


class ErrorKind:
    """Error kind codes returned in the "kind" field of JSON error bodies."""
    VALIDATION = "VALIDATION"
    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    CONFLICT = "CONFLICT"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    INVALID_COUPON = "INVALID_COUPON"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    RETURN_WINDOW_EXPIRED = "RETURN_WINDOW_EXPIRED"
    PAYMENT_VERIFICATION_FAILED = "PAYMENT_VERIFICATION_FAILED"
    GATEWAY_ERROR = "GATEWAY_ERROR"


HTTP_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.OUT_OF_STOCK: 400,
    ErrorKind.INVALID_COUPON: 400,
    ErrorKind.INVALID_TRANSITION: 400,
    ErrorKind.RETURN_WINDOW_EXPIRED: 400,
    ErrorKind.PAYMENT_VERIFICATION_FAILED: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.GATEWAY_ERROR: 502,
}


class StorefrontError(Exception):
    """Base class for service errors that map onto an HTTP response."""

    default_kind = ErrorKind.VALIDATION

    def __init__(self, message: str, kind: str | None = None, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind
        self.details = details or {}

    @property
    def http_status(self) -> int:
        return HTTP_STATUS_BY_KIND.get(self.kind, 400)

    def to_dict(self) -> dict:
        body = {"error": self.message, "kind": self.kind}
        if self.details:
            body["details"] = self.details
        return body
