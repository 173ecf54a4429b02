"""
Custom domain exceptions for consistent error handling.

These exceptions are mapped to HTTP status codes by the global exception handler
in main.py.

VerificationError and InvariantViolation are raised inside the service layer
and are converted there (to a failed verification result, or to the existing
row); they are not expected to reach a client.
"""
from fastapi import HTTPException, status


class DomainError(HTTPException):
    """Base class for all domain-specific errors."""
    def __init__(self, message: str, status_code: int = status.HTTP_400_BAD_REQUEST, details: dict | None = None):
        super().__init__(status_code=status_code, detail=message)
        self.message = message
        self.details = details or {}


class NotFoundError(DomainError):
    """Resource not found (404)."""
    def __init__(self, resource_type: str, identifier: str, details: dict | None = None):
        message = f"{resource_type} not found: {identifier}"
        super().__init__(message, status_code=status.HTTP_404_NOT_FOUND, details=details)


class ValidationError(DomainError):
    """Validation error (400)."""
    def __init__(self, message: str, field: str | None = None, details: dict | None = None):
        if field:
            message = f"Validation error on {field}: {message}"
        super().__init__(message, status_code=status.HTTP_400_BAD_REQUEST, details=details)


class AuthorizationError(DomainError):
    """Caller is authenticated but not allowed to act on the resource (403)."""
    def __init__(self, message: str = "Permission denied", details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_403_FORBIDDEN, details=details)


class UnauthorizedError(DomainError):
    """Unauthorized access (401)."""
    def __init__(self, message: str = "Unauthorized", details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_401_UNAUTHORIZED, details=details)


class ConflictError(DomainError):
    """Resource conflict (409)."""
    def __init__(self, message: str, details: dict | None = None, status_code: int = status.HTTP_409_CONFLICT):
        super().__init__(message, status_code=status_code, details=details)


class GatewayError(DomainError):
    """Payment gateway unreachable or returned an error. Retryable (502)."""
    def __init__(self, message: str, details: dict | None = None, status_code: int = status.HTTP_502_BAD_GATEWAY):
        super().__init__(message, status_code=status_code, details=details)


class VerificationError(DomainError):
    """Inbound gateway payload failed signature or shape checks."""
    def __init__(self, message: str = "Invalid gateway signature", details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_400_BAD_REQUEST, details=details)


class InvariantViolation(DomainError):
    """A store-level uniqueness/consistency rule was hit by a racing writer."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_409_CONFLICT, details=details)


# ── Specific checkout errors ────────────────────────────────────────


class FreeCourseError(ValidationError):
    def __init__(self, course_id: int):
        super().__init__(
            "Course is free; enroll directly instead of creating an order",
            details={"courseId": course_id},
        )


class CourseUnavailableError(ValidationError):
    def __init__(self, course_id: int, course_status: str):
        super().__init__(
            f"Course is not available for purchase (status {course_status})",
            details={"courseId": course_id, "status": course_status},
        )


class UnsupportedGatewayError(ValidationError):
    def __init__(self, gateway: str):
        super().__init__(
            f"Unsupported payment gateway: {gateway}",
            field="paymentGateway",
            details={"gateway": gateway},
        )


class GatewayMismatchError(ValidationError):
    """Requested gateway differs from the one stored on the order."""
    def __init__(self, expected: str, requested: str):
        super().__init__(
            f"Order must be paid via {expected}, not {requested}",
            details={"expected": expected, "requested": requested},
        )


class InvalidCouponError(ValidationError):
    def __init__(self, code: str, reason: str):
        super().__init__(
            f"Coupon {code} cannot be applied: {reason}",
            field="couponCode",
            details={"couponCode": code, "reason": reason},
        )


class AlreadyEnrolledError(ConflictError):
    def __init__(self, course_id: int):
        super().__init__(
            "You are already enrolled in this course",
            details={"courseId": course_id},
        )


class AlreadyPaidError(ConflictError):
    def __init__(self, order_code: str):
        super().__init__(
            f"Order {order_code} has already been paid",
            details={"orderCode": order_code},
        )


class InvalidOrderStateError(ConflictError):
    """Operation not allowed in the order's current state (answered as 400)."""
    def __init__(self, order_code: str, current_status: str, action: str):
        super().__init__(
            f"Cannot {action} order {order_code} in status {current_status}",
            details={"orderCode": order_code, "status": current_status},
            status_code=status.HTTP_400_BAD_REQUEST,
        )


class GatewayConfigError(GatewayError):
    """Gateway credentials are missing from configuration (503)."""
    def __init__(self, gateway: str, missing: list[str]):
        super().__init__(
            f"{gateway} gateway is not configured",
            details={"gateway": gateway, "missing": missing},
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        )
