"""
Domain enums shared by models, services and routers.

Values are stored as plain strings in the database; compare against
`Enum.value` (or the member itself, since these are `str` enums).
"""

from enum import Enum


class UserRole(str, Enum):
    STUDENT = "student"
    INSTRUCTOR = "instructor"
    ADMIN = "admin"


class CouponType(str, Enum):
    PERCENT = "PERCENT"
    FIXED = "FIXED"
    NEW_USER = "NEW_USER"


class CourseStatus(str, Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"


class PaymentGateway(str, Enum):
    VNPAY = "VNPAY"
    MOMO = "MOMO"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"    # checkout attempt issued, not yet settled
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class EnrollmentStatus(str, Enum):
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    DROPPED = "DROPPED"


class NotificationType(str, Enum):
    PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"  # to the course instructor
    ENROLLMENT_SUCCESS = "ENROLLMENT_SUCCESS"
    COURSE_COMPLETED = "COURSE_COMPLETED"
    REFUND_PROCESSED = "REFUND_PROCESSED"


class ConfirmationSource(str, Enum):
    """Where a payment confirmation came from."""
    CALLBACK = "callback"  # browser redirect, informational
    WEBHOOK = "webhook"    # server-to-server IPN, authoritative
