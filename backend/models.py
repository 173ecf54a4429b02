"""
Pydantic models for request/response validation.

Response models read straight from ORM rows (from_attributes) and dump with
camelCase aliases. Decimal amounts serialize as strings in JSON mode.
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Optional
from datetime import datetime
from decimal import Decimal


class APIBase(BaseModel):
    """Shared base — allows construction by Python name or alias."""
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


def dump(model_cls: type[BaseModel], obj: Any) -> dict:
    """ORM row → JSON-ready dict with camelCase keys."""
    return model_cls.model_validate(obj).model_dump(by_alias=True, mode="json")


# ── Order Models ────────────────────────────────────────────────────

class CreateOrderRequest(APIBase):
    """Request model for creating an order."""
    course_id: int = Field(..., alias="courseId", gt=0)
    payment_gateway: str = Field(..., alias="paymentGateway", min_length=1, max_length=20)
    billing_address: Optional[dict[str, Any]] = Field(default=None, alias="billingAddress")
    coupon_code: Optional[str] = Field(default=None, alias="couponCode", max_length=50)
    notes: Optional[str] = Field(default=None, max_length=1000)


class OrderResponse(APIBase):
    id: int
    order_code: str = Field(..., alias="orderCode")
    user_id: int = Field(..., alias="userId")
    course_id: int = Field(..., alias="courseId")
    original_price: Decimal = Field(..., alias="originalPrice")
    discount_amount: Decimal = Field(..., alias="discountAmount")
    final_price: Decimal = Field(..., alias="finalPrice")
    applied_coupon_code: Optional[str] = Field(default=None, alias="appliedCouponCode")
    coupon_discount: Decimal = Field(default=Decimal("0"), alias="couponDiscount")
    refunded_amount: Decimal = Field(default=Decimal("0"), alias="refundedAmount")
    payment_gateway: str = Field(..., alias="paymentGateway")
    payment_status: str = Field(..., alias="paymentStatus")
    billing_address: Optional[dict[str, Any]] = Field(default=None, alias="billingAddress")
    notes: Optional[str] = None
    paid_at: Optional[datetime] = Field(default=None, alias="paidAt")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")


class TransactionResponse(APIBase):
    id: int
    order_id: int = Field(..., alias="orderId")
    transaction_id: str = Field(..., alias="transactionId")
    payment_gateway: str = Field(..., alias="paymentGateway")
    amount: Decimal
    currency: str
    status: str
    error_message: Optional[str] = Field(default=None, alias="errorMessage")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")


# ── Coupon Models ───────────────────────────────────────────────────

class ValidateCouponRequest(APIBase):
    course_id: int = Field(..., alias="courseId", gt=0)
    coupon_code: str = Field(..., alias="couponCode", min_length=1, max_length=50)


# ── Payment Models ──────────────────────────────────────────────────

class CreatePaymentRequest(APIBase):
    """Request model for issuing a gateway pay URL."""
    order_id: int = Field(..., alias="orderId", gt=0)


class RefundRequest(APIBase):
    """Admin refund. Amount defaults to the order's final price."""
    amount: Optional[Decimal] = None
    reason: Optional[str] = Field(default=None, max_length=500)


# ── Enrollment & Progress Models ────────────────────────────────────

class EnrollRequest(APIBase):
    course_id: int = Field(..., alias="courseId", gt=0)
    payment_gateway: Optional[str] = Field(default=None, alias="paymentGateway", max_length=20)
    billing_address: Optional[dict[str, Any]] = Field(default=None, alias="billingAddress")
    coupon_code: Optional[str] = Field(default=None, alias="couponCode", max_length=50)


class EnrollmentResponse(APIBase):
    id: int
    user_id: int = Field(..., alias="userId")
    course_id: int = Field(..., alias="courseId")
    order_id: Optional[int] = Field(default=None, alias="orderId")
    status: str
    progress_percentage: Decimal = Field(..., alias="progressPercentage")
    enrolled_at: Optional[datetime] = Field(default=None, alias="enrolledAt")
    completed_at: Optional[datetime] = Field(default=None, alias="completedAt")
    last_accessed_at: Optional[datetime] = Field(default=None, alias="lastAccessedAt")


class WatchPositionRequest(APIBase):
    position_seconds: int = Field(..., alias="positionSeconds", ge=0)


# ── Notification Models ─────────────────────────────────────────────

class NotificationResponse(APIBase):
    id: int
    type: str
    title: str
    message: str
    order_id: Optional[int] = Field(default=None, alias="orderId")
    course_id: Optional[int] = Field(default=None, alias="courseId")
    is_read: bool = Field(..., alias="isRead")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
