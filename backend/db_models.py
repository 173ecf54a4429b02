"""
SQLAlchemy ORM models for the Course Checkout backend.

Tables:
    users                 — students, instructors and admins
    courses               — sellable courses (price snapshot source)
    lessons               — course lessons, used for progress tracking
    coupons               — discount codes applied at order creation
    coupon_usages         — one row per coupon consumed by a PAID order
    orders                — one purchase attempt of one course by one user
    payment_transactions  — gateway attempts, confirmations and refunds
    enrollments           — user ↔ course access, unique per pair
    lesson_progress       — per-lesson completion rows
    notifications         — in-app notification outbox

Money columns are Numeric and surface as decimal.Decimal.
"""
from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, Numeric, JSON, ForeignKey,
    UniqueConstraint, Index,
)

from database import Base
from domain.enums import (
    CouponType,
    CourseStatus,
    EnrollmentStatus,
    PaymentStatus,
    TransactionStatus,
    UserRole,
)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching how DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    """Platform users. Authentication itself lives outside this service."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(200), nullable=True)
    role = Column(String(20), nullable=False, default=UserRole.STUDENT.value)  # student | instructor | admin
    created_at = Column(DateTime, default=utcnow)


class Course(Base):
    """Courses. Only price, discount_price, status and existence matter to checkout."""
    __tablename__ = "courses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String(255), nullable=False)
    slug = Column(String(255), unique=True, nullable=False, index=True)
    instructor_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    discount_price = Column(Numeric(12, 2), nullable=True)
    status = Column(String(20), nullable=False, default=CourseStatus.DRAFT.value, index=True)
    enrolled_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Lesson(Base):
    __tablename__ = "lessons"

    id = Column(Integer, primary_key=True, autoincrement=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    duration_seconds = Column(Integer, nullable=True)
    is_published = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)


# ════════════════════════════════════════════════════════════════════
# Coupons
# ════════════════════════════════════════════════════════════════════

class Coupon(Base):
    """
    Discount code applied at order creation.

    PERCENT takes value% of the order total (capped by max_discount);
    FIXED and NEW_USER take a flat value. uses_count only moves when a
    PAID order consumes the coupon.
    """
    __tablename__ = "coupons"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code = Column(String(50), unique=True, nullable=False, index=True)
    type = Column(String(20), nullable=False, default=CouponType.FIXED.value)  # PERCENT | FIXED | NEW_USER
    value = Column(Numeric(12, 2), nullable=False)
    max_discount = Column(Numeric(12, 2), nullable=True)
    min_order_value = Column(Numeric(12, 2), nullable=True)
    max_uses = Column(Integer, nullable=True)
    max_uses_per_user = Column(Integer, nullable=True)
    uses_count = Column(Integer, nullable=False, default=0)
    applicable_course_ids = Column(JSON, nullable=True)  # null or empty = every course
    start_date = Column(DateTime, nullable=False, default=utcnow)
    end_date = Column(DateTime, nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=utcnow)


class CouponUsage(Base):
    __tablename__ = "coupon_usages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    coupon_id = Column(Integer, ForeignKey("coupons.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, unique=True)
    amount_reduced = Column(Numeric(12, 2), nullable=False)
    used_at = Column(DateTime, default=utcnow)


# ════════════════════════════════════════════════════════════════════
# Orders & Payments
# ════════════════════════════════════════════════════════════════════

class Order(Base):
    """
    A purchase of one course by one user.

    Lifecycle:
        PENDING → PAID    (verified, amount-matched gateway confirmation)
        PENDING → FAILED  (user cancel, gateway failure, expiry)
    PAID and FAILED are terminal. Refunds never change payment_status.
    """
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False, index=True)
    order_code = Column(String(40), unique=True, nullable=False, index=True)
    original_price = Column(Numeric(12, 2), nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)  # course discount + coupon
    final_price = Column(Numeric(12, 2), nullable=False)
    applied_coupon_code = Column(String(50), nullable=True, index=True)
    coupon_discount = Column(Numeric(12, 2), nullable=False, default=0)
    refunded_amount = Column(Numeric(12, 2), nullable=False, default=0)  # reserved before the gateway call
    payment_gateway = Column(String(20), nullable=False)  # VNPAY | MOMO
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value, index=True)
    billing_address = Column(JSON, nullable=True)
    notes = Column(Text, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        # Reuse/expire lookups: pending order for a (user, course) pair
        Index("ix_orders_user_course_status", "user_id", "course_id", "payment_status"),
        # Order history: filter by user, order by created_at DESC
        Index("ix_orders_user_created", "user_id", "created_at"),
    )


class PaymentTransaction(Base):
    """
    Gateway-side record for an order.

    PENDING rows are checkout attempts (pay URL issued). SUCCESS, FAILED and
    REFUNDED rows are outcomes. A SUCCESS row implies the order is PAID.
    """
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    transaction_id = Column(String(120), unique=True, nullable=False, index=True)
    payment_gateway = Column(String(20), nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(10), nullable=False, default="VND")
    status = Column(String(20), nullable=False, default=TransactionStatus.PENDING.value, index=True)
    gateway_response = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    ip_address = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_payment_txn_order_status", "order_id", "status"),
    )


# ════════════════════════════════════════════════════════════════════
# Enrollment & Progress
# ════════════════════════════════════════════════════════════════════

class Enrollment(Base):
    """Access grant. At most one row per (user, course), enforced by the DB."""
    __tablename__ = "enrollments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)  # null for free enrollment
    status = Column(String(20), nullable=False, default=EnrollmentStatus.ACTIVE.value)
    progress_percentage = Column(Numeric(5, 2), nullable=False, default=0)
    enrolled_at = Column(DateTime, default=utcnow)
    completed_at = Column(DateTime, nullable=True)
    last_accessed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("user_id", "course_id", name="uq_enrollment_user_course"),
    )


class LessonProgress(Base):
    __tablename__ = "lesson_progress"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False, index=True)
    lesson_id = Column(Integer, ForeignKey("lessons.id"), nullable=False, index=True)
    enrollment_id = Column(Integer, ForeignKey("enrollments.id"), nullable=False, index=True)
    is_completed = Column(Boolean, nullable=False, default=False)
    watch_position_seconds = Column(Integer, nullable=False, default=0)
    completed_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "lesson_id", name="uq_lesson_progress_user_lesson"),
    )


# ════════════════════════════════════════════════════════════════════
# Notifications (outbox)
# ════════════════════════════════════════════════════════════════════

class Notification(Base):
    """
    In-app notification rows, written in the same transaction as the
    event that raised them. Delivery is handled elsewhere.
    """
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String(40), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, index=True)

    __table_args__ = (
        Index("ix_notifications_user_created", "user_id", "created_at"),
    )
