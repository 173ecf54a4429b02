"""
Order service — course purchase orders.

Handles:
    1. Price snapshot (original / discount / final) from the course, plus an
       optional coupon folded into the discount
    2. Order creation with double-click protection (young PENDING order reuse)
    3. User cancellation (conditional PENDING → FAILED)
    4. History, lookup and per-user stats

Prices are snapshotted on the order at creation; later catalog edits never
change an existing order.
"""
import logging
import secrets
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from db_models import Course, Enrollment, Order, PaymentTransaction, utcnow
from domain.constants import (
    ORDER_CODE_MAX_ATTEMPTS,
    ORDER_CODE_PREFIX,
    REASON_CANCELLED_BY_USER,
    REASON_ORDER_EXPIRED,
)
from domain.enums import CourseStatus, EnrollmentStatus, PaymentStatus, TransactionStatus
from domain.errors import (
    AlreadyEnrolledError,
    AuthorizationError,
    ConflictError,
    CourseUnavailableError,
    FreeCourseError,
    InvalidCouponError,
    InvalidOrderStateError,
    NotFoundError,
)
from services import coupon_service, notification_service
from services.gateways import parse_gateway

logger = logging.getLogger(__name__)

SORT_OPTIONS = {
    "newest": (Order.created_at.desc(), Order.id.desc()),
    "oldest": (Order.created_at.asc(), Order.id.asc()),
    "amount_desc": (Order.final_price.desc(), Order.id.desc()),
    "amount_asc": (Order.final_price.asc(), Order.id.asc()),
}


# ════════════════════════════════════════════════════════════════════
# Pricing & Codes
# ════════════════════════════════════════════════════════════════════


def calculate_prices(course: Course) -> dict[str, Decimal]:
    """
    Snapshot prices from a course.

    final = discount_price when set and not above price, else price.
    discount = original - final (never negative).
    """
    original = Decimal(course.price or 0)
    discount_price = course.discount_price
    if discount_price is not None and Decimal(discount_price) <= original:
        final = Decimal(discount_price)
    else:
        final = original
    discount = max(Decimal("0"), original - final)
    return {
        "original_price": original,
        "discount_amount": discount,
        "final_price": original - discount,
    }


def generate_order_code(now: datetime | None = None) -> str:
    """ORD-YYYYMMDD-HHMMSS-NNNN"""
    now = now or utcnow()
    return f"{ORDER_CODE_PREFIX}-{now:%Y%m%d-%H%M%S}-{secrets.randbelow(10_000):04d}"


async def _allocate_order_code(db: AsyncSession) -> str:
    for _ in range(ORDER_CODE_MAX_ATTEMPTS):
        code = generate_order_code()
        taken = await db.execute(select(Order.id).where(Order.order_code == code))
        if taken.scalar_one_or_none() is None:
            return code
    raise ConflictError("Could not allocate a unique order code, please retry")


# ════════════════════════════════════════════════════════════════════
# Transitions
# ════════════════════════════════════════════════════════════════════


async def transition_pending(
    db: AsyncSession,
    order: Order,
    new_status: PaymentStatus,
    *,
    paid_at: datetime | None = None,
    note: str | None = None,
) -> bool:
    """
    Conditionally move an order out of PENDING.

    Returns False when another writer already moved it (row count 0).
    """
    values = {"payment_status": new_status.value, "updated_at": utcnow()}
    if paid_at is not None:
        values["paid_at"] = paid_at
    if note is not None:
        values["notes"] = note
    result = await db.execute(
        update(Order)
        .where(Order.id == order.id, Order.payment_status == PaymentStatus.PENDING.value)
        .values(**values)
    )
    if result.rowcount != 1:
        return False
    # Keep the loaded instance in step with the row
    for key, value in values.items():
        setattr(order, key, value)
    return True


async def fail_pending_attempts(
    db: AsyncSession,
    order_id: int,
    reason: str,
    *,
    exclude_ids: tuple[int, ...] = (),
) -> int:
    """Mark the order's PENDING payment attempts FAILED. Returns the count."""
    query = (
        update(PaymentTransaction)
        .where(
            PaymentTransaction.order_id == order_id,
            PaymentTransaction.status == TransactionStatus.PENDING.value,
        )
        .values(
            status=TransactionStatus.FAILED.value,
            error_message=reason,
            updated_at=utcnow(),
        )
    )
    if exclude_ids:
        query = query.where(PaymentTransaction.id.notin_(exclude_ids))
    result = await db.execute(query.execution_options(synchronize_session="fetch"))
    return result.rowcount or 0


# ════════════════════════════════════════════════════════════════════
# Create / Cancel
# ════════════════════════════════════════════════════════════════════


async def create_order(
    db: AsyncSession,
    *,
    user_id: int,
    course_id: int,
    gateway: str,
    billing_address: dict | None = None,
    notes: str | None = None,
    coupon_code: str | None = None,
) -> Order:
    """
    Create a PENDING order for a paid course.

    A PENDING order for the same (user, course, gateway) younger than
    PENDING_ORDER_TIMEOUT_MINUTES is returned instead of a new one.
    Older PENDING orders for the pair are expired first.

    A coupon that fails validation is logged and skipped; the order is
    created without it (applied_coupon_code stays null).
    """
    payment_gateway = parse_gateway(gateway)

    course = await db.get(Course, course_id)
    if not course:
        raise NotFoundError("Course", str(course_id))
    if course.status != CourseStatus.PUBLISHED.value:
        raise CourseUnavailableError(course.id, course.status)

    prices = calculate_prices(course)
    if prices["final_price"] <= 0:
        raise FreeCourseError(course.id)

    enrolled = await db.execute(
        select(Enrollment.id).where(
            Enrollment.user_id == user_id,
            Enrollment.course_id == course_id,
            Enrollment.status.in_([EnrollmentStatus.ACTIVE.value, EnrollmentStatus.COMPLETED.value]),
        )
    )
    if enrolled.scalar_one_or_none() is not None:
        raise AlreadyEnrolledError(course_id)

    # ── Reuse / expire existing PENDING orders for the pair ─────────
    pending_res = await db.execute(
        select(Order)
        .where(
            Order.user_id == user_id,
            Order.course_id == course_id,
            Order.payment_status == PaymentStatus.PENDING.value,
        )
        .order_by(Order.created_at.desc(), Order.id.desc())
    )
    cutoff = utcnow() - timedelta(minutes=settings.pending_order_timeout_minutes)
    for pending in pending_res.scalars().all():
        if pending.created_at and pending.created_at >= cutoff:
            if pending.payment_gateway == payment_gateway.value:
                logger.info(f"  ♻️  Reusing pending order {pending.order_code} for user {user_id}")
                return pending
            continue
        if await transition_pending(db, pending, PaymentStatus.FAILED, note=REASON_ORDER_EXPIRED):
            await fail_pending_attempts(db, pending.id, REASON_ORDER_EXPIRED)
            logger.info(f"  ⌛ Expired stale pending order {pending.order_code}")

    # ── Coupon ──────────────────────────────────────────────────────
    coupon_discount = Decimal("0")
    applied_coupon_code = None
    if coupon_code:
        try:
            coupon = await coupon_service.validate_coupon(
                db,
                code=coupon_code,
                user_id=user_id,
                order_total=prices["final_price"],
                course_id=course_id,
            )
        except InvalidCouponError as exc:
            logger.warning(f"  🎟️  Coupon skipped for user {user_id}: {exc.message}")
        else:
            coupon_discount = coupon_service.calculate_discount(coupon, prices["final_price"])
            applied_coupon_code = coupon.code

    final_price = prices["final_price"] - coupon_discount
    if final_price <= 0:
        raise FreeCourseError(course.id)

    order = Order(
        user_id=user_id,
        course_id=course_id,
        order_code=await _allocate_order_code(db),
        original_price=prices["original_price"],
        discount_amount=prices["discount_amount"] + coupon_discount,
        final_price=final_price,
        applied_coupon_code=applied_coupon_code,
        coupon_discount=coupon_discount,
        refunded_amount=Decimal("0"),
        payment_gateway=payment_gateway.value,
        payment_status=PaymentStatus.PENDING.value,
        billing_address=billing_address,
        notes=notes,
        created_at=utcnow(),
    )
    db.add(order)
    await db.flush()

    logger.info(
        f"  🧾 Order created: {order.order_code} "
        f"(user {user_id} → course {course_id}, {order.final_price} VND via {payment_gateway.value})"
    )
    return order


async def cancel_order(db: AsyncSession, *, order_id: int, user_id: int) -> Order:
    """Cancel a PENDING order owned by the user (PENDING → FAILED)."""
    order = await db.get(Order, order_id)
    if not order:
        raise NotFoundError("Order", str(order_id))
    if order.user_id != user_id:
        raise AuthorizationError("You can only cancel your own orders")
    if order.payment_status != PaymentStatus.PENDING.value:
        raise InvalidOrderStateError(order.order_code, order.payment_status, "cancel")

    if not await transition_pending(db, order, PaymentStatus.FAILED, note=REASON_CANCELLED_BY_USER):
        # A confirmation committed between our read and the update
        await db.refresh(order)
        raise InvalidOrderStateError(order.order_code, order.payment_status, "cancel")

    await fail_pending_attempts(db, order.id, REASON_CANCELLED_BY_USER)
    notification_service.notify_order_cancelled(db, order)
    await db.flush()

    logger.info(f"  🚫 Order {order.order_code} cancelled by user {user_id}")
    return order


# ════════════════════════════════════════════════════════════════════
# Queries
# ════════════════════════════════════════════════════════════════════


async def get_order(db: AsyncSession, *, order_id: int, user_id: int, is_admin: bool = False) -> Order:
    order = await db.get(Order, order_id)
    if not order:
        raise NotFoundError("Order", str(order_id))
    if order.user_id != user_id and not is_admin:
        raise AuthorizationError("You do not have access to this order")
    return order


async def get_order_by_code(
    db: AsyncSession, *, order_code: str, user_id: int, is_admin: bool = False
) -> Order:
    res = await db.execute(select(Order).where(Order.order_code == order_code))
    order = res.scalar_one_or_none()
    if not order:
        raise NotFoundError("Order", order_code)
    if order.user_id != user_id and not is_admin:
        raise AuthorizationError("You do not have access to this order")
    return order


async def list_order_transactions(db: AsyncSession, order_id: int) -> list[PaymentTransaction]:
    res = await db.execute(
        select(PaymentTransaction)
        .where(PaymentTransaction.order_id == order_id)
        .order_by(PaymentTransaction.created_at.asc(), PaymentTransaction.id.asc())
    )
    return list(res.scalars().all())


async def list_user_orders(
    db: AsyncSession,
    *,
    user_id: int,
    page: int = 1,
    limit: int = 20,
    payment_status: str | None = None,
    payment_gateway: str | None = None,
    sort: str = "newest",
) -> tuple[list[Order], int]:
    query = select(Order).where(Order.user_id == user_id)
    if payment_status:
        query = query.where(Order.payment_status == payment_status.upper())
    if payment_gateway:
        query = query.where(Order.payment_gateway == parse_gateway(payment_gateway).value)

    total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar_one()
    res = await db.execute(
        query.order_by(*SORT_OPTIONS.get(sort, SORT_OPTIONS["newest"]))
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(res.scalars().all()), total


async def get_order_stats(db: AsyncSession, *, user_id: int) -> dict:
    """{total, paid, pending, failed, totalSpent} for a user. totalSpent is a Decimal."""
    res = await db.execute(
        select(Order.payment_status, func.count(Order.id))
        .where(Order.user_id == user_id)
        .group_by(Order.payment_status)
    )
    counts = {status: count for status, count in res.all()}

    paid_res = await db.execute(
        select(Order.final_price).where(
            Order.user_id == user_id,
            Order.payment_status == PaymentStatus.PAID.value,
        )
    )
    total_spent = sum((Decimal(p) for p in paid_res.scalars().all()), Decimal("0"))

    return {
        "total": sum(counts.values()),
        "paid": counts.get(PaymentStatus.PAID.value, 0),
        "pending": counts.get(PaymentStatus.PENDING.value, 0),
        "failed": counts.get(PaymentStatus.FAILED.value, 0),
        "totalSpent": total_spent,
    }
