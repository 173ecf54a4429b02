"""
Coupon service — discount codes on course orders.

Handles:
    1. Validation at order creation (dates, usage limits, audience, minimum, course)
    2. Discount calculation (PERCENT / FIXED / NEW_USER)
    3. Consumption when the order becomes PAID, inside the confirmation transaction

PENDING orders carrying a code reserve capacity, so a coupon close to
max_uses is not oversold by concurrent checkouts. uses_count itself only
moves through a conditional UPDATE when a payment is confirmed.
"""
import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from db_models import Coupon, CouponUsage, Order, utcnow
from domain.enums import CouponType, PaymentStatus
from domain.errors import InvalidCouponError

logger = logging.getLogger(__name__)


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


async def get_coupon(db: AsyncSession, code: str) -> Coupon | None:
    res = await db.execute(select(Coupon).where(Coupon.code == normalize_code(code)))
    return res.scalar_one_or_none()


async def _usage_count(db: AsyncSession, coupon_id: int, user_id: int | None = None) -> int:
    query = select(func.count(CouponUsage.id)).where(CouponUsage.coupon_id == coupon_id)
    if user_id is not None:
        query = query.where(CouponUsage.user_id == user_id)
    return (await db.execute(query)).scalar_one()


async def validate_coupon(
    db: AsyncSession,
    *,
    code: str,
    user_id: int,
    order_total: Decimal,
    course_id: int,
    now: datetime | None = None,
) -> Coupon:
    """
    Check that `code` can be applied to a course order of `order_total`.

    Raises InvalidCouponError with the first failing rule. Nothing is
    written; consumption happens in apply_coupon_on_success().
    """
    code = normalize_code(code)
    coupon = await get_coupon(db, code)
    if coupon is None:
        raise InvalidCouponError(code, "coupon does not exist")
    if not coupon.active:
        raise InvalidCouponError(code, "coupon is disabled")

    now = now or utcnow()
    if coupon.start_date and now < coupon.start_date:
        raise InvalidCouponError(code, "coupon is not valid yet")
    if coupon.end_date and now > coupon.end_date:
        raise InvalidCouponError(code, "coupon has expired")

    if coupon.max_uses:
        consumed = await _usage_count(db, coupon.id)
        if consumed >= coupon.max_uses:
            raise InvalidCouponError(code, "usage limit reached")
        pending = (await db.execute(
            select(func.count(Order.id)).where(
                Order.applied_coupon_code == coupon.code,
                Order.payment_status == PaymentStatus.PENDING.value,
            )
        )).scalar_one()
        if consumed + pending >= coupon.max_uses:
            raise InvalidCouponError(code, "coupon is temporarily held by pending orders")

    if coupon.type == CouponType.NEW_USER.value:
        paid_orders = (await db.execute(
            select(func.count(Order.id)).where(
                Order.user_id == user_id,
                Order.payment_status == PaymentStatus.PAID.value,
            )
        )).scalar_one()
        if paid_orders:
            raise InvalidCouponError(code, "coupon is for new customers only")

    if coupon.max_uses_per_user:
        if await _usage_count(db, coupon.id, user_id) >= coupon.max_uses_per_user:
            raise InvalidCouponError(code, "per-user usage limit reached")

    if coupon.min_order_value is not None and Decimal(order_total) < Decimal(coupon.min_order_value):
        raise InvalidCouponError(code, f"minimum order value is {coupon.min_order_value}")

    if coupon.applicable_course_ids and course_id not in coupon.applicable_course_ids:
        raise InvalidCouponError(code, "coupon does not apply to this course")

    return coupon


def calculate_discount(coupon: Coupon, order_total: Decimal) -> Decimal:
    """Discount in whole VND, never more than the order total."""
    total = Decimal(order_total)
    value = Decimal(coupon.value)

    if coupon.type == CouponType.PERCENT.value:
        discount = total * value / Decimal("100")
        if coupon.max_discount is not None:
            discount = min(discount, Decimal(coupon.max_discount))
    else:
        discount = value

    discount = discount.quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return max(Decimal("0"), min(discount, total))


async def apply_coupon_on_success(db: AsyncSession, order: Order) -> CouponUsage | None:
    """
    Consume the order's coupon. Runs inside the confirmation transaction.

    Returns None when the order has no coupon, or when the coupon can no
    longer be consumed (disabled, limit reached meanwhile). The payment is
    confirmed either way; the gateway has already charged the discounted
    amount.
    """
    if not order.applied_coupon_code or Decimal(order.coupon_discount or 0) <= 0:
        return None

    coupon = await get_coupon(db, order.applied_coupon_code)
    if coupon is None or not coupon.active:
        logger.warning(f"  ⚠️  Coupon {order.applied_coupon_code} unavailable for paid order {order.order_code}")
        return None

    if coupon.max_uses_per_user and await _usage_count(db, coupon.id, order.user_id) >= coupon.max_uses_per_user:
        logger.warning(f"  ⚠️  Coupon {coupon.code} per-user limit hit by paid order {order.order_code}")
        return None

    claimed = await db.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon.id,
            Coupon.active.is_(True),
            or_(Coupon.max_uses.is_(None), Coupon.uses_count < Coupon.max_uses),
        )
        .values(uses_count=Coupon.uses_count + 1)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        logger.warning(f"  ⚠️  Coupon {coupon.code} exhausted before order {order.order_code} was paid")
        return None

    usage = CouponUsage(
        coupon_id=coupon.id,
        user_id=order.user_id,
        order_id=order.id,
        amount_reduced=order.coupon_discount,
        used_at=utcnow(),
    )
    db.add(usage)
    await db.flush()
    logger.info(f"  🎟️  Coupon {coupon.code} consumed by order {order.order_code}")
    return usage
