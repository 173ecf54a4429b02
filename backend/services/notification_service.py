"""
Notification service — in-app notification outbox.

Every helper only adds a row to the caller's session, so the notification
commits (or rolls back) together with the event that raised it.
"""
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db_models import Notification, Order
from domain.enums import NotificationType
from domain.errors import NotFoundError


def _add(
    db: AsyncSession,
    *,
    user_id: int,
    type: NotificationType,
    title: str,
    message: str,
    order_id: int | None = None,
    course_id: int | None = None,
) -> Notification:
    notification = Notification(
        user_id=user_id,
        type=type.value,
        title=title,
        message=message,
        order_id=order_id,
        course_id=course_id,
    )
    db.add(notification)
    return notification


def notify_payment_success(db: AsyncSession, order: Order, course_title: str | None = None) -> Notification:
    return _add(
        db,
        user_id=order.user_id,
        type=NotificationType.PAYMENT_SUCCESS,
        title="Payment successful",
        message=f"Payment for order {order.order_code} ({course_title or 'course'}) was confirmed.",
        order_id=order.id,
        course_id=order.course_id,
    )


def notify_instructor_payment_received(
    db: AsyncSession,
    order: Order,
    *,
    instructor_id: int,
    course_title: str | None = None,
    buyer_name: str | None = None,
) -> Notification:
    return _add(
        db,
        user_id=instructor_id,
        type=NotificationType.PAYMENT_RECEIVED,
        title="New course sale",
        message=(
            f"{buyer_name or 'A student'} bought {course_title or 'your course'} "
            f"for {order.final_price} VND (order {order.order_code})."
        ),
        order_id=order.id,
        course_id=order.course_id,
    )


def notify_payment_failed(db: AsyncSession, order: Order, reason: str | None = None) -> Notification:
    return _add(
        db,
        user_id=order.user_id,
        type=NotificationType.PAYMENT_FAILED,
        title="Payment failed",
        message=f"Payment for order {order.order_code} failed. {reason or ''}".strip(),
        order_id=order.id,
        course_id=order.course_id,
    )


def notify_order_cancelled(db: AsyncSession, order: Order) -> Notification:
    return _add(
        db,
        user_id=order.user_id,
        type=NotificationType.ORDER_CANCELLED,
        title="Order cancelled",
        message=f"Order {order.order_code} was cancelled.",
        order_id=order.id,
        course_id=order.course_id,
    )


def notify_enrollment_success(
    db: AsyncSession,
    *,
    user_id: int,
    course_id: int,
    course_title: str | None = None,
) -> Notification:
    return _add(
        db,
        user_id=user_id,
        type=NotificationType.ENROLLMENT_SUCCESS,
        title="Enrollment confirmed",
        message=f"You now have access to {course_title or 'your new course'}.",
        course_id=course_id,
    )


def notify_course_completed(
    db: AsyncSession,
    *,
    user_id: int,
    course_id: int,
    course_title: str | None = None,
) -> Notification:
    return _add(
        db,
        user_id=user_id,
        type=NotificationType.COURSE_COMPLETED,
        title="Course completed",
        message=f"Congratulations! You completed {course_title or 'the course'}.",
        course_id=course_id,
    )


def notify_refund_processed(db: AsyncSession, order: Order, amount: Decimal) -> Notification:
    return _add(
        db,
        user_id=order.user_id,
        type=NotificationType.REFUND_PROCESSED,
        title="Refund processed",
        message=f"A refund of {amount} VND was issued for order {order.order_code}.",
        order_id=order.id,
        course_id=order.course_id,
    )


async def list_user_notifications(
    db: AsyncSession,
    *,
    user_id: int,
    page: int = 1,
    limit: int = 20,
    unread_only: bool = False,
) -> tuple[list[Notification], int]:
    query = select(Notification).where(Notification.user_id == user_id)
    if unread_only:
        query = query.where(Notification.is_read.is_(False))

    total = (await db.execute(
        select(func.count()).select_from(query.subquery())
    )).scalar_one()

    res = await db.execute(
        query.order_by(Notification.created_at.desc(), Notification.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(res.scalars().all()), total


async def mark_as_read(db: AsyncSession, *, user_id: int, notification_id: int) -> Notification:
    notification = await db.get(Notification, notification_id)
    if not notification or notification.user_id != user_id:
        raise NotFoundError("Notification", str(notification_id))
    notification.is_read = True
    await db.flush()
    return notification
