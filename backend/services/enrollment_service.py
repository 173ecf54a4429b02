"""
Enrollment service — access grants for courses.

Two paths converge on the (user_id, course_id) unique constraint:
    - Paid: the payment orchestrator calls activate_for_order() inside its
      confirmation transaction.
    - Free: enroll_in_course() creates an ACTIVE enrollment directly.

A racing insert that loses on the unique constraint is resolved to the row
that won; it is never surfaced as an error.
"""
import logging

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from db_models import Course, Enrollment, Order, utcnow
from domain.enums import CourseStatus, EnrollmentStatus
from domain.errors import (
    AlreadyEnrolledError,
    CourseUnavailableError,
    InvariantViolation,
    NotFoundError,
    ValidationError,
)
from services import notification_service, order_service, progress_service

logger = logging.getLogger(__name__)

ACCESS_STATUSES = (EnrollmentStatus.ACTIVE.value, EnrollmentStatus.COMPLETED.value)


async def get_enrollment(db: AsyncSession, *, user_id: int, course_id: int) -> Enrollment | None:
    res = await db.execute(
        select(Enrollment).where(
            Enrollment.user_id == user_id,
            Enrollment.course_id == course_id,
        )
    )
    return res.scalar_one_or_none()


async def has_access(db: AsyncSession, *, user_id: int, course_id: int) -> bool:
    enrollment = await get_enrollment(db, user_id=user_id, course_id=course_id)
    return bool(enrollment and enrollment.status in ACCESS_STATUSES)


async def _insert_enrollment(
    db: AsyncSession, *, user_id: int, course_id: int, order_id: int | None
) -> Enrollment:
    """Insert inside a SAVEPOINT. Raises InvariantViolation on a duplicate pair."""
    try:
        async with db.begin_nested():
            enrollment = Enrollment(
                user_id=user_id,
                course_id=course_id,
                order_id=order_id,
                status=EnrollmentStatus.ACTIVE.value,
                enrolled_at=utcnow(),
            )
            db.add(enrollment)
            await db.flush()
    except IntegrityError:
        raise InvariantViolation(
            "Enrollment already exists for user and course",
            details={"userId": user_id, "courseId": course_id},
        )
    return enrollment


async def _increment_enrolled_count(db: AsyncSession, course_id: int) -> None:
    await db.execute(
        update(Course)
        .where(Course.id == course_id)
        .values(enrolled_count=Course.enrolled_count + 1)
    )


async def _create_or_resolve(
    db: AsyncSession,
    *,
    user_id: int,
    course_id: int,
    order_id: int | None,
    reactivate: bool = True,
) -> tuple[Enrollment, bool]:
    """
    Create the enrollment, or return the existing one. (enrollment, created).

    A DROPPED row is re-activated only when `reactivate` is set.
    """
    existing = await get_enrollment(db, user_id=user_id, course_id=course_id)
    if existing is not None:
        if reactivate and existing.status == EnrollmentStatus.DROPPED.value:
            existing.status = EnrollmentStatus.ACTIVE.value
            existing.order_id = order_id or existing.order_id
            existing.enrolled_at = utcnow()
            await db.flush()
            logger.info(f"Re-activated dropped enrollment {existing.id}")
        return existing, False

    try:
        enrollment = await _insert_enrollment(db, user_id=user_id, course_id=course_id, order_id=order_id)
    except InvariantViolation:
        winner = await get_enrollment(db, user_id=user_id, course_id=course_id)
        if winner is None:
            raise
        logger.info(f"Enrollment race resolved to existing row {winner.id}")
        return winner, False

    await _increment_enrolled_count(db, course_id)
    return enrollment, True


async def activate_for_order(
    db: AsyncSession, order: Order, *, reactivate: bool = True
) -> tuple[Enrollment, bool]:
    """
    Grant access for a PAID order. Idempotent.

    Runs inside the caller's transaction; the caller commits. With
    reactivate=False an existing DROPPED enrollment is left untouched.
    """
    enrollment, created = await _create_or_resolve(
        db,
        user_id=order.user_id,
        course_id=order.course_id,
        order_id=order.id,
        reactivate=reactivate,
    )
    if created:
        logger.info(f"✅ Enrollment {enrollment.id} created for order {order.order_code}")
    return enrollment, created


async def enroll_in_course(
    db: AsyncSession,
    *,
    user_id: int,
    course_id: int,
    gateway: str | None = None,
    billing_address: dict | None = None,
    coupon_code: str | None = None,
) -> dict:
    """
    Enroll a user in a course.

    Free course → ACTIVE enrollment immediately.
    Paid course → a PENDING order is created (payment required).
    """
    course = await db.get(Course, course_id)
    if not course:
        raise NotFoundError("Course", str(course_id))
    if course.status != CourseStatus.PUBLISHED.value:
        raise CourseUnavailableError(course.id, course.status)

    if await has_access(db, user_id=user_id, course_id=course_id):
        raise AlreadyEnrolledError(course_id)

    prices = order_service.calculate_prices(course)
    if prices["final_price"] > 0:
        if not gateway:
            raise ValidationError("Payment gateway is required for paid courses", field="paymentGateway")
        order = await order_service.create_order(
            db,
            user_id=user_id,
            course_id=course_id,
            gateway=gateway,
            billing_address=billing_address,
            coupon_code=coupon_code,
        )
        return {"requiresPayment": True, "order": order, "enrollment": None}

    enrollment, created = await _create_or_resolve(db, user_id=user_id, course_id=course_id, order_id=None)
    if created:
        await progress_service.initialize_progress(db, enrollment)
        notification_service.notify_enrollment_success(
            db, user_id=user_id, course_id=course_id, course_title=course.title
        )
        await db.flush()
        logger.info(f"✅ Free enrollment {enrollment.id}: user {user_id} → course {course_id}")
    return {"requiresPayment": False, "order": None, "enrollment": enrollment}


async def list_user_enrollments(
    db: AsyncSession,
    *,
    user_id: int,
    status: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Enrollment], int]:
    query = select(Enrollment).where(Enrollment.user_id == user_id)
    if status:
        query = query.where(Enrollment.status == status.upper())

    total = (await db.execute(select(func.count()).select_from(query.subquery()))).scalar_one()
    res = await db.execute(
        query.order_by(Enrollment.enrolled_at.desc(), Enrollment.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(res.scalars().all()), total
