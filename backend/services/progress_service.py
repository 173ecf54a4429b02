"""
Progress tracking — lesson completion and course progress percentage.

Progress = completed published lessons / all published lessons × 100,
rounded to two decimals. At 100% an ACTIVE enrollment becomes COMPLETED;
a COMPLETED enrollment never reverts.
"""
import logging
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from db_models import Course, Enrollment, Lesson, LessonProgress, utcnow
from domain.constants import COMPLETION_THRESHOLD
from domain.enums import EnrollmentStatus
from domain.errors import AuthorizationError, NotFoundError
from services import notification_service

logger = logging.getLogger(__name__)

_TWO_PLACES = Decimal("0.01")


async def _published_lesson_ids(db: AsyncSession, course_id: int) -> list[int]:
    res = await db.execute(
        select(Lesson.id)
        .where(Lesson.course_id == course_id, Lesson.is_published.is_(True))
        .order_by(Lesson.position, Lesson.id)
    )
    return list(res.scalars().all())


async def initialize_progress(db: AsyncSession, enrollment: Enrollment) -> int:
    """
    Create a LessonProgress row per published lesson. Idempotent.

    Returns the number of rows created.
    """
    lesson_ids = await _published_lesson_ids(db, enrollment.course_id)
    existing_res = await db.execute(
        select(LessonProgress.lesson_id).where(
            LessonProgress.user_id == enrollment.user_id,
            LessonProgress.course_id == enrollment.course_id,
        )
    )
    existing = set(existing_res.scalars().all())

    created = 0
    for lesson_id in lesson_ids:
        if lesson_id in existing:
            continue
        db.add(LessonProgress(
            user_id=enrollment.user_id,
            course_id=enrollment.course_id,
            lesson_id=lesson_id,
            enrollment_id=enrollment.id,
        ))
        created += 1

    if created:
        await db.flush()
        logger.info(
            f"Progress initialized for user {enrollment.user_id} "
            f"course {enrollment.course_id}: {created} lessons"
        )
    return created


async def recalculate_course_progress(db: AsyncSession, enrollment: Enrollment) -> Decimal:
    lesson_ids = await _published_lesson_ids(db, enrollment.course_id)
    total = len(lesson_ids)
    if total == 0:
        return Decimal(enrollment.progress_percentage or 0)

    completed = (await db.execute(
        select(func.count(LessonProgress.id)).where(
            LessonProgress.user_id == enrollment.user_id,
            LessonProgress.lesson_id.in_(lesson_ids),
            LessonProgress.is_completed.is_(True),
        )
    )).scalar_one()

    percentage = (Decimal(completed) * 100 / Decimal(total)).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)
    enrollment.progress_percentage = percentage

    if percentage >= COMPLETION_THRESHOLD and enrollment.status == EnrollmentStatus.ACTIVE.value:
        enrollment.status = EnrollmentStatus.COMPLETED.value
        enrollment.completed_at = utcnow()
        course = await db.get(Course, enrollment.course_id)
        notification_service.notify_course_completed(
            db,
            user_id=enrollment.user_id,
            course_id=enrollment.course_id,
            course_title=course.title if course else None,
        )
        logger.info(f"🎓 User {enrollment.user_id} completed course {enrollment.course_id}")

    await db.flush()
    return percentage


async def _load_lesson_and_enrollment(
    db: AsyncSession, *, user_id: int, lesson_id: int
) -> tuple[Lesson, Enrollment]:
    lesson = await db.get(Lesson, lesson_id)
    if not lesson or not lesson.is_published:
        raise NotFoundError("Lesson", str(lesson_id))

    res = await db.execute(
        select(Enrollment).where(
            Enrollment.user_id == user_id,
            Enrollment.course_id == lesson.course_id,
        )
    )
    enrollment = res.scalar_one_or_none()
    if not enrollment or enrollment.status not in (
        EnrollmentStatus.ACTIVE.value, EnrollmentStatus.COMPLETED.value
    ):
        raise AuthorizationError("Enroll in this course to track progress")
    return lesson, enrollment


async def _get_or_create_progress(
    db: AsyncSession, *, lesson: Lesson, enrollment: Enrollment
) -> LessonProgress:
    res = await db.execute(
        select(LessonProgress).where(
            LessonProgress.user_id == enrollment.user_id,
            LessonProgress.lesson_id == lesson.id,
        )
    )
    progress = res.scalar_one_or_none()
    if progress is None:
        progress = LessonProgress(
            user_id=enrollment.user_id,
            course_id=lesson.course_id,
            lesson_id=lesson.id,
            enrollment_id=enrollment.id,
        )
        db.add(progress)
    return progress


async def complete_lesson(db: AsyncSession, *, user_id: int, lesson_id: int) -> dict:
    """Mark a lesson completed and refresh the course progress."""
    lesson, enrollment = await _load_lesson_and_enrollment(db, user_id=user_id, lesson_id=lesson_id)
    progress = await _get_or_create_progress(db, lesson=lesson, enrollment=enrollment)

    now = utcnow()
    if not progress.is_completed:
        progress.is_completed = True
        progress.completed_at = now
    enrollment.last_accessed_at = now
    await db.flush()

    percentage = await recalculate_course_progress(db, enrollment)
    return {
        "lessonId": lesson.id,
        "courseId": lesson.course_id,
        "isCompleted": True,
        "progressPercentage": percentage,
        "enrollmentStatus": enrollment.status,
    }


async def update_watch_position(
    db: AsyncSession, *, user_id: int, lesson_id: int, position_seconds: int
) -> dict:
    lesson, enrollment = await _load_lesson_and_enrollment(db, user_id=user_id, lesson_id=lesson_id)
    progress = await _get_or_create_progress(db, lesson=lesson, enrollment=enrollment)

    progress.watch_position_seconds = max(0, int(position_seconds))
    enrollment.last_accessed_at = utcnow()
    await db.flush()
    return {
        "lessonId": lesson.id,
        "watchPositionSeconds": progress.watch_position_seconds,
        "isCompleted": progress.is_completed,
    }
