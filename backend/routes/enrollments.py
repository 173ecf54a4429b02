"""
Enrollment and progress endpoints.

Endpoints:
    POST /enrollments                               — Free enroll, or start checkout for a paid course
    GET  /enrollments                               — My enrollments
    GET  /enrollments/check/{course_id}             — Do I have access?
    POST /progress/lessons/{lesson_id}/complete     — Lesson completed event
    PUT  /progress/lessons/{lesson_id}/position     — Save watch position
"""
import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from db_models import User
from deps import Pagination, pagination_params, require_current_user
from domain.responses import money, paginated_response, success_response
from models import EnrollRequest, EnrollmentResponse, OrderResponse, WatchPositionRequest, dump
from services import enrollment_service, progress_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/enrollments", tags=["enrollments"])
progress_router = APIRouter(prefix="/progress", tags=["progress"])


@router.post("", status_code=201)
async def enroll(
    req: EnrollRequest,
    user: User = Depends(require_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await enrollment_service.enroll_in_course(
        db,
        user_id=user.id,
        course_id=req.course_id,
        gateway=req.payment_gateway,
        billing_address=req.billing_address,
        coupon_code=req.coupon_code,
    )
    await db.commit()
    return success_response(
        data={
            "requiresPayment": result["requiresPayment"],
            "order": dump(OrderResponse, result["order"]) if result["order"] else None,
            "enrollment": dump(EnrollmentResponse, result["enrollment"]) if result["enrollment"] else None,
        }
    )


@router.get("")
async def list_enrollments(
    status: str | None = Query(None),
    pagination: Pagination = Depends(pagination_params),
    user: User = Depends(require_current_user),
    db: AsyncSession = Depends(get_db),
):
    enrollments, total = await enrollment_service.list_user_enrollments(
        db,
        user_id=user.id,
        status=status,
        page=pagination["page"],
        limit=pagination["limit"],
    )
    return paginated_response(
        [dump(EnrollmentResponse, e) for e in enrollments],
        page=pagination["page"],
        limit=pagination["limit"],
        total=total,
    )


@router.get("/check/{course_id}")
async def check_enrollment(
    course_id: int,
    user: User = Depends(require_current_user),
    db: AsyncSession = Depends(get_db),
):
    enrollment = await enrollment_service.get_enrollment(db, user_id=user.id, course_id=course_id)
    has_access = await enrollment_service.has_access(db, user_id=user.id, course_id=course_id)
    return success_response(
        data={
            "courseId": course_id,
            "isEnrolled": has_access,
            "enrollment": dump(EnrollmentResponse, enrollment) if enrollment else None,
        }
    )


# ── Progress ────────────────────────────────────────────────────────


@progress_router.post("/lessons/{lesson_id}/complete")
async def complete_lesson(
    lesson_id: int,
    user: User = Depends(require_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await progress_service.complete_lesson(db, user_id=user.id, lesson_id=lesson_id)
    await db.commit()
    result["progressPercentage"] = money(result["progressPercentage"])
    return success_response(data=result)


@progress_router.put("/lessons/{lesson_id}/position")
async def save_watch_position(
    lesson_id: int,
    req: WatchPositionRequest,
    user: User = Depends(require_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await progress_service.update_watch_position(
        db, user_id=user.id, lesson_id=lesson_id, position_seconds=req.position_seconds
    )
    await db.commit()
    return success_response(data=result)
