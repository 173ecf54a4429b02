"""
Coupon endpoints.

Endpoints:
    POST /coupons/validate  — Preview a coupon against a course price
"""
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from db_models import Course, User
from deps import require_current_user
from domain.errors import NotFoundError
from domain.responses import money, success_response
from models import ValidateCouponRequest
from services import coupon_service, order_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/coupons", tags=["coupons"])


@router.post("/validate")
async def validate_coupon(
    req: ValidateCouponRequest,
    user: User = Depends(require_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Nothing is reserved; the code is checked again when the order is created."""
    course = await db.get(Course, req.course_id)
    if not course:
        raise NotFoundError("Course", str(req.course_id))

    total = order_service.calculate_prices(course)["final_price"]
    coupon = await coupon_service.validate_coupon(
        db,
        code=req.coupon_code,
        user_id=user.id,
        order_total=total,
        course_id=course.id,
    )
    discount = coupon_service.calculate_discount(coupon, total)
    return success_response(
        data={
            "couponCode": coupon.code,
            "type": coupon.type,
            "orderTotal": money(total),
            "discount": money(discount),
            "finalPrice": money(total - discount),
        }
    )
