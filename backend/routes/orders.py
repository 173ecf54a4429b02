"""
Order endpoints — create, cancel, history, lookup and stats.

Endpoints:
    POST  /orders                    — Create a PENDING order for a paid course
    GET   /orders                    — My orders (paginated, filterable)
    GET   /orders/stats              — My order counts and total spent
    GET   /orders/code/{order_code}  — Order by code
    GET   /orders/{order_id}         — Order by id (with transactions)
    PATCH /orders/{order_id}/cancel  — Cancel a PENDING order
"""
import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from db_models import User
from deps import Pagination, pagination_params, require_current_user
from domain.enums import UserRole
from domain.responses import money, paginated_response, success_response
from models import CreateOrderRequest, OrderResponse, TransactionResponse, dump
from services import order_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("", status_code=201)
async def create_order(
    req: CreateOrderRequest,
    user: User = Depends(require_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Create an order for a paid course. No gateway call is made."""
    order = await order_service.create_order(
        db,
        user_id=user.id,
        course_id=req.course_id,
        gateway=req.payment_gateway,
        billing_address=req.billing_address,
        notes=req.notes,
        coupon_code=req.coupon_code,
    )
    await db.commit()
    return success_response(data=dump(OrderResponse, order))


@router.get("")
async def list_orders(
    payment_status: str | None = Query(None, alias="paymentStatus"),
    payment_gateway: str | None = Query(None, alias="paymentGateway"),
    sort: str = Query("newest", pattern="^(newest|oldest|amount_asc|amount_desc)$"),
    pagination: Pagination = Depends(pagination_params),
    user: User = Depends(require_current_user),
    db: AsyncSession = Depends(get_db),
):
    orders, total = await order_service.list_user_orders(
        db,
        user_id=user.id,
        page=pagination["page"],
        limit=pagination["limit"],
        payment_status=payment_status,
        payment_gateway=payment_gateway,
        sort=sort,
    )
    return paginated_response(
        [dump(OrderResponse, o) for o in orders],
        page=pagination["page"],
        limit=pagination["limit"],
        total=total,
    )


@router.get("/stats")
async def order_stats(
    user: User = Depends(require_current_user),
    db: AsyncSession = Depends(get_db),
):
    stats = await order_service.get_order_stats(db, user_id=user.id)
    stats["totalSpent"] = money(stats["totalSpent"])
    return success_response(data=stats)


@router.get("/code/{order_code}")
async def get_order_by_code(
    order_code: str,
    user: User = Depends(require_current_user),
    db: AsyncSession = Depends(get_db),
):
    order = await order_service.get_order_by_code(
        db,
        order_code=order_code,
        user_id=user.id,
        is_admin=user.role == UserRole.ADMIN.value,
    )
    return success_response(data=dump(OrderResponse, order))


@router.get("/{order_id}")
async def get_order(
    order_id: int,
    user: User = Depends(require_current_user),
    db: AsyncSession = Depends(get_db),
):
    order = await order_service.get_order(
        db,
        order_id=order_id,
        user_id=user.id,
        is_admin=user.role == UserRole.ADMIN.value,
    )
    transactions = await order_service.list_order_transactions(db, order.id)
    data = dump(OrderResponse, order)
    data["transactions"] = [dump(TransactionResponse, t) for t in transactions]
    return success_response(data=data)


@router.patch("/{order_id}/cancel")
async def cancel_order(
    order_id: int,
    user: User = Depends(require_current_user),
    db: AsyncSession = Depends(get_db),
):
    order = await order_service.cancel_order(db, order_id=order_id, user_id=user.id)
    await db.commit()
    return success_response(data=dump(OrderResponse, order))
