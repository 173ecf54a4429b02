"""
Notification endpoints — read side of the in-app notification outbox.
"""
import logging

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from db_models import User
from deps import Pagination, pagination_params, require_current_user
from domain.responses import paginated_response, success_response
from models import NotificationResponse, dump
from services import notification_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("")
async def list_notifications(
    unread_only: bool = Query(False, alias="unreadOnly"),
    pagination: Pagination = Depends(pagination_params),
    user: User = Depends(require_current_user),
    db: AsyncSession = Depends(get_db),
):
    notifications, total = await notification_service.list_user_notifications(
        db,
        user_id=user.id,
        page=pagination["page"],
        limit=pagination["limit"],
        unread_only=unread_only,
    )
    return paginated_response(
        [dump(NotificationResponse, n) for n in notifications],
        page=pagination["page"],
        limit=pagination["limit"],
        total=total,
    )


@router.patch("/{notification_id}/read")
async def mark_notification_read(
    notification_id: int,
    user: User = Depends(require_current_user),
    db: AsyncSession = Depends(get_db),
):
    notification = await notification_service.mark_as_read(
        db, user_id=user.id, notification_id=notification_id
    )
    await db.commit()
    return success_response(data=dump(NotificationResponse, notification))
