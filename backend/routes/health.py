"""
Health check endpoint.
"""
from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from services.gateways import get_adapter, supported_gateways

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check(db: AsyncSession = Depends(get_db)):
    """Health check — verifies database connectivity and reports gateway configuration."""
    gateways = {name: get_adapter(name).is_configured() for name in supported_gateways()}
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error(f"Health check failed: {e}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "status": "unhealthy",
                "database_connected": False,
                "environment": settings.environment,
            },
        )
    return {
        "status": "healthy",
        "database_connected": True,
        "gateways_configured": gateways,
        "environment": settings.environment,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
