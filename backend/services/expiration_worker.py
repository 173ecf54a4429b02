"""
Pending-payment expiration worker.

Periodically fails checkout attempts (and their orders) whose pay URL has
expired without a gateway confirmation. Runs as an asyncio background task
during the FastAPI app lifespan.
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from config import settings
from database import async_session
from db_models import utcnow

logger = logging.getLogger(__name__)

_worker_task: Optional[asyncio.Task] = None
_is_running: bool = False
_last_run_at: Optional[datetime] = None
_runs_count: int = 0
_errors_count: int = 0
_expired_total: int = 0


async def sweep_once(session_factory=None) -> dict:
    """Run one expiration pass in its own session."""
    global _last_run_at, _runs_count, _expired_total
    from services import payment_orchestrator

    factory = session_factory or async_session
    async with factory() as db:
        summary = await payment_orchestrator.expire_stale_payments(db)

    _last_run_at = utcnow()
    _runs_count += 1
    _expired_total += summary["expiredAttempts"]
    return summary


async def _worker_loop():
    global _is_running, _errors_count
    _is_running = True
    logger.info(
        f"Expiration worker started (every {settings.expiration_sweep_interval_seconds}s, "
        f"attempt lifetime {settings.pending_payment_expiration_minutes}m "
        f"+ {settings.pending_sweep_grace_minutes}m grace)"
    )

    while _is_running:
        try:
            await sweep_once()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            _errors_count += 1
            logger.error(f"Expiration sweep failed: {e}", exc_info=True)

        await asyncio.sleep(settings.expiration_sweep_interval_seconds)

    _is_running = False
    logger.info("Expiration worker stopped")


# ════════════════════════════════════════════════════════════════════
# Public API: Start / Stop / Status
# ════════════════════════════════════════════════════════════════════


async def start():
    """Start the worker as a background asyncio task."""
    global _worker_task, _is_running

    if _worker_task and not _worker_task.done():
        logger.warning("Expiration worker already running")
        return

    _is_running = True
    _worker_task = asyncio.create_task(_worker_loop())
    logger.info("Expiration worker task created")


async def stop():
    """Stop the worker gracefully."""
    global _worker_task, _is_running
    _is_running = False

    if _worker_task and not _worker_task.done():
        _worker_task.cancel()
        try:
            await _worker_task
        except asyncio.CancelledError:
            pass

    _worker_task = None
    logger.info("Expiration worker task stopped")


def get_status() -> dict:
    """Worker status for the /workers/expiration/status endpoint."""
    return {
        "running": _is_running,
        "enabled": settings.expiration_worker_enabled,
        "lastRunAt": _last_run_at.isoformat() if _last_run_at else None,
        "runsCount": _runs_count,
        "errorsCount": _errors_count,
        "expiredTotal": _expired_total,
        "intervalSeconds": settings.expiration_sweep_interval_seconds,
        "attemptLifetimeMinutes": settings.pending_payment_expiration_minutes,
        "graceMinutes": settings.pending_sweep_grace_minutes,
    }
