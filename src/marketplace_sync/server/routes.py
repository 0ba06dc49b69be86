"""Sync service API routes."""

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request, status
from fastapi.responses import StreamingResponse

from marketplace_sync.config.constants import SALES_CHECK_DAYS, SUPPORTED_PLATFORMS
from marketplace_sync.core.logger import setup_logger
from marketplace_sync.db.repository import AccountRepository, SaleRepository
from marketplace_sync.models.sync import SyncTriggerBody
from marketplace_sync.server.auth import get_owner_id, get_stream_owner_id, verify_api_key, verify_stream_api_key
from marketplace_sync.services.account_service import AccountService
from marketplace_sync.services.platform import SyncRequest
from marketplace_sync.services.progress import ProgressReporter, format_sse
from marketplace_sync.services.sync_orchestrator import SyncOrchestrator

logger = setup_logger(__name__)
router = APIRouter()

# Global instances (initialized in app.py on startup)
orchestrators: Dict[str, SyncOrchestrator] = {}
progress_reporter: Optional[ProgressReporter] = None
account_service: Optional[AccountService] = None
session_factory = None
continuation_queue = None


def set_orchestrators(instances: Dict[str, SyncOrchestrator]):
    """Set the orchestrator per platform. Called by app.py during startup."""
    global orchestrators
    orchestrators = dict(instances)


def set_progress_reporter(reporter: ProgressReporter):
    global progress_reporter
    progress_reporter = reporter


def set_account_service(service: AccountService):
    global account_service
    account_service = service


def set_session_factory(factory):
    global session_factory
    session_factory = factory


def set_continuation_queue(queue):
    global continuation_queue
    continuation_queue = queue


def _require_platform(platform: str) -> SyncOrchestrator:
    if platform not in SUPPORTED_PLATFORMS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown platform: {platform}")
    orchestrator = orchestrators.get(platform)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Sync for {platform} is not configured",
        )
    return orchestrator


# ==============================================================================
# SYNC ENDPOINTS
# ==============================================================================

@router.post("/api/{platform}/sync")
async def trigger_sync(
    platform: str,
    body: Optional[SyncTriggerBody] = Body(None),
    owner_id: str = Depends(get_owner_id),
    _: bool = Depends(verify_api_key),
) -> dict:
    """Run one sync invocation for the owner's accounts.

    Body:
        {"accountIds": [...], "fullSync": false, "quickMode": true}, all optional

    Returns:
        {syncedAt, accounts, errors, totals: {expected, fetched, saved},
         hasMoreToSync, quickMode, autoSyncTriggered}
    """
    orchestrator = _require_platform(platform)
    body = body or SyncTriggerBody()

    request = SyncRequest(
        platform=platform,
        owner_id=owner_id,
        account_ids=body.account_ids or None,
        full_sync=body.full_sync,
        quick_mode=body.quick_mode,
    )
    logger.info(f"Sync triggered: platform={platform} owner={owner_id} request={request.request_id}")

    report = await orchestrator.run(request)
    return report.to_response()


@router.get("/api/sync/progress")
async def sync_progress(
    request: Request,
    owner_id: str = Depends(get_stream_owner_id),
    _: bool = Depends(verify_stream_api_key),
):
    """Stream the owner's sync progress as Server-Sent Events.

    The stream ends when the server closes the channel after a final
    ``sync_complete`` or when the client disconnects.
    """
    if progress_reporter is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Progress not initialized")

    subscription = progress_reporter.attach(owner_id)

    async def event_generator():
        try:
            yield ": connected\n\n"
            async for event in subscription:
                if await request.is_disconnected():
                    break
                yield format_sse(event)
        finally:
            subscription.detach()

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get("/api/{platform}/sales/check")
async def check_sales(
    platform: str,
    owner_id: str = Depends(get_owner_id),
    _: bool = Depends(verify_api_key),
) -> dict:
    """Count the owner's sales over the last SALES_CHECK_DAYS days.

    Returns:
        {"totals": {"new": int, "total": int}, "period": {"from": iso, "to": iso}}
    """
    if platform not in SUPPORTED_PLATFORMS:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown platform: {platform}")
    if session_factory is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database not initialized")

    period_to = datetime.now(timezone.utc)
    period_from = period_to - timedelta(days=SALES_CHECK_DAYS)

    async with session_factory() as session:
        sales = SaleRepository(session)
        recent = await sales.count_for_owner(owner_id, platform, since=period_from)
        total = await sales.count_for_owner(owner_id, platform)

    return {
        "totals": {"new": recent, "total": total},
        "period": {"from": period_from.isoformat(), "to": period_to.isoformat()},
    }


@router.post("/api/accounts/{platform}/{account_id}/clear-invalid")
async def clear_invalid_mark(
    platform: str,
    account_id: str,
    owner_id: str = Depends(get_owner_id),
    _: bool = Depends(verify_api_key),
) -> dict:
    """Clear the "needs reconnection" mark of one account."""
    if account_service is None or session_factory is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Accounts not initialized")

    async with session_factory() as session:
        account = await AccountRepository(session).get(account_id)

    if account is None or account.owner_id != owner_id or account.platform != platform:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")

    cleared = await account_service.clear_invalid_mark(account_id)
    return {"success": cleared, "accountId": account_id}


# ==============================================================================
# MONITORING ENDPOINTS
# ==============================================================================

@router.get("/health")
async def health_check() -> dict:
    """Health check endpoint.

    Returns:
        {
            "status": "healthy|degraded|unhealthy",
            "service": "marketplace-order-sync",
            "platforms": [...],
            "queue": "ok|error|disabled"
        }
    """
    if not orchestrators:
        return {
            "status": "unhealthy",
            "service": "marketplace-order-sync",
            "error": "No platform configured",
        }

    queue_state = "disabled"
    if continuation_queue is not None:
        try:
            queue_ok = await continuation_queue.health_check()
        except Exception as e:
            logger.error(f"Health check error: {e}")
            queue_ok = False
        queue_state = "ok" if queue_ok else "error"

    return {
        "status": "degraded" if queue_state == "error" else "healthy",
        "service": "marketplace-order-sync",
        "platforms": sorted(orchestrators),
        "queue": queue_state,
    }


@router.get("/workers/stats")
async def worker_stats(request: Request) -> dict:
    """Get sync job worker and queue statistics.

    Returns:
        {
            "redis_enabled": bool,
            "total_workers": int,
            "workers": [{worker_id, is_running, current_message,
                         messages_processed, messages_failed,
                         avg_processing_time, last_message_at}, ...],
            "queue": {...}
        }
    """
    worker_tasks = getattr(request.app.state, "worker_tasks", None)

    if continuation_queue is None:
        return {
            "redis_enabled": False,
            "message": "Redis workers not enabled",
        }

    try:
        workers_info = [consumer.get_stats() for consumer, _ in (worker_tasks or [])]
        return {
            "redis_enabled": True,
            "total_workers": len(workers_info),
            "workers": workers_info,
            "queue": await continuation_queue.get_stats(),
        }

    except Exception as e:
        logger.error(f"Error getting worker stats: {e}", exc_info=True)
        return {
            "redis_enabled": True,
            "error": str(e),
        }


@router.get("/")
async def root() -> dict:
    """Root endpoint."""
    return {
        "service": "Marketplace Order Sync",
        "description": "Synchronizes marketplace order history into the sales store",
        "endpoints": {
            "health": "/health",
            "sync": "/api/{platform}/sync",
            "progress": "/api/sync/progress",
            "sales_check": "/api/{platform}/sales/check",
            "clear_invalid": "/api/accounts/{platform}/{account_id}/clear-invalid",
            "workers_stats": "/workers/stats",
        },
    }
