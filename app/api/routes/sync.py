"""Sync API routes.

Provides endpoints for:
- Triggering a sync run (returns immediately with the run id)
- Polling one run's status
- Listing recent runs
"""
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from app.core.auth import verify_cron_secret
from app.core.database import run_in_db_executor
from app.core.rate_limit import limiter
from app.services.sync.exceptions import SyncRunNotFoundError, UnknownSyncKindError
from app.services.sync.orchestrator import SyncOrchestrator
from app.services.sync.status import MAX_HISTORY_LIMIT

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


def get_orchestrator(request: Request) -> SyncOrchestrator:
    """Dependency returning the application's orchestrator (created in lifespan)."""
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync engine is not initialized"
        )
    return orchestrator


@router.get("/status/{run_id}")
@limiter.limit("120/minute")
async def get_sync_status(
    request: Request,
    run_id: str,
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
) -> Dict:
    """
    Get the status of one sync run.

    is_complete is true only once the run's completion time is recorded;
    keep polling until it is.

    Args:
        run_id: Id returned by the trigger endpoint

    Returns:
        Status report including per-stage runs for full syncs
    """
    try:
        return await run_in_db_executor(orchestrator.get_sync_status, run_id)
    except SyncRunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Error reading sync status for {run_id}: {e}")
        raise HTTPException(status_code=500, detail=f"Error reading sync status: {str(e)}")


@router.get("/logs")
@limiter.limit("60/minute")
async def get_sync_logs(
    request: Request,
    limit: int = Query(100, ge=1, le=MAX_HISTORY_LIMIT, description="Max runs to return"),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
) -> Dict:
    """
    Recent sync runs, newest first.

    Args:
        limit: Max runs to return

    Returns:
        Count and list of runs
    """
    try:
        runs: List[Dict] = await run_in_db_executor(orchestrator.list_sync_history, limit)
    except Exception as e:
        logger.error(f"Error listing sync history: {e}")
        raise HTTPException(status_code=500, detail=f"Error listing sync history: {str(e)}")

    return {
        'count': len(runs),
        'runs': runs
    }


@router.post("/{kind}", status_code=status.HTTP_202_ACCEPTED)
@limiter.limit("10/minute")
async def trigger_sync(
    request: Request,
    kind: str,
    caller: Optional[str] = Depends(verify_cron_secret),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator)
) -> Dict:
    """
    Start a sync run in the background.

    Args:
        kind: directory, devices or all

    Returns:
        The new run id; poll /sync/status/{run_id} for progress
    """
    try:
        run_id = await orchestrator.trigger_sync(kind)
    except UnknownSyncKindError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error triggering {kind} sync: {e}")
        raise HTTPException(status_code=500, detail=f"Error triggering sync: {str(e)}")

    logger.info(f"{kind} sync {run_id} triggered by {caller or 'dashboard'}")
    return {
        'run_id': run_id,
        'status': 'running'
    }
