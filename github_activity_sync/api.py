"""
API Module

HTTP surface for triggering and inspecting syncs. The orchestrator and
scheduler are created at startup and read from ``app.state``.
"""
import logging
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from github_activity_sync import config
from github_activity_sync.models import RunType
from github_activity_sync.pipeline import SyncError, SyncOrchestrator
from github_activity_sync.scheduler import AutoSyncScheduler

logger = logging.getLogger(__name__)
router = APIRouter()


class BackfillRequest(BaseModel):
    start_date: date
    end_date: Optional[date] = None


class AutoSyncRequest(BaseModel):
    interval_minutes: int = Field(..., gt=0, description="Minutes between automatic syncs")


class RealignRequest(BaseModel):
    limit: int = Field(config.REALIGN_LIMIT, gt=0)
    chunk_size: int = Field(config.REALIGN_CHUNK_SIZE, gt=0)
    dry_run: bool = False
    wait_for_rate_limit: bool = True
    ids: Optional[List[str]] = None


class ResetRequest(BaseModel):
    preserve_logs: bool = False


def get_orchestrator(request: Request) -> SyncOrchestrator:
    return request.app.state.orchestrator


def get_scheduler(request: Request) -> AutoSyncScheduler:
    return request.app.state.scheduler


def _raise_http_error(action: str, e: Exception):
    if isinstance(e, (SyncError, ValueError)):
        logger.warning(f"Rejected {action}: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    logger.error(f"Error during {action}: {str(e)}")
    raise HTTPException(status_code=500, detail=f"{action} failed: {e}")


@router.post("/sync/run")
async def run_sync(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """
    Run an incremental sync now, or join the one already running.
    """
    try:
        result = await orchestrator.run_incremental_sync(RunType.MANUAL.value)
    except Exception as e:
        _raise_http_error("Sync", e)
    return result.to_dict()


@router.post("/sync/backfill")
async def run_backfill(body: BackfillRequest, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """
    Backfill the given date range one UTC day per run.
    """
    try:
        result = await orchestrator.run_backfill(body.start_date, body.end_date)
    except Exception as e:
        _raise_http_error("Backfill", e)
    return result.to_dict()


@router.post("/sync/auto")
async def enable_auto_sync(body: AutoSyncRequest, scheduler: AutoSyncScheduler = Depends(get_scheduler)):
    try:
        result = await scheduler.enable(body.interval_minutes)
    except Exception as e:
        _raise_http_error("Automatic sync", e)
    return {"enabled": True, "interval_minutes": body.interval_minutes, "run": result.to_dict()}


@router.delete("/sync/auto")
async def disable_auto_sync(scheduler: AutoSyncScheduler = Depends(get_scheduler)):
    await scheduler.disable()
    return {"enabled": False}


@router.post("/sync/realign")
async def realign(body: RealignRequest, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    """
    Re-resolve issues and discussions whose repository or URL drifted.
    """
    try:
        summary = await orchestrator.run_realignment(
            RunType.MANUAL.value,
            limit=body.limit,
            chunk_size=body.chunk_size,
            dry_run=body.dry_run,
            wait_for_rate_limit=body.wait_for_rate_limit,
            ids=body.ids,
        )
    except Exception as e:
        _raise_http_error("Realignment", e)
    return summary.to_dict()


@router.get("/sync/status")
def sync_status(limit: int = 10, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    try:
        return orchestrator.fetch_status(limit=limit)
    except Exception as e:
        _raise_http_error("Status lookup", e)


@router.post("/sync/cleanup")
def cleanup_stuck_runs(orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    try:
        return orchestrator.cleanup_stuck_runs()
    except Exception as e:
        _raise_http_error("Cleanup", e)


@router.post("/sync/reset")
def reset_data(body: ResetRequest, orchestrator: SyncOrchestrator = Depends(get_orchestrator)):
    try:
        orchestrator.reset_data(preserve_logs=body.preserve_logs)
    except Exception as e:
        _raise_http_error("Reset", e)
    return {"reset": True, "preserve_logs": body.preserve_logs}
