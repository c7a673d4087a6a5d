"""Sync control and status API endpoints."""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from calmirror.api.deps import get_account_id, get_db, get_runner
from calmirror.sync.triggers import get_sync_status, is_sync_running, start_sync

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["sync"])


class StartSyncRequest(BaseModel):
    provider_type: str = "google"
    force_full_sync: bool = False


class StartSyncResponse(BaseModel):
    run_id: str


class SyncRunResponse(BaseModel):
    """Status of one sync run."""
    run_id: str
    status: str
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None


class SyncRunningResponse(BaseModel):
    running: bool


class IntegrationResponse(BaseModel):
    type: str
    status: str
    updated_at: Optional[str] = None


@router.post("/start", response_model=StartSyncResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_account_sync(
    request: StartSyncRequest,
    account_id: str = Depends(get_account_id),
    runner=Depends(get_runner),
):
    """Start a sync for the account, or return the run already in progress."""
    run_id = await start_sync(
        runner,
        account_id,
        provider_type=request.provider_type,
        force_full_sync=request.force_full_sync,
    )
    logger.info(f"Sync requested for account {account_id}: run {run_id}")
    return StartSyncResponse(run_id=run_id)


@router.get("/runs/{run_id}", response_model=SyncRunResponse)
async def get_sync_run(
    run_id: str,
    account_id: str = Depends(get_account_id),
    runner=Depends(get_runner),
):
    """Get the status and result of a sync run."""
    run = await get_sync_status(runner, run_id)
    if not run:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Sync run not found"
        )
    return SyncRunResponse(**run)


@router.get("/running", response_model=SyncRunningResponse)
async def get_sync_running(
    provider_type: str = "google",
    account_id: str = Depends(get_account_id),
    runner=Depends(get_runner),
):
    """Whether a full or incremental sync is in progress for the account."""
    return SyncRunningResponse(running=await is_sync_running(runner, account_id, provider_type))


@router.get("/integrations", response_model=list[IntegrationResponse])
async def list_integrations(
    account_id: str = Depends(get_account_id),
    db=Depends(get_db),
):
    """Integration statuses recorded for the account."""
    cursor = await db.execute(
        "SELECT type, status, updated_at FROM integrations WHERE account_id = ? ORDER BY type",
        (account_id,)
    )
    return [IntegrationResponse(**dict(row)) for row in await cursor.fetchall()]
