"""Review sync API endpoints."""

import logging
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.api.deps import get_account_id, get_orchestrator
from app.core.database import get_db, get_session_factory
from app.schemas.responses import SyncBatchResponse, SyncRunResponse
from app.services.errors import InternalFailure, LocationsLoadFailed
from app.services.runs import get_run, list_runs
from app.services.sync import SyncOrchestrator
from app.services.tokens import load_connection

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sync"])


@router.post("/api/google/reviews/sync", response_model=SyncBatchResponse)
async def sync_reviews(
    location_id: str | None = None,
    account_id: str = Depends(get_account_id),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
):
    """
    Sync Google reviews for the account's active locations.

    Always answers 200 with per-location outcomes once the batch has started;
    only a batch that cannot start is reported as an HTTP error.
    """
    async with session_factory() as session:
        connection = await load_connection(session, account_id)
    if connection is None:
        raise HTTPException(status_code=404, detail="Google not connected")

    try:
        result = await orchestrator.sync_account(account_id, location_id=location_id)
    except LocationsLoadFailed:
        raise HTTPException(status_code=500, detail="Failed to load locations")
    except InternalFailure as e:
        logger.error(f"Review sync failed for account {account_id}: {e}")
        raise HTTPException(status_code=500, detail="Sync failed")

    return result.as_dict()


@router.get("/api/sync/runs", response_model=list[SyncRunResponse])
async def sync_runs(
    limit: int = Query(50, ge=1, le=500),
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
):
    """List the account's sync runs, most recent first."""
    return await list_runs(db, account_id=account_id, limit=limit)


@router.get("/api/sync/runs/{run_id}", response_model=SyncRunResponse)
async def sync_run_detail(
    run_id: int,
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
):
    """Get a single sync run with its per-location results."""
    run = await get_run(db, run_id)
    if run is None or run.account_id != account_id:
        raise HTTPException(status_code=404, detail="Sync run not found")
    return run
