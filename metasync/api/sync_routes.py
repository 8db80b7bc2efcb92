"""MetaSync — Sync Run History Routes.

Read-only: dashboards poll run status here. Starting a sync is left to
whoever owns scheduling.
"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session

from metasync.database import get_session
from metasync.models.sync_models import SyncRunRead
from metasync.sync import ledger

router = APIRouter(prefix="/sync", tags=["Sync"])


@router.get("/runs", response_model=List[SyncRunRead])
async def get_sync_history(
    limit: int = Query(default=20, ge=1, le=200),
    session: Session = Depends(get_session),
):
    """Most recent sync runs, newest first."""
    return [SyncRunRead.model_validate(run) for run in ledger.list_runs(session, limit)]


@router.get("/runs/{run_id}", response_model=SyncRunRead)
async def get_sync_run(run_id: str, session: Session = Depends(get_session)):
    """A single sync run with its counts and error text."""
    run = ledger.get_run(session, run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Sync run not found")
    return SyncRunRead.model_validate(run)
