"""MetaSync — Sync Run Ledger.

Durable record per sync invocation. A run is opened RUNNING and closed
exactly once as SUCCESS or FAILED; closed runs are read-only.
"""

from datetime import datetime, timezone
from typing import Any, List, Optional

from sqlmodel import Session, select

from metasync.models.sync_models import SyncCounts, SyncRun, SyncStatus
from metasync.core.logging import get_logger

logger = get_logger("sync.ledger")


class SyncRunStateError(Exception):
    """Raised on an illegal SyncRun status transition."""


def start_run(
    session: Session,
    triggered_by: Optional[str] = None,
    config_snapshot: Optional[Any] = None,
) -> SyncRun:
    run = SyncRun(
        status=SyncStatus.RUNNING,
        triggered_by=triggered_by,
        config_snapshot=config_snapshot,
    )
    session.add(run)
    session.commit()
    session.refresh(run)
    logger.info("Sync run started", extra={"sync_run_id": run.id})
    return run


def finish_run(
    session: Session,
    run_id: str,
    status: SyncStatus,
    counts: SyncCounts,
    error: Optional[str] = None,
) -> SyncRun:
    """Write the terminal status, counts and finish time of a run."""
    if not status.is_terminal:
        raise SyncRunStateError(f"Cannot finish sync run {run_id} as {status.value}")

    run = session.get(SyncRun, run_id)
    if run is None:
        raise SyncRunStateError(f"Sync run {run_id} not found")
    if run.status != SyncStatus.RUNNING:
        raise SyncRunStateError(
            f"Sync run {run_id} already finished with status {run.status.value}"
        )

    run.status = status
    run.finished_at = datetime.now(timezone.utc)
    run.error = error
    run.accounts_count = counts.accounts
    run.campaigns_count = counts.campaigns
    run.adsets_count = counts.adsets
    run.ads_count = counts.ads
    run.insights_count = counts.insights
    run.insights_skipped_count = counts.insights_skipped
    run.errors_count = counts.errors
    session.add(run)
    session.commit()
    session.refresh(run)
    logger.info(
        f"Sync run finished: {status.value}", extra={"sync_run_id": run.id}
    )
    return run


def get_run(session: Session, run_id: str) -> Optional[SyncRun]:
    return session.get(SyncRun, run_id)


def list_runs(session: Session, limit: int = 20) -> List[SyncRun]:
    """Most recent runs first."""
    return list(
        session.exec(
            select(SyncRun).order_by(SyncRun.started_at.desc()).limit(limit)
        ).all()
    )
