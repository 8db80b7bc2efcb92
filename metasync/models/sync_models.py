"""MetaSync — Sync Run Ledger & Sync I/O Models."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Literal, Optional
from pydantic import BaseModel
from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field


class SyncStatus(str, Enum):
    """RUNNING is the only non-terminal state."""

    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not SyncStatus.RUNNING


# ─────────────────────────────────────────────
# DATABASE MODEL — One row per sync invocation
# ─────────────────────────────────────────────


class SyncRun(SQLModel, table=True):
    """Audit record of one synchronization pass.

    Created RUNNING at pass start, written exactly once more at pass end.
    """

    __tablename__ = "sync_runs"

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True)
    status: SyncStatus = Field(default=SyncStatus.RUNNING, index=True)
    triggered_by: Optional[str] = None
    started_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), index=True
    )
    finished_at: Optional[datetime] = None

    accounts_count: int = 0
    campaigns_count: int = 0
    adsets_count: int = 0
    ads_count: int = 0
    insights_count: int = 0
    insights_skipped_count: int = 0
    errors_count: int = 0

    error: Optional[str] = None
    config_snapshot: Optional[Any] = Field(
        default=None, sa_column=Column(JSON), description="SyncConfig snapshot"
    )


# ─────────────────────────────────────────────
# PYDANTIC SCHEMAS — Caller-facing sync I/O
# ─────────────────────────────────────────────


class DateRange(BaseModel):
    """Inclusive YYYY-MM-DD window."""

    since: str
    until: str


class SyncConfig(BaseModel):
    """What the caller asks one sync pass to cover."""

    account_ids: Optional[List[str]] = None
    date_range: Optional[DateRange] = None
    # Recorded in the run snapshot; insights are always pulled at ad level
    levels: Optional[List[Literal["account", "campaign", "adset", "ad"]]] = None


class SyncCounts(BaseModel):
    """Per-entity tallies accumulated during a pass."""

    accounts: int = 0
    campaigns: int = 0
    adsets: int = 0
    ads: int = 0
    insights: int = 0
    insights_skipped: int = 0
    errors: int = 0


class SyncResult(BaseModel):
    """What `run_sync` hands back; failures are reported here, not raised."""

    sync_run_id: str
    status: SyncStatus
    counts: SyncCounts = SyncCounts()
    error: Optional[str] = None


class SyncRunRead(BaseModel):
    """Sync history entry as served to dashboard collaborators."""

    id: str
    status: SyncStatus
    triggered_by: Optional[str] = None
    started_at: datetime
    finished_at: Optional[datetime] = None
    accounts_count: int = 0
    campaigns_count: int = 0
    adsets_count: int = 0
    ads_count: int = 0
    insights_count: int = 0
    insights_skipped_count: int = 0
    errors_count: int = 0
    error: Optional[str] = None
    config_snapshot: Optional[Any] = None

    model_config = {"from_attributes": True}
