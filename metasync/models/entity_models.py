"""MetaSync — Mirrored Meta Ad Entities.

Account → Campaign → AdSet → Ad hierarchy plus per-ad daily insights.
Synced entities are keyed by the Meta string id; nothing here is ever
deleted by the sync, only created or updated.
"""

from datetime import date as date_type, datetime, timezone
from typing import Any, Optional
from sqlalchemy import JSON, BigInteger, Column
from sqlmodel import SQLModel, Field, UniqueConstraint


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MetaAccount(SQLModel, table=True):
    """Ad account — root of the entity hierarchy."""

    __tablename__ = "meta_accounts"

    id: str = Field(primary_key=True, description="Meta id, e.g. act_123")
    name: str = Field(default="")
    currency: Optional[str] = None
    timezone: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class MetaCampaign(SQLModel, table=True):
    __tablename__ = "meta_campaigns"

    id: str = Field(primary_key=True)
    account_id: str = Field(foreign_key="meta_accounts.id", index=True)
    name: str = Field(default="")
    status: str = Field(default="", description="ACTIVE | PAUSED | ...")
    objective: Optional[str] = None
    created_time: Optional[datetime] = None
    start_time: Optional[datetime] = None
    stop_time: Optional[datetime] = None
    updated_time: Optional[datetime] = None


class MetaAdSet(SQLModel, table=True):
    __tablename__ = "meta_adsets"

    id: str = Field(primary_key=True)
    account_id: str = Field(foreign_key="meta_accounts.id", index=True)
    campaign_id: str = Field(foreign_key="meta_campaigns.id", index=True)
    name: str = Field(default="")
    status: str = Field(default="")
    targeting: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    billing_event: Optional[str] = None
    optimization_goal: Optional[str] = None
    bid_amount: Optional[int] = None
    created_time: Optional[datetime] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    updated_time: Optional[datetime] = None


class MetaAd(SQLModel, table=True):
    __tablename__ = "meta_ads"

    id: str = Field(primary_key=True)
    account_id: str = Field(foreign_key="meta_accounts.id", index=True)
    adset_id: str = Field(foreign_key="meta_adsets.id", index=True)
    campaign_id: Optional[str] = Field(default=None, index=True)
    name: str = Field(default="")
    status: str = Field(default="")
    creative: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    created_time: Optional[datetime] = None
    updated_time: Optional[datetime] = None


class MetaInsightDaily(SQLModel, table=True):
    """One day of performance numbers for one ad.

    Unique constraint on (ad_id, date) makes re-syncing a window an
    overwrite rather than a duplicate.
    """

    __tablename__ = "meta_insights_daily"
    __table_args__ = (UniqueConstraint("ad_id", "date", name="uq_insight_ad_date"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    ad_id: str = Field(foreign_key="meta_ads.id", index=True)
    date: date_type = Field(index=True)
    account_id: str = Field(index=True)
    campaign_id: Optional[str] = Field(default=None, index=True)
    adset_id: Optional[str] = Field(default=None, index=True)

    impressions: int = Field(default=0, sa_type=BigInteger)
    reach: int = Field(default=0, sa_type=BigInteger)
    clicks: int = 0
    link_clicks: int = 0
    spend: float = 0.0
    cpc: float = 0.0
    cpm: float = 0.0
    ctr: float = 0.0
    frequency: float = 0.0
    actions: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    action_values: Optional[Any] = Field(default=None, sa_column=Column(JSON))

    # Derived from the action blobs
    purchases: int = 0
    purchase_value: float = 0.0
    roas: float = 0.0

    updated_at: datetime = Field(default_factory=_utcnow)
