"""MetaSync — Meta API Endpoints.

Fetch functions for each Meta Marketing API resource. Each builds the
entity-specific query (fields, filters, paging) and returns raw JSON rows.
"""

from typing import Any, Dict, List, Optional

from metasync.config import settings
from metasync.connectors.meta.client import MetaClient
from metasync.core.logging import get_logger

logger = get_logger("meta.endpoints")

PAGE_SIZE = settings.meta_page_size

# Default fields requested from Meta
ACCOUNT_FIELDS = ["id", "name", "currency", "timezone_name"]
CAMPAIGN_FIELDS = [
    "id",
    "name",
    "status",
    "objective",
    "created_time",
    "start_time",
    "stop_time",
    "updated_time",
]
ADSET_FIELDS = [
    "id",
    "name",
    "status",
    "campaign_id",
    "targeting",
    "billing_event",
    "optimization_goal",
    "bid_amount",
    "created_time",
    "start_time",
    "end_time",
    "updated_time",
]
AD_FIELDS = [
    "id",
    "name",
    "status",
    "adset_id",
    "campaign_id",
    "creative",
    "created_time",
    "updated_time",
]
INSIGHT_FIELDS = [
    "ad_id",
    "adset_id",
    "campaign_id",
    "impressions",
    "reach",
    "clicks",
    "spend",
    "cpc",
    "cpm",
    "ctr",
    "frequency",
    "actions",
    "action_values",
]

INSIGHT_LEVELS = ("account", "campaign", "adset", "ad")


class MetaEndpoints:
    """Entity-level queries on top of a MetaClient."""

    def __init__(self, client: MetaClient):
        self.client = client

    def _updated_since_filter(self, since: Optional[str]) -> Optional[str]:
        if not since:
            return None
        return self.client.encode_json(
            [{"field": "updated_time", "operator": "GREATER_THAN", "value": since}]
        )

    # ── Accounts ──

    async def fetch_accounts(self) -> List[Dict[str, Any]]:
        """Fetch every ad account visible to the access token."""
        url = self.client.build_url("/me/adaccounts", {"fields": ACCOUNT_FIELDS})
        return await self.client.fetch_all_pages(url)

    async def fetch_account(self, account_id: str) -> Dict[str, Any]:
        """Fetch a single ad account's details (not paginated)."""
        url = self.client.build_url(f"/{account_id}", {"fields": ACCOUNT_FIELDS})
        return await self.client.fetch(url)

    # ── Structure Endpoints (Campaigns, Adsets, Ads) ──

    async def _fetch_structure(
        self,
        account_id: str,
        edge: str,
        fields: List[str],
        since: Optional[str],
    ) -> List[Dict[str, Any]]:
        url = self.client.build_url(
            f"/{account_id}/{edge}",
            {
                "fields": fields,
                "limit": PAGE_SIZE,
                "filtering": self._updated_since_filter(since),
            },
        )
        return await self.client.fetch_all_pages(url)

    async def fetch_campaigns(
        self,
        account_id: str,
        since: Optional[str] = None,
        fields: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch campaigns, optionally only those updated after `since`."""
        return await self._fetch_structure(
            account_id, "campaigns", fields or CAMPAIGN_FIELDS, since
        )

    async def fetch_adsets(
        self,
        account_id: str,
        since: Optional[str] = None,
        fields: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch ad sets, optionally only those updated after `since`."""
        return await self._fetch_structure(
            account_id, "adsets", fields or ADSET_FIELDS, since
        )

    async def fetch_ads(
        self,
        account_id: str,
        since: Optional[str] = None,
        fields: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch ads, optionally only those updated after `since`."""
        return await self._fetch_structure(
            account_id, "ads", fields or AD_FIELDS, since
        )

    # ── Insights ──

    async def fetch_insights(
        self,
        object_id: str,
        level: Optional[str] = None,
        date_preset: Optional[str] = None,
        time_range: Optional[Dict[str, str]] = None,
        fields: Optional[List[str]] = None,
        breakdowns: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Fetch insights for an account/campaign/adset/ad, one row per day.

        `date_preset` (e.g. "last_7d") takes precedence over an explicit
        `time_range` of {"since": ..., "until": ...}.
        """
        if level is not None and level not in INSIGHT_LEVELS:
            raise ValueError(f"Unknown insights level: {level}")

        params: Dict[str, Any] = {
            "fields": fields or INSIGHT_FIELDS,
            "limit": PAGE_SIZE,
            "level": level,
            "breakdowns": breakdowns,
            "time_increment": 1,
        }
        if date_preset:
            params["date_preset"] = date_preset
        elif time_range:
            params["time_range"] = self.client.encode_json(
                {"since": time_range["since"], "until": time_range["until"]}
            )

        url = self.client.build_url(f"/{object_id}/insights", params)
        data = await self.client.fetch_all_pages(url)
        logger.info(f"Fetched {len(data)} {level or 'default'}-level insight records")
        return data

    async def fetch_bulk_insights(
        self,
        account_id: str,
        level: str,
        time_range: Dict[str, str],
        fields: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Account-wide insights for every object at `level` in one walk."""
        return await self.fetch_insights(
            account_id, level=level, time_range=time_range, fields=fields
        )
