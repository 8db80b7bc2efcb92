"""MetaSync — Sync Engine.

Runs one full synchronization pass:
  resolve accounts → (first sync only) campaigns/adsets/ads → ad-level
  daily insights → close the SyncRun

Every pass is recorded as a SyncRun. Pass-level failures end the run as
FAILED and are returned in the SyncResult; they never propagate.
"""

import asyncio
import contextlib
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from metasync.config import settings
from metasync.connectors.meta.client import MetaClient
from metasync.connectors.meta.endpoints import MetaEndpoints
from metasync.connectors.meta import transformer
from metasync.models.entity_models import MetaCampaign
from metasync.models.sync_models import (
    DateRange,
    SyncConfig,
    SyncCounts,
    SyncResult,
    SyncStatus,
)
from metasync.sync import ledger
from metasync.sync.batching import BatchTally, UpsertOutcome, run_in_batches
from metasync.core.logging import SyncLogAdapter, bind_logger, get_logger

logger = get_logger("sync.engine")

Upsert = Callable[[Session, str, Dict[str, Any]], UpsertOutcome]


class SyncError(Exception):
    """Pass-aborting failure."""


class SyncTimeoutError(SyncError):
    """The pass ran past its wall-clock budget."""


class MetaSyncEngine:
    """One engine instance can run many passes; each pass is one SyncRun."""

    def __init__(
        self,
        client: MetaClient,
        db_engine: Optional[Engine] = None,
        account_override: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        batch_size: Optional[int] = None,
        structural_since: Optional[str] = None,
        lookback_days: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
        serialize_storage: Optional[bool] = None,
    ):
        if db_engine is None:
            from metasync.database import engine as default_engine

            db_engine = default_engine

        self.client = client
        self.endpoints = MetaEndpoints(client)
        self.db_engine = db_engine
        self.account_override = (
            settings.meta_ad_account_id if account_override is None else account_override
        )
        self.timeout_seconds = timeout_seconds or settings.sync_timeout_seconds
        self.batch_size = batch_size or settings.sync_batch_size
        self.structural_since = structural_since or settings.sync_structural_since
        self.lookback_days = lookback_days or settings.sync_lookback_days
        self.clock = clock
        # SQLite has one writer (and in-memory, one shared connection); threads take turns
        if serialize_storage is None:
            serialize_storage = db_engine.dialect.name == "sqlite"
        self._storage_lock = threading.Lock() if serialize_storage else None

    # ── Public entry point ──

    async def run_sync(
        self, config: Optional[SyncConfig] = None, triggered_by: Optional[str] = None
    ) -> SyncResult:
        config = config or SyncConfig()
        with Session(self.db_engine) as session:
            run = ledger.start_run(
                session,
                triggered_by=triggered_by,
                config_snapshot=config.model_dump(mode="json"),
            )
            run_id = run.id

        log = bind_logger(logger, sync_run_id=run_id)
        counts = SyncCounts()

        try:
            started = self.clock()
            log.info("Starting sync...")

            account_ids = await self._resolve_accounts(config, counts, log)
            log.info(f"Syncing {len(account_ids)} accounts")

            date_range = self._resolve_date_range(config)
            log.info(f"Insights date range: {date_range.since} to {date_range.until}")

            for account_id in account_ids:
                if self.clock() - started > self.timeout_seconds:
                    raise SyncTimeoutError(
                        f"Sync timeout exceeded ({self.timeout_seconds / 60:g} minutes)"
                    )
                await self._sync_account(
                    account_id, date_range, counts, log.bind(account_id=account_id)
                )

        except Exception as e:
            error_message = str(e) or e.__class__.__name__
            log.error(f"Sync failed: {error_message}")
            with Session(self.db_engine) as session:
                ledger.finish_run(
                    session, run_id, SyncStatus.FAILED, counts, error=error_message
                )
            return SyncResult(
                sync_run_id=run_id,
                status=SyncStatus.FAILED,
                counts=counts,
                error=error_message,
            )

        with Session(self.db_engine) as session:
            ledger.finish_run(session, run_id, SyncStatus.SUCCESS, counts)
        log.info("Sync completed successfully")
        return SyncResult(sync_run_id=run_id, status=SyncStatus.SUCCESS, counts=counts)

    # ── Account resolution ──

    async def _resolve_accounts(
        self, config: SyncConfig, counts: SyncCounts, log: SyncLogAdapter
    ) -> List[str]:
        """Override account, else caller ids, else everything the token sees."""
        if self.account_override:
            account_id = self.account_override
            log = log.bind(account_id=account_id)
            log.info(f"Using account override from environment: {account_id}")
            try:
                account = await self.endpoints.fetch_account(account_id)
                with Session(self.db_engine) as session:
                    transformer.upsert_account(session, {**account, "id": account_id})
                log.info(f"Account: {account.get('name')}")
            except Exception as e:
                log.warning(f"Could not fetch account details: {e}")
                with Session(self.db_engine) as session:
                    transformer.ensure_account(session, account_id)
            counts.accounts = 1
            return [account_id]

        if config.account_ids:
            with Session(self.db_engine) as session:
                for account_id in config.account_ids:
                    transformer.ensure_account(session, account_id)
            counts.accounts = len(config.account_ids)
            return list(config.account_ids)

        try:
            accounts = await self.endpoints.fetch_accounts()
        except Exception as e:
            raise SyncError(
                "Failed to fetch accounts and no META_AD_ACCOUNT_ID configured. "
                f"Error: {e}"
            ) from e

        with Session(self.db_engine) as session:
            for account in accounts:
                transformer.upsert_account(session, account)
                counts.accounts += 1
        log.info(f"Found {len(accounts)} accessible accounts")
        return [account["id"] for account in accounts]

    def _resolve_date_range(self, config: SyncConfig) -> DateRange:
        if config.date_range:
            return config.date_range
        today = datetime.now(timezone.utc).date()
        return DateRange(
            since=(today - timedelta(days=self.lookback_days)).isoformat(),
            until=today.isoformat(),
        )

    # ── Per-account pass ──

    def _campaign_count(self, account_id: str) -> int:
        with Session(self.db_engine) as session:
            return session.exec(
                select(func.count())
                .select_from(MetaCampaign)
                .where(MetaCampaign.account_id == account_id)
            ).one()

    async def _sync_account(
        self, account_id: str, date_range: DateRange, counts: SyncCounts, log: SyncLogAdapter
    ) -> None:
        log.info(f"Syncing account {account_id}...")

        # Presence of any campaign marks the account as initialised
        existing_campaigns = self._campaign_count(account_id)
        if existing_campaigns == 0:
            log.info("First sync - fetching campaigns, adsets, and ads...")
            await self._sync_structure(account_id, counts, log)
        else:
            log.info(
                f"Skipping campaigns/adsets/ads sync "
                f"({existing_campaigns} campaigns already exist)"
            )

        insights = await self.endpoints.fetch_bulk_insights(
            account_id,
            level="ad",
            time_range={"since": date_range.since, "until": date_range.until},
        )
        if not insights:
            log.warning(
                f"No insights returned for account {account_id} between "
                f"{date_range.since} and {date_range.until}"
            )

        tally = await self._upsert_batch(
            transformer.upsert_insight, account_id, insights, "insight"
        )
        counts.insights += tally.success
        counts.insights_skipped += tally.skipped
        counts.errors += tally.errors
        log.info(
            f"Synced {tally.success} insights ({tally.skipped} skipped, "
            f"{tally.errors} errors)"
        )

    async def _sync_structure(
        self, account_id: str, counts: SyncCounts, log: SyncLogAdapter
    ) -> None:
        """Campaigns, then adsets, then ads so parents always land first."""
        since = self.structural_since

        campaigns = await self.endpoints.fetch_campaigns(account_id, since=since)
        log.info(f"Fetched {len(campaigns)} campaigns from API (since {since})")
        tally = await self._upsert_batch(
            transformer.upsert_campaign, account_id, campaigns, "campaign"
        )
        counts.campaigns += tally.success
        counts.errors += tally.errors

        adsets = await self.endpoints.fetch_adsets(account_id, since=since)
        log.info(f"Fetched {len(adsets)} adsets from API (since {since})")
        tally = await self._upsert_batch(
            transformer.upsert_adset, account_id, adsets, "adset"
        )
        counts.adsets += tally.success
        counts.errors += tally.errors

        ads = await self.endpoints.fetch_ads(account_id, since=since)
        log.info(f"Fetched {len(ads)} ads from API (since {since})")
        tally = await self._upsert_batch(transformer.upsert_ad, account_id, ads, "ad")
        counts.ads += tally.success
        counts.errors += tally.errors

    def _upsert_one(
        self, upsert: Upsert, account_id: str, row: Dict[str, Any]
    ) -> UpsertOutcome:
        # Own session per record so one failed commit can't poison the rest
        guard = self._storage_lock or contextlib.nullcontext()
        with guard, Session(self.db_engine) as session:
            return upsert(session, account_id, row)

    async def _upsert_batch(
        self,
        upsert: Upsert,
        account_id: str,
        rows: List[Dict[str, Any]],
        label: str,
    ) -> BatchTally:
        async def handle(row: Dict[str, Any]) -> UpsertOutcome:
            return await asyncio.to_thread(self._upsert_one, upsert, account_id, row)

        return await run_in_batches(rows, handle, batch_size=self.batch_size, label=label)


async def run_meta_sync(
    client: MetaClient,
    config: Optional[SyncConfig] = None,
    triggered_by: Optional[str] = None,
    db_engine: Optional[Engine] = None,
) -> SyncResult:
    """Run one sync pass with default engine settings."""
    engine = MetaSyncEngine(client, db_engine=db_engine)
    return await engine.run_sync(config, triggered_by)
