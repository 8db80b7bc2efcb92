"""End-to-end sync pass tests against a stubbed Graph API.

Run with: pytest tests/test_sync_engine.py -v
"""

import threading
import time
from datetime import date, timedelta

import httpx
import pytest
from sqlmodel import Session, select

from metasync.models.entity_models import (
    MetaAccount,
    MetaAd,
    MetaAdSet,
    MetaCampaign,
    MetaInsightDaily,
)
from metasync.connectors.meta import transformer
from metasync.models.sync_models import DateRange, SyncConfig, SyncRun, SyncStatus
from metasync.sync.batching import UpsertOutcome
from metasync.sync.engine import MetaSyncEngine, run_meta_sync

WINDOW = SyncConfig(date_range=DateRange(since="2025-03-01", until="2025-03-02"))


def _engine(meta_client, db_engine, **kwargs):
    kwargs.setdefault("account_override", "")
    return MetaSyncEngine(meta_client, db_engine=db_engine, **kwargs)


def _insight(ad_id, day="2025-03-01", spend="10.00", value="30.00"):
    return {
        "ad_id": ad_id,
        "adset_id": "as_1",
        "campaign_id": "cmp_1",
        "date_start": day,
        "date_stop": day,
        "impressions": "500",
        "reach": "400",
        "clicks": "20",
        "spend": spend,
        "actions": [{"action_type": "purchase", "value": "1"}],
        "action_values": [{"action_type": "purchase", "value": value}],
    }


def _stub_structure(graph, account_id="act_1"):
    graph.add(
        f"/{account_id}/campaigns",
        {"data": [{"id": "cmp_1", "name": "Spring", "status": "ACTIVE",
                   "objective": "OUTCOME_SALES", "created_time": "2025-01-05T10:00:00+0000"}]},
    )
    graph.add(
        f"/{account_id}/adsets",
        {"data": [{"id": "as_1", "campaign_id": "cmp_1", "name": "Broad", "status": "ACTIVE",
                   "targeting": {"age_min": 18}}]},
    )
    graph.add(
        f"/{account_id}/ads",
        {"data": [
            {"id": "ad_1", "adset_id": "as_1", "campaign_id": "cmp_1", "name": "Video A",
             "status": "ACTIVE", "creative": {"id": "cr_1"}},
            {"id": "ad_2", "adset_id": "as_1", "campaign_id": "cmp_1", "name": "Video B",
             "status": "PAUSED", "creative": {"id": "cr_2"}},
        ]},
    )


def _seed_existing_account(db_engine):
    """act_1 already synced: 3 campaigns, 1 adset, ads ad_1 and ad_2."""
    with Session(db_engine) as session:
        session.add(MetaAccount(id="act_1", name="Main"))
        session.commit()
        for i in (1, 2, 3):
            session.add(MetaCampaign(id=f"cmp_{i}", account_id="act_1", name=f"C{i}"))
        session.commit()
        session.add(MetaAdSet(id="as_1", account_id="act_1", campaign_id="cmp_1"))
        session.commit()
        for ad_id in ("ad_1", "ad_2"):
            session.add(MetaAd(id=ad_id, account_id="act_1", adset_id="as_1", campaign_id="cmp_1"))
        session.commit()


def _stored_run(db_engine, run_id) -> SyncRun:
    with Session(db_engine) as session:
        return session.get(SyncRun, run_id)


@pytest.mark.asyncio
async def test_empty_account_syncs_successfully(graph, meta_client, db_engine):
    graph.add("/act_1", {"id": "act_1", "name": "Main", "currency": "EUR",
                         "timezone_name": "Europe/Amsterdam"})
    for edge in ("campaigns", "adsets", "ads", "insights"):
        graph.add(f"/act_1/{edge}", {"data": []})

    result = await _engine(meta_client, db_engine, account_override="act_1").run_sync(
        WINDOW, triggered_by="automated"
    )

    assert result.status == SyncStatus.SUCCESS
    assert result.error is None
    counts = result.counts
    assert (counts.accounts, counts.campaigns, counts.adsets, counts.ads, counts.insights) == (
        1, 0, 0, 0, 0,
    )
    run = _stored_run(db_engine, result.sync_run_id)
    assert run.status == SyncStatus.SUCCESS
    assert run.triggered_by == "automated"
    assert run.finished_at is not None
    with Session(db_engine) as session:
        assert session.get(MetaAccount, "act_1").currency == "EUR"


@pytest.mark.asyncio
async def test_existing_campaigns_skip_structure_and_unknown_ads(graph, meta_client, db_engine):
    _seed_existing_account(db_engine)
    graph.add(
        "/act_1/insights",
        {"data": [_insight("ad_1"), _insight("ad_2"), _insight("ad_unknown")]},
    )

    result = await _engine(meta_client, db_engine).run_sync(
        SyncConfig(account_ids=["act_1"], date_range=WINDOW.date_range)
    )

    assert result.status == SyncStatus.SUCCESS
    assert result.counts.insights == 2
    assert result.counts.insights_skipped == 1
    assert result.counts.errors == 0
    assert graph.calls("/act_1/campaigns") == []
    assert graph.calls("/act_1/adsets") == []
    assert graph.calls("/act_1/ads") == []
    with Session(db_engine) as session:
        stored = session.exec(select(MetaInsightDaily.ad_id)).all()
    assert sorted(stored) == ["ad_1", "ad_2"]
    assert _stored_run(db_engine, result.sync_run_id).insights_skipped_count == 1


@pytest.mark.asyncio
async def test_timeout_fails_run_with_partial_counts(graph, meta_client, db_engine):
    for account_id in ("act_1", "act_2"):
        _stub_structure(graph, account_id)
        graph.add(f"/{account_id}/insights", {"data": [_insight("ad_1")]})

    # start, check before act_1, check before act_2
    ticks = iter([0.0, 0.0, 601.0])
    engine = _engine(meta_client, db_engine, clock=lambda: next(ticks))

    result = await engine.run_sync(SyncConfig(account_ids=["act_1", "act_2"],
                                              date_range=WINDOW.date_range))

    assert result.status == SyncStatus.FAILED
    assert "timeout" in result.error.lower()
    assert result.counts.campaigns == 1
    assert result.counts.ads == 2
    assert result.counts.insights == 1
    assert graph.calls("/act_2/campaigns") == []
    run = _stored_run(db_engine, result.sync_run_id)
    assert run.status == SyncStatus.FAILED
    assert run.error == result.error
    assert run.insights_count == 1


@pytest.mark.asyncio
async def test_rerun_is_idempotent(graph, meta_client, db_engine):
    graph.add("/me/adaccounts", {"data": [{"id": "act_1", "name": "Main", "currency": "USD"}]})
    _stub_structure(graph)
    graph.add("/act_1/insights", {"data": [_insight("ad_1"), _insight("ad_2", spend="0")]})

    def snapshot():
        with Session(db_engine) as session:
            rows = session.exec(select(MetaInsightDaily).order_by(MetaInsightDaily.ad_id)).all()
            return [(r.ad_id, r.date, r.spend, r.roas, r.purchases) for r in rows]

    first = await _engine(meta_client, db_engine).run_sync(WINDOW)
    after_first = snapshot()
    second = await _engine(meta_client, db_engine).run_sync(WINDOW)

    assert first.status == second.status == SyncStatus.SUCCESS
    assert first.counts.campaigns == 1 and first.counts.adsets == 1 and first.counts.ads == 2
    assert second.counts.campaigns == 0
    assert snapshot() == after_first
    assert after_first == [
        ("ad_1", date(2025, 3, 1), 10.0, 3.0, 1),
        ("ad_2", date(2025, 3, 1), 0.0, 0.0, 1),
    ]
    assert len(graph.calls("/act_1/campaigns")) == 1


@pytest.mark.asyncio
async def test_account_listing_failure_is_reported_not_raised(graph, meta_client, db_engine):
    graph.add(
        "/me/adaccounts",
        httpx.Response(400, json={"error": {"message": "Invalid OAuth access token", "code": 190}}),
    )

    result = await _engine(meta_client, db_engine).run_sync()

    assert result.status == SyncStatus.FAILED
    assert result.error.startswith("Failed to fetch accounts")
    assert "Invalid OAuth access token" in result.error
    assert _stored_run(db_engine, result.sync_run_id).status == SyncStatus.FAILED


@pytest.mark.asyncio
async def test_override_account_lookup_failure_is_not_fatal(graph, meta_client, db_engine):
    graph.add("/act_7", httpx.Response(400, json={"error": {"message": "Unsupported get", "code": 100}}))
    for edge in ("campaigns", "adsets", "ads", "insights"):
        graph.add(f"/act_7/{edge}", {"data": []})

    result = await _engine(meta_client, db_engine, account_override="act_7").run_sync(WINDOW)

    assert result.status == SyncStatus.SUCCESS
    assert result.counts.accounts == 1
    with Session(db_engine) as session:
        assert session.get(MetaAccount, "act_7") is not None


@pytest.mark.asyncio
async def test_override_wins_over_caller_account_ids(graph, meta_client, db_engine):
    graph.add("/act_1", {"id": "act_1", "name": "Main"})
    for edge in ("campaigns", "adsets", "ads", "insights"):
        graph.add(f"/act_1/{edge}", {"data": []})

    result = await _engine(meta_client, db_engine, account_override="act_1").run_sync(
        SyncConfig(account_ids=["act_2"], date_range=WINDOW.date_range)
    )

    assert result.status == SyncStatus.SUCCESS
    assert graph.calls("/act_2/insights") == []


@pytest.mark.asyncio
async def test_bad_record_does_not_abort_batch(graph, meta_client, db_engine):
    graph.add("/act_1/campaigns", {"data": [{"id": "cmp_1", "name": "Spring", "status": "ACTIVE"}]})
    graph.add(
        "/act_1/adsets",
        {"data": [
            {"id": "as_1", "campaign_id": "cmp_1", "name": "Broad", "status": "ACTIVE"},
            # Parent campaign was never fetched; FK rejects it
            {"id": "as_bad", "campaign_id": "cmp_missing", "name": "Orphan", "status": "ACTIVE"},
        ]},
    )
    graph.add("/act_1/ads", {"data": [{"id": "ad_1", "adset_id": "as_1", "campaign_id": "cmp_1"}]})
    graph.add("/act_1/insights", {"data": [_insight("ad_1")]})

    result = await _engine(meta_client, db_engine).run_sync(
        SyncConfig(account_ids=["act_1"], date_range=WINDOW.date_range)
    )

    assert result.status == SyncStatus.SUCCESS
    assert result.counts.adsets == 1
    assert result.counts.errors == 1
    assert result.counts.insights == 1
    with Session(db_engine) as session:
        assert session.get(MetaAdSet, "as_bad") is None


@pytest.mark.asyncio
async def test_default_window_is_last_90_days(graph, meta_client, db_engine):
    graph.add("/act_1/campaigns", {"data": []})
    graph.add("/act_1/adsets", {"data": []})
    graph.add("/act_1/ads", {"data": []})
    graph.add("/act_1/insights", {"data": []})

    await run_meta_sync(meta_client, SyncConfig(account_ids=["act_1"]), db_engine=db_engine)

    time_range = graph.calls("/act_1/insights")[0].url.params["time_range"]
    today = date.today()
    # Engine uses UTC; allow for running right around midnight
    assert any(
        f'"until":"{d.isoformat()}"' in time_range
        and f'"since":"{(d - timedelta(days=90)).isoformat()}"' in time_range
        for d in (today - timedelta(days=1), today, today + timedelta(days=1))
    )


@pytest.mark.asyncio
async def test_batch_members_upsert_concurrently(graph, meta_client, db_engine, monkeypatch):
    _seed_existing_account(db_engine)
    graph.add(
        "/act_1/insights",
        {"data": [_insight("ad_1", day=f"2025-03-{d:02d}") for d in range(1, 11)]},
    )
    lock = threading.Lock()
    in_flight = {"now": 0, "max": 0}

    def slow_upsert(session, account_id, row):
        with lock:
            in_flight["now"] += 1
            in_flight["max"] = max(in_flight["max"], in_flight["now"])
        time.sleep(0.05)
        with lock:
            in_flight["now"] -= 1
        return UpsertOutcome.SUCCESS

    monkeypatch.setattr(transformer, "upsert_insight", slow_upsert)
    engine = _engine(meta_client, db_engine, batch_size=10, serialize_storage=False)

    result = await engine.run_sync(SyncConfig(account_ids=["act_1"], date_range=WINDOW.date_range))

    assert result.status == SyncStatus.SUCCESS
    assert result.counts.insights == 10
    assert in_flight["max"] > 1


@pytest.mark.asyncio
async def test_sqlite_engine_serializes_batch_writes(graph, meta_client, db_engine):
    _seed_existing_account(db_engine)
    graph.add(
        "/act_1/insights",
        {"data": [_insight(ad_id, day=f"2025-03-{d:02d}") for ad_id in ("ad_1", "ad_2")
                  for d in range(1, 7)]},
    )

    engine = _engine(meta_client, db_engine)
    result = await engine.run_sync(SyncConfig(account_ids=["act_1"], date_range=WINDOW.date_range))

    assert engine._storage_lock is not None
    assert result.counts.insights == 12
    assert result.counts.errors == 0
    with Session(db_engine) as session:
        assert len(session.exec(select(MetaInsightDaily)).all()) == 12
