"""MetaSync — Meta Raw → Stored Entity Transformer.

Converts raw Graph API rows into mirrored entity rows and upserts them.
Structural entities overwrite their mutable fields on conflict but keep
their id and parent linkage. Daily insights are keyed on (ad_id, date)
and are only written for ads that already exist locally.
"""

from datetime import date, datetime, timezone
from typing import Any, Dict, Optional, Tuple, Type

from sqlmodel import Session, SQLModel, select

from metasync.models.entity_models import (
    MetaAccount,
    MetaAd,
    MetaAdSet,
    MetaCampaign,
    MetaInsightDaily,
)
from metasync.sync.batching import UpsertOutcome
from metasync.core.logging import get_logger

logger = get_logger("meta.transformer")

PURCHASE_ACTION_TYPES = ("purchase", "offsite_conversion.fb_pixel_purchase")
LINK_CLICK_ACTION_TYPE = "link_click"

# Graph API timestamps look like 2025-01-15T09:30:00+0000
GRAPH_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def _safe_float(value: Any) -> float:
    """Safely convert a value to float."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _safe_int(value: Any) -> int:
    """Integer part of a numeric string; 0 when unparseable."""
    try:
        return int(value)
    except (TypeError, ValueError):
        pass
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return 0


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(value, GRAPH_TIME_FORMAT)
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        logger.warning(f"Unparseable timestamp from Meta: {value!r}")
        return None
    # Offset-less timestamps are UTC
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_date(value: Optional[str]) -> date:
    """Insight row date; rows without date_start land on today."""
    if value:
        return datetime.strptime(value, "%Y-%m-%d").date()
    return datetime.now(timezone.utc).date()


def _find_action_value(actions: Any, action_types: Tuple[str, ...]) -> Optional[Any]:
    for action in actions or []:
        if action.get("action_type") in action_types:
            return action.get("value")
    return None


# ── Derived metrics ──


def extract_purchases(row: Dict[str, Any]) -> Tuple[int, float]:
    """Purchase count and purchase value from the action blobs."""
    purchases = _safe_int(_find_action_value(row.get("actions"), PURCHASE_ACTION_TYPES))
    purchase_value = _safe_float(
        _find_action_value(row.get("action_values"), PURCHASE_ACTION_TYPES)
    )
    return purchases, purchase_value


def compute_roas(purchase_value: float, spend: float) -> float:
    """Return on ad spend; 0 when nothing was spent."""
    if spend > 0:
        return purchase_value / spend
    return 0.0


def get_link_clicks(row: Dict[str, Any]) -> int:
    """Prefer the dedicated field, fall back to the link_click action."""
    if row.get("link_clicks"):
        return _safe_int(row["link_clicks"])
    return _safe_int(
        _find_action_value(row.get("actions"), (LINK_CLICK_ACTION_TYPE,))
    )


# ── Structural upserts ──


def _upsert(
    session: Session,
    model: Type[SQLModel],
    entity_id: str,
    linkage: Dict[str, Any],
    values: Dict[str, Any],
) -> SQLModel:
    """Insert with linkage + values, or overwrite only values on conflict."""
    if not entity_id:
        raise ValueError(f"{model.__name__} row without id")
    existing = session.get(model, entity_id)
    if existing is None:
        existing = model(id=entity_id, **linkage, **values)
    else:
        for key, value in values.items():
            setattr(existing, key, value)
    session.add(existing)
    session.commit()
    return existing


def upsert_account(session: Session, row: Dict[str, Any]) -> UpsertOutcome:
    _upsert(
        session,
        MetaAccount,
        row.get("id", ""),
        {},
        {
            "name": row.get("name") or "",
            "currency": row.get("currency"),
            "timezone": row.get("timezone_name"),
            "updated_at": datetime.now(timezone.utc),
        },
    )
    return UpsertOutcome.SUCCESS


def ensure_account(session: Session, account_id: str) -> bool:
    """Id-only account row so children can reference it. True if created."""
    if session.get(MetaAccount, account_id) is not None:
        return False
    session.add(MetaAccount(id=account_id, name=account_id))
    session.commit()
    logger.info(f"Created placeholder account {account_id}", extra={"account_id": account_id})
    return True


def upsert_campaign(
    session: Session, account_id: str, row: Dict[str, Any]
) -> UpsertOutcome:
    _upsert(
        session,
        MetaCampaign,
        row.get("id", ""),
        {"account_id": account_id},
        {
            "name": row.get("name") or "",
            "status": row.get("status") or "",
            "objective": row.get("objective"),
            "created_time": _parse_time(row.get("created_time")),
            "start_time": _parse_time(row.get("start_time")),
            "stop_time": _parse_time(row.get("stop_time")),
            "updated_time": _parse_time(row.get("updated_time")),
        },
    )
    return UpsertOutcome.SUCCESS


def upsert_adset(
    session: Session, account_id: str, row: Dict[str, Any]
) -> UpsertOutcome:
    bid_amount = row.get("bid_amount")
    _upsert(
        session,
        MetaAdSet,
        row.get("id", ""),
        {"account_id": account_id, "campaign_id": row.get("campaign_id")},
        {
            "name": row.get("name") or "",
            "status": row.get("status") or "",
            "targeting": row.get("targeting"),
            "billing_event": row.get("billing_event"),
            "optimization_goal": row.get("optimization_goal"),
            "bid_amount": _safe_int(bid_amount) if bid_amount is not None else None,
            "created_time": _parse_time(row.get("created_time")),
            "start_time": _parse_time(row.get("start_time")),
            "end_time": _parse_time(row.get("end_time")),
            "updated_time": _parse_time(row.get("updated_time")),
        },
    )
    return UpsertOutcome.SUCCESS


def upsert_ad(session: Session, account_id: str, row: Dict[str, Any]) -> UpsertOutcome:
    _upsert(
        session,
        MetaAd,
        row.get("id", ""),
        {
            "account_id": account_id,
            "adset_id": row.get("adset_id"),
            "campaign_id": row.get("campaign_id"),
        },
        {
            "name": row.get("name") or "",
            "status": row.get("status") or "",
            "creative": row.get("creative"),
            "created_time": _parse_time(row.get("created_time")),
            "updated_time": _parse_time(row.get("updated_time")),
        },
    )
    return UpsertOutcome.SUCCESS


# ── Insights ──


def upsert_insight(
    session: Session, account_id: str, row: Dict[str, Any]
) -> UpsertOutcome:
    """Upsert one ad-day of metrics.

    Rows without an ad_id, or for an ad not stored locally (deleted or
    archived on Meta's side), are skipped rather than written with a
    dangling reference.
    """
    purchases, purchase_value = extract_purchases(row)
    spend = _safe_float(row.get("spend"))
    roas = compute_roas(purchase_value, spend)

    ad_id = row.get("ad_id")
    if not ad_id:
        logger.warning("Insight missing ad_id, skipping", extra={"account_id": account_id})
        return UpsertOutcome.SKIPPED

    ad = session.get(MetaAd, ad_id)
    if ad is None:
        logger.warning(
            f"Skipping insight for unknown ad {ad_id}", extra={"account_id": account_id}
        )
        return UpsertOutcome.SKIPPED

    day = _parse_date(row.get("date_start"))
    values = {
        "impressions": _safe_int(row.get("impressions")),
        "reach": _safe_int(row.get("reach")),
        "clicks": _safe_int(row.get("clicks")),
        "link_clicks": get_link_clicks(row),
        "spend": spend,
        "cpc": _safe_float(row.get("cpc")),
        "cpm": _safe_float(row.get("cpm")),
        "ctr": _safe_float(row.get("ctr")),
        "frequency": _safe_float(row.get("frequency")),
        "actions": row.get("actions"),
        "action_values": row.get("action_values"),
        "purchases": purchases,
        "purchase_value": purchase_value,
        "roas": roas,
        "updated_at": datetime.now(timezone.utc),
    }

    existing = session.exec(
        select(MetaInsightDaily).where(
            MetaInsightDaily.ad_id == ad_id,
            MetaInsightDaily.date == day,
        )
    ).first()

    if existing:
        for key, value in values.items():
            setattr(existing, key, value)
    else:
        existing = MetaInsightDaily(
            ad_id=ad_id,
            date=day,
            account_id=account_id,
            campaign_id=row.get("campaign_id") or ad.campaign_id,
            adset_id=row.get("adset_id") or ad.adset_id,
            **values,
        )
    session.add(existing)
    session.commit()
    return UpsertOutcome.SUCCESS
