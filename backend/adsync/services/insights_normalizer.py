"""Normalize raw Meta insights rows into one canonical row shape.

WHAT:
    Validates each raw report row once, through a pydantic model chosen by
    the task's level, and converts it into an immutable
    `NormalizedInsightRow`. Rows missing the level's entity id are dropped.

WHY:
    - Raw payloads differ by level (entity ids only exist below account
      level) and by breakdown set. Everything downstream works with one
      shape and never looks at the raw dict again.
    - Numbers parse permissively: absent or non-numeric values become None,
      not 0. A None conversion count means "not measured"; 0 means
      "measured, none happened".
    - Purchase counts/values live inside `actions` / `action_values` lists
      keyed by action type and are picked by case-insensitive substring.

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/reference/ads-action-stats/
    - backend/adsync/services/insights_storage.py (consumer)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

logger = logging.getLogger(__name__)


ENTITY_ID_FIELD = {
    "account": "account_id",
    "campaign": "campaign_id",
    "adset": "adset_id",
    "ad": "ad_id",
}


# =============================================================================
# PARSING HELPERS
# =============================================================================

def parse_number(value: Any) -> Optional[float]:
    """Parse Meta's numeric strings; None for absent, non-numeric or non-finite."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _as_int(value: Optional[float]) -> Optional[int]:
    return int(round(value)) if value is not None else None


def extract_action_value(items: Optional[Sequence[Mapping[str, Any]]], needle: str) -> Optional[float]:
    """First parseable `value` whose `action_type` contains `needle` (case-insensitive)."""
    if not items:
        return None
    needle = needle.lower()
    for item in items:
        action_type = str(item.get("action_type") or "").lower()
        if needle in action_type:
            number = parse_number(item.get("value"))
            if number is not None:
                return number
    return None


# =============================================================================
# RAW PAYLOAD MODELS (tagged by level)
# =============================================================================

class _RawInsightRow(BaseModel):
    model_config = ConfigDict(extra="allow")

    date_start: date
    date_stop: Optional[date] = None

    account_id: Optional[str] = None
    account_name: Optional[str] = None
    account_currency: Optional[str] = None
    campaign_id: Optional[str] = None
    campaign_name: Optional[str] = None
    adset_id: Optional[str] = None
    adset_name: Optional[str] = None
    ad_id: Optional[str] = None
    ad_name: Optional[str] = None
    objective: Optional[str] = None
    buying_type: Optional[str] = None

    spend: Optional[float] = None
    impressions: Optional[float] = None
    reach: Optional[float] = None
    clicks: Optional[float] = None
    unique_clicks: Optional[float] = None
    inline_link_clicks: Optional[float] = None
    cpm: Optional[float] = None
    cpc: Optional[float] = None
    ctr: Optional[float] = None
    frequency: Optional[float] = None

    actions: Optional[List[Dict[str, Any]]] = None
    action_values: Optional[List[Dict[str, Any]]] = None
    conversions: Optional[List[Dict[str, Any]]] = None
    purchase_roas: Optional[List[Dict[str, Any]]] = None
    cost_per_action_type: Optional[List[Dict[str, Any]]] = None

    @field_validator(
        "account_id", "campaign_id", "adset_id", "ad_id",
        "account_name", "account_currency", "campaign_name", "adset_name", "ad_name",
        "objective", "buying_type",
        mode="before",
    )
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip() or None
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("date_stop", mode="before")
    @classmethod
    def _lenient_date_stop(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return date.fromisoformat(value[:10])
            except ValueError:
                return None
        return value

    @field_validator(
        "spend", "impressions", "reach", "clicks", "unique_clicks", "inline_link_clicks",
        "cpm", "cpc", "ctr", "frequency",
        mode="before",
    )
    @classmethod
    def _permissive_number(cls, value: Any) -> Optional[float]:
        return parse_number(value)

    @field_validator(
        "actions", "action_values", "conversions", "purchase_roas", "cost_per_action_type",
        mode="before",
    )
    @classmethod
    def _action_list(cls, value: Any) -> Optional[List[Dict[str, Any]]]:
        if isinstance(value, list):
            return [item for item in value if isinstance(item, dict)]
        if isinstance(value, dict):
            # Some action fields come back as a single object
            return [value]
        return None


class AccountInsightRow(_RawInsightRow):
    level: Literal["account"]
    account_id: str


class CampaignInsightRow(_RawInsightRow):
    level: Literal["campaign"]
    campaign_id: str


class AdsetInsightRow(_RawInsightRow):
    level: Literal["adset"]
    adset_id: str


class AdInsightRow(_RawInsightRow):
    level: Literal["ad"]
    ad_id: str


RawInsightRow = Annotated[
    Union[AccountInsightRow, CampaignInsightRow, AdsetInsightRow, AdInsightRow],
    Field(discriminator="level"),
]

_raw_row_adapter: TypeAdapter = TypeAdapter(RawInsightRow)


# =============================================================================
# CANONICAL ROW
# =============================================================================

@dataclass(frozen=True)
class NormalizedInsightRow:
    """One normalized daily insights row; immutable once built."""

    level: str
    entity_id: str
    date_start: date
    date_stop: date
    account_id: Optional[str] = None
    account_name: Optional[str] = None
    campaign_id: Optional[str] = None
    campaign_name: Optional[str] = None
    adset_id: Optional[str] = None
    adset_name: Optional[str] = None
    ad_id: Optional[str] = None
    ad_name: Optional[str] = None
    currency: Optional[str] = None
    spend: Optional[float] = None
    impressions: Optional[int] = None
    reach: Optional[int] = None
    clicks: Optional[int] = None
    unique_clicks: Optional[int] = None
    inline_link_clicks: Optional[int] = None
    conversions: Optional[float] = None
    purchases: Optional[float] = None
    add_to_cart: Optional[float] = None
    leads: Optional[float] = None
    revenue: Optional[float] = None
    cpm: Optional[float] = None
    cpc: Optional[float] = None
    ctr: Optional[float] = None
    frequency: Optional[float] = None
    objective: Optional[str] = None
    buying_type: Optional[str] = None
    actions: Optional[List[Dict[str, Any]]] = None
    action_values: Optional[List[Dict[str, Any]]] = None
    purchase_roas: Optional[List[Dict[str, Any]]] = None
    cost_per_action_type: Optional[List[Dict[str, Any]]] = None
    breakdowns: Dict[str, Optional[str]] = field(default_factory=dict)


def _breakdown_value(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def normalize_insight_row(
    raw: Mapping[str, Any],
    level: str,
    breakdown_fields: Sequence[str] = (),
) -> Optional[NormalizedInsightRow]:
    """Convert one raw row for a task at `level`; None when the row is unusable.

    A row is unusable when it lacks the level's entity id or a parseable
    `date_start`.
    """
    if level not in ENTITY_ID_FIELD:
        raise ValueError(f"Unknown insights level: {level}")

    try:
        row = _raw_row_adapter.validate_python({**raw, "level": level})
    except ValidationError as exc:
        logger.debug("[META_NORMALIZE] Dropping %s row: %s", level, exc.errors()[:1])
        return None

    breakdowns = {name: _breakdown_value(raw.get(name)) for name in breakdown_fields}

    return NormalizedInsightRow(
        level=level,
        entity_id=getattr(row, ENTITY_ID_FIELD[level]),
        date_start=row.date_start,
        date_stop=row.date_stop or row.date_start,
        account_id=row.account_id,
        account_name=row.account_name,
        campaign_id=row.campaign_id,
        campaign_name=row.campaign_name,
        adset_id=row.adset_id,
        adset_name=row.adset_name,
        ad_id=row.ad_id,
        ad_name=row.ad_name,
        currency=row.account_currency,
        spend=row.spend,
        impressions=_as_int(row.impressions),
        reach=_as_int(row.reach),
        clicks=_as_int(row.clicks),
        unique_clicks=_as_int(row.unique_clicks),
        inline_link_clicks=_as_int(row.inline_link_clicks),
        conversions=extract_action_value(row.conversions, "purchase"),
        purchases=extract_action_value(row.actions, "purchase"),
        add_to_cart=extract_action_value(row.actions, "add_to_cart"),
        leads=extract_action_value(row.actions, "lead"),
        revenue=extract_action_value(row.action_values, "purchase"),
        cpm=row.cpm,
        cpc=row.cpc,
        ctr=row.ctr,
        frequency=row.frequency,
        objective=row.objective,
        buying_type=row.buying_type,
        actions=row.actions,
        action_values=row.action_values,
        purchase_roas=row.purchase_roas,
        cost_per_action_type=row.cost_per_action_type,
        breakdowns=breakdowns,
    )


def normalize_insight_rows(
    raw_rows: Sequence[Mapping[str, Any]],
    level: str,
    breakdown_fields: Sequence[str] = (),
) -> List[NormalizedInsightRow]:
    """Normalize a page of rows, dropping unusable ones."""
    rows: List[NormalizedInsightRow] = []
    dropped = 0
    for raw in raw_rows:
        normalized = normalize_insight_row(raw, level, breakdown_fields)
        if normalized is None:
            dropped += 1
        else:
            rows.append(normalized)
    if dropped:
        logger.info("[META_NORMALIZE] Dropped %d/%d %s rows without a usable id or date", dropped, len(raw_rows), level)
    return rows
