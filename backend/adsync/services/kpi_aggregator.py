"""Daily KPI aggregation for the canonical insights combination.

WHAT:
    Collapses canonical fact rows into one KPI row per calendar day of the
    sync window: summed spend, clicks, conversions and revenue plus three
    ratios (AOV, cost of sale, ROAS).

WHY:
    - Gap filling: a day without rows still gets a row with zeros and the
      carried currency, so "no spend that day" is distinguishable from "we
      never synced that day".
    - Ratios are None when either side is zero or unknown, never a
      division error or a misleading 0.

SOURCES (decided by the orchestrator, see meta_sync_service):
    - Primary: the canonical rows this run produced in memory, when every
      canonical task of the run succeeded.
    - Fallback: `meta_insights_daily` filtered to the canonical key, when
      the canonical pass did not fully succeed this run.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from typing import Dict, Iterable, List, Optional


@dataclass(frozen=True)
class KpiSourceRow:
    """Minimal per-entity-day figures needed for KPI rollups."""

    date: date
    spend: Optional[float] = None
    clicks: Optional[float] = None
    inline_link_clicks: Optional[float] = None
    purchases: Optional[float] = None
    conversions: Optional[float] = None
    revenue: Optional[float] = None
    currency: Optional[str] = None


@dataclass(frozen=True)
class DailyKpi:
    date: date
    currency: Optional[str]
    spend: float
    clicks: float
    conversions: float
    revenue: float
    aov: Optional[float]
    cos: Optional[float]
    roas: Optional[float]


def source_row_from_insight(row) -> KpiSourceRow:
    """KPI inputs from a `NormalizedInsightRow` (primary path)."""
    return KpiSourceRow(
        date=row.date_start,
        spend=row.spend,
        clicks=row.clicks,
        inline_link_clicks=row.inline_link_clicks,
        purchases=row.purchases,
        conversions=row.conversions,
        revenue=row.revenue,
        currency=row.currency,
    )


def safe_ratio(numerator: Optional[float], denominator: Optional[float]) -> Optional[float]:
    """numerator / denominator, or None when either side is zero or unknown."""
    if not numerator or not denominator:
        return None
    return numerator / denominator


def _clicks(row: KpiSourceRow) -> float:
    if row.inline_link_clicks is not None:
        return row.inline_link_clicks
    return row.clicks or 0.0


def _conversions(row: KpiSourceRow) -> float:
    # Both fields carry the same purchase; `conversions` only fills in when no purchase action was reported
    if row.purchases is not None:
        return row.purchases
    return row.conversions or 0.0


def aggregate_daily_kpis(
    rows: Iterable[KpiSourceRow],
    since: date,
    until: date,
    *,
    fallback_currency: Optional[str] = None,
) -> List[DailyKpi]:
    """Aggregate rows by date, emitting exactly one KPI per day in [since, until].

    Rows outside the window are ignored. Conversions count purchases,
    falling back to the platform's `conversions` purchase entry for rows
    without a purchase action.
    """
    totals: Dict[date, Dict[str, float]] = {}
    currency: Optional[str] = None

    for row in rows:
        if row.date < since or row.date > until:
            continue
        if currency is None and row.currency:
            currency = row.currency
        bucket = totals.setdefault(row.date, {"spend": 0.0, "clicks": 0.0, "conversions": 0.0, "revenue": 0.0})
        bucket["spend"] += row.spend or 0.0
        bucket["clicks"] += _clicks(row)
        bucket["conversions"] += _conversions(row)
        bucket["revenue"] += row.revenue or 0.0

    currency = currency or fallback_currency

    kpis: List[DailyKpi] = []
    day = since
    while day <= until:
        values = totals.get(day, {"spend": 0.0, "clicks": 0.0, "conversions": 0.0, "revenue": 0.0})
        kpis.append(
            DailyKpi(
                date=day,
                currency=currency,
                spend=values["spend"],
                clicks=values["clicks"],
                conversions=values["conversions"],
                revenue=values["revenue"],
                aov=safe_ratio(values["revenue"], values["conversions"]),
                cos=safe_ratio(values["spend"], values["revenue"]),
                roas=safe_ratio(values["revenue"], values["spend"]),
            )
        )
        day += timedelta(days=1)
    return kpis
