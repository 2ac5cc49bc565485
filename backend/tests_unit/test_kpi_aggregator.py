"""
KPI Aggregation Tests (Unit)
============================

WHAT: Unit tests for daily KPI rollups from canonical rows.
WHY: KPI rows feed dashboards directly; missing days or divide-by-zero ratios
     show up as wrong charts.

REFERENCES:
- backend/adsync/services/kpi_aggregator.py
"""

from datetime import date

import pytest

from adsync.services.insights_normalizer import normalize_insight_row
from adsync.services.kpi_aggregator import (
    KpiSourceRow,
    aggregate_daily_kpis,
    safe_ratio,
    source_row_from_insight,
)


def test_one_row_per_day_with_gap_filling():
    rows = [
        KpiSourceRow(date=date(2025, 3, 1), spend=10.0, clicks=5, purchases=1, revenue=50.0, currency="EUR"),
        KpiSourceRow(date=date(2025, 3, 3), spend=20.0, clicks=8, purchases=2, revenue=60.0, currency="EUR"),
    ]

    kpis = aggregate_daily_kpis(rows, date(2025, 3, 1), date(2025, 3, 3))

    assert [k.date for k in kpis] == [date(2025, 3, 1), date(2025, 3, 2), date(2025, 3, 3)]
    gap = kpis[1]
    assert (gap.spend, gap.clicks, gap.conversions, gap.revenue) == (0.0, 0.0, 0.0, 0.0)
    assert gap.currency == "EUR"
    assert gap.aov is None and gap.cos is None and gap.roas is None


def test_sums_and_ratios():
    rows = [
        KpiSourceRow(date=date(2025, 3, 1), spend=10.0, clicks=5, purchases=1, conversions=1, revenue=80.0),
        KpiSourceRow(date=date(2025, 3, 1), spend=30.0, clicks=5, purchases=2, revenue=120.0),
    ]

    kpi = aggregate_daily_kpis(rows, date(2025, 3, 1), date(2025, 3, 1))[0]

    assert kpi.spend == 40.0
    assert kpi.conversions == 3.0
    assert kpi.revenue == 200.0
    assert kpi.aov == pytest.approx(200.0 / 3)
    assert kpi.cos == pytest.approx(0.2)
    assert kpi.roas == pytest.approx(5.0)


def test_purchase_reported_in_actions_and_conversions_counted_once():
    raw = {
        "account_id": "100",
        "date_start": "2025-03-01",
        "date_stop": "2025-03-01",
        "spend": "40",
        "actions": [{"action_type": "offsite_conversion.fb_pixel_purchase", "value": "2"}],
        "action_values": [{"action_type": "offsite_conversion.fb_pixel_purchase", "value": "100"}],
        "conversions": [{"action_type": "offsite_conversion.fb_pixel_purchase", "value": "2"}],
    }
    row = source_row_from_insight(normalize_insight_row(raw, "account"))

    kpi = aggregate_daily_kpis([row], date(2025, 3, 1), date(2025, 3, 1))[0]

    assert kpi.conversions == 2.0
    assert kpi.aov == pytest.approx(50.0)


def test_conversions_used_when_no_purchase_action():
    rows = [KpiSourceRow(date=date(2025, 3, 1), conversions=4, revenue=100.0)]
    kpi = aggregate_daily_kpis(rows, date(2025, 3, 1), date(2025, 3, 1))[0]
    assert kpi.conversions == 4.0
    assert kpi.aov == pytest.approx(25.0)


def test_link_clicks_preferred_over_all_clicks():
    rows = [
        KpiSourceRow(date=date(2025, 3, 1), clicks=40, inline_link_clicks=25),
        KpiSourceRow(date=date(2025, 3, 1), clicks=10),
    ]
    kpi = aggregate_daily_kpis(rows, date(2025, 3, 1), date(2025, 3, 1))[0]
    assert kpi.clicks == 35


def test_spend_without_revenue_has_no_cos_or_roas():
    rows = [KpiSourceRow(date=date(2025, 3, 1), spend=15.0)]
    kpi = aggregate_daily_kpis(rows, date(2025, 3, 1), date(2025, 3, 1))[0]
    assert kpi.cos is None
    assert kpi.roas is None


def test_rows_outside_window_ignored():
    rows = [KpiSourceRow(date=date(2025, 2, 28), spend=99.0)]
    kpis = aggregate_daily_kpis(rows, date(2025, 3, 1), date(2025, 3, 2))
    assert sum(k.spend for k in kpis) == 0.0


def test_fallback_currency_used_without_rows():
    kpis = aggregate_daily_kpis([], date(2025, 3, 1), date(2025, 3, 2), fallback_currency="USD")
    assert [k.currency for k in kpis] == ["USD", "USD"]


@pytest.mark.parametrize("num, den, expected", [(10, 2, 5.0), (0, 2, None), (10, 0, None), (None, 2, None)])
def test_safe_ratio(num, den, expected):
    assert safe_ratio(num, den) == expected
