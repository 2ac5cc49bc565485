"""
Insights Row Normalization Tests (Unit)
=======================================

WHAT: Unit tests for raw Meta row -> NormalizedInsightRow conversion.
WHY: Meta returns numbers as strings, omits fields freely and nests purchases
     inside action lists; every stored metric passes through this code.

REFERENCES:
- backend/adsync/services/insights_normalizer.py
"""

from datetime import date

import pytest

from adsync.services.insights_normalizer import (
    extract_action_value,
    normalize_insight_row,
    normalize_insight_rows,
    parse_number,
)


def _raw(**overrides):
    row = {
        "date_start": "2025-03-01",
        "date_stop": "2025-03-01",
        "account_id": "123",
        "account_name": "Shop",
        "account_currency": "EUR",
        "campaign_id": "c-1",
        "campaign_name": "Spring",
        "spend": "12.50",
        "impressions": "1000",
        "clicks": "40",
        "inline_link_clicks": "25",
        "actions": [
            {"action_type": "offsite_conversion.fb_pixel_purchase", "value": "3"},
            {"action_type": "add_to_cart", "value": "9"},
            {"action_type": "lead", "value": "2"},
        ],
        "action_values": [
            {"action_type": "offsite_conversion.fb_pixel_purchase", "value": "180.00"},
        ],
    }
    row.update(overrides)
    return row


class TestParseNumber:
    @pytest.mark.parametrize(
        "value, expected",
        [("12.5", 12.5), (3, 3.0), ("  7 ", 7.0), ("", None), (None, None), ("n/a", None), ("nan", None), (True, None)],
    )
    def test_permissive(self, value, expected):
        assert parse_number(value) == expected


class TestExtractActionValue:
    def test_case_insensitive_substring(self):
        items = [{"action_type": "Offsite_Conversion.FB_Pixel_Purchase", "value": "4"}]
        assert extract_action_value(items, "purchase") == 4.0

    def test_first_match_wins(self):
        items = [
            {"action_type": "purchase", "value": "2"},
            {"action_type": "omni_purchase", "value": "5"},
        ]
        assert extract_action_value(items, "purchase") == 2.0

    def test_missing_is_none(self):
        assert extract_action_value([{"action_type": "link_click", "value": "9"}], "purchase") is None
        assert extract_action_value(None, "purchase") is None


class TestNormalizeInsightRow:
    def test_campaign_row(self):
        row = normalize_insight_row(_raw(), "campaign")

        assert row.entity_id == "c-1"
        assert row.date_start == date(2025, 3, 1)
        assert row.currency == "EUR"
        assert row.spend == 12.5
        assert row.impressions == 1000
        assert row.inline_link_clicks == 25
        assert row.purchases == 3.0
        assert row.add_to_cart == 9.0
        assert row.leads == 2.0
        assert row.revenue == 180.0

    def test_missing_conversions_is_none_not_zero(self):
        row = normalize_insight_row(_raw(actions=None, action_values=None), "account")
        assert row.purchases is None
        assert row.revenue is None
        assert row.conversions is None

    def test_conversions_take_first_purchase_entry(self):
        row = normalize_insight_row(_raw(conversions=[
            {"action_type": "offsite_conversion.fb_pixel_add_to_cart", "value": "9"},
            {"action_type": "offsite_conversion.fb_pixel_purchase", "value": "6"},
        ]), "account")
        assert row.conversions == 6.0

    def test_conversions_without_purchase_entry_is_none(self):
        row = normalize_insight_row(_raw(conversions=[
            {"action_type": "offsite_conversion.fb_pixel_add_to_cart", "value": "9"},
        ]), "account")
        assert row.conversions is None

    def test_scalar_conversions_is_none(self):
        assert normalize_insight_row(_raw(conversions="7"), "account").conversions is None

    def test_row_without_entity_id_dropped(self):
        assert normalize_insight_row(_raw(ad_id=None), "ad") is None
        assert normalize_insight_row(_raw(campaign_id="  "), "campaign") is None

    def test_row_without_date_dropped(self):
        assert normalize_insight_row(_raw(date_start="garbage"), "account") is None

    def test_numeric_ids_become_strings(self):
        row = normalize_insight_row(_raw(account_id=123456), "account")
        assert row.entity_id == "123456"

    def test_date_stop_defaults_to_start(self):
        row = normalize_insight_row(_raw(date_stop=None), "account")
        assert row.date_stop == row.date_start

    def test_breakdowns_kept_verbatim(self):
        row = normalize_insight_row(_raw(age="25-34", gender="female"), "account", ("age", "gender"))
        assert row.breakdowns == {"age": "25-34", "gender": "female"}

    def test_missing_breakdown_value_is_none(self):
        row = normalize_insight_row(_raw(country="NL"), "account", ("country", "device_platform"))
        assert row.breakdowns == {"country": "NL", "device_platform": None}

    def test_single_object_action_field_wrapped(self):
        row = normalize_insight_row(_raw(purchase_roas={"action_type": "omni_purchase", "value": "3.2"}), "account")
        assert row.purchase_roas == [{"action_type": "omni_purchase", "value": "3.2"}]

    def test_unknown_level_rejected(self):
        with pytest.raises(ValueError):
            normalize_insight_row(_raw(), "creative")


def test_normalize_insight_rows_drops_unusable_rows():
    rows = normalize_insight_rows(
        [_raw(), _raw(campaign_id=None), _raw(campaign_id="c-2", date_start="2025-03-02")],
        "campaign",
    )
    assert [r.entity_id for r in rows] == ["c-1", "c-2"]
