"""
Insights Task Matrix Tests (Unit)
=================================

WHAT: Unit tests for matrix expansion, month chunking and profile/override resolution.
WHY: Every run's report jobs come from this expansion; a missing canonical cell
     would leave the KPI table without a source.

REFERENCES:
- backend/adsync/services/insights_matrix.py
"""

from datetime import date

import pytest

from adsync.services.insights_matrix import (
    BREAKDOWN_SETS,
    CanonicalCombination,
    MatrixConfigError,
    build_task_matrix,
    month_chunks,
    resolve_matrix_config,
)
from adsync.services.sync_window import SyncWindow


class TestMonthChunks:
    def test_single_month(self):
        chunks = month_chunks(SyncWindow(date(2025, 3, 5), date(2025, 3, 20)))
        assert chunks == [(date(2025, 3, 5), date(2025, 3, 20))]

    def test_spans_month_boundaries(self):
        chunks = month_chunks(SyncWindow(date(2025, 1, 15), date(2025, 3, 10)))
        assert chunks == [
            (date(2025, 1, 15), date(2025, 1, 31)),
            (date(2025, 2, 1), date(2025, 2, 28)),
            (date(2025, 3, 1), date(2025, 3, 10)),
        ]

    def test_leap_february(self):
        chunks = month_chunks(SyncWindow(date(2024, 2, 1), date(2024, 2, 29)))
        assert chunks == [(date(2024, 2, 1), date(2024, 2, 29))]


class TestBuildTaskMatrix:
    def test_full_profile_is_cartesian_product(self):
        config = resolve_matrix_config({})
        window = SyncWindow(date(2025, 1, 15), date(2025, 2, 10))

        tasks = build_task_matrix(window, config)

        # 4 levels x 5 breakdown sets x 2 report times x 3 windows x 2 months
        assert len(tasks) == 4 * 5 * 2 * 3 * 2
        assert len(set(tasks)) == len(tasks)

    def test_breakdown_fields_follow_key(self):
        config = resolve_matrix_config({"insights_matrix": {"breakdown_keys": ["none", "B"]}})
        tasks = build_task_matrix(SyncWindow(date(2025, 1, 1), date(2025, 1, 1)), config)
        fields = {t.breakdown_key: t.breakdown_fields for t in tasks}
        assert fields == {"none": (), "B": BREAKDOWN_SETS["B"]}

    def test_exactly_one_canonical_task_per_month(self):
        config = resolve_matrix_config({})
        tasks = build_task_matrix(SyncWindow(date(2025, 1, 1), date(2025, 3, 31)), config)
        canonical = [t for t in tasks if t.is_canonical(config.canonical)]
        assert [(t.month_since, t.month_until) for t in canonical] == [
            (date(2025, 1, 1), date(2025, 1, 31)),
            (date(2025, 2, 1), date(2025, 2, 28)),
            (date(2025, 3, 1), date(2025, 3, 31)),
        ]

    def test_label_is_readable(self):
        config = resolve_matrix_config({"insights_profile": "fast"})
        task = build_task_matrix(SyncWindow(date(2025, 1, 1), date(2025, 1, 2)), config)[0]
        assert task.label == "account/none/impression/7d_click/2025-01-01..2025-01-02"


class TestResolveMatrixConfig:
    def test_default_profile_canonical(self):
        config = resolve_matrix_config(None)
        assert config.profile == "full"
        assert config.canonical == CanonicalCombination(
            level="account", breakdown_key="none", action_report_time="impression", attribution_window="1d_click",
        )

    def test_fast_profile_uses_seven_day_click(self):
        config = resolve_matrix_config({"insights_profile": "fast"})
        assert config.levels == ("account", "campaign")
        assert config.canonical.attribution_window == "7d_click"

    def test_default_profile_argument(self):
        assert resolve_matrix_config({}, default_profile="fast").profile == "fast"

    def test_comma_separated_override(self):
        config = resolve_matrix_config({"insights_matrix": {"levels": "account, ad"}})
        assert config.levels == ("account", "ad")

    def test_unknown_profile_rejected(self):
        with pytest.raises(MatrixConfigError):
            resolve_matrix_config({"insights_profile": "turbo"})

    def test_unknown_level_rejected(self):
        with pytest.raises(MatrixConfigError, match=r"levels\.1"):
            resolve_matrix_config({"insights_matrix": {"levels": ["account", "creative"]}})

    def test_empty_list_rejected(self):
        with pytest.raises(MatrixConfigError, match="breakdown_keys"):
            resolve_matrix_config({"insights_matrix": {"breakdown_keys": []}})

    def test_unknown_override_key_rejected(self):
        with pytest.raises(MatrixConfigError, match="attribution_window"):
            resolve_matrix_config({"insights_matrix": {"attribution_window": ["7d_click"]}})

    def test_non_object_override_rejected(self):
        with pytest.raises(MatrixConfigError):
            resolve_matrix_config({"insights_matrix": ["account"]})

    def test_unknown_canonical_value_rejected(self):
        with pytest.raises(MatrixConfigError, match=r"canonical\.attribution_window"):
            resolve_matrix_config({"insights_matrix": {"canonical": {"attribution_window": "28d_click"}}})

    def test_canonical_breakdown_must_be_none(self):
        with pytest.raises(MatrixConfigError, match=r"canonical\.breakdown_key"):
            resolve_matrix_config({"insights_matrix": {"canonical": {"breakdown_key": "C"}}})

    def test_duplicate_values_collapse(self):
        config = resolve_matrix_config({"insights_matrix": {"levels": ["account", "ad", "account"]}})
        assert config.levels == ("account", "ad")

    def test_override_dropping_canonical_rejected(self):
        with pytest.raises(MatrixConfigError, match="canonical"):
            resolve_matrix_config({"insights_matrix": {"attribution_windows": ["7d_click"]}})

    def test_canonical_override_must_stay_in_matrix(self):
        config = resolve_matrix_config({
            "insights_matrix": {
                "attribution_windows": ["7d_click"],
                "canonical": {"attribution_window": "7d_click"},
            }
        })
        assert config.canonical.attribution_window == "7d_click"
