"""Integration tests for insights persistence (daily upsert, coarse replace, KPI merge).

WHAT: Runs the real ON CONFLICT statements against SQLite.
WHY: Idempotency is the contract re-runs depend on: the same task over the
     same window must leave the same rows, never duplicates.
"""

from datetime import date

import pytest

from adsync.models import KpiDaily, MetaInsightDaily, MetaInsightLevel
from adsync.services.insights_matrix import BREAKDOWN_SETS, CanonicalCombination, InsightsTask
from adsync.services.insights_normalizer import NormalizedInsightRow
from adsync.services.insights_storage import InsightsStorage, hash_breakdowns, strip_act_prefix
from adsync.services.kpi_aggregator import DailyKpi


def _task(level="account", breakdown_key="none", report_time="impression", window="1d_click"):
    return InsightsTask(
        level=level,
        breakdown_key=breakdown_key,
        breakdown_fields=BREAKDOWN_SETS[breakdown_key],
        action_report_time=report_time,
        attribution_window=window,
        month_since=date(2025, 3, 1),
        month_until=date(2025, 3, 31),
    )


def _row(day, entity_id="100", spend=10.0, breakdowns=None, **extra):
    return NormalizedInsightRow(
        level=extra.pop("level", "account"),
        entity_id=entity_id,
        date_start=day,
        date_stop=day,
        account_id="100",
        currency="EUR",
        spend=spend,
        clicks=5,
        inline_link_clicks=4,
        purchases=1.0,
        revenue=40.0,
        breakdowns=breakdowns or {},
        **extra,
    )


class TestHelpers:
    def test_hash_is_order_independent(self):
        assert hash_breakdowns({"age": "25-34", "gender": "male"}) == hash_breakdowns({"gender": "male", "age": "25-34"})

    def test_hash_distinguishes_values(self):
        assert hash_breakdowns({"country": "NL"}) != hash_breakdowns({"country": "DE"})
        assert len(hash_breakdowns({})) == 40

    def test_strip_act_prefix(self):
        assert strip_act_prefix("act_42") == "42"
        assert strip_act_prefix("42") == "42"


class TestUpsertDaily:
    def test_rerun_updates_in_place(self, test_db_session, make_tenant):
        tenant, _ = make_tenant()
        storage = InsightsStorage(test_db_session)
        task = _task()

        storage.upsert_daily(tenant.id, "act_100", task, [_row(date(2025, 3, 1), spend=10.0)])
        storage.upsert_daily(tenant.id, "act_100", task, [_row(date(2025, 3, 1), spend=25.0)])

        rows = test_db_session.query(MetaInsightDaily).all()
        assert len(rows) == 1
        assert float(rows[0].spend) == 25.0

    def test_breakdown_values_are_part_of_the_key(self, test_db_session, make_tenant):
        tenant, _ = make_tenant()
        storage = InsightsStorage(test_db_session)
        task = _task(breakdown_key="C")

        written = storage.upsert_daily(tenant.id, "act_100", task, [
            _row(date(2025, 3, 1), breakdowns={"country": "NL"}),
            _row(date(2025, 3, 1), breakdowns={"country": "DE"}),
        ])

        assert written == 2
        assert {r.breakdowns["country"] for r in test_db_session.query(MetaInsightDaily)} == {"NL", "DE"}

    def test_attribution_window_is_part_of_the_key(self, test_db_session, make_tenant):
        tenant, _ = make_tenant()
        storage = InsightsStorage(test_db_session)

        storage.upsert_daily(tenant.id, "act_100", _task(window="1d_click"), [_row(date(2025, 3, 1))])
        storage.upsert_daily(tenant.id, "act_100", _task(window="7d_click"), [_row(date(2025, 3, 1))])

        assert test_db_session.query(MetaInsightDaily).count() == 2

    def test_duplicate_keys_in_one_call_collapse(self, test_db_session, make_tenant):
        tenant, _ = make_tenant()
        storage = InsightsStorage(test_db_session, batch_size=1)

        written = storage.upsert_daily(tenant.id, "act_100", _task(), [
            _row(date(2025, 3, 1), spend=1.0),
            _row(date(2025, 3, 1), spend=2.0),
            _row(date(2025, 3, 2), spend=3.0),
        ])

        assert written == 2
        spends = {r.date: float(r.spend) for r in test_db_session.query(MetaInsightDaily)}
        assert spends == {date(2025, 3, 1): 2.0, date(2025, 3, 2): 3.0}

    def test_empty_rows_write_nothing(self, test_db_session, make_tenant):
        tenant, _ = make_tenant()
        assert InsightsStorage(test_db_session).upsert_daily(tenant.id, "act_100", _task(), []) == 0

    def test_canonical_reader_filters_on_key(self, test_db_session, make_tenant):
        tenant, _ = make_tenant()
        storage = InsightsStorage(test_db_session)
        storage.upsert_daily(tenant.id, "act_100", _task(), [_row(date(2025, 3, 1), spend=10.0)])
        storage.upsert_daily(tenant.id, "act_100", _task(window="7d_click"), [_row(date(2025, 3, 1), spend=99.0)])
        storage.upsert_daily(
            tenant.id, "act_100", _task(level="campaign"),
            [_row(date(2025, 3, 1), entity_id="c-1", spend=77.0, level="campaign")],
        )

        rows = storage.load_canonical_daily(tenant.id, "act_100", CanonicalCombination(), date(2025, 3, 1), date(2025, 3, 31))

        assert [r.spend for r in rows] == [10.0]

    def test_invalid_batch_size(self, test_db_session):
        with pytest.raises(ValueError):
            InsightsStorage(test_db_session, batch_size=0)


class TestReplaceLevelFacts:
    def test_replace_leaves_only_new_rows(self, test_db_session, make_tenant):
        tenant, _ = make_tenant()
        storage = InsightsStorage(test_db_session)
        task = _task()

        storage.replace_level_facts(tenant.id, "act_100", date(2025, 3, 1), date(2025, 3, 31), task, [
            _row(date(2025, 3, 1), spend=1.0),
            _row(date(2025, 3, 2), spend=2.0),
        ])
        storage.replace_level_facts(tenant.id, "act_100", date(2025, 3, 1), date(2025, 3, 31), task, [
            _row(date(2025, 3, 2), spend=5.0),
        ])

        rows = test_db_session.query(MetaInsightLevel).all()
        assert [(r.date, float(r.spend)) for r in rows] == [(date(2025, 3, 2), 5.0)]
        assert rows[0].attribution_window == "1d_click"

    def test_rows_outside_window_untouched(self, test_db_session, make_tenant):
        tenant, _ = make_tenant()
        storage = InsightsStorage(test_db_session)
        task = _task()

        storage.replace_level_facts(tenant.id, "act_100", date(2025, 2, 1), date(2025, 2, 28), task, [_row(date(2025, 2, 10))])
        storage.replace_level_facts(tenant.id, "act_100", date(2025, 3, 1), date(2025, 3, 31), task, [])

        assert test_db_session.query(MetaInsightLevel).count() == 1

    def test_other_tenants_untouched(self, test_db_session, make_tenant):
        tenant_a, _ = make_tenant("A")
        tenant_b, _ = make_tenant("B")
        storage = InsightsStorage(test_db_session)
        task = _task()

        storage.replace_level_facts(tenant_a.id, "act_100", date(2025, 3, 1), date(2025, 3, 31), task, [_row(date(2025, 3, 1))])
        storage.replace_level_facts(tenant_b.id, "act_100", date(2025, 3, 1), date(2025, 3, 31), task, [])

        assert test_db_session.query(MetaInsightLevel).filter_by(tenant_id=tenant_a.id).count() == 1


class TestUpsertKpis:
    def _kpi(self, day, spend):
        return DailyKpi(date=day, currency="EUR", spend=spend, clicks=1.0, conversions=1.0, revenue=50.0, aov=50.0, cos=spend / 50.0, roas=50.0 / spend)

    def test_merge_on_tenant_date_source(self, test_db_session, make_tenant):
        tenant, _ = make_tenant()
        storage = InsightsStorage(test_db_session)

        storage.upsert_kpis(tenant.id, [self._kpi(date(2025, 3, 1), 10.0), self._kpi(date(2025, 3, 2), 20.0)])
        storage.upsert_kpis(tenant.id, [self._kpi(date(2025, 3, 2), 25.0)])

        rows = {r.date: float(r.spend) for r in test_db_session.query(KpiDaily)}
        assert rows == {date(2025, 3, 1): 10.0, date(2025, 3, 2): 25.0}
