"""Persistence for Meta insights: daily-grain facts, coarse facts, KPIs.

WHAT:
    - `upsert_daily`: idempotent INSERT ... ON CONFLICT DO UPDATE of
      normalized rows, keyed by their full dimensional identity.
    - `replace_level_facts`: delete-then-insert of the canonical
      combination's rows for a (tenant, account, date window).
    - `upsert_kpis`: merge of daily KPI rows keyed by (tenant, date, source).
    - Readers for the KPI aggregator's two source paths.

WHY:
    - Re-running a task over the same window must overwrite, never append.
    - The coarse table is a materialized view of ONE combination; a row by
      row merge could leave rows from a combination that no longer applies.
    - KPI rows are merged so a partially failed run can't erase a
      previously known value.
    - Writes go out in bounded batches to stay under statement size limits.

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/dialects/postgresql.html#insert-on-conflict-upsert
    - backend/adsync/models.py (MetaInsightDaily, MetaInsightLevel, KpiDaily)
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import delete, insert, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from adsync.models import KpiDaily, LevelEnum, MetaInsightDaily, MetaInsightLevel
from adsync.services.insights_matrix import CanonicalCombination, InsightsTask
from adsync.services.insights_normalizer import NormalizedInsightRow
from adsync.services.kpi_aggregator import DailyKpi, KpiSourceRow

logger = logging.getLogger(__name__)


DAILY_KEY_COLUMNS = (
    "tenant_id",
    "date",
    "level",
    "entity_id",
    "action_report_time",
    "attribution_window",
    "breakdowns_hash",
)
KPI_KEY_COLUMNS = ("tenant_id", "date", "source")
DEFAULT_BATCH_SIZE = 500


class InsightsStorageError(Exception):
    """The datastore rejected a write; fatal for the run."""


def hash_breakdowns(breakdowns: Optional[Mapping[str, Optional[str]]]) -> str:
    """Stable SHA-1 of a breakdown map (sorted key/value pairs as compact JSON)."""
    entries = sorted((breakdowns or {}).items())
    payload = json.dumps([[key, value] for key, value in entries], separators=(",", ":"))
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


def strip_act_prefix(account_id: str) -> str:
    account_id = str(account_id).strip()
    return account_id[4:] if account_id.startswith("act_") else account_id


def _float(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


def _chunks(items: Sequence[Dict[str, Any]], size: int) -> Iterable[Sequence[Dict[str, Any]]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class InsightsStorage:
    """Datastore access for one tenant run.

    Args:
        db: Session owned by the caller.
        batch_size: Rows per INSERT statement.
    """

    def __init__(self, db: Session, *, batch_size: int = DEFAULT_BATCH_SIZE):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.db = db
        self.batch_size = batch_size

    # ── helpers ──

    def _dialect_insert(self, model):
        """Dialect-specific INSERT supporting ON CONFLICT (PostgreSQL, SQLite)."""
        dialect = self.db.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert(model)
        if dialect == "sqlite":
            return sqlite.insert(model)
        raise InsightsStorageError(f"Upserts are not supported on dialect {dialect!r}")

    def _upsert(self, model, rows: Sequence[Dict[str, Any]], key_columns: Sequence[str]) -> int:
        written = 0
        for batch in _chunks(rows, self.batch_size):
            stmt = self._dialect_insert(model).values(list(batch))
            update_columns = {
                column.name: stmt.excluded[column.name]
                for column in model.__table__.columns
                if column.name not in key_columns and column.name != "id"
            }
            stmt = stmt.on_conflict_do_update(index_elements=list(key_columns), set_=update_columns)
            self.db.execute(stmt)
            written += len(batch)
        return written

    # ── daily grain ──

    def _daily_values(
        self,
        tenant_id: UUID,
        account_id: str,
        task: InsightsTask,
        row: NormalizedInsightRow,
        now: datetime,
    ) -> Dict[str, Any]:
        return {
            "id": uuid.uuid4(),
            "tenant_id": tenant_id,
            "date": row.date_start,
            "date_stop": row.date_stop,
            "level": LevelEnum(task.level),
            "entity_id": row.entity_id,
            "account_id": row.account_id or strip_act_prefix(account_id),
            "campaign_id": row.campaign_id,
            "campaign_name": row.campaign_name,
            "adset_id": row.adset_id,
            "adset_name": row.adset_name,
            "ad_id": row.ad_id,
            "ad_name": row.ad_name,
            "action_report_time": task.action_report_time,
            "attribution_window": task.attribution_window,
            "breakdowns_key": task.breakdown_key,
            "breakdowns": dict(row.breakdowns),
            "breakdowns_hash": hash_breakdowns(row.breakdowns),
            "currency": row.currency,
            "spend": row.spend,
            "impressions": row.impressions,
            "reach": row.reach,
            "clicks": row.clicks,
            "unique_clicks": row.unique_clicks,
            "inline_link_clicks": row.inline_link_clicks,
            "conversions": row.conversions,
            "purchases": row.purchases,
            "add_to_cart": row.add_to_cart,
            "leads": row.leads,
            "revenue": row.revenue,
            "cpm": row.cpm,
            "cpc": row.cpc,
            "ctr": row.ctr,
            "frequency": row.frequency,
            "objective": row.objective,
            "buying_type": row.buying_type,
            "actions": row.actions,
            "action_values": row.action_values,
            "purchase_roas": row.purchase_roas,
            "cost_per_action_type": row.cost_per_action_type,
            "updated_at": now,
        }

    def upsert_daily(
        self,
        tenant_id: UUID,
        account_id: str,
        task: InsightsTask,
        rows: Sequence[NormalizedInsightRow],
    ) -> int:
        """Upsert one task's rows into `meta_insights_daily`.

        Rows sharing a natural key within the call collapse to the last one;
        a single INSERT ... ON CONFLICT can't touch the same key twice.

        Returns:
            Number of distinct rows written.

        Raises:
            InsightsStorageError: the datastore rejected a batch.
        """
        if not rows:
            return 0

        now = datetime.utcnow()
        by_key: Dict[Tuple[Any, ...], Dict[str, Any]] = {}
        for row in rows:
            values = self._daily_values(tenant_id, account_id, task, row, now)
            by_key[tuple(values[column] for column in DAILY_KEY_COLUMNS)] = values

        try:
            written = self._upsert(MetaInsightDaily, list(by_key.values()), DAILY_KEY_COLUMNS)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("[META_STORAGE] Daily upsert failed for %s (%s): %s", tenant_id, task.label, exc)
            raise InsightsStorageError(f"Failed to upsert daily insights for {task.label}: {exc}") from exc

        logger.info("[META_STORAGE] Upserted %d daily rows for tenant %s (%s)", written, tenant_id, task.label)
        return written

    def load_canonical_daily(
        self,
        tenant_id: UUID,
        account_id: Optional[str],
        canonical: CanonicalCombination,
        since: date,
        until: date,
    ) -> List[KpiSourceRow]:
        """Daily-grain rows for the canonical key (KPI fallback source)."""
        stmt = select(MetaInsightDaily).where(
            MetaInsightDaily.tenant_id == tenant_id,
            MetaInsightDaily.level == LevelEnum(canonical.level),
            MetaInsightDaily.breakdowns_key == canonical.breakdown_key,
            MetaInsightDaily.action_report_time == canonical.action_report_time,
            MetaInsightDaily.attribution_window == canonical.attribution_window,
            MetaInsightDaily.date >= since,
            MetaInsightDaily.date <= until,
        )
        if account_id:
            stmt = stmt.where(MetaInsightDaily.account_id == strip_act_prefix(account_id))

        return [
            KpiSourceRow(
                date=row.date,
                spend=_float(row.spend),
                clicks=_float(row.clicks),
                inline_link_clicks=_float(row.inline_link_clicks),
                purchases=_float(row.purchases),
                conversions=_float(row.conversions),
                revenue=_float(row.revenue),
                currency=row.currency,
            )
            for row in self.db.execute(stmt).scalars()
        ]

    # ── coarse facts ──

    def replace_level_facts(
        self,
        tenant_id: UUID,
        account_id: str,
        since: date,
        until: date,
        task: InsightsTask,
        rows: Sequence[NormalizedInsightRow],
    ) -> int:
        """Replace `meta_insights_levels` for (tenant, account, since..until).

        Every existing row in the window is deleted regardless of level or
        report settings, then the canonical task's rows are inserted, in one
        transaction.
        """
        account = strip_act_prefix(account_id)
        now = datetime.utcnow()

        by_key: Dict[Tuple[Any, ...], Dict[str, Any]] = {}
        for row in rows:
            if row.date_start < since or row.date_start > until:
                continue
            values = {
                "id": uuid.uuid4(),
                "tenant_id": tenant_id,
                "account_id": account,
                "date": row.date_start,
                "level": LevelEnum(task.level),
                "entity_id": row.entity_id,
                "campaign_id": row.campaign_id,
                "campaign_name": row.campaign_name,
                "adset_id": row.adset_id,
                "adset_name": row.adset_name,
                "ad_id": row.ad_id,
                "ad_name": row.ad_name,
                "action_report_time": task.action_report_time,
                "attribution_window": task.attribution_window,
                "currency": row.currency,
                "spend": row.spend,
                "impressions": row.impressions,
                "clicks": row.clicks,
                "inline_link_clicks": row.inline_link_clicks,
                "conversions": row.conversions,
                "purchases": row.purchases,
                "revenue": row.revenue,
                "created_at": now,
            }
            by_key[(values["date"], values["level"], values["entity_id"])] = values

        try:
            self.db.execute(
                delete(MetaInsightLevel).where(
                    MetaInsightLevel.tenant_id == tenant_id,
                    MetaInsightLevel.account_id == account,
                    MetaInsightLevel.date >= since,
                    MetaInsightLevel.date <= until,
                )
            )
            values_list = list(by_key.values())
            for batch in _chunks(values_list, self.batch_size):
                self.db.execute(insert(MetaInsightLevel), list(batch))
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("[META_STORAGE] Coarse fact replace failed for %s %s..%s: %s", tenant_id, since, until, exc)
            raise InsightsStorageError(f"Failed to replace coarse facts for {since}..{until}: {exc}") from exc

        logger.info(
            "[META_STORAGE] Replaced coarse facts for tenant %s account %s %s..%s with %d rows",
            tenant_id, account, since, until, len(by_key),
        )
        return len(by_key)

    # ── KPIs ──

    def upsert_kpis(self, tenant_id: UUID, kpis: Sequence[DailyKpi], *, source: str = "meta") -> int:
        """Merge daily KPI rows on (tenant_id, date, source)."""
        if not kpis:
            return 0

        now = datetime.utcnow()
        values_list = [
            {
                "tenant_id": tenant_id,
                "date": kpi.date,
                "source": source,
                "currency": kpi.currency,
                "spend": kpi.spend,
                "clicks": kpi.clicks,
                "conversions": kpi.conversions,
                "revenue": kpi.revenue,
                "aov": kpi.aov,
                "cos": kpi.cos,
                "roas": kpi.roas,
                "updated_at": now,
            }
            for kpi in kpis
        ]
        try:
            written = self._upsert(KpiDaily, values_list, KPI_KEY_COLUMNS)
            self.db.commit()
        except SQLAlchemyError as exc:
            self.db.rollback()
            logger.error("[KPI] Upsert failed for tenant %s: %s", tenant_id, exc)
            raise InsightsStorageError(f"Failed to upsert KPI rows: {exc}") from exc

        logger.info("[KPI] Upserted %d kpi_daily rows for tenant %s (source=%s)", written, tenant_id, source)
        return written
