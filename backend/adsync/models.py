"""SQLAlchemy ORM models and enums.

This module defines the sync engine's schema using UUID primary keys and
explicit relationships. Provider credentials live in a separate `tokens`
table; per-tenant sync configuration and watermarks live in the
`connections.meta` JSON blob.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class ProviderEnum(str, enum.Enum):
    google = "google"
    meta = "meta"
    shopify = "shopify"
    other = "other"


class LevelEnum(str, enum.Enum):
    account = "account"
    campaign = "campaign"
    adset = "adset"
    ad = "ad"


class JobStatusEnum(str, enum.Enum):
    pending = "pending"
    running = "running"
    succeeded = "succeeded"
    failed = "failed"


class BackfillStatusEnum(str, enum.Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"
    paused = "paused"


def _enum_values(obj):
    return [e.value for e in obj]


# Tenancy -------------------------------------------------------

class Tenant(Base):
    """A customer whose ad accounts are synced in isolation."""
    __tablename__ = "tenants"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    connections = relationship("Connection", back_populates="tenant")

    def __str__(self):
        return self.name


class Connection(Base):
    """Connection represents a link to an advertising platform account.

    WHAT:
        One row per tenant/provider pair. The `meta` blob carries sync
        configuration (sync start date, selected ad account, timezone,
        insights matrix profile) and the persisted sync watermarks.
    WHY:
        Watermarks are written by the sync-state recorder and read back by the
        window resolver on the next run; keeping them with the connection
        means one read per tenant.
    REFERENCES:
        - backend/adsync/services/sync_state.py (writes SyncState keys)
        - backend/adsync/services/sync_window.py (reads SyncState keys)
    """
    __tablename__ = "connections"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider = Column(Enum(ProviderEnum, values_callable=_enum_values), nullable=False)
    external_account_id = Column(String, nullable=True)  # Preferred ad account, e.g. act_123
    name = Column(String, nullable=False)
    status = Column(String, nullable=False, default="active")  # active, inactive, revoked
    connected_at = Column(DateTime, default=datetime.utcnow)
    meta = Column(JSON, nullable=True)

    # Sync health, mirrored from the job log for quick UI lookups
    last_sync_attempted_at = Column(DateTime, nullable=True)
    last_sync_completed_at = Column(DateTime, nullable=True)
    sync_status = Column(String, default="idle")  # idle, syncing, error
    last_sync_error = Column(Text, nullable=True)

    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False)
    tenant = relationship("Tenant", back_populates="connections")

    token_id = Column(UUID(as_uuid=True), ForeignKey("tokens.id"))
    token = relationship("Token", back_populates="connections")

    def __str__(self):
        return f"{self.name} ({self.provider.value})"


class Token(Base):
    """Encrypted provider credential bundle.

    WHAT:
        Stores Meta tokens with symmetric encryption applied.
    WHY:
        Prevents leaking access/refresh tokens while keeping expiry metadata
        available to the token provider.
    REFERENCES:
        - backend/adsync/security.py (encrypt_secret / decrypt_secret)
        - backend/adsync/services/token_service.py
    """
    __tablename__ = "tokens"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider = Column(Enum(ProviderEnum, values_callable=_enum_values), nullable=False)
    access_token_enc = Column(String, nullable=True)
    refresh_token_enc = Column(String, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    scope = Column(String, nullable=True)

    connections = relationship("Connection", back_populates="token")

    def __str__(self):
        expires = self.expires_at.strftime('%Y-%m-%d %H:%M') if self.expires_at else 'no-expiry'
        return f"{self.provider.value} token (expires: {expires})"


# Facts ---------------------------------------------------------

class MetaInsightDaily(Base):
    """Fine-grained daily insight row for one matrix combination.

    WHAT:
        One row per (tenant, date, level, entity, report time, attribution
        window, breakdown hash). The unique constraint is the idempotency
        boundary for re-synced windows.
    WHY:
        Breakdown dimensions differ per breakdown set, so their values are
        hashed into a fixed-width key column while the readable map is kept
        in `breakdowns`.
    """
    __tablename__ = "meta_insights_daily"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "date",
            "level",
            "entity_id",
            "action_report_time",
            "attribution_window",
            "breakdowns_hash",
            name="uq_meta_insights_daily_natural_key",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True)
    date = Column(Date, nullable=False)
    date_stop = Column(Date, nullable=True)
    level = Column(Enum(LevelEnum, values_callable=_enum_values), nullable=False)
    entity_id = Column(String, nullable=False)
    account_id = Column(String, nullable=False)
    campaign_id = Column(String, nullable=True)
    campaign_name = Column(String, nullable=True)
    adset_id = Column(String, nullable=True)
    adset_name = Column(String, nullable=True)
    ad_id = Column(String, nullable=True)
    ad_name = Column(String, nullable=True)
    action_report_time = Column(String, nullable=False)
    attribution_window = Column(String, nullable=False)
    breakdowns_key = Column(String, nullable=False)  # none, A, B, C, D
    breakdowns = Column(JSON, nullable=True)
    breakdowns_hash = Column(String(40), nullable=False)
    currency = Column(String, nullable=True)

    spend = Column(Numeric(18, 4), nullable=True)
    impressions = Column(Integer, nullable=True)
    reach = Column(Integer, nullable=True)
    clicks = Column(Integer, nullable=True)
    unique_clicks = Column(Integer, nullable=True)
    inline_link_clicks = Column(Integer, nullable=True)
    conversions = Column(Numeric(18, 4), nullable=True)
    purchases = Column(Numeric(18, 4), nullable=True)
    add_to_cart = Column(Numeric(18, 4), nullable=True)
    leads = Column(Numeric(18, 4), nullable=True)
    revenue = Column(Numeric(18, 4), nullable=True)
    cpm = Column(Float, nullable=True)
    cpc = Column(Float, nullable=True)
    ctr = Column(Float, nullable=True)
    frequency = Column(Float, nullable=True)
    objective = Column(String, nullable=True)
    buying_type = Column(String, nullable=True)
    actions = Column(JSON, nullable=True)
    action_values = Column(JSON, nullable=True)
    purchase_roas = Column(JSON, nullable=True)
    cost_per_action_type = Column(JSON, nullable=True)

    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class MetaInsightLevel(Base):
    """Coarse fact row for the tenant's canonical combination only.

    Replaced per (tenant, account, date window) on every successful run, so
    it never mixes rows from different report settings.
    """
    __tablename__ = "meta_insights_levels"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "account_id", "date", "level", "entity_id",
            name="uq_meta_insights_levels_entity_day",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True)
    account_id = Column(String, nullable=False)
    date = Column(Date, nullable=False)
    level = Column(Enum(LevelEnum, values_callable=_enum_values), nullable=False)
    entity_id = Column(String, nullable=False)
    campaign_id = Column(String, nullable=True)
    campaign_name = Column(String, nullable=True)
    adset_id = Column(String, nullable=True)
    adset_name = Column(String, nullable=True)
    ad_id = Column(String, nullable=True)
    ad_name = Column(String, nullable=True)
    action_report_time = Column(String, nullable=False)
    attribution_window = Column(String, nullable=False)
    currency = Column(String, nullable=True)
    spend = Column(Numeric(18, 4), nullable=True)
    impressions = Column(Integer, nullable=True)
    clicks = Column(Integer, nullable=True)
    inline_link_clicks = Column(Integer, nullable=True)
    conversions = Column(Numeric(18, 4), nullable=True)
    purchases = Column(Numeric(18, 4), nullable=True)
    revenue = Column(Numeric(18, 4), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class KpiDaily(Base):
    """Per-day KPI aggregate per tenant and source.

    Upserted on (tenant_id, date, source); ratios are NULL when their
    denominator is zero or unknown.
    """
    __tablename__ = "kpi_daily"

    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), primary_key=True)
    date = Column(Date, primary_key=True)
    source = Column(String, primary_key=True)  # meta
    currency = Column(String, nullable=True)
    spend = Column(Numeric(18, 4), nullable=False, default=0)
    clicks = Column(Numeric(18, 4), nullable=False, default=0)
    conversions = Column(Numeric(18, 4), nullable=False, default=0)
    revenue = Column(Numeric(18, 4), nullable=False, default=0)
    aov = Column(Numeric(18, 6), nullable=True)
    cos = Column(Numeric(18, 6), nullable=True)
    roas = Column(Numeric(18, 6), nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# Job tracking --------------------------------------------------

class JobLog(Base):
    """Append-only record of one sync run for one tenant.

    Inserted as `running` when the run starts and updated exactly once when
    it ends. Partial successes are `succeeded` with the caveat in `details`.
    """
    __tablename__ = "jobs_log"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True)
    source = Column(String, nullable=False, default="meta")
    mode = Column(String, nullable=True)  # incremental, backfill
    status = Column(Enum(JobStatusEnum, values_callable=_enum_values), nullable=False)
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    finished_at = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)


class MetaBackfillJob(Base):
    """Progress record for a chunked historical backfill.

    WHAT:
        Tracks the chunk count and completed chunks of one backfill started
        from the CLI, so an interrupted backfill shows where it stopped.
    REFERENCES:
        - backend/scripts/meta_backfill.py
    """
    __tablename__ = "meta_backfill_jobs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(UUID(as_uuid=True), ForeignKey("tenants.id"), nullable=False, index=True)
    account_id = Column(String, nullable=True)
    since = Column(Date, nullable=False)
    until = Column(Date, nullable=False)
    status = Column(Enum(BackfillStatusEnum, values_callable=_enum_values), nullable=False, default=BackfillStatusEnum.pending)
    chunk_size_days = Column(Integer, nullable=False)
    chunk_count = Column(Integer, nullable=False, default=0)
    progress_completed = Column(Integer, nullable=False, default=0)
    progress_total = Column(Integer, nullable=False, default=0)
    rows_inserted = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
