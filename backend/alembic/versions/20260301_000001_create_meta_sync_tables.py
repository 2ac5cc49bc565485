"""Create Meta insights sync tables

Revision ID: 20260301_000001
Revises:
Create Date: 2026-03-01

WHAT:
    Creates the schema for the Meta insights sync engine:
    - tenants, tokens, connections (per-tenant Meta link + sync state blob)
    - meta_insights_daily (daily-grain facts, one row per natural key)
    - meta_insights_levels (coarse per-entity/day facts from the canonical combination)
    - kpi_daily (per-tenant daily KPI aggregate)
    - jobs_log (append-only run log)
    - meta_backfill_jobs (chunked backfill progress)

WHY:
    The natural-key unique constraints are what make every write an
    idempotent upsert: re-running a sync for overlapping dates updates rows
    in place instead of duplicating them.

REFERENCES:
    - adsync/models.py
    - adsync/services/insights_storage.py (ON CONFLICT targets)
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20260301_000001'
down_revision = None
branch_labels = None
depends_on = None


PROVIDER_ENUM = sa.Enum('google', 'meta', 'shopify', 'other', name='providerenum')
LEVEL_ENUM = sa.Enum('account', 'campaign', 'adset', 'ad', name='levelenum')
JOB_STATUS_ENUM = sa.Enum('pending', 'running', 'succeeded', 'failed', name='jobstatusenum')
BACKFILL_STATUS_ENUM = sa.Enum('pending', 'running', 'completed', 'failed', 'paused', name='backfillstatusenum')


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Tenancy and credentials
    # =========================================================================
    op.create_table(
        'tenants',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'tokens',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('provider', PROVIDER_ENUM, nullable=False),
        sa.Column('access_token_enc', sa.String(), nullable=True),
        sa.Column('refresh_token_enc', sa.String(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('scope', sa.String(), nullable=True),
    )

    op.create_table(
        'connections',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('provider', PROVIDER_ENUM, nullable=False),
        sa.Column('external_account_id', sa.String(), nullable=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='active'),
        sa.Column('connected_at', sa.DateTime(), nullable=True),
        sa.Column('meta', sa.JSON(), nullable=True),
        sa.Column('last_sync_attempted_at', sa.DateTime(), nullable=True),
        sa.Column('last_sync_completed_at', sa.DateTime(), nullable=True),
        sa.Column('sync_status', sa.String(), nullable=True, server_default='idle'),
        sa.Column('last_sync_error', sa.Text(), nullable=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('tenants.id'), nullable=False),
        sa.Column('token_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('tokens.id'), nullable=True),
    )
    op.create_index('ix_connections_tenant_provider', 'connections', ['tenant_id', 'provider'])

    # =========================================================================
    # STEP 2: Daily-grain facts
    # =========================================================================
    # WHAT: One row per (tenant, day, level, entity, report time, window, breakdown values)
    # WHY: ON CONFLICT target for the daily upsert
    op.create_table(
        'meta_insights_daily',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('tenants.id'), nullable=False, index=True),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('date_stop', sa.Date(), nullable=True),
        sa.Column('level', LEVEL_ENUM, nullable=False),
        sa.Column('entity_id', sa.String(), nullable=False),
        sa.Column('account_id', sa.String(), nullable=False),
        sa.Column('campaign_id', sa.String(), nullable=True),
        sa.Column('campaign_name', sa.String(), nullable=True),
        sa.Column('adset_id', sa.String(), nullable=True),
        sa.Column('adset_name', sa.String(), nullable=True),
        sa.Column('ad_id', sa.String(), nullable=True),
        sa.Column('ad_name', sa.String(), nullable=True),
        sa.Column('action_report_time', sa.String(), nullable=False),
        sa.Column('attribution_window', sa.String(), nullable=False),
        sa.Column('breakdowns_key', sa.String(), nullable=False),
        sa.Column('breakdowns', sa.JSON(), nullable=True),
        sa.Column('breakdowns_hash', sa.String(40), nullable=False),
        sa.Column('currency', sa.String(), nullable=True),
        sa.Column('spend', sa.Numeric(18, 4), nullable=True),
        sa.Column('impressions', sa.Integer(), nullable=True),
        sa.Column('reach', sa.Integer(), nullable=True),
        sa.Column('clicks', sa.Integer(), nullable=True),
        sa.Column('unique_clicks', sa.Integer(), nullable=True),
        sa.Column('inline_link_clicks', sa.Integer(), nullable=True),
        sa.Column('conversions', sa.Numeric(18, 4), nullable=True),
        sa.Column('purchases', sa.Numeric(18, 4), nullable=True),
        sa.Column('add_to_cart', sa.Numeric(18, 4), nullable=True),
        sa.Column('leads', sa.Numeric(18, 4), nullable=True),
        sa.Column('revenue', sa.Numeric(18, 4), nullable=True),
        sa.Column('cpm', sa.Float(), nullable=True),
        sa.Column('cpc', sa.Float(), nullable=True),
        sa.Column('ctr', sa.Float(), nullable=True),
        sa.Column('frequency', sa.Float(), nullable=True),
        sa.Column('objective', sa.String(), nullable=True),
        sa.Column('buying_type', sa.String(), nullable=True),
        sa.Column('actions', sa.JSON(), nullable=True),
        sa.Column('action_values', sa.JSON(), nullable=True),
        sa.Column('purchase_roas', sa.JSON(), nullable=True),
        sa.Column('cost_per_action_type', sa.JSON(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint(
            'tenant_id', 'date', 'level', 'entity_id',
            'action_report_time', 'attribution_window', 'breakdowns_hash',
            name='uq_meta_insights_daily_natural_key',
        ),
    )

    # =========================================================================
    # STEP 3: Coarse facts + KPI aggregate
    # =========================================================================
    op.create_table(
        'meta_insights_levels',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('tenants.id'), nullable=False, index=True),
        sa.Column('account_id', sa.String(), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('level', LEVEL_ENUM, nullable=False),
        sa.Column('entity_id', sa.String(), nullable=False),
        sa.Column('campaign_id', sa.String(), nullable=True),
        sa.Column('campaign_name', sa.String(), nullable=True),
        sa.Column('adset_id', sa.String(), nullable=True),
        sa.Column('adset_name', sa.String(), nullable=True),
        sa.Column('ad_id', sa.String(), nullable=True),
        sa.Column('ad_name', sa.String(), nullable=True),
        sa.Column('action_report_time', sa.String(), nullable=False),
        sa.Column('attribution_window', sa.String(), nullable=False),
        sa.Column('currency', sa.String(), nullable=True),
        sa.Column('spend', sa.Numeric(18, 4), nullable=True),
        sa.Column('impressions', sa.Integer(), nullable=True),
        sa.Column('clicks', sa.Integer(), nullable=True),
        sa.Column('inline_link_clicks', sa.Integer(), nullable=True),
        sa.Column('conversions', sa.Numeric(18, 4), nullable=True),
        sa.Column('purchases', sa.Numeric(18, 4), nullable=True),
        sa.Column('revenue', sa.Numeric(18, 4), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint(
            'tenant_id', 'account_id', 'date', 'level', 'entity_id',
            name='uq_meta_insights_levels_entity_day',
        ),
    )

    op.create_table(
        'kpi_daily',
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('tenants.id'), primary_key=True),
        sa.Column('date', sa.Date(), primary_key=True),
        sa.Column('source', sa.String(), primary_key=True),
        sa.Column('currency', sa.String(), nullable=True),
        sa.Column('spend', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('clicks', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('conversions', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('revenue', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('aov', sa.Numeric(18, 6), nullable=True),
        sa.Column('cos', sa.Numeric(18, 6), nullable=True),
        sa.Column('roas', sa.Numeric(18, 6), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )

    # =========================================================================
    # STEP 4: Run bookkeeping
    # =========================================================================
    op.create_table(
        'jobs_log',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('tenants.id'), nullable=False, index=True),
        sa.Column('source', sa.String(), nullable=False, server_default='meta'),
        sa.Column('mode', sa.String(), nullable=True),
        sa.Column('status', JOB_STATUS_ENUM, nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
    )

    op.create_table(
        'meta_backfill_jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('tenant_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('tenants.id'), nullable=False, index=True),
        sa.Column('account_id', sa.String(), nullable=True),
        sa.Column('since', sa.Date(), nullable=False),
        sa.Column('until', sa.Date(), nullable=False),
        sa.Column('status', BACKFILL_STATUS_ENUM, nullable=False),
        sa.Column('chunk_size_days', sa.Integer(), nullable=False),
        sa.Column('chunk_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('progress_completed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('progress_total', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('rows_inserted', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table('meta_backfill_jobs')
    op.drop_table('jobs_log')
    op.drop_table('kpi_daily')
    op.drop_table('meta_insights_levels')
    op.drop_table('meta_insights_daily')
    op.drop_index('ix_connections_tenant_provider', table_name='connections')
    op.drop_table('connections')
    op.drop_table('tokens')
    op.drop_table('tenants')

    bind = op.get_bind()
    for enum_type in (BACKFILL_STATUS_ENUM, JOB_STATUS_ENUM, LEVEL_ENUM, PROVIDER_ENUM):
        enum_type.drop(bind, checkfirst=True)
