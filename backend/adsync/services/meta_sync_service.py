"""Meta insights sync service.

WHAT:
    Runs the sync engine for one or all tenants:
    window -> task matrix -> bounded async report jobs -> normalize ->
    daily-grain upsert -> canonical coarse facts + KPI aggregate ->
    sync state and job log.

WHY:
    - Single entry point shared by the HTTP route, the arq worker and the
      backfill CLI.
    - Each tenant runs in isolation: one tenant's failure never stops the
      next tenant.

ERROR HANDLING:
    - Configuration errors (no token, no ad account, bad matrix override):
      the tenant's run fails immediately, nothing is retried.
    - Task failures (job failed, poll timeout, retries exhausted): isolated
      to that task. One successful task is enough for `succeeded`; the
      caveat goes into the job log details.
    - Permission / unknown-object errors: soft. When every failed task is a
      permission error the run still succeeds and KPIs are aggregated from
      what is already stored.
    - Storage errors: fatal for the run.

REFERENCES:
    - adsync/services/insights_matrix.py (task matrix + canonical cell)
    - adsync/services/kpi_aggregator.py (KPI primary/fallback sources)
    - adsync/services/sync_state.py (job log + watermarks)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from adsync.deps import get_settings
from adsync.models import Connection, ProviderEnum
from adsync.schemas import MetaSyncRequest, TenantSyncResult
from adsync.services.insights_matrix import (
    InsightsTask,
    MatrixConfig,
    MatrixConfigError,
    build_task_matrix,
    resolve_matrix_config,
)
from adsync.services.insights_normalizer import NormalizedInsightRow, normalize_insight_rows
from adsync.services.insights_storage import InsightsStorage, InsightsStorageError
from adsync.services.kpi_aggregator import aggregate_daily_kpis, source_row_from_insight
from adsync.services.meta_ads_client import MetaInsightsClient
from adsync.services.meta_graph_http import MetaAdsPermissionError
from adsync.services.sync_state import (
    finish_job_log,
    mark_sync_failed,
    mark_sync_started,
    produced_range,
    record_sync_state,
    start_job_log,
)
from adsync.services.sync_window import (
    SyncMode,
    SyncWindow,
    parse_date,
    resolve_sync_window,
    sync_state_from_meta,
    tenant_today,
)
from adsync.services.task_scheduler import TaskOutcome, run_bounded
from adsync.services.token_service import TokenProvider
from adsync.telemetry import capture_exception, capture_message, set_tenant_context

logger = logging.getLogger(__name__)

ClientFactory = Callable[[str], MetaInsightsClient]

MAX_LOGGED_FAILURES = 20


class MetaSyncConfigError(Exception):
    """Tenant is not configured well enough to sync; not retriable."""


@dataclass
class TaskRunResult:
    rows: List[NormalizedInsightRow]
    written: int


@dataclass
class TenantRunSummary:
    """What one tenant run produced, before it is written to the job log."""

    succeeded: bool
    account_id: str
    window: SyncWindow
    rows_inserted: int = 0
    error: Optional[str] = None
    rows_range: Optional[tuple] = None
    details: Dict[str, Any] = field(default_factory=dict)


def _default_client_factory(access_token: str) -> MetaInsightsClient:
    return MetaInsightsClient(access_token)


def resolve_account_id(connection: Connection, override: Optional[str] = None) -> Optional[str]:
    """Pick the ad account to sync: override, selected, preferred, first known."""
    if override:
        return override
    meta = connection.meta or {}
    for candidate in (
        meta.get("selected_account_id"),
        meta.get("preferred_account_id"),
        connection.external_account_id,
    ):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    accounts = meta.get("ad_accounts") or []
    if accounts:
        first = accounts[0]
        if isinstance(first, dict):
            first = first.get("id") or first.get("account_id")
        if first:
            return str(first)
    return None


def meta_connections(db: Session, tenant_id=None) -> List[Connection]:
    """Active Meta connections, optionally for one tenant."""
    query = db.query(Connection).filter(
        Connection.provider == ProviderEnum.meta,
        Connection.status == "active",
    )
    if tenant_id is not None:
        query = query.filter(Connection.tenant_id == tenant_id)
    return query.order_by(Connection.connected_at).all()


def _window_for(connection: Connection, request: MetaSyncRequest, today: Optional[date]) -> SyncWindow:
    settings = get_settings()
    meta = connection.meta or {}
    today = today or tenant_today(meta.get("timezone"))
    return resolve_sync_window(
        request.mode,
        today=today,
        state=sync_state_from_meta(meta),
        sync_start=parse_date(meta.get("sync_start_date")),
        since=request.since,
        until=request.until,
        incremental_days=settings.META_INCREMENTAL_DAYS,
        overlap_days=settings.META_REINGEST_OVERLAP_DAYS,
        max_span_days=settings.META_MAX_SYNC_SPAN_DAYS,
    )


def _failure_entries(outcomes: Sequence[TaskOutcome]) -> List[Dict[str, str]]:
    return [
        {"task": o.task.label, "error": f"{type(o.error).__name__}: {o.error}"}
        for o in outcomes
        if not o.ok
    ][:MAX_LOGGED_FAILURES]


async def _run_tenant(
    db: Session,
    connection: Connection,
    request: MetaSyncRequest,
    *,
    client_factory: ClientFactory,
    token_provider: TokenProvider,
    today: Optional[date],
) -> TenantRunSummary:
    settings = get_settings()
    tenant_id = connection.tenant_id
    meta = connection.meta or {}

    token = token_provider.get_valid_token(tenant_id)
    if not token:
        raise MetaSyncConfigError("No valid Meta access token for tenant")

    account_id = resolve_account_id(connection, request.account_id)
    if not account_id:
        raise MetaSyncConfigError("No Meta ad account selected for tenant")
    set_tenant_context(str(tenant_id), account_id)

    try:
        config: MatrixConfig = resolve_matrix_config(meta, settings.META_DEFAULT_INSIGHTS_PROFILE)
    except MatrixConfigError as exc:
        raise MetaSyncConfigError(f"Invalid insights matrix configuration: {exc}") from exc

    window = _window_for(connection, request, today)
    tasks = build_task_matrix(window, config)
    concurrency = request.concurrency or settings.META_SYNC_CONCURRENCY
    storage = InsightsStorage(db, batch_size=settings.META_UPSERT_BATCH_SIZE)

    logger.info(
        "[META_SYNC] Tenant %s account %s: %s %s..%s, %d tasks (profile=%s, concurrency=%d)",
        tenant_id, account_id, request.mode.value, window.since, window.until,
        len(tasks), config.profile, concurrency,
    )

    async with client_factory(token) as client:

        async def handle(task: InsightsTask) -> TaskRunResult:
            raw_rows = await client.run_report(account_id, task)
            rows = normalize_insight_rows(raw_rows, task.level, task.breakdown_fields)
            # Writes stay on the loop thread: the tenant session is not thread-safe
            written = storage.upsert_daily(tenant_id, account_id, task, rows)
            return TaskRunResult(rows=rows, written=written)

        outcomes = await run_bounded(tasks, handle, limit=concurrency)

    # Storage errors are fatal for the whole run
    for outcome in outcomes:
        if isinstance(outcome.error, InsightsStorageError):
            raise outcome.error

    succeeded = [o for o in outcomes if o.ok]
    failed = [o for o in outcomes if not o.ok]
    soft_failed = [o for o in failed if isinstance(o.error, MetaAdsPermissionError)]
    hard_failed = [o for o in failed if not isinstance(o.error, MetaAdsPermissionError)]

    rows_inserted = sum(o.result.written for o in succeeded)
    rows_range = produced_range(row.date_start for o in succeeded for row in o.result.rows)

    run_ok = bool(succeeded) or not hard_failed
    details: Dict[str, Any] = {
        "account_id": account_id,
        "window": window.as_dict(),
        "profile": config.profile,
        "tasks_total": len(outcomes),
        "tasks_failed": len(failed),
        "tasks_soft_failed": len(soft_failed),
        "rows_inserted": rows_inserted,
    }
    if failed:
        details["failures"] = _failure_entries(failed)

    if soft_failed:
        logger.warning(
            "[META_SYNC] Tenant %s: %d tasks hit permission/unknown-object errors; continuing with stored data",
            tenant_id, len(soft_failed),
        )
        capture_message(
            "Meta sync hit permission errors",
            level="warning",
            extra={"tenant_id": str(tenant_id), "account_id": account_id, "tasks_soft_failed": len(soft_failed)},
        )

    # Canonical pass: coarse facts per successful canonical chunk, then KPIs
    if run_ok:
        canonical = [o for o in outcomes if o.task.is_canonical(config.canonical)]
        for outcome in canonical:
            if outcome.ok:
                storage.replace_level_facts(
                    tenant_id,
                    account_id,
                    outcome.task.month_since,
                    outcome.task.month_until,
                    outcome.task,
                    outcome.result.rows,
                )

        if canonical and all(o.ok for o in canonical):
            kpi_path = "primary"
            source_rows = [source_row_from_insight(row) for o in canonical for row in o.result.rows]
        else:
            kpi_path = "fallback"
            source_rows = storage.load_canonical_daily(
                tenant_id, account_id, config.canonical, window.since, window.until,
            )
        kpis = aggregate_daily_kpis(
            source_rows, window.since, window.until, fallback_currency=meta.get("currency"),
        )
        storage.upsert_kpis(tenant_id, kpis)
        details["kpi_path"] = kpi_path
        details["kpi_days"] = len(kpis)

    error: Optional[str] = None
    if not run_ok:
        first = hard_failed[0]
        error = f"All {len(outcomes)} report tasks failed; first error: {type(first.error).__name__}: {first.error}"
    elif failed:
        details["caveat"] = f"Partial success: {len(failed)} of {len(outcomes)} report tasks failed"

    return TenantRunSummary(
        succeeded=run_ok,
        account_id=account_id,
        window=window,
        rows_inserted=rows_inserted,
        error=error,
        rows_range=rows_range,
        details=details,
    )


async def sync_tenant(
    db: Session,
    connection: Connection,
    request: MetaSyncRequest,
    *,
    client_factory: Optional[ClientFactory] = None,
    token_provider: Optional[TokenProvider] = None,
    today: Optional[date] = None,
) -> TenantSyncResult:
    """Sync one tenant's connection; never raises for run-level failures.

    The job log entry is written before any work and always closed with a
    terminal status.
    """
    tenant_id = connection.tenant_id
    job = start_job_log(db, tenant_id, request.mode)
    mark_sync_started(db, connection)

    try:
        summary = await _run_tenant(
            db,
            connection,
            request,
            client_factory=client_factory or _default_client_factory,
            token_provider=token_provider or TokenProvider(db),
            today=today,
        )
    except MetaSyncConfigError as exc:
        logger.error("[META_SYNC] Tenant %s configuration error: %s", tenant_id, exc)
        return _fail(db, connection, job, str(exc), {"error_type": "configuration"})
    except InsightsStorageError as exc:
        logger.error("[META_SYNC] Tenant %s storage error: %s", tenant_id, exc)
        capture_exception(exc, extra={"operation": "meta_sync", "tenant_id": str(tenant_id)})
        return _fail(db, connection, job, str(exc), {"error_type": "storage"})
    except Exception as exc:
        logger.exception("[META_SYNC] Tenant %s sync crashed: %s", tenant_id, exc)
        capture_exception(exc, extra={"operation": "meta_sync", "tenant_id": str(tenant_id)})
        return _fail(db, connection, job, f"{type(exc).__name__}: {exc}", {"error_type": "unexpected"})

    if summary.succeeded:
        record_sync_state(
            db,
            connection,
            request.mode,
            account_id=summary.account_id,
            rows_range=summary.rows_range,
        )
    else:
        mark_sync_failed(db, connection, summary.error or "Sync failed")

    finish_job_log(db, job, succeeded=summary.succeeded, error=summary.error, details=summary.details)

    logger.info(
        "[META_SYNC] Tenant %s %s: %d rows (%s)",
        tenant_id, "succeeded" if summary.succeeded else "failed", summary.rows_inserted,
        summary.details.get("caveat") or summary.error or "complete",
    )
    return TenantSyncResult(
        tenant_id=tenant_id,
        status="succeeded" if summary.succeeded else "failed",
        rows_inserted=summary.rows_inserted,
        error=summary.error,
        job_id=job.id,
    )


def _fail(db: Session, connection: Connection, job, message: str, details: Dict[str, Any]) -> TenantSyncResult:
    mark_sync_failed(db, connection, message)
    finish_job_log(db, job, succeeded=False, error=message, details=details)
    return TenantSyncResult(
        tenant_id=connection.tenant_id,
        status="failed",
        rows_inserted=0,
        error=message,
        job_id=job.id,
    )


async def sync_meta_insights(
    db: Session,
    request: MetaSyncRequest,
    *,
    client_factory: Optional[ClientFactory] = None,
    token_provider: Optional[TokenProvider] = None,
    today: Optional[date] = None,
) -> List[TenantSyncResult]:
    """Sync trigger: one tenant when `request.tenant_id` is set, else all.

    Returns:
        One `TenantSyncResult` per tenant, in connection order.
    """
    connections = meta_connections(db, request.tenant_id)

    if request.tenant_id is not None and not connections:
        logger.error("[META_SYNC] No active Meta connection for tenant %s", request.tenant_id)
        return [
            TenantSyncResult(
                tenant_id=request.tenant_id,
                status="failed",
                error="No active Meta connection for tenant",
            )
        ]

    logger.info("[META_SYNC] Starting %s sync for %d tenant(s)", request.mode.value, len(connections))
    results: List[TenantSyncResult] = []
    for connection in connections:
        results.append(
            await sync_tenant(
                db,
                connection,
                request,
                client_factory=client_factory,
                token_provider=token_provider,
                today=today,
            )
        )

    failed = sum(1 for r in results if r.status == "failed")
    logger.info("[META_SYNC] Finished: %d succeeded, %d failed", len(results) - failed, failed)
    return results
