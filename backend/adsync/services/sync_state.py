"""Sync-state recorder: job log entries and connection watermarks.

WHAT:
    - `start_job_log` / `finish_job_log`: one append-only `jobs_log` row per
      run, inserted as running and closed once with a terminal status.
    - `record_sync_state`: writes the watermark for the run's mode onto the
      connection's meta blob, plus the connection's sync health columns.

WHY:
    - Incremental and backfill watermarks live in separate keys so the two
      modes never clobber each other.
    - Watermarks record the dates rows were actually produced for, not the
      requested window: a run that only covered part of its range must not
      advance past dates it never synced.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, Iterable, Optional, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from adsync.models import Connection, JobLog, JobStatusEnum
from adsync.services.sync_window import SyncMode

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000


def produced_range(dates: Iterable[date]) -> Optional[Tuple[date, date]]:
    """Min/max of the dates rows were produced for; None when there were none."""
    dates = list(dates)
    if not dates:
        return None
    return min(dates), max(dates)


def start_job_log(db: Session, tenant_id: UUID, mode: SyncMode, *, source: str = "meta") -> JobLog:
    job = JobLog(
        tenant_id=tenant_id,
        source=source,
        mode=SyncMode(mode).value,
        status=JobStatusEnum.running,
        started_at=datetime.utcnow(),
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    logger.info("[SYNC_STATE] Job %s started for tenant %s (%s)", job.id, tenant_id, job.mode)
    return job


def finish_job_log(
    db: Session,
    job: JobLog,
    *,
    succeeded: bool,
    error: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> JobLog:
    """Close a job log entry with its terminal status.

    The session is rolled back first so a failed write earlier in the run
    can't prevent the log from reaching a terminal state.
    """
    db.rollback()
    job.status = JobStatusEnum.succeeded if succeeded else JobStatusEnum.failed
    job.finished_at = datetime.utcnow()
    job.error = error[:MAX_ERROR_LENGTH] if error else None
    job.details = details
    db.add(job)
    db.commit()
    logger.info("[SYNC_STATE] Job %s finished: %s%s", job.id, job.status.value, f" ({job.error})" if job.error else "")
    return job


def mark_sync_started(db: Session, connection: Connection) -> None:
    connection.last_sync_attempted_at = datetime.utcnow()
    connection.sync_status = "syncing"
    db.add(connection)
    db.commit()


def mark_sync_failed(db: Session, connection: Connection, error: str) -> None:
    db.rollback()
    connection.sync_status = "error"
    connection.last_sync_error = error[:MAX_ERROR_LENGTH]
    db.add(connection)
    db.commit()


def record_sync_state(
    db: Session,
    connection: Connection,
    mode: SyncMode,
    *,
    account_id: str,
    rows_range: Optional[Tuple[date, date]],
    finished_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Persist the watermark for a successful (or partially successful) run.

    Returns:
        The updated meta blob.
    """
    finished_at = finished_at or datetime.utcnow()
    meta = dict(connection.meta or {})
    mode = SyncMode(mode)

    if mode == SyncMode.incremental:
        meta["last_synced_at"] = finished_at.isoformat()
        meta["last_synced_account_id"] = account_id
        if rows_range:
            meta["last_synced_range"] = {"since": rows_range[0].isoformat(), "until": rows_range[1].isoformat()}
    else:
        meta["last_backfill_at"] = finished_at.isoformat()
        if rows_range:
            meta["last_backfill_range"] = {"since": rows_range[0].isoformat(), "until": rows_range[1].isoformat()}

    # Reassign so SQLAlchemy sees the JSON change
    connection.meta = meta
    connection.last_sync_completed_at = finished_at
    connection.sync_status = "idle"
    connection.last_sync_error = None
    db.add(connection)
    db.commit()

    logger.info(
        "[SYNC_STATE] Tenant %s %s watermark -> %s",
        connection.tenant_id, mode.value,
        f"{rows_range[0]}..{rows_range[1]}" if rows_range else "unchanged (no rows)",
    )
    return meta
