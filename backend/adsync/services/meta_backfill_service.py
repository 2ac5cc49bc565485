"""Chunked historical backfill.

WHAT:
    Splits a long backfill range into consecutive chunks of
    `chunk_size_days` and runs one backfill sync per chunk, oldest first,
    recording progress on a `meta_backfill_jobs` row.

WHY:
    - A multi-year backfill as one run would hold thousands of report jobs
      and a single job log entry; chunking keeps each run small and makes
      an interrupted backfill visible (`progress_completed` of
      `progress_total`).
    - A failed chunk stops the backfill (status `failed`) instead of
      silently leaving a hole in the middle of the history.

REFERENCES:
    - adsync/services/meta_sync_service.py (per-chunk run)
    - scripts/meta_backfill.py (CLI entry point)
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from adsync.models import BackfillStatusEnum, MetaBackfillJob
from adsync.schemas import MetaSyncRequest
from adsync.services.meta_sync_service import (
    ClientFactory,
    meta_connections,
    sync_tenant,
)
from adsync.services.sync_window import SyncMode, SyncWindow
from adsync.services.token_service import TokenProvider

logger = logging.getLogger(__name__)


def chunk_window(window: SyncWindow, chunk_size_days: int) -> List[SyncWindow]:
    """Consecutive, non-overlapping windows covering `window`, oldest first."""
    if chunk_size_days < 1:
        raise ValueError("chunk_size_days must be >= 1")
    chunks: List[SyncWindow] = []
    start = window.since
    while start <= window.until:
        end = min(start + timedelta(days=chunk_size_days - 1), window.until)
        chunks.append(SyncWindow(start, end))
        start = end + timedelta(days=1)
    return chunks


def _save(db: Session, job: MetaBackfillJob) -> None:
    db.add(job)
    db.commit()


async def run_backfill(
    db: Session,
    tenant_id: UUID,
    since: date,
    until: date,
    *,
    account_id: Optional[str] = None,
    chunk_size_days: int = 30,
    concurrency: Optional[int] = None,
    client_factory: Optional[ClientFactory] = None,
    token_provider: Optional[TokenProvider] = None,
    today: Optional[date] = None,
) -> MetaBackfillJob:
    """Backfill `since..until` for one tenant in chunks.

    Dates past today are clamped by each chunk's window resolution; an
    inverted range is rejected up front.

    Returns:
        The finished `MetaBackfillJob` (completed or failed).
    """
    window = SyncWindow(since, until)
    chunks = chunk_window(window, chunk_size_days)

    job = MetaBackfillJob(
        tenant_id=tenant_id,
        account_id=account_id,
        since=window.since,
        until=window.until,
        status=BackfillStatusEnum.running,
        chunk_size_days=chunk_size_days,
        chunk_count=len(chunks),
        progress_completed=0,
        progress_total=len(chunks),
        rows_inserted=0,
        started_at=datetime.utcnow(),
    )
    _save(db, job)
    logger.info(
        "[BACKFILL] Job %s: tenant %s %s..%s in %d chunk(s) of %d days",
        job.id, tenant_id, window.since, window.until, len(chunks), chunk_size_days,
    )

    connections = meta_connections(db, tenant_id)
    if not connections:
        job.status = BackfillStatusEnum.failed
        job.error = "No active Meta connection for tenant"
        job.finished_at = datetime.utcnow()
        _save(db, job)
        logger.error("[BACKFILL] Job %s: %s", job.id, job.error)
        return job
    connection = connections[0]

    for index, chunk in enumerate(chunks, start=1):
        request = MetaSyncRequest(
            tenant_id=tenant_id,
            account_id=account_id,
            mode=SyncMode.backfill,
            since=chunk.since,
            until=chunk.until,
            concurrency=concurrency,
        )
        result = await sync_tenant(
            db,
            connection,
            request,
            client_factory=client_factory,
            token_provider=token_provider,
            today=today,
        )

        job.rows_inserted = (job.rows_inserted or 0) + result.rows_inserted
        if result.status == "failed":
            job.status = BackfillStatusEnum.failed
            job.error = f"Chunk {index}/{len(chunks)} ({chunk.since}..{chunk.until}) failed: {result.error}"
            job.finished_at = datetime.utcnow()
            _save(db, job)
            logger.error("[BACKFILL] Job %s: %s", job.id, job.error)
            return job

        job.progress_completed = index
        _save(db, job)
        logger.info(
            "[BACKFILL] Job %s: chunk %d/%d done (%s..%s, %d rows)",
            job.id, index, len(chunks), chunk.since, chunk.until, result.rows_inserted,
        )

    job.status = BackfillStatusEnum.completed
    job.finished_at = datetime.utcnow()
    _save(db, job)
    logger.info("[BACKFILL] Job %s completed: %d rows", job.id, job.rows_inserted)
    return job
