"""Meta insights sync endpoint.

WHAT:
    Thin HTTP wrapper around the sync trigger.

WHY:
    - Routers handle auth + request parsing only.
    - The same service runs from the arq worker and the backfill CLI.

REFERENCES:
    - backend/adsync/services/meta_sync_service.py
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from adsync.database import get_db
from adsync.deps import require_admin_key
from adsync.schemas import MetaSyncRequest, MetaSyncResponse
from adsync.services import meta_sync_service

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/meta",
    tags=["Meta Sync"],
    dependencies=[Depends(require_admin_key)],
)


@router.post("/sync", response_model=MetaSyncResponse)
async def trigger_meta_sync(
    request: MetaSyncRequest,
    db: Session = Depends(get_db),
) -> MetaSyncResponse:
    """Run a Meta insights sync and return one result per tenant."""
    logger.info(
        "[META_SYNC] HTTP sync requested: tenant=%s mode=%s since=%s until=%s",
        request.tenant_id or "all",
        request.mode.value,
        request.since,
        request.until,
    )
    results = await meta_sync_service.sync_meta_insights(db, request)
    return MetaSyncResponse(results=results)
