"""Pydantic schemas for request/response payloads."""

from datetime import date
from typing import List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from .services.sync_window import SyncMode


class MetaSyncRequest(BaseModel):
    """Trigger for a Meta insights sync.

    WHAT: Which tenant(s) and window to sync, and in which mode
    WHY: Shared by the HTTP route, the arq job and the backfill CLI
    """

    tenant_id: Optional[UUID] = Field(
        default=None,
        description="Tenant to sync (default: every tenant with an active Meta connection)"
    )
    account_id: Optional[str] = Field(
        default=None,
        description="Ad account override, with or without the act_ prefix"
    )
    mode: SyncMode = Field(
        default=SyncMode.incremental,
        description="incremental (recent days + overlap) or backfill (historical range)"
    )
    since: Optional[date] = Field(
        default=None,
        description="Start date override (inclusive)"
    )
    until: Optional[date] = Field(
        default=None,
        description="End date override (inclusive, clamped to today)"
    )
    concurrency: Optional[int] = Field(
        default=None,
        ge=1,
        le=32,
        description="Parallel report jobs (default: META_SYNC_CONCURRENCY)"
    )

    @field_validator("account_id")
    @classmethod
    def _strip_account(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = value.strip()
        return value or None

    @model_validator(mode="after")
    def _account_needs_tenant(self) -> "MetaSyncRequest":
        if self.account_id and not self.tenant_id:
            raise ValueError("account_id requires tenant_id")
        return self

    model_config = {
        "json_schema_extra": {
            "example": {
                "tenant_id": "8f14e45f-ceea-467a-9575-6ed1c1f0f8a1",
                "mode": "backfill",
                "since": "2025-01-01",
                "until": "2025-03-31",
            }
        }
    }


class TenantSyncResult(BaseModel):
    """Outcome of one tenant's sync run.

    Partial successes are reported as `succeeded`; the caveat is stored on
    the job log entry.
    """

    tenant_id: UUID = Field(description="Tenant that was synced")
    status: Literal["succeeded", "failed"] = Field(description="Terminal run status")
    rows_inserted: int = Field(default=0, description="Daily-grain rows upserted")
    error: Optional[str] = Field(default=None, description="Human-readable failure message")
    job_id: Optional[UUID] = Field(default=None, description="jobs_log entry for this run")


class MetaSyncResponse(BaseModel):
    results: List[TenantSyncResult] = Field(description="One result per tenant")
