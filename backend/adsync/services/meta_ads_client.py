"""Meta Ads async insights client.

WHAT:
    Drives one insights report through Meta's asynchronous job protocol:
    start (POST act_<id>/insights) -> poll (GET <report_run_id>) -> fetch
    (GET result pages following `paging.next`). Every call goes through the
    retrying HTTP layer.

WHY:
    - Async report runs are the only way to pull daily insights for wide
      windows with breakdowns without hitting synchronous timeouts.
    - Polling runs on a fixed cadence, separate from the retry backoff.
    - Errors abort only the report being run; the scheduler decides what a
      failed report means for the whole sync.

WHERE USED:
    - adsync/services/meta_sync_service.py (one report per matrix task)

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/insights/best-practices#asynchronous
    - adsync/services/meta_graph_http.py (retry + error mapping)
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx

from adsync.deps import get_settings
from adsync.services.insights_matrix import InsightsTask
from adsync.services.meta_graph_http import (
    MetaAdsClientError,
    RetryPolicy,
    Sleeper,
    send_with_retry,
)

logger = logging.getLogger(__name__)


ACCOUNT_FIELDS: List[str] = [
    "account_id",
    "account_name",
    "account_currency",
    "date_start",
    "date_stop",
    "spend",
    "impressions",
    "reach",
    "clicks",
    "unique_clicks",
    "inline_link_clicks",
    "cpm",
    "cpc",
    "ctr",
    "frequency",
    "objective",
    "buying_type",
    "actions",
    "conversions",
    "action_values",
    "purchase_roas",
    "cost_per_action_type",
]

ENTITY_FIELDS: List[str] = ACCOUNT_FIELDS + [
    "campaign_id",
    "campaign_name",
    "adset_id",
    "adset_name",
    "ad_id",
    "ad_name",
]

PAGE_LIMIT = 500
MAX_PAGES_PER_RESULT = 1000


class MetaReportJobError(MetaAdsClientError):
    """Async report job could not be started or finished in a failed state."""


class MetaReportTimeoutError(MetaReportJobError):
    """Async report job did not complete before the poll deadline."""


class AsyncJobStatus(str, enum.Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


@dataclass
class AsyncReportJob:
    """State of one report run as last seen by the poller."""

    job_id: str
    status: AsyncJobStatus = AsyncJobStatus.pending
    raw_status: Optional[str] = None
    percent_complete: Optional[float] = None
    result_urls: List[str] = field(default_factory=list)


def ensure_act_prefix(account_id: str) -> str:
    account_id = str(account_id).strip()
    return account_id if account_id.startswith("act_") else f"act_{account_id}"


def parse_job_status(raw_status: Optional[str]) -> AsyncJobStatus:
    """Map Meta's `async_status` strings onto the job states we branch on."""
    status = (raw_status or "").strip().lower()
    if status == "job completed":
        return AsyncJobStatus.completed
    if "failed" in status or "skipped" in status:
        return AsyncJobStatus.failed
    if not status or status == "job not started":
        return AsyncJobStatus.pending
    return AsyncJobStatus.running


def fields_for_level(level: str) -> List[str]:
    return ACCOUNT_FIELDS if level == "account" else ENTITY_FIELDS


class MetaInsightsClient:
    """Async client for Meta insights report runs.

    Args:
        access_token: Decrypted bearer token for the tenant.
        http_client: Shared `httpx.AsyncClient`; one is created (and closed
            by `aclose`) when omitted.
        retry_policy: Backoff settings for every call.
        poll_interval: Seconds between status polls.
        poll_timeout: Maximum seconds to wait for a job to complete.
        sleep / clock: Injected for tests.

    Example:
        async with MetaInsightsClient(token) as client:
            rows = await client.run_report("act_123", task)
    """

    def __init__(
        self,
        access_token: str,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        base_url: Optional[str] = None,
        api_version: Optional[str] = None,
        retry_policy: Optional[RetryPolicy] = None,
        poll_interval: Optional[float] = None,
        poll_timeout: Optional[float] = None,
        sleep: Sleeper = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not access_token:
            raise ValueError("Meta access token is required")

        settings = get_settings()
        self.access_token = access_token
        self.base_url = (base_url or settings.META_GRAPH_BASE_URL).rstrip("/")
        self.api_version = api_version or settings.META_API_VERSION
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=settings.META_HTTP_MAX_ATTEMPTS,
            base_delay=settings.META_HTTP_BASE_DELAY_SECONDS,
        )
        self.poll_interval = settings.META_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self.poll_timeout = settings.META_POLL_TIMEOUT_SECONDS if poll_timeout is None else poll_timeout
        self._sleep = sleep
        self._clock = clock
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=settings.META_HTTP_TIMEOUT_SECONDS)

    async def __aenter__(self) -> "MetaInsightsClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()

    # ── Core request ──

    def graph_url(self, path: str) -> str:
        return f"{self.base_url}/{self.api_version}/{path.lstrip('/')}"

    async def _call(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        context: str = "",
    ) -> Dict[str, Any]:
        request = self._client.build_request(
            method,
            url,
            params=params,
            data=data,
            headers={"Authorization": f"Bearer {self.access_token}"},
        )
        response = await send_with_retry(
            self._client.send,
            request,
            policy=self.retry_policy,
            sleep=self._sleep,
            context=context,
        )
        try:
            payload = response.json()
        except ValueError as exc:
            raise MetaAdsClientError(
                f"Non-JSON response from Meta (while {context})",
                status_code=response.status_code,
            ) from exc
        if not isinstance(payload, dict):
            raise MetaAdsClientError(f"Unexpected response shape from Meta (while {context})")
        return payload

    # ── Phase 1: start ──

    def build_report_params(self, task: InsightsTask) -> Dict[str, str]:
        params = {
            "fields": ",".join(fields_for_level(task.level)),
            "level": task.level,
            "time_range": json.dumps({
                "since": task.month_since.isoformat(),
                "until": task.month_until.isoformat(),
            }),
            "time_increment": "1",
            "limit": str(PAGE_LIMIT),
            "action_report_time": task.action_report_time,
            "action_attribution_windows": json.dumps([task.attribution_window]),
        }
        if task.breakdown_fields:
            params["breakdowns"] = ",".join(task.breakdown_fields)
        return params

    async def start_report(self, account_id: str, task: InsightsTask) -> str:
        """Submit the report run and return its job id."""
        context = f"start {task.label}"
        payload = await self._call(
            "POST",
            self.graph_url(f"{ensure_act_prefix(account_id)}/insights"),
            data=self.build_report_params(task),
            context=context,
        )
        job_id = payload.get("report_run_id") or payload.get("id")
        if not job_id:
            raise MetaReportJobError(f"Meta did not return a report run id (while {context})")
        logger.info("[META_REPORT] Started job %s for %s", job_id, task.label)
        return str(job_id)

    # ── Phase 2: poll ──

    def _job_from_payload(self, job_id: str, payload: Dict[str, Any]) -> AsyncReportJob:
        urls: List[str] = []
        result_urls = payload.get("result_urls")
        if isinstance(result_urls, list):
            urls.extend(u for u in result_urls if isinstance(u, str) and u)
        if isinstance(payload.get("result_url"), str) and payload["result_url"]:
            urls.append(payload["result_url"])

        percent = payload.get("async_percent_completion")
        return AsyncReportJob(
            job_id=job_id,
            status=parse_job_status(payload.get("async_status")),
            raw_status=payload.get("async_status"),
            percent_complete=percent if isinstance(percent, (int, float)) else None,
            result_urls=list(dict.fromkeys(urls)),
        )

    async def poll_report(self, job_id: str, *, context: str = "") -> AsyncReportJob:
        """Poll until the job completes, fails, or the deadline passes.

        Raises:
            MetaReportJobError: Meta reported the job failed/skipped.
            MetaReportTimeoutError: still running after `poll_timeout` seconds.
        """
        deadline = self._clock() + self.poll_timeout
        polls = 0

        while True:
            payload = await self._call("GET", self.graph_url(job_id), context=f"poll {context}")
            polls += 1
            job = self._job_from_payload(job_id, payload)

            if job.status == AsyncJobStatus.completed:
                logger.info("[META_REPORT] Job %s completed after %d polls", job_id, polls)
                return job

            if job.status == AsyncJobStatus.failed:
                raise MetaReportJobError(f"Report job {job_id} ended with status {job.raw_status!r} ({context})")

            if self._clock() >= deadline:
                raise MetaReportTimeoutError(
                    f"Report job {job_id} still {job.raw_status!r} after {self.poll_timeout:.0f}s ({context})"
                )

            logger.info(
                "[META_REPORT] Job %s status=%s progress=%s%%",
                job_id, job.raw_status, job.percent_complete if job.percent_complete is not None else "?",
            )
            await self._sleep(self.poll_interval)

    # ── Phase 3: fetch ──

    async def fetch_result_rows(self, job: AsyncReportJob, *, context: str = "") -> List[Dict[str, Any]]:
        """Collect every row from every result URL, following `paging.next`."""
        urls = job.result_urls or [self.graph_url(f"{job.job_id}/insights")]
        rows: List[Dict[str, Any]] = []

        for url in urls:
            next_url: Optional[str] = url
            params: Optional[Dict[str, Any]] = {"limit": str(PAGE_LIMIT)}
            pages = 0
            while next_url and pages < MAX_PAGES_PER_RESULT:
                payload = await self._call("GET", next_url, params=params, context=f"fetch {context}")
                pages += 1
                data = payload.get("data") or []
                rows.extend(row for row in data if isinstance(row, dict))
                paging = payload.get("paging") or {}
                next_url = paging.get("next") if isinstance(paging, dict) else None
                params = None  # next links carry their own query string

            if next_url:
                raise MetaReportJobError(
                    f"Report job {job.job_id} still had more pages after {MAX_PAGES_PER_RESULT} pages ({context})"
                )

        logger.info("[META_REPORT] Fetched %d rows for job %s (%s)", len(rows), job.job_id, context)
        return rows

    async def run_report(self, account_id: str, task: InsightsTask) -> List[Dict[str, Any]]:
        """Start, poll and fetch one task's report; returns raw rows."""
        job_id = await self.start_report(account_id, task)
        job = await self.poll_report(job_id, context=task.label)
        return await self.fetch_result_rows(job, context=task.label)
