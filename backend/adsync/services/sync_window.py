"""Sync window resolution for Meta insights runs.

WHAT:
    Computes the inclusive [since, until] day range a tenant's run covers,
    from the tenant's persisted sync state and the requested mode.

WHY:
    - Incremental runs re-read a few days before the previous watermark so
      late attribution corrections on Meta's side are picked up.
    - Backfills are capped so a bad override can't request years of data.
    - Pure and deterministic: same inputs, same window. Re-runs are
      idempotent and the rules are unit-testable without a database.

REFERENCES:
    - backend/adsync/services/sync_state.py (writes the watermarks read here)
    - backend/tests_unit/test_sync_window.py
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
import logging

logger = logging.getLogger(__name__)


class SyncMode(str, enum.Enum):
    incremental = "incremental"
    backfill = "backfill"


@dataclass(frozen=True)
class SyncWindow:
    """Inclusive day range; `since <= until` always holds."""

    since: date
    until: date

    def __post_init__(self):
        if self.since > self.until:
            raise ValueError(f"since {self.since} is after until {self.until}")

    @property
    def days(self) -> int:
        return (self.until - self.since).days + 1

    def iter_days(self):
        current = self.since
        while current <= self.until:
            yield current
            current += timedelta(days=1)

    def as_dict(self) -> Dict[str, str]:
        return {"since": self.since.isoformat(), "until": self.until.isoformat()}


@dataclass(frozen=True)
class SyncState:
    """Watermarks persisted on the connection's `meta` blob."""

    last_synced_at: Optional[datetime] = None
    last_synced_range: Optional[SyncWindow] = None
    last_backfill_at: Optional[datetime] = None
    last_backfill_range: Optional[SyncWindow] = None


def parse_date(value: Any) -> Optional[date]:
    """Parse an ISO date (or datetime) string; None when missing or malformed."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


def _parse_range(value: Any) -> Optional[SyncWindow]:
    if not isinstance(value, Mapping):
        return None
    since = parse_date(value.get("since"))
    until = parse_date(value.get("until"))
    if since is None or until is None or since > until:
        return None
    return SyncWindow(since, until)


def sync_state_from_meta(meta: Optional[Mapping[str, Any]]) -> SyncState:
    """Read the SyncState fields out of a connection's meta blob."""
    meta = meta or {}
    return SyncState(
        last_synced_at=_parse_datetime(meta.get("last_synced_at")),
        last_synced_range=_parse_range(meta.get("last_synced_range")),
        last_backfill_at=_parse_datetime(meta.get("last_backfill_at")),
        last_backfill_range=_parse_range(meta.get("last_backfill_range")),
    )


def tenant_today(timezone_name: Optional[str], now: Optional[datetime] = None) -> date:
    """Return today's date in the tenant's timezone (UTC when unknown)."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    if timezone_name:
        try:
            return now.astimezone(ZoneInfo(timezone_name)).date()
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("[SYNC_WINDOW] Unknown timezone %r, falling back to UTC", timezone_name)
    return now.astimezone(timezone.utc).date()


def _cap_span(since: date, until: date, max_span_days: int) -> date:
    if (until - since).days + 1 > max_span_days:
        return until - timedelta(days=max_span_days - 1)
    return since


def resolve_sync_window(
    mode: SyncMode,
    *,
    today: date,
    state: SyncState,
    sync_start: Optional[date] = None,
    since: Optional[date] = None,
    until: Optional[date] = None,
    incremental_days: int = 7,
    overlap_days: int = 3,
    max_span_days: int = 1095,
) -> SyncWindow:
    """Compute the window for one tenant run.

    Incremental:
        The last `incremental_days` days ending today. Before the first
        successful incremental run the window reaches back to `sync_start`;
        afterwards it reaches back to `overlap_days` before the previous
        run's `until` when that is earlier. Never starts before `sync_start`.

    Backfill:
        `since`/`until` overrides, else `sync_start` to today. Swapped when
        inverted.

    Both modes end no later than `today` and span at most `max_span_days`.
    Explicit overrides are honoured in incremental mode too, clamped to
    `sync_start` and today.
    """
    if incremental_days < 1 or max_span_days < 1 or overlap_days < 0:
        raise ValueError("incremental_days and max_span_days must be >= 1, overlap_days >= 0")

    mode = SyncMode(mode)

    if mode == SyncMode.backfill:
        start = since or sync_start or (today - timedelta(days=max_span_days - 1))
        end = until or today
        start = min(start, today)
        end = min(end, today)
        if start > end:
            start, end = end, start
    else:
        end = min(until or today, today)
        if since is not None:
            start = since
        else:
            start = end - timedelta(days=incremental_days - 1)
            previous = state.last_synced_range
            if previous is None:
                if sync_start and sync_start < start:
                    start = sync_start
            else:
                overlap_start = previous.until - timedelta(days=overlap_days)
                if overlap_start < start:
                    start = overlap_start
        if sync_start:
            start = max(start, sync_start)
            end = min(max(end, sync_start), today)
        if start > end:
            # sync_start in the future or an inverted override: sync only the last day
            start = end

    start = _cap_span(start, end, max_span_days)
    window = SyncWindow(start, end)
    logger.debug("[SYNC_WINDOW] mode=%s today=%s -> %s..%s", mode.value, today, window.since, window.until)
    return window
