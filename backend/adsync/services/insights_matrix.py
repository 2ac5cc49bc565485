"""Insights task matrix: which async reports one run submits.

WHAT:
    Expands a sync window into independent report tasks: levels x breakdown
    sets x action report times x attribution windows x calendar-month
    chunks. Also resolves the tenant's matrix configuration and its
    canonical combination from the connection's meta blob.

WHY:
    - One month per job keeps each async report within Meta's processing
      limits and bounds result size.
    - Tasks share no state, so any one can fail or be re-run alone.
    - High-volume tenants run a reduced "fast" profile to stay inside
      rate-limit and execution-time budgets; their canonical attribution
      window differs accordingly.

REFERENCES:
    - https://developers.facebook.com/docs/marketing-api/insights/breakdowns
    - backend/adsync/services/meta_sync_service.py (consumer)
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from itertools import product
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple, get_args

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from adsync.models import LevelEnum
from adsync.services.sync_window import SyncWindow


Level = Literal["account", "campaign", "adset", "ad"]
BreakdownKey = Literal["none", "A", "B", "C", "D"]
ActionReportTime = Literal["impression", "conversion"]
AttributionWindow = Literal["1d_click", "7d_click", "1d_view"]

LEVELS: Tuple[str, ...] = get_args(Level)
ACTION_REPORT_TIMES: Tuple[str, ...] = get_args(ActionReportTime)
ATTRIBUTION_WINDOWS: Tuple[str, ...] = get_args(AttributionWindow)

# Breakdown sets keyed by a short, stable key stored on every daily row.
BREAKDOWN_SETS: Dict[str, Tuple[str, ...]] = {
    "none": (),
    "A": ("publisher_platform", "platform_position"),
    "B": ("age", "gender"),
    "C": ("country",),
    "D": ("device_platform",),
}


class MatrixConfigError(ValueError):
    """Tenant matrix override is unusable (unknown value or no canonical cell)."""


@dataclass(frozen=True)
class CanonicalCombination:
    """The single matrix cell trusted for coarse facts and KPIs."""

    level: str = "account"
    breakdown_key: str = "none"
    action_report_time: str = "impression"
    attribution_window: str = "1d_click"


@dataclass(frozen=True)
class MatrixConfig:
    levels: Tuple[str, ...]
    breakdown_keys: Tuple[str, ...]
    action_report_times: Tuple[str, ...]
    attribution_windows: Tuple[str, ...]
    canonical: CanonicalCombination
    profile: str = "full"


@dataclass(frozen=True)
class InsightsTask:
    """One async report job: a matrix cell over one month chunk."""

    level: str
    breakdown_key: str
    breakdown_fields: Tuple[str, ...]
    action_report_time: str
    attribution_window: str
    month_since: date
    month_until: date

    @property
    def label(self) -> str:
        return (
            f"{self.level}/{self.breakdown_key}/{self.action_report_time}/"
            f"{self.attribution_window}/{self.month_since}..{self.month_until}"
        )

    def is_canonical(self, canonical: CanonicalCombination) -> bool:
        return (
            self.level == canonical.level
            and self.breakdown_key == canonical.breakdown_key
            and self.action_report_time == canonical.action_report_time
            and self.attribution_window == canonical.attribution_window
        )


PROFILES: Dict[str, MatrixConfig] = {
    "full": MatrixConfig(
        levels=LEVELS,
        breakdown_keys=tuple(BREAKDOWN_SETS),
        action_report_times=ACTION_REPORT_TIMES,
        attribution_windows=ATTRIBUTION_WINDOWS,
        canonical=CanonicalCombination(),
        profile="full",
    ),
    "fast": MatrixConfig(
        levels=("account", "campaign"),
        breakdown_keys=("none", "C"),
        action_report_times=("impression",),
        attribution_windows=("7d_click",),
        canonical=CanonicalCombination(attribution_window="7d_click"),
        profile="fast",
    ),
}


# =============================================================================
# TENANT OVERRIDES (Connection.meta["insights_matrix"])
# =============================================================================

class CanonicalOverride(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: Optional[Level] = None
    breakdown_key: Optional[Literal["none"]] = None
    action_report_time: Optional[ActionReportTime] = None
    attribution_window: Optional[AttributionWindow] = None


class MatrixOverride(BaseModel):
    """Per-tenant narrowing of the profile's matrix. Lists may be comma-separated strings."""

    model_config = ConfigDict(extra="forbid")

    levels: Optional[List[Level]] = Field(default=None, min_length=1)
    breakdown_keys: Optional[List[BreakdownKey]] = Field(default=None, min_length=1)
    action_report_times: Optional[List[ActionReportTime]] = Field(default=None, min_length=1)
    attribution_windows: Optional[List[AttributionWindow]] = Field(default=None, min_length=1)
    canonical: Optional[CanonicalOverride] = None

    @field_validator("levels", "breakdown_keys", "action_report_times", "attribution_windows", mode="before")
    @classmethod
    def _split_comma_list(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value


def _dedupe(values: Optional[List[str]]) -> Optional[Tuple[str, ...]]:
    # First occurrence wins
    return tuple(dict.fromkeys(values)) if values else None


def _format_validation_error(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in error['loc']) or 'insights_matrix'}: {error['msg']}"
        for error in exc.errors()
    )


def resolve_matrix_config(
    meta: Optional[Mapping[str, Any]],
    default_profile: str = "full",
) -> MatrixConfig:
    """Build the tenant's matrix config from `Connection.meta`.

    Reads `insights_profile` (full | fast) and an optional `insights_matrix`
    mapping validated as `MatrixOverride`.

    Raises:
        MatrixConfigError: unknown profile or values, or a matrix that
            doesn't contain its own canonical cell.
    """
    meta = meta or {}
    profile_name = meta.get("insights_profile") or default_profile
    if profile_name not in PROFILES:
        raise MatrixConfigError(f"Unknown insights profile: {profile_name}")
    base = PROFILES[profile_name]

    try:
        overrides = MatrixOverride.model_validate(meta.get("insights_matrix") or {})
    except ValidationError as exc:
        raise MatrixConfigError(_format_validation_error(exc)) from exc

    canonical = base.canonical
    if overrides.canonical is not None:
        canonical = CanonicalCombination(
            level=overrides.canonical.level or canonical.level,
            breakdown_key="none",
            action_report_time=overrides.canonical.action_report_time or canonical.action_report_time,
            attribution_window=overrides.canonical.attribution_window or canonical.attribution_window,
        )

    config = MatrixConfig(
        levels=_dedupe(overrides.levels) or base.levels,
        breakdown_keys=_dedupe(overrides.breakdown_keys) or base.breakdown_keys,
        action_report_times=_dedupe(overrides.action_report_times) or base.action_report_times,
        attribution_windows=_dedupe(overrides.attribution_windows) or base.attribution_windows,
        canonical=canonical,
        profile=profile_name,
    )
    if not contains_canonical(config):
        raise MatrixConfigError(
            "Insights matrix does not include its canonical combination "
            f"({canonical.level}/{canonical.breakdown_key}/{canonical.action_report_time}/{canonical.attribution_window})"
        )
    return config


def contains_canonical(config: MatrixConfig) -> bool:
    canonical = config.canonical
    return (
        canonical.level in config.levels
        and canonical.breakdown_key in config.breakdown_keys
        and canonical.action_report_time in config.action_report_times
        and canonical.attribution_window in config.attribution_windows
    )


def month_chunks(window: SyncWindow) -> List[Tuple[date, date]]:
    """Split a window on calendar-month boundaries.

    The first chunk starts at `since`, the last ends at `until`; every
    interior chunk is a full month.
    """
    chunks: List[Tuple[date, date]] = []
    current = window.since
    while current <= window.until:
        last_day = calendar.monthrange(current.year, current.month)[1]
        chunk_end = min(current.replace(day=last_day), window.until)
        chunks.append((current, chunk_end))
        current = chunk_end + timedelta(days=1)
    return chunks


def build_task_matrix(window: SyncWindow, config: MatrixConfig) -> Tuple[InsightsTask, ...]:
    """Expand a window and matrix config into the run's task tuple."""
    for level in config.levels:
        LevelEnum(level)  # fail early on typos in hand-built configs

    return tuple(
        InsightsTask(
            level=level,
            breakdown_key=breakdown_key,
            breakdown_fields=BREAKDOWN_SETS[breakdown_key],
            action_report_time=report_time,
            attribution_window=attribution_window,
            month_since=chunk_since,
            month_until=chunk_until,
        )
        for level, breakdown_key, report_time, attribution_window, (chunk_since, chunk_until) in product(
            config.levels,
            config.breakdown_keys,
            config.action_report_times,
            config.attribution_windows,
            month_chunks(window),
        )
    )
