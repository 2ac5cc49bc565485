"""
Sentry Error Tracking
=====================

Centralized error tracking for the API, the arq worker and the backfill CLI.

Related files:
- adsync/main.py: Initializes Sentry on app startup
- adsync/workers/arq_worker.py: Initializes Sentry on worker startup
- adsync/services/meta_sync_service.py: Captures unexpected tenant run failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled without it)
- ENVIRONMENT: Environment name (production, staging, development)
- RELEASE_VERSION: Release identifier set by CI/CD (optional)
"""

from __future__ import annotations

import os
import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from adsync.deps import get_settings

logger = logging.getLogger(__name__)


def init_sentry() -> bool:
    """
    Initialize the Sentry SDK.

    Call once per process (API startup, worker startup, CLI main).

    Returns:
        True if Sentry was initialized, False when no DSN is configured
        or initialization failed.
    """
    settings = get_settings()
    dsn = settings.SENTRY_DSN
    if not dsn:
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=settings.ENVIRONMENT,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                LoggingIntegration(
                    level=logging.INFO,        # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )
        logger.debug("[SENTRY] Initialized for %s environment", settings.ENVIRONMENT)
        return True
    except Exception as e:
        logger.error("[SENTRY] Failed to initialize: %s", e)
        return False


def set_tenant_context(tenant_id: str, account_id: Optional[str] = None) -> None:
    """Tag subsequent events with the tenant being synced."""
    sentry_sdk.set_tag("tenant_id", tenant_id)
    if account_id:
        sentry_sdk.set_tag("ad_account_id", account_id)


def capture_exception(exception: BaseException, extra: Optional[dict] = None) -> None:
    """
    Capture a handled exception with extra context.

    Use this for exceptions that are caught and turned into a failed run but
    should still be tracked. A no-op when Sentry isn't initialized.

    Example:
        except Exception as e:
            capture_exception(e, extra={"operation": "meta_sync", "tenant_id": str(tenant_id)})
    """
    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in (extra or {}).items():
                scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error("[SENTRY] Failed to capture exception: %s", e)


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """Capture a notable non-exception event (e.g. a soft-failed sync)."""
    try:
        with sentry_sdk.new_scope() as scope:
            for key, value in (extra or {}).items():
                scope.set_extra(key, value)
            sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.error("[SENTRY] Failed to capture message: %s", e)
