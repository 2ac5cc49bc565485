"""
Telemetry Module
================

Observability for the sync engine.

Components:
- sentry.py: Error tracking

Usage:
    from adsync.telemetry import init_sentry, capture_exception

    init_sentry()
"""

from adsync.telemetry.sentry import (
    init_sentry,
    set_tenant_context,
    capture_exception,
    capture_message,
)


__all__ = [
    "init_sentry",
    "set_tenant_context",
    "capture_exception",
    "capture_message",
]
