"""
Telemetry Module
================

Observability stack for the funnel API.

Components:
- sentry.py: Error tracking
- analytics.py: Buyer event tracking (RudderStack)

Both are optional: without credentials every call is a logged no-op.

Usage:
    from xperience.telemetry import init_observability, shutdown_observability

    init_observability()      # on startup
    shutdown_observability()  # on shutdown
"""

from xperience.telemetry.sentry import (
    init_sentry,
    set_funnel_context,
    capture_exception,
    capture_message,
)
from xperience.telemetry.analytics import (
    init_analytics,
    track,
    track_offer_accepted,
    track_offer_declined,
    track_charge_failed,
    track_identity_unresolved,
    flush as flush_analytics,
)


def init_observability() -> dict:
    """
    Initialize all observability tools.

    Returns:
        {"sentry": bool, "analytics": bool}
    """
    return {
        "sentry": init_sentry(),
        "analytics": init_analytics(),
    }


def shutdown_observability() -> None:
    """Flush pending events on application shutdown."""
    flush_analytics()


__all__ = [
    "init_observability",
    "shutdown_observability",
    "init_sentry",
    "set_funnel_context",
    "capture_exception",
    "capture_message",
    "init_analytics",
    "track",
    "track_offer_accepted",
    "track_offer_declined",
    "track_charge_failed",
    "track_identity_unresolved",
    "flush_analytics",
]
