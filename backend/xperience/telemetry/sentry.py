"""
Sentry Error Tracking
=====================

Error tracking for the funnel API.

Related files:
- xperience/main.py: Initializes Sentry on app startup
- xperience/services/charge_orchestrator.py: Reports failed charges
- xperience/routers/whop.py: Reports rejected webhooks

Environment Variables:
- SENTRY_DSN: Sentry project DSN (required for Sentry to work)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import os
import logging
from typing import Optional
from functools import lru_cache

logger = logging.getLogger(__name__)


# Sentry SDK import - gracefully handle if not installed
try:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
    from sentry_sdk.integrations.redis import RedisIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration
    SENTRY_AVAILABLE = True
except ImportError:
    SENTRY_AVAILABLE = False
    sentry_sdk = None

_initialized = False


@lru_cache()
def get_sentry_dsn() -> Optional[str]:
    """Get Sentry DSN from environment variable."""
    return os.environ.get("SENTRY_DSN")


def init_sentry() -> bool:
    """
    Initialize Sentry SDK for FastAPI.

    Returns:
        True if Sentry was initialized, False when the SDK or DSN is missing.
    """
    global _initialized

    if not SENTRY_AVAILABLE:
        logger.warning("[SENTRY] sentry-sdk not installed - error tracking disabled")
        return False

    dsn = get_sentry_dsn()
    if not dsn:
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                RedisIntegration(),
                LoggingIntegration(
                    level=logging.INFO,        # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            # Buyer emails and member ids are attached explicitly where needed
            send_default_pii=False,
            release=os.environ.get("RELEASE_VERSION"),
        )
        _initialized = True
        logger.debug(f"[SENTRY] Initialized for {environment} environment")
        return True

    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False


def set_funnel_context(company_id: str, flow_id: Optional[str] = None, member_id: Optional[str] = None) -> None:
    """Tag subsequent events with the funnel being served."""
    if not _initialized:
        return

    try:
        sentry_sdk.set_tag("company_id", company_id)
        if flow_id:
            sentry_sdk.set_tag("flow_id", flow_id)
        if member_id:
            sentry_sdk.set_user({"id": member_id})
    except Exception as e:
        logger.debug(f"[SENTRY] Failed to set funnel context: {e}")


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Manually capture a handled exception.

    Example:
        try:
            await whop.charge(...)
        except WhopAPIError as e:
            capture_exception(e, extra={"plan_id": plan_id})
    """
    if not _initialized:
        logger.error(f"Exception (Sentry disabled): {exception}")
        return

    try:
        with sentry_sdk.push_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture exception: {e}")


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """Capture a non-exception event (failed charge, rejected webhook)."""
    if not _initialized:
        logger.log(
            logging.getLevelName(level.upper()),
            f"Message (Sentry disabled): {message}"
        )
        return

    try:
        with sentry_sdk.push_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture message: {e}")
