"""
RudderStack Funnel Analytics
============================

Buyer event tracking for conversion reporting.

Related files:
- xperience/services/charge_orchestrator.py: offer_accepted, offer_declined,
  charge_failed
- xperience/routers/funnel.py: identity_unresolved

Environment Variables:
- RUDDERSTACK_WRITE_KEY: Source write key (required)
- RUDDERSTACK_DATA_PLANE_URL: Data plane URL (required)

Events Tracked:
- offer_accepted: Buyer accepted an offer and the charge succeeded
- offer_declined: Buyer declined an offer
- charge_failed: Processor rejected a charge
- identity_unresolved: Member id never arrived after checkout

Every event uses the Whop member id as the user id. Tracking never raises.
"""

from __future__ import annotations

import os
import logging
from typing import Optional, Dict, Any
from functools import lru_cache
from datetime import datetime

logger = logging.getLogger(__name__)


# RudderStack SDK import - gracefully handle if not installed
try:
    from rudderstack import analytics as rudderstack_analytics
    RUDDERSTACK_AVAILABLE = True
except ImportError:
    RUDDERSTACK_AVAILABLE = False
    rudderstack_analytics = None


_initialized = False


@lru_cache()
def get_rudderstack_config() -> tuple[Optional[str], Optional[str]]:
    """Return (write_key, data_plane_url), either may be None."""
    write_key = os.environ.get("RUDDERSTACK_WRITE_KEY")
    data_plane_url = os.environ.get("RUDDERSTACK_DATA_PLANE_URL")
    return write_key, data_plane_url


def init_analytics() -> bool:
    """
    Initialize RudderStack analytics client.

    Returns:
        True if initialized successfully, False otherwise.
    """
    global _initialized

    if not RUDDERSTACK_AVAILABLE:
        logger.warning("[ANALYTICS] rudderstack-sdk-python not installed - funnel tracking disabled")
        return False

    write_key, data_plane_url = get_rudderstack_config()

    if not write_key or not data_plane_url:
        logger.warning("[ANALYTICS] RudderStack not configured - funnel tracking disabled")
        return False

    try:
        rudderstack_analytics.write_key = write_key
        rudderstack_analytics.dataPlaneUrl = data_plane_url
        rudderstack_analytics.debug = os.environ.get("RUDDERSTACK_DEBUG", "false").lower() == "true"
        rudderstack_analytics.on_error = _on_rudderstack_error
        rudderstack_analytics.send = True
        rudderstack_analytics.sync_mode = False

        _initialized = True
        logger.debug("[ANALYTICS] RudderStack initialized")
        return True

    except Exception as e:
        logger.error(f"[ANALYTICS] Failed to initialize RudderStack: {e}")
        return False


def _on_rudderstack_error(error: Exception, items: list) -> None:
    logger.error(f"[ANALYTICS] RudderStack error: {error}, items: {len(items)}")


def track(
    user_id: str,
    event: str,
    properties: Optional[Dict[str, Any]] = None
) -> None:
    """
    Track a buyer event.

    Example:
        track(
            user_id=member_id,
            event="offer_accepted",
            properties={"flow_id": str(flow_id), "node_id": str(node_id)},
        )
    """
    if not _initialized:
        return

    try:
        event_properties = dict(properties or {})
        event_properties["timestamp"] = datetime.utcnow().isoformat()

        rudderstack_analytics.track(user_id, event, event_properties)

    except Exception as e:
        logger.error(f"[ANALYTICS] Failed to track event: {e}")


def track_offer_accepted(
    member_id: str,
    company_id: str,
    flow_id: str,
    node_id: Optional[str],
    plan_id: Optional[str],
    amount: Optional[float] = None,
) -> None:
    track(
        user_id=member_id,
        event="offer_accepted",
        properties={
            "company_id": company_id,
            "flow_id": flow_id,
            "node_id": node_id,
            "plan_id": plan_id,
            "amount": amount,
        }
    )


def track_offer_declined(member_id: str, company_id: str, flow_id: str, node_id: Optional[str]) -> None:
    track(
        user_id=member_id,
        event="offer_declined",
        properties={
            "company_id": company_id,
            "flow_id": flow_id,
            "node_id": node_id,
        }
    )


def track_charge_failed(
    member_id: str,
    company_id: str,
    flow_id: str,
    node_id: Optional[str],
    status_code: Optional[int] = None,
) -> None:
    track(
        user_id=member_id,
        event="charge_failed",
        properties={
            "company_id": company_id,
            "flow_id": flow_id,
            "node_id": node_id,
            "status_code": status_code,
        }
    )


def track_identity_unresolved(checkout_config_id: Optional[str], company_id: str, attempts: int) -> None:
    """Anonymous event: there is no member id to attribute it to."""
    track(
        user_id=f"anonymous:{checkout_config_id or 'unknown'}",
        event="identity_unresolved",
        properties={
            "company_id": company_id,
            "checkout_config_id": checkout_config_id,
            "attempts": attempts,
        }
    )


def flush() -> None:
    """Flush pending analytics events before shutdown."""
    if not _initialized:
        return

    try:
        rudderstack_analytics.flush()
    except Exception as e:
        logger.error(f"[ANALYTICS] Failed to flush events: {e}")
