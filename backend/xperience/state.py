"""
Application State
=================

Global application state that persists across requests.

WHY this exists:
- Resolved buyer identities are cached so later funnel steps skip polling
- The Redis connection pool should be shared to avoid connection overhead

WHAT it stores:
- redis_pool: Shared Redis connection pool
- redis_client: Shared Redis client instance (None if Redis is misconfigured)

WHERE it's used:
- xperience/main.py: Pings Redis on startup
- xperience/services/identity_resolution_service.py: Identity cache

Design:
- Simple module-level singleton pattern
- Creating the pool does not connect; failures surface on first use and
  callers treat the cache as optional
"""

import logging
from redis import Redis, ConnectionPool
from xperience.deps import get_settings

logger = logging.getLogger(__name__)

redis_pool: ConnectionPool | None = None
redis_client: Redis | None = None

try:
    settings = get_settings()

    redis_pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        max_connections=20,  # Pool size for concurrent requests
        decode_responses=True,
    )
    redis_client = Redis(connection_pool=redis_pool)
    logger.info("[STATE] Shared Redis connection pool initialized (max_connections=20)")
except Exception as e:
    logger.error(f"[STATE] Failed to initialize Redis: {e}")
    logger.warning("[STATE] App will start but identity caching is disabled until Redis is configured")
    # Don't raise - identity resolution works without the cache
