"""FastAPI application entrypoint.

Configures CORS, includes routers, and exposes a healthcheck endpoint.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response as StarletteResponse

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from .deps import get_settings
from . import state
from .routers import flows as flows_router
from .routers import whop as whop_router
from .routers import purchases as purchases_router
from .routers import track as track_router
from .routers import funnel as funnel_router
from .routers import embed as embed_router
from .telemetry import init_observability, shutdown_observability
from . import schemas

# Import models so Alembic can discover metadata
from . import models  # noqa: F401


# Paths called from funnel pages embedded on arbitrary merchant sites
EMBED_PATH_PREFIXES = ("/embed/", "/flows/", "/funnel/", "/purchases/", "/track/", "/whop/")


class EmbedCORSMiddleware(BaseHTTPMiddleware):
    """Wildcard CORS for embed-facing routes.

    WHY: The funnel runs inside iframes on merchant domains we cannot list
    ahead of time. No credentials are sent, so '*' is acceptable.
    """

    cors_headers = {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type",
        "Access-Control-Max-Age": "86400",
    }

    async def dispatch(self, request, call_next):
        if not request.url.path.startswith(EMBED_PATH_PREFIXES):
            return await call_next(request)

        if request.method == "OPTIONS":
            return StarletteResponse(status_code=200, headers=self.cors_headers)

        response = await call_next(request)
        for key, value in self.cors_headers.items():
            response.headers[key] = value
        return response


def create_app() -> FastAPI:
    init_observability()

    app = FastAPI(
        title="Xperience Funnel API",
        description="""
        Drives buyers through merchant purchase funnels:
        initial checkout, upsell/downsell/cross-sell offers, confirmation.

        - Flow graph reads
        - Whop checkout configuration, charging and webhooks
        - Identity resolution after the save-card step
        - Accept/decline navigation with redirect plans for embedded pages
        - Purchase attribution for the receipt page
        - Embed snippets for merchant-hosted pages
        """,
        version="1.0.0",
    )

    settings = get_settings()

    # BACKEND_CORS_ORIGINS can be a comma-separated list
    allowed_origins = [o.strip() for o in settings.BACKEND_CORS_ORIGINS.split(",") if o.strip()]
    if settings.APP_BASE_URL not in allowed_origins:
        allowed_origins.append(settings.APP_BASE_URL)
    logger.info(f"[CORS] Allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Added after CORSMiddleware so it runs first
    app.add_middleware(EmbedCORSMiddleware)

    app.include_router(flows_router.router)
    app.include_router(whop_router.router)
    app.include_router(purchases_router.router)
    app.include_router(track_router.router)
    app.include_router(funnel_router.router)
    app.include_router(embed_router.router)

    @app.get(
        "/health",
        response_model=schemas.HealthResponse,
        tags=["Health"],
        summary="Health check",
    )
    def health():
        return schemas.HealthResponse(status="ok")

    @app.on_event("startup")
    async def startup_event():
        """Check Redis on startup; identity caching is optional."""
        try:
            if state.redis_client is not None and state.redis_client.ping():
                logger.info("[STARTUP] Redis is reachable")
                return
        except Exception as e:
            logger.warning(f"[STARTUP] Redis ping failed: {e}")
        logger.warning("[STARTUP] Identity cache unavailable - check REDIS_URL: " + str(settings.REDIS_URL))

    @app.on_event("shutdown")
    async def shutdown_event():
        shutdown_observability()

    return app


app = create_app()
