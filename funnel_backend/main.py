from __future__ import annotations

import logging
from typing import Dict

from dotenv import load_dotenv

# Load environment variables from .env at project root
# This runs before the app is created so all downstream modules see the env.
load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from funnel_backend.config import settings
from funnel_backend.db import init_db
from funnel_backend.routers import bridge as bridge_router
from funnel_backend.routers import funnel as funnel_router
from funnel_backend.routers import leads as leads_router
from funnel_backend.routers import stripe_webhooks as stripe_webhooks_router
from funnel_backend.routers import touchpoints as touchpoints_router
from funnel_backend.routers import webhooks as webhooks_router

logger = logging.getLogger("funnel.main")

# Local tracking-script origins when CORS_ORIGINS is not set.
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    "http://localhost:5000",
    "http://127.0.0.1:5000",
]


def create_app() -> FastAPI:
    app = FastAPI(title=settings.app_name, debug=settings.debug)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins or DEFAULT_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    # Tracking script
    app.include_router(bridge_router.router)
    app.include_router(touchpoints_router.router)

    # Read side
    app.include_router(funnel_router.router)
    app.include_router(leads_router.router)

    # Provider webhooks
    app.include_router(webhooks_router.router)
    app.include_router(stripe_webhooks_router.router)

    @app.on_event("startup")
    async def on_startup() -> None:
        """Initialize resources on startup."""
        logger.info("Starting %s (env=%s)...", settings.app_name, settings.environment)
        init_db()
        logger.info("%s started.", settings.app_name)

    @app.get("/healthz")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok", "app": settings.app_name}

    return app


app = create_app()
