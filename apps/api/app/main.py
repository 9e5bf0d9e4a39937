"""FastAPI application for anonymous one-on-one video matchmaking."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .core.config import settings
from .db.session import build_store
from .db.store import TransientStoreError
from .routers import matching as matching_router
from .routers import rtc as rtc_router
from .services import rtc as rtc_service
from .services.matching import MatchPublisher, MatchPublishFailure, MatchService

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # Refuse to start when signed tokens are mandatory but not configured.
    rtc_service.ensure_configured(settings)

    store = build_store(settings)
    app.state.match_service = MatchService(
        store,
        publisher=MatchPublisher(store, channel_prefix=settings.channel_prefix),
    )
    logger.info("Matchmaking API started (%s store, env=%s)", settings.store_backend, settings.app_env)
    try:
        yield
    finally:
        await store.close()
        logger.info("Matchmaking API stopped")


app = FastAPI(title="Matchcall API", version="0.1.0", lifespan=lifespan)

if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(matching_router.router, prefix="/api", tags=["matching"])
app.include_router(rtc_router.router, prefix="/api/rtc", tags=["rtc"])


@app.exception_handler(TransientStoreError)
async def transient_store_error_handler(request: Request, exc: TransientStoreError) -> JSONResponse:
    logger.warning("Store unavailable for %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"detail": "Matchmaking store is unavailable, try again"},
    )


@app.exception_handler(MatchPublishFailure)
async def match_publish_failure_handler(request: Request, exc: MatchPublishFailure) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "Match could not be published",
            "participants": list(exc.pairing.participants),
        },
    )


@app.exception_handler(rtc_service.CredentialConfigurationError)
async def credential_error_handler(request: Request, exc: rtc_service.CredentialConfigurationError) -> JSONResponse:
    logger.error("Token issuance misconfigured: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Token issuance is not configured"},
    )


@app.get("/api/health", tags=["meta"])
async def health() -> dict[str, str]:
    """Simple liveness probe."""

    return {"status": "ok"}


@app.head("/api/health", tags=["meta"])
async def health_head() -> Response:
    """Allow HEAD for uptime monitors that only need the status code."""

    return Response(status_code=200)
