"""
nightwatch.api.main — FastAPI application entry point
======================================================

Run with::

    uvicorn nightwatch.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

from nightwatch.api.auth import router as auth_router  # noqa: E402
from nightwatch.api.deps import get_engine, get_notifier, get_publisher  # noqa: E402
from nightwatch.api.routes.community import router as community_router  # noqa: E402
from nightwatch.api.routes.guilds import router as guilds_router  # noqa: E402
from nightwatch.api.routes.members import router as members_router  # noqa: E402
from nightwatch.api.routes.playlist import router as playlist_router  # noqa: E402
from nightwatch.api.routes.referrals import router as referrals_router  # noqa: E402
from nightwatch.api.routes.roles import router as roles_router  # noqa: E402
from nightwatch.errors import NightwatchError  # noqa: E402

logger = logging.getLogger(__name__)


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from ``CORS_ALLOW_ORIGINS`` (comma-separated)."""
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]
    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — warm the DB engine and notifier."""
    engine = get_engine()
    notifier = get_notifier()
    logger.info(
        "Nightwatch API started — engine ready (%s), event origin %s",
        engine.url.database, notifier.origin,
    )
    yield
    logger.info("Nightwatch API shutting down")
    publisher = get_publisher()
    if publisher is not None:
        publisher.close()


app = FastAPI(
    title="Nightwatch API",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------
@app.exception_handler(NightwatchError)
async def nightwatch_error_handler(request: Request, exc: NightwatchError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


# Mount routers
app.include_router(auth_router, prefix="/api")
app.include_router(guilds_router, prefix="/api")
app.include_router(community_router, prefix="/api")
app.include_router(members_router, prefix="/api")
app.include_router(roles_router, prefix="/api")
app.include_router(playlist_router, prefix="/api")
app.include_router(referrals_router, prefix="/api")


@app.get("/api/health")
def health():
    return {"status": "ok"}
