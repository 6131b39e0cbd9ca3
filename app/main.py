"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from starlette.middleware.sessions import SessionMiddleware

from app.config import get_settings
from app.db import close_db, init_db

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle hook."""
    settings = get_settings()
    missing = settings.missing_credentials()
    if missing:
        logger.warning("%s not set, login will fail until configured", ", ".join(missing))
    await init_db()
    logger.info("DB ready at %s", settings.db_abs_path)
    yield
    await close_db()
    logger.info("DB closed")


app = FastAPI(
    title="Spotify stats dashboard",
    version="0.1.0",
    lifespan=lifespan,
)

# Session middleware (signed cookie — stores only the browser profile id).
app.add_middleware(SessionMiddleware, secret_key=get_settings().secret_key)

# Routers
from app.auth import router as auth_router  # noqa: E402
from app.routes_dashboard import router as dashboard_router  # noqa: E402

app.include_router(auth_router)
app.include_router(dashboard_router)


@app.get("/health")
async def health():
    """Simple health-check endpoint."""
    return JSONResponse(
        {
            "status": "ok",
            "version": app.version,
            "configured": not get_settings().missing_credentials(),
        }
    )
