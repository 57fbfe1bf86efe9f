"""
FastAPI application entry point.

This module initializes the FastAPI application, configures middleware,
and registers the import API router.
"""
import os
import logging
from datetime import datetime, timezone
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .core.config import settings
from .core.logging_config import configure_logging
from .db.session import get_db, init_db

from .api.routers import imports

# Ensure logging is configured before the application starts serving requests.
configure_logging(settings.log_level, debug=settings.debug)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create database tables on startup unless SKIP_DB_INIT=1."""
    if os.getenv("SKIP_DB_INIT") == "1":
        logger.info("SKIP_DB_INIT=1 detected; skipping database bootstrap during startup")
        yield
        return

    try:
        init_db()
    except SQLAlchemyError as e:
        logger.error(f"Failed to initialize database tables: {e}")
        raise  # Re-raise to prevent app from starting with broken database

    yield


app = FastAPI(
    title="Maintenance Import API",
    version="1.0.0",
    description="Bulk import and reconciliation of maintenance data (assets, work orders, users, parts...)",
    lifespan=lifespan
)

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
allowed_origins = [origin.strip() for origin in allowed_origins]

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(imports.router)


@app.get("/health")
def health_check(db: Session = Depends(get_db)):
    """Health check endpoint; reports whether the store answers."""
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        logger.warning(f"Health check could not reach the database: {e}")
        database = "unavailable"

    return {
        "status": "healthy" if database == "ok" else "degraded",
        "database": database,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "maintenance-import-api",
    }
