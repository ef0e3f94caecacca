"""
Pulse Analytics
Main FastAPI Application
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging
from urllib.parse import urlparse

from app.core.config import settings
from app.core.db import CLICKHOUSE, get_database_type
from app.api.chat import router as chat_router
from app.api.tools import router as tools_router

# Configure logging
logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper()))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting Pulse Analytics API...")
    try:
        db_host = urlparse(settings.DATABASE_URL).hostname
        clickhouse_host = urlparse(settings.CLICKHOUSE_URL).hostname if settings.CLICKHOUSE_URL else None
        logger.info(
            "Config: backend=%s db_host=%s clickhouse_host=%s env=%s",
            get_database_type(),
            db_host,
            clickhouse_host,
            settings.ENVIRONMENT,
        )
    except Exception:
        logger.info("Config: env=%s", settings.ENVIRONMENT)
    logger.info(
        "Chat config: model=%s openai_key=%s max_steps=%s",
        settings.CHAT_MODEL,
        bool(settings.OPENAI_API_KEY),
        settings.CHAT_MAX_STEPS,
    )
    yield
    logger.info("Shutting down Pulse Analytics API...")


app = FastAPI(
    title="Pulse Analytics API",
    description="Web analytics query tools over a relational or ClickHouse event store",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL, "http://localhost:3000", "http://localhost:5173"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(tools_router, prefix="/api/tools", tags=["tools"])
app.include_router(chat_router, prefix="/api/chat", tags=["chat"])


@app.get("/health")
async def health_check():
    """Liveness check (should be fast and not depend on external services)."""
    return {
        "status": "ok",
        "service": "pulse-analytics-backend",
        "environment": settings.ENVIRONMENT,
    }


@app.get("/ready")
def readiness_check():
    """Readiness check (relational database, plus ClickHouse when it serves queries)."""
    try:
        from sqlalchemy import text

        from app.core import clickhouse, database

        db = database.SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()

        checks = {"db": "ok"}
        if get_database_type() == CLICKHOUSE:
            if not clickhouse.ping():
                raise RuntimeError("ClickHouse ping failed")
            checks["clickhouse"] = "ok"

        return {"status": "ready", **checks}
    except Exception as e:
        return JSONResponse(status_code=503, content={"status": "not_ready", "error": str(e)})


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Pulse Analytics API",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/health",
    }
