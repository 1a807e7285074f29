"""
DaggerGM Adventure API - FastAPI Backend
Main application entry point: credits, adventure generation and regenerations.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import adventures, billing, health
from services.ledger_types import AdventureNotFoundError, LedgerStoreError

logging.basicConfig(
    level=getattr(logging, str(settings.LOG_LEVEL).upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting DaggerGM Adventure API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database schema verified.")
        except Exception as e:
            logger.warning("Database bootstrap skipped: %s", e)
    yield
    await engine.dispose()
    logger.info("Shutting down API...")


app = FastAPI(
    title="DaggerGM Adventure API",
    description="Generate Daggerheart adventures with credits and free regenerations",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LedgerStoreError)
async def ledger_store_error_handler(request: Request, exc: LedgerStoreError):
    logger.error("Ledger store error on %s %s: operation=%s", request.method, request.url.path, exc.operation)
    return JSONResponse(
        status_code=503,
        content={"detail": {"code": "store_unavailable", "message": "Credit store is temporarily unavailable."}},
    )


@app.exception_handler(AdventureNotFoundError)
async def adventure_not_found_handler(request: Request, exc: AdventureNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(adventures.router, prefix="/adventures", tags=["Adventures"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "DaggerGM Adventure API",
        "version": "0.1.0",
        "status": "running"
    }
