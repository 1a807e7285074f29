"""
Health and readiness probes for the credit ledger service.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings, validate_security_settings
from database import get_db
from services.credits import credit_costs
from services.regeneration import regeneration_limits

router = APIRouter()
logger = logging.getLogger(__name__)


async def _ledger_store_status(db: AsyncSession) -> str:
    try:
        await db.execute(text("SELECT 1 FROM user_profiles LIMIT 1"))
        return "up"
    except SQLAlchemyError as e:
        logger.warning("Ledger store probe failed: %s", e)
        return f"down: {type(e).__name__}"


async def _redis_status() -> str:
    try:
        r = redis.from_url(settings.REDIS_URL)
        try:
            await r.ping()
        finally:
            await r.aclose()
        return "up"
    except (RedisError, OSError) as e:
        # Rate limiting degrades to an in-process window, so this is not fatal.
        return f"degraded: {type(e).__name__}"


@router.get("/health")
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Ledger store and rate-limit backend reachability, plus the active
    credit costs and regeneration limits.
    """
    ledger = await _ledger_store_status(db)
    health_status: Dict[str, Any] = {
        "status": "healthy" if ledger == "up" else "unhealthy",
        "api": "up",
        "ledger_store": ledger,
        "rate_limit_store": await _redis_status(),
        "generation_provider": "openai" if settings.OPENAI_API_KEY else "deterministic",
        "credit_costs": credit_costs(),
        "regeneration_limits": regeneration_limits(),
    }
    if ledger != "up":
        return JSONResponse(status_code=503, content=health_status)
    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Ready once secrets are configured; purchases cannot be granted without the webhook secret."""
    problems = []
    try:
        validate_security_settings()
    except ValueError as e:
        problems.append(str(e))
    if not settings.PAYMENT_WEBHOOK_SECRET:
        problems.append("PAYMENT_WEBHOOK_SECRET is not configured")

    if problems:
        return JSONResponse(status_code=503, content={"ready": False, "problems": problems})
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    return {"alive": True}
