"""Redis-backed per-account rate limiting for generation endpoints."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Tuple

from fastapi import Depends, HTTPException, Request
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings
from routers.auth_scope import AuthContext, get_auth_context

logger = logging.getLogger(__name__)

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> bool:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count = 0
            reset_at = now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
        return count <= limit


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[..., None]:
    """Return a FastAPI dependency that enforces per-account request quotas.

    Falls back to an in-process window when Redis is unreachable.
    """

    async def _dependency(request: Request, auth: AuthContext = Depends(get_auth_context)):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"dgm:rate:{prefix}:{auth.user_id}"

        try:
            redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
            try:
                current = await redis_client.incr(key)
                if current == 1:
                    await redis_client.expire(key, window_seconds)
            finally:
                await redis_client.aclose()
            allowed = current <= limit
        except (RedisError, OSError) as exc:
            logger.debug("Rate limit store unavailable, using local window: %s", exc)
            allowed = await _consume_local_quota(key, limit, window_seconds)

        if not allowed:
            raise HTTPException(
                status_code=429,
                detail={
                    "code": "rate_limited",
                    "message": f"Rate limit exceeded for {prefix}. Try again later.",
                },
            )

    return _dependency
