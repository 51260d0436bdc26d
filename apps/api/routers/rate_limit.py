"""Redis-backed request quotas keyed by the authenticated tenant."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Tuple

from fastapi import Depends, HTTPException, Request
import redis.asyncio as redis
from redis.asyncio.retry import Retry
from redis.backoff import NoBackoff
from redis.exceptions import RedisError

from config import settings
from routers.auth_scope import AuthContext, get_auth_context


logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None
_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def get_rate_limit_redis() -> redis.Redis:
    global _redis_client
    if _redis_client is None:
        # Fail fast so an outage drops straight to the in-process counters.
        _redis_client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=1,
            retry=Retry(NoBackoff(), 0),
        )
    return _redis_client


async def close_rate_limit_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


def quota_subject(auth: AuthContext) -> str:
    """Members share their tenant's quota; privileged callers are counted per user."""
    if auth.is_privileged or not auth.tenant_id:
        return f"{auth.role}:{auth.user_id}"
    return f"tenant:{auth.tenant_id}"


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> Tuple[bool, int]:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count = 0
            reset_at = now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
        return count <= limit, max(int(reset_at - now), 1)


async def _consume_redis_quota(key: str, limit: int, window_seconds: int) -> Tuple[bool, int]:
    client = get_rate_limit_redis()
    current = await client.incr(key)
    if current == 1:
        await client.expire(key, window_seconds)
    ttl = await client.ttl(key)
    return current <= limit, ttl if ttl and ttl > 0 else window_seconds


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[..., None]:
    """Return a FastAPI dependency enforcing a fixed-window quota per tenant."""

    async def _dependency(request: Request, auth: AuthContext = Depends(get_auth_context)):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"ledger:rate:{prefix}:{quota_subject(auth)}"
        try:
            allowed, retry_after = await _consume_redis_quota(key, limit, window_seconds)
        except RedisError as exc:
            logger.warning("rate_limit_redis_unavailable prefix=%s: %s", prefix, exc)
            allowed, retry_after = await _consume_local_quota(key, limit, window_seconds)

        if not allowed:
            logger.warning("rate_limit_exceeded prefix=%s subject=%s", prefix, quota_subject(auth))
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {prefix}. Try again later.",
                headers={"Retry-After": str(retry_after)},
            )

    return _dependency
