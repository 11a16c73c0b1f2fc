"""Redis-backed request quotas, keyed by user when a session token is present."""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, Tuple

from fastapi import Request
import redis.asyncio as redis

from config import settings
from services.errors import StudioError
from services.session_token import decode_session_token


_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


class RateLimitExceededError(StudioError):
    status_code = 429
    code = "rate_limited"


def _quota_subject(request: Request) -> str:
    authorization = request.headers.get("authorization", "")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token:
        try:
            return f"user:{decode_session_token(token.strip())['sub']}"
        except ValueError:
            pass
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    if request.client and request.client.host:
        return f"ip:{request.client.host}"
    return "ip:unknown"


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


async def _consume_redis_quota(key: str, limit: int, window_seconds: int) -> bool:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        current = await client.incr(key)
        if current == 1:
            await client.expire(key, window_seconds)
    finally:
        await client.aclose()
    return int(current) <= limit


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[Request], None]:
    """Return a FastAPI dependency that enforces per-user (or per-IP) quotas."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"studio:rate:{prefix}:{_quota_subject(request)}"
        try:
            allowed = await _consume_redis_quota(key, limit, window_seconds)
        except (redis.RedisError, OSError):
            allowed = await _consume_local_quota(key, limit, window_seconds)

        if not allowed:
            raise RateLimitExceededError(f"Rate limit exceeded for {prefix}. Try again later.")

    return _dependency
