import json
import logging
from time import time
from typing import Dict, Iterable, Optional, Tuple

import redis
import redis.asyncio as aioredis
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from config.settings import settings

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0


def connect_redis(redis_url: Optional[str]):
    """
    Return an asyncio Redis client, or None when REDIS_URL is unset.
    The client connects on first use; while Redis is unreachable the
    limiter keeps its buckets in memory.
    """
    if not redis_url:
        logger.info("REDIS_URL not set. Using in-memory rate limiting.")
        return None
    logger.info("Using Redis for rate limiting")
    return aioredis.from_url(redis_url, decode_responses=True)


def _refill(tokens: float, last_refill: float, now: float, capacity: int) -> float:
    elapsed = max(0.0, now - last_refill)
    return min(capacity, tokens + (elapsed / WINDOW_SECONDS) * capacity)


class RateLimiterMiddleware(BaseHTTPMiddleware):
    """
    Per-IP token bucket, stored in Redis when available and in memory otherwise.

    Paths in ``exempt_paths`` are never limited; the billing gateway retries
    webhooks from a small set of addresses and must not be throttled.
    """

    def __init__(self, app, requests_per_minute: Optional[int] = None,
                 exempt_paths: Iterable[str] = (), redis_client=None):
        super().__init__(app)
        self.capacity = requests_per_minute or settings.rate_limit_per_minute
        self.exempt_paths = frozenset(exempt_paths)
        self.redis = redis_client
        # ip -> (tokens, last_refill_ts)
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._last_prune = time()

    def _get_client_ip(self, request: Request) -> str:
        xff = request.headers.get("x-forwarded-for")
        if xff:
            return xff.split(",")[0].strip()
        client = request.client
        return client.host if client else "unknown"

    async def _take_redis(self, ip: str, now: float) -> Optional[float]:
        """Returns remaining tokens (negative when limited), or None if Redis failed."""
        key = f"rate_limit:{ip}"
        try:
            stored = await self.redis.get(key)
            if stored:
                data = json.loads(stored)
                tokens = _refill(float(data["tokens"]), float(data["last_refill"]), now, self.capacity)
            else:
                tokens = float(self.capacity)
            if tokens < 1.0:
                return -1.0
            tokens -= 1.0
            await self.redis.setex(key, int(WINDOW_SECONDS) + 10,
                                   json.dumps({"tokens": tokens, "last_refill": now}))
            return tokens
        except (redis.RedisError, ValueError, KeyError) as e:
            logger.warning(f"Redis rate limit check failed: {e}. Falling back to in-memory.")
            return None

    def _prune(self, now: float) -> None:
        """Drop buckets idle for a full window; they would have refilled anyway."""
        if now - self._last_prune < WINDOW_SECONDS:
            return
        self._last_prune = now
        stale = [ip for ip, (_, last_refill) in self._buckets.items() if now - last_refill >= WINDOW_SECONDS]
        for ip in stale:
            del self._buckets[ip]

    def _take_memory(self, ip: str, now: float) -> float:
        self._prune(now)
        tokens, last_refill = self._buckets.get(ip, (float(self.capacity), now))
        tokens = _refill(tokens, last_refill, now, self.capacity)
        if tokens < 1.0:
            return -1.0
        self._buckets[ip] = (tokens - 1.0, now)
        return tokens - 1.0

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        ip = self._get_client_ip(request)
        now = time()
        remaining = await self._take_redis(ip, now) if self.redis is not None else None
        if remaining is None:
            remaining = self._take_memory(ip, now)

        headers = {
            "X-RateLimit-Limit": str(self.capacity),
            "X-RateLimit-Remaining": str(max(0, int(remaining))),
        }
        if remaining < 0:
            logger.warning(f"Rate limit exceeded for {ip} on {request.url.path}")
            headers["Retry-After"] = str(int(WINDOW_SECONDS / self.capacity) + 1)
            return JSONResponse(
                status_code=429,
                content={
                    "ok": False,
                    "data": {},
                    "error": "rate_limited",
                    "message": "Rate limit exceeded. Try again shortly.",
                },
                headers=headers,
            )

        response = await call_next(request)
        response.headers.update(headers)
        return response
