from fastapi import Request, status
from fastapi.responses import JSONResponse
import time
import redis
from redis.exceptions import RedisError
import structlog

from eventlens.core.security import hash_api_key

logger = structlog.get_logger()

UNLIMITED_PATHS = ("/health", "/")


class RateLimiter:
    """Redis sliding window limiter with an in-memory token bucket fallback"""

    def __init__(self, rate: int, period: int, redis_client: redis.Redis | None = None):
        """
        Args:
            rate: Number of requests allowed
            period: Time period in seconds
            redis_client: Shared client; None keeps the state in this process
        """
        self.rate = rate
        self.period = period
        self.redis_client = redis_client
        self.buckets: dict[str, dict[str, float]] = {}

    @property
    def use_redis(self) -> bool:
        return self.redis_client is not None

    def is_allowed(self, key: str) -> bool:
        if self.use_redis:
            try:
                return self._is_allowed_redis(key)
            except RedisError as e:
                logger.warning("rate_limiter_redis_failed_using_memory", error=str(e))
        return self._is_allowed_memory(key)

    def _is_allowed_redis(self, key: str) -> bool:
        """Sliding window over a sorted set of request timestamps"""
        redis_key = f"eventlens:rate_limit:{key}"
        now = time.time()
        window_start = now - self.period

        pipe = self.redis_client.pipeline()
        pipe.zremrangebyscore(redis_key, 0, window_start)
        pipe.zcard(redis_key)
        pipe.zadd(redis_key, {str(now): now})
        pipe.expire(redis_key, self.period)
        results = pipe.execute()

        # count before this request was added
        return results[1] < self.rate

    def _is_allowed_memory(self, key: str) -> bool:
        now = time.time()
        bucket = self.buckets.setdefault(key, {"tokens": float(self.rate), "last_update": now})

        time_passed = now - bucket["last_update"]
        bucket["last_update"] = now
        bucket["tokens"] = min(self.rate, bucket["tokens"] + (time_passed / self.period) * self.rate)

        if bucket["tokens"] >= 1:
            bucket["tokens"] -= 1
            return True
        return False

    def get_remaining(self, key: str) -> int:
        if self.use_redis:
            try:
                now = time.time()
                count = self.redis_client.zcount(f"eventlens:rate_limit:{key}", now - self.period, now)
                return max(0, self.rate - count)
            except RedisError:
                pass

        bucket = self.buckets.get(key)
        if not bucket:
            return self.rate
        return int(bucket["tokens"])


def _rate_limit_key(request: Request) -> str:
    # Keyed by API key digest when one is sent, otherwise by client address
    api_key = request.headers.get("X-API-Key")
    if api_key:
        return f"api_key:{hash_api_key(api_key)[:16]}"
    client_ip = request.client.host if request.client else "unknown"
    return f"ip:{client_ip}"


def rate_limit_middleware(limiter: RateLimiter):
    """Build the HTTP middleware for a limiter"""

    async def middleware(request: Request, call_next):
        if request.url.path in UNLIMITED_PATHS:
            return await call_next(request)

        key = _rate_limit_key(request)
        headers = {
            "X-RateLimit-Limit": str(limiter.rate),
            "X-RateLimit-Reset": str(limiter.period),
        }

        if not limiter.is_allowed(key):
            logger.warning("rate_limit_exceeded", key=key, path=request.url.path)
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "error": "RATE_LIMITED",
                    "message": "Rate limit exceeded. Please try again later.",
                    "retryAfter": limiter.period,
                },
                headers={**headers, "X-RateLimit-Remaining": "0", "Retry-After": str(limiter.period)},
            )

        response = await call_next(request)
        response.headers.update(headers)
        response.headers["X-RateLimit-Remaining"] = str(limiter.get_remaining(key))
        return response

    return middleware
