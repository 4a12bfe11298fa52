"""Rate limiting utilities using throttled-py"""
from datetime import timedelta
from typing import Optional

from fastapi import HTTPException, Request
from throttled import RateLimiterType, Throttled, rate_limiter, store

from core.config import API_RATE_LIMIT_PER_MINUTE, ORDER_RATE_LIMIT_PER_MINUTE, REDIS_URL, logger


def build_storage(redis_url: str = REDIS_URL):
    """Redis for production, MemoryStore for development"""
    try:
        if redis_url:
            # RedisStore expects the URL string, not a Redis client object
            storage = store.RedisStore(server=redis_url)
            logger.info("[rate_limit] Using Redis for rate limiting")
            return storage
        logger.warning("[rate_limit] REDIS_URL not set - using in-memory storage (not suitable for production with multiple workers)")
    except Exception as ex:
        logger.warning(f"[rate_limit] Redis connection failed, using in-memory storage: {ex}")
    return store.MemoryStore()


class OrderThrottles:
    """
    Fixed-window limiters for the order endpoints.
    Built once at startup and stored on app.state.
    """

    def __init__(
        self,
        storage=None,
        create_per_minute: int = ORDER_RATE_LIMIT_PER_MINUTE,
        api_per_minute: int = API_RATE_LIMIT_PER_MINUTE,
    ):
        self.storage = storage if storage is not None else build_storage()
        # Order placement: N per IP per minute
        self.create_order = Throttled(
            using=RateLimiterType.FIXED_WINDOW.value,
            quota=rate_limiter.per_duration(timedelta(minutes=1), limit=create_per_minute),
            store=self.storage,
        )
        # Read endpoints
        self.api = Throttled(
            using=RateLimiterType.FIXED_WINDOW.value,
            quota=rate_limiter.per_duration(timedelta(minutes=1), limit=api_per_minute),
            store=self.storage,
        )

    @staticmethod
    def _check(throttle: Throttled, key: str) -> bool:
        try:
            result = throttle.limit(key, cost=1)
            return not result.limited
        except Exception as ex:
            # Fail open if the backing store is unreachable
            logger.warning(f"[rate_limit] limiter error for {key}: {ex}")
            return True

    def allow_create(self, client_ip: str) -> bool:
        return self._check(self.create_order, f"order_create:{client_ip}")

    def allow_api(self, client_ip: str) -> bool:
        return self._check(self.api, f"order_api:{client_ip}")


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _throttles(request: Request) -> Optional[OrderThrottles]:
    return getattr(request.app.state, "throttles", None)


def limit_order_creation(request: Request) -> None:
    throttles = _throttles(request)
    if throttles and not throttles.allow_create(client_ip(request)):
        raise HTTPException(status_code=429, detail="Too many order attempts. Please try again later.")


def limit_api(request: Request) -> None:
    throttles = _throttles(request)
    if throttles and not throttles.allow_api(client_ip(request)):
        raise HTTPException(status_code=429, detail="Too many requests. Please try again later.")
